"""
LEAD NOTIFIER TESTS
"""

import asyncio

import httpx
import pytest

from lead_funnel.errors import NotificationFailure
from lead_funnel.models import LeadPayload
from lead_funnel.notifier import LeadNotifier

PAYLOAD = LeadPayload(
    sessionId="session_notify_1",
    name="Jean Martin",
    contactMethod="email",
    contact="jean@example.com",
    need="pitch",
    collected={"need": "pitch"},
    qualification={"grade": "A"},
    conversation=["pitch"],
    completedAt=1,
)


def _notifier(handler, **kwargs):
    return LeadNotifier(url="https://notify.test/leads", transport=httpx.MockTransport(handler), **kwargs)


def test_delivery_id_is_returned():
    notifier = _notifier(lambda request: httpx.Response(200, json={"id": "abc"}))
    result = asyncio.run(notifier.notify(PAYLOAD))
    assert result.success
    assert result.deliveryId == "abc"


def test_http_error_raises_notification_failure():
    notifier = _notifier(lambda request: httpx.Response(503))
    with pytest.raises(NotificationFailure):
        asyncio.run(notifier.notify(PAYLOAD))


def test_retry_recovers_after_transient_failure():
    answers = [httpx.Response(502), httpx.Response(200, json={"messageId": "m1"})]
    notifier = _notifier(lambda request: answers.pop(0), base_delay=0)
    result = asyncio.run(notifier.notify_with_retry(PAYLOAD))
    assert result.success and result.deliveryId == "m1"


def test_retry_gives_up_without_raising():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    result = asyncio.run(_notifier(handler, base_delay=0).notify_with_retry(PAYLOAD, max_retries=3))
    assert not result.success
    assert result.error
    assert len(calls) == 3


def test_unconfigured_notifier_keeps_lead_local():
    result = asyncio.run(LeadNotifier(url=None).notify_with_retry(PAYLOAD))
    assert not result.success
    assert result.error == "notifier not configured"
