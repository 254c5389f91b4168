import asyncio
import logging
from typing import Optional

import httpx

from .config import LEAD_NOTIFY_API_KEY, LEAD_NOTIFY_URL
from .errors import NotificationFailure
from .identity import mask_id
from .models import LeadPayload, NotifyResult

logger = logging.getLogger(__name__)

# ======================================================================
# NON-BLOCKING LEAD DELIVERY WITH RETRY
# ----------------------------------------------------------------------
# 1. notify_with_retry() is launched with asyncio.create_task() once the
#    survey is accepted, so the survey response returns immediately.
# 2. Up to 3 attempts with exponential backoff (2s, 4s, 8s).
# 3. Final failure is logged only: the lead stays in the session for
#    manual recovery.
# ======================================================================


class LeadNotifier:
    def __init__(self, url: Optional[str] = LEAD_NOTIFY_URL,
                 api_key: Optional[str] = LEAD_NOTIFY_API_KEY,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 10.0, base_delay: float = 2.0):
        self.url = url
        self.base_delay = base_delay
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def notify(self, payload: LeadPayload) -> NotifyResult:
        """
        Single-shot delivery to the lead webhook.
        Raises NotificationFailure on transport errors and non-2xx answers.
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                response = await client.post(self.url, json=payload.model_dump(), headers=headers)
            except httpx.HTTPError as e:
                raise NotificationFailure(f"Lead delivery failed: {type(e).__name__}: {e}")

        logger.info(f"Lead notify response: status={response.status_code}")
        if not response.is_success:
            raise NotificationFailure(f"Lead delivery rejected with HTTP {response.status_code}")

        delivery_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                body = response.json()
            except ValueError:
                logger.warning("Lead notify answered with malformed JSON, no delivery id")
                body = None
            if isinstance(body, dict):
                delivery_id = body.get("id") or body.get("messageId")
        return NotifyResult(success=True, deliveryId=delivery_id)

    async def notify_with_retry(self, payload: LeadPayload, max_retries: int = 3) -> NotifyResult:
        """Background-safe delivery. Never raises."""
        if not self.configured:
            logger.warning(
                f"⚠️ LEAD_NOTIFY_URL not set, lead for {mask_id(payload.sessionId)} "
                f"kept in session only (grade={payload.qualification.get('grade')})"
            )
            return NotifyResult(success=False, error="notifier not configured")

        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                result = await self.notify(payload)
                logger.info(f"✅ Lead delivered for {mask_id(payload.sessionId)} on attempt {attempt}")
                return result
            except NotificationFailure as e:
                last_error = e.message

            if attempt < max_retries:
                delay = self.base_delay * (2 ** (attempt - 1))  # 2s, 4s, 8s
                logger.warning(f"⚠️ Lead notify attempt {attempt} failed ({last_error}), retrying in {delay}s...")
                await asyncio.sleep(delay)

        logger.error(
            f"❌ Lead notify failed after {max_retries} attempts for "
            f"{mask_id(payload.sessionId)} [notification_failure]: {last_error}"
        )
        return NotifyResult(success=False, error=last_error)
