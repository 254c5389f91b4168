"""
SESSION STORE TESTS
Id validation, welcome seeding, trimming, expiry.
"""

import asyncio

import pytest

from lead_funnel.config import WELCOME_MESSAGE
from lead_funnel.errors import InvalidIdentifier, SessionNotFound
from lead_funnel.session_store import (
    ChatMessage,
    CollectedInfo,
    ConversationGoals,
    SessionStore,
    validate_session_id,
)

SID = "session_abc123"


@pytest.mark.parametrize("bad", [
    "", "short", "x" * 101, "has space 12345", "semi;colon12345", "../../etc/passwd", None, 12345678901,
])
def test_invalid_ids_are_rejected(bad):
    with pytest.raises(InvalidIdentifier):
        validate_session_id(bad)


@pytest.mark.parametrize("good", ["a" * 10, "A-b_c-D_e-1", "x" * 100])
def test_valid_ids(good):
    assert validate_session_id(good) == good


def test_invalid_id_never_touches_store(clock):
    store = SessionStore(clock=clock)
    with pytest.raises(InvalidIdentifier):
        store.get_or_create("bad id")
    assert len(store) == 0


def test_new_session_is_seeded(clock):
    store = SessionStore(clock=clock)
    session = store.get_or_create(SID)
    assert session.created_at == clock.now
    assert session.goals.achieved() == []
    assert session.collected.to_dict() == CollectedInfo().to_dict()
    assert not session.completed and not session.form_completed and not session.closed_by_abuse
    assert len(session.messages) == 1
    assert session.messages[0].is_bot and session.messages[0].text == WELCOME_MESSAGE
    assert store.get_or_create(SID) is session


def test_trim_keeps_welcome_and_latest(clock):
    store = SessionStore(clock=clock)
    session = store.get_or_create(SID)
    for i in range(150):
        session.append(ChatMessage(text=f"m{i}", is_bot=False, timestamp=i))

    assert len(session.messages) == 100
    assert session.messages[0].text == WELCOME_MESSAGE
    assert [m.text for m in session.messages[1:]] == [f"m{i}" for i in range(51, 150)]


def test_goals_are_monotonic():
    goals = ConversationGoals()
    goals.merge({"understand_need": True})
    goals.merge({"understand_need": False, "assess_urgency": True})
    assert goals.understand_need and goals.assess_urgency


def test_collected_values_overwrite_but_never_clear():
    info = CollectedInfo()
    info.merge({"need": "pitch", "urgency": "urgent"})
    info.merge({"need": "pitch investisseurs", "urgency": None})
    assert info.need == "pitch investisseurs"
    assert info.urgency == "urgent"


def test_expired_session_is_not_found_not_revived(clock):
    store = SessionStore(max_age_ms=30 * 60_000, clock=clock)
    store.get_or_create(SID)
    clock.advance(30 * 60_000)
    with pytest.raises(SessionNotFound):
        store.get_or_create(SID)
    assert store.get(SID) is None

    assert store.sweep() == 1
    assert len(store) == 0
    with pytest.raises(SessionNotFound):
        store.get_or_create(SID)


def test_sweep_skips_locked_sessions(clock):
    store = SessionStore(max_age_ms=1000, clock=clock)
    store.get_or_create(SID)
    clock.advance(1000)

    async def scenario():
        async with store.lock_for(SID):
            assert store.sweep() == 0
        assert store.sweep() == 1

    asyncio.run(scenario())
