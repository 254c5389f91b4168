"""
FUNNEL SERVICE CONCURRENCY TESTS
Messages for one session are serialized; different sessions run in parallel.
"""

import asyncio

from lead_funnel.identity import derive_identity
from lead_funnel.models import InterpretResult
from test_api import make_service

SID = "concurrent_session_1"
OTHER_SID = "concurrent_session_2"


class SlowInterpreter:
    """Records how many interpret calls are in flight at once."""

    def __init__(self, delay_s=0.01):
        self.delay_s = delay_s
        self.active = 0
        self.max_active = 0

    async def interpret(self, session, text):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.active -= 1
        return InterpretResult(reply="D'accord.")


def _run_together(service, messages):
    identity = derive_identity("10.0.0.1", {})

    async def scenario():
        return await asyncio.gather(*(
            service.submit_message(identity, session_id, text) for session_id, text in messages
        ))

    return asyncio.run(scenario())


def test_same_session_messages_run_one_at_a_time(clock):
    interpreter = SlowInterpreter()
    service = make_service(clock, interpreter)
    texts = [f"Message numéro {i}" for i in range(5)]

    results = _run_together(service, [(SID, text) for text in texts])

    assert len(results) == 5
    assert interpreter.max_active == 1
    session = service.session_store.get(SID)
    assert len(session.messages) == 1 + 2 * len(texts)
    assert session.user_messages() == texts


def test_different_sessions_overlap(clock):
    interpreter = SlowInterpreter()
    service = make_service(clock, interpreter)

    _run_together(service, [(SID, "Bonjour"), (OTHER_SID, "Bonjour")])

    assert interpreter.max_active == 2
    assert len(service.session_store.get(SID).messages) == 3
    assert len(service.session_store.get(OTHER_SID).messages) == 3
