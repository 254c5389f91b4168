"""
Shared test doubles: a controllable clock and a scripted interpreter.
"""

import pytest

from lead_funnel.models import InterpretResult

T0 = 1_700_000_000_000


class FakeClock:
    """Injectable millisecond clock."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class ScriptedInterpreter:
    """
    Returns the scripted results in order. An exception instance in the
    script is raised instead of returned.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def push(self, item):
        self.script.append(item)

    async def interpret(self, session, text):
        self.calls.append(text)
        item = self.script.pop(0) if self.script else InterpretResult(reply="D'accord.")
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def interpreter():
    return ScriptedInterpreter()
