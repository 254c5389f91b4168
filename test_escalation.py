"""
WARNING ESCALATION TESTS
"""

import pytest

from lead_funnel.escalation import MAX_WARNINGS, escalate, warning_prompt_context


def test_no_request_is_no_action():
    step = escalate(2)
    assert not step.is_action
    assert not step.close


@pytest.mark.parametrize("count,expected", [(0, 1), (1, 2), (2, 3)])
def test_premature_ban_becomes_next_warning(count, expected):
    step = escalate(count, ban_requested=True)
    assert step.warning_level == expected
    assert not step.close


def test_ban_allowed_after_three_warnings():
    step = escalate(MAX_WARNINGS, ban_requested=True)
    assert step.close
    assert step.warning_level is None


def test_warning_levels_cannot_be_skipped():
    assert escalate(0, requested_level=3).warning_level == 1
    assert escalate(2, requested_level=1).warning_level == 3


def test_fourth_warning_closes():
    assert escalate(3, requested_level=3).close


def test_prompt_context_names_next_marker():
    assert "[TRIGGER_WARNING_1]" in warning_prompt_context(0)
    assert "[TRIGGER_WARNING_3]" in warning_prompt_context(2)
    assert "[TRIGGER_BAN]" in warning_prompt_context(7)
