"""
QUALIFICATION SCORER TESTS
"""

import pytest

from lead_funnel.qualification import (
    COMMITMENT_TIERS,
    WEIGHTS,
    commitment_score,
    grade_for,
    priority_for,
    score,
)
from lead_funnel.session_store import CollectedInfo

NEED = "Je dois préparer un pitch pour des investisseurs et gagner en confiance à l'oral"


def _jean_martin() -> CollectedInfo:
    return CollectedInfo(
        need=NEED,
        urgency="urgent",
        timeline="immédiat",
        commitment="6h",
        name="Jean Martin",
        contact_preference="email",
        contact_info="jean@example.com",
    )


def test_survey_scenario_is_b_or_better_and_urgent_or_high():
    result = score(_jean_martin(), NEED)
    assert result.grade in ("A+", "A", "B")
    assert result.priority in ("URGENT", "HIGH")
    assert result.recommended_delay in ("immediate", "24-48h")


def test_scoring_is_deterministic():
    first = score(_jean_martin(), NEED, warnings_received=1)
    second = score(_jean_martin(), NEED, warnings_received=1)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_weights_are_fixed_and_sum_to_one():
    assert sum(WEIGHTS.values()) == pytest.approx(1.0)


def test_subscores_are_bounded():
    result = score(_jean_martin(), NEED * 10, warnings_received=50, closed_by_abuse=True)
    for value in result.subscores.values():
        assert 0 <= value <= 100
    assert 0 <= result.numeric_score <= 100


def test_experience_is_neutral():
    assert score(CollectedInfo()).subscores["experience"] == 50


def test_commitment_tiers_increase():
    values = [commitment_score(t) for t in ("3h", "6h", "15h", "15h+")]
    assert values == sorted(values)
    assert commitment_score("+de 15h") == COMMITMENT_TIERS["15h+"]
    assert commitment_score(None) == 30


def test_urgency_drives_urgency_subscore():
    urgent = score(_jean_martin())
    calm = CollectedInfo(**{**_jean_martin().__dict__, "urgency": "non-urgent", "timeline": "flexible"})
    assert urgent.subscores["urgency"] > score(calm).subscores["urgency"]


def test_warnings_lower_seriousness():
    clean = score(_jean_martin(), NEED)
    warned = score(_jean_martin(), NEED, warnings_received=2)
    closed = score(_jean_martin(), NEED, closed_by_abuse=True)
    assert warned.subscores["seriousness"] < clean.subscores["seriousness"]
    assert closed.subscores["seriousness"] < clean.subscores["seriousness"]


def test_empty_lead_is_low_priority():
    result = score(CollectedInfo())
    assert result.grade in ("C", "D")
    assert result.priority == "LOW"
    assert result.recommended_delay == "best effort"


@pytest.mark.parametrize("value,grade", [
    (100, "A+"), (90, "A+"), (89, "A"), (75, "A"), (74, "B"), (60, "B"), (59, "C"), (40, "C"), (39, "D"), (0, "D"),
])
def test_grade_thresholds(value, grade):
    assert grade_for(value) == grade


def test_priority_table():
    assert priority_for("A+", True) == "URGENT"
    assert priority_for("A", True) == "URGENT"
    assert priority_for("A", False) == "HIGH"
    assert priority_for("B", True) == "MEDIUM"
    assert priority_for("C", True) == "LOW"
    assert priority_for("D", False) == "LOW"


def test_result_carries_approach_and_analysis():
    result = score(_jean_martin(), NEED)
    assert result.approach
    assert set(result.analysis) == {"needClarity", "urgency", "commitmentLevel", "experience", "seriousness"}
    assert "urgence déclarée" in result.contributing_factors
