"""
QUALIFICATION SCORER - Lead grading from collected session information

KEY DESIGN:
1. PURE: score() depends only on its arguments (no clock, no randomness)
2. Five explainable subscores (0-100), combined with FIXED weights
3. Priority follows urgency first, grade as tiebreaker
4. Every subscore carries a short analysis string for the lead notification

WEIGHTS:
- need clarity      35%
- urgency           25%
- seriousness       20%
- commitment level  15%
- experience         5%
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .session_store import CollectedInfo

WEIGHTS = {
    "need_clarity": 0.35,
    "urgency": 0.25,
    "seriousness": 0.20,
    "commitment_level": 0.15,
    "experience": 0.05,
}

BUSINESS_KEYWORDS = (
    "client", "investisseur", "présentation", "pitch", "équipe", "commercial",
    "vente", "projet", "startup", "entreprise", "business", "difficile", "stress",
    "problème", "améliorer", "développer", "manager", "formation", "compétence",
    "communication", "confiance", "performance", "objectif", "challenge", "conférence",
    "réunion", "entretien", "oral", "discours", "jury", "soutenance", "levée de fonds",
    "accompagnement", "progresser", "professionnel", "carrière", "leadership",
    "management", "négociation", "convaincre", "impact", "stratégie",
)

COMMITMENT_TIERS = {
    "3h": 40,
    "6h": 60,
    "15h": 80,
    "15h+": 100,
    "+de 15h": 100,
}
DEFAULT_COMMITMENT_SCORE = 30
NEUTRAL_EXPERIENCE_SCORE = 50

_NON_URGENT_BY_TIMELINE = {
    "immédiat": 70,
    "semaine": 60,
    "mois": 40,
    "flexible": 30,
}

DELAY_BY_PRIORITY = {
    "URGENT": "immediate",
    "HIGH": "24-48h",
    "MEDIUM": "best effort",
    "LOW": "best effort",
}


@dataclass(frozen=True)
class QualificationResult:
    grade: str
    numeric_score: int
    priority: str
    recommended_delay: str
    contributing_factors: List[str] = field(default_factory=list)
    subscores: Dict[str, int] = field(default_factory=dict)
    approach: str = ""
    analysis: Dict[str, str] = field(default_factory=dict)

    def to_dict(self):
        return {
            "grade": self.grade,
            "numericScore": self.numeric_score,
            "priority": self.priority,
            "recommendedDelay": self.recommended_delay,
            "contributingFactors": list(self.contributing_factors),
            "subscores": {
                "needClarity": self.subscores["need_clarity"],
                "urgency": self.subscores["urgency"],
                "commitmentLevel": self.subscores["commitment_level"],
                "experience": self.subscores["experience"],
                "seriousness": self.subscores["seriousness"],
            },
            "approach": self.approach,
            "analysis": dict(self.analysis),
        }

    def summary(self):
        return {
            "grade": self.grade,
            "score": self.numeric_score,
            "priority": self.priority,
            "recommendedDelay": self.recommended_delay,
        }


def _keyword_matches(text: str) -> List[str]:
    lowered = text.lower()
    return [k for k in BUSINESS_KEYWORDS if k in lowered]


def need_clarity_score(need: Optional[str], conversation_text: str, timeline: Optional[str]) -> int:
    """Length and specificity of the stated need."""
    need = (need or "").strip()
    length = len(need)
    if length == 0:
        score = 20
    elif length < 20:
        score = 35
    elif length < 50:
        score = 50
    elif length < 100:
        score = 60
    else:
        score = 70

    keywords = set(_keyword_matches(need)) | set(_keyword_matches(conversation_text))
    score += min(len(keywords) * 5, 25)
    if timeline:
        score += 10
    return min(score, 100)


def urgency_score(urgency: Optional[str], timeline: Optional[str]) -> int:
    if urgency == "urgent":
        return 100
    if urgency == "non-urgent":
        return _NON_URGENT_BY_TIMELINE.get(timeline or "", 30)
    # Conversation-only sessions may have a timeline without an explicit flag
    if timeline == "immédiat":
        return 80
    return 50


def commitment_score(commitment: Optional[str]) -> int:
    return COMMITMENT_TIERS.get((commitment or "").strip(), DEFAULT_COMMITMENT_SCORE)


def seriousness_score(collected: CollectedInfo, warnings_received: int, closed_by_abuse: bool) -> int:
    score = 70
    if collected.contact_info:
        score += 15
    if collected.need and len(collected.need.strip()) >= 20:
        score += 10
    score -= 15 * max(0, warnings_received)
    if closed_by_abuse:
        score -= 50
    return max(0, min(score, 100))


def grade_for(numeric_score: int) -> str:
    if numeric_score >= 90:
        return "A+"
    if numeric_score >= 75:
        return "A"
    if numeric_score >= 60:
        return "B"
    if numeric_score >= 40:
        return "C"
    return "D"


def priority_for(grade: str, urgent: bool) -> str:
    if grade in ("A+", "A"):
        return "URGENT" if urgent else "HIGH"
    if grade == "B":
        return "MEDIUM"
    return "LOW"


def approach_for(numeric_score: int, need_clarity: int) -> str:
    if numeric_score >= 85:
        return "Appel direct avec proposition de créneau dans la journée. Prospect très qualifié, besoin clair et urgent."
    if numeric_score >= 75:
        return "Appel de qualification avec proposition de rendez-vous rapide. Bon prospect avec besoin identifié."
    if numeric_score >= 60:
        return "Appel de qualification pour clarifier le besoin avant proposition. Prospect à développer."
    if need_clarity < 40:
        return "Email de qualification préalable pour mieux comprendre le besoin avant appel."
    return "Évaluer la pertinence avant tout contact. Prospect à faible potentiel."


def _analysis(subscores: Dict[str, int], collected: CollectedInfo) -> Dict[str, str]:
    need = subscores["need_clarity"]
    if need >= 75:
        need_text = "Besoin professionnel clairement exprimé avec vocabulaire approprié"
    elif need >= 50:
        need_text = "Besoin professionnel identifié mais manque de précision"
    else:
        need_text = "Besoin exprimé de manière très succincte, nécessite clarification"

    if collected.urgency == "urgent":
        urgency_text = "Urgence déclarée par le prospect"
    elif collected.timeline:
        urgency_text = f"Pas d'urgence déclarée, échéance : {collected.timeline}"
    else:
        urgency_text = "Urgence non renseignée"

    commitment_text = (
        f"Investissement en temps : {collected.commitment}" if collected.commitment
        else "Investissement en temps non renseigné"
    )
    seriousness = subscores["seriousness"]
    seriousness_text = (
        "Échange sérieux et coordonnées fournies" if seriousness >= 80
        else "Sérieux à confirmer lors du premier contact" if seriousness >= 50
        else "Comportement problématique pendant l'échange"
    )
    return {
        "needClarity": need_text,
        "urgency": urgency_text,
        "commitmentLevel": commitment_text,
        "experience": "Expérience non évaluée (valeur neutre)",
        "seriousness": seriousness_text,
    }


def score(collected: CollectedInfo, conversation_text: str = "", *,
          warnings_received: int = 0, closed_by_abuse: bool = False) -> QualificationResult:
    """
    Grade a lead.

    warnings_received and closed_by_abuse only lower the seriousness subscore.
    """
    subscores = {
        "need_clarity": need_clarity_score(collected.need, conversation_text or "", collected.timeline),
        "urgency": urgency_score(collected.urgency, collected.timeline),
        "commitment_level": commitment_score(collected.commitment),
        "experience": NEUTRAL_EXPERIENCE_SCORE,
        "seriousness": seriousness_score(collected, warnings_received, closed_by_abuse),
    }
    numeric = round(sum(subscores[name] * weight for name, weight in WEIGHTS.items()))
    numeric = max(0, min(numeric, 100))

    grade = grade_for(numeric)
    urgent = collected.urgency == "urgent"
    priority = priority_for(grade, urgent)

    factors = []
    if urgent:
        factors.append("urgence déclarée")
    if subscores["need_clarity"] >= 75:
        factors.append("besoin clairement exprimé")
    elif subscores["need_clarity"] < 40:
        factors.append("besoin peu précis")
    if subscores["commitment_level"] >= 80:
        factors.append("fort investissement en temps")
    if collected.contact_info:
        factors.append("coordonnées fournies")
    if warnings_received:
        factors.append(f"{warnings_received} avertissement(s) pendant l'échange")
    if closed_by_abuse:
        factors.append("conversation fermée pour abus")

    return QualificationResult(
        grade=grade,
        numeric_score=numeric,
        priority=priority,
        recommended_delay=DELAY_BY_PRIORITY[priority],
        contributing_factors=factors,
        subscores=subscores,
        approach=approach_for(numeric, subscores["need_clarity"]),
        analysis=_analysis(subscores, collected),
    )
