"""
RISK ANALYZER - Pattern-based risk scoring of visitor text

KEY DESIGN:
1. PURE: analyze(text) has no state and no side effects
2. Score is BOUNDED: weighted sum of matched categories, clamped to 0-100
3. Each category counts ONCE, however many of its patterns match
4. Categories are evaluated in a fixed order so matched_patterns is stable

LEVEL THRESHOLDS (conservative - favor medium over high):
- 0-29:   LOW    (accepted)
- 30-69:  MEDIUM (accepted with warning)
- 70-100: HIGH   (hard block, message never reaches the conversation)
"""

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


THRESHOLD_MEDIUM = 30
THRESHOLD_HIGH = 70


@dataclass(frozen=True)
class RiskAssessment:
    """Result of one analysis. Computed per message, never stored."""
    level: RiskLevel
    score: int
    matched_patterns: Tuple[str, ...] = ()
    confidence: float = 0.0

    @property
    def categories(self) -> List[str]:
        seen: List[str] = []
        for pattern_id in self.matched_patterns:
            category = pattern_id.split(":", 1)[0]
            if category not in seen:
                seen.append(category)
        return seen

    def to_dict(self):
        return {
            "level": self.level.value,
            "score": self.score,
            "matchedPatterns": list(self.matched_patterns),
            "confidence": self.confidence,
        }


@dataclass
class PatternCategory:
    """
    One independent category of suspicious content.

    Either a list of named regexes, or a custom detector returning the
    identifiers it matched (for checks a regex expresses badly).
    """
    name: str
    weight: int
    description: str
    patterns: List[Tuple[str, re.Pattern]] = field(default_factory=list)
    detector: Optional[Callable[[str], List[str]]] = None

    def match(self, text: str) -> List[str]:
        hits = [f"{self.name}:{pid}" for pid, pattern in self.patterns if pattern.search(text)]
        if self.detector is not None:
            hits.extend(f"{self.name}:{pid}" for pid in self.detector(text))
        return hits


def _control_characters(text: str) -> List[str]:
    """Non-printable characters other than ordinary whitespace."""
    if "\x00" in text:
        return ["null_byte"]
    control = sum(
        1 for ch in text
        if ch not in "\n\r\t" and unicodedata.category(ch) in ("Cc", "Cf", "Co", "Cn")
    )
    if control >= 3 or (text and control / len(text) > 0.05):
        return ["non_printable"]
    return []


_REPEATED_CHAR = re.compile(r"(.)\1{9,}", re.DOTALL)
_REPEATED_WORD = re.compile(r"\b(\w+)(?:\W+\1\b){5,}", re.IGNORECASE)


def _flooding(text: str) -> List[str]:
    hits = []
    if _REPEATED_CHAR.search(text):
        hits.append("repeated_char")
    if _REPEATED_WORD.search(text):
        hits.append("repeated_word")
    return hits


ABUSIVE_PHRASES = (
    "connard", "salope", "enculé", "pute", "merde",
    "fuck", "shit", "bitch", "asshole",
)
_ABUSIVE = re.compile(r"\b(?:" + "|".join(re.escape(p) for p in ABUSIVE_PHRASES) + r")\b", re.IGNORECASE)


def contains_abusive_language(text: str) -> bool:
    return bool(_ABUSIVE.search(text or ""))


def _abusive_language(text: str) -> List[str]:
    return ["abusive_phrase"] if contains_abusive_language(text) else []


def _build_categories() -> List[PatternCategory]:
    """Ordered category list. Order defines matched_patterns ordering."""
    i = re.IGNORECASE
    return [
        PatternCategory(
            name="script_injection",
            weight=75,
            description="Script or active markup injection",
            patterns=[
                ("script_tag", re.compile(r"<\s*script[^>]*>", i)),
                ("iframe_tag", re.compile(r"<\s*iframe[^>]*>", i)),
                ("object_embed", re.compile(r"<\s*(?:object|embed)[^>]*>", i)),
                ("js_protocol", re.compile(r"(?:java|vb)script\s*:", i)),
                ("data_html", re.compile(r"data\s*:\s*text/html", i)),
                ("inline_handler", re.compile(r"<[^>]+\bon(?:click|load|error|mouseover|focus|change)\s*=", i)),
            ],
        ),
        PatternCategory(
            name="sql_injection",
            weight=70,
            description="SQL injection tokens",
            patterns=[
                ("quote_terminator", re.compile(r"'\s*;\s*(?:union|select|insert|update|delete|drop)\b", i)),
                ("union_select", re.compile(r"\bunion\s+(?:all\s+)?select\b", i)),
                ("ddl_dml", re.compile(r"\b(?:drop\s+table|insert\s+into|delete\s+from)\b", i)),
                ("tautology", re.compile(r"'\s*or\s+'?1'?\s*=\s*'?1", i)),
            ],
        ),
        PatternCategory(
            name="command_injection",
            weight=70,
            description="Shell command injection tokens",
            patterns=[
                ("piped_shell", re.compile(r"[|;&]\s*(?:curl|wget|nc|netcat|bash|sh|cmd|powershell)\b", i)),
                ("subshell", re.compile(r"\$\([^)]*\)")),
                ("backticks", re.compile(r"`[^`]+`")),
                ("dangerous_protocol", re.compile(r"\b(?:file|ftp)\s*://", i)),
            ],
        ),
        PatternCategory(
            name="prompt_injection",
            weight=70,
            description="Attempt to override the assistant's role",
            patterns=[
                ("game_over", re.compile(r"\*\*ATTENTION\*\*.*jeu.*fini", i | re.DOTALL)),
                ("role_reset_fr", re.compile(r"tu\s+n'es\s+plus\s+un?e?\s+(?:closeur|assistante?|coach)", i)),
                ("answer_freely", re.compile(r"tu\s+peux\s+répondre\s+librement", i)),
                ("ignore_instructions_fr", re.compile(r"(?:ignore|oublie)\s+(?:toutes?\s+)?(?:les?\s+|tes?\s+)?instructions?", i)),
                ("ignore_instructions_en", re.compile(r"ignore\s+(?:all\s+)?(?:previous|prior|system)\s+instructions?", i)),
                ("new_role", re.compile(r"tu\s+es\s+(?:maintenant|désormais)\s+un", i)),
                ("system_prompt_leak", re.compile(r"(?:system\s+prompt|prompt\s+système)", i)),
            ],
        ),
        PatternCategory(
            name="path_traversal",
            weight=50,
            description="Path traversal sequences",
            patterns=[
                ("dot_dot_slash", re.compile(r"\.\./|\.\.\\")),
                ("encoded_traversal", re.compile(r"%2e%2e%2f", i)),
            ],
        ),
        PatternCategory(
            name="control_characters",
            weight=40,
            description="Excessive non-printable or control characters",
            detector=_control_characters,
        ),
        PatternCategory(
            name="abusive_language",
            weight=35,
            description="Known abusive phrase",
            detector=_abusive_language,
        ),
        PatternCategory(
            name="flooding",
            weight=30,
            description="Repeated-character or repeated-word flooding",
            detector=_flooding,
        ),
        PatternCategory(
            name="suspicious_encoding",
            weight=20,
            description="Encoded or escaped payload fragments",
            patterns=[
                ("url_encoded_run", re.compile(r"(?:%3c|%3e|%22|%27|%20){2,}", i)),
                ("hex_escape", re.compile(r"\\x[0-9a-f]{2}", i)),
                ("unicode_escape", re.compile(r"\\u[0-9a-f]{4}", i)),
            ],
        ),
        PatternCategory(
            name="technical_probe",
            weight=15,
            description="Security-testing vocabulary",
            patterns=[
                ("exploit_words", re.compile(r"\b(?:payload|injection|exploit)\b", i)),
                ("event_handlers", re.compile(r"\b(?:onclick|onload|onerror|onmouseover|onfocus|onchange)\b", i)),
                ("ldap_fragments", re.compile(r"\(\||\)\(|\*\)")),
            ],
        ),
        PatternCategory(
            name="special_char_cluster",
            weight=10,
            description="Clusters of markup-significant characters",
            patterns=[
                ("bracket_cluster", re.compile(r"[<>\"'{}\[\]]{3,}")),
            ],
        ),
    ]


CATEGORIES: List[PatternCategory] = _build_categories()


def level_for_score(score: int) -> RiskLevel:
    if score >= THRESHOLD_HIGH:
        return RiskLevel.HIGH
    if score >= THRESHOLD_MEDIUM:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def confidence_for(category_count: int) -> float:
    """More independent categories agreeing -> higher confidence (0 when nothing matched)."""
    if category_count <= 0:
        return 0.0
    return round(min(0.99, 1 - 0.5 ** category_count), 3)


def analyze(text: str) -> RiskAssessment:
    """
    Score a text for suspicious patterns.

    Deterministic: the same text always yields the same assessment.
    A text with no matched pattern is always level=low, score=0.
    """
    if not text:
        return RiskAssessment(level=RiskLevel.LOW, score=0)

    matched: List[str] = []
    score = 0
    categories_hit = 0
    for category in CATEGORIES:
        hits = category.match(text)
        if hits:
            matched.extend(hits)
            score += category.weight
            categories_hit += 1

    score = max(0, min(score, 100))
    return RiskAssessment(
        level=level_for_score(score),
        score=score,
        matched_patterns=tuple(matched),
        confidence=confidence_for(categories_hit),
    )
