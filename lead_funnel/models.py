import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import MAX_MESSAGE_LENGTH

_EMAIL_PATTERN = re.compile(r"^[^\s@<>]+@[^\s@<>]+\.[a-zA-Z]{2,}$")
_PHONE_SEPARATORS = re.compile(r"[\s.\-()/]")


def sanitize_text(value: str) -> str:
    """Strip surrounding whitespace, control characters and angle brackets."""
    cleaned = "".join(
        ch for ch in value
        if ch in "\n\t" or unicodedata.category(ch) not in ("Cc", "Cf")
    )
    return cleaned.replace("<", "").replace(">", "").strip()


# ---- HTTP surface ----

class ChatRequest(BaseModel):
    sessionId: str  # 10-100 chars, [a-zA-Z0-9_-]
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    browserId: Optional[str] = None  # Opaque client-side id, optional


class MessageView(BaseModel):
    text: str
    isBot: bool
    timestamp: int  # Epoch time in ms
    showConsentRequest: bool = False
    showSurveyForm: bool = False


class GoalsSnapshot(BaseModel):
    understand_need: bool = False
    assess_urgency: bool = False
    get_timeline: bool = False
    understand_commitment: bool = False
    collect_identity: bool = False
    get_contact: bool = False


class RiskWarning(BaseModel):
    level: str
    score: int
    message: str


class ChatResponse(BaseModel):
    success: bool = True
    reply: str
    goals: GoalsSnapshot
    state: str
    completed: bool
    closed: bool
    showConsentRequest: bool = False
    showSurveyForm: bool = False
    surveyReason: Optional[str] = None
    warning: Optional[RiskWarning] = None
    warningLevel: Optional[int] = None
    warningCount: int = 0


class SessionView(BaseModel):
    success: bool = True
    sessionId: str
    messages: List[MessageView]
    completed: bool
    closedByAbuse: bool = False
    formTriggered: bool = False
    formCompleted: bool = False


# ---- Survey ----

class SurveyData(BaseModel):
    """The short structured form submitted once the conversation asks for it."""
    model_config = ConfigDict(extra="ignore")

    nom: str
    contactMethod: Literal["email", "telephone"]
    contact: str
    urgency: Literal["urgent", "non-urgent"]
    timeline: Literal["immédiat", "semaine", "mois", "flexible"]
    commitment: Literal["3h", "6h", "15h", "15h+", "+de 15h"]

    @field_validator("nom", "contact", mode="before")
    @classmethod
    def _sanitize(cls, value: Any) -> Any:
        return sanitize_text(value) if isinstance(value, str) else value

    @field_validator("nom")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if len(value) < 2:
            raise ValueError("Le nom doit contenir au moins 2 caractères")
        if len(value) > 100:
            raise ValueError("Le nom est trop long")
        return value

    @model_validator(mode="after")
    def _check_contact(self) -> "SurveyData":
        if not self.contact:
            raise ValueError("Le contact est requis")
        if self.contactMethod == "email":
            if not _EMAIL_PATTERN.match(self.contact):
                raise ValueError("Adresse email invalide")
        else:
            digits = _PHONE_SEPARATORS.sub("", self.contact).lstrip("+")
            if not digits.isdigit() or not 8 <= len(digits) <= 20:
                raise ValueError("Numéro de téléphone invalide")
        return self


class SurveyRequest(BaseModel):
    sessionId: str
    surveyData: Dict[str, Any]  # Validated by SurveyData inside the service


class QualificationSummary(BaseModel):
    grade: str
    score: int
    priority: str
    recommendedDelay: str


class SurveyResponse(BaseModel):
    success: bool = True
    message: str
    qualificationSummary: QualificationSummary


# ---- Interpreter contract ----

class ExtractedFields(BaseModel):
    """Fields the interpreter pulled out of one message. Unknown keys are dropped."""
    model_config = ConfigDict(extra="ignore")

    need: Optional[str] = None
    urgency: Optional[str] = None
    timeline: Optional[str] = None
    commitment: Optional[str] = None
    name: Optional[str] = None
    contactPreference: Optional[str] = None
    contactInfo: Optional[str] = None

    def present(self) -> Dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


class AchievedGoals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    understand_need: bool = False
    assess_urgency: bool = False
    get_timeline: bool = False
    understand_commitment: bool = False
    collect_identity: bool = False
    get_contact: bool = False


class InterpretResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reply: str
    extractedFields: ExtractedFields = Field(default_factory=ExtractedFields)
    achievedGoals: AchievedGoals = Field(default_factory=AchievedGoals)
    shouldRequestConsent: bool = False
    shouldTriggerForm: bool = False
    shouldClose: bool = False
    warningLevel: Optional[int] = Field(None, ge=1, le=3)  # Warning issued with this reply
    surveyReason: Optional[str] = None


# ---- Notify contract ----

class LeadPayload(BaseModel):
    sessionId: str
    name: str
    contactMethod: str
    contact: str
    need: Optional[str] = None
    collected: Dict[str, Optional[str]]
    qualification: Dict[str, Any]
    conversation: List[str]  # User messages only
    completedAt: int  # Epoch time in ms


class NotifyResult(BaseModel):
    success: bool
    deliveryId: Optional[str] = None
    error: Optional[str] = None
