"""
ERRORS - Failure taxonomy for the funnel pipeline

Every rejection is raised as a FunnelError subclass at the boundary BEFORE
any state is mutated. The HTTP layer renders them with one handler.
"""

from typing import Any, Dict, List, Optional


class FunnelError(Exception):
    """Base class: carries a stable category and the HTTP status to render."""

    category = "internal_error"
    status_code = 500
    public_message = "Erreur serveur"

    def __init__(self, message: Optional[str] = None, **extras: Any):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.extras: Dict[str, Any] = extras

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message, "category": self.category}
        body.update(self.extras)
        return body


class InvalidIdentifier(FunnelError):
    category = "invalid_identifier"
    status_code = 400
    public_message = "Session ID invalide"


class RateLimited(FunnelError):
    category = "rate_limited"
    status_code = 429
    public_message = "Trop de requêtes. Veuillez patienter."

    def __init__(self, retry_after_ms: int, headers: Optional[Dict[str, str]] = None,
                 message: Optional[str] = None, **extras: Any):
        super().__init__(message, rateLimit=True, retryAfterMs=retry_after_ms, **extras)
        self.retry_after_ms = retry_after_ms
        self.headers = headers or {}


class Banned(FunnelError):
    category = "banned"
    status_code = 403
    public_message = "Session bloquée suite à un usage non-conforme"

    def __init__(self, remaining_ms: int, severity: str, remaining_text: str = "",
                 message: Optional[str] = None):
        super().__init__(
            message,
            banned=True,
            remainingMs=remaining_ms,
            severity=severity,
            timeRemaining=remaining_text,
        )
        self.remaining_ms = remaining_ms
        self.severity = severity


class ContentRejected(FunnelError):
    category = "content_rejected"
    status_code = 403
    public_message = "Message bloqué pour des raisons de sécurité"

    def __init__(self, risk_level: str, score: int, message: Optional[str] = None):
        super().__init__(
            message,
            riskLevel=risk_level,
            riskScore=score,
            guidance=(
                "Votre message contient des éléments non autorisés. "
                "Veuillez reformuler votre demande sans caractères spéciaux."
            ),
        )


class SessionNotFound(FunnelError):
    category = "session_not_found"
    status_code = 410
    public_message = "Session expirée. Veuillez redémarrer la conversation."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, expired=True, requiresRestart=True)


class InterpreterFailure(FunnelError):
    category = "interpreter_failure"
    status_code = 502
    public_message = "Erreur de traitement, veuillez réessayer."

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, retryable=True)
        self.cause = cause


class SubmissionInvalid(FunnelError):
    category = "submission_invalid"
    status_code = 422
    public_message = "Données du formulaire invalides"

    def __init__(self, field_errors: List[Dict[str, str]], message: Optional[str] = None):
        super().__init__(message, details=field_errors)
        self.field_errors = field_errors


class NotificationFailure(FunnelError):
    """Lead delivery failed. Logged by the notifier, never surfaced to the visitor."""

    category = "notification_failure"
    status_code = 502
