"""
ESCALATION - Warning sequence before an assistant-initiated closure

Strict order per session: warning 1 -> warning 2 -> warning 3 -> close.
The assistant may ask for any warning level or for an immediate ban; the
request is corrected to the next step of the sequence, so a visitor is never
closed before having received three warnings.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MAX_WARNINGS = 3

WARNING_MESSAGES = {
    1: "⚠️ ATTENTION - Ce chat est exclusivement dédié au coaching en prise de parole. "
       "Parlons de votre projet professionnel.",
    2: "🚨 DERNIER AVERTISSEMENT - Recentrez-vous sur votre besoin en coaching "
       "ou cette conversation se fermera.",
    3: "🚫 FERMETURE IMMINENTE - Dernière chance de parler sérieusement de coaching "
       "avant fermeture définitive.",
}
BAN_REPLY = "Conversation fermée pour comportement inapproprié répété."

_PROMPT_CONTEXTS = {
    0: "AVERTISSEMENTS : aucun pour l'instant. Si comportement inapproprié, utilise [TRIGGER_WARNING_1].",
    1: "AVERTISSEMENTS : 1 déjà donné. Si nouveau comportement inapproprié, utilise [TRIGGER_WARNING_2].",
    2: "AVERTISSEMENTS : 2 déjà donnés. Si nouveau comportement inapproprié, utilise [TRIGGER_WARNING_3].",
    3: "AVERTISSEMENTS : 3 déjà donnés. Si nouveau comportement inapproprié, utilise [TRIGGER_BAN].",
}


@dataclass(frozen=True)
class EscalationStep:
    warning_level: Optional[int] = None  # Warning to issue now
    close: bool = False                  # Sequence exhausted, close the chat

    @property
    def is_action(self) -> bool:
        return self.close or self.warning_level is not None


def escalate(warning_count: int, ban_requested: bool = False,
             requested_level: Optional[int] = None) -> EscalationStep:
    """
    Correct an assistant request to the next legal step.

    A ban request with fewer than MAX_WARNINGS warnings becomes the next
    warning. A warning request always becomes warning_count + 1, and a fourth
    warning becomes a closure.
    """
    if not ban_requested and requested_level is None:
        return EscalationStep()

    next_level = warning_count + 1
    if next_level > MAX_WARNINGS:
        return EscalationStep(close=True)

    if ban_requested:
        logger.warning(f"🛑 Ban requested with {warning_count} warning(s), issuing warning {next_level} instead")
    elif requested_level != next_level:
        logger.info(f"Warning level {requested_level} corrected to {next_level}")
    return EscalationStep(warning_level=next_level)


def warning_prompt_context(warning_count: int) -> str:
    return _PROMPT_CONTEXTS[min(max(warning_count, 0), MAX_WARNINGS)]
