"""
STATE MACHINE - Per-session conversation flow for lead qualification

Controls goal tracking, information extraction, consent/form requests and
abuse closure, driven by the interpreter's structured signals.

KEY DESIGN:
1. ATOMIC: the interpreter is awaited FIRST, then every change is applied
   in one synchronous step. A failure or timeout leaves the session untouched
2. shouldClose is a PRIORITY signal and wins over every other signal
   (the warning sequence is enforced where the interpreter reads its markers)
3. A warning increments the session warning count by exactly one and
   suppresses consent/form signals for that turn
4. Terminal states (completed, closed_by_abuse) ignore further messages
5. Free text never completes a session; only the survey submission does
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError

from .config import INTERPRETER_TIMEOUT_S, LONG_BAN_MS, SHORT_BAN_MS, now_ms
from .errors import InterpreterFailure, SubmissionInvalid
from .escalation import MAX_WARNINGS
from .identity import mask_id
from .models import InterpretResult, SurveyData
from .session_store import ChatMessage, Session

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """
    State Flow:
    ACTIVE -> AWAITING_CONSENT -> FORM_REQUESTED -> COMPLETED
       |             |                  |
       +-------------+------------------+-----> CLOSED_BY_ABUSE
    """
    ACTIVE = "active"                      # Initial state, gathering needs
    AWAITING_CONSENT = "awaiting_consent"  # Asked permission to collect contact details
    FORM_REQUESTED = "form_requested"      # Survey form shown to the visitor
    COMPLETED = "completed"                # Survey submitted (terminal, success)
    CLOSED_BY_ABUSE = "closed_by_abuse"    # Closed by the assistant (terminal, failure)


TERMINAL_STATES = (ConversationState.COMPLETED, ConversationState.CLOSED_BY_ABUSE)


def state_of(session: Session) -> ConversationState:
    """Derive the state from the session flags, most advanced first."""
    if session.closed_by_abuse:
        return ConversationState.CLOSED_BY_ABUSE
    if session.completed:
        return ConversationState.COMPLETED
    if session.form_triggered:
        return ConversationState.FORM_REQUESTED
    if session.consent_requested:
        return ConversationState.AWAITING_CONSENT
    return ConversationState.ACTIVE


# Phrasings the assistant uses when it ends a chat for inappropriate behavior.
# A match selects the short ban; any other forced closure gets the long one.
CLOSURE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"cette conversation est terminée",
        r"je ne peux pas continuer cette conversation",
        r"veuillez adopter un ton respectueux",
        r"comportement inapproprié",
        r"uniquement là pour accompagner les personnes ayant un réel besoin",
        r"parlons de coaching ou je dois fermer",
        r"dernière tentative",
    )
]


def matches_closure_pattern(reply: str) -> bool:
    return any(p.search(reply) for p in CLOSURE_PATTERNS)


# Interpreter field name -> CollectedInfo attribute
_COLLECTED_FIELDS = {
    "need": "need",
    "urgency": "urgency",
    "timeline": "timeline",
    "commitment": "commitment",
    "name": "name",
    "contactPreference": "contact_preference",
    "contactInfo": "contact_info",
}

COMPLETED_REPLY = (
    "Cette conversation est terminée. Merci pour votre confiance, "
    "Léo reviendra vers vous très rapidement."
)
CLOSED_REPLY = "Cette conversation a été fermée."


@dataclass
class TransitionOutcome:
    """What one processed message changed, for the caller to act on."""
    reply: str
    previous_state: ConversationState
    state: ConversationState
    show_consent_request: bool = False
    show_survey_form: bool = False
    survey_reason: Optional[str] = None
    warning_level: Optional[int] = None
    ban_duration_ms: Optional[int] = None  # Set when the caller must create a ban
    closure_pattern_matched: bool = False
    ignored: bool = False  # Terminal session, nothing applied

    @property
    def closed(self) -> bool:
        return self.state == ConversationState.CLOSED_BY_ABUSE


class ConversationStateMachine:
    """
    Applies interpreter results to a Session.

    The caller holds the session lock around process_message, so all
    mutations of one session happen one message at a time.
    """

    def __init__(self, interpreter, timeout_s: float = INTERPRETER_TIMEOUT_S,
                 clock: Callable[[], int] = now_ms):
        self.interpreter = interpreter
        self.timeout_s = timeout_s
        self._clock = clock

    async def process_message(self, session: Session, text: str) -> TransitionOutcome:
        current = state_of(session)
        if current in TERMINAL_STATES:
            logger.info(f"Session {mask_id(session.id)} is {current.value}, message ignored")
            return TransitionOutcome(
                reply=CLOSED_REPLY if current == ConversationState.CLOSED_BY_ABUSE else COMPLETED_REPLY,
                previous_state=current,
                state=current,
                ignored=True,
            )

        result = await self._interpret(session, text)
        return self._apply(session, text, result, current)

    async def _interpret(self, session: Session, text: str) -> InterpretResult:
        try:
            result = await asyncio.wait_for(
                self.interpreter.interpret(session, text), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ Interpreter timeout after {self.timeout_s}s for {mask_id(session.id)}")
            raise InterpreterFailure(cause=e)
        except InterpreterFailure:
            raise
        except Exception as e:
            logger.error(f"❌ Interpreter error for {mask_id(session.id)}: {type(e).__name__}: {e}")
            raise InterpreterFailure(cause=e)

        if isinstance(result, InterpretResult):
            return result
        try:
            return InterpretResult.model_validate(result)
        except ValidationError as e:
            logger.error(f"❌ Malformed interpreter result for {mask_id(session.id)}: {e}")
            raise InterpreterFailure(cause=e)

    def _apply(self, session: Session, text: str, result: InterpretResult,
               previous: ConversationState) -> TransitionOutcome:
        """Apply a successful interpretation. Nothing in here awaits or raises."""
        now = self._clock()
        outcome = TransitionOutcome(reply=result.reply, previous_state=previous, state=previous)

        extracted = result.extractedFields.present()
        session.collected.merge({_COLLECTED_FIELDS[k]: v for k, v in extracted.items()})
        session.goals.merge(result.achievedGoals.model_dump())

        session.append(ChatMessage(text=text, is_bot=False, timestamp=now))

        if result.shouldClose:
            session.closed_by_abuse = True
            session.completed = True
            outcome.closure_pattern_matched = matches_closure_pattern(result.reply)
            outcome.ban_duration_ms = SHORT_BAN_MS if outcome.closure_pattern_matched else LONG_BAN_MS
            logger.warning(
                f"🚫 Session {mask_id(session.id)} closed by assistant "
                f"({'closure phrase' if outcome.closure_pattern_matched else 'forced closure'})"
            )
        elif result.warningLevel:
            session.warning_count = min(session.warning_count + 1, MAX_WARNINGS)
            outcome.warning_level = session.warning_count
            logger.warning(f"⚠️ Session {mask_id(session.id)} warned ({session.warning_count}/{MAX_WARNINGS})")
        else:
            if result.shouldRequestConsent and not session.consent_requested:
                session.consent_requested = True
                outcome.show_consent_request = True
            if result.shouldTriggerForm and not session.form_completed:
                session.form_triggered = True
                outcome.show_survey_form = True
                outcome.survey_reason = result.surveyReason

        session.append(ChatMessage(
            text=result.reply,
            is_bot=True,
            timestamp=now,
            show_consent_request=outcome.show_consent_request,
            show_survey_form=outcome.show_survey_form,
        ))

        outcome.state = state_of(session)
        if outcome.state != previous:
            logger.info(f"Session {mask_id(session.id)}: {previous.value} -> {outcome.state.value}")
        return outcome

    def complete_with_survey(self, session: Session, survey: SurveyData) -> TransitionOutcome:
        """The only path to COMPLETED on the success side."""
        previous = state_of(session)
        if previous in TERMINAL_STATES:
            raise SubmissionInvalid(
                [{"field": "sessionId", "message": "Cette conversation est déjà terminée"}],
                message="Formulaire déjà soumis pour cette session",
            )

        session.collected.merge({
            "name": survey.nom,
            "contact_preference": survey.contactMethod,
            "contact_info": survey.contact,
            "urgency": survey.urgency,
            "timeline": survey.timeline,
            "commitment": survey.commitment,
        })
        session.goals.merge({
            "collect_identity": True,
            "get_contact": True,
            "assess_urgency": True,
            "get_timeline": True,
            "understand_commitment": True,
        })
        session.form_triggered = True
        session.form_completed = True
        session.completed = True

        reply = (
            f"Merci {survey.nom} ! Vos informations ont bien été transmises. "
            f"Léo vous recontactera par {'email' if survey.contactMethod == 'email' else 'téléphone'}."
        )
        session.append(ChatMessage(text=reply, is_bot=True, timestamp=self._clock()))
        logger.info(f"✅ Session {mask_id(session.id)}: {previous.value} -> completed (survey)")
        return TransitionOutcome(reply=reply, previous_state=previous, state=ConversationState.COMPLETED)
