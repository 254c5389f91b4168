"""
FUNNEL SERVICE - Per-request pipeline wiring every component together

PIPELINE ORDER (submit-message):
Rate Limiter (client) → id validation → Rate Limiter (session) →
Risk Analyzer → Ban Manager check → Session Store (fetch/create) →
Conversation State Machine (under the session lock) → ban on closure →
response assembly

Every check before the state machine fails FAST and mutates nothing but
its own counters. All components are injected; one instance per process.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set, Tuple

from pydantic import ValidationError

from .abuse_monitor import AbuseEventKind, AbuseMonitor
from .ban_manager import BanManager, classify_duration, format_remaining
from .config import LONG_BAN_MS, now_ms
from .errors import (
    Banned,
    ContentRejected,
    FunnelError,
    InvalidIdentifier,
    RateLimited,
    SessionNotFound,
    SubmissionInvalid,
)
from .identity import ClientIdentity, mask_id
from .models import (
    ChatResponse,
    GoalsSnapshot,
    LeadPayload,
    MessageView,
    QualificationSummary,
    RiskWarning,
    SessionView,
    SurveyData,
    SurveyResponse,
)
from .notifier import LeadNotifier
from .qualification import score
from .rate_limiter import RateLimiter, RateLimitResult
from .risk_analyzer import RiskLevel, analyze
from .session_store import Session, SessionStore, validate_session_id
from .state_machine import ConversationStateMachine

logger = logging.getLogger(__name__)

MEDIUM_RISK_WARNING = (
    "Votre message contient des éléments inhabituels. "
    "Merci de rester sur le sujet de la prise de parole."
)


class FunnelService:
    def __init__(self, rate_limiter: RateLimiter, abuse_monitor: AbuseMonitor,
                 ban_manager: BanManager, session_store: SessionStore,
                 state_machine: ConversationStateMachine, notifier: LeadNotifier,
                 clock: Callable[[], int] = now_ms):
        self.rate_limiter = rate_limiter
        self.abuse_monitor = abuse_monitor
        self.ban_manager = ban_manager
        self.session_store = session_store
        self.state_machine = state_machine
        self.notifier = notifier
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Boundary checks
    # ------------------------------------------------------------------

    def _reject(self, error: FunnelError, identity: ClientIdentity,
                session_id: Optional[str] = None) -> FunnelError:
        """Log a rejection with the masked identity and category, return it for raising."""
        logger.warning(
            f"⛔ Rejected [{error.category}] client={identity.masked} "
            f"session={mask_id(session_id)}: {error.message}"
        )
        return error

    def enforce_rate_limit(self, identity: ClientIdentity, policy: str,
                           key: Optional[str] = None) -> RateLimitResult:
        """
        Check one policy. A denial is recorded as abuse evidence; repeated
        denials escalate to a long ban on the client.
        """
        result = self.rate_limiter.check(key or identity.key, policy)
        if result.allowed:
            return result

        self.abuse_monitor.record_event(identity.key, AbuseEventKind.RATE_DENIED)
        if self.abuse_monitor.is_brute_force_suspected(identity.key):
            for ban_key in identity.ban_keys():
                self.ban_manager.create_ban(ban_key, "brute_force", LONG_BAN_MS)
        raise self._reject(
            RateLimited(result.retry_after_ms, headers=result.headers(), policy=policy),
            identity,
        )

    def _validate_id(self, identity: ClientIdentity, session_id: str) -> str:
        try:
            return validate_session_id(session_id)
        except InvalidIdentifier as e:
            self.abuse_monitor.record_event(identity.key, AbuseEventKind.ATTACK_ATTEMPT)
            raise self._reject(e, identity)

    def check_ban(self, identity: ClientIdentity, session_id: Optional[str] = None):
        record = self.ban_manager.find_active(identity.ban_keys(session_id))
        if record is None:
            return
        remaining = record.remaining_ms(self._clock())
        raise self._reject(
            Banned(
                remaining_ms=remaining,
                severity=classify_duration(remaining).value,
                remaining_text=format_remaining(remaining),
            ),
            identity,
            session_id,
        )

    def _screen_text(self, identity: ClientIdentity, session_id: str, text: str):
        assessment = analyze(text)
        if assessment.level == RiskLevel.HIGH:
            self.abuse_monitor.record_event(identity.key, AbuseEventKind.HIGH_RISK_MESSAGE)
            logger.warning(
                f"🚨 High-risk content from {identity.masked}: score={assessment.score} "
                f"patterns={list(assessment.matched_patterns)} preview={text[:50]!r}"
            )
            raise self._reject(
                ContentRejected(assessment.level.value, assessment.score), identity, session_id
            )
        if assessment.level == RiskLevel.MEDIUM:
            self.abuse_monitor.record_event(identity.key, AbuseEventKind.SUSPICIOUS_MESSAGE)
            logger.info(
                f"⚠️ Medium-risk content from {identity.masked}: score={assessment.score} "
                f"categories={assessment.categories}"
            )
        return assessment

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    async def submit_message(self, identity: ClientIdentity, session_id: str,
                             text: str) -> Tuple[ChatResponse, Dict[str, str]]:
        self.enforce_rate_limit(identity, "http")
        chat_limit = self.enforce_rate_limit(identity, "chat")
        self._validate_id(identity, session_id)
        self.enforce_rate_limit(identity, "session", key=f"session:{session_id}")

        assessment = self._screen_text(identity, session_id, text)
        self.check_ban(identity, session_id)

        async with self.session_store.lock_for(session_id):
            try:
                session = self.session_store.get_or_create(session_id)
            except SessionNotFound as e:
                raise self._reject(e, identity, session_id)

            warning = None
            if assessment.level == RiskLevel.MEDIUM:
                warning = RiskWarning(
                    level=assessment.level.value,
                    score=assessment.score,
                    message=MEDIUM_RISK_WARNING,
                )

            try:
                outcome = await self.state_machine.process_message(session, text)
            except FunnelError as e:
                raise self._reject(e, identity, session_id)

            if outcome.ban_duration_ms:
                reason = "inappropriate_behavior" if outcome.closure_pattern_matched else "conversation_closed"
                for ban_key in identity.ban_keys(session_id):
                    self.ban_manager.create_ban(ban_key, reason, outcome.ban_duration_ms)

            response = ChatResponse(
                reply=outcome.reply,
                goals=GoalsSnapshot(**session.goals.to_dict()),
                state=outcome.state.value,
                completed=session.completed,
                closed=session.closed_by_abuse,
                showConsentRequest=outcome.show_consent_request,
                showSurveyForm=outcome.show_survey_form,
                surveyReason=outcome.survey_reason,
                warning=warning,
                warningLevel=outcome.warning_level,
                warningCount=session.warning_count,
            )

        logger.info(
            f"💬 [{mask_id(session_id)}] state={response.state} "
            f"goals={session.goals.achieved()} reply={outcome.reply[:50]!r}"
        )
        return response, chat_limit.headers()

    async def fetch_session(self, identity: ClientIdentity, session_id: str) -> SessionView:
        self.enforce_rate_limit(identity, "http")
        self._validate_id(identity, session_id)
        async with self.session_store.lock_for(session_id):
            try:
                session = self.session_store.get_or_create(session_id)
            except SessionNotFound as e:
                raise self._reject(e, identity, session_id)
            return SessionView(
                sessionId=session.id,
                messages=[MessageView(**m.to_dict()) for m in session.messages],
                completed=session.completed,
                closedByAbuse=session.closed_by_abuse,
                formTriggered=session.form_triggered,
                formCompleted=session.form_completed,
            )

    async def submit_survey(self, identity: ClientIdentity, session_id: str,
                            fields: Dict[str, object]) -> SurveyResponse:
        self.enforce_rate_limit(identity, "http")
        self.enforce_rate_limit(identity, "survey")
        self._validate_id(identity, session_id)
        self.check_ban(identity, session_id)

        try:
            survey = SurveyData.model_validate(fields)
        except ValidationError as e:
            errors = [
                {
                    "field": ".".join(str(part) for part in err["loc"]) or "contact",
                    "message": err["msg"].replace("Value error, ", ""),
                }
                for err in e.errors()
            ]
            raise self._reject(SubmissionInvalid(errors), identity, session_id)

        self._screen_text(identity, session_id, f"{survey.nom}\n{survey.contact}")

        async with self.session_store.lock_for(session_id):
            session = self.session_store.get(session_id)
            if session is None:
                raise self._reject(SessionNotFound(), identity, session_id)
            try:
                self.state_machine.complete_with_survey(session, survey)
            except FunnelError as e:
                raise self._reject(e, identity, session_id)

            result = score(
                session.collected,
                session.conversation_text(),
                warnings_received=session.warning_count,
            )
            payload = self._lead_payload(session, survey, result.to_dict())
            session.lead = payload.model_dump()

        logger.info(
            f"🎯 Lead qualified [{mask_id(session_id)}]: grade={result.grade} "
            f"score={result.numeric_score} priority={result.priority}"
        )
        self._schedule(self.notifier.notify_with_retry(payload))

        return SurveyResponse(
            message="Merci ! Vos informations ont bien été transmises.",
            qualificationSummary=QualificationSummary(**result.summary()),
        )

    def _lead_payload(self, session: Session, survey: SurveyData, qualification: Dict) -> LeadPayload:
        return LeadPayload(
            sessionId=session.id,
            name=survey.nom,
            contactMethod=survey.contactMethod,
            contact=survey.contact,
            need=session.collected.need,
            collected=session.collected.to_dict(),
            qualification=qualification,
            conversation=session.user_messages(),
            completedAt=self._clock(),
        )

    def _schedule(self, coro):
        """Run coro in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self):
        """Wait for pending background deliveries (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_maintenance(self) -> Dict[str, int]:
        """One sweep over every store. Each store removes one entry per lock hold."""
        swept = {
            "sessions": self.session_store.sweep(),
            "rateWindows": self.rate_limiter.sweep(),
            "abuseRecords": self.abuse_monitor.sweep(),
            "bans": self.ban_manager.evict_expired(),
        }
        if any(swept.values()):
            logger.info(f"🧹 Maintenance sweep: {swept}")
        return swept

    def security_stats(self, identity: ClientIdentity) -> Dict[str, object]:
        self.enforce_rate_limit(identity, "maintenance")
        now = self._clock()
        return {
            "rateLimiter": self.rate_limiter.stats(),
            "abuse": self.abuse_monitor.stats(),
            "bans": {
                **self.ban_manager.stats(),
                "active": [record.to_dict(now) for record in self.ban_manager.active_bans()],
            },
            "sessions": self.session_store.stats(),
        }

    def lift_ban(self, identity: ClientIdentity, ban_key: str) -> bool:
        """Administrative override: lift the ban and clear any rate block on the same key."""
        self.enforce_rate_limit(identity, "maintenance")
        lifted = self.ban_manager.lift_ban(ban_key)
        self.rate_limiter.unblock(ban_key)
        return lifted
