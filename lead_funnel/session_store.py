"""
SESSION STORE - In-memory conversation sessions

KEY DESIGN:
1. Session is ONE fixed type: every sub-state exists from creation
2. Goals are monotonic, collected fields are overwrite-only (never deleted)
3. Messages are append-only except for the bounded trim, which keeps the
   welcome message at position 0
4. Sessions older than the max age are EXPIRED: reported as not found,
   never silently revived
5. One asyncio.Lock per session serializes same-session processing
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Callable, Dict, List, Optional

from .config import (
    MAX_MESSAGES_IN_MEMORY,
    RATE_WINDOW_IDLE_EVICTION_MS,
    SESSION_ID_MAX_LENGTH,
    SESSION_ID_MIN_LENGTH,
    SESSION_MAX_AGE_MS,
    WELCOME_MESSAGE,
    now_ms,
)
from .errors import InvalidIdentifier, SessionNotFound
from .identity import mask_id

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(
    r"^[a-zA-Z0-9_-]{%d,%d}$" % (SESSION_ID_MIN_LENGTH, SESSION_ID_MAX_LENGTH)
)


@dataclass
class ChatMessage:
    text: str
    is_bot: bool
    timestamp: int
    show_consent_request: bool = False
    show_survey_form: bool = False

    def to_dict(self):
        return {
            "text": self.text,
            "isBot": self.is_bot,
            "timestamp": self.timestamp,
            "showConsentRequest": self.show_consent_request,
            "showSurveyForm": self.show_survey_form,
        }


@dataclass
class ConversationGoals:
    understand_need: bool = False
    assess_urgency: bool = False
    get_timeline: bool = False
    understand_commitment: bool = False
    collect_identity: bool = False
    get_contact: bool = False

    def merge(self, achieved: Dict[str, bool]):
        """OR newly achieved goals in. A goal is never reset."""
        for f in fields(self):
            if achieved.get(f.name):
                setattr(self, f.name, True)

    def achieved(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name)]

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass
class CollectedInfo:
    need: Optional[str] = None
    urgency: Optional[str] = None
    timeline: Optional[str] = None
    commitment: Optional[str] = None
    name: Optional[str] = None
    contact_preference: Optional[str] = None
    contact_info: Optional[str] = None

    def merge(self, extracted: Dict[str, Optional[str]]):
        """Newer non-empty values overwrite older ones; nothing is cleared."""
        for f in fields(self):
            value = extracted.get(f.name)
            if value:
                setattr(self, f.name, value)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "need": self.need,
            "urgency": self.urgency,
            "timeline": self.timeline,
            "commitment": self.commitment,
            "name": self.name,
            "contactPreference": self.contact_preference,
            "contactInfo": self.contact_info,
        }


@dataclass
class Session:
    id: str
    created_at: int
    messages: List[ChatMessage] = field(default_factory=list)
    goals: ConversationGoals = field(default_factory=ConversationGoals)
    collected: CollectedInfo = field(default_factory=CollectedInfo)
    consent_requested: bool = False
    form_triggered: bool = False
    form_completed: bool = False
    completed: bool = False
    closed_by_abuse: bool = False
    warning_count: int = 0  # Escalation warnings issued by the assistant
    lead: Optional[Dict[str, object]] = None  # Qualified lead, kept for manual recovery

    def append(self, message: ChatMessage, cap: int = MAX_MESSAGES_IN_MEMORY):
        self.messages.append(message)
        if len(self.messages) > cap:
            self.messages = trim_messages(self.messages, cap)

    def user_messages(self) -> List[str]:
        return [m.text for m in self.messages if not m.is_bot]

    def conversation_text(self) -> str:
        return "\n".join(self.user_messages())

    def is_expired(self, now: int, max_age_ms: int) -> bool:
        return now - self.created_at >= max_age_ms


def trim_messages(messages: List[ChatMessage], cap: int) -> List[ChatMessage]:
    """Keep the welcome message plus the most recent cap-1 entries, in order."""
    if len(messages) <= cap:
        return messages
    return [messages[0]] + messages[-(cap - 1):]


def validate_session_id(session_id) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
        raise InvalidIdentifier()
    return session_id


class SessionStore:
    def __init__(self, max_age_ms: int = SESSION_MAX_AGE_MS,
                 clock: Callable[[], int] = now_ms):
        self.max_age_ms = max_age_ms
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Ids swept after expiry, remembered so a stale client is told to restart
        self._expired: Dict[str, int] = {}

    def __len__(self):
        return len(self._sessions)

    def get_or_create(self, session_id: str) -> Session:
        validate_session_id(session_id)
        now = self._clock()
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._expired:
                raise SessionNotFound()
            session = Session(id=session_id, created_at=now)
            session.messages.append(ChatMessage(text=WELCOME_MESSAGE, is_bot=True, timestamp=now))
            self._sessions[session_id] = session
            logger.info(f"🆕 Session created: {mask_id(session_id)}")
            return session
        if session.is_expired(now, self.max_age_ms):
            logger.info(f"⌛ Session expired: {mask_id(session_id)}")
            raise SessionNotFound()
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """The live session, or None when unknown or expired."""
        validate_session_id(session_id)
        session = self._sessions.get(session_id)
        if session is None or session.is_expired(self._clock(), self.max_age_ms):
            return None
        return session

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def sweep(self) -> int:
        """
        Drop sessions past the max age, one entry at a time.

        A session whose lock is held is skipped and retried on the next sweep.
        """
        now = self._clock()
        removed = 0
        for session_id in list(self._sessions.keys()):
            session = self._sessions.get(session_id)
            if session is None or not session.is_expired(now, self.max_age_ms):
                continue
            lock = self._locks.get(session_id)
            if lock is not None and lock.locked():
                continue
            del self._sessions[session_id]
            self._locks.pop(session_id, None)
            self._expired[session_id] = now
            removed += 1

        for session_id in [s for s, at in self._expired.items() if now - at > RATE_WINDOW_IDLE_EVICTION_MS]:
            del self._expired[session_id]
        # Locks taken for ids that never became a live session
        for session_id in [s for s, lock in self._locks.items() if s not in self._sessions and not lock.locked()]:
            del self._locks[session_id]

        if removed:
            logger.info(f"🧹 Session sweep: {removed} expired sessions removed, {len(self._sessions)} active")
        return removed

    def stats(self) -> Dict[str, int]:
        return {
            "activeSessions": len(self._sessions),
            "completedSessions": sum(1 for s in self._sessions.values() if s.completed),
            "closedByAbuse": sum(1 for s in self._sessions.values() if s.closed_by_abuse),
        }
