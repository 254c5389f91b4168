"""
BAN MANAGER - Time-bounded blocks on a session or client identity

KEY DESIGN:
1. A ban is ACTIVE strictly while now < expires_at - time is the only path to expiry
2. Enforcement is BINARY (banned or not); severity tiers are presentational only
3. Checked before any message reaches the conversation state machine
4. Expired records are inert; evict_expired() reclaims their memory
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .config import BAN_SEVERE_TIER_MS, BAN_WARNING_TIER_MS, now_ms
from .identity import mask_id

logger = logging.getLogger(__name__)


class BanSeverity(str, Enum):
    WARNING = "warning"
    MODERATE = "moderate"
    SEVERE = "severe"


def classify_duration(duration_ms: int) -> BanSeverity:
    """<4h warning, >12h severe, otherwise moderate."""
    if duration_ms < BAN_WARNING_TIER_MS:
        return BanSeverity.WARNING
    if duration_ms > BAN_SEVERE_TIER_MS:
        return BanSeverity.SEVERE
    return BanSeverity.MODERATE


def format_remaining(remaining_ms: int) -> str:
    """'2h 15min', '2h' or '42 minutes'."""
    if remaining_ms <= 0:
        return ""
    hours = remaining_ms // (60 * 60 * 1000)
    minutes = (remaining_ms % (60 * 60 * 1000)) // (60 * 1000)
    if hours > 0:
        return f"{hours}h" + (f" {minutes}min" if minutes > 0 else "")
    minutes = max(1, minutes)
    return f"{minutes} minute" + ("s" if minutes > 1 else "")


@dataclass(frozen=True)
class BanRecord:
    identity: str
    reason: str
    severity: BanSeverity
    created_at_ms: int
    expires_at_ms: int

    def __post_init__(self):
        if self.expires_at_ms <= self.created_at_ms:
            raise ValueError("BanRecord.expires_at_ms must be after created_at_ms")

    def is_active(self, now: int) -> bool:
        return now < self.expires_at_ms

    def remaining_ms(self, now: int) -> int:
        return max(0, self.expires_at_ms - now)

    def to_dict(self, now: int):
        remaining = self.remaining_ms(now)
        return {
            "identity": mask_id(self.identity),
            "reason": self.reason,
            "severity": classify_duration(remaining).value if remaining else self.severity.value,
            "createdAt": self.created_at_ms,
            "expiresAt": self.expires_at_ms,
            "remainingMs": remaining,
            "timeRemaining": format_remaining(remaining),
        }


class BanManager:
    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._bans: Dict[str, BanRecord] = {}
        self._lock = threading.Lock()

    def create_ban(self, identity: str, reason: str, duration_ms: int) -> BanRecord:
        """
        Ban identity for duration_ms.

        An existing active ban that lasts longer is kept; a ban never
        shortens another.
        """
        if duration_ms <= 0:
            raise ValueError(f"Ban duration must be positive, got {duration_ms}")
        now = self._clock()
        record = BanRecord(
            identity=identity,
            reason=reason,
            severity=classify_duration(duration_ms),
            created_at_ms=now,
            expires_at_ms=now + duration_ms,
        )
        with self._lock:
            existing = self._bans.get(identity)
            if existing is not None and existing.is_active(now) and existing.expires_at_ms >= record.expires_at_ms:
                return existing
            self._bans[identity] = record
        logger.warning(
            f"🔨 Ban created for {mask_id(identity)}: {reason} "
            f"({record.severity.value}, {format_remaining(duration_ms)})"
        )
        return record

    def get_ban(self, identity: str) -> Optional[BanRecord]:
        """The active ban for identity, or None."""
        now = self._clock()
        with self._lock:
            record = self._bans.get(identity)
        if record is None or not record.is_active(now):
            return None
        return record

    def is_banned(self, identity: str) -> bool:
        return self.get_ban(identity) is not None

    def remaining_time(self, identity: str) -> int:
        """Milliseconds until the ban expires (0 when not banned)."""
        record = self.get_ban(identity)
        return record.remaining_ms(self._clock()) if record else 0

    def display_severity(self, identity: str) -> Optional[BanSeverity]:
        """Severity tier from the REMAINING duration at query time."""
        remaining = self.remaining_time(identity)
        return classify_duration(remaining) if remaining else None

    def format_remaining(self, identity: str) -> str:
        return format_remaining(self.remaining_time(identity))

    def find_active(self, identities: Iterable[str]) -> Optional[BanRecord]:
        """The longest-lasting active ban among identities."""
        active = [record for record in (self.get_ban(i) for i in identities) if record is not None]
        if not active:
            return None
        return max(active, key=lambda r: r.expires_at_ms)

    def lift_ban(self, identity: str) -> bool:
        """Administrative override."""
        with self._lock:
            removed = self._bans.pop(identity, None)
        if removed is not None:
            logger.info(f"Ban lifted for {mask_id(identity)}")
        return removed is not None

    def active_bans(self) -> List[BanRecord]:
        now = self._clock()
        with self._lock:
            return [r for r in self._bans.values() if r.is_active(now)]

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            identities = list(self._bans.keys())
        removed = 0
        for identity in identities:
            with self._lock:
                record = self._bans.get(identity)
                if record is not None and not record.is_active(now):
                    del self._bans[identity]
                    removed += 1
        return removed

    def stats(self) -> Dict[str, int]:
        active = self.active_bans()
        return {
            "activeBans": len(active),
            "severe": sum(1 for r in active if r.severity == BanSeverity.SEVERE),
        }
