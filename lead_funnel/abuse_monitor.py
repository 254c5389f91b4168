"""
ABUSE MONITOR - Rolling per-identity event log for brute-force detection

KEY DESIGN:
1. Bounded: at most ABUSE_EVENTS_MAX_PER_KIND timestamps per identity per kind
2. Time-pruned: entries older than the detection window are dropped on EVERY access
3. Advisory only: it never denies a request itself; the API boundary reads
   is_brute_force_suspected() and decides whether to escalate to a ban
"""

import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict

from .config import ABUSE_EVENTS_MAX_PER_KIND, BRUTE_FORCE_THRESHOLD, BRUTE_FORCE_WINDOW_MS, now_ms
from .identity import mask_id

logger = logging.getLogger(__name__)


class AbuseEventKind(str, Enum):
    RATE_DENIED = "rate_denied"
    HIGH_RISK_MESSAGE = "high_risk_message"
    SUSPICIOUS_MESSAGE = "suspicious_message"
    ATTACK_ATTEMPT = "attack_attempt"


class AbuseRecord:
    """Event timestamps for one identity, one bounded deque per kind."""

    def __init__(self, max_per_kind: int):
        self.events: Dict[AbuseEventKind, Deque[int]] = {
            kind: deque(maxlen=max_per_kind) for kind in AbuseEventKind
        }

    def prune(self, cutoff: int):
        for timestamps in self.events.values():
            while timestamps and timestamps[0] < cutoff:
                timestamps.popleft()

    def is_empty(self) -> bool:
        return not any(self.events.values())


class AbuseMonitor:
    def __init__(self, window_ms: int = BRUTE_FORCE_WINDOW_MS,
                 threshold: int = BRUTE_FORCE_THRESHOLD,
                 max_per_kind: int = ABUSE_EVENTS_MAX_PER_KIND,
                 clock: Callable[[], int] = now_ms):
        self.window_ms = window_ms
        self.threshold = threshold
        self.max_per_kind = max_per_kind
        self._clock = clock
        self._records: Dict[str, AbuseRecord] = {}
        self._totals: Dict[AbuseEventKind, int] = {kind: 0 for kind in AbuseEventKind}
        self._lock = threading.Lock()

    def record_event(self, identity: str, kind: AbuseEventKind):
        kind = AbuseEventKind(kind)
        now = self._clock()
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                record = AbuseRecord(self.max_per_kind)
                self._records[identity] = record
            record.prune(now - self.window_ms)
            record.events[kind].append(now)
            self._totals[kind] += 1
            recent = len(record.events[kind])
        logger.info(f"🛡️ Abuse event {kind.value} for {mask_id(identity)} ({recent} in window)")

    def count(self, identity: str, kind: AbuseEventKind) -> int:
        now = self._clock()
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                return 0
            record.prune(now - self.window_ms)
            return len(record.events[AbuseEventKind(kind)])

    def is_brute_force_suspected(self, identity: str) -> bool:
        """True when rate denials inside the trailing window exceed the threshold."""
        suspected = self.count(identity, AbuseEventKind.RATE_DENIED) > self.threshold
        if suspected:
            logger.warning(f"🚨 Brute force suspected for {mask_id(identity)}")
        return suspected

    def sweep(self) -> int:
        """Prune every record and drop the empty ones."""
        cutoff = self._clock() - self.window_ms
        with self._lock:
            identities = list(self._records.keys())
        removed = 0
        for identity in identities:
            with self._lock:
                record = self._records.get(identity)
                if record is None:
                    continue
                record.prune(cutoff)
                if record.is_empty():
                    del self._records[identity]
                    removed += 1
        return removed

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "trackedIdentities": len(self._records),
                "eventTotals": {kind.value: total for kind, total in self._totals.items()},
            }
