"""
RATE LIMITER - Fixed-window request counters per client identity

KEY DESIGN:
1. Counters are keyed by (identity, policy name) - policies never starve each other
2. A window is created lazily on the first request from an identity
3. request_count NEVER exceeds the limit inside a live window
4. A block is a HARD override: while block_until is in the future every
   request is denied, whatever the window says
5. When a block expires the identity starts over with a fresh window

Windows idle for a long time are dropped by sweep() (memory hygiene, not a deadline).
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

from .config import RATE_LIMIT_POLICIES, RATE_WINDOW_IDLE_EVICTION_MS, RateLimitPolicy, now_ms
from .identity import mask_id

logger = logging.getLogger(__name__)

PolicyLike = Union[RateLimitPolicy, str, Mapping[str, int]]


@dataclass
class RateWindow:
    window_start_ms: int
    window_duration_ms: int
    limit: int
    request_count: int = 0
    block_until_ms: Optional[int] = None
    last_request_ms: int = 0

    def expired(self, now: int) -> bool:
        return now - self.window_start_ms >= self.window_duration_ms

    def blocked(self, now: int) -> bool:
        return self.block_until_ms is not None and now < self.block_until_ms

    def restart(self, now: int):
        self.window_start_ms = now
        self.request_count = 0
        self.block_until_ms = None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_ms: int
    limit: int
    reset_at_ms: int
    policy: str
    reason: str = ""

    def headers(self) -> Dict[str, str]:
        """Standard rate-limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(
                self.reset_at_ms / 1000, tz=timezone.utc
            ).isoformat(),
        }
        if self.retry_after_ms > 0:
            headers["Retry-After"] = str(math.ceil(self.retry_after_ms / 1000))
        return headers


class RateLimiter:
    """
    Identity-keyed fixed-window rate limiter.

    Every read-modify-write of a counter happens under one short lock, so two
    requests from the same identity can never both consume the last slot.
    """

    def __init__(self, policies: Optional[Dict[str, RateLimitPolicy]] = None,
                 clock: Callable[[], int] = now_ms):
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or RATE_LIMIT_POLICIES)
        self._clock = clock
        self._windows: Dict[Tuple[str, str], RateWindow] = {}
        self._manual_blocks: Dict[str, Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def resolve_policy(self, policy: PolicyLike) -> RateLimitPolicy:
        """Accept a policy object, a registered policy name, or a windowMs/maxRequests/blockDurationMs dict."""
        if isinstance(policy, RateLimitPolicy):
            return policy
        if isinstance(policy, str):
            if policy not in self.policies:
                raise ValueError(f"Unknown rate limit policy: {policy!r}")
            return self.policies[policy]
        if isinstance(policy, Mapping):
            return RateLimitPolicy.from_options("custom", dict(policy))
        raise TypeError(f"Unsupported policy type: {type(policy).__name__}")

    def check(self, identity: str, policy: PolicyLike) -> RateLimitResult:
        """
        Count one request for identity under policy and decide allow/deny.

        Side effect: mutates the identity's counter for this policy.
        """
        resolved = self.resolve_policy(policy)
        now = self._clock()

        with self._lock:
            manual = self._manual_blocks.get(identity)
            if manual is not None:
                until, reason = manual
                if now < until:
                    return self._denied(resolved, until, now, reason or "Client bloqué manuellement")
                del self._manual_blocks[identity]

            key = (identity, resolved.name)
            window = self._windows.get(key)
            if window is None:
                window = RateWindow(
                    window_start_ms=now,
                    window_duration_ms=resolved.window_ms,
                    limit=resolved.max_requests,
                )
                self._windows[key] = window

            window.last_request_ms = now

            if window.blocked(now):
                return self._denied(resolved, window.block_until_ms, now, "Client temporairement bloqué")

            if window.block_until_ms is not None or window.expired(now):
                window.restart(now)

            if window.request_count >= resolved.max_requests:
                window.block_until_ms = now + resolved.block_duration_ms
                logger.warning(
                    f"🚦 Rate limit exceeded [{resolved.name}] for {mask_id(identity)}: "
                    f"{window.request_count}/{resolved.max_requests}, "
                    f"blocked {resolved.block_duration_ms}ms"
                )
                return self._denied(resolved, window.block_until_ms, now, "Rate limit exceeded")

            window.request_count += 1
            return RateLimitResult(
                allowed=True,
                remaining=max(0, resolved.max_requests - window.request_count),
                retry_after_ms=0,
                limit=resolved.max_requests,
                reset_at_ms=window.window_start_ms + resolved.window_ms,
                policy=resolved.name,
            )

    @staticmethod
    def _denied(policy: RateLimitPolicy, until: int, now: int, reason: str) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            retry_after_ms=max(1, until - now),
            limit=policy.max_requests,
            reset_at_ms=until,
            policy=policy.name,
            reason=reason,
        )

    def block(self, identity: str, duration_ms: int, reason: str):
        """Administrative block across every policy."""
        with self._lock:
            self._manual_blocks[identity] = (self._clock() + duration_ms, reason)
        logger.warning(f"⛔ Client manually blocked {mask_id(identity)} for {duration_ms}ms: {reason}")

    def unblock(self, identity: str):
        with self._lock:
            self._manual_blocks.pop(identity, None)
            for (key, _), window in self._windows.items():
                if key == identity:
                    window.block_until_ms = None
        logger.info(f"Client manually unblocked {mask_id(identity)}")

    def reset(self, identity: str):
        """Forget every counter for identity."""
        with self._lock:
            for key in [k for k in self._windows if k[0] == identity]:
                del self._windows[key]
            self._manual_blocks.pop(identity, None)
        logger.info(f"Rate limit reset for {mask_id(identity)}")

    def sweep(self, idle_ms: int = RATE_WINDOW_IDLE_EVICTION_MS) -> int:
        """Drop windows with no request for idle_ms. One lock hold per entry."""
        now = self._clock()
        with self._lock:
            candidates = list(self._windows.keys())
        removed = 0
        for key in candidates:
            with self._lock:
                window = self._windows.get(key)
                if window is None or window.blocked(now):
                    continue
                if now - window.last_request_ms > idle_ms:
                    del self._windows[key]
                    removed += 1
        with self._lock:
            for identity in [i for i, (until, _) in self._manual_blocks.items() if until <= now]:
                del self._manual_blocks[identity]
        if removed:
            logger.debug(f"Rate limiter sweep: {removed} idle windows removed")
        return removed

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            identities = {key for key, _ in self._windows}
            blocked = {key for (key, _), w in self._windows.items() if w.blocked(now)}
            blocked.update(i for i, (until, _) in self._manual_blocks.items() if now < until)
            total_requests = sum(w.request_count for w in self._windows.values())
        return {
            "totalClients": len(identities),
            "blockedClients": len(blocked),
            "totalWindows": len(self._windows),
            "totalRequests": total_requests,
        }
