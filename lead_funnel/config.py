"""
CONFIG - Environment settings and named constants for the lead funnel

All tunables live here so the security layer, the conversation layer and
the HTTP surface agree on the same numbers.

SOURCES:
- .env / process environment (python-dotenv)
- hard defaults below (production-safe)
"""

import os
import time
from dataclasses import dataclass, replace
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def now_ms() -> int:
    """Wall clock in epoch milliseconds (the unit every window and ban uses)."""
    return int(time.time() * 1000)


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

FUNNEL_ENV = os.getenv("FUNNEL_ENV", "production").lower()
IS_DEVELOPMENT = FUNNEL_ENV == "development"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# External collaborators
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
INTERPRETER_TIMEOUT_S = float(os.getenv("INTERPRETER_TIMEOUT_S", "20"))
LEAD_NOTIFY_URL = os.getenv("LEAD_NOTIFY_URL")
LEAD_NOTIFY_API_KEY = os.getenv("LEAD_NOTIFY_API_KEY")
FUNNEL_ADMIN_API_KEY = os.getenv("FUNNEL_ADMIN_API_KEY")
IP_HASH_SALT = os.getenv("IP_HASH_SALT", "default-ip-salt")


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    One named rate-limit policy.

    Each policy has its own counter per identity, so exhausting one
    (e.g. chat) never starves another (e.g. maintenance).
    """
    name: str
    window_ms: int
    max_requests: int
    block_duration_ms: int

    def __post_init__(self):
        if not self.name:
            raise ValueError("RateLimitPolicy.name is required")
        if self.window_ms <= 0 or self.max_requests <= 0 or self.block_duration_ms < 0:
            raise ValueError(
                f"Malformed rate limit policy {self.name!r}: "
                f"window_ms={self.window_ms}, max_requests={self.max_requests}, "
                f"block_duration_ms={self.block_duration_ms}"
            )

    @classmethod
    def from_options(cls, name: str, options: Dict[str, int]) -> "RateLimitPolicy":
        """Build a policy from the camelCase option dict (windowMs, maxRequests, blockDurationMs)."""
        unknown = set(options) - {"windowMs", "maxRequests", "blockDurationMs"}
        if unknown:
            raise ValueError(f"Unknown rate limit options: {sorted(unknown)}")
        try:
            return cls(
                name=name,
                window_ms=int(options["windowMs"]),
                max_requests=int(options["maxRequests"]),
                block_duration_ms=int(options["blockDurationMs"]),
            )
        except KeyError as e:
            raise ValueError(f"Rate limit policy {name!r} is missing option {e.args[0]}")


def _relaxed_for_development(policy: RateLimitPolicy) -> RateLimitPolicy:
    if not IS_DEVELOPMENT:
        return policy
    return replace(
        policy,
        max_requests=policy.max_requests * 3,
        block_duration_ms=min(policy.block_duration_ms, 30 * 1000),
    )


RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    "http": _relaxed_for_development(RateLimitPolicy("http", 15 * MINUTE_MS, 100, 30 * MINUTE_MS)),
    "chat": _relaxed_for_development(RateLimitPolicy("chat", 1 * MINUTE_MS, 30, 5 * MINUTE_MS)),
    "session": RateLimitPolicy("session", 10 * MINUTE_MS, 50, 15 * MINUTE_MS),
    "survey": RateLimitPolicy("survey", 1 * MINUTE_MS, 10, 2 * MINUTE_MS),
    "maintenance": RateLimitPolicy("maintenance", 1 * MINUTE_MS, 10, 2 * MINUTE_MS),
}

# Rate windows untouched for this long are dropped by the sweep
RATE_WINDOW_IDLE_EVICTION_MS = 24 * HOUR_MS

# Abuse monitor
BRUTE_FORCE_WINDOW_MS = 10 * MINUTE_MS
BRUTE_FORCE_THRESHOLD = 5
ABUSE_EVENTS_MAX_PER_KIND = 200

# Bans
SHORT_BAN_MS = 2 * HOUR_MS    # single inappropriate-closure event
LONG_BAN_MS = 24 * HOUR_MS    # generic forced closure / brute force
BAN_WARNING_TIER_MS = 4 * HOUR_MS
BAN_SEVERE_TIER_MS = 12 * HOUR_MS

# Sessions
SESSION_ID_MIN_LENGTH = 10
SESSION_ID_MAX_LENGTH = 100
SESSION_MAX_AGE_MS = _env_int("SESSION_MAX_AGE_S", 30 * 60) * 1000
MAX_MESSAGES_IN_MEMORY = 100
MAX_MESSAGE_LENGTH = 2000
SWEEP_INTERVAL_S = _env_int("SWEEP_INTERVAL_S", 300)

WELCOME_MESSAGE = (
    "Bonjour ! Je suis l'assistante de Léo Barcet, coach spécialisé en prise de parole. "
    "Je peux vous donner quelques premiers conseils et recueillir vos besoins pour que "
    "Léo puisse vous accompagner au mieux. Qu'est-ce qui vous amène aujourd'hui ?"
)
TECHNICAL_ERROR_MESSAGE = (
    "Je rencontre une difficulté technique. Pouvez-vous reformuler votre question ?"
)
