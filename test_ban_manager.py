"""
BAN MANAGER TESTS
Active iff now < expires_at; severity is display-only.
"""

import pytest

from lead_funnel.ban_manager import BanManager, BanRecord, BanSeverity, format_remaining
from lead_funnel.config import HOUR_MS, LONG_BAN_MS, MINUTE_MS, SHORT_BAN_MS


@pytest.mark.parametrize("duration", [1, MINUTE_MS, SHORT_BAN_MS, LONG_BAN_MS])
def test_banned_exactly_during_duration(clock, duration):
    bans = BanManager(clock=clock)
    start = clock.now
    record = bans.create_ban("ip:a", "test", duration)
    assert record.expires_at_ms == start + duration

    assert bans.is_banned("ip:a")
    clock.now = start + duration - 1
    assert bans.is_banned("ip:a")
    clock.now = start + duration
    assert not bans.is_banned("ip:a")
    assert bans.get_ban("ip:a") is None
    assert bans.remaining_time("ip:a") == 0


def test_unknown_identity_is_not_banned(clock):
    bans = BanManager(clock=clock)
    assert not bans.is_banned("ip:nobody")
    assert bans.remaining_time("ip:nobody") == 0


def test_record_requires_positive_duration(clock):
    bans = BanManager(clock=clock)
    with pytest.raises(ValueError):
        bans.create_ban("ip:a", "test", 0)
    with pytest.raises(ValueError):
        BanRecord("ip:a", "test", BanSeverity.WARNING, created_at_ms=10, expires_at_ms=10)


def test_severity_follows_remaining_time(clock):
    bans = BanManager(clock=clock)
    bans.create_ban("ip:a", "forced closure", LONG_BAN_MS)
    assert bans.get_ban("ip:a").severity == BanSeverity.SEVERE
    assert bans.display_severity("ip:a") == BanSeverity.SEVERE

    clock.advance(16 * HOUR_MS)   # 8h left
    assert bans.display_severity("ip:a") == BanSeverity.MODERATE
    clock.advance(5 * HOUR_MS)    # 3h left
    assert bans.display_severity("ip:a") == BanSeverity.WARNING
    # Enforcement is unchanged by the tier
    assert bans.is_banned("ip:a")


def test_longer_ban_is_never_shortened(clock):
    bans = BanManager(clock=clock)
    long_ban = bans.create_ban("ip:a", "brute_force", LONG_BAN_MS)
    kept = bans.create_ban("ip:a", "closure", SHORT_BAN_MS)
    assert kept is long_ban
    assert bans.remaining_time("ip:a") == LONG_BAN_MS


def test_find_active_picks_longest(clock):
    bans = BanManager(clock=clock)
    bans.create_ban("ip:a", "short", SHORT_BAN_MS)
    bans.create_ban("session:abc", "long", LONG_BAN_MS)
    assert bans.find_active(["ip:a", "browser:x", "session:abc"]).reason == "long"
    assert bans.find_active(["browser:x"]) is None


def test_lift_and_evict(clock):
    bans = BanManager(clock=clock)
    bans.create_ban("ip:a", "x", MINUTE_MS)
    bans.create_ban("ip:b", "x", HOUR_MS)
    assert bans.lift_ban("ip:b")
    assert not bans.lift_ban("ip:b")
    assert not bans.is_banned("ip:b")

    clock.advance(MINUTE_MS)
    assert bans.active_bans() == []
    assert bans.evict_expired() == 1


def test_format_remaining():
    assert format_remaining(2 * HOUR_MS + 15 * MINUTE_MS) == "2h 15min"
    assert format_remaining(2 * HOUR_MS) == "2h"
    assert format_remaining(42 * MINUTE_MS + 5000) == "42 minutes"
    assert format_remaining(10_000) == "1 minute"
    assert format_remaining(0) == ""
