"""
ABUSE MONITOR TESTS
"""

from lead_funnel.abuse_monitor import AbuseEventKind, AbuseMonitor

MINUTE = 60_000


def test_brute_force_needs_more_than_threshold_denials(clock):
    monitor = AbuseMonitor(window_ms=10 * MINUTE, threshold=5, clock=clock)
    for _ in range(5):
        monitor.record_event("ip:a", AbuseEventKind.RATE_DENIED)
    assert not monitor.is_brute_force_suspected("ip:a")

    monitor.record_event("ip:a", AbuseEventKind.RATE_DENIED)
    assert monitor.is_brute_force_suspected("ip:a")


def test_old_events_are_pruned(clock):
    monitor = AbuseMonitor(window_ms=10 * MINUTE, threshold=5, clock=clock)
    for _ in range(6):
        monitor.record_event("ip:a", AbuseEventKind.RATE_DENIED)
    clock.advance(10 * MINUTE + 1)
    assert monitor.count("ip:a", AbuseEventKind.RATE_DENIED) == 0
    assert not monitor.is_brute_force_suspected("ip:a")


def test_other_kinds_do_not_count_as_brute_force(clock):
    monitor = AbuseMonitor(threshold=1, clock=clock)
    for _ in range(10):
        monitor.record_event("ip:a", AbuseEventKind.HIGH_RISK_MESSAGE)
        monitor.record_event("ip:a", "attack_attempt")
    assert monitor.count("ip:a", AbuseEventKind.ATTACK_ATTEMPT) == 10
    assert not monitor.is_brute_force_suspected("ip:a")


def test_event_log_is_bounded(clock):
    monitor = AbuseMonitor(max_per_kind=20, clock=clock)
    for _ in range(100):
        monitor.record_event("ip:a", AbuseEventKind.SUSPICIOUS_MESSAGE)
    assert monitor.count("ip:a", AbuseEventKind.SUSPICIOUS_MESSAGE) == 20
    assert monitor.stats()["eventTotals"]["suspicious_message"] == 100


def test_sweep_drops_quiet_identities(clock):
    monitor = AbuseMonitor(window_ms=MINUTE, clock=clock)
    monitor.record_event("ip:a", AbuseEventKind.RATE_DENIED)
    clock.advance(30_000)
    monitor.record_event("ip:b", AbuseEventKind.RATE_DENIED)
    clock.advance(40_000)
    assert monitor.sweep() == 1
    assert monitor.stats()["trackedIdentities"] == 1
