import random

import pytest

from send_guard.health import (
    DAY_MS,
    HOUR_MS,
    AccountLedger,
    HealthMonitor,
    compute_health,
    status_for_score,
)
from send_guard.models import ActivityEvent, ActivityType, HealthSettings, HealthStatus


def _monitor(clock, settings=None, **kwargs):
    settings = settings or HealthSettings(auto_warmup=False)
    return HealthMonitor(settings, clock=clock, rng=random.Random(3), **kwargs)


async def _record(monitor, account_id, event_type, count, **kwargs):
    health = None
    for _ in range(count):
        health = await monitor.record_activity(account_id, event_type, **kwargs)
    return health


def test_status_bands():
    assert status_for_score(100) is HealthStatus.HEALTHY
    assert status_for_score(80) is HealthStatus.HEALTHY
    assert status_for_score(79) is HealthStatus.WARNING
    assert status_for_score(50) is HealthStatus.WARNING
    assert status_for_score(49) is HealthStatus.CRITICAL
    assert status_for_score(20) is HealthStatus.CRITICAL
    assert status_for_score(19) is HealthStatus.BLOCKED


@pytest.mark.asyncio
async def test_unknown_account_is_admitted_without_delay(clock):
    monitor = _monitor(clock)

    assert await monitor.get_device_health("ghost") is None
    assert (await monitor.is_safe_to_send("ghost")).safe
    assert await monitor.get_recommended_delay("ghost") == 0
    assert await monitor.recompute_score("ghost") is None
    assert await monitor.get_activity("ghost") == []


@pytest.mark.asyncio
async def test_successful_sends_keep_account_healthy(clock, metrics):
    monitor = _monitor(clock, metrics=metrics)
    health = await _record(monitor, "acc1", ActivityType.SENT, 5, latency_ms=400)

    assert health.score == 100
    assert health.status is HealthStatus.HEALTHY
    assert health.warnings == []
    assert health.metrics.messages_per_hour == 5
    assert metrics.scores["acc1"] == 100
    assert await monitor.get_recommended_delay("acc1") == 0


@pytest.mark.asyncio
async def test_low_success_rate_blocks_account(clock):
    monitor = _monitor(clock)
    await _record(monitor, "acc1", ActivityType.SENT, 2)
    health = await _record(monitor, "acc1", ActivityType.FAILED, 18, detail="boom")

    assert health.status is HealthStatus.BLOCKED
    assert health.score < 20
    assert any(w.startswith("success rate below 90%") for w in health.warnings)

    decision = await monitor.is_safe_to_send("acc1")
    assert not decision.safe
    assert decision.reason == "device health protection: success rate critically low"
    assert decision.retry_after_ms == 60_000
    assert await monitor.get_recommended_delay("acc1") == 60_000


@pytest.mark.asyncio
async def test_single_failure_does_not_collapse_score(clock):
    monitor = _monitor(clock)
    health = await monitor.record_activity("acc1", ActivityType.FAILED)

    # (0 + 5) / (1 + 5) squared
    assert health.score == 69
    assert health.status is HealthStatus.WARNING
    assert (await monitor.is_safe_to_send("acc1")).safe


@pytest.mark.asyncio
async def test_low_raw_success_rate_escalates_to_critical(clock):
    settings = HealthSettings(success_prior=20, auto_warmup=False)
    monitor = _monitor(clock, settings)
    await _record(monitor, "acc1", ActivityType.SENT, 2)
    health = await _record(monitor, "acc1", ActivityType.FAILED, 3)

    # smoothed (22 / 25)^2 puts the score in the warning band
    assert 50 <= health.score < 80
    assert health.status is HealthStatus.CRITICAL


@pytest.mark.asyncio
async def test_disconnections_are_penalised(clock):
    monitor = _monitor(clock)
    health = await _record(monitor, "acc1", ActivityType.DISCONNECTED, 4)

    assert health.score == 65
    assert health.status is HealthStatus.WARNING
    assert "disconnected 4 times in 24h" in health.warnings
    assert health.metrics.disconnection_count_24h == 4

    delay = await monitor.get_recommended_delay("acc1")
    assert 2400 <= delay <= 3600


@pytest.mark.asyncio
async def test_reconnection_is_logged_without_penalty(clock):
    monitor = _monitor(clock)
    health = await monitor.record_activity("acc1", "reconnected")

    assert health.score == 100
    assert [e.type for e in await monitor.get_activity("acc1")] == [ActivityType.RECONNECTED]


@pytest.mark.asyncio
async def test_slow_responses_are_penalised(clock):
    monitor = _monitor(clock)
    health = await monitor.record_activity("acc1", ActivityType.SENT, latency_ms=15_000)

    assert health.score == 80
    assert health.metrics.avg_response_time_ms == 15_000
    assert any(w.startswith("average response time 15000ms") for w in health.warnings)


@pytest.mark.asyncio
async def test_critical_account_at_hourly_cap_is_not_safe(clock):
    settings = HealthSettings(hourly_cap=5, warmup_initial_hourly_cap=1, auto_warmup=False)
    monitor = _monitor(clock, settings)
    await _record(monitor, "acc1", ActivityType.SENT, 2)
    health = await _record(monitor, "acc1", ActivityType.FAILED, 4)

    assert health.status is HealthStatus.CRITICAL
    decision = await monitor.is_safe_to_send("acc1")
    assert not decision.safe
    assert decision.reason == "device health protection: hourly cap of 5 reached while critical"
    assert 0 < decision.retry_after_ms <= HOUR_MS


@pytest.mark.asyncio
async def test_warmup_caps_score_and_ramps(clock):
    monitor = _monitor(clock)
    health = await monitor.start_warmup_phase("acc1")

    assert health.score == 50
    assert health.status is HealthStatus.WARNING
    assert health.metrics.warmup_phase
    assert "still in warm-up, day 1 of 7" in health.warnings

    clock.advance(2 * DAY_MS)
    health = await _record(monitor, "acc1", ActivityType.SENT, 3)
    assert health.score == 58
    assert "still in warm-up, day 3 of 7" in health.warnings

    clock.advance(5 * DAY_MS)
    health = await monitor.recompute_score("acc1")
    assert not health.metrics.warmup_phase
    assert health.status is HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_warmup_hourly_cap_applies_volume_penalty(clock):
    monitor = _monitor(clock)
    await monitor.start_warmup_phase("acc1")
    health = await _record(monitor, "acc1", ActivityType.SENT, 12)

    assert "12 messages in the last hour exceeds hourly cap of 10" in health.warnings


@pytest.mark.asyncio
async def test_cooldown_blocks_until_it_expires(clock):
    monitor = _monitor(clock)
    await monitor.start_cooldown("acc1", reason="HTTP 429")

    decision = await monitor.is_safe_to_send("acc1")
    assert not decision.safe
    assert decision.reason == "device health protection: cooling down after HTTP 429"
    assert decision.retry_after_ms == 15 * 60 * 1000
    assert await monitor.get_recommended_delay("acc1") == 15 * 60 * 1000
    health = await monitor.get_device_health("acc1")
    assert health.cooldown_until == clock.now + 15 * 60 * 1000

    clock.advance(15 * 60 * 1000)
    assert (await monitor.is_safe_to_send("acc1")).safe


@pytest.mark.asyncio
async def test_old_events_decay_out_of_the_score(clock):
    monitor = _monitor(clock)
    await _record(monitor, "acc1", ActivityType.FAILED, 18)
    assert (await monitor.get_device_health("acc1")).status is HealthStatus.BLOCKED

    clock.advance(DAY_MS + 1)
    refreshed = await monitor.recompute_all()

    assert refreshed[0].score == 100
    assert refreshed[0].status is HealthStatus.HEALTHY
    assert (await monitor.is_safe_to_send("acc1")).safe


@pytest.mark.asyncio
async def test_snapshots_are_detached_from_ledger(clock):
    monitor = _monitor(clock)
    health = await monitor.record_activity("acc1", ActivityType.SENT)
    health.warnings.append("tampered")

    assert (await monitor.get_device_health("acc1")).warnings == []


def test_compute_health_is_deterministic(clock):
    settings = HealthSettings()
    monitor = _monitor(clock, settings)
    ledger = monitor._new_ledger("acc1", clock.now)
    assert isinstance(ledger, AccountLedger)

    first = compute_health(ledger, settings, clock.now)
    second = compute_health(ledger, settings, clock.now)
    assert first == second


@pytest.mark.asyncio
async def test_reports_sorted_and_attention_worst_first(clock):
    monitor = _monitor(clock)
    await monitor.record_activity("b-healthy", ActivityType.SENT)
    await _record(monitor, "c-blocked", ActivityType.FAILED, 18)
    await _record(monitor, "a-warning", ActivityType.DISCONNECTED, 3)

    assert [h.account_id for h in await monitor.get_all_device_health()] == ["a-warning", "b-healthy", "c-blocked"]
    assert [h.account_id for h in await monitor.get_devices_needing_attention()] == ["c-blocked", "a-warning"]
    assert monitor.known_accounts() == ["a-warning", "b-healthy", "c-blocked"]


@pytest.mark.asyncio
async def test_activity_sink_receives_events_and_failures_are_swallowed(clock):
    seen = []

    async def sink(account_id, event):
        seen.append((account_id, event.type))
        raise RuntimeError("disk full")

    monitor = _monitor(clock, activity_sink=sink)
    health = await monitor.record_activity("acc1", ActivityType.SENT)

    assert seen == [("acc1", ActivityType.SENT)]
    assert health.score == 100


@pytest.mark.asyncio
async def test_restore_rebuilds_ledgers(clock):
    source = _monitor(clock)
    await _record(source, "acc1", ActivityType.FAILED, 18)
    events = [("acc1", e) for e in await source.get_activity("acc1", limit=100)]

    restored = _monitor(clock)
    count = await restored.restore(events, {"acc2": clock.now})

    assert count == 2
    assert (await restored.get_device_health("acc1")).status is HealthStatus.BLOCKED
    assert (await restored.get_device_health("acc2")).metrics.warmup_phase


@pytest.mark.asyncio
async def test_auto_warmup_starts_ramp_on_first_activity(clock):
    monitor = _monitor(clock, HealthSettings(auto_warmup=True))
    health = await monitor.record_activity("acc1", ActivityType.SENT)

    assert health.metrics.warmup_phase
    assert health.score == 50


@pytest.mark.asyncio
async def test_fresh_account_is_not_trusted_with_default_settings(clock):
    monitor = HealthMonitor(clock=clock, rng=random.Random(3))
    health = await _record(monitor, "fresh", ActivityType.SENT, 3)

    assert health.status is not HealthStatus.HEALTHY
    assert health.score < 80
    assert health.metrics.warmup_phase
    assert health.metrics.warmup_started_at == clock.now


@pytest.mark.asyncio
async def test_reconnect_after_dormancy_restarts_warmup(clock):
    monitor = _monitor(clock, HealthSettings())
    await monitor.record_activity("acc1", ActivityType.SENT)

    clock.advance(10 * DAY_MS)
    health = await monitor.record_activity("acc1", ActivityType.SENT)
    assert health.status is HealthStatus.HEALTHY

    clock.advance(HOUR_MS)
    health = await monitor.record_activity("acc1", ActivityType.RECONNECTED)
    assert not health.metrics.warmup_phase

    clock.advance(8 * DAY_MS)
    health = await monitor.record_activity("acc1", ActivityType.RECONNECTED)
    assert health.metrics.warmup_phase
    assert health.score == 50


@pytest.mark.asyncio
async def test_warmup_sink_receives_automatic_and_explicit_ramps(clock):
    saved = []

    async def sink(account_id, started_at):
        saved.append((account_id, started_at))
        if account_id == "acc2":
            raise RuntimeError("disk full")

    monitor = _monitor(clock, HealthSettings(), warmup_sink=sink)
    await monitor.record_activity("acc1", ActivityType.SENT)
    await monitor.record_activity("acc1", ActivityType.SENT)
    clock.advance(1000)
    health = await monitor.start_warmup_phase("acc2")

    assert saved == [("acc1", clock.now - 1000), ("acc2", clock.now)]
    assert health.metrics.warmup_phase


@pytest.mark.asyncio
async def test_restore_applies_only_saved_warmups(clock):
    monitor = _monitor(clock, HealthSettings())
    events = [
        ("acc1", ActivityEvent(type=ActivityType.SENT, timestamp=clock.now - HOUR_MS)),
        ("acc2", ActivityEvent(type=ActivityType.SENT, timestamp=clock.now - HOUR_MS)),
    ]

    await monitor.restore(events, {"acc2": clock.now - DAY_MS})

    acc1 = await monitor.get_device_health("acc1")
    assert not acc1.metrics.warmup_phase
    assert acc1.status is HealthStatus.HEALTHY
    acc2 = await monitor.get_device_health("acc2")
    assert acc2.metrics.warmup_phase
    assert acc2.metrics.warmup_started_at == clock.now - DAY_MS
