# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Account health monitor: trust score, status and admission gate.

The monitor keeps a bounded activity log per account (sent, failed,
disconnected, reconnected) and derives from it a 0-100 health score:

- success rate over the last 24h, the heaviest factor: a near-zero success
  rate collapses the score on its own
- disconnections in the last 24h, a fixed penalty each with diminishing
  returns past a threshold
- response time, penalised above a baseline (exponential moving average)
- hourly volume above the account's hourly cap
- warm-up: during the ramp the score is capped below the healthy threshold,
  the cap rising linearly until the ramp completes. With ``auto_warmup`` a
  ramp starts on an account's first activity and again when it reconnects
  after a long dormancy

Score-to-status thresholds are fixed: ``>= 80`` healthy, ``50-79`` warning,
``20-49`` critical, ``< 20`` blocked.

The monitor never raises for an unhealthy account. It answers with
:class:`SafetyDecision` objects and recommended delays; the dispatch queue
decides what to do with them.

Example:
    Gating a dispatch::

        monitor = HealthMonitor()
        decision = await monitor.is_safe_to_send("acc-1")
        if not decision.safe:
            message.last_error = decision.reason
        ...
        await monitor.record_activity("acc-1", ActivityType.SENT, latency_ms=420)
"""

from __future__ import annotations

import asyncio
import copy
import math
import random
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .logger import get_logger
from .models import (
    ActivityEvent,
    ActivityType,
    DeviceHealth,
    HealthMetrics,
    HealthSettings,
    HealthStatus,
    SafetyDecision,
)
from .rate_limit import now_ms

HEALTHY_THRESHOLD = 80
WARNING_THRESHOLD = 50
CRITICAL_THRESHOLD = 20

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS

MESSAGE_EVENTS = (ActivityType.SENT, ActivityType.FAILED)

ActivitySink = Callable[[str, ActivityEvent], Awaitable[None]]
WarmupSink = Callable[[str, int], Awaitable[None]]


def status_for_score(score: int) -> HealthStatus:
    """Map a score to its status band."""
    if score >= HEALTHY_THRESHOLD:
        return HealthStatus.HEALTHY
    if score >= WARNING_THRESHOLD:
        return HealthStatus.WARNING
    if score >= CRITICAL_THRESHOLD:
        return HealthStatus.CRITICAL
    return HealthStatus.BLOCKED


def _worst(a: HealthStatus, b: HealthStatus) -> HealthStatus:
    return a if a.severity >= b.severity else b


@dataclass
class AccountLedger:
    """Mutable per-account state owned by :class:`HealthMonitor`."""

    account_id: str
    events: deque[ActivityEvent]
    health: DeviceHealth
    response_ema: float | None = None
    warmup_started_at: int | None = None
    cooldown_until: int | None = None
    cooldown_reason: str | None = None
    counters: dict[str, int] = field(default_factory=dict)


def warmup_progress(ledger: AccountLedger, settings: HealthSettings, now: int) -> float | None:
    """Fraction of the warm-up ramp elapsed, or None when not in warm-up."""
    if ledger.warmup_started_at is None:
        return None
    elapsed = now - ledger.warmup_started_at
    if elapsed >= settings.warmup_duration_ms:
        return None
    return max(0.0, elapsed / settings.warmup_duration_ms)


def hourly_cap(ledger: AccountLedger, settings: HealthSettings, now: int) -> int:
    """Messages per hour allowed; reduced and ramping during warm-up."""
    progress = warmup_progress(ledger, settings, now)
    if progress is None:
        return settings.hourly_cap
    span = settings.hourly_cap - settings.warmup_initial_hourly_cap
    return int(settings.warmup_initial_hourly_cap + span * progress)


def score_ceiling(ledger: AccountLedger, settings: HealthSettings, now: int) -> int:
    progress = warmup_progress(ledger, settings, now)
    if progress is None:
        return 100
    span = settings.warmup_final_score_cap - settings.warmup_initial_score_cap
    return int(settings.warmup_initial_score_cap + span * progress)


def _warmup_label(ledger: AccountLedger, settings: HealthSettings, now: int) -> str:
    elapsed = max(0, now - (ledger.warmup_started_at or now))
    if settings.warmup_duration_ms >= DAY_MS:
        day = elapsed // DAY_MS + 1
        total = math.ceil(settings.warmup_duration_ms / DAY_MS)
        return f"still in warm-up, day {day} of {total}"
    minute = elapsed // 60000 + 1
    total = math.ceil(settings.warmup_duration_ms / 60000)
    return f"still in warm-up, minute {minute} of {total}"


def compute_health(ledger: AccountLedger, settings: HealthSettings, now: int) -> DeviceHealth:
    """Derive metrics, score, status and warnings for one account.

    Deterministic: the same ledger, settings and ``now`` always give the
    same result.
    """
    day_cutoff = now - DAY_MS
    hour_cutoff = now - HOUR_MS

    attempts = successes = per_hour = disconnects = 0
    last_activity: int | None = None
    for event in ledger.events:
        if last_activity is None or event.timestamp > last_activity:
            last_activity = event.timestamp
        if event.timestamp <= day_cutoff:
            continue
        if event.type in MESSAGE_EVENTS:
            attempts += 1
            if event.type is ActivityType.SENT:
                successes += 1
            if event.timestamp > hour_cutoff:
                per_hour += 1
        elif event.type is ActivityType.DISCONNECTED:
            disconnects += 1

    success_rate = successes / attempts * 100 if attempts else 100.0
    prior = settings.success_prior
    smoothed = (successes + prior) / (attempts + prior) if (attempts + prior) > 0 else 1.0
    avg_response = ledger.response_ema or 0.0
    progress = warmup_progress(ledger, settings, now)
    cap = hourly_cap(ledger, settings, now)

    warnings: list[str] = []
    score = 100.0 * smoothed ** settings.success_exponent
    if attempts and success_rate < settings.low_success_rate:
        warnings.append(
            f"success rate below {settings.low_success_rate:g}% "
            f"({success_rate:.0f}% of {attempts} attempts in 24h)"
        )

    if disconnects:
        within = min(disconnects, settings.disconnect_threshold)
        beyond = max(0, disconnects - settings.disconnect_threshold)
        penalty = within * settings.disconnect_penalty + beyond * settings.disconnect_penalty_beyond
        score -= min(penalty, settings.max_disconnect_penalty)
        noun = "time" if disconnects == 1 else "times"
        warnings.append(f"disconnected {disconnects} {noun} in 24h")

    if avg_response > settings.response_time_baseline_ms:
        excess_s = (avg_response - settings.response_time_baseline_ms) / 1000
        score -= min(excess_s * settings.response_time_penalty_per_second, settings.max_response_time_penalty)
        warnings.append(
            f"average response time {avg_response:.0f}ms above "
            f"{settings.response_time_baseline_ms:.0f}ms baseline"
        )

    if per_hour > cap:
        excess = per_hour - cap
        score -= min(excess * settings.volume_penalty_per_message, settings.max_volume_penalty)
        warnings.append(f"{per_hour} messages in the last hour exceeds hourly cap of {cap}")

    if progress is not None:
        score = min(score, score_ceiling(ledger, settings, now))
        warnings.append(_warmup_label(ledger, settings, now))

    if ledger.cooldown_until is not None and now < ledger.cooldown_until:
        left_s = math.ceil((ledger.cooldown_until - now) / 1000)
        warnings.append(f"cooling down after provider error, {left_s}s left")

    final_score = int(max(0, min(100, round(score))))
    status = status_for_score(final_score)
    if attempts >= settings.min_attempts_for_escalation and success_rate < settings.critical_success_rate:
        status = _worst(status, HealthStatus.CRITICAL)

    metrics = HealthMetrics(
        messages_per_hour=per_hour,
        success_rate=success_rate,
        avg_response_time_ms=avg_response,
        disconnection_count_24h=disconnects,
        last_activity_at=last_activity,
        warmup_phase=progress is not None,
        warmup_started_at=ledger.warmup_started_at if progress is not None else None,
    )
    cooldown_until = ledger.cooldown_until if ledger.cooldown_until and now < ledger.cooldown_until else None
    return DeviceHealth(
        account_id=ledger.account_id,
        score=final_score,
        status=status,
        metrics=metrics,
        warnings=warnings,
        last_updated=now,
        cooldown_until=cooldown_until,
    )


class HealthMonitor:
    """Per-account reputation ledger and admission gate.

    Ledgers are created lazily on the first recorded activity (or on an
    explicit warm-up) and are never removed. All ledger access goes through
    ``_lock``.

    Attributes:
        settings: Tunable constants of the score formula.
        clock: Callable returning epoch milliseconds.
        rng: Random source for delay jitter.
        metrics: Optional metrics collector (``set_health_score``).
    """

    def __init__(
        self,
        settings: HealthSettings | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
        activity_sink: ActivitySink | None = None,
        warmup_sink: WarmupSink | None = None,
        metrics: Any = None,
        logger=None,
    ):
        self.settings = settings or HealthSettings()
        self.clock = clock
        self.rng = rng or random.Random()
        self.metrics = metrics
        self.logger = logger or get_logger("HealthMonitor")
        self._activity_sink = activity_sink
        self._warmup_sink = warmup_sink
        self._ledgers: dict[str, AccountLedger] = {}
        self._lock = asyncio.Lock()

    # ---------------------------------------------------------------- ledgers
    def _new_ledger(self, account_id: str, now: int) -> AccountLedger:
        ledger = AccountLedger(
            account_id=account_id,
            events=deque(maxlen=self.settings.activity_log_size),
            health=DeviceHealth(account_id=account_id, last_updated=now),
        )
        self._ledgers[account_id] = ledger
        self.logger.debug("Health ledger created for account %s", account_id)
        return ledger

    def _refresh(self, ledger: AccountLedger, now: int) -> DeviceHealth:
        previous = ledger.health.status
        health = compute_health(ledger, self.settings, now)
        ledger.health = health
        if self.metrics is not None:
            self.metrics.set_health_score(ledger.account_id, health.score)
        if health.status is not previous and health.status.severity > previous.severity:
            self.logger.warning(
                "Account %s health degraded to %s (score %d): %s",
                ledger.account_id,
                health.status.value,
                health.score,
                "; ".join(health.warnings) or "-",
            )
        elif health.status is not previous:
            self.logger.info(
                "Account %s health improved to %s (score %d)",
                ledger.account_id,
                health.status.value,
                health.score,
            )
        return health

    def known_accounts(self) -> list[str]:
        return sorted(self._ledgers)

    # --------------------------------------------------------------- recording
    async def record_activity(
        self,
        account_id: str,
        event_type: ActivityType | str,
        *,
        timestamp: int | None = None,
        latency_ms: int | None = None,
        detail: str | None = None,
    ) -> DeviceHealth:
        """Append an event to the account's activity log and refresh its health.

        Args:
            account_id: Account the event belongs to.
            event_type: One of sent, failed, disconnected, reconnected.
            timestamp: Event time in epoch ms, defaults to now.
            latency_ms: Round-trip time of the send, feeds the response-time EMA.
            detail: Free-form note (e.g. the transport error).

        Returns:
            A snapshot of the refreshed :class:`DeviceHealth`.
        """
        event_type = ActivityType(event_type)
        now = self.clock()
        event = ActivityEvent(
            type=event_type,
            timestamp=now if timestamp is None else int(timestamp),
            latency_ms=None if latency_ms is None else int(latency_ms),
            detail=detail,
        )
        warmup_started = False
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                ledger = self._new_ledger(account_id, now)
                warmup_started = self.settings.auto_warmup
            elif event_type is ActivityType.RECONNECTED and self._is_dormant(ledger, now):
                warmup_started = self.settings.auto_warmup
            if warmup_started:
                ledger.warmup_started_at = now
            self._append(ledger, event)
            health = copy.deepcopy(self._refresh(ledger, now))

        if warmup_started:
            self.logger.info("Warm-up phase started automatically for account %s", account_id)
            await self._persist_warmup(account_id, now)
        if self._activity_sink is not None:
            try:
                await self._activity_sink(account_id, event)
            except Exception as exc:
                self.logger.warning("Failed to persist activity for account %s: %s", account_id, exc)
        return health

    def _is_dormant(self, ledger: AccountLedger, now: int) -> bool:
        if not ledger.events:
            return ledger.warmup_started_at is None
        return now - ledger.events[-1].timestamp >= self.settings.dormancy_ms

    async def _persist_warmup(self, account_id: str, started_at: int) -> None:
        if self._warmup_sink is None:
            return
        try:
            await self._warmup_sink(account_id, started_at)
        except Exception as exc:
            self.logger.warning("Failed to persist warm-up for account %s: %s", account_id, exc)

    def _append(self, ledger: AccountLedger, event: ActivityEvent) -> None:
        ledger.events.append(event)
        ledger.counters[event.type.value] = ledger.counters.get(event.type.value, 0) + 1
        if event.latency_ms is not None and event.latency_ms > 0:
            alpha = self.settings.response_time_alpha
            if ledger.response_ema is None:
                ledger.response_ema = float(event.latency_ms)
            else:
                ledger.response_ema = alpha * event.latency_ms + (1 - alpha) * ledger.response_ema

    async def restore(
        self,
        events: Iterable[tuple[str, ActivityEvent]],
        warmups: dict[str, int] | None = None,
    ) -> int:
        """Rebuild ledgers from persisted activity, oldest first.

        Only the saved ``warmups`` start ramps here: a restored account is not
        new, so ``auto_warmup`` does not apply to it.

        Returns:
            Number of accounts restored.
        """
        now = self.clock()
        async with self._lock:
            for account_id, event in sorted(events, key=lambda item: item[1].timestamp):
                ledger = self._ledgers.get(account_id) or self._new_ledger(account_id, now)
                self._append(ledger, event)
            for account_id, started_at in (warmups or {}).items():
                ledger = self._ledgers.get(account_id) or self._new_ledger(account_id, now)
                ledger.warmup_started_at = started_at
            for ledger in self._ledgers.values():
                self._refresh(ledger, now)
            return len(self._ledgers)

    async def recompute_score(self, account_id: str) -> DeviceHealth | None:
        """Recompute the score of one account; None if the account is unknown."""
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                return None
            return copy.deepcopy(self._refresh(ledger, self.clock()))

    async def recompute_all(self) -> list[DeviceHealth]:
        """Periodic decay tick: old events age out, warm-up ramps advance."""
        now = self.clock()
        async with self._lock:
            return [copy.deepcopy(self._refresh(ledger, now)) for ledger in self._ledgers.values()]

    # --------------------------------------------------------------- admission
    async def start_warmup_phase(self, account_id: str) -> DeviceHealth:
        """(Re)enter an account into the warm-up ramp, creating its ledger if needed."""
        now = self.clock()
        async with self._lock:
            ledger = self._ledgers.get(account_id) or self._new_ledger(account_id, now)
            ledger.warmup_started_at = now
            health = copy.deepcopy(self._refresh(ledger, now))
        self.logger.info("Warm-up phase started for account %s", account_id)
        await self._persist_warmup(account_id, now)
        return health

    async def start_cooldown(self, account_id: str, reason: str | None = None, duration_ms: int | None = None) -> None:
        """Hold an account after a provider-side error signal."""
        now = self.clock()
        duration = self.settings.cooldown_ms if duration_ms is None else max(0, int(duration_ms))
        async with self._lock:
            ledger = self._ledgers.get(account_id) or self._new_ledger(account_id, now)
            ledger.cooldown_until = max(ledger.cooldown_until or 0, now + duration)
            ledger.cooldown_reason = reason
            self._refresh(ledger, now)
        self.logger.warning(
            "Cooldown of %ds started for account %s: %s", duration // 1000, account_id, reason or "provider error"
        )

    async def is_safe_to_send(self, account_id: str) -> SafetyDecision:
        """Binary admission decision for the next dispatch of ``account_id``.

        Unsafe when the account is blocked, when it is critical and has
        reached its hourly cap, or while a provider cooldown is active.
        Accounts without any recorded activity are admitted.
        """
        now = self.clock()
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                return SafetyDecision(safe=True)
            health = self._refresh(ledger, now)
            if ledger.cooldown_until is not None and now < ledger.cooldown_until:
                cause = ledger.cooldown_reason or "provider error"
                return SafetyDecision(
                    safe=False,
                    reason=f"device health protection: cooling down after {cause}",
                    retry_after_ms=ledger.cooldown_until - now,
                )
            if health.status is HealthStatus.BLOCKED:
                return SafetyDecision(
                    safe=False,
                    reason=f"device health protection: {self._block_cause(health)}",
                    retry_after_ms=self.settings.blocked_recheck_ms,
                )
            cap = hourly_cap(ledger, self.settings, now)
            if health.status is HealthStatus.CRITICAL and health.metrics.messages_per_hour >= cap:
                return SafetyDecision(
                    safe=False,
                    reason=f"device health protection: hourly cap of {cap} reached while critical",
                    retry_after_ms=self._hour_slot_wait(ledger, now),
                )
            return SafetyDecision(safe=True)

    def _block_cause(self, health: DeviceHealth) -> str:
        metrics = health.metrics
        if metrics.success_rate < self.settings.critical_success_rate:
            return "success rate critically low"
        if metrics.disconnection_count_24h > self.settings.disconnect_threshold:
            return "too many disconnections"
        return f"health score {health.score} below {CRITICAL_THRESHOLD}"

    def _hour_slot_wait(self, ledger: AccountLedger, now: int) -> int:
        hour_cutoff = now - HOUR_MS
        in_hour = [e.timestamp for e in ledger.events if e.type in MESSAGE_EVENTS and e.timestamp > hour_cutoff]
        if not in_hour:
            return 0
        return max(0, min(in_hour) + HOUR_MS - now)

    async def get_recommended_delay(self, account_id: str) -> int:
        """Extra pacing in ms on top of the rate limiter, growing as the score drops.

        Healthy and unknown accounts get no extra delay. Blocked accounts and
        accounts in cooldown get the time until the next re-check.
        """
        now = self.clock()
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                return 0
            health = self._refresh(ledger, now)
            if ledger.cooldown_until is not None and now < ledger.cooldown_until:
                return ledger.cooldown_until - now
            if health.status is HealthStatus.BLOCKED:
                return self.settings.blocked_recheck_ms
            if health.score >= HEALTHY_THRESHOLD:
                return 0
            base = self.settings.recommended_delay_base_ms * (HEALTHY_THRESHOLD - health.score) / 10
            return int(round(base * self.rng.uniform(0.8, 1.2)))

    # --------------------------------------------------------------- reporting
    async def get_device_health(self, account_id: str) -> DeviceHealth | None:
        """Current health snapshot, or None until the account records activity."""
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                return None
            return copy.deepcopy(ledger.health)

    async def get_activity(self, account_id: str, limit: int = 50) -> list[ActivityEvent]:
        """Most recent activity events, newest first."""
        async with self._lock:
            ledger = self._ledgers.get(account_id)
            if ledger is None:
                return []
            return list(reversed(ledger.events))[: max(0, limit)]

    async def get_all_device_health(self) -> list[DeviceHealth]:
        async with self._lock:
            return [copy.deepcopy(self._ledgers[key].health) for key in sorted(self._ledgers)]

    async def get_devices_needing_attention(self) -> list[DeviceHealth]:
        """Every account whose status is not healthy, worst first."""
        all_health = await self.get_all_device_health()
        flagged = [h for h in all_health if h.status is not HealthStatus.HEALTHY]
        return sorted(flagged, key=lambda h: (-h.status.severity, h.score, h.account_id))
