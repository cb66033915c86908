# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the send guard service.

:class:`DispatchCore` is the explicitly constructed service object that owns
every component (no module-level singletons):

- :class:`QueueStore` and :class:`DispatchQueue` for queued messages
- :class:`RateLimiter` and :class:`HealthMonitor` for admission control
- :class:`GuardMetrics` for Prometheus
- an optional :class:`Persistence` audit store

It runs two background loops: the dispatch loop that calls
:meth:`DispatchQueue.tick` on a fixed interval, and the health loop that
periodically recomputes every score so old events age out and warm-up ramps
advance. The HTTP layer talks to the core only through
:meth:`DispatchCore.handle_command`.

Example:
    Running the core standalone::

        core = DispatchCore(client=HttpAccountClient("http://devices:3000"))
        await core.start()
        result = await core.handle_command("enqueue", {"account_id": "acc-1", "to": "39333", "text": "hi"})
        ...
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from typing import Any

from .device_client import AccountClient
from .errors import ConfigError, MessageValidationError, SendGuardError
from .health import DAY_MS, HealthMonitor
from .logger import get_logger
from .models import ActivityType, HealthSettings, HealthStatus, QueueConfig, QueuedMessage
from .persistence import Persistence
from .prometheus import GuardMetrics
from .queue import DispatchQueue
from .rate_limit import RateLimiter, now_ms
from .store import DEFAULT_HISTORY_SIZE, QueueStore

BACKLOG_ALERT_THRESHOLD = 10
LIFECYCLE_EVENTS = (ActivityType.DISCONNECTED, ActivityType.RECONNECTED)


def _error(exc: SendGuardError) -> dict[str, Any]:
    result: dict[str, Any] = {"ok": False, "error": exc.message, "code": exc.code}
    field = getattr(exc, "field", None)
    if field:
        result["field"] = field
    return result


class DispatchCore:
    """Service object wiring queue, health monitor and persistence together.

    Attributes:
        logger: Logger instance for diagnostic output.
        persistence: Audit store, or None when running purely in memory.
        metrics: Prometheus metrics collector.
        health: Account health monitor.
        rate_limiter: Per-account sliding-window limiter.
        queue: The dispatch queue.
    """

    def __init__(
        self,
        *,
        client: AccountClient,
        db_path: str | None = None,
        queue_config: QueueConfig | None = None,
        health_settings: HealthSettings | None = None,
        logger=None,
        metrics: GuardMetrics | None = None,
        start_active: bool = True,
        tick_interval: float = 0.5,
        health_interval: float = 30.0,
        history_size: int = DEFAULT_HISTORY_SIZE,
        test_mode: bool = False,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        """Build the core and all of its components.

        Args:
            client: Account client used for readiness checks and sends.
            db_path: SQLite path for the audit store; None keeps everything in memory.
            queue_config: Initial queue configuration (a persisted one wins at init).
            health_settings: Health score constants.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            start_active: Whether the dispatch loop processes messages from the start.
            tick_interval: Seconds between dispatch ticks.
            health_interval: Seconds between health recompute passes.
            history_size: Terminal messages retained in memory for status queries.
            test_mode: Disable the timed loops; ticks run only on ``run now``
                or when tests call ``queue.tick()`` directly.
            clock: Epoch-milliseconds clock shared by every component.
            sleep: Sleep function used for the typing simulation.
            rng: Random source shared by pacing, jitter and backoff.
        """
        self.logger = logger or get_logger("DispatchCore")
        self.clock = clock
        self.persistence = Persistence(db_path) if db_path else None
        self.metrics = metrics or GuardMetrics()
        self.rng = rng or random.Random()
        self.health = HealthMonitor(
            health_settings,
            clock=clock,
            rng=self.rng,
            activity_sink=self.persistence.log_activity if self.persistence else None,
            warmup_sink=self.persistence.save_warmup if self.persistence else None,
            metrics=self.metrics,
        )
        self.rate_limiter = RateLimiter(clock=clock)
        self.queue = DispatchQueue(
            client,
            health=self.health,
            config=queue_config,
            rate_limiter=self.rate_limiter,
            store=QueueStore(history_size=history_size),
            metrics=self.metrics,
            clock=clock,
            sleep=sleep,
            rng=self.rng,
            on_terminal=self._record_terminal if self.persistence else None,
        )
        self._test_mode = bool(test_mode)
        self._active = start_active
        self._tick_interval = math.inf if self._test_mode else max(0.05, float(tick_interval))
        self._health_interval = max(1.0, float(health_interval))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_dispatch: asyncio.Task | None = None
        self._task_health: asyncio.Task | None = None
        self._initialized = False

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Prepare the audit store and restore state from a previous run.

        Restores the persisted queue configuration, the last 24 hours of
        activity and the warm-up start times.
        """
        if self._initialized:
            return
        self._initialized = True
        if self.persistence is None:
            return
        await self.persistence.init_db()

        stored = await self.persistence.load_queue_config()
        if stored:
            try:
                self.queue.update_config(stored)
            except ConfigError as exc:
                self.logger.warning("Ignoring invalid persisted queue configuration: %s", exc)

        since = self.clock() - DAY_MS
        events = await self.persistence.fetch_activity_since(since)
        warmups = await self.persistence.load_warmups()
        restored = await self.health.restore(events, warmups)
        removed = await self.persistence.purge_activity_before(since)
        self.logger.info(
            "Restored health ledger for %d account(s) from %d event(s), purged %d old event(s)",
            restored,
            len(events),
            removed,
        )

    async def start(self) -> None:
        """Start the dispatch loop and, outside test mode, the health loop."""
        self.logger.debug("Starting DispatchCore...")
        await self.init()
        self._stop.clear()
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="dispatch-loop")
        if not self._test_mode:
            self._task_health = asyncio.create_task(self._health_loop(), name="health-loop")
        self.logger.info("DispatchCore started (active=%s)", self._active)

    async def stop(self) -> None:
        """Stop the loops and wait for in-flight dispatches to complete."""
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(
            *(task for task in [self._task_dispatch, self._task_health] if task),
            return_exceptions=True,
        )
        await self.queue.join()
        self.logger.info("DispatchCore stopped")

    async def _dispatch_loop(self) -> None:
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                await self._wait_for_wakeup(self._tick_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            if self._active:
                try:
                    await self.queue.tick()
                except Exception as exc:
                    self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            await self._wait_for_wakeup(self._tick_interval)

    async def _health_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._health_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh_health()
            except Exception as exc:
                self.logger.exception("Unhandled error in health loop: %s", exc)

    async def refresh_health(self) -> int:
        """Recompute every score and purge audit activity older than 24h.

        Returns:
            Number of activity rows purged.
        """
        await self.health.recompute_all()
        if self.persistence is None:
            return 0
        removed = await self.persistence.purge_activity_before(self.clock() - DAY_MS)
        if removed:
            self.logger.debug("Purged %d expired activity event(s)", removed)
        return removed

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the dispatch loop until timeout or wake event."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def _record_terminal(self, message: QueuedMessage) -> None:
        await self.persistence.record_message(message.to_dict())

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``enqueue``, ``getMessage``, ``listMessages``: message intake and lookup
        - ``queueStatus``, ``deviceQueueStatus``, ``dashboard``: reporting
        - ``clearQueue``, ``getConfig``, ``updateConfig``: administration
        - ``deviceHealth``, ``allHealth``, ``attention``, ``startWarmup``,
          ``recordEvent``: health ledger
        - ``run now``, ``suspend``, ``activate``: scheduler control

        Returns:
            dict: Command result with ``ok`` status; failures carry ``error``
            and a machine ``code``.
        """
        payload = payload or {}
        try:
            match cmd:
                case "run now":
                    self._wake_event.set()
                    return {"ok": True}
                case "suspend":
                    self._active = False
                    self.logger.warning("Dispatch suspended")
                    return {"ok": True, "active": False}
                case "activate":
                    self._active = True
                    self._wake_event.set()
                    self.logger.info("Dispatch activated")
                    return {"ok": True, "active": True}
                case "enqueue":
                    msg_id = await self.queue.enqueue(payload)
                    self._wake_event.set()
                    return {"ok": True, "message_id": msg_id, "status": "queued"}
                case "getMessage":
                    return await self._get_message(payload.get("id"))
                case "listMessages":
                    messages = await self.queue.list_messages(payload.get("account_id"), payload.get("status"))
                    return {"ok": True, "messages": messages}
                case "queueStatus":
                    counts = await self.queue.get_queue_status()
                    return {"ok": True, **counts, "active": self._active}
                case "deviceQueueStatus":
                    return await self._device_queue_status(self._account_id(payload))
                case "clearQueue":
                    removed = await self.queue.clear_queue()
                    return {"ok": True, "cleared_messages": removed}
                case "getConfig":
                    return {"ok": True, "config": self.queue.config.model_dump()}
                case "updateConfig":
                    return await self._update_config(payload)
                case "deviceHealth":
                    account_id = self._account_id(payload)
                    health = await self.health.get_device_health(account_id)
                    if health is None:
                        return {"ok": False, "error": f"no health data for account '{account_id}'", "code": "not_found"}
                    return {"ok": True, "health": health.to_dict()}
                case "allHealth":
                    devices = await self.health.get_all_device_health()
                    return {"ok": True, "devices": [h.to_dict() for h in devices]}
                case "attention":
                    devices = await self.health.get_devices_needing_attention()
                    return {"ok": True, "devices": [h.to_dict() for h in devices]}
                case "startWarmup":
                    return await self._start_warmup(self._account_id(payload))
                case "recordEvent":
                    return await self._record_event(payload)
                case "dashboard":
                    return await self._dashboard()
                case _:
                    return {"ok": False, "error": "unknown command"}
        except (MessageValidationError, ConfigError) as exc:
            self.logger.info("Command %s rejected: %s", cmd, exc.message)
            return _error(exc)

    @staticmethod
    def _account_id(payload: dict[str, Any]) -> str:
        account_id = payload.get("account_id") or payload.get("accountId")
        if not account_id:
            raise MessageValidationError("account_id is required", field="account_id")
        return str(account_id)

    async def _get_message(self, msg_id: str | None) -> dict[str, Any]:
        if not msg_id:
            return {"ok": False, "error": "message id required", "code": "validation_error"}
        message = await self.queue.get_message(msg_id)
        if message is None and self.persistence is not None:
            message = await self.persistence.get_message(msg_id)
        if message is None:
            return {"ok": False, "error": f"message '{msg_id}' not found", "code": "not_found"}
        return {"ok": True, "message": message}

    async def _device_queue_status(self, account_id: str) -> dict[str, Any]:
        device = await self.queue.get_device_status(account_id)
        health = await self.health.get_device_health(account_id)
        safety = await self.health.is_safe_to_send(account_id)
        delay = await self.health.get_recommended_delay(account_id)
        return {
            "ok": True,
            "account_id": account_id,
            "queue": device,
            "health": health.to_dict() if health else None,
            "safety": safety.to_dict(),
            "recommended_delay_ms": delay,
        }

    async def _update_config(self, payload: dict[str, Any]) -> dict[str, Any]:
        partial = payload.get("config", payload)
        if not isinstance(partial, dict) or not partial:
            raise ConfigError("no configuration options given")
        config = self.queue.update_config(partial)
        if self.persistence is not None:
            await self.persistence.save_queue_config(config.model_dump())
        return {"ok": True, "config": config.model_dump()}

    async def _start_warmup(self, account_id: str) -> dict[str, Any]:
        health = await self.health.start_warmup_phase(account_id)
        return {"ok": True, "health": health.to_dict()}

    async def _record_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        account_id = self._account_id(payload)
        raw_type = payload.get("type") or payload.get("event")
        try:
            event_type = ActivityType(raw_type)
        except ValueError:
            raise MessageValidationError(f"unknown event type '{raw_type}'", field="type") from None
        if event_type not in LIFECYCLE_EVENTS:
            raise MessageValidationError(
                "only disconnected and reconnected events can be reported", field="type"
            )
        health = await self.health.record_activity(
            account_id,
            event_type,
            timestamp=payload.get("timestamp"),
            detail=payload.get("detail"),
        )
        if event_type is ActivityType.RECONNECTED:
            self._wake_event.set()
        return {"ok": True, "health": health.to_dict()}

    async def _dashboard(self) -> dict[str, Any]:
        counts = await self.queue.get_queue_status()
        devices = await self.health.get_all_device_health()
        attention = [h for h in devices if h.status is not HealthStatus.HEALTHY]
        per_status = {status.value: 0 for status in HealthStatus}
        for health in devices:
            per_status[health.status.value] += 1
        average = round(sum(h.score for h in devices) / len(devices), 1) if devices else None
        return {
            "ok": True,
            "queue": {
                **counts,
                "active": self._active,
                "is_processing": counts["processing"] > 0 or self.queue.in_flight() > 0,
            },
            "health": {"total_devices": len(devices), **per_status, "average_score": average},
            "alerts": {
                "devices_needing_attention": len(attention),
                "critical_devices": per_status["critical"] + per_status["blocked"],
                "queue_backlog": counts["pending"] > BACKLOG_ALERT_THRESHOLD,
            },
            "devices": [
                {
                    "account_id": h.account_id,
                    "score": h.score,
                    "status": h.status.value,
                    "messages_per_hour": h.metrics.messages_per_hour,
                    "success_rate": round(h.metrics.success_rate, 2),
                    "warmup_phase": h.metrics.warmup_phase,
                    "warnings": list(h.warnings),
                }
                for h in devices
            ],
        }
