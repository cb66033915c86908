# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch queue: ordering, pacing, admission control and retries.

Producers call :meth:`DispatchQueue.enqueue` and get an id back at once.
A scheduler calls :meth:`DispatchQueue.tick` on a fixed interval. Each tick
is one pass over the accounts that have pending work, in round-robin order,
with at most one dispatch per account:

1. the account's next eligible message is picked (priority, then enqueue
   time, then arrival order)
2. the health monitor decides whether the account may send at all
3. the rate limiter decides whether a send fits the per-minute and burst
   windows
4. the message is claimed (``pending`` -> ``processing``) and handed to a
   dispatch task that checks readiness, simulates typing, sends, and records
   the outcome

Admission refusals never raise: the message stays ``pending`` with a
``last_error`` annotation and a ``next_eligible_at``, and the account is
skipped until then. Transport failures are retried with exponential backoff
until ``max_attempts`` is reached, then the message is ``failed``.

Example:
    Single-stepping the queue in a test::

        queue = DispatchQueue(client, health=HealthMonitor(), sleep=no_sleep)
        msg_id = await queue.enqueue({"account_id": "acc-1", "to": "39333", "text": "hi"})
        await queue.tick()
        await queue.join()
        assert (await queue.get_message(msg_id))["status"] == "sent"
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import random
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .device_client import AccountClient, format_recipient
from .errors import MessageValidationError, TransportError
from .health import HealthMonitor
from .logger import get_logger
from .models import (
    ActivityType,
    LocationPayload,
    MediaPayload,
    MessageKind,
    MessageStatus,
    Priority,
    QueueConfig,
    QueuedMessage,
    SendOptions,
)
from .rate_limit import MINUTE_MS, RateLimiter, now_ms
from .retry import RetryStrategy
from .store import DEFAULT_HISTORY_SIZE, QueueStore

TYPING_MS_PER_CHAR = 50
MAX_TYPING_MS = 3000

TerminalSink = Callable[[QueuedMessage], Awaitable[None]]


def _pick(request: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in request and request[name] is not None:
            return request[name]
    return default


def typing_duration_ms(message: QueuedMessage) -> int:
    return min(message.content_length * TYPING_MS_PER_CHAR, MAX_TYPING_MS)


@dataclass
class _Gate:
    """Earliest time the next dispatch of an account may be considered."""

    until: int
    reason: str
    counted: bool = False


class DispatchQueue:
    """Per-account paced dispatch of queued messages.

    Attributes:
        client: Account client performing readiness checks and sends.
        health: Health monitor used as admission gate and outcome ledger.
        rate_limiter: Sliding-window limiter fed with every attempt.
        retry: Backoff and error classification policy.
        metrics: Optional :class:`GuardMetrics`.
    """

    def __init__(
        self,
        client: AccountClient,
        *,
        health: HealthMonitor | None = None,
        config: QueueConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        retry: RetryStrategy | None = None,
        store: QueueStore | None = None,
        metrics: Any = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        on_terminal: TerminalSink | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        logger=None,
    ):
        self.client = client
        self.clock = clock
        self.rng = rng or random.Random()
        self.health = health or HealthMonitor(clock=clock, rng=self.rng)
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.retry = retry or RetryStrategy(rng=self.rng)
        self.store = store or QueueStore(history_size=history_size)
        self.metrics = metrics
        self.logger = logger or get_logger("DispatchQueue")
        self._config = config or QueueConfig()
        self._sleep = sleep
        self._on_terminal = on_terminal
        self._gates: dict[str, _Gate] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    # ----------------------------------------------------------------- config
    @property
    def config(self) -> QueueConfig:
        return self._config

    def update_config(self, partial: Mapping[str, Any]) -> QueueConfig:
        """Atomically swap the active configuration.

        The next tick uses the new values. Gates and backoffs already
        computed keep their deadlines.

        Raises:
            ConfigError: If any key is unknown or any value invalid; the
                previous configuration stays active.
        """
        updated = self._config.merged(partial)
        self._config = updated
        self.logger.info("Queue configuration updated: %s", dict(partial))
        return updated

    # ---------------------------------------------------------------- enqueue
    async def enqueue(self, request: Mapping[str, Any]) -> str:
        """Validate a send request and add it to its account's pending set.

        Keys may be snake_case or camelCase (``account_id``/``accountId``,
        ``quoted_message_id``/``quotedMessageId``, ``max_attempts``/``maxAttempts``).

        Returns:
            The id of the new message, in status ``pending`` with 0 attempts.

        Raises:
            MessageValidationError: If a required field is missing or malformed.
        """
        message = self._build_message(request)
        await self.store.add(message)
        self.logger.debug(
            "Enqueued message %s for account %s (kind=%s, priority=%s)",
            message.id,
            message.account_id,
            message.kind.value,
            message.priority.value,
        )
        await self._publish_depth()
        return message.id

    def _build_message(self, request: Mapping[str, Any]) -> QueuedMessage:
        if not isinstance(request, Mapping):
            raise MessageValidationError("request must be an object")

        account_id = _pick(request, "account_id", "accountId")
        if not isinstance(account_id, str) or not account_id.strip():
            raise MessageValidationError("account_id is required", field="account_id")

        recipient = _pick(request, "to", "recipient")
        if not isinstance(recipient, str) or not recipient.strip():
            raise MessageValidationError("recipient 'to' is required", field="to")

        media_raw = request.get("media")
        location_raw = request.get("location")
        kind_raw = request.get("kind")
        if kind_raw is None:
            kind_raw = "media" if media_raw else "location" if location_raw else "text"
        try:
            kind = MessageKind(kind_raw)
        except ValueError:
            raise MessageValidationError(f"unsupported message kind '{kind_raw}'", field="kind") from None

        try:
            priority = Priority(_pick(request, "priority", default=Priority.NORMAL.value))
        except ValueError:
            raise MessageValidationError(
                f"priority must be one of: {', '.join(p.value for p in Priority)}", field="priority"
            ) from None

        text = _pick(request, "text", "caption")
        if text is not None and not isinstance(text, str):
            raise MessageValidationError("text must be a string", field="text")

        media = location = None
        if kind is MessageKind.TEXT:
            if not text or not text.strip():
                raise MessageValidationError("text body is required for text messages", field="text")
        elif kind is MessageKind.MEDIA:
            media = self._build_media(media_raw)
        else:
            location = self._build_location(location_raw)

        max_attempts = _pick(request, "max_attempts", "maxAttempts", default=self._config.max_attempts)
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise MessageValidationError("max_attempts must be a positive integer", field="max_attempts")

        mentions = request.get("mentions") or []
        if not isinstance(mentions, list) or not all(isinstance(m, str) for m in mentions):
            raise MessageValidationError("mentions must be a list of strings", field="mentions")
        quoted = _pick(request, "quoted_message_id", "quotedMessageId")

        msg_id = str(uuid.uuid4())
        while self.store.knows(msg_id):
            msg_id = str(uuid.uuid4())

        return QueuedMessage(
            id=msg_id,
            account_id=account_id.strip(),
            recipient=recipient.strip(),
            kind=kind,
            priority=priority,
            max_attempts=max_attempts,
            enqueued_at=self.clock(),
            seq=self.store.next_seq(),
            text=text,
            media=media,
            location=location,
            options=SendOptions(quoted_message_id=quoted, mentions=list(mentions)),
        )

    @staticmethod
    def _build_media(raw: Any) -> MediaPayload:
        if not isinstance(raw, Mapping) or not raw.get("data"):
            raise MessageValidationError("media payload with base64 'data' is required", field="media")
        data = raw["data"]
        if not isinstance(data, str):
            raise MessageValidationError("media data must be a base64 string", field="media")
        try:
            base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise MessageValidationError("media data is not valid base64", field="media") from None
        return MediaPayload(
            data=data,
            mimetype=raw.get("mimetype") or raw.get("mimeType") or "image/jpeg",
            filename=raw.get("filename"),
        )

    @staticmethod
    def _build_location(raw: Any) -> LocationPayload:
        if not isinstance(raw, Mapping):
            raise MessageValidationError("location with latitude and longitude is required", field="location")
        try:
            latitude = float(raw["latitude"])
            longitude = float(raw["longitude"])
        except (KeyError, TypeError, ValueError):
            raise MessageValidationError(
                "location latitude and longitude must be numbers", field="location"
            ) from None
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise MessageValidationError("location coordinates out of range", field="location")
        return LocationPayload(latitude=latitude, longitude=longitude, description=raw.get("description"))

    # ------------------------------------------------------------------- tick
    async def tick(self) -> list[str]:
        """Run one scheduling pass.

        Returns:
            Ids of the messages claimed and handed to dispatch tasks in this
            pass. Use :meth:`join` to wait for their outcome.
        """
        config = self._config
        now = self.clock()
        skip = {account for account, task in self._inflight.items() if not task.done()}
        for account, gate in list(self._gates.items()):
            if gate.until > now:
                skip.add(account)
                if not gate.counted:
                    gate.counted = True
                    self._count_deferral(account, gate.reason)
            else:
                del self._gates[account]

        claimed: list[str] = []
        for candidate in await self.store.candidates(now, skip):
            account_id = candidate.account_id
            if not await self._admit(candidate, config, now):
                continue
            message = await self.store.claim(candidate.id)
            if message is None:
                continue
            task = asyncio.create_task(self._dispatch(message, config), name=f"dispatch-{message.id}")
            self._inflight[account_id] = task
            claimed.append(message.id)

        if claimed:
            self.logger.debug("Tick claimed %d message(s)", len(claimed))
        await self._publish_depth()
        return claimed

    async def _admit(self, message: QueuedMessage, config: QueueConfig, now: int) -> bool:
        account_id = message.account_id
        decision = await self.health.is_safe_to_send(account_id)
        if not decision.safe:
            delay = max(decision.retry_after_ms, await self.health.get_recommended_delay(account_id))
            await self._defer(message, now + delay, decision.reason, "health")
            self.logger.info("Dispatch for account %s held back: %s", account_id, decision.reason)
            return False

        wait_ms = self.rate_limiter.check_and_wait(account_id, config, now)
        if wait_ms:
            reason = f"rate limit reached, next slot in {wait_ms}ms"
            await self._defer(message, now + wait_ms, reason, "rate_limit")
            self.logger.debug("Account %s rate limited for %dms", account_id, wait_ms)
            return False
        return True

    async def _defer(self, message: QueuedMessage, until: int, reason: str | None, kind: str) -> None:
        await self.store.defer(message.id, until, reason)
        self._gates[message.account_id] = _Gate(until=until, reason=kind, counted=True)
        self._count_deferral(message.account_id, kind)

    def _count_deferral(self, account_id: str, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_deferred(account_id, reason)

    # --------------------------------------------------------------- dispatch
    async def _dispatch(self, message: QueuedMessage, config: QueueConfig) -> None:
        account_id = message.account_id
        try:
            if not await self._is_ready(account_id):
                until = self.clock() + config.not_ready_delay_ms
                await self.store.release(message, until, "device not ready")
                self._gates[account_id] = _Gate(until=until, reason="not_ready", counted=True)
                self._count_deferral(account_id, "not_ready")
                self.logger.info("Account %s not ready, retrying in %dms", account_id, config.not_ready_delay_ms)
                return

            attempts = await self.store.start_attempt(message)
            started = self.clock()
            self.rate_limiter.record_send(account_id, started)
            gap = self.rng.randint(config.min_delay_ms, config.max_delay_ms)
            gap += await self.health.get_recommended_delay(account_id)
            self._gates[account_id] = _Gate(until=started + gap, reason="pacing")

            recipient = format_recipient(message.recipient)
            try:
                if config.typing_delay_simulation and message.kind is MessageKind.TEXT:
                    await self._simulate_typing(account_id, recipient, typing_duration_ms(message))
                await asyncio.wait_for(
                    self.client.send(account_id, recipient, message.payload(), message.options.to_dict()),
                    timeout=config.send_timeout_ms / 1000,
                )
            except Exception as exc:
                await self._on_failure(message, attempts, exc, self.clock() - started, config)
                return
            await self._on_success(message, self.clock() - started)
        except Exception as exc:
            self.logger.exception("Unexpected error dispatching message %s: %s", message.id, exc)
        finally:
            await self._publish_depth()

    async def _is_ready(self, account_id: str) -> bool:
        try:
            return bool(await self.client.is_ready(account_id))
        except Exception as exc:
            self.logger.warning("Readiness check failed for account %s: %s", account_id, exc)
            return False

    async def _simulate_typing(self, account_id: str, recipient: str, duration_ms: int) -> None:
        if duration_ms <= 0:
            return
        send_typing = getattr(self.client, "send_typing", None)
        if send_typing is not None:
            try:
                await send_typing(account_id, recipient, duration_ms)
            except Exception as exc:
                self.logger.debug("Typing indicator failed for %s: %s", account_id, exc)
        await self._sleep(duration_ms / 1000)

    async def _on_success(self, message: QueuedMessage, latency_ms: int) -> None:
        await self.store.finish(message, MessageStatus.SENT, self.clock())
        await self.health.record_activity(message.account_id, ActivityType.SENT, latency_ms=latency_ms)
        if self.metrics is not None:
            self.metrics.inc_sent(message.account_id)
        self.logger.info(
            "Message %s sent via %s (attempt %d/%d)",
            message.id,
            message.account_id,
            message.attempts,
            message.max_attempts,
        )
        await self._notify_terminal(message)

    async def _on_failure(
        self,
        message: QueuedMessage,
        attempts: int,
        exc: BaseException,
        latency_ms: int,
        config: QueueConfig,
    ) -> None:
        account_id = message.account_id
        if isinstance(exc, asyncio.TimeoutError):
            error = f"send timed out after {config.send_timeout_ms}ms"
        else:
            error = str(exc) or exc.__class__.__name__
        _retryable, provider_signal = self.retry.classify_error(exc)
        if provider_signal:
            await self.health.start_cooldown(account_id, reason=error)
        await self.health.record_activity(
            account_id, ActivityType.FAILED, latency_ms=latency_ms, detail=error
        )

        if self.retry.should_retry(attempts, message.max_attempts):
            delay = self.retry.calculate_delay(attempts, config.retry_delay_ms, config.max_delay_ms)
            requeued = await self.store.retry(message, self.clock() + delay, error)
            if requeued:
                if self.metrics is not None:
                    self.metrics.inc_retry(account_id)
                self.logger.warning(
                    "Message %s failed (attempt %d/%d): %s - retrying in %dms",
                    message.id,
                    attempts,
                    message.max_attempts,
                    error,
                    delay,
                )
            else:
                self.logger.info("Message %s failed after the queue was cleared, dropping it", message.id)
            return

        await self.store.finish(message, MessageStatus.FAILED, self.clock(), error)
        if self.metrics is not None:
            self.metrics.inc_failed(account_id)
        kind = "transport" if isinstance(exc, TransportError) else exc.__class__.__name__
        self.logger.error(
            "Message %s failed permanently after %d attempt(s) (%s): %s", message.id, attempts, kind, error
        )
        await self._notify_terminal(message)

    async def _notify_terminal(self, message: QueuedMessage) -> None:
        if self._on_terminal is None:
            return
        try:
            await self._on_terminal(message)
        except Exception as exc:
            self.logger.warning("Failed to record terminal message %s: %s", message.id, exc)

    async def join(self) -> None:
        """Wait for every in-flight dispatch task to finish."""
        while True:
            pending = [task for task in self._inflight.values() if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight = {acc: task for acc, task in self._inflight.items() if not task.done()}

    def in_flight(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    # ---------------------------------------------------------------- reports
    async def get_queue_status(self) -> dict[str, int]:
        """Snapshot counts across all accounts: pending, processing, total_queued."""
        return await self.store.counts()

    async def get_device_status(self, account_id: str) -> dict[str, Any]:
        now = self.clock()
        gate = self._gates.get(account_id)
        return {
            "account_id": account_id,
            "messages_in_last_60s": self.rate_limiter.count_since(account_id, MINUTE_MS, now),
            "last_message_time": self.rate_limiter.last_send(account_id),
            "queued_messages": await self.store.account_depth(account_id),
            "next_slot_at": gate.until if gate and gate.until > now else None,
        }

    async def get_message(self, msg_id: str) -> dict[str, Any] | None:
        return await self.store.get(msg_id)

    async def list_messages(
        self,
        account_id: str | None = None,
        status: MessageStatus | str | None = None,
    ) -> list[dict[str, Any]]:
        return await self.store.list_messages(account_id, MessageStatus(status) if status else None)

    async def clear_queue(self) -> int:
        """Emergency stop: drop every pending and processing message.

        Sends already handed to an account client run to completion and are
        still recorded in the history. Returns the number of messages removed.
        """
        removed = await self.store.clear()
        self._gates.clear()
        self.logger.warning("Queue cleared: %d message(s) removed", removed)
        await self._publish_depth()
        return removed

    async def _publish_depth(self) -> None:
        if self.metrics is None:
            return
        counts = await self.store.counts()
        self.metrics.set_queue_depth(counts["pending"], counts["processing"])
