# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window rate limiter over recent send timestamps.

Each account keeps the timestamps of its recent dispatch attempts. Two
windows are enforced against the active :class:`QueueConfig`:

- ``messages_per_minute`` over a 60 second sliding window
- ``burst_limit`` over a ``burst_window_ms`` sliding window

The limiter is a pure query: :meth:`RateLimiter.check_and_wait` returns how
many milliseconds to wait and never sleeps. The dispatch queue owns
scheduling and re-evaluates on a later tick.

Example:
    Using the rate limiter::

        limiter = RateLimiter()
        wait_ms = limiter.check_and_wait("acc-1", config)
        if wait_ms:
            message.next_eligible_at = now + wait_ms
        else:
            limiter.record_send("acc-1")
            await client.send(...)
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

from .models import QueueConfig

MINUTE_MS = 60_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class RateLimiter:
    """Per-account sliding-window limiter.

    Timestamps are recorded when a dispatch is attempted, not when it
    succeeds: every attempt reaches the provider and counts against the
    account. Timestamps older than the widest window are pruned on access.

    Attributes:
        clock: Callable returning epoch milliseconds.
    """

    def __init__(self, clock: Callable[[], int] = now_ms, horizon_ms: int = MINUTE_MS):
        self.clock = clock
        self._horizon_ms = horizon_ms
        self._sends: dict[str, deque[int]] = {}
        self._last_send: dict[str, int] = {}

    def _window(self, account_id: str, now: int) -> deque[int]:
        window = self._sends.setdefault(account_id, deque())
        cutoff = now - self._horizon_ms
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def check_and_wait(self, account_id: str, config: QueueConfig, now: int | None = None) -> int:
        """Return 0 if a send may proceed now, otherwise the wait in milliseconds.

        The wait is the time until enough timestamps leave the window for
        one more send to fit, taking the larger of the per-minute and burst
        constraints.

        Args:
            account_id: Account to check.
            config: Active queue configuration snapshot.
            now: Optional timestamp override (epoch ms).
        """
        now = self.clock() if now is None else now
        self._horizon_ms = max(self._horizon_ms, MINUTE_MS, config.burst_window_ms)
        window = self._window(account_id, now)
        if not window:
            return 0

        wait_ms = 0
        in_minute = [ts for ts in window if ts > now - MINUTE_MS]
        if len(in_minute) >= config.messages_per_minute:
            # The slot frees when the send that is messages_per_minute back expires.
            anchor = in_minute[len(in_minute) - config.messages_per_minute]
            wait_ms = max(wait_ms, anchor + MINUTE_MS - now)

        in_burst = [ts for ts in window if ts > now - config.burst_window_ms]
        if len(in_burst) >= config.burst_limit:
            anchor = in_burst[len(in_burst) - config.burst_limit]
            wait_ms = max(wait_ms, anchor + config.burst_window_ms - now)

        return max(0, wait_ms)

    def record_send(self, account_id: str, ts: int | None = None) -> None:
        """Record a dispatch attempt for ``account_id``."""
        ts = self.clock() if ts is None else ts
        self._last_send[account_id] = max(ts, self._last_send.get(account_id, ts))
        window = self._window(account_id, ts)
        if window and ts < window[-1]:
            # Keep the window ordered even if a caller records out of order.
            items = sorted([*window, ts])
            window.clear()
            window.extend(items)
        else:
            window.append(ts)

    def count_since(self, account_id: str, window_ms: int = MINUTE_MS, now: int | None = None) -> int:
        """Number of sends recorded in the last ``window_ms`` milliseconds."""
        now = self.clock() if now is None else now
        window = self._sends.get(account_id)
        if not window:
            return 0
        return sum(1 for ts in window if ts > now - window_ms)

    def last_send(self, account_id: str) -> int | None:
        return self._last_send.get(account_id)

    def forget(self, account_id: str) -> None:
        self._sends.pop(account_id, None)
        self._last_send.pop(account_id, None)
