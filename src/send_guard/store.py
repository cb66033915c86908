# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory message store owned by the dispatch queue.

All reads and writes of queued messages go through :class:`QueueStore` and
its ``asyncio.Lock``. The lock is held only for state transitions, never
across a call to an account client, so producers enqueueing concurrently
are never blocked by an in-flight send.

Active messages (pending or processing) are grouped per account in arrival
order. Terminal messages move to a bounded history used for status queries.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Dict, List, Optional

from .models import MessageStatus, QueuedMessage

DEFAULT_HISTORY_SIZE = 1000


class QueueStore:
    """Mutation-guarded map of queued messages.

    Attributes:
        history_size: Max number of terminal messages retained for lookup.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self.history_size = history_size
        self._lock = asyncio.Lock()
        self._active: Dict[str, QueuedMessage] = {}
        self._by_account: Dict[str, List[QueuedMessage]] = {}
        self._history: deque[QueuedMessage] = deque()
        self._history_index: Dict[str, QueuedMessage] = {}
        self._seq = 0
        self._rr = 0

    # ------------------------------------------------------------------ writes
    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def knows(self, msg_id: str) -> bool:
        return msg_id in self._active or msg_id in self._history_index

    async def add(self, message: QueuedMessage) -> None:
        async with self._lock:
            if self.knows(message.id):
                raise ValueError(f"duplicate message id {message.id}")
            self._active[message.id] = message
            self._by_account.setdefault(message.account_id, []).append(message)

    async def candidates(self, now: int, skip: set[str]) -> List[QueuedMessage]:
        """Next eligible pending message of every account, round-robin ordered.

        Within an account the winner is the lowest ``sort_key``: highest
        priority first, then oldest enqueue. Accounts in ``skip`` and
        messages still backing off are left out.
        """
        async with self._lock:
            accounts = list(self._by_account)
            if not accounts:
                return []
            start = self._rr % len(accounts)
            self._rr += 1
            picked: List[QueuedMessage] = []
            for account_id in accounts[start:] + accounts[:start]:
                if account_id in skip:
                    continue
                eligible = [
                    m
                    for m in self._by_account[account_id]
                    if m.status is MessageStatus.PENDING and m.is_eligible(now)
                ]
                if eligible:
                    picked.append(min(eligible, key=lambda m: m.sort_key))
            return picked

    async def defer(self, msg_id: str, until: int, reason: Optional[str]) -> bool:
        """Annotate a pending message that admission control held back."""
        async with self._lock:
            message = self._active.get(msg_id)
            if message is None or message.status is not MessageStatus.PENDING:
                return False
            message.next_eligible_at = until
            if reason:
                message.last_error = reason
            return True

    async def claim(self, msg_id: str) -> Optional[QueuedMessage]:
        """Move a pending message to processing. None if it is gone or already taken."""
        async with self._lock:
            message = self._active.get(msg_id)
            if message is None or message.status is not MessageStatus.PENDING:
                return None
            if message.attempts >= message.max_attempts:
                return None
            message.status = MessageStatus.PROCESSING
            return message

    async def start_attempt(self, message: QueuedMessage) -> int:
        async with self._lock:
            message.attempts += 1
            message.next_eligible_at = None
            return message.attempts

    async def release(self, message: QueuedMessage, until: int, reason: str) -> bool:
        """Return a claimed message to pending without consuming an attempt."""
        return await self._back_to_pending(message, until, reason)

    async def retry(self, message: QueuedMessage, until: int, error: str) -> bool:
        """Return a failed message to pending until ``until``."""
        return await self._back_to_pending(message, until, error)

    async def _back_to_pending(self, message: QueuedMessage, until: int, error: str) -> bool:
        async with self._lock:
            message.last_error = error
            if message.id not in self._active:
                # Cleared while in flight.
                return False
            message.status = MessageStatus.PENDING
            message.next_eligible_at = until
            return True

    async def finish(
        self,
        message: QueuedMessage,
        status: MessageStatus,
        ts: int,
        error: Optional[str] = None,
    ) -> None:
        """Record a terminal outcome and move the message to history."""
        async with self._lock:
            message.status = status
            message.next_eligible_at = None
            if status is MessageStatus.SENT:
                message.sent_at = ts
                message.last_error = None
            else:
                message.failed_at = ts
            if error is not None:
                message.last_error = error
            self._drop_active(message)
            self._remember(message)

    def _drop_active(self, message: QueuedMessage) -> None:
        if self._active.pop(message.id, None) is None:
            return
        bucket = self._by_account.get(message.account_id)
        if bucket is None:
            return
        bucket[:] = [m for m in bucket if m.id != message.id]
        if not bucket:
            del self._by_account[message.account_id]

    def _remember(self, message: QueuedMessage) -> None:
        if self.history_size <= 0:
            return
        if message.id in self._history_index:
            return
        if len(self._history) >= self.history_size:
            evicted = self._history.popleft()
            self._history_index.pop(evicted.id, None)
        self._history.append(message)
        self._history_index[message.id] = message

    async def clear(self) -> int:
        """Drop every pending and processing message; history is untouched."""
        async with self._lock:
            removed = len(self._active)
            self._active.clear()
            self._by_account.clear()
            return removed

    # ------------------------------------------------------------------- reads
    async def get(self, msg_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            message = self._active.get(msg_id) or self._history_index.get(msg_id)
            return message.to_dict() if message else None

    async def list_messages(
        self,
        account_id: Optional[str] = None,
        status: Optional[MessageStatus] = None,
    ) -> List[Dict[str, Any]]:
        """Snapshot of active and retained messages, dispatch order first."""
        async with self._lock:
            messages = sorted(self._active.values(), key=lambda m: m.sort_key) + list(reversed(self._history))
            return [
                m.to_dict()
                for m in messages
                if (account_id is None or m.account_id == account_id)
                and (status is None or m.status is status)
            ]

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            pending = sum(1 for m in self._active.values() if m.status is MessageStatus.PENDING)
            processing = len(self._active) - pending
            return {"pending": pending, "processing": processing, "total_queued": len(self._active)}

    async def account_depth(self, account_id: str) -> int:
        async with self._lock:
            return len(self._by_account.get(account_id, ()))

    async def accounts(self) -> List[str]:
        async with self._lock:
            return list(self._by_account)
