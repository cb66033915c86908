"""SQLite-backed audit store for the dispatch queue and the health ledger.

The queue itself lives in memory. This store keeps what must outlive a
process restart:

- ``message_log``: messages that reached a terminal status (sent / failed)
- ``activity_log``: every health activity event, replayed at start-up to
  rebuild the last 24 hours of each account's ledger
- ``warmups``: warm-up start time per account
- ``instance_config``: key/value settings, including the active queue config

The persistence layer uses aiosqlite. Each operation opens and closes its
own connection, making it safe for concurrent use from the dispatch loop
and the API handlers.

Example:
    Basic usage::

        persistence = Persistence("/data/send_guard.db")
        await persistence.init_db()
        await persistence.record_message(message.to_dict())
        rows = await persistence.list_messages(account_id="acc-1", limit=20)
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import ActivityEvent, ActivityType

QUEUE_CONFIG_KEY = "queue_config"


class Persistence:
    """Async SQLite persistence for audit history and restart state.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/send_guard.db"):
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create every table and index. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_log (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    max_attempts INTEGER NOT NULL,
                    enqueued_at INTEGER NOT NULL,
                    sent_at INTEGER,
                    failed_at INTEGER,
                    last_error TEXT,
                    payload TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_message_log_account ON message_log(account_id, enqueued_at)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    latency_ms INTEGER,
                    detail TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_activity_log_ts ON activity_log(timestamp)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS warmups (
                    account_id TEXT PRIMARY KEY,
                    started_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS instance_config (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.commit()

    # Messages -----------------------------------------------------------------
    @staticmethod
    def _decode_message_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        payload = data.pop("payload", None)
        if payload:
            try:
                data.update(json.loads(payload))
            except json.JSONDecodeError:
                data["raw_payload"] = payload
        return data

    async def record_message(self, message: Dict[str, Any]) -> None:
        """Store a terminal message; a later record for the same id replaces it."""
        extra = {
            key: message[key]
            for key in ("text", "media", "location", "options")
            if message.get(key) is not None
        }
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO message_log (
                    id, account_id, recipient, kind, priority, status, attempts,
                    max_attempts, enqueued_at, sent_at, failed_at, last_error, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message["id"],
                    message["account_id"],
                    message["recipient"],
                    message["kind"],
                    message["priority"],
                    message["status"],
                    int(message.get("attempts", 0)),
                    int(message.get("max_attempts", 0)),
                    int(message["enqueued_at"]),
                    message.get("sent_at"),
                    message.get("failed_at"),
                    message.get("last_error"),
                    json.dumps(extra) if extra else None,
                ),
            )
            await db.commit()

    async def get_message(self, msg_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM message_log WHERE id = ?", (msg_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_message_row(row, cols)

    async def list_messages(
        self,
        account_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return terminal messages, newest first."""
        query = "SELECT * FROM message_log"
        clauses: List[str] = []
        params: List[Any] = []
        if account_id:
            clauses.append("account_id = ?")
            params.append(account_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enqueued_at DESC, id DESC LIMIT ?"
        params.append(max(0, int(limit)))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_message_row(row, cols) for row in rows]

    # Activity -----------------------------------------------------------------
    async def log_activity(self, account_id: str, event: ActivityEvent) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO activity_log (account_id, event_type, timestamp, latency_ms, detail)
                VALUES (?, ?, ?, ?, ?)
                """,
                (account_id, event.type.value, event.timestamp, event.latency_ms, event.detail),
            )
            await db.commit()

    async def fetch_activity_since(self, since_ms: int) -> List[Tuple[str, ActivityEvent]]:
        """Return ``(account_id, event)`` pairs newer than ``since_ms``, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT account_id, event_type, timestamp, latency_ms, detail
                FROM activity_log
                WHERE timestamp > ?
                ORDER BY timestamp ASC, id ASC
                """,
                (since_ms,),
            ) as cur:
                rows = await cur.fetchall()
        return [
            (
                account_id,
                ActivityEvent(
                    type=ActivityType(event_type),
                    timestamp=int(timestamp),
                    latency_ms=latency_ms,
                    detail=detail,
                ),
            )
            for account_id, event_type, timestamp, latency_ms, detail in rows
        ]

    async def purge_activity_before(self, threshold_ms: int) -> int:
        """Delete activity older than ``threshold_ms``; returns the number of rows removed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM activity_log WHERE timestamp <= ?", (threshold_ms,))
            await db.commit()
            return cursor.rowcount

    # Warm-ups -----------------------------------------------------------------
    async def save_warmup(self, account_id: str, started_at: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO warmups (account_id, started_at) VALUES (?, ?)",
                (account_id, started_at),
            )
            await db.commit()

    async def load_warmups(self) -> Dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT account_id, started_at FROM warmups") as cur:
                rows = await cur.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    # Instance config ------------------------------------------------------
    async def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value FROM instance_config WHERE key = ?", (key,)
            ) as cur:
                row = await cur.fetchone()
                return row[0] if row else default

    async def set_config(self, key: str, value: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO instance_config (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                """,
                (key, value),
            )
            await db.commit()

    async def save_queue_config(self, config: Dict[str, Any]) -> None:
        await self.set_config(QUEUE_CONFIG_KEY, json.dumps(config, sort_keys=True))

    async def load_queue_config(self) -> Optional[Dict[str, Any]]:
        """Return the last persisted queue config, or None if never saved."""
        raw = await self.get_config(QUEUE_CONFIG_KEY)
        if not raw:
            return None
        return json.loads(raw)
