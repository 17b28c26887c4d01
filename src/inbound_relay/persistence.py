"""SQLite-backed persistence layer for the inbound relay.

This module provides the Persistence class that handles all database
operations for the relay, including:

- Scheduled sends (create, lookup, listing, conditional status transitions)
- Endpoint configuration and recipient routes
- Received emails and the candidate set used to rebuild a thread
- Delivery tracking for routed emails

The persistence layer uses aiosqlite for async SQLite operations. Each
operation opens and closes its own connection. The scheduled-send claim is a
single conditional UPDATE, so concurrent processors never claim the same row.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/inbound_relay.db")
        await persistence.init_db()

        await persistence.add_endpoint({"id": "ops", "type": "webhook", "config": {...}})
        await persistence.add_route("support@example.com", "ops")
        endpoint_id = await persistence.resolve_route("support@example.com")
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from .errors import StorageConflict

SCHEDULED_UPDATABLE_FIELDS = {
    "sent_at",
    "cancelled_at",
    "failed_reason",
    "provider_message_id",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Persistence:
    """Async SQLite persistence layer for relay state.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: str = "/data/inbound_relay.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the schema. Idempotent; adds columns missing from older databases."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_sends (
                    id TEXT PRIMARY KEY,
                    idempotency_key TEXT,
                    payload TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    scheduled_ts REAL NOT NULL,
                    timezone TEXT DEFAULT 'UTC',
                    status TEXT NOT NULL DEFAULT 'scheduled',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    sent_at TEXT,
                    cancelled_at TEXT,
                    failed_reason TEXT
                )
                """
            )
            try:
                await db.execute("ALTER TABLE scheduled_sends ADD COLUMN provider_message_id TEXT")
            except aiosqlite.OperationalError:
                pass
            await db.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_scheduled_idempotency
                ON scheduled_sends(idempotency_key) WHERE idempotency_key IS NOT NULL
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_sends(status, scheduled_ts)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS endpoints (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    name TEXT,
                    active INTEGER DEFAULT 1,
                    config TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_routes (
                    address TEXT PRIMARY KEY,
                    endpoint_id TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (endpoint_id) REFERENCES endpoints(id) ON DELETE CASCADE
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    recipient TEXT,
                    subject_key TEXT,
                    in_reply_to TEXT,
                    refs TEXT,
                    endpoint_id TEXT,
                    received_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_emails_message_id ON emails(message_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_emails_subject ON emails(subject_key)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS endpoint_deliveries (
                    id TEXT PRIMARY KEY,
                    email_id TEXT,
                    endpoint_id TEXT NOT NULL,
                    delivery_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER DEFAULT 1,
                    last_attempt_at TEXT,
                    response_data TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_email ON endpoint_deliveries(email_id)"
            )
            await db.commit()

    # Scheduled sends ----------------------------------------------------------
    @staticmethod
    def _decode_scheduled_row(row: Iterable[Any], columns: List[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        data["message"] = json.loads(data.pop("payload"))
        data.pop("scheduled_ts", None)
        return data

    async def create_scheduled(self, record: Dict[str, Any]) -> None:
        """Insert a scheduled send.

        Args:
            record: Dict with keys id, idempotency_key, message (JSON-able),
                scheduled_at (aware datetime), timezone.

        Raises:
            StorageConflict: If the idempotency key is already taken.
        """
        scheduled_at: datetime = record["scheduled_at"]
        now = _now_iso()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO scheduled_sends
                    (id, idempotency_key, payload, scheduled_at, scheduled_ts, timezone, status, attempts, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'scheduled', 0, ?, ?)
                    """,
                    (
                        record["id"],
                        record.get("idempotency_key"),
                        json.dumps(record["message"]),
                        scheduled_at.isoformat(),
                        scheduled_at.timestamp(),
                        record.get("timezone") or "UTC",
                        now,
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.IntegrityError as exc:
            raise StorageConflict(f"scheduled send conflicts with an existing record: {exc}") from exc

    async def get_scheduled(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM scheduled_sends WHERE id=?", (schedule_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_scheduled_row(row, cols)

    async def find_by_idempotency_key(self, key: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM scheduled_sends WHERE idempotency_key=?", (key,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_scheduled_row(row, cols)

    async def list_by_status(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return scheduled sends ordered by due time, optionally filtered by status."""
        query = "SELECT * FROM scheduled_sends"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY scheduled_ts, created_at LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_scheduled_row(row, cols) for row in rows]

    async def list_due(self, now: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        """Return ``scheduled`` items whose time is at or before ``now``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM scheduled_sends
                WHERE status = 'scheduled' AND scheduled_ts <= ?
                ORDER BY scheduled_ts, created_at
                LIMIT ?
                """,
                (now.timestamp(), int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_scheduled_row(row, cols) for row in rows]

    async def update_status(
        self,
        schedule_id: str,
        from_status: str,
        to_status: str,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> bool:
        """Move a scheduled send from ``from_status`` to ``to_status``.

        The transition is a single conditional UPDATE: it only applies when
        the row is still in ``from_status``.

        Returns:
            True if the row changed, False if it was missing or in another state.
        """
        set_parts = ["status = ?", "updated_at = ?"]
        values: List[Any] = [to_status, _now_iso()]
        if increment_attempts:
            set_parts.append("attempts = attempts + 1")
        for key, value in fields.items():
            if key not in SCHEDULED_UPDATABLE_FIELDS:
                raise ValueError(f"Unknown scheduled send field: {key}")
            set_parts.append(f"{key} = ?")
            values.append(value.isoformat() if isinstance(value, datetime) else value)
        values.extend([schedule_id, from_status])

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE scheduled_sends SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
                tuple(values),
            )
            await db.commit()
            return cursor.rowcount > 0

    # Endpoints ----------------------------------------------------------------
    async def add_endpoint(self, endpoint: Dict[str, Any]) -> None:
        """Insert or replace an endpoint definition.

        Args:
            endpoint: Dict with keys id, type, name, active and the full
                endpoint document under ``config``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO endpoints (id, type, name, active, config, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    name = excluded.name,
                    active = excluded.active,
                    config = excluded.config,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    endpoint["id"],
                    endpoint["type"],
                    endpoint.get("name"),
                    1 if endpoint.get("active", True) else 0,
                    json.dumps(endpoint["config"]),
                ),
            )
            await db.commit()

    @staticmethod
    def _decode_endpoint_row(row: Iterable[Any], columns: List[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        data["config"] = json.loads(data["config"])
        data["active"] = bool(data.get("active", 1))
        return data

    async def get_endpoint(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM endpoints WHERE id=?", (endpoint_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_endpoint_row(row, cols)

    async def list_endpoints(self, active_only: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM endpoints"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_endpoint_row(row, cols) for row in rows]

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Delete an endpoint and the routes pointing to it."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM email_routes WHERE endpoint_id = ?", (endpoint_id,))
            cursor = await db.execute("DELETE FROM endpoints WHERE id = ?", (endpoint_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Routes -------------------------------------------------------------------
    async def add_route(self, address: str, endpoint_id: str) -> None:
        """Route ``address`` (or ``@domain`` for a catch-all) to an endpoint."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO email_routes (address, endpoint_id) VALUES (?, ?)",
                (address.strip().lower(), endpoint_id),
            )
            await db.commit()

    async def list_routes(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT address, endpoint_id, created_at FROM email_routes ORDER BY address"
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def delete_route(self, address: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM email_routes WHERE address = ?", (address.strip().lower(),)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def resolve_route(self, recipient: str) -> Optional[str]:
        """Return the endpoint id for ``recipient``; exact address first, then the domain catch-all."""
        address = recipient.strip().lower()
        candidates = [address]
        if "@" in address:
            candidates.append("@" + address.rsplit("@", 1)[1])
        async with aiosqlite.connect(self.db_path) as db:
            for candidate in candidates:
                async with db.execute(
                    "SELECT endpoint_id FROM email_routes WHERE address = ?", (candidate,)
                ) as cur:
                    row = await cur.fetchone()
                if row:
                    return row[0]
        return None

    # Emails -------------------------------------------------------------------
    @staticmethod
    def _decode_email_row(row: Iterable[Any], columns: List[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        data["email"] = json.loads(data.pop("payload"))
        data["references"] = (data.pop("refs") or "").split()
        return data

    async def insert_email(self, record: Dict[str, Any]) -> str:
        """Store a received email.

        Args:
            record: Dict with keys id, message_id, recipient, subject_key,
                in_reply_to, references (list), endpoint_id and email (the
                canonical email as JSON-able data).
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO emails
                (id, message_id, recipient, subject_key, in_reply_to, refs, endpoint_id, received_at, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["message_id"],
                    record.get("recipient"),
                    record.get("subject_key") or "",
                    record.get("in_reply_to"),
                    " ".join(record.get("references") or []),
                    record.get("endpoint_id"),
                    record.get("received_at") or _now_iso(),
                    json.dumps(record["email"]),
                ),
            )
            await db.commit()
        return record["id"]

    async def get_email(self, email_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM emails WHERE id=?", (email_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_email_row(row, cols)

    async def list_emails_for_thread(self, email_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        """Return the stored emails that may belong to the thread of ``email_id``.

        Follows message-id links in both directions (``In-Reply-To`` and
        ``References``) and adds emails sharing the normalized subject, so
        that the threading engine can apply its subject fallback.
        """
        target = await self.get_email(email_id)
        if target is None:
            return []
        found: Dict[str, Dict[str, Any]] = {target["id"]: target}
        pending = {target["message_id"], *target["references"]}
        if target.get("in_reply_to"):
            pending.add(target["in_reply_to"])
        seen_ids: set[str] = set()

        async with aiosqlite.connect(self.db_path) as db:
            if target.get("subject_key"):
                async with db.execute(
                    "SELECT * FROM emails WHERE subject_key = ? ORDER BY received_at LIMIT ?",
                    (target["subject_key"], int(limit)),
                ) as cur:
                    rows = await cur.fetchall()
                    cols = [c[0] for c in cur.description]
                for row in rows:
                    data = self._decode_email_row(row, cols)
                    found.setdefault(data["id"], data)

            while pending and len(found) < limit:
                message_id = pending.pop()
                if not message_id or message_id in seen_ids:
                    continue
                seen_ids.add(message_id)
                async with db.execute(
                    """
                    SELECT * FROM emails
                    WHERE message_id = ? OR in_reply_to = ? OR instr(refs, ?) > 0
                    """,
                    (message_id, message_id, message_id),
                ) as cur:
                    rows = await cur.fetchall()
                    cols = [c[0] for c in cur.description]
                for row in rows:
                    data = self._decode_email_row(row, cols)
                    if data["id"] in found:
                        continue
                    found[data["id"]] = data
                    pending.add(data["message_id"])
                    pending.update(data["references"])
                    if data.get("in_reply_to"):
                        pending.add(data["in_reply_to"])

        return sorted(found.values(), key=lambda item: (item["received_at"], item["id"]))[:limit]

    # Deliveries ---------------------------------------------------------------
    async def record_delivery(self, delivery: Dict[str, Any]) -> None:
        """Store the outcome of one routed delivery."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO endpoint_deliveries
                (id, email_id, endpoint_id, delivery_type, status, attempts, last_attempt_at, response_data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    delivery["id"],
                    delivery.get("email_id"),
                    delivery["endpoint_id"],
                    delivery["delivery_type"],
                    delivery["status"],
                    int(delivery.get("attempts", 1)),
                    delivery.get("last_attempt_at") or _now_iso(),
                    json.dumps(delivery.get("response_data") or {}),
                ),
            )
            await db.commit()

    async def list_deliveries(
        self,
        *,
        email_id: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM endpoint_deliveries"
        conditions: List[str] = []
        params: List[Any] = []
        if email_id:
            conditions.append("email_id = ?")
            params.append(email_id)
        if endpoint_id:
            conditions.append("endpoint_id = ?")
            params.append(endpoint_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY last_attempt_at DESC, rowid DESC LIMIT ?"
        params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = []
        for row in rows:
            data = dict(zip(cols, row))
            data["response_data"] = json.loads(data["response_data"]) if data.get("response_data") else {}
            result.append(data)
        return result
