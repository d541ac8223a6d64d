"""
SQLite event store for EventSync.

This module manages the relational copy of each event:
- One row per event id with every descriptive field
- Cached ledger and object store references
- A revision counter bumped on every content change

The database is the only store that accepts corrections, so repair targets
it for every overwrite.

Invariants:
    - One row per event_id (upsert, never duplicate)
    - Writes merge into the existing row: a write never clears a column
    - Unchanged content keeps its revision and reports already_existed
    - All writes run in a single IMMEDIATE transaction

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add an ALTER step for new columns

Table schema:
    events:
        - event_id TEXT PRIMARY KEY
        - title, description, location, visibility, creator_address, category TEXT
        - start_time, end_time TEXT (ISO-8601 UTC)
        - max_capacity INTEGER
        - ticket_price TEXT (canonical decimal string)
        - tags_json, ledger_ref_json, object_store_ref_json TEXT (JSON)
        - revision INTEGER
        - created_at, updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import StoreRejected, StoreUnavailable
from ..model import (
    EventRecord,
    LedgerRef,
    ObjectStoreRef,
    StoreKind,
    StoreReceipt,
    StoreRecord,
    Visibility,
    format_price,
    parse_instant,
    parse_price,
)
from .base import HealthState, HealthStatus, elapsed_ms

logger = logging.getLogger(__name__)

_COLUMNS = (
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "max_capacity",
    "ticket_price",
    "visibility",
    "creator_address",
    "category",
    "tags_json",
    "ledger_ref_json",
    "object_store_ref_json",
)


def _to_columns(record: EventRecord) -> dict[str, Any]:
    """Map a record onto column values, None for unset fields."""
    return {
        "title": record.title,
        "description": record.description,
        "location": record.location,
        "start_time": record.start_time.isoformat() if record.start_time else None,
        "end_time": record.end_time.isoformat() if record.end_time else None,
        "max_capacity": record.max_capacity,
        "ticket_price": format_price(record.ticket_price)
        if record.ticket_price is not None
        else None,
        "visibility": record.visibility.value if record.visibility else None,
        "creator_address": record.creator_address,
        "category": record.category,
        "tags_json": json.dumps(list(record.tags)) if record.tags is not None else None,
        "ledger_ref_json": json.dumps(record.ledger_ref.to_dict())
        if record.ledger_ref
        else None,
        "object_store_ref_json": json.dumps(record.object_store_ref.to_dict())
        if record.object_store_ref
        else None,
    }


def _to_fields(row: sqlite3.Row) -> dict[str, Any]:
    """Map a row back onto normalized record fields."""
    values: dict[str, Any] = {}
    for name in ("title", "description", "location", "creator_address", "category"):
        if row[name] is not None:
            values[name] = row[name]
    if row["start_time"]:
        values["start_time"] = parse_instant(row["start_time"])
    if row["end_time"]:
        values["end_time"] = parse_instant(row["end_time"])
    if row["max_capacity"] is not None:
        values["max_capacity"] = row["max_capacity"]
    if row["ticket_price"] is not None:
        values["ticket_price"] = parse_price(row["ticket_price"])
    if row["visibility"]:
        values["visibility"] = Visibility(row["visibility"])
    if row["tags_json"] is not None:
        values["tags"] = tuple(json.loads(row["tags_json"]))
    if row["ledger_ref_json"]:
        values["ledger_ref"] = LedgerRef.from_dict(json.loads(row["ledger_ref_json"]))
    if row["object_store_ref_json"]:
        values["object_store_ref"] = ObjectStoreRef.from_dict(
            json.loads(row["object_store_ref_json"])
        )
    values["database_revision"] = row["revision"]
    return values


class SqliteEventStore:
    """SQLite implementation of the database StoreAdapter.

    Thread safety:
        Each operation opens its own connection. Writes are serialized by an
        asyncio lock and an IMMEDIATE transaction.

    Example:
        >>> store = SqliteEventStore("/var/lib/eventsync")
        >>> await store.connect()
        >>> receipt = await store.write(record)
        >>> receipt.revision
        1
    """

    kind = StoreKind.DATABASE

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "events.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the event store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the events database."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                title TEXT,
                description TEXT,
                location TEXT,
                start_time TEXT,
                end_time TEXT,
                max_capacity INTEGER,
                ticket_price TEXT,
                visibility TEXT,
                creator_address TEXT,
                category TEXT,
                tags_json TEXT,
                ledger_ref_json TEXT,
                object_store_ref_json TEXT,
                revision INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_creator ON events(creator_address);
            CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_time);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        try:
            async with self._lock:
                with self._get_connection() as conn:
                    self._create_schema(conn)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open {self.db_path}: {e}", self.kind, "connect")
        self._connected = True
        logger.info(f"Event database ready: {self.db_path}")

    async def close(self) -> None:
        self._connected = False

    async def write(self, record: EventRecord) -> StoreReceipt:
        """Upsert the event row.

        Raises:
            StoreRejected: If required fields are missing or a constraint fails
            StoreUnavailable: On any other SQLite error
        """
        self._require_connected("write")
        missing = record.missing_for(self.kind)
        if missing:
            raise StoreRejected(f"Missing required fields: {missing}", self.kind, "write")

        incoming = {k: v for k, v in _to_columns(record).items() if v is not None}
        now = int(time.time() * 1000)

        try:
            async with self._lock:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        row = conn.execute(
                            "SELECT * FROM events WHERE event_id = ?", (record.event_id,)
                        ).fetchone()

                        if row is not None:
                            existing = {name: row[name] for name in _COLUMNS}
                            merged = {**existing, **incoming}
                            if merged == existing:
                                conn.execute("ROLLBACK")
                                return StoreReceipt(
                                    kind=self.kind,
                                    event_id=record.event_id,
                                    revision=row["revision"],
                                    already_existed=True,
                                )
                            revision = row["revision"] + 1
                            assignments = ", ".join(f"{name} = ?" for name in _COLUMNS)
                            conn.execute(
                                f"UPDATE events SET {assignments}, revision = ?, updated_at = ? "
                                "WHERE event_id = ?",
                                (*(merged[name] for name in _COLUMNS), revision, now, record.event_id),
                            )
                        else:
                            revision = 1
                            merged = {name: incoming.get(name) for name in _COLUMNS}
                            placeholders = ", ".join("?" for _ in _COLUMNS)
                            conn.execute(
                                f"INSERT INTO events (event_id, {', '.join(_COLUMNS)}, "
                                f"revision, created_at, updated_at) "
                                f"VALUES (?, {placeholders}, ?, ?, ?)",
                                (record.event_id, *(merged[name] for name in _COLUMNS), revision, now, now),
                            )
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
        except sqlite3.IntegrityError as e:
            raise StoreRejected(str(e), self.kind, "write")
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e), self.kind, "write")

        logger.debug(
            "Event row written",
            extra={"event_id": record.event_id, "revision": revision},
        )
        return StoreReceipt(kind=self.kind, event_id=record.event_id, revision=revision)

    async def read(self, event_id: str) -> StoreRecord | None:
        self._require_connected("read")
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM events WHERE event_id = ?", (event_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e), self.kind, "read")

        if row is None:
            return None
        return StoreRecord(
            kind=self.kind,
            event_id=event_id,
            fields=_to_fields(row),
            revision=row["revision"],
        )

    async def list_event_ids(self, limit: int = 1000) -> list[str]:
        """Event ids ordered by start time, for consistency sweeps."""
        self._require_connected("read")
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT event_id FROM events ORDER BY start_time LIMIT ?", (limit,)
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e), self.kind, "read")
        return [row["event_id"] for row in rows]

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            with self._get_connection() as conn:
                count = conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        except sqlite3.Error as e:
            return HealthStatus(
                store=self.kind,
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms(started),
                error=str(e),
            )
        return HealthStatus(
            store=self.kind,
            status=HealthState.HEALTHY,
            response_time_ms=elapsed_ms(started),
            details={"events": count, "path": str(self.db_path)},
        )

    def _require_connected(self, operation: str) -> None:
        if not self._connected:
            raise StoreUnavailable("Not connected", self.kind, operation)
