"""
In-memory store adapters for testing.

This module provides in-memory ledger, database and object store backends for:
- Unit tests
- Integration tests of coordination, verification and repair
- Local development without a chain relayer, SQLite file or S3 bucket

Invariants:
    - All data is lost on process exit
    - Same idempotency and immutability semantics as the real backends:
      the ledger and object store never overwrite, the database upserts
    - Safe to use from multiple coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the StoreAdapter protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, replace
from typing import Any

from ..errors import StoreError, StoreRejected, StoreUnavailable
from ..model import (
    LEDGER_FIELDS,
    ContentRef,
    EventRecord,
    LedgerRef,
    ObjectStoreRef,
    StoreKind,
    StoreReceipt,
    StoreRecord,
    compute_content_hash,
    decode_metadata_document,
    encode_metadata_document,
)
from .base import HealthState, HealthStatus, elapsed_ms

logger = logging.getLogger(__name__)


class _InMemoryStore:
    """Shared plumbing: connection flag, call counters, failure and latency injection.

    Attributes:
        write_calls: Number of write() calls, including failed ones
        read_calls: Number of read() calls, including failed ones
        written: Records passed to successful write() calls, in order
    """

    kind: StoreKind

    def __init__(self) -> None:
        self._connected = False
        self._lock = asyncio.Lock()
        self._write_failure: tuple[type[StoreError], str] | None = None
        self._read_failure: tuple[type[StoreError], str] | None = None
        self._write_latency = 0.0
        self._read_latency = 0.0
        self.write_calls = 0
        self.read_calls = 0
        self.written: list[EventRecord] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("%s connected", type(self).__name__)

    async def close(self) -> None:
        self._connected = False

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        if not self._connected:
            return HealthStatus(
                store=self.kind,
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms(started),
                error="Not connected",
            )
        if self._read_failure or self._write_failure:
            return HealthStatus(
                store=self.kind,
                status=HealthState.DEGRADED,
                response_time_ms=elapsed_ms(started),
                details={"injected_failure": True},
            )
        return HealthStatus(
            store=self.kind,
            status=HealthState.HEALTHY,
            response_time_ms=elapsed_ms(started),
        )

    async def _before(self, operation: str) -> None:
        if operation == "write":
            self.write_calls += 1
            latency, failure = self._write_latency, self._write_failure
        else:
            self.read_calls += 1
            latency, failure = self._read_latency, self._read_failure

        if not self._connected:
            raise StoreUnavailable("Not connected", self.kind, operation)
        if latency:
            await asyncio.sleep(latency)
        if failure:
            error_cls, message = failure
            raise error_cls(message, self.kind, operation)

    # Testing helpers

    def fail_writes(
        self,
        error_cls: type[StoreError] = StoreUnavailable,
        message: str = "injected write failure",
    ) -> None:
        """Make every following write() raise error_cls."""
        self._write_failure = (error_cls, message)

    def fail_reads(
        self,
        error_cls: type[StoreError] = StoreUnavailable,
        message: str = "injected read failure",
    ) -> None:
        """Make every following read() raise error_cls."""
        self._read_failure = (error_cls, message)

    def set_latency(self, seconds: float, operation: str | None = None) -> None:
        """Delay read/write (or both when operation is None) by seconds."""
        if operation in (None, "write"):
            self._write_latency = seconds
        if operation in (None, "read"):
            self._read_latency = seconds

    def heal(self) -> None:
        """Clear all injected failures and latency."""
        self._write_failure = None
        self._read_failure = None
        self._write_latency = 0.0
        self._read_latency = 0.0

    def reset_counters(self) -> None:
        self.write_calls = 0
        self.read_calls = 0
        self.written.clear()

    def _reject_incomplete(self, record: EventRecord) -> None:
        missing = record.missing_for(self.kind)
        if missing:
            raise StoreRejected(f"Missing required fields: {missing}", self.kind, "write")


@dataclass
class _LedgerEntry:
    values: dict[str, Any]
    ref: LedgerRef


class InMemoryLedger(_InMemoryStore):
    """Append-only ledger simulation.

    Entries are immutable once written: a second write for the same event id
    returns the existing LedgerRef and issues no new transaction.

    Example:
        >>> ledger = InMemoryLedger()
        >>> await ledger.connect()
        >>> receipt = await ledger.write(record)
        >>> receipt.ledger_ref.transaction_hash
        '0x...'
    """

    kind = StoreKind.LEDGER

    def __init__(
        self,
        chain_id: int = 43113,
        contract_address: str = "0x" + "0" * 40,
    ) -> None:
        super().__init__()
        self.chain_id = chain_id
        self.contract_address = contract_address
        self._entries: dict[str, _LedgerEntry] = {}
        self.transactions: list[str] = []

    async def write(self, record: EventRecord) -> StoreReceipt:
        await self._before("write")
        self._reject_incomplete(record)

        async with self._lock:
            existing = self._entries.get(record.event_id)
            if existing:
                return StoreReceipt(
                    kind=self.kind,
                    event_id=record.event_id,
                    ledger_ref=existing.ref,
                    already_existed=True,
                )

            event_index = len(self._entries) + 1
            tx_hash = "0x" + hashlib.sha256(
                f"{record.event_id}:{event_index}".encode("utf-8")
            ).hexdigest()
            ref = LedgerRef(
                chain_id=self.chain_id,
                contract_address=self.contract_address,
                event_index=event_index,
                transaction_hash=tx_hash,
            )
            values = {name: getattr(record, name) for name in ("title", *LEDGER_FIELDS)}
            self._entries[record.event_id] = _LedgerEntry(values=values, ref=ref)
            self.transactions.append(tx_hash)
            self.written.append(record)

        logger.debug(
            "Event recorded on in-memory ledger",
            extra={"event_id": record.event_id, "event_index": event_index},
        )
        return StoreReceipt(kind=self.kind, event_id=record.event_id, ledger_ref=ref)

    async def read(self, event_id: str) -> StoreRecord | None:
        await self._before("read")
        entry = self._entries.get(event_id)
        if entry is None:
            return None
        return StoreRecord(
            kind=self.kind,
            event_id=event_id,
            fields={**entry.values, "ledger_ref": entry.ref},
        )

    def overwrite_fields(self, event_id: str, **values: Any) -> None:
        """Change stored values behind the adapter's back (testing helper)."""
        self._entries[event_id].values.update(values)


class InMemoryDatabase(_InMemoryStore):
    """Relational store simulation with a per-row revision counter.

    Writes are upserts that merge into the existing row. Writing content
    identical to the stored row keeps the revision and reports already_existed.
    """

    kind = StoreKind.DATABASE

    def __init__(self) -> None:
        super().__init__()
        self._rows: dict[str, dict[str, Any]] = {}
        self._revisions: dict[str, int] = {}

    @property
    def row_count(self) -> int:
        return len(self._rows)

    async def write(self, record: EventRecord) -> StoreReceipt:
        await self._before("write")
        self._reject_incomplete(record)

        incoming = record.to_fields()
        incoming.pop("database_revision", None)

        async with self._lock:
            existing = self._rows.get(record.event_id)
            merged = {**(existing or {}), **incoming}
            if existing is not None and merged == existing:
                return StoreReceipt(
                    kind=self.kind,
                    event_id=record.event_id,
                    revision=self._revisions[record.event_id],
                    already_existed=True,
                )

            revision = self._revisions.get(record.event_id, 0) + 1
            self._rows[record.event_id] = merged
            self._revisions[record.event_id] = revision
            self.written.append(record)

        return StoreReceipt(kind=self.kind, event_id=record.event_id, revision=revision)

    async def read(self, event_id: str) -> StoreRecord | None:
        await self._before("read")
        row = self._rows.get(event_id)
        if row is None:
            return None
        revision = self._revisions[event_id]
        return StoreRecord(
            kind=self.kind,
            event_id=event_id,
            fields={**row, "database_revision": revision},
            revision=revision,
        )

    async def list_event_ids(self, limit: int = 1000) -> list[str]:
        """Event ids in insertion order, for consistency sweeps."""
        await self._before("read")
        return list(self._rows)[:limit]

    def overwrite_fields(self, event_id: str, **values: Any) -> None:
        """Change stored values behind the adapter's back (testing helper)."""
        self._rows[event_id].update(values)


@dataclass
class _StoredObject:
    content: bytes
    content_hash: str
    content_type: str


class InMemoryObjectStore(_InMemoryStore):
    """Content-addressed object store simulation.

    Objects are never overwritten: writing an event that already has a
    metadata document returns the existing reference.
    """

    kind = StoreKind.OBJECT_STORE

    def __init__(self, public_base_url: str = "memory://objects") -> None:
        super().__init__()
        self.public_base_url = public_base_url.rstrip("/")
        self._objects: dict[str, _StoredObject] = {}

    def _url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def write(self, record: EventRecord) -> StoreReceipt:
        await self._before("write")
        self._reject_incomplete(record)

        metadata_key = f"{record.event_id}/metadata.json"
        async with self._lock:
            existing = self._objects.get(metadata_key)
            if existing:
                return StoreReceipt(
                    kind=self.kind,
                    event_id=record.event_id,
                    object_store_ref=self._ref_for(record.event_id, existing),
                    already_existed=True,
                )

            image_ref = None
            if record.banner:
                image_key = f"{record.event_id}/banner"
                image_hash = compute_content_hash(record.banner.content)
                self._objects[image_key] = _StoredObject(
                    record.banner.content, image_hash, record.banner.content_type
                )
                image_ref = ContentRef(hash=image_hash, url=self._url(image_key))

            content = encode_metadata_document(record, image_ref)
            stored = _StoredObject(content, compute_content_hash(content), "application/json")
            self._objects[metadata_key] = stored
            self.written.append(record)

        return StoreReceipt(
            kind=self.kind,
            event_id=record.event_id,
            object_store_ref=ObjectStoreRef(
                metadata=ContentRef(hash=stored.content_hash, url=self._url(metadata_key)),
                image=image_ref,
            ),
        )

    async def read(self, event_id: str) -> StoreRecord | None:
        await self._before("read")
        stored = self._objects.get(f"{event_id}/metadata.json")
        if stored is None:
            return None

        try:
            values, _ = decode_metadata_document(stored.content)
        except ValueError:
            values = {}
        values["object_store_ref"] = self._ref_for(event_id, stored)
        return StoreRecord(
            kind=self.kind,
            event_id=event_id,
            fields=values,
            content=stored.content,
            content_hash=stored.content_hash,
        )

    def _ref_for(self, event_id: str, stored: _StoredObject) -> ObjectStoreRef:
        try:
            _, image = decode_metadata_document(stored.content)
        except ValueError:
            image = None
        return ObjectStoreRef(
            metadata=ContentRef(
                hash=stored.content_hash,
                url=self._url(f"{event_id}/metadata.json"),
            ),
            image=image,
        )

    def corrupt(self, event_id: str, content: bytes | None = None) -> None:
        """Replace stored bytes while keeping the recorded hash (testing helper)."""
        key = f"{event_id}/metadata.json"
        stored = self._objects[key]
        self._objects[key] = replace(
            stored, content=stored.content + b" " if content is None else content
        )

    def swap_content(self, event_id: str, content: bytes) -> None:
        """Store different bytes with their own matching hash (testing helper)."""
        key = f"{event_id}/metadata.json"
        stored = self._objects[key]
        self._objects[key] = replace(
            stored, content=content, content_hash=compute_content_hash(content)
        )

    def get_object(self, key: str) -> bytes | None:
        """Raw object bytes by key (testing helper)."""
        stored = self._objects.get(key)
        return stored.content if stored else None
