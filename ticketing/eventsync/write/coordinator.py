"""
Best-effort multi-store creation of new events.

The coordinator assigns the event id, then writes the record to the ledger,
the database and the object store concurrently. There is no transaction
spanning the three stores: any subset may fail, and the caller receives a
CreationResult saying exactly which stores hold the event.

Invariants:
    - event_id is generated here (or supplied by the caller), never by a store
    - One store failing never cancels the other attempts
    - Zero successes raises AllStoresFailed, one or more returns a result
    - Dispatched attempts always run to completion, even when the caller
      cancels; their outcome is still logged and reported
    - The database row carries every store reference known by the time its
      write finished

How to change safely:
    - Adding a store means adding a StoreKind and an attempt here
    - Never retry ledger writes here; idempotency relies on stable ids
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import AllStoresFailed, StoreError
from ..model import (
    EventInput,
    EventRecord,
    LedgerRef,
    ObjectStoreRef,
    ProvenanceFlags,
    StoreKind,
    StoreReceipt,
)
from ..stores.base import StoreAdapter, bounded_call

logger = logging.getLogger(__name__)


@dataclass
class StoreOutcome:
    """Outcome of one store attempt: exactly one of receipt or error is set."""

    kind: StoreKind
    receipt: StoreReceipt | None = None
    error: StoreError | None = None

    @property
    def succeeded(self) -> bool:
        return self.receipt is not None


@dataclass
class CreationResult:
    """Result of a multi-store creation.

    Attributes:
        event_id: Canonical id shared by all stores
        record: The record as written, with every reference obtained
        provenance: Which stores hold the event
        ledger_ref: Ledger reference if the ledger write succeeded
        object_store_ref: Object references if the upload succeeded
        database_revision: Row revision if the database write succeeded
        errors: Per-store failures
        already_existed: Stores that already held the event
    """

    event_id: str
    record: EventRecord
    provenance: ProvenanceFlags
    ledger_ref: LedgerRef | None = None
    object_store_ref: ObjectStoreRef | None = None
    database_revision: int | None = None
    errors: dict[StoreKind, StoreError] = field(default_factory=dict)
    already_existed: set[StoreKind] = field(default_factory=set)

    @property
    def fully_written(self) -> bool:
        return self.provenance.all

    @property
    def partial(self) -> bool:
        return self.provenance.any and not self.provenance.all

    def summary(self) -> dict[str, Any]:
        """Structured per-store outcome for API responses and logs."""
        if self.fully_written:
            status = "created"
        elif self.partial:
            status = "partial"
        else:
            status = "failed"

        stores: dict[str, str] = {}
        for kind in StoreKind:
            if kind in self.errors:
                stores[kind.value] = self.errors[kind].code
            elif kind in self.already_existed:
                stores[kind.value] = "already_existed"
            elif self.provenance.get(kind):
                stores[kind.value] = "written"
            else:
                stores[kind.value] = "not_attempted"

        return {
            "event_id": self.event_id,
            "status": status,
            "stores": stores,
            "ledger_ref": self.ledger_ref.to_dict() if self.ledger_ref else None,
            "object_store_ref": self.object_store_ref.to_dict()
            if self.object_store_ref
            else None,
            "database_revision": self.database_revision,
            "errors": {kind.value: str(err) for kind, err in self.errors.items()},
        }


class _KnownRefs:
    """References obtained so far by one creation."""

    def __init__(self) -> None:
        self.ledger_ref: LedgerRef | None = None
        self.object_store_ref: ObjectStoreRef | None = None


class WriteCoordinator:
    """Creates events across all stores concurrently.

    Attributes:
        stores: Adapter per store kind
        store_timeout: Upper bound on each adapter call, in seconds
        on_abandoned: Called with the result of a creation whose caller
            cancelled after the writes were dispatched

    Example:
        >>> coordinator = WriteCoordinator(stores, store_timeout=10.0)
        >>> result = await coordinator.create(EventInput(...))
        >>> result.provenance.all
        True
    """

    def __init__(
        self,
        stores: Mapping[StoreKind, StoreAdapter],
        store_timeout: float = 10.0,
        on_abandoned: Callable[[CreationResult], None] | None = None,
    ) -> None:
        self.stores = dict(stores)
        self.store_timeout = store_timeout
        self.on_abandoned = on_abandoned

        self._created_count = 0
        self._partial_count = 0
        self._failed_count = 0

    async def create(self, input: EventInput, event_id: str | None = None) -> CreationResult:
        """Write a new event to every store.

        Args:
            input: Validated creation request
            event_id: Id to reuse for an idempotent retry (falls back to
                input.event_id, then to a fresh uuid4)

        Returns:
            CreationResult for a full or partial success

        Raises:
            AllStoresFailed: If no store accepted the event
            asyncio.CancelledError: If the caller cancelled; store attempts
                still complete and are reported to on_abandoned
        """
        event_id = event_id or input.event_id or str(uuid.uuid4())
        record = input.to_record(event_id)
        known = _KnownRefs()

        logger.debug("Creating event", extra={"event_id": event_id})

        pending = asyncio.gather(
            self._attempt(StoreKind.LEDGER, record, known),
            self._attempt(StoreKind.OBJECT_STORE, record, known),
            self._attempt_database(record, known),
        )
        try:
            outcomes = await asyncio.shield(pending)
        except asyncio.CancelledError:
            outcomes = await pending
            result = self._assemble(record, outcomes)
            logger.warning(
                "Event creation cancelled after dispatch",
                extra={"event_id": event_id, **result.summary()},
            )
            if self.on_abandoned is not None:
                self.on_abandoned(result)
            raise

        result = self._assemble(record, outcomes)

        if result.fully_written:
            self._created_count += 1
            logger.info("Event created in all stores", extra=result.summary())
        elif result.partial:
            self._partial_count += 1
            logger.warning("Event partially created", extra=result.summary())
        else:
            self._failed_count += 1
            logger.error("Event creation failed in every store", extra=result.summary())
            raise AllStoresFailed(event_id, result)

        return result

    async def _write(self, kind: StoreKind, record: EventRecord) -> StoreReceipt:
        return await bounded_call(
            kind, "write", self.stores[kind].write(record), self.store_timeout
        )

    async def _attempt(
        self,
        kind: StoreKind,
        record: EventRecord,
        known: _KnownRefs,
    ) -> StoreOutcome:
        try:
            receipt = await self._write(kind, record)
        except StoreError as e:
            logger.warning(
                f"Store write failed: {e}",
                extra={"event_id": record.event_id, "store": kind.value, "code": e.code},
            )
            return StoreOutcome(kind=kind, error=e)

        if receipt.ledger_ref:
            known.ledger_ref = receipt.ledger_ref
        if receipt.object_store_ref:
            known.object_store_ref = receipt.object_store_ref
        return StoreOutcome(kind=kind, receipt=receipt)

    async def _attempt_database(self, record: EventRecord, known: _KnownRefs) -> StoreOutcome:
        kind = StoreKind.DATABASE
        tagged = record.with_refs(known.ledger_ref, known.object_store_ref)
        try:
            receipt = await self._write(kind, tagged)
        except StoreError as e:
            logger.warning(
                f"Store write failed: {e}",
                extra={"event_id": record.event_id, "store": kind.value, "code": e.code},
            )
            return StoreOutcome(kind=kind, error=e)

        late = record.with_refs(known.ledger_ref, known.object_store_ref)
        if late != tagged:
            # Refs completed while the row was being written
            try:
                tagging = await self._write(kind, late)
            except StoreError as e:
                logger.warning(
                    f"Reference tagging write failed: {e}",
                    extra={"event_id": record.event_id, "store": kind.value},
                )
            else:
                receipt = StoreReceipt(
                    kind=kind,
                    event_id=record.event_id,
                    revision=tagging.revision,
                    already_existed=receipt.already_existed and tagging.already_existed,
                )
        return StoreOutcome(kind=kind, receipt=receipt)

    def _assemble(self, record: EventRecord, outcomes: list[StoreOutcome]) -> CreationResult:
        by_kind = {outcome.kind: outcome for outcome in outcomes}
        ledger = by_kind[StoreKind.LEDGER].receipt
        objects = by_kind[StoreKind.OBJECT_STORE].receipt
        database = by_kind[StoreKind.DATABASE].receipt

        ledger_ref = ledger.ledger_ref if ledger else None
        object_store_ref = objects.object_store_ref if objects else None

        return CreationResult(
            event_id=record.event_id,
            record=record.with_refs(ledger_ref, object_store_ref),
            provenance=ProvenanceFlags.from_kinds(
                outcome.kind for outcome in outcomes if outcome.succeeded
            ),
            ledger_ref=ledger_ref,
            object_store_ref=object_store_ref,
            database_revision=database.revision if database else None,
            errors={o.kind: o.error for o in outcomes if o.error is not None},
            already_existed={
                o.kind for o in outcomes if o.receipt is not None and o.receipt.already_existed
            },
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get coordinator statistics."""
        return {
            "created_count": self._created_count,
            "partial_count": self._partial_count,
            "failed_count": self._failed_count,
        }
