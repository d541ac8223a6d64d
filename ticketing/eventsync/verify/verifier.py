"""
Cross-store reads, canonical merge and divergence detection.

The verifier reads an event from all three stores concurrently, merges the
answers field by field using the authority table in model.py, and reports
every disagreement between stores that both hold a mirrored field. It never
writes: divergences are surfaced for the repair engine or for a human.

Invariants:
    - Any subset of stores may answer "not found" or fail without aborting
      the read of the others
    - A field absent from every store stays unset in the merged record
    - Object content whose recomputed hash differs from its recorded hash is
      corruption: reported with no authority and never used as a fallback
    - The hash recorded in the database row is a recorded hash too: a
      mismatch with the retrieved content is corruption, not a stale ref
    - Absence is only claimed when every store cleanly answered "not found"

How to change safely:
    - New mirrored fields go into MIRRORED_FIELDS, not into this module
    - Keep resolve() read-only
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import AllStoresUnavailable, NotFoundAnywhere, StoreError
from ..model import (
    FIELD_AUTHORITY,
    MERGE_PRECEDENCE,
    MIRRORED_FIELDS,
    RECORD_FIELDS,
    ConsistencyState,
    EventRecord,
    ProvenanceFlags,
    StoreKind,
    StoreRecord,
    compute_content_hash,
)
from ..stores.base import StoreAdapter, bounded_call

logger = logging.getLogger(__name__)


class DivergenceReason(str, Enum):
    VALUE_MISMATCH = "value_mismatch"
    CONTENT_HASH_MISMATCH = "content_hash_mismatch"


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (int, float, str, bool, dict, list)) or value is None:
        return value
    return str(value)


@dataclass(frozen=True)
class Divergence:
    """Two stores disagree on a field that should be consistent.

    Attributes:
        field: Record field name
        store_values: Value reported by each store involved
        authority: Store whose value wins, None when no store can be trusted
        reason: Why the field was flagged
    """

    field: str
    store_values: dict[StoreKind, Any]
    authority: StoreKind | None
    reason: DivergenceReason

    @property
    def resolvable(self) -> bool:
        return self.authority is not None

    def describe(self) -> str:
        if self.reason == DivergenceReason.CONTENT_HASH_MISMATCH:
            return f"{self.field}: stored content does not match its content hash"
        values = ", ".join(f"{kind.value}={_plain(v)}" for kind, v in self.store_values.items())
        return f"{self.field} differs: {values}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "store_values": {kind.value: _plain(v) for kind, v in self.store_values.items()},
            "authority": self.authority.value if self.authority else None,
            "reason": self.reason.value,
        }


@dataclass
class ResolvedEvent:
    """Canonical view of one event across all stores.

    Attributes:
        record: Merged record
        provenance: Stores that returned a record
        divergences: Disagreements between stores
        store_errors: Stores whose read failed
        store_records: Raw per-store views the merge was built from
    """

    record: EventRecord
    provenance: ProvenanceFlags
    divergences: list[Divergence] = field(default_factory=list)
    store_errors: dict[StoreKind, StoreError] = field(default_factory=dict)
    store_records: dict[StoreKind, StoreRecord] = field(default_factory=dict)

    @property
    def event_id(self) -> str:
        return self.record.event_id

    @property
    def unresolved(self) -> list[Divergence]:
        return [d for d in self.divergences if not d.resolvable]

    @property
    def resolvable(self) -> list[Divergence]:
        return [d for d in self.divergences if d.resolvable]

    @property
    def missing_refs(self) -> list[str]:
        """Store references held by their own store but not by the database row."""
        row = self.store_records.get(StoreKind.DATABASE)
        if row is None:
            return []
        missing = []
        if self.provenance.ledger and row.fields.get("ledger_ref") is None:
            missing.append("ledger_ref")
        if self.provenance.object_store and row.fields.get("object_store_ref") is None:
            missing.append("object_store_ref")
        return missing

    @property
    def state(self) -> ConsistencyState:
        if self.unresolved:
            return ConsistencyState.DIVERGENT_UNRESOLVED
        if not self.provenance.any:
            return ConsistencyState.UNINITIALIZED
        if self.provenance.all and not self.divergences and not self.missing_refs:
            return ConsistencyState.FULLY_WRITTEN
        return ConsistencyState.PARTIALLY_WRITTEN

    @property
    def is_consistent(self) -> bool:
        return self.state == ConsistencyState.FULLY_WRITTEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "state": self.state.value,
            "provenance": self.provenance.to_dict(),
            "record": {name: _plain(value) for name, value in self.record.to_fields().items()},
            "divergences": [d.to_dict() for d in self.divergences],
            "store_errors": {kind.value: str(err) for kind, err in self.store_errors.items()},
        }


class ConsistencyVerifier:
    """Reads all stores and builds the canonical view of an event.

    Example:
        >>> verifier = ConsistencyVerifier(stores, store_timeout=10.0)
        >>> resolved = await verifier.resolve(event_id)
        >>> [d.field for d in resolved.divergences]
        ['ticket_price']
    """

    def __init__(
        self,
        stores: Mapping[StoreKind, StoreAdapter],
        store_timeout: float = 10.0,
    ) -> None:
        self.stores = dict(stores)
        self.store_timeout = store_timeout

    async def resolve(self, event_id: str) -> ResolvedEvent:
        """Read, merge and compare every store's view of event_id.

        Raises:
            NotFoundAnywhere: Every store answered "not found"
            AllStoresUnavailable: No record was found and at least one
                store failed, so absence cannot be proven
        """
        reads = await asyncio.gather(*(self._read(kind, event_id) for kind in StoreKind))

        records: dict[StoreKind, StoreRecord] = {}
        errors: dict[StoreKind, StoreError] = {}
        for kind, found, error in reads:
            if error is not None:
                errors[kind] = error
            elif found is not None:
                records[kind] = found

        if not records:
            if not errors:
                raise NotFoundAnywhere(event_id)
            raise AllStoresUnavailable(
                event_id, errors, partial=len(errors) < len(StoreKind)
            )

        intact = self._integrity_ok(records)
        record = self._merge(event_id, records, intact)
        divergences = self._compare(records, intact)

        resolved = ResolvedEvent(
            record=record,
            provenance=ProvenanceFlags.from_kinds(records),
            divergences=divergences,
            store_errors=errors,
            store_records=records,
        )
        if divergences:
            logger.warning(
                "Stores diverge",
                extra={
                    "event_id": event_id,
                    "fields": [d.field for d in divergences],
                    "unresolved": len(resolved.unresolved),
                },
            )
        return resolved

    async def _read(
        self, kind: StoreKind, event_id: str
    ) -> tuple[StoreKind, StoreRecord | None, StoreError | None]:
        try:
            found = await bounded_call(
                kind, "read", self.stores[kind].read(event_id), self.store_timeout
            )
        except StoreError as e:
            logger.warning(
                f"Store read failed: {e}",
                extra={"event_id": event_id, "store": kind.value, "code": e.code},
            )
            return kind, None, e
        return kind, found, None

    @staticmethod
    def _integrity_ok(records: dict[StoreKind, StoreRecord]) -> bool:
        objects = records.get(StoreKind.OBJECT_STORE)
        return objects is None or objects.integrity_ok()

    @staticmethod
    def _merge(
        event_id: str,
        records: dict[StoreKind, StoreRecord],
        intact: bool,
    ) -> EventRecord:
        values: dict[str, Any] = {}
        for name in RECORD_FIELDS:
            for kind in MERGE_PRECEDENCE[name]:
                found = records.get(kind)
                if found is None:
                    continue
                if kind == StoreKind.OBJECT_STORE and not intact and name != "object_store_ref":
                    continue
                value = found.fields.get(name)
                if value is not None:
                    values[name] = value
                    break
        return EventRecord.from_fields(event_id, values)

    @classmethod
    def _compare(
        cls, records: dict[StoreKind, StoreRecord], intact: bool
    ) -> list[Divergence]:
        divergences: list[Divergence] = []
        hash_conflict = cls._hash_conflict(records, intact)

        for name, kinds in MIRRORED_FIELDS.items():
            if name == "object_store_ref" and hash_conflict is not None:
                continue
            observed = {
                kind: records[kind].fields[name]
                for kind in kinds
                if kind in records and records[kind].fields.get(name) is not None
            }
            if len(observed) < 2:
                continue
            first, *rest = observed.values()
            if all(value == first for value in rest):
                continue
            authority = FIELD_AUTHORITY[name]
            divergences.append(
                Divergence(
                    field=name,
                    store_values=observed,
                    authority=authority if authority in observed else None,
                    reason=DivergenceReason.VALUE_MISMATCH,
                )
            )

        if hash_conflict is not None:
            divergences.append(
                Divergence(
                    field="object_store_ref",
                    store_values=hash_conflict,
                    authority=None,
                    reason=DivergenceReason.CONTENT_HASH_MISMATCH,
                )
            )

        return divergences

    @staticmethod
    def _hash_conflict(
        records: dict[StoreKind, StoreRecord], intact: bool
    ) -> dict[StoreKind, Any] | None:
        """Recorded hashes that disagree with the retrieved content, if any.

        Both the object store's own hash and the one recorded in the database
        row are checked against the hash of the bytes actually read back.
        """
        objects = records.get(StoreKind.OBJECT_STORE)
        if objects is None or objects.content is None:
            return None
        computed = compute_content_hash(objects.content)

        conflict: dict[StoreKind, Any] = {}
        if not intact:
            conflict[StoreKind.OBJECT_STORE] = {
                "stored_hash": objects.content_hash,
                "computed_hash": computed,
            }

        row = records.get(StoreKind.DATABASE)
        recorded = row.fields.get("object_store_ref") if row else None
        if recorded is not None and recorded.metadata.hash != computed:
            conflict[StoreKind.DATABASE] = {
                "stored_hash": recorded.metadata.hash,
                "computed_hash": computed,
            }

        return conflict or None
