"""
Repair engine for cross-store divergence.

Repair re-reads an event through the verifier, derives a plan from the live
state and applies the corrective writes:
- Stores missing the event get a targeted create with the known id
- The database row is corrected towards the authoritative store
- The database row is backfilled with ledger/object references it lacks

Invariants:
    - One repair per event id at a time; a queued repair re-plans from a fresh
      read and finds nothing left to do
    - The ledger and the object store only ever receive creates, never
      overwrites; only the database accepts corrections
    - The authoritative side of a divergence is never rewritten
    - A store whose read failed is never written (its state is unknown)
    - Unresolvable divergences leave both conflicting stores untouched
    - Dispatched writes run to completion even when the caller cancels
    - Running repair on a consistent event performs no writes

How to change safely:
    - New failure codes must be documented in RepairFailure
    - Keep ledger/object-store creates ahead of the database write so the
      row can carry their references in the same pass
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..errors import AllStoresUnavailable, DivergenceUnresolved, NotFoundAnywhere, StoreError
from ..model import ConsistencyState, EventRecord, StoreKind, StoreReceipt
from ..stores.base import StoreAdapter, bounded_call
from ..verify.verifier import ConsistencyVerifier, ResolvedEvent
from .single_flight import KeyedLock

logger = logging.getLogger(__name__)


class RepairOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"


@dataclass
class RepairAction:
    """One corrective write attempted by repair.

    Attributes:
        store: Store written to
        operation: create for a missing store, update for a correction
        reason: missing, divergence and/or backfill
        fields: Fields carried by the write
        succeeded: Whether the store accepted the write
    """

    store: StoreKind
    operation: RepairOperation
    reason: str
    fields: list[str] = field(default_factory=list)
    succeeded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "store": self.store.value,
            "operation": self.operation.value,
            "reason": self.reason,
            "fields": self.fields,
            "succeeded": self.succeeded,
        }


@dataclass
class RepairFailure:
    """Something repair could not fix.

    Codes:
        DIVERGENCE_UNRESOLVED: No store is authoritative for the field
        INSUFFICIENT_DATA: Not enough known fields to recreate a missing store
        STORE_UNAVAILABLE: The store's state could not be read
        STORE_TIMEOUT / STORE_UNAVAILABLE / STORE_REJECTED: A repair write failed
        NOT_FOUND_ANYWHERE / ALL_STORES_UNAVAILABLE: Nothing to repair from
    """

    code: str
    message: str
    store: StoreKind | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "store": self.store.value if self.store else None,
            "field": self.field,
        }


@dataclass
class RepairResult:
    """Outcome of one repair pass.

    Attributes:
        event_id: Event that was repaired
        actions: Writes attempted, in order
        errors: Problems left unfixed
        state_before: Consistency state found before repairing
    """

    event_id: str
    actions: list[RepairAction] = field(default_factory=list)
    errors: list[RepairFailure] = field(default_factory=list)
    state_before: ConsistencyState | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    def writes_to(self, kind: StoreKind) -> list[RepairAction]:
        return [action for action in self.actions if action.store == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "success": self.success,
            "state_before": self.state_before.value if self.state_before else None,
            "actions": [action.to_dict() for action in self.actions],
            "errors": [error.to_dict() for error in self.errors],
        }


class RepairEngine:
    """Computes and applies corrective writes for one event at a time.

    Attributes:
        verifier: Verifier used to read the live state
        stores: Adapter per store kind
        store_timeout: Upper bound on each adapter call, in seconds

    Example:
        >>> engine = RepairEngine(verifier, stores)
        >>> result = await engine.repair(event_id)
        >>> result.success, [a.store for a in result.actions]
        (True, [<StoreKind.LEDGER: 'ledger'>, <StoreKind.DATABASE: 'database'>])
    """

    def __init__(
        self,
        verifier: ConsistencyVerifier,
        stores: Mapping[StoreKind, StoreAdapter],
        store_timeout: float = 10.0,
    ) -> None:
        self.verifier = verifier
        self.stores = dict(stores)
        self.store_timeout = store_timeout
        self._locks = KeyedLock()

        self._attempted_count = 0
        self._succeeded_count = 0
        self._failed_count = 0

    async def repair(self, event_id: str) -> RepairResult:
        """Bring every store in line with the canonical record for event_id.

        Never raises for store failures; they are reported in the result.
        """
        async with self._locks.hold(event_id):
            self._attempted_count += 1
            result = await self._repair(event_id)

        if result.success:
            self._succeeded_count += 1
            if result.actions:
                logger.info(
                    "Event repaired",
                    extra={
                        "event_id": event_id,
                        "actions": [a.to_dict() for a in result.actions],
                    },
                )
        else:
            self._failed_count += 1
            logger.warning(
                "Event repair incomplete",
                extra={
                    "event_id": event_id,
                    "errors": [e.to_dict() for e in result.errors],
                },
            )
        return result

    async def _repair(self, event_id: str) -> RepairResult:
        try:
            resolved = await self.verifier.resolve(event_id)
        except (NotFoundAnywhere, AllStoresUnavailable) as e:
            return RepairResult(
                event_id=event_id,
                errors=[RepairFailure(code=e.code, message=e.message)],
            )

        result = RepairResult(event_id=event_id, state_before=resolved.state)
        if resolved.is_consistent:
            return result

        blocked = self._report_unresolved(resolved, result)
        corrections = self._plan_corrections(resolved)
        creates = self._plan_creates(resolved, result)

        source = resolved.record
        if "object_store_ref" in blocked:
            source = replace(source, object_store_ref=None)

        # Immutable stores first, so the database row can carry their refs
        receipts = await self._apply(
            result,
            [
                (
                    RepairAction(
                        store=kind,
                        operation=RepairOperation.CREATE,
                        reason="missing",
                        fields=self._written_fields(source),
                    ),
                    source,
                )
                for kind in creates
                if kind != StoreKind.DATABASE
            ],
        )
        created_refs: dict[str, Any] = {}
        for receipt in receipts:
            if receipt.ledger_ref:
                created_refs["ledger_ref"] = receipt.ledger_ref
            if receipt.object_store_ref:
                created_refs["object_store_ref"] = receipt.object_store_ref

        planned = self._plan_database(resolved, source, creates, corrections, created_refs)
        if planned is not None:
            await self._apply(result, [planned])

        return result

    def _report_unresolved(self, resolved: ResolvedEvent, result: RepairResult) -> set[str]:
        blocked = set()
        for divergence in resolved.unresolved:
            blocked.add(divergence.field)
            error = DivergenceUnresolved(
                resolved.event_id, divergence.field, divergence.reason.value
            )
            involved = list(divergence.store_values)
            result.errors.append(
                RepairFailure(
                    code=error.code,
                    message=error.message,
                    store=involved[0] if len(involved) == 1 else None,
                    field=divergence.field,
                )
            )
        return blocked

    @staticmethod
    def _plan_corrections(resolved: ResolvedEvent) -> dict[str, Any]:
        # Mirrored pairs always put the database on the stale side
        corrections: dict[str, Any] = {}
        for divergence in resolved.resolvable:
            authoritative = divergence.store_values[divergence.authority]
            held = divergence.store_values.get(StoreKind.DATABASE)
            if divergence.authority != StoreKind.DATABASE and held != authoritative:
                corrections[divergence.field] = authoritative
        return corrections

    def _plan_creates(self, resolved: ResolvedEvent, result: RepairResult) -> list[StoreKind]:
        creates = []
        for kind in resolved.provenance.missing():
            if kind in resolved.store_errors:
                result.errors.append(
                    RepairFailure(
                        code="STORE_UNAVAILABLE",
                        message=f"State unknown: {resolved.store_errors[kind]}",
                        store=kind,
                    )
                )
                continue
            missing = resolved.record.missing_for(kind)
            if missing:
                result.errors.append(
                    RepairFailure(
                        code="INSUFFICIENT_DATA",
                        message=f"Cannot recreate {kind.value} record without {missing}",
                        store=kind,
                        field=",".join(missing),
                    )
                )
                continue
            creates.append(kind)
        return creates

    def _plan_database(
        self,
        resolved: ResolvedEvent,
        source: EventRecord,
        creates: list[StoreKind],
        corrections: dict[str, Any],
        created_refs: dict[str, Any],
    ) -> tuple[RepairAction, EventRecord] | None:
        known_refs = {
            "ledger_ref": source.ledger_ref,
            "object_store_ref": source.object_store_ref,
            **created_refs,
        }

        if StoreKind.DATABASE in creates:
            row = replace(source, **known_refs)
            action = RepairAction(
                store=StoreKind.DATABASE,
                operation=RepairOperation.CREATE,
                reason="missing",
                fields=self._written_fields(row),
            )
            return action, row

        current = resolved.store_records.get(StoreKind.DATABASE)
        if current is None:
            return None

        updates = dict(corrections)
        reasons = {"divergence"} if corrections else set()
        for name, ref in known_refs.items():
            if ref is None or name in updates:
                continue
            held = current.fields.get(name)
            if held is None or (name in created_refs and held != ref):
                updates[name] = ref
                reasons.add("backfill")

        if not updates:
            return None

        row = EventRecord.from_fields(resolved.event_id, {**current.fields, **updates})
        action = RepairAction(
            store=StoreKind.DATABASE,
            operation=RepairOperation.UPDATE,
            reason="+".join(sorted(reasons)),
            fields=sorted(updates),
        )
        return action, row

    @staticmethod
    def _written_fields(record: EventRecord) -> list[str]:
        return [name for name in record.to_fields() if name != "database_revision"]

    async def _apply(
        self,
        result: RepairResult,
        planned: list[tuple[RepairAction, EventRecord]],
    ) -> list[StoreReceipt]:
        """Run planned writes concurrently and record their outcome."""
        if not planned:
            return []

        pending = asyncio.gather(*(self._write(action, record) for action, record in planned))
        try:
            outcomes = await asyncio.shield(pending)
        except asyncio.CancelledError:
            outcomes = await pending
            self._record(result, planned, outcomes)
            logger.warning(
                "Repair cancelled after dispatching writes",
                extra={"event_id": result.event_id, **result.to_dict()},
            )
            raise

        return self._record(result, planned, outcomes)

    @staticmethod
    def _record(
        result: RepairResult,
        planned: list[tuple[RepairAction, EventRecord]],
        outcomes: list[StoreReceipt | StoreError],
    ) -> list[StoreReceipt]:
        receipts = []
        for (action, _), outcome in zip(planned, outcomes):
            result.actions.append(action)
            if isinstance(outcome, StoreError):
                result.errors.append(
                    RepairFailure(
                        code=outcome.code,
                        message=str(outcome),
                        store=action.store,
                    )
                )
            else:
                action.succeeded = True
                receipts.append(outcome)
        return receipts

    async def _write(self, action: RepairAction, record: EventRecord) -> StoreReceipt | StoreError:
        try:
            return await bounded_call(
                action.store,
                "write",
                self.stores[action.store].write(record),
                self.store_timeout,
            )
        except StoreError as e:
            return e

    @property
    def stats(self) -> dict[str, Any]:
        """Get repair statistics."""
        return {
            "attempted_count": self._attempted_count,
            "succeeded_count": self._succeeded_count,
            "failed_count": self._failed_count,
            "active_locks": len(self._locks),
        }
