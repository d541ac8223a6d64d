"""
EventOrchestrator - the single entry point for event data.

The rest of the ticketing application never talks to a store directly. It
creates events, reads them back and asks for repairs through this façade,
which composes the WriteCoordinator, the ConsistencyVerifier and the
RepairEngine over one set of store adapters.

Invariants:
    - Divergences are metadata on a read, never errors
    - "Not found anywhere" is None; "could not read anything" raises
    - Adapter lifetime (connect/close) is owned by the orchestrator

How to change safely:
    - Keep public method names stable, API handlers call them directly
    - New operations should compose existing components, not reach into stores
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .config import EngineConfig
from .errors import NotFoundAnywhere
from .model import ConsistencyState, EventInput, ProvenanceFlags, StoreKind
from .repair.engine import RepairEngine, RepairResult
from .stores.base import (
    HealthState,
    HealthStatus,
    StoreAdapter,
    bounded_call,
    create_store_adapters,
    elapsed_ms,
)
from .verify.verifier import ConsistencyVerifier, ResolvedEvent
from .write.coordinator import CreationResult, WriteCoordinator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConsistencyReport:
    """Per-event consistency check.

    Attributes:
        event_id: Event checked
        provenance: Stores holding the event
        state: Consistency state
        discrepancies: Human-readable findings, empty when consistent
        checked_at: When the check ran
    """

    event_id: str
    provenance: ProvenanceFlags
    state: ConsistencyState
    discrepancies: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=_utcnow)

    @property
    def consistent(self) -> bool:
        return self.state == ConsistencyState.FULLY_WRITTEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "provenance": self.provenance.to_dict(),
            "state": self.state.value,
            "consistent": self.consistent,
            "discrepancies": self.discrepancies,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class SyncReport:
    """Outcome of a bulk consistency sweep.

    Attributes:
        total: Events examined
        synced: Events consistent at the end of the sweep
        repaired: Of those, events that needed corrective writes
        failed: Events left inconsistent
        errors: Failure messages per event id
        finished_at: When the sweep ended
    """

    total: int = 0
    synced: int = 0
    repaired: int = 0
    failed: int = 0
    errors: dict[str, list[str]] = field(default_factory=dict)
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "synced": self.synced,
            "repaired": self.repaired,
            "failed": self.failed,
            "errors": self.errors,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class SystemHealth:
    """Aggregated health of all stores."""

    overall: HealthState
    stores: dict[StoreKind, HealthStatus]
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "stores": {kind.value: status.to_dict() for kind, status in self.stores.items()},
            "checked_at": self.checked_at.isoformat(),
        }


class EventOrchestrator:
    """Façade over creation, verification and repair.

    Attributes:
        stores: Adapter per store kind
        coordinator: Multi-store creation
        verifier: Cross-store reads
        repair_engine: Corrective writes

    Example:
        >>> async with EventOrchestrator.from_config(EngineConfig.from_env()) as events:
        ...     created = await events.create_event(EventInput(...))
        ...     resolved = await events.get_event_by_id(created.event_id)
    """

    def __init__(
        self,
        ledger: StoreAdapter,
        database: StoreAdapter,
        object_store: StoreAdapter,
        store_timeout: float = 10.0,
        sync_concurrency: int = 4,
        on_abandoned: Callable[[CreationResult], None] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            ledger: Ledger adapter
            database: Database adapter
            object_store: Object store adapter
            store_timeout: Upper bound on each adapter call, in seconds
            sync_concurrency: Events processed in parallel by sync_data_consistency
            on_abandoned: Listener for creations cancelled after dispatch
        """
        self.stores: dict[StoreKind, StoreAdapter] = {
            StoreKind.LEDGER: ledger,
            StoreKind.DATABASE: database,
            StoreKind.OBJECT_STORE: object_store,
        }
        self.store_timeout = store_timeout
        self.sync_concurrency = sync_concurrency

        self.coordinator = WriteCoordinator(self.stores, store_timeout, on_abandoned)
        self.verifier = ConsistencyVerifier(self.stores, store_timeout)
        self.repair_engine = RepairEngine(self.verifier, self.stores, store_timeout)

    @classmethod
    def from_config(cls, config: EngineConfig) -> EventOrchestrator:
        """Build an orchestrator with the adapters selected by config."""
        adapters = create_store_adapters(config)
        return cls(
            ledger=adapters[StoreKind.LEDGER],
            database=adapters[StoreKind.DATABASE],
            object_store=adapters[StoreKind.OBJECT_STORE],
            store_timeout=config.coordinator.store_timeout_seconds,
            sync_concurrency=config.coordinator.sync_concurrency,
        )

    async def connect(self) -> None:
        """Connect every adapter."""
        await asyncio.gather(*(store.connect() for store in self.stores.values()))
        logger.info("Event orchestrator connected")

    async def close(self) -> None:
        """Close every adapter, logging (not raising) close failures."""
        results = await asyncio.gather(
            *(store.close() for store in self.stores.values()),
            return_exceptions=True,
        )
        for kind, outcome in zip(self.stores, results):
            if isinstance(outcome, Exception):
                logger.error(f"Error closing {kind.value} store: {outcome}")
        logger.info("Event orchestrator closed")

    async def __aenter__(self) -> EventOrchestrator:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def create_event(self, input: EventInput) -> CreationResult:
        """Create an event in every store.

        Raises:
            AllStoresFailed: If no store accepted the event
        """
        return await self.coordinator.create(input)

    async def get_event_by_id(self, event_id: str) -> ResolvedEvent | None:
        """Canonical view of an event, None if no store holds it.

        Raises:
            AllStoresUnavailable: If absence could not be proven
        """
        try:
            return await self.verifier.resolve(event_id)
        except NotFoundAnywhere:
            return None

    async def repair_event_consistency(self, event_id: str) -> RepairResult:
        return await self.repair_engine.repair(event_id)

    async def check_data_consistency(self, event_id: str) -> ConsistencyReport:
        """Report which stores hold the event and where they disagree.

        Raises:
            AllStoresUnavailable: If absence could not be proven
        """
        resolved = await self.get_event_by_id(event_id)
        if resolved is None:
            return ConsistencyReport(
                event_id=event_id,
                provenance=ProvenanceFlags(),
                state=ConsistencyState.UNINITIALIZED,
                discrepancies=["Event not found in any store"],
            )

        discrepancies = []
        for kind in resolved.provenance.missing():
            if kind in resolved.store_errors:
                discrepancies.append(f"{kind.value} unreadable: {resolved.store_errors[kind]}")
            else:
                discrepancies.append(f"Missing from {kind.value}")
        discrepancies.extend(d.describe() for d in resolved.divergences)
        discrepancies.extend(f"Database row lacks {name}" for name in resolved.missing_refs)

        return ConsistencyReport(
            event_id=event_id,
            provenance=resolved.provenance,
            state=resolved.state,
            discrepancies=discrepancies,
        )

    async def sync_data_consistency(self, event_ids: Iterable[str] | None = None) -> SyncReport:
        """Repair every listed event (or every event the database knows).

        Events are processed with bounded concurrency; one event failing never
        stops the sweep.
        """
        if event_ids is None:
            event_ids = await self._known_event_ids()
        ids = list(dict.fromkeys(event_ids))

        report = SyncReport(total=len(ids))
        semaphore = asyncio.Semaphore(self.sync_concurrency)

        async def sync_one(event_id: str) -> None:
            async with semaphore:
                result = await self.repair_engine.repair(event_id)
            if result.success:
                report.synced += 1
                if result.actions:
                    report.repaired += 1
            else:
                report.failed += 1
                report.errors[event_id] = [error.message for error in result.errors]

        await asyncio.gather(*(sync_one(event_id) for event_id in ids))
        report.finished_at = _utcnow()

        logger.info(
            "Consistency sweep finished",
            extra={
                "total": report.total,
                "synced": report.synced,
                "repaired": report.repaired,
                "failed": report.failed,
            },
        )
        return report

    async def _known_event_ids(self) -> list[str]:
        database = self.stores[StoreKind.DATABASE]
        list_ids = getattr(database, "list_event_ids", None)
        if list_ids is None:
            raise ValueError("Database adapter cannot enumerate events; pass event ids")
        return await bounded_call(StoreKind.DATABASE, "read", list_ids(), self.store_timeout)

    async def health_check(self) -> SystemHealth:
        """Check every store concurrently."""
        statuses = await asyncio.gather(
            *(self._store_health(kind) for kind in self.stores)
        )
        stores = dict(zip(self.stores, statuses))

        healthy = sum(1 for s in statuses if s.status == HealthState.HEALTHY)
        if healthy == len(statuses):
            overall = HealthState.HEALTHY
        elif healthy == 0:
            overall = HealthState.UNHEALTHY
        else:
            overall = HealthState.DEGRADED
        return SystemHealth(overall=overall, stores=stores)

    async def _store_health(self, kind: StoreKind) -> HealthStatus:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                self.stores[kind].health_check(), self.store_timeout
            )
        except asyncio.TimeoutError:
            return HealthStatus(
                store=kind,
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms(started),
                error=f"No answer within {self.store_timeout}s",
            )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "coordinator": self.coordinator.stats,
            "repair": self.repair_engine.stats,
        }
