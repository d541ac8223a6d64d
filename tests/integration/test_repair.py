"""
Integration tests for RepairEngine over in-memory stores.

Tests cover:
- Partial-write convergence for each store
- Database correction without touching the ledger
- Unresolvable content hash mismatch, in the object store or the database row
- Missing data to recreate a store
- Single flight under concurrent repairs
- Stores whose state cannot be read
"""

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from ticketing.eventsync.model import StoreKind, encode_metadata_document
from ticketing.eventsync.repair.engine import RepairEngine, RepairOperation
from ticketing.eventsync.verify.verifier import ConsistencyVerifier
from ticketing.eventsync.write.coordinator import WriteCoordinator
from tests.conftest import make_input


class TestRepairEngine:
    """Integration tests for RepairEngine."""

    @pytest.fixture
    def stores(self, ledger, database, object_store):
        return {
            StoreKind.LEDGER: ledger,
            StoreKind.DATABASE: database,
            StoreKind.OBJECT_STORE: object_store,
        }

    @pytest.fixture
    def verifier(self, stores):
        return ConsistencyVerifier(stores, store_timeout=0.2)

    @pytest.fixture
    def engine(self, verifier, stores):
        return RepairEngine(verifier, stores, store_timeout=0.2)

    @pytest.fixture
    def coordinator(self, stores):
        return WriteCoordinator(stores, store_timeout=0.2)

    async def create_without(self, coordinator, store):
        """Create an event whose write fails only on store."""
        store.fail_writes()
        result = await coordinator.create(make_input())
        store.heal()
        store.reset_counters()
        return result

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", list(StoreKind))
    async def test_partial_write_converges(self, missing, stores, coordinator, engine, verifier):
        """One repair writes the missing store exactly once and converges."""
        created = await self.create_without(coordinator, stores[missing])
        assert not created.provenance.get(missing)

        result = await engine.repair(created.event_id)

        assert result.success
        assert len(result.writes_to(missing)) == 1
        assert result.writes_to(missing)[0].operation == RepairOperation.CREATE
        assert stores[missing].write_calls == 1

        resolved = await verifier.resolve(created.event_id)
        assert resolved.provenance.all
        assert resolved.divergences == []
        assert resolved.is_consistent

    @pytest.mark.asyncio
    async def test_database_backfilled_with_new_ledger_ref(
        self, stores, coordinator, engine, database
    ):
        created = await self.create_without(coordinator, stores[StoreKind.LEDGER])

        result = await engine.repair(created.event_id)

        update = result.writes_to(StoreKind.DATABASE)[0]
        assert update.operation == RepairOperation.UPDATE
        assert update.fields == ["ledger_ref"]
        row = await database.read(created.event_id)
        assert row.fields["ledger_ref"] is not None

    @pytest.mark.asyncio
    async def test_price_divergence_corrects_database(
        self, coordinator, engine, ledger, database
    ):
        """Ledger is authoritative: database corrected, ledger never written."""
        created = await coordinator.create(make_input())
        database.overwrite_fields(created.event_id, ticket_price=Decimal("9.99"))
        ledger.reset_counters()

        result = await engine.repair(created.event_id)

        assert result.success
        assert [a.store for a in result.actions] == [StoreKind.DATABASE]
        assert result.actions[0].fields == ["ticket_price"]
        assert ledger.write_calls == 0
        row = await database.read(created.event_id)
        assert row.fields["ticket_price"] == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_content_hash_mismatch_unresolved(
        self, coordinator, engine, object_store, database
    ):
        created = await coordinator.create(make_input())
        object_store.corrupt(created.event_id)
        object_store.reset_counters()
        database.reset_counters()

        result = await engine.repair(created.event_id)

        assert not result.success
        assert [e.code for e in result.errors] == ["DIVERGENCE_UNRESOLVED"]
        assert result.errors[0].field == "object_store_ref"
        assert result.actions == []
        assert object_store.write_calls == 0
        assert database.write_calls == 0

    @pytest.mark.asyncio
    async def test_recorded_hash_mismatch_not_overwritten(
        self, coordinator, engine, object_store, database
    ):
        """Object replaced behind the database's back: the row keeps its hash."""
        created = await coordinator.create(make_input())
        swapped = make_input(title="Swapped document").to_record(created.event_id)
        object_store.swap_content(created.event_id, encode_metadata_document(swapped))
        object_store.reset_counters()
        database.reset_counters()

        result = await engine.repair(created.event_id)

        assert not result.success
        assert [(e.code, e.field) for e in result.errors] == [
            ("DIVERGENCE_UNRESOLVED", "object_store_ref")
        ]
        assert result.actions == []
        assert object_store.write_calls == 0
        assert database.write_calls == 0
        row = await database.read(created.event_id)
        assert row.fields["object_store_ref"] == created.object_store_ref

    @pytest.mark.asyncio
    async def test_insufficient_data_to_recreate(self, stores, coordinator, engine):
        """Database missing and the object store untrusted: visibility is unknown."""
        database = stores[StoreKind.DATABASE]
        created = await self.create_without(coordinator, database)
        stores[StoreKind.OBJECT_STORE].corrupt(created.event_id)

        result = await engine.repair(created.event_id)

        assert not result.success
        assert [e.code for e in result.errors] == [
            "DIVERGENCE_UNRESOLVED",
            "INSUFFICIENT_DATA",
        ]
        insufficient = result.errors[1]
        assert insufficient.store == StoreKind.DATABASE
        assert insufficient.field == "visibility"
        assert database.write_calls == 0

    @pytest.mark.asyncio
    async def test_ledger_ref_divergence_corrects_database(
        self, coordinator, engine, ledger, database
    ):
        created = await coordinator.create(make_input())
        stale = replace(created.ledger_ref, transaction_hash="0xstale")
        database.overwrite_fields(created.event_id, ledger_ref=stale)
        ledger.reset_counters()

        result = await engine.repair(created.event_id)

        assert result.success
        assert [a.to_dict()["fields"] for a in result.actions] == [["ledger_ref"]]
        assert result.actions[0].reason == "divergence"
        assert ledger.write_calls == 0
        row = await database.read(created.event_id)
        assert row.fields["ledger_ref"] == created.ledger_ref

    @pytest.mark.asyncio
    async def test_consistent_event_is_noop(self, coordinator, engine, ledger, database):
        created = await coordinator.create(make_input())
        ledger.reset_counters()
        database.reset_counters()

        result = await engine.repair(created.event_id)

        assert result.success
        assert result.actions == []
        assert ledger.write_calls == 0
        assert database.write_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_repairs_single_flight(
        self, stores, coordinator, engine
    ):
        """Two simultaneous repairs write no more than one would."""
        ledger = stores[StoreKind.LEDGER]
        created = await self.create_without(coordinator, ledger)
        ledger.set_latency(0.05, "write")

        first, second = await asyncio.gather(
            engine.repair(created.event_id),
            engine.repair(created.event_id),
        )

        assert first.success and second.success
        assert len(first.actions) + len(second.actions) == 2
        assert ledger.write_calls == 1
        assert len(ledger.transactions) == 1
        assert engine.stats["active_locks"] == 0

    @pytest.mark.asyncio
    async def test_unreadable_store_not_written(self, stores, coordinator, engine):
        """A store whose read errors is reported, never written."""
        ledger = stores[StoreKind.LEDGER]
        created = await self.create_without(coordinator, ledger)
        ledger.fail_reads()

        result = await engine.repair(created.event_id)

        assert not result.success
        assert [(e.code, e.store) for e in result.errors] == [
            ("STORE_UNAVAILABLE", StoreKind.LEDGER)
        ]
        assert ledger.write_calls == 0

    @pytest.mark.asyncio
    async def test_failed_repair_write_reported(self, stores, coordinator, engine):
        ledger = stores[StoreKind.LEDGER]
        created = await self.create_without(coordinator, ledger)
        ledger.fail_writes()

        result = await engine.repair(created.event_id)

        assert not result.success
        action = result.writes_to(StoreKind.LEDGER)[0]
        assert action.succeeded is False
        assert result.errors[0].store == StoreKind.LEDGER

    @pytest.mark.asyncio
    async def test_not_found_is_failed_result(self, engine):
        result = await engine.repair("nope")

        assert not result.success
        assert result.errors[0].code == "NOT_FOUND_ANYWHERE"

    @pytest.mark.asyncio
    async def test_all_unavailable_is_failed_result(self, stores, engine):
        for store in stores.values():
            store.fail_reads()

        result = await engine.repair("evt-1")

        assert result.errors[0].code == "ALL_STORES_UNAVAILABLE"
        assert engine.stats["failed_count"] == 1
