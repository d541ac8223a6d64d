"""
Unit tests for in-memory store adapters.

Tests cover:
- StoreAdapter protocol conformance
- Ledger immutability and idempotent writes
- Database upsert and revision counter
- Object store immutability and corruption helper
- Failure and latency injection
"""

import asyncio
from decimal import Decimal

import pytest

from ticketing.eventsync.errors import StoreRejected, StoreTimeout, StoreUnavailable
from ticketing.eventsync.model import EventRecord, StoreKind
from ticketing.eventsync.stores.base import HealthState, StoreAdapter, bounded_call
from ticketing.eventsync.stores.memory import (
    InMemoryDatabase,
    InMemoryLedger,
    InMemoryObjectStore,
)
from tests.conftest import make_input


@pytest.fixture
def record():
    return make_input(banner_image=b"\x89PNG banner").to_record("evt-1")


class TestProtocol:
    """All in-memory stores satisfy StoreAdapter."""

    def test_runtime_checkable(self):
        for store in (InMemoryLedger(), InMemoryDatabase(), InMemoryObjectStore()):
            assert isinstance(store, StoreAdapter)

    @pytest.mark.asyncio
    async def test_requires_connection(self, record):
        store = InMemoryDatabase()
        with pytest.raises(StoreUnavailable):
            await store.write(record)
        with pytest.raises(StoreUnavailable):
            await store.read("evt-1")


class TestInMemoryLedger:
    """Tests for InMemoryLedger."""

    @pytest.mark.asyncio
    async def test_write_returns_ref(self, ledger, record):
        receipt = await ledger.write(record)

        assert receipt.kind == StoreKind.LEDGER
        assert receipt.ledger_ref.event_index == 1
        assert receipt.ledger_ref.transaction_hash.startswith("0x")
        assert not receipt.already_existed

    @pytest.mark.asyncio
    async def test_duplicate_write_returns_existing_ref(self, ledger, record):
        """Second write is a success carrying the original reference."""
        first = await ledger.write(record)
        second = await ledger.write(record)

        assert second.already_existed
        assert second.ledger_ref == first.ledger_ref
        assert len(ledger.transactions) == 1

    @pytest.mark.asyncio
    async def test_entries_are_immutable(self, ledger, record):
        """A later write with other values does not change the entry."""
        await ledger.write(record)
        changed = make_input(ticket_price=Decimal("9")).to_record("evt-1")
        await ledger.write(changed)

        found = await ledger.read("evt-1")
        assert found.fields["ticket_price"] == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_read_holds_ledger_fields_only(self, ledger, record):
        await ledger.write(record)
        found = await ledger.read("evt-1")

        assert found.fields["title"] == record.title
        assert "description" not in found.fields
        assert found.fields["ledger_ref"].event_index == 1

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, ledger):
        assert await ledger.read("nope") is None

    @pytest.mark.asyncio
    async def test_incomplete_record_rejected(self, ledger):
        with pytest.raises(StoreRejected):
            await ledger.write(EventRecord(event_id="evt-1", title="No price"))


class TestInMemoryDatabase:
    """Tests for InMemoryDatabase."""

    @pytest.mark.asyncio
    async def test_upsert_bumps_revision(self, database, record):
        first = await database.write(record)
        second = await database.write(
            make_input(description="Updated").to_record("evt-1")
        )

        assert first.revision == 1
        assert second.revision == 2
        assert database.row_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_content_keeps_revision(self, database, record):
        await database.write(record)
        again = await database.write(record)

        assert again.already_existed
        assert again.revision == 1

    @pytest.mark.asyncio
    async def test_write_merges_instead_of_clearing(self, database, record, ledger):
        """Fields absent from a later write are kept."""
        ref = (await ledger.write(record)).ledger_ref
        await database.write(record.with_refs(ledger_ref=ref))
        await database.write(record)

        found = await database.read("evt-1")
        assert found.fields["ledger_ref"] == ref

    @pytest.mark.asyncio
    async def test_read_includes_revision(self, database, record):
        await database.write(record)
        found = await database.read("evt-1")

        assert found.revision == 1
        assert found.fields["database_revision"] == 1
        assert found.fields["tags"] == ("rooftop", "live")

    @pytest.mark.asyncio
    async def test_list_event_ids(self, database):
        for event_id in ("evt-a", "evt-b"):
            await database.write(make_input().to_record(event_id))
        assert await database.list_event_ids() == ["evt-a", "evt-b"]


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    @pytest.mark.asyncio
    async def test_write_uploads_banner_and_metadata(self, object_store, record):
        receipt = await object_store.write(record)
        ref = receipt.object_store_ref

        assert ref.metadata.hash.startswith("sha256:")
        assert ref.image is not None
        assert object_store.get_object("evt-1/banner") == b"\x89PNG banner"

    @pytest.mark.asyncio
    async def test_objects_never_overwritten(self, object_store, record):
        first = await object_store.write(record)
        second = await object_store.write(make_input(title="Changed").to_record("evt-1"))

        assert second.already_existed
        assert second.object_store_ref == first.object_store_ref

    @pytest.mark.asyncio
    async def test_read_returns_content_and_hash(self, object_store, record):
        receipt = await object_store.write(record)
        found = await object_store.read("evt-1")

        assert found.content_hash == receipt.object_store_ref.metadata.hash
        assert found.integrity_ok()
        assert found.fields["object_store_ref"] == receipt.object_store_ref
        assert found.fields["title"] == record.title

    @pytest.mark.asyncio
    async def test_corrupt_breaks_integrity(self, object_store, record):
        await object_store.write(record)
        object_store.corrupt("evt-1")

        found = await object_store.read("evt-1")
        assert not found.integrity_ok()

    @pytest.mark.asyncio
    async def test_corrupt_to_empty_content(self, object_store, record):
        await object_store.write(record)
        object_store.corrupt("evt-1", content=b"")

        assert object_store.get_object("evt-1/metadata.json") == b""
        found = await object_store.read("evt-1")
        assert not found.integrity_ok()

    @pytest.mark.asyncio
    async def test_swap_content_keeps_integrity(self, object_store, record):
        receipt = await object_store.write(record)
        object_store.swap_content("evt-1", b"{}")

        found = await object_store.read("evt-1")
        assert found.integrity_ok()
        assert found.content_hash != receipt.object_store_ref.metadata.hash


class TestInjection:
    """Tests for failure and latency injection helpers."""

    @pytest.mark.asyncio
    async def test_fail_writes(self, database, record):
        database.fail_writes(StoreRejected, "constraint")
        with pytest.raises(StoreRejected):
            await database.write(record)
        assert database.write_calls == 1

        database.heal()
        await database.write(record)
        assert database.write_calls == 2

    @pytest.mark.asyncio
    async def test_latency_bounded_by_timeout(self, ledger, record):
        ledger.set_latency(1.0, "write")
        with pytest.raises(StoreTimeout):
            await bounded_call(StoreKind.LEDGER, "write", ledger.write(record), 0.05)

    @pytest.mark.asyncio
    async def test_health_reflects_injection(self, ledger):
        assert (await ledger.health_check()).status == HealthState.HEALTHY
        ledger.fail_reads()
        assert (await ledger.health_check()).status == HealthState.DEGRADED
        await ledger.close()
        assert (await ledger.health_check()).status == HealthState.UNHEALTHY


class TestBoundedCall:
    """Tests for bounded_call error normalization."""

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_unavailable(self):
        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(StoreUnavailable, match="boom"):
            await bounded_call(StoreKind.DATABASE, "read", broken(), 1.0)

    @pytest.mark.asyncio
    async def test_store_errors_pass_through(self):
        async def rejected():
            raise StoreRejected("nope", StoreKind.DATABASE, "write")

        with pytest.raises(StoreRejected):
            await bounded_call(StoreKind.DATABASE, "write", rejected(), 1.0)

    @pytest.mark.asyncio
    async def test_result_returned(self):
        async def ok():
            await asyncio.sleep(0)
            return 42

        assert await bounded_call(StoreKind.LEDGER, "read", ok(), 1.0) == 42
