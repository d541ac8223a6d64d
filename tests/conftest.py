"""
Shared fixtures for EventSync tests.

Every fixture here is in-memory: no relayer, SQLite file or bucket needed.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ticketing.eventsync.model import EventInput, Visibility
from ticketing.eventsync.orchestrator import EventOrchestrator
from ticketing.eventsync.stores.memory import (
    InMemoryDatabase,
    InMemoryLedger,
    InMemoryObjectStore,
)


def make_input(**overrides) -> EventInput:
    """Valid creation request, with fields overridable per test."""
    values = {
        "title": "Rooftop Launch Party",
        "description": "Drinks and a live set",
        "location": "Lisbon",
        "start_time": datetime(2026, 6, 1, 18, 0, tzinfo=timezone.utc),
        "end_time": datetime(2026, 6, 1, 23, 0, tzinfo=timezone.utc),
        "max_capacity": 150,
        "ticket_price": Decimal("0.05"),
        "visibility": Visibility.PUBLIC,
        "creator_address": "0x9f2c4e1a7b3d5f6081a2b3c4d5e6f708192a3b4c",
        "category": "music",
        "tags": ["rooftop", "live"],
    }
    values.update(overrides)
    return EventInput(**values)


@pytest.fixture
def event_input():
    return make_input()


@pytest.fixture
async def ledger():
    store = InMemoryLedger()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def database():
    store = InMemoryDatabase()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def object_store():
    store = InMemoryObjectStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def orchestrator(ledger, database, object_store):
    return EventOrchestrator(
        ledger=ledger,
        database=database,
        object_store=object_store,
        store_timeout=0.5,
        sync_concurrency=2,
    )
