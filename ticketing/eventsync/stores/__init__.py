"""
Store adapters for EventSync.

This module provides the pluggable store interface and its backends:
- Ledger relayer over HTTP (event factory contract)
- SQLite event database
- S3-compatible object storage
- In-memory versions of all three (for testing)

Invariants:
    - Every adapter implements the StoreAdapter protocol
    - "Already exists" is a success carrying the existing reference
    - Adapters never decide event ids and never delete

How to change safely:
    - New backends must implement StoreAdapter
    - Run the adapter unit tests against fakes before touching real services
"""

from .base import (
    HealthState,
    HealthStatus,
    StoreAdapter,
    bounded_call,
    create_store_adapters,
)
from .database import SqliteEventStore
from .ledger import LedgerGatewayAdapter
from .memory import InMemoryDatabase, InMemoryLedger, InMemoryObjectStore
from .object_store import S3ObjectStore

__all__ = [
    # Protocol and types
    "StoreAdapter",
    "HealthState",
    "HealthStatus",
    # Helpers
    "bounded_call",
    "create_store_adapters",
    # Implementations
    "LedgerGatewayAdapter",
    "SqliteEventStore",
    "S3ObjectStore",
    "InMemoryLedger",
    "InMemoryDatabase",
    "InMemoryObjectStore",
]
