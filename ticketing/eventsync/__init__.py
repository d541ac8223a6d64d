"""
EventSync - multi-store event consistency engine.

An event of the ticketing application lives in three stores that fail
independently:
- Ledger: event factory contract, immutable once a transaction is confirmed
- Database: relational row, the only store that accepts corrections
- Object store: metadata document and banner image, content-addressed

Architecture:
    EventOrchestrator (façade)
        ├── WriteCoordinator     concurrent best-effort creation
        ├── ConsistencyVerifier  concurrent reads, merge, divergence detection
        └── RepairEngine         corrective writes, one repair per event at a time
    StoreAdapter ×3              ledger relayer / SQLite / S3 (or in-memory)

Invariants:
    - The event id is assigned once by the coordinator and joins all stores
    - Partial success is a normal, reported outcome; only "no store at all"
      raises
    - Records are never deleted and immutable stores are never overwritten

How to change safely:
    - Authority and merge rules live in model.py
    - Store-specific behaviour lives behind StoreAdapter
"""

from ._version import __version__
from .config import EngineConfig, StoreBackend
from .errors import (
    AllStoresFailed,
    AllStoresUnavailable,
    DivergenceUnresolved,
    EventSyncError,
    NotFoundAnywhere,
    StoreError,
    StoreRejected,
    StoreTimeout,
    StoreUnavailable,
)
from .model import (
    ConsistencyState,
    EventInput,
    EventRecord,
    ProvenanceFlags,
    StoreKind,
    Visibility,
)
from .orchestrator import ConsistencyReport, EventOrchestrator, SyncReport, SystemHealth

__all__ = [
    "__version__",
    # Façade
    "EventOrchestrator",
    "ConsistencyReport",
    "SyncReport",
    "SystemHealth",
    # Configuration
    "EngineConfig",
    "StoreBackend",
    # Model
    "EventInput",
    "EventRecord",
    "ProvenanceFlags",
    "StoreKind",
    "ConsistencyState",
    "Visibility",
    # Errors
    "EventSyncError",
    "StoreError",
    "StoreTimeout",
    "StoreUnavailable",
    "StoreRejected",
    "AllStoresFailed",
    "AllStoresUnavailable",
    "NotFoundAnywhere",
    "DivergenceUnresolved",
]
