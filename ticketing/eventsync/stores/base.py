"""
Base protocol and types for store adapters.

Every store holding event data (ledger, database, object store) is consumed
through the same StoreAdapter protocol, so coordination, verification and
repair are written once and tested against in-memory adapters.

Invariants:
    - read() returns None for "not found" and raises StoreError on failure
    - write() returns a StoreReceipt or raises StoreError
    - "Already exists" / "duplicate" is a successful write carrying the
      existing reference (StoreReceipt.already_existed)
    - Adapters never generate event ids

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from ..errors import StoreError, StoreTimeout, StoreUnavailable
from ..model import EventRecord, StoreKind, StoreReceipt, StoreRecord

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthStatus:
    """Health of one store.

    Attributes:
        store: Store that was checked
        status: healthy, degraded or unhealthy
        response_time_ms: Round trip of the check
        checked_at: When the check ran
        details: Backend-specific context
        error: Failure description when not healthy
    """

    store: StoreKind
    status: HealthState
    response_time_ms: int
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "store": self.store.value,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "checked_at": self.checked_at.isoformat(),
            "details": self.details,
            "error": self.error,
        }


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@runtime_checkable
class StoreAdapter(Protocol):
    """Protocol for event store backends.

    Contract:
        - write() is idempotent per event_id for creation; repeated writes
          of identical content are reported as already_existed
        - read() never raises for a missing event, it returns None
        - Failures raise StoreTimeout, StoreUnavailable or StoreRejected

    Example:
        >>> store = InMemoryDatabase()
        >>> await store.connect()
        >>> receipt = await store.write(record)
        >>> found = await store.read(record.event_id)
    """

    kind: StoreKind

    @abstractmethod
    async def connect(self) -> None:
        """Open connections/clients. Must be called before other operations."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections/clients."""
        ...

    @abstractmethod
    async def write(self, record: EventRecord) -> StoreReceipt:
        """Create or update the event in this store.

        Args:
            record: Canonical record carrying the event_id join key

        Returns:
            StoreReceipt with whatever reference this store yields

        Raises:
            StoreTimeout: If the store did not answer in time
            StoreUnavailable: On transport/availability failures
            StoreRejected: If the store refused the record
        """
        ...

    @abstractmethod
    async def read(self, event_id: str) -> StoreRecord | None:
        """Read this store's view of an event.

        Returns:
            StoreRecord, or None if the store holds no record for event_id

        Raises:
            StoreError: On any failure other than "not found"
        """
        ...

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Check backend health. Never raises."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has been called."""
        ...


def create_store_adapters(config: EngineConfig) -> dict[StoreKind, StoreAdapter]:
    """Factory function to create the three store adapters from configuration.

    Args:
        config: Engine configuration

    Returns:
        Mapping of store kind to adapter

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend

    if config.store_backend == StoreBackend.MEMORY:
        from .memory import InMemoryDatabase, InMemoryLedger, InMemoryObjectStore

        return {
            StoreKind.LEDGER: InMemoryLedger(
                chain_id=config.ledger.chain_id,
                contract_address=config.ledger.contract_address,
            ),
            StoreKind.DATABASE: InMemoryDatabase(),
            StoreKind.OBJECT_STORE: InMemoryObjectStore(
                public_base_url=config.object_store.public_base_url or "memory://objects"
            ),
        }
    elif config.store_backend == StoreBackend.REMOTE:
        from .database import SqliteEventStore
        from .ledger import LedgerGatewayAdapter
        from .object_store import S3ObjectStore

        return {
            StoreKind.LEDGER: LedgerGatewayAdapter(config.ledger),
            StoreKind.DATABASE: SqliteEventStore(
                data_dir=config.database.data_dir,
                db_name=config.database.db_name,
                wal_mode=config.database.wal_mode,
                busy_timeout_ms=config.database.busy_timeout_ms,
            ),
            StoreKind.OBJECT_STORE: S3ObjectStore(config.object_store),
        }
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")


async def bounded_call(
    kind: StoreKind,
    operation: str,
    call: Awaitable[T],
    timeout: float,
) -> T:
    """Await one adapter call with a timeout, normalizing every failure to StoreError.

    Raises:
        StoreTimeout: If the call did not finish within timeout seconds
        StoreError: As raised by the adapter
        StoreUnavailable: For any other exception escaping the adapter
    """
    try:
        return await asyncio.wait_for(call, timeout)
    except StoreError:
        raise
    except asyncio.TimeoutError:
        raise StoreTimeout(f"No answer within {timeout}s", kind, operation)
    except Exception as e:
        logger.error(
            f"Unexpected error from {kind.value} {operation}: {e}",
            exc_info=True,
        )
        raise StoreUnavailable(f"Unexpected error: {e}", kind, operation) from e
