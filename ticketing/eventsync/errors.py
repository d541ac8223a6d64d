"""
Error types for EventSync.

Taxonomy:
- EventSyncError: Base exception
- StoreError: A single store failed (StoreTimeout, StoreUnavailable, StoreRejected)
- AllStoresFailed: Creation reached no store at all
- AllStoresUnavailable: A read could not reach any store holding the event
- NotFoundAnywhere: Every store cleanly reported "not found"
- DivergenceUnresolved: Stores disagree and no store is authoritative

Invariants:
    - All errors inherit from EventSyncError
    - Single-store failures are aggregated into results, never raised as the
      sole outcome of a multi-store operation
    - Errors carry a stable code for programmatic handling

How to change safely:
    - Never change an existing code string, callers map them to HTTP statuses
    - New store failure kinds must subclass StoreError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .model import StoreKind
    from .write.coordinator import CreationResult


class EventSyncError(Exception):
    """Base exception for all EventSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "EVENTSYNC_ERROR"
        self.details = details or {}


class StoreError(EventSyncError):
    """A single store operation failed.

    Attributes:
        store: Which store failed
        operation: "read", "write" or "health"
    """

    default_code = "STORE_ERROR"

    def __init__(
        self,
        message: str,
        store: StoreKind,
        operation: str,
        code: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code or self.default_code,
            details={"store": store.value, "operation": operation},
        )
        self.store = store
        self.operation = operation

    def __str__(self) -> str:
        return f"{self.store.value} {self.operation} failed: {self.message}"


class StoreTimeout(StoreError):
    """The store did not answer within its timeout."""

    default_code = "STORE_TIMEOUT"


class StoreUnavailable(StoreError):
    """Transport or availability failure talking to the store."""

    default_code = "STORE_UNAVAILABLE"


class StoreRejected(StoreError):
    """The store refused the request (validation failure inside that store)."""

    default_code = "STORE_REJECTED"


class AllStoresFailed(EventSyncError):
    """Event creation did not succeed on any store.

    The partial result is still attached so callers can log every per-store
    error.
    """

    def __init__(self, event_id: str, result: CreationResult) -> None:
        super().__init__(
            f"Event {event_id} could not be written to any store",
            code="ALL_STORES_FAILED",
            details={
                "event_id": event_id,
                "errors": {kind.value: str(err) for kind, err in result.errors.items()},
            },
        )
        self.event_id = event_id
        self.result = result


class AllStoresUnavailable(EventSyncError):
    """No store could be read for the event.

    ``partial`` is set when some stores answered "not found" but the others
    errored, so absence could not be proven.
    """

    def __init__(
        self,
        event_id: str,
        errors: dict[StoreKind, StoreError],
        partial: bool = False,
    ) -> None:
        super().__init__(
            f"Event {event_id} could not be read from any store",
            code="ALL_STORES_UNAVAILABLE",
            details={
                "event_id": event_id,
                "errors": {kind.value: str(err) for kind, err in errors.items()},
                "partial": partial,
            },
        )
        self.event_id = event_id
        self.errors = errors
        self.partial = partial


class NotFoundAnywhere(EventSyncError):
    """Every store reported that the event does not exist."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            f"Event {event_id} not found in any store",
            code="NOT_FOUND_ANYWHERE",
            details={"event_id": event_id},
        )
        self.event_id = event_id


class DivergenceUnresolved(EventSyncError):
    """Stores disagree on a field and none of them is authoritative.

    Reported by repair, never retried automatically.
    """

    def __init__(self, event_id: str, field_name: str, reason: str) -> None:
        super().__init__(
            f"Unresolved divergence on '{field_name}' for event {event_id}: {reason}",
            code="DIVERGENCE_UNRESOLVED",
            details={"event_id": event_id, "field": field_name, "reason": reason},
        )
        self.event_id = event_id
        self.field_name = field_name
        self.reason = reason
