"""
Multi-store event creation.

Invariants:
    - Store writes are attempted concurrently and independently
    - Partial success is a normal outcome, reported through CreationResult

How to change safely:
    - Keep CreationResult.summary() keys stable, API responses expose them
"""

from .coordinator import CreationResult, StoreOutcome, WriteCoordinator

__all__ = [
    "WriteCoordinator",
    "CreationResult",
    "StoreOutcome",
]
