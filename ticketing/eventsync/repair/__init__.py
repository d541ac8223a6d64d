"""
Cross-store repair.

Invariants:
    - Repair only creates missing records and corrects the database
    - One repair per event id at a time

How to change safely:
    - Failure codes in RepairFailure are part of the CLI output
"""

from .engine import RepairAction, RepairEngine, RepairFailure, RepairOperation, RepairResult
from .single_flight import KeyedLock

__all__ = [
    "RepairEngine",
    "RepairResult",
    "RepairAction",
    "RepairFailure",
    "RepairOperation",
    "KeyedLock",
]
