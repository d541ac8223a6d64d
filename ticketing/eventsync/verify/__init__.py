"""
Cross-store verification.

Invariants:
    - Verification never writes to any store

How to change safely:
    - Authority rules live in model.py; change them there
"""

from .verifier import ConsistencyVerifier, Divergence, DivergenceReason, ResolvedEvent

__all__ = [
    "ConsistencyVerifier",
    "ResolvedEvent",
    "Divergence",
    "DivergenceReason",
]
