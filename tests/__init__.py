"""
EventSync Test Suite.

This package contains:
- unit/: Unit tests (model, config, single adapters, CLI)
- integration/: Integration tests (coordinator, verifier, repair, orchestrator over in-memory stores)
"""
