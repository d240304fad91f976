"""
SnapKeeper Test Suite.

This package contains:
- unit/: Unit tests (no AWS access; in-memory resource API and stub clients)
"""
