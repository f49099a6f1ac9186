"""
relgraph Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no external services)
- integration/: End-to-end Check/Expand scenarios on memory and SQLite stores
"""
