"""
Tuple store abstraction for relgraph.

This module provides a pluggable tuple store interface supporting:
- SQLite (durable, multi-version)
- In-memory (for testing)

Relationship tuples are owned by an external writer. The evaluator only
reads them, always at an explicit snapshot.

Invariants:
    - Reads are pinned to a snapshot and never see later writes
    - Store failures raise StoreUnavailable
    - Old snapshots remain readable after later writes

How to change safely:
    - New backends must implement the TupleStore protocol
    - Verify snapshot visibility with the shared store tests
"""

from .base import (
    ObjectRef,
    RelationTuple,
    Snapshot,
    SubjectRef,
    TupleStore,
    create_tuple_store,
)
from .memory import InMemoryTupleStore
from .reader import TupleReader
from .sqlite import SqliteTupleStore

__all__ = [
    # Protocol and types
    "TupleStore",
    "ObjectRef",
    "SubjectRef",
    "RelationTuple",
    "Snapshot",
    "TupleReader",
    # Factory
    "create_tuple_store",
    # Implementations
    "InMemoryTupleStore",
    "SqliteTupleStore",
]
