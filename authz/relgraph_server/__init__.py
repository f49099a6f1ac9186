"""
relgraph - Schema-driven relationship graph evaluator.

This package answers relationship-based access control (ReBAC) queries
against an authorization model and a store of relationship tuples:
- Check: does subject S hold relation R on object O?
- Expand: which subjects hold relation R on object O, and why?

Architecture:
    ┌──────────────┐  compile   ┌──────────────┐
    │    Model     │───────────▶│ TypeRegistry │ (immutable, versioned)
    │ description  │            └──────┬───────┘
    └──────────────┘                   │
                                       ▼
    ┌──────────────┐            ┌──────────────┐            ┌──────────────┐
    │ AuthzService │───────────▶│  Evaluator   │◀──────────▶│  QueryCache  │
    │ check/expand │            │ check/expand │  recurse   │ (LRU+dedup)  │
    └──────────────┘            └──────┬───────┘            └──────────────┘
                                       │ snapshot reads
                                       ▼
                                ┌──────────────┐
                                │  TupleStore  │ (memory / SQLite)
                                └──────────────┘

Invariants:
    - Tuples are owned by an external writer; the evaluator only reads
    - Every query is pinned to an explicit snapshot
    - Dangling references in a model are compile errors, never query errors
    - A membership cycle never grants access

How to change safely:
    - Publish a new registry for model changes; never mutate one in place
    - Keep the cache a pure performance layer: results with and without it
      must be identical
"""

from ._version import __version__

__all__ = ["__version__"]
