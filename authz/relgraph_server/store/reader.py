"""
Snapshot-pinned tuple reader.

A TupleReader is the tuple store adapter one top-level query uses. It binds
a store to a single snapshot so every recursive sub-evaluation of that
query sees exactly the same facts, and shares identical reads issued by
concurrent branches of the query.

Invariants:
    - One reader serves exactly one top-level query
    - Every read goes to the store at the pinned snapshot
    - A failed read is not remembered; the next caller retries it
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from .base import ObjectRef, RelationTuple, Snapshot, TupleStore


def _consume_result(task: asyncio.Task) -> None:
    # Mark the exception retrieved when every waiter was cancelled
    if not task.cancelled():
        task.exception()


class TupleReader:
    """Reads tuples from a store at one fixed snapshot.

    Attributes:
        store: Backing tuple store
        snapshot: Snapshot every read is pinned to
        reads: Number of reads sent to the store
    """

    def __init__(self, store: TupleStore, snapshot: Snapshot) -> None:
        self.store = store
        self.snapshot = snapshot
        self.reads = 0
        self._pending: dict[tuple, asyncio.Task[list[RelationTuple]]] = {}

    async def read(
        self,
        obj: ObjectRef,
        relation: str,
        subject_types: Iterable[str] | None = None,
    ) -> list[RelationTuple]:
        """Read tuples for (obj, relation) at the pinned snapshot."""
        types = frozenset(subject_types) if subject_types is not None else None
        key = (obj, relation, types)

        task = self._pending.get(key)
        if task is None or (task.done() and (task.cancelled() or task.exception())):
            task = asyncio.ensure_future(self._read(obj, relation, types))
            task.add_done_callback(_consume_result)
            self._pending[key] = task
        return list(await asyncio.shield(task))

    async def _read(
        self,
        obj: ObjectRef,
        relation: str,
        types: frozenset[str] | None,
    ) -> list[RelationTuple]:
        self.reads += 1
        return await self.store.read(obj, relation, self.snapshot, subject_types=types)
