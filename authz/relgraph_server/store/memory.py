"""
In-memory tuple store implementation for testing.

This module provides a simple multi-version in-memory backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Every write batch creates exactly one new revision
    - A tuple version is visible at S iff created_rev <= S < deleted_rev
    - Provides the same snapshot guarantees as the SQLite backend

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with TupleStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from ..errors import InvalidSnapshot, StoreUnavailable
from .base import ObjectRef, RelationTuple, Snapshot, SubjectRef

logger = logging.getLogger(__name__)


@dataclass
class _TupleVersion:
    """One lifetime of a tuple in the store."""

    tuple: RelationTuple
    created_rev: int
    deleted_rev: int | None = None

    def visible_at(self, revision: int) -> bool:
        if self.created_rev > revision:
            return False
        return self.deleted_rev is None or self.deleted_rev > revision


def _as_tuple(value: RelationTuple | str) -> RelationTuple:
    if isinstance(value, RelationTuple):
        return value
    return RelationTuple.parse(value)


class InMemoryTupleStore:
    """In-memory implementation of TupleStore for testing.

    Attributes:
        read_count: Number of read calls served (for cost assertions)
        read_delay: Seconds each read sleeps before answering (simulates
            backend latency in concurrency tests)

    Thread safety:
        Uses an asyncio lock for writes. Reads never await while scanning,
        so they observe a consistent state from a single coroutine.

    Example:
        >>> store = InMemoryTupleStore()
        >>> snapshot = await store.write(["domain:acme#member@user:alice"])
        >>> await store.read(ObjectRef("domain", "acme"), "member", snapshot)
        [RelationTuple(...)]
    """

    def __init__(self, read_delay: float = 0.0) -> None:
        self._revision = 0
        self._by_object: dict[tuple[ObjectRef, str], list[_TupleVersion]] = defaultdict(list)
        self._by_subject: dict[SubjectRef, list[_TupleVersion]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._failure: Exception | None = None
        self._failing: set[tuple[ObjectRef, str]] = set()
        self.read_delay = read_delay
        self.read_count = 0

    async def head(self) -> Snapshot:
        return Snapshot(self._revision)

    async def write(
        self,
        inserts: Iterable[RelationTuple | str] = (),
        deletes: Iterable[RelationTuple | str] = (),
    ) -> Snapshot:
        """Apply a batch of inserts and deletes as one new revision.

        Inserting a live tuple or deleting a missing one is a no-op.

        Returns:
            Snapshot at which the batch is visible
        """
        async with self._lock:
            revision = self._revision + 1

            for value in deletes:
                rt = _as_tuple(value)
                for version in self._by_object.get((rt.object, rt.relation), ()):
                    if version.tuple == rt and version.deleted_rev is None:
                        version.deleted_rev = revision

            for value in inserts:
                rt = _as_tuple(value)
                versions = self._by_object[(rt.object, rt.relation)]
                if any(v.tuple == rt and v.deleted_rev is None for v in versions):
                    continue
                version = _TupleVersion(tuple=rt, created_rev=revision)
                versions.append(version)
                self._by_subject[rt.subject].append(version)

            self._revision = revision

        logger.debug(f"InMemoryTupleStore committed revision {revision}")
        return Snapshot(revision)

    async def read(
        self,
        obj: ObjectRef,
        relation: str,
        snapshot: Snapshot,
        subject_types: Iterable[str] | None = None,
    ) -> list[RelationTuple]:
        await self._before_read(snapshot)
        if (obj, relation) in self._failing:
            raise StoreUnavailable(f"read of {obj}#{relation} failed", backend="memory")
        types = set(subject_types) if subject_types is not None else None
        return sorted((
            v.tuple
            for v in self._by_object.get((obj, relation), ())
            if v.visible_at(snapshot.revision)
            and (types is None or v.tuple.subject.type in types)
        ), key=str)

    async def read_by_subject(
        self,
        subject: SubjectRef,
        snapshot: Snapshot,
        object_type: str | None = None,
        relation: str | None = None,
    ) -> list[RelationTuple]:
        await self._before_read(snapshot)
        return sorted((
            v.tuple
            for v in self._by_subject.get(subject, ())
            if v.visible_at(snapshot.revision)
            and (object_type is None or v.tuple.object.type == object_type)
            and (relation is None or v.tuple.relation == relation)
        ), key=str)

    async def _before_read(self, snapshot: Snapshot) -> None:
        self.read_count += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self._failure is not None:
            raise self._failure
        if snapshot.revision > self._revision:
            raise InvalidSnapshot(
                f"Snapshot {snapshot} is ahead of store head rev:{self._revision}",
                token=snapshot.token,
            )

    # Testing helpers

    def fail_reads(self, message: str = "store offline") -> None:
        """Make every subsequent read raise StoreUnavailable."""
        self._failure = StoreUnavailable(message, backend="memory")

    def fail_reads_for(self, obj: ObjectRef, relation: str) -> None:
        """Make reads of one (object, relation) raise StoreUnavailable."""
        self._failing.add((obj, relation))

    def restore_reads(self) -> None:
        """Undo fail_reads() and fail_reads_for()."""
        self._failure = None
        self._failing.clear()

    def tuple_count(self, snapshot: Snapshot | None = None) -> int:
        """Number of live tuples at a snapshot (head if omitted)."""
        revision = self._revision if snapshot is None else snapshot.revision
        return sum(
            1
            for versions in self._by_object.values()
            for v in versions
            if v.visible_at(revision)
        )
