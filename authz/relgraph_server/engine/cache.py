"""
Query cache and in-flight de-duplication for relgraph.

The cache sits between the evaluator and its own recursion. Every
sub-evaluation is keyed by

    (kind, model fingerprint, object, relation, subject-or-None, snapshot)

and resolved in one of three ways:
- hit: a memoised result for the same key
- join: an identical computation is already running; await its result
- compute: start the computation and publish it for others to join

Invariants:
    - The cache never changes a Check or Expand outcome, only its cost;
      a result is reused only where its height fits under the caller's
      remaining depth
    - Results for one snapshot or model version are never used for another
    - Results that depended on cycle truncation are never memoised, and a
      joiner that receives one recomputes it on its own path
    - A join that would make a computation wait on itself is refused, so
      de-duplication cannot deadlock
    - A running computation is cancelled once nobody waits for it

How to change safely:
    - Any new field that influences a result must become part of the key
    - Keep all bookkeeping free of awaits between check and update; the
      cache relies on the event loop for atomicity
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

from ..errors import DepthExceeded
from ..store.base import ObjectRef, Snapshot, SubjectRef
from .context import Outcome, spawn

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, ObjectRef, str, Optional[SubjectRef], Snapshot]


class Resolution(Enum):
    """How a sub-evaluation was answered."""

    HIT = "hit"
    JOINED = "joined"
    COMPUTED = "computed"


@dataclass
class CacheStats:
    """Cumulative cache counters."""

    hits: int = 0
    misses: int = 0
    joins: int = 0
    refused_joins: int = 0
    evictions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class InflightEntry:
    """A running computation other callers may join.

    Attributes:
        key: Cache key being computed
        depth: Recursion depth at which the computation started
        task: Task running the computation
        waiters: Number of callers currently awaiting the task
        waiting_on: Entries this computation is currently awaiting, with counts
    """

    def __init__(self, key: CacheKey, depth: int) -> None:
        self.key = key
        self.depth = depth
        self.task: asyncio.Task[Outcome[Any]] | None = None
        self.waiters = 0
        self.waiting_on: dict[InflightEntry, int] = {}

    def reaches(self, target: InflightEntry) -> bool:
        """Whether this entry (transitively) waits on target."""
        stack: list[InflightEntry] = [self]
        seen: set[int] = set()
        while stack:
            entry = stack.pop()
            if entry is target:
                return True
            if id(entry) in seen:
                continue
            seen.add(id(entry))
            stack.extend(entry.waiting_on)
        return False

    def __repr__(self) -> str:
        kind, _, obj, relation, subject, snapshot = self.key
        return f"InflightEntry({kind} {obj}#{relation}@{subject} {snapshot}, waiters={self.waiters})"


class QueryCache:
    """Bounded LRU of sub-query results plus in-flight de-duplication.

    Thread safety:
        Bound to one event loop. All state changes happen between awaits,
        so no locks are needed.

    Example:
        >>> cache = QueryCache(max_entries=10000)
        >>> outcome, how = await cache.resolve(key, compute, owner=None, depth=1)
    """

    def __init__(self, max_entries: int = 10000) -> None:
        """Initialize the cache.

        Args:
            max_entries: LRU bound; 0 disables memoisation but keeps
                in-flight de-duplication
        """
        self.max_entries = max_entries
        self.stats = CacheStats()
        self._results: OrderedDict[CacheKey, Outcome[Any]] = OrderedDict()
        self._inflight: dict[CacheKey, InflightEntry] = {}

    def __len__(self) -> int:
        return len(self._results)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def get(self, key: CacheKey) -> Outcome[Any] | None:
        outcome = self._results.get(key)
        if outcome is not None:
            self._results.move_to_end(key)
        return outcome

    def clear(self) -> None:
        """Drop every memoised result (in-flight work is untouched)."""
        self._results.clear()

    def _store(self, key: CacheKey, outcome: Outcome[Any]) -> None:
        if self.max_entries <= 0 or outcome.cyclic:
            return
        self._results[key] = outcome
        self._results.move_to_end(key)
        while len(self._results) > self.max_entries:
            self._results.popitem(last=False)
            self.stats.evictions += 1

    async def resolve(
        self,
        key: CacheKey,
        compute: Callable[[InflightEntry | None], Awaitable[Outcome[Any]]],
        owner: InflightEntry | None,
        depth: int,
        max_depth: int | None = None,
    ) -> tuple[Outcome[Any], Resolution]:
        """Answer a sub-evaluation from the cache, a running twin, or compute.

        A memoised or shared outcome is only used when its height fits under
        max_depth from the caller's depth; otherwise the caller computes on
        its own, so the ceiling applies exactly as without the cache.

        Args:
            key: Cache key of the sub-evaluation
            compute: Runs the evaluation; receives the in-flight entry that
                owns it (or the caller's owner when computed inline)
            owner: In-flight entry the caller belongs to
            depth: Caller's recursion depth
            max_depth: Recursion ceiling of the caller's query, None for none

        Returns:
            Tuple of (outcome, how it was resolved)
        """
        cached = self.get(key)
        if cached is not None and cached.fits(depth, max_depth):
            self.stats.hits += 1
            return cached, Resolution.HIT
        self.stats.misses += 1

        entry = self._inflight.get(key)
        if entry is None:
            entry = InflightEntry(key, depth)
            entry.task = spawn(compute(entry))
            entry.task.add_done_callback(functools.partial(self._finish, entry))
            self._inflight[key] = entry
            return await self._wait(entry, owner), Resolution.COMPUTED

        if owner is not None and entry.reaches(owner):
            # Twin is (transitively) waiting on us
            self.stats.refused_joins += 1
        else:
            self.stats.joins += 1
            try:
                outcome = await self._wait(entry, owner)
            except DepthExceeded:
                # Twin started deeper than we are; the ceiling may not apply to us
                if depth >= entry.depth:
                    raise
            else:
                if not outcome.cyclic and outcome.fits(depth, max_depth):
                    return outcome, Resolution.JOINED

        outcome = await compute(owner)
        self._store(key, outcome)
        return outcome, Resolution.COMPUTED

    async def _wait(self, entry: InflightEntry, owner: InflightEntry | None) -> Outcome[Any]:
        assert entry.task is not None
        entry.waiters += 1
        if owner is not None:
            owner.waiting_on[entry] = owner.waiting_on.get(entry, 0) + 1
        try:
            return await asyncio.shield(entry.task)
        finally:
            if owner is not None:
                remaining = owner.waiting_on[entry] - 1
                if remaining:
                    owner.waiting_on[entry] = remaining
                else:
                    del owner.waiting_on[entry]
            entry.waiters -= 1
            if entry.waiters == 0 and not entry.task.done():
                logger.debug(f"Cancelling abandoned computation {entry!r}")
                entry.task.cancel()
                self._forget(entry)

    def _finish(self, entry: InflightEntry, task: asyncio.Task[Outcome[Any]]) -> None:
        self._forget(entry)
        if not task.cancelled() and task.exception() is None:
            self._store(entry.key, task.result())

    def _forget(self, entry: InflightEntry) -> None:
        if self._inflight.get(entry.key) is entry:
            del self._inflight[entry.key]
