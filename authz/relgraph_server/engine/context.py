"""
Request-scoped evaluation state.

Every top-level Check or Expand gets one RequestContext. Recursion state
(the active path and the in-flight computation that owns the current
coroutine) travels in immutable Frames passed down each call, never in
shared mutable state, so concurrent queries cannot see each other's paths.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ..schema.registry import TypeRegistry
from ..store.base import ObjectRef, Snapshot
from ..store.reader import TupleReader

if TYPE_CHECKING:
    from .cache import InflightEntry

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one sub-evaluation.

    Attributes:
        value: The boolean (Check) or tree (Expand) computed
        cyclic: True if cycle truncation on the active path contributed to
            the value; such results are only valid on that path
        height: Dispatch levels the value needed, counting the dispatch
            that produced it; a caller at depth d may only use it when
            d + height - 1 <= max_depth
    """

    value: T
    cyclic: bool = False
    height: int = 0

    def lifted(self) -> Outcome[T]:
        """The same outcome seen from one dispatch level above."""
        return replace(self, height=self.height + 1)

    def fits(self, depth: int, max_depth: int | None) -> bool:
        """Whether a caller dispatching at depth can use this outcome."""
        return max_depth is None or depth + self.height - 1 <= max_depth


@dataclass
class ResolutionMetadata:
    """Cost and shape of one query's evaluation.

    Counts include work done on behalf of other queries that joined a
    computation this query started.
    """

    dispatch_count: int = 0
    read_count: int = 0
    cache_hits: int = 0
    inflight_joins: int = 0
    max_depth_reached: int = 0
    cycle_detected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Frame:
    """Position of a coroutine in the recursion.

    Attributes:
        path: (object, relation) pairs being evaluated on this branch
        owner: In-flight cache entry whose computation this branch belongs to
    """

    path: frozenset[tuple[ObjectRef, str]] = frozenset()
    owner: InflightEntry | None = None

    @property
    def depth(self) -> int:
        return len(self.path)

    def enter(self, pair: tuple[ObjectRef, str], owner: InflightEntry | None) -> Frame:
        return Frame(path=self.path | {pair}, owner=owner)


@dataclass
class RequestContext:
    """Everything one top-level query needs while it runs.

    Attributes:
        registry: Model version captured when the query started
        reader: Tuple reader pinned to the query's snapshot
        max_depth: Recursion ceiling
        metadata: Resolution metadata accumulated during evaluation
    """

    registry: TypeRegistry
    reader: TupleReader
    max_depth: int
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)

    @property
    def snapshot(self) -> Snapshot:
        return self.reader.snapshot

    def finish(self) -> ResolutionMetadata:
        self.metadata.read_count = self.reader.reads
        return self.metadata


def _consume_result(task: asyncio.Task) -> None:
    # Mark the exception retrieved for tasks whose waiters all went away
    if not task.cancelled():
        task.exception()


def spawn(coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
    """Start a child task whose failure is never reported as unretrieved."""
    task = asyncio.ensure_future(coro)
    task.add_done_callback(_consume_result)
    return task


async def gather_or_cancel(thunks: list[Callable[[], Awaitable[T]]]) -> list[T]:
    """Run thunks concurrently; on the first error cancel the rest and raise."""
    if not thunks:
        return []
    if len(thunks) == 1:
        return [await thunks[0]()]

    tasks = [spawn(_run(thunk)) for thunk in thunks]
    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def _run(thunk: Callable[[], Awaitable[T]]) -> T:
    return await thunk()
