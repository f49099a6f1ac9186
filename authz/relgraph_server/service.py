"""
Query API for relgraph.

AuthzService is the surface a transport layer (RPC or REST handlers, not
part of this package) calls. It ties together:
- The process-wide TypeRegistry (publish_model swaps it atomically)
- A TupleStore, read through one snapshot-pinned TupleReader per query
- One QueryCache shared by every query the service runs
- The Check and Expand evaluators

Invariants:
    - Every query names its snapshot explicitly; the service never
      substitutes "latest" on its own
    - A query uses the registry that was current when it started, even if
      a new model is published while it runs
    - Every query runs under a deadline; expiry raises DeadlineExceeded and
      cancels all of its in-flight work
    - Errors reach the caller as typed RelgraphError subclasses

How to change safely:
    - The service and its cache belong to one event loop; run one service
      per loop
    - Keep request and result types transport-neutral (to_dict/from_dict)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import RelgraphConfig
from .engine.cache import QueryCache
from .engine.check import CheckEvaluator
from .engine.context import RequestContext, ResolutionMetadata
from .engine.expand import ExpandEvaluator, UsersetTree
from .errors import DeadlineExceeded, RelgraphError
from .schema.compiler import compile_model
from .schema.model import ModelDescription
from .schema.registry import TypeRegistry, get_registry, publish_registry
from .store.base import ObjectRef, Snapshot, SubjectRef, TupleStore, create_tuple_store
from .store.reader import TupleReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _check_deadline(deadline_ms: int | None) -> None:
    if deadline_ms is not None and deadline_ms <= 0:
        raise ValueError(f"deadline_ms must be positive, got {deadline_ms}")


@dataclass(frozen=True)
class CheckRequest:
    """Does `subject` hold `relation` on `object` at `snapshot`?

    Attributes:
        object: Object being accessed
        relation: Relation to check
        subject: Concrete subject or userset
        snapshot: Consistency snapshot the caller obtained from the store
        deadline_ms: Per-query deadline, must be positive; the configured
            default if None
    """

    object: ObjectRef
    relation: str
    subject: SubjectRef
    snapshot: Snapshot
    deadline_ms: int | None = None

    def __post_init__(self) -> None:
        _check_deadline(self.deadline_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckRequest:
        """Build a request from its string encoding.

        Example:
            >>> CheckRequest.from_dict({
            ...     "object": "document:doc1",
            ...     "relation": "viewer",
            ...     "subject": "user:alice",
            ...     "snapshot": "rev:3",
            ... })
        """
        return cls(
            object=ObjectRef.parse(data["object"]),
            relation=data["relation"],
            subject=SubjectRef.parse(data["subject"]),
            snapshot=Snapshot.parse(data["snapshot"]),
            deadline_ms=data.get("deadline_ms"),
        )


@dataclass(frozen=True)
class CheckResult:
    """Answer to a CheckRequest."""

    allowed: bool
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "metadata": self.metadata.to_dict()}


@dataclass(frozen=True)
class ExpandRequest:
    """Enumerate the userset of `relation` on `object` at `snapshot`."""

    object: ObjectRef
    relation: str
    snapshot: Snapshot
    deadline_ms: int | None = None

    def __post_init__(self) -> None:
        _check_deadline(self.deadline_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExpandRequest:
        return cls(
            object=ObjectRef.parse(data["object"]),
            relation=data["relation"],
            snapshot=Snapshot.parse(data["snapshot"]),
            deadline_ms=data.get("deadline_ms"),
        )


@dataclass(frozen=True)
class ExpandResult:
    """Answer to an ExpandRequest."""

    tree: UsersetTree
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {"tree": self.tree.to_dict(), "metadata": self.metadata.to_dict()}


class AuthzService:
    """Check and Expand over the current model and a tuple store.

    Attributes:
        store: Tuple store queries read from
        config: relgraph configuration
        cache: Query cache shared by all queries of this service

    Example:
        >>> service = AuthzService(InMemoryTupleStore())
        >>> service.publish_model(load_model(model_yaml))
        >>> snapshot = await service.head()
        >>> result = await service.check(CheckRequest(doc, "viewer", alice, snapshot))
        >>> result.allowed
        True
    """

    def __init__(self, store: TupleStore, config: RelgraphConfig | None = None) -> None:
        """Initialize the service.

        Args:
            store: Tuple store to read from
            config: Optional configuration (defaults if not provided)
        """
        self.store = store
        self.config = config or RelgraphConfig()
        self.cache = QueryCache(
            max_entries=self.config.cache.max_entries if self.config.cache.enabled else 0
        )
        self._checker = CheckEvaluator(self.cache)
        self._expander = ExpandEvaluator(self.cache)

    @classmethod
    def from_config(cls, config: RelgraphConfig | None = None) -> AuthzService:
        """Create a service and its tuple store from configuration.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        config = config or RelgraphConfig.from_env()
        config.log_config()
        return cls(create_tuple_store(config), config)

    def publish_model(self, description: ModelDescription) -> TypeRegistry:
        """Compile a model and make it the current version.

        Queries already running keep the registry they started with.

        Raises:
            CompileError: If the model does not compile; the current model
                stays in place
        """
        registry = compile_model(description)
        publish_registry(registry)
        return registry

    async def head(self) -> Snapshot:
        """Latest snapshot of the tuple store, for callers to pass back in."""
        return await self.store.head()

    async def check(self, request: CheckRequest) -> CheckResult:
        """Answer a CheckRequest.

        Raises:
            RelgraphError: NO_MODEL if no model has been published
            UnknownRelation: If the request names an undeclared relation
            DepthExceeded: If the tuple graph is deeper than the ceiling
            DeadlineExceeded: If the query outlives its deadline
            StoreUnavailable: If the tuple store failed a required read
            InvalidSnapshot: If the store cannot serve the snapshot
        """
        ctx = self._context(request.snapshot)
        start = time.monotonic()
        allowed = await self._with_deadline(
            self._checker.check(ctx, request.object, request.relation, request.subject),
            request.deadline_ms,
        )
        metadata = ctx.finish()
        logger.debug(
            f"check {request.object}#{request.relation}@{request.subject} -> {allowed}",
            extra={
                "snapshot": request.snapshot.token,
                "elapsed_ms": round((time.monotonic() - start) * 1000, 3),
                **metadata.to_dict(),
            },
        )
        return CheckResult(allowed=allowed, metadata=metadata)

    async def expand(self, request: ExpandRequest) -> ExpandResult:
        """Answer an ExpandRequest.

        Raises the same errors as check().
        """
        ctx = self._context(request.snapshot)
        start = time.monotonic()
        tree = await self._with_deadline(
            self._expander.expand(ctx, request.object, request.relation),
            request.deadline_ms,
        )
        metadata = ctx.finish()
        logger.debug(
            f"expand {request.object}#{request.relation}",
            extra={
                "snapshot": request.snapshot.token,
                "elapsed_ms": round((time.monotonic() - start) * 1000, 3),
                **metadata.to_dict(),
            },
        )
        return ExpandResult(tree=tree, metadata=metadata)

    def _context(self, snapshot: Snapshot) -> RequestContext:
        registry = get_registry()
        if registry is None:
            raise RelgraphError("No model has been published", code="NO_MODEL")
        return RequestContext(
            registry=registry,
            reader=TupleReader(self.store, snapshot),
            max_depth=self.config.engine.max_depth,
        )

    async def _with_deadline(self, query: Awaitable[T], deadline_ms: int | None) -> T:
        if deadline_ms is None:
            deadline_ms = self.config.engine.deadline_ms
        try:
            return await asyncio.wait_for(query, timeout=deadline_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Query exceeded deadline of {deadline_ms}ms")
            raise DeadlineExceeded(deadline_ms) from None
