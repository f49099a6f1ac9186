"""
Expand evaluation: enumerate the userset of (object, relation).

Expand mirrors Check but never short-circuits. It returns a UsersetTree
whose nodes record which expression produced them, so callers can audit
why a subject is (or is not) in a userset. resolve_subjects() flattens a
tree into its concrete subjects by applying the set algebra.

Invariants:
    - Expand shares dispatch, caching and the depth ceiling with Check
    - A cycle truncates only the branch that re-entered an active pair;
      the branch becomes a CYCLE node and the call still succeeds
    - Trees are deterministic for a given model version and snapshot
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import DepthExceeded
from ..schema.types import (
    ComputedRelation,
    Direct,
    Exclusion,
    Expression,
    Intersection,
    TupleToUserset,
    Union,
)
from ..store.base import ObjectRef, SubjectRef
from .cache import InflightEntry, QueryCache, Resolution
from .context import Frame, Outcome, RequestContext, gather_or_cancel

logger = logging.getLogger(__name__)


class NodeKind(Enum):
    """Expression kind that produced a UsersetTree node."""

    DIRECT = "direct"
    COMPUTED = "computed"
    TUPLE_TO_USERSET = "tuple_to_userset"
    UNION = "union"
    INTERSECTION = "intersection"
    EXCLUSION = "exclusion"
    CYCLE = "cycle"


@dataclass(frozen=True)
class UsersetTree:
    """One node of an expanded userset.

    Attributes:
        object: Object whose relation this node describes
        relation: Relation this node describes
        kind: Expression kind that produced the node
        subjects: Concrete subjects stored directly (DIRECT nodes only)
        children: Sub-trees; for EXCLUSION exactly (base, subtract)
    """

    object: ObjectRef
    relation: str
    kind: NodeKind
    subjects: tuple[SubjectRef, ...] = ()
    children: tuple[UsersetTree, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "object": str(self.object),
            "relation": self.relation,
            "kind": self.kind.value,
        }
        if self.subjects:
            result["subjects"] = [str(s) for s in self.subjects]
        if self.children:
            result["children"] = [c.to_dict() for c in self.children]
        return result


def resolve_subjects(tree: UsersetTree) -> frozenset[SubjectRef]:
    """Concrete subjects denoted by an expanded tree.

    A CYCLE node contributes nothing, matching Check's treatment of cycles.
    """
    if tree.kind is NodeKind.CYCLE:
        return frozenset()

    resolved = [resolve_subjects(child) for child in tree.children]
    if tree.kind is NodeKind.INTERSECTION:
        if not resolved:
            return frozenset()
        return frozenset.intersection(*resolved)
    if tree.kind is NodeKind.EXCLUSION:
        base, subtract = resolved
        return base - subtract

    subjects = frozenset(tree.subjects)
    for child_subjects in resolved:
        subjects |= child_subjects
    return subjects


TreeThunk = Callable[[], Awaitable[Outcome[UsersetTree]]]


class ExpandEvaluator:
    """Builds UsersetTrees for Expand queries.

    Example:
        >>> evaluator = ExpandEvaluator(QueryCache())
        >>> tree = await evaluator.expand(ctx, ObjectRef("document", "doc1"), "viewer")
        >>> resolve_subjects(tree)
        frozenset({SubjectRef(type='user', id='alice', relation=None)})
    """

    def __init__(self, cache: QueryCache) -> None:
        self.cache = cache

    async def expand(self, ctx: RequestContext, obj: ObjectRef, relation: str) -> UsersetTree:
        """Expand the userset of (obj, relation).

        Raises:
            UnknownRelation: If the object type or relation is not declared
            DepthExceeded: If the walk goes deeper than ctx.max_depth
            StoreUnavailable: If a required tuple read failed
        """
        ctx.registry.get_relation(obj.type, relation)
        outcome = await self.dispatch(ctx, Frame(), obj, relation)
        return outcome.value

    async def dispatch(
        self,
        ctx: RequestContext,
        frame: Frame,
        obj: ObjectRef,
        relation: str,
    ) -> Outcome[UsersetTree]:
        """Expand (obj, relation) one level below frame."""
        pair = (obj, relation)
        if pair in frame.path:
            ctx.metadata.cycle_detected = True
            return Outcome(UsersetTree(obj, relation, NodeKind.CYCLE), cyclic=True)

        depth = frame.depth + 1
        if depth > ctx.max_depth:
            raise DepthExceeded(ctx.max_depth, str(obj), relation)
        ctx.metadata.dispatch_count += 1
        ctx.metadata.max_depth_reached = max(ctx.metadata.max_depth_reached, depth)

        async def compute(owner: InflightEntry | None) -> Outcome[UsersetTree]:
            child_frame = frame.enter(pair, owner)
            expression = ctx.registry.expression_for(obj.type, relation)
            outcome = await self._expand_expression(ctx, child_frame, expression, obj, relation)
            return outcome.lifted()

        key = ("expand", ctx.registry.fingerprint, obj, relation, None, ctx.snapshot)
        outcome, how = await self.cache.resolve(key, compute, frame.owner, depth, ctx.max_depth)
        if how is Resolution.HIT:
            ctx.metadata.cache_hits += 1
        elif how is Resolution.JOINED:
            ctx.metadata.inflight_joins += 1
        ctx.metadata.max_depth_reached = max(
            ctx.metadata.max_depth_reached, depth + outcome.height - 1
        )
        return outcome

    async def _expand_expression(
        self,
        ctx: RequestContext,
        frame: Frame,
        expression: Expression,
        obj: ObjectRef,
        relation: str,
    ) -> Outcome[UsersetTree]:
        if isinstance(expression, Direct):
            return await self._direct(ctx, frame, expression, obj, relation)

        if isinstance(expression, ComputedRelation):
            thunks = [functools.partial(self.dispatch, ctx, frame, obj, expression.relation)]
            return await self._node(obj, relation, NodeKind.COMPUTED, thunks)

        if isinstance(expression, TupleToUserset):
            linked_types = ctx.registry.linked_types(
                obj.type, expression.tupleset, expression.computed_relation
            )
            tuples = await ctx.reader.read(obj, expression.tupleset, subject_types=linked_types)
            thunks = [
                functools.partial(
                    self.dispatch, ctx, frame, stored.subject.object, expression.computed_relation
                )
                for stored in tuples
                if not stored.subject.is_userset
            ]
            return await self._node(obj, relation, NodeKind.TUPLE_TO_USERSET, thunks)

        if isinstance(expression, (Union, Intersection)):
            kind = NodeKind.UNION if isinstance(expression, Union) else NodeKind.INTERSECTION
            thunks = [
                functools.partial(self._expand_expression, ctx, frame, child, obj, relation)
                for child in expression.children
            ]
            return await self._node(obj, relation, kind, thunks)

        if isinstance(expression, Exclusion):
            thunks = [
                functools.partial(self._expand_expression, ctx, frame, operand, obj, relation)
                for operand in (expression.base, expression.subtract)
            ]
            return await self._node(obj, relation, NodeKind.EXCLUSION, thunks)

        raise TypeError(f"Unsupported expression: {expression!r}")

    async def _direct(
        self,
        ctx: RequestContext,
        frame: Frame,
        expression: Direct,
        obj: ObjectRef,
        relation: str,
    ) -> Outcome[UsersetTree]:
        tuples = await ctx.reader.read(obj, relation)

        subjects: list[SubjectRef] = []
        thunks: list[TreeThunk] = []
        for stored in tuples:
            userset = stored.subject
            if not expression.permits(userset.type, userset.relation):
                logger.warning(
                    f"Ignoring tuple with a subject form {obj.type}#{relation} does not allow: {stored}",
                    extra={"tuple": str(stored), "fingerprint": ctx.registry.fingerprint},
                )
                continue
            if not userset.is_userset:
                subjects.append(userset)
                continue
            assert userset.relation is not None
            thunks.append(
                functools.partial(self.dispatch, ctx, frame, userset.object, userset.relation)
            )
        return await self._node(obj, relation, NodeKind.DIRECT, thunks, tuple(subjects))

    async def _node(
        self,
        obj: ObjectRef,
        relation: str,
        kind: NodeKind,
        thunks: list[TreeThunk],
        subjects: tuple[SubjectRef, ...] = (),
    ) -> Outcome[UsersetTree]:
        outcomes = await gather_or_cancel(thunks)
        tree = UsersetTree(
            object=obj,
            relation=relation,
            kind=kind,
            subjects=subjects,
            children=tuple(o.value for o in outcomes),
        )
        return Outcome(
            tree,
            cyclic=any(o.cyclic for o in outcomes),
            height=max((o.height for o in outcomes), default=0),
        )
