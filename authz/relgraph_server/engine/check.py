"""
Check evaluation: does a subject hold a relation on an object?

The evaluator walks the compiled expression for (object type, relation)
and recurses into related objects through the query cache. Every
recursive step is a *dispatch*: (object, relation, subject) resolved
through the cache, guarded by the active path and the depth ceiling.

Rules:
- Direct: an exact tuple match grants; userset subjects are dispatched;
  stored subject forms the relation does not allow are ignored
- ComputedRelation: dispatch the same object with another relation
- TupleToUserset: dispatch computed_relation on every linked object
- Union / Intersection: children run concurrently, the first decisive
  child wins and the rest are cancelled
- Exclusion: base and subtract run concurrently; a false base or a true
  subtract decides

Invariants:
    - Re-entering an (object, relation) pair on the active path yields
      false; a membership cycle never grants access
    - Recursion deeper than max_depth raises DepthExceeded
    - Store errors propagate; they are only discarded when a sibling
      already decided the result

How to change safely:
    - New expression kinds need a branch in _evaluate_expression
    - Anything that influences a result must flow through the cache key
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable

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
from .context import Frame, Outcome, RequestContext, spawn

logger = logging.getLogger(__name__)

CheckThunk = Callable[[], Awaitable[Outcome[bool]]]


async def _run(thunk: CheckThunk) -> Outcome[bool]:
    return await thunk()


async def race(thunks: list[CheckThunk], decisive: bool) -> Outcome[bool]:
    """Run thunks concurrently until one returns the decisive value.

    Union races for True, Intersection for False. Once a decisive child is
    seen the remaining children are cancelled and sibling errors are
    discarded. Without a decisive child the first error (in completion
    order) is raised; otherwise the non-decisive value is returned.

    Args:
        thunks: Zero-argument callables producing child outcomes
        decisive: The value that settles the combination

    Returns:
        Combined outcome; cyclic if any child that shaped it was cyclic, and
        as tall as the tallest such child
    """
    if not thunks:
        return Outcome(not decisive)
    if len(thunks) == 1:
        return await thunks[0]()

    tasks = [spawn(_run(thunk)) for thunk in thunks]
    error: BaseException | None = None
    cyclic = False
    height = 0
    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in tasks:
                if task not in done:
                    continue
                exc = task.exception()
                if exc is not None:
                    if error is None:
                        error = exc
                    continue
                outcome = task.result()
                if outcome.value is decisive:
                    return outcome
                cyclic = cyclic or outcome.cyclic
                height = max(height, outcome.height)
        if error is not None:
            raise error
        return Outcome(not decisive, cyclic=cyclic, height=height)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def _negate(thunk: CheckThunk) -> Outcome[bool]:
    outcome = await thunk()
    return Outcome(not outcome.value, cyclic=outcome.cyclic, height=outcome.height)


class CheckEvaluator:
    """Resolves Check queries against a registry and a snapshot-pinned reader.

    The evaluator itself is stateless; per-query state lives in the
    RequestContext and per-branch state in Frames. It can serve any number
    of concurrent queries on the event loop its cache is bound to.

    Example:
        >>> evaluator = CheckEvaluator(QueryCache())
        >>> allowed = await evaluator.check(ctx, doc, "viewer", alice)
    """

    def __init__(self, cache: QueryCache) -> None:
        self.cache = cache

    async def check(
        self,
        ctx: RequestContext,
        obj: ObjectRef,
        relation: str,
        subject: SubjectRef,
    ) -> bool:
        """Whether subject holds relation on obj.

        Raises:
            UnknownRelation: If the object type or relation is not declared
            DepthExceeded: If the walk goes deeper than ctx.max_depth
            StoreUnavailable: If a required tuple read failed
        """
        ctx.registry.get_relation(obj.type, relation)
        outcome = await self.dispatch(ctx, Frame(), obj, relation, subject)
        return outcome.value

    async def dispatch(
        self,
        ctx: RequestContext,
        frame: Frame,
        obj: ObjectRef,
        relation: str,
        subject: SubjectRef,
    ) -> Outcome[bool]:
        """Resolve (obj, relation, subject) one level below frame."""
        pair = (obj, relation)
        if pair in frame.path:
            ctx.metadata.cycle_detected = True
            return Outcome(False, cyclic=True)

        depth = frame.depth + 1
        if depth > ctx.max_depth:
            raise DepthExceeded(ctx.max_depth, str(obj), relation)
        ctx.metadata.dispatch_count += 1
        ctx.metadata.max_depth_reached = max(ctx.metadata.max_depth_reached, depth)

        async def compute(owner: InflightEntry | None) -> Outcome[bool]:
            outcome = await self._evaluate(ctx, frame.enter(pair, owner), obj, relation, subject)
            return outcome.lifted()

        key = ("check", ctx.registry.fingerprint, obj, relation, subject, ctx.snapshot)
        outcome, how = await self.cache.resolve(key, compute, frame.owner, depth, ctx.max_depth)
        if how is Resolution.HIT:
            ctx.metadata.cache_hits += 1
        elif how is Resolution.JOINED:
            ctx.metadata.inflight_joins += 1
        ctx.metadata.max_depth_reached = max(
            ctx.metadata.max_depth_reached, depth + outcome.height - 1
        )
        return outcome

    async def _evaluate(
        self,
        ctx: RequestContext,
        frame: Frame,
        obj: ObjectRef,
        relation: str,
        subject: SubjectRef,
    ) -> Outcome[bool]:
        expression = ctx.registry.expression_for(obj.type, relation)
        return await self._evaluate_expression(ctx, frame, expression, obj, relation, subject)

    async def _evaluate_expression(
        self,
        ctx: RequestContext,
        frame: Frame,
        expression: Expression,
        obj: ObjectRef,
        relation: str,
        subject: SubjectRef,
    ) -> Outcome[bool]:
        if isinstance(expression, Direct):
            return await self._direct(ctx, frame, expression, obj, relation, subject)

        if isinstance(expression, ComputedRelation):
            return await self.dispatch(ctx, frame, obj, expression.relation, subject)

        if isinstance(expression, TupleToUserset):
            return await self._tuple_to_userset(ctx, frame, expression, obj, subject)

        if isinstance(expression, (Union, Intersection)):
            thunks = [
                functools.partial(
                    self._evaluate_expression, ctx, frame, child, obj, relation, subject
                )
                for child in expression.children
            ]
            return await race(thunks, decisive=isinstance(expression, Union))

        if isinstance(expression, Exclusion):
            base = functools.partial(
                self._evaluate_expression, ctx, frame, expression.base, obj, relation, subject
            )
            subtract = functools.partial(
                self._evaluate_expression, ctx, frame, expression.subtract, obj, relation, subject
            )
            # base AND NOT subtract
            return await race([base, functools.partial(_negate, subtract)], decisive=False)

        raise TypeError(f"Unsupported expression: {expression!r}")

    async def _direct(
        self,
        ctx: RequestContext,
        frame: Frame,
        expression: Direct,
        obj: ObjectRef,
        relation: str,
        subject: SubjectRef,
    ) -> Outcome[bool]:
        tuples = await ctx.reader.read(obj, relation)

        thunks: list[CheckThunk] = []
        for stored in tuples:
            userset = stored.subject
            if not expression.permits(userset.type, userset.relation):
                logger.warning(
                    f"Ignoring tuple with a subject form {obj.type}#{relation} does not allow: {stored}",
                    extra={"tuple": str(stored), "fingerprint": ctx.registry.fingerprint},
                )
                continue
            if userset == subject:
                return Outcome(True)
            if not userset.is_userset:
                continue
            assert userset.relation is not None
            thunks.append(
                functools.partial(
                    self.dispatch, ctx, frame, userset.object, userset.relation, subject
                )
            )
        return await race(thunks, decisive=True)

    async def _tuple_to_userset(
        self,
        ctx: RequestContext,
        frame: Frame,
        expression: TupleToUserset,
        obj: ObjectRef,
        subject: SubjectRef,
    ) -> Outcome[bool]:
        linked_types = ctx.registry.linked_types(
            obj.type, expression.tupleset, expression.computed_relation
        )
        tuples = await ctx.reader.read(obj, expression.tupleset, subject_types=linked_types)

        thunks: list[CheckThunk] = [
            functools.partial(
                self.dispatch,
                ctx,
                frame,
                stored.subject.object,
                expression.computed_relation,
                subject,
            )
            for stored in tuples
            if not stored.subject.is_userset
        ]
        return await race(thunks, decisive=True)
