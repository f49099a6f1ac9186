"""
Model compiler for relgraph.

Turns a ModelDescription into an immutable TypeRegistry. Everything the
evaluator relies on is checked here so queries never re-validate:
- Every referenced type exists
- Every computed relation exists on the same type
- Every tuple_to_userset tupleset links to at least one type that defines
  the computed relation
- Direct assignment ("this") and allowed subjects agree
- Computed relations within a type do not form a cycle

Invariants:
    - Compilation is all-or-nothing: any error raises, no registry escapes
    - Compilation is not on the query hot path

How to change safely:
    - New rewrite kinds need a rule in _compile_node and a test for the
      error they raise on bad input
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import CompileError, InvalidRewrite, UndefinedRelation, UndefinedType
from .model import ModelDescription, RelationDescription
from .registry import TypeRegistry
from .types import (
    AllowedSubject,
    ComputedRelation,
    Direct,
    Exclusion,
    Expression,
    Intersection,
    RelationDef,
    TupleToUserset,
    TypeDef,
    Union,
    walk_expression,
)

logger = logging.getLogger(__name__)


class _ModelCompiler:
    """Single-use compiler state for one description."""

    def __init__(self, description: ModelDescription) -> None:
        self.description = description
        self.relations: dict[str, dict[str, RelationDescription]] = {
            t.name: {r.name: r for r in t.relations} for t in description.types
        }
        self.allowed: dict[tuple[str, str], tuple[AllowedSubject, ...]] = {}

    def compile(self) -> TypeRegistry:
        errors = self.description.validate()
        if errors:
            raise CompileError(
                f"Invalid model description: {'; '.join(errors)}",
                declaration=None,
            )

        for type_desc in self.description.types:
            for relation in type_desc.relations:
                declaration = f"{type_desc.name}#{relation.name}"
                self.allowed[(type_desc.name, relation.name)] = self._compile_allowed(
                    relation.allowed, declaration
                )

        types = []
        for type_desc in self.description.types:
            relation_defs = tuple(
                self._compile_relation(type_desc.name, relation)
                for relation in type_desc.relations
            )
            self._check_acyclic(type_desc.name, relation_defs)
            types.append(TypeDef(name=type_desc.name, relations=relation_defs))

        registry = TypeRegistry(tuple(types))
        logger.info(
            f"Compiled model with {len(types)} types, fingerprint={registry.fingerprint}"
        )
        return registry

    def _compile_allowed(
        self, allowed: list[str], declaration: str
    ) -> tuple[AllowedSubject, ...]:
        result = []
        for value in allowed:
            try:
                subject = AllowedSubject.parse(value)
            except ValueError as e:
                raise InvalidRewrite(str(e), declaration) from e
            if subject.type not in self.relations:
                raise UndefinedType(subject.type, declaration)
            if subject.relation and subject.relation not in self.relations[subject.type]:
                raise UndefinedRelation(subject.type, subject.relation, declaration)
            if subject not in result:
                result.append(subject)
        return tuple(result)

    def _compile_relation(self, type_name: str, relation: RelationDescription) -> RelationDef:
        declaration = f"{type_name}#{relation.name}"
        allowed = self.allowed[(type_name, relation.name)]

        if relation.rewrite is None:
            expression: Expression = Direct(allowed)
        else:
            expression = self._compile_node(relation.rewrite, type_name, allowed, declaration)
            has_direct = any(isinstance(e, Direct) for e in walk_expression(expression))
            if allowed and not has_direct:
                raise InvalidRewrite(
                    "allowed subjects declared but rewrite never uses 'this'", declaration
                )

        return RelationDef(name=relation.name, expression=expression, allowed=allowed)

    def _compile_node(
        self,
        node: dict[str, Any],
        type_name: str,
        allowed: tuple[AllowedSubject, ...],
        declaration: str,
    ) -> Expression:
        key, value = next(iter(node.items()))

        if key == "this":
            if not allowed:
                raise InvalidRewrite("'this' requires allowed subjects", declaration)
            return Direct(allowed)

        if key == "computed":
            if value not in self.relations[type_name]:
                raise UndefinedRelation(type_name, value, declaration)
            return ComputedRelation(value)

        if key == "tuple_to_userset":
            return self._compile_tuple_to_userset(
                type_name, value["tupleset"], value["computed"], declaration
            )

        if key == "union":
            return Union(
                tuple(self._compile_node(c, type_name, allowed, declaration) for c in value)
            )

        if key == "intersection":
            return Intersection(
                tuple(self._compile_node(c, type_name, allowed, declaration) for c in value)
            )

        if key == "exclusion":
            return Exclusion(
                base=self._compile_node(value["base"], type_name, allowed, declaration),
                subtract=self._compile_node(value["subtract"], type_name, allowed, declaration),
            )

        raise InvalidRewrite(f"unknown rewrite '{key}'", declaration)

    def _compile_tuple_to_userset(
        self,
        type_name: str,
        tupleset: str,
        computed: str,
        declaration: str,
    ) -> TupleToUserset:
        if tupleset not in self.relations[type_name]:
            raise UndefinedRelation(type_name, tupleset, declaration)

        tupleset_allowed = self.allowed[(type_name, tupleset)]
        if not tupleset_allowed:
            raise InvalidRewrite(
                f"tupleset '{tupleset}' is not directly assignable", declaration
            )

        # Only plain object subjects are followed through a tupleset
        linked_types = [a.type for a in tupleset_allowed if a.relation is None]
        if not any(computed in self.relations[t] for t in linked_types):
            raise InvalidRewrite(
                f"no type reachable through '{tupleset}' ({', '.join(linked_types) or 'none'}) "
                f"defines '{computed}'",
                declaration,
            )
        return TupleToUserset(tupleset=tupleset, computed_relation=computed)

    def _check_acyclic(self, type_name: str, relations: tuple[RelationDef, ...]) -> None:
        """Reject computed-relation cycles within one type."""
        edges = {
            r.name: [
                e.relation
                for e in walk_expression(r.expression)
                if isinstance(e, ComputedRelation)
            ]
            for r in relations
        }

        done: set[str] = set()

        def visit(name: str, stack: list[str]) -> None:
            if name in done:
                return
            if name in stack:
                cycle = " -> ".join(stack[stack.index(name):] + [name])
                raise InvalidRewrite(
                    f"computed relations form a cycle: {cycle}",
                    f"{type_name}#{stack[-1]}",
                )
            stack.append(name)
            for target in edges.get(name, ()):
                visit(target, stack)
            stack.pop()
            done.add(name)

        for relation in relations:
            visit(relation.name, [])


def compile_model(description: ModelDescription) -> TypeRegistry:
    """Compile a model description into a TypeRegistry.

    Args:
        description: Parsed model description

    Returns:
        Immutable TypeRegistry

    Raises:
        UndefinedType: A declaration references an undeclared type
        UndefinedRelation: A declaration references an undeclared relation
        InvalidRewrite: A rewrite is structurally or semantically invalid
        CompileError: The description itself is malformed
    """
    return _ModelCompiler(description).compile()
