"""
Compiled type definitions for the relgraph model.

This module defines the strongly-typed relation graph the evaluator walks:
- AllowedSubject: A subject form a relation accepts ("user", "domain#member")
- Expression variants: Direct, ComputedRelation, TupleToUserset,
  Union, Intersection, Exclusion
- RelationDef: A named relation and its expression
- TypeDef: A named object type and its relations

Invariants:
    - All values are frozen; a compiled model is never mutated
    - Expressions only exist after compile_model() has validated them
    - Union and Intersection always hold at least one child

How to change safely:
    - New expression kinds need a compiler rule, a check rule and an
      expand rule before they can be used
    - Keep to_dict() output stable, it feeds the model fingerprint

Example:
    >>> viewer = RelationDef(
    ...     name="viewer",
    ...     expression=Union((
    ...         Direct((AllowedSubject("user"), AllowedSubject("domain", "member"))),
    ...         ComputedRelation("editor"),
    ...     )),
    ... )
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Union as TypingUnion


@dataclass(frozen=True)
class AllowedSubject:
    """A subject form accepted by a directly assignable relation.

    Attributes:
        type: Subject object type
        relation: Userset relation on that type, None for plain objects
    """

    type: str
    relation: str | None = None

    @classmethod
    def parse(cls, value: str) -> AllowedSubject:
        """Parse "type" or "type#relation"."""
        type_name, sep, relation = value.partition("#")
        if not type_name or (sep and not relation):
            raise ValueError(f"Invalid allowed subject: {value!r}")
        return cls(type=type_name, relation=relation or None)

    def __str__(self) -> str:
        if self.relation:
            return f"{self.type}#{self.relation}"
        return self.type


@dataclass(frozen=True)
class Direct:
    """Satisfied by tuples stored against the object/relation itself."""

    allowed: tuple[AllowedSubject, ...]

    def permits(self, type_name: str, relation: str | None) -> bool:
        """Whether a stored subject of this form may satisfy the relation."""
        return AllowedSubject(type_name, relation) in self.allowed

    def to_dict(self) -> dict[str, Any]:
        return {"this": [str(a) for a in self.allowed]}


@dataclass(frozen=True)
class ComputedRelation:
    """Reuse of another relation on the same object."""

    relation: str

    def to_dict(self) -> dict[str, Any]:
        return {"computed": self.relation}


@dataclass(frozen=True)
class TupleToUserset:
    """Evaluate computed_relation on every object reached via tupleset.

    Attributes:
        tupleset: Relation on this object that links to related objects
        computed_relation: Relation evaluated on each related object
    """

    tupleset: str
    computed_relation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tuple_to_userset": {
                "tupleset": self.tupleset,
                "computed": self.computed_relation,
            }
        }


@dataclass(frozen=True)
class Union:
    """True if any child is true."""

    children: tuple[Expression, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"union": [c.to_dict() for c in self.children]}


@dataclass(frozen=True)
class Intersection:
    """True only if every child is true."""

    children: tuple[Expression, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"intersection": [c.to_dict() for c in self.children]}


@dataclass(frozen=True)
class Exclusion:
    """True if base is true and subtract is false."""

    base: Expression
    subtract: Expression

    def to_dict(self) -> dict[str, Any]:
        return {
            "exclusion": {
                "base": self.base.to_dict(),
                "subtract": self.subtract.to_dict(),
            }
        }


Expression = TypingUnion[
    Direct, ComputedRelation, TupleToUserset, Union, Intersection, Exclusion
]


def walk_expression(expression: Expression) -> Iterator[Expression]:
    """Yield an expression and all of its descendants, depth first."""
    yield expression
    if isinstance(expression, (Union, Intersection)):
        for child in expression.children:
            yield from walk_expression(child)
    elif isinstance(expression, Exclusion):
        yield from walk_expression(expression.base)
        yield from walk_expression(expression.subtract)


@dataclass(frozen=True)
class RelationDef:
    """A named relation on a type.

    Attributes:
        name: Relation name, unique within its type
        expression: Compiled userset expression
        allowed: Subject forms accepted by direct assignment (empty if the
            relation cannot be written directly)
    """

    name: str
    expression: Expression
    allowed: tuple[AllowedSubject, ...] = ()

    @property
    def directly_assignable(self) -> bool:
        """Whether tuples may be stored against this relation."""
        return bool(self.allowed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "allowed": [str(a) for a in self.allowed],
            "expression": self.expression.to_dict(),
        }


@dataclass(frozen=True)
class TypeDef:
    """An object type and its ordered relations."""

    name: str
    relations: tuple[RelationDef, ...] = ()

    def get_relation(self, name: str) -> RelationDef | None:
        for relation in self.relations:
            if relation.name == name:
                return relation
        return None

    def has_relation(self, name: str) -> bool:
        return self.get_relation(name) is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "relations": [r.to_dict() for r in self.relations],
        }
