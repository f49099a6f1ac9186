"""
YAML/JSON model description format for relgraph.

This module defines the structured input the model compiler consumes.
A textual schema DSL is parsed elsewhere; whatever parses it produces this
structure (or the equivalent YAML/JSON document).

Example model:
    types:
      - name: user
      - name: domain
        relations:
          - name: member
            allowed: [user]
      - name: document
        relations:
          - name: owner
            allowed: [user]
          - name: viewer
            allowed: [user, domain#member]
            rewrite:
              union:
                - this: {}
                - computed: owner

Rewrite nodes:
    this: {}                                   direct assignment
    computed: <relation>                       relation on the same object
    tuple_to_userset: {tupleset, computed}     relation on related objects
    union: [<node>, ...]
    intersection: [<node>, ...]
    exclusion: {base: <node>, subtract: <node>}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml

REWRITE_KEYS = {
    "this",
    "computed",
    "tuple_to_userset",
    "union",
    "intersection",
    "exclusion",
}


def _validate_rewrite(node: Any, where: str) -> list[str]:
    """Structural validation of one rewrite node (recursive)."""
    if not isinstance(node, dict) or len(node) != 1:
        return [f"{where}: rewrite node must be a mapping with exactly one key"]

    key, value = next(iter(node.items()))
    if key not in REWRITE_KEYS:
        return [f"{where}: unknown rewrite '{key}'. Valid: {sorted(REWRITE_KEYS)}"]

    errors: list[str] = []
    if key == "computed":
        if not isinstance(value, str) or not value:
            errors.append(f"{where}: 'computed' requires a relation name")
    elif key == "tuple_to_userset":
        if not isinstance(value, dict) or not value.get("tupleset") or not value.get("computed"):
            errors.append(f"{where}: 'tuple_to_userset' requires 'tupleset' and 'computed'")
    elif key in ("union", "intersection"):
        if not isinstance(value, list) or not value:
            errors.append(f"{where}: '{key}' requires a non-empty list")
        else:
            for i, child in enumerate(value):
                errors.extend(_validate_rewrite(child, f"{where}.{key}[{i}]"))
    elif key == "exclusion":
        if not isinstance(value, dict) or "base" not in value or "subtract" not in value:
            errors.append(f"{where}: 'exclusion' requires 'base' and 'subtract'")
        else:
            errors.extend(_validate_rewrite(value["base"], f"{where}.exclusion.base"))
            errors.extend(_validate_rewrite(value["subtract"], f"{where}.exclusion.subtract"))
    return errors


@dataclass
class RelationDescription:
    """Description of a single relation."""

    name: str
    allowed: list[str] = field(default_factory=list)
    rewrite: dict[str, Any] | None = None

    def validate(self, type_name: str) -> list[str]:
        """Validate the relation description."""
        where = f"{type_name}#{self.name}"
        errors = []
        if not self.name:
            errors.append(f"Type '{type_name}': relation name is required")
        if "#" in self.name or ":" in self.name:
            errors.append(f"{where}: relation name must not contain '#' or ':'")
        for subject in self.allowed:
            if not isinstance(subject, str) or not subject:
                errors.append(f"{where}: allowed subjects must be non-empty strings")
        if not self.allowed and self.rewrite is None:
            errors.append(f"{where}: relation needs 'allowed' subjects or a 'rewrite'")
        if self.rewrite is not None:
            errors.extend(_validate_rewrite(self.rewrite, where))
        return errors

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name}
        if self.allowed:
            d["allowed"] = list(self.allowed)
        if self.rewrite is not None:
            d["rewrite"] = self.rewrite
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelationDescription:
        return cls(
            name=data.get("name", ""),
            allowed=list(data.get("allowed") or []),
            rewrite=data.get("rewrite"),
        )


@dataclass
class TypeDescription:
    """Description of an object type."""

    name: str
    relations: list[RelationDescription] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Validate the type description."""
        errors = []
        if not self.name:
            errors.append("Type name is required")
        if "#" in self.name or ":" in self.name:
            errors.append(f"Type '{self.name}': name must not contain '#' or ':'")

        names = [r.name for r in self.relations]
        if len(names) != len(set(names)):
            errors.append(f"Type '{self.name}': duplicate relation names")

        for relation in self.relations:
            errors.extend(relation.validate(self.name))
        return errors

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name}
        if self.relations:
            d["relations"] = [r.to_dict() for r in self.relations]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TypeDescription:
        return cls(
            name=data.get("name", ""),
            relations=[RelationDescription.from_dict(r) for r in data.get("relations") or []],
        )


@dataclass
class ModelDescription:
    """Ordered list of type declarations."""

    types: list[TypeDescription] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Validate the complete model description.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        names = [t.name for t in self.types]
        seen: set[str] = set()
        for name in names:
            if name in seen:
                errors.append(f"Duplicate type name '{name}'")
            seen.add(name)

        for type_desc in self.types:
            errors.extend(type_desc.validate())
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {"types": [t.to_dict() for t in self.types]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelDescription:
        return cls(types=[TypeDescription.from_dict(t) for t in data.get("types") or []])


def load_model(content: str) -> ModelDescription:
    """Parse a model description from YAML or JSON text.

    Args:
        content: YAML or JSON document

    Returns:
        Parsed ModelDescription (not yet validated or compiled)

    Raises:
        ValueError: If the document cannot be parsed
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid model document: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Model document must be a mapping with a 'types' list")
    if not isinstance(data.get("types"), list):
        raise ValueError("Model document requires a 'types' list")

    return ModelDescription.from_dict(data)
