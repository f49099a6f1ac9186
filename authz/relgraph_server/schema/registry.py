"""
Type Registry for relgraph.

The TypeRegistry is the compiled, read-only form of an authorization model.
It provides:
- Lookup of types and relations by name
- The compiled expression for every (type, relation)
- Schema fingerprinting so caches never mix model versions
- A process-wide current registry that is swapped atomically

Invariants:
    - A TypeRegistry is immutable once constructed
    - Only compile_model() constructs registries from descriptions
    - Fingerprint changes when the model changes
    - Publishing a new registry never affects queries already running;
      they hold a reference to the registry they started with

How to change safely:
    - Compile and publish a new registry rather than editing one in place
    - Keep to_dict() deterministic (it feeds the fingerprint)

Example:
    >>> registry = compile_model(description)
    >>> publish_registry(registry)
    >>> get_registry().expression_for("document", "viewer")
    Union(children=(...))
"""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
import threading
from collections.abc import Iterator
from types import MappingProxyType
from typing import Any

from ..errors import UnknownRelation
from .types import Expression, RelationDef, TypeDef

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: TypeRegistry | None = None
_registry_lock = threading.Lock()
_versions = itertools.count(1)


class TypeRegistry:
    """Immutable registry of compiled types.

    Thread-safety:
        Lookups are lock-free; nothing mutates after __init__.

    Attributes:
        version: Process-local sequence number of this registry
        fingerprint: SHA-256 hash of the canonical model

    Example:
        >>> registry.get_type("document").name
        'document'
        >>> registry.has_relation("document", "viewer")
        True
    """

    def __init__(self, types: tuple[TypeDef, ...]) -> None:
        self._types = MappingProxyType({t.name: t for t in types})
        self._order = tuple(t.name for t in types)
        self._version = next(_versions)
        self._fingerprint = self._compute_fingerprint()

    @property
    def version(self) -> int:
        return self._version

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def types(self) -> Iterator[TypeDef]:
        """Iterate over types in declaration order."""
        for name in self._order:
            yield self._types[name]

    def get_type(self, name: str) -> TypeDef | None:
        return self._types.get(name)

    def has_relation(self, type_name: str, relation: str) -> bool:
        type_def = self._types.get(type_name)
        return type_def is not None and type_def.has_relation(relation)

    def get_relation(self, type_name: str, relation: str) -> RelationDef:
        """Get a relation definition.

        Raises:
            UnknownRelation: If the type or relation is not declared
        """
        type_def = self._types.get(type_name)
        if type_def is None:
            raise UnknownRelation(type_name)
        relation_def = type_def.get_relation(relation)
        if relation_def is None:
            raise UnknownRelation(type_name, relation)
        return relation_def

    def expression_for(self, type_name: str, relation: str) -> Expression:
        """Get the compiled expression for (type, relation).

        Raises:
            UnknownRelation: If the type or relation is not declared
        """
        return self.get_relation(type_name, relation).expression

    def types_defining(self, relation: str) -> frozenset[str]:
        """Names of all types that declare the given relation."""
        return frozenset(t.name for t in self.types() if t.has_relation(relation))

    def linked_types(self, type_name: str, tupleset: str, computed_relation: str) -> frozenset[str]:
        """Object types a tuple_to_userset follows from (type_name, tupleset).

        These are the plain subject types the tupleset accepts that also
        declare computed_relation; tuples naming any other subject type
        are never followed.

        Raises:
            UnknownRelation: If the tupleset is not declared
        """
        allowed = self.get_relation(type_name, tupleset).allowed
        plain = {a.type for a in allowed if a.relation is None}
        return frozenset(plain) & self.types_defining(computed_relation)

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the model.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict[str, Any]:
        return {"types": [t.to_dict() for t in self.types()]}

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    def __repr__(self) -> str:
        return (
            f"TypeRegistry(version={self._version}, types={list(self._order)}, "
            f"fingerprint={self._fingerprint[:19]}...)"
        )


def get_registry() -> TypeRegistry | None:
    """Get the currently published registry (None before first publish)."""
    with _registry_lock:
        return _global_registry


def publish_registry(registry: TypeRegistry) -> TypeRegistry | None:
    """Atomically replace the current registry.

    Args:
        registry: Newly compiled registry

    Returns:
        The registry that was replaced, if any
    """
    global _global_registry
    with _registry_lock:
        previous = _global_registry
        _global_registry = registry
    logger.info(
        "Published type registry",
        extra={
            "registry_version": registry.version,
            "fingerprint": registry.fingerprint,
            "previous_version": previous.version if previous else None,
        },
    )
    return previous


def reset_registry() -> None:
    """Reset the global registry (for testing only).

    Warning: This is intended for test cleanup only.
    Never use in production code.
    """
    global _global_registry
    with _registry_lock:
        _global_registry = None
