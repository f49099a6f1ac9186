"""
Schema module for relgraph.

This module provides the authorization model, including:
- Model description format (ModelDescription, load_model)
- Compiled relation expressions (Direct, ComputedRelation, ...)
- Model compiler (compile_model)
- Type registry and the process-wide current registry

Invariants:
    - Descriptions are untyped data; registries are compiled and immutable
    - Dangling references are compile errors, never query errors
    - A new model version is a new registry, published atomically

How to change safely:
    - Compile and publish a new registry; never mutate a published one
    - Add new rewrite kinds to model, compiler and both evaluators together
"""

from .compiler import compile_model
from .model import ModelDescription, RelationDescription, TypeDescription, load_model
from .registry import TypeRegistry, get_registry, publish_registry, reset_registry
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
)

__all__ = [
    # Description
    "ModelDescription",
    "TypeDescription",
    "RelationDescription",
    "load_model",
    # Compiled types
    "AllowedSubject",
    "Direct",
    "ComputedRelation",
    "TupleToUserset",
    "Union",
    "Intersection",
    "Exclusion",
    "Expression",
    "RelationDef",
    "TypeDef",
    # Compiler and registry
    "compile_model",
    "TypeRegistry",
    "get_registry",
    "publish_registry",
    "reset_registry",
]
