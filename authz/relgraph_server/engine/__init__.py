"""
Evaluation engine for relgraph.

This module provides the query side of the evaluator:
- CheckEvaluator: boolean membership (Check)
- ExpandEvaluator: userset enumeration (Expand)
- QueryCache: memoisation and in-flight de-duplication of sub-queries
- RequestContext / Frame: request-scoped and path-scoped state

Invariants:
    - Registries and compiled expressions are only read, never mutated
    - Per-path state travels in Frames, never in shared mutable state
    - The cache is a pure performance layer
"""

from .cache import CacheStats, InflightEntry, QueryCache, Resolution
from .check import CheckEvaluator
from .context import Frame, Outcome, RequestContext, ResolutionMetadata
from .expand import ExpandEvaluator, NodeKind, UsersetTree, resolve_subjects

__all__ = [
    # Evaluators
    "CheckEvaluator",
    "ExpandEvaluator",
    # Expand results
    "UsersetTree",
    "NodeKind",
    "resolve_subjects",
    # Cache
    "QueryCache",
    "CacheStats",
    "InflightEntry",
    "Resolution",
    # Context
    "RequestContext",
    "ResolutionMetadata",
    "Frame",
    "Outcome",
]
