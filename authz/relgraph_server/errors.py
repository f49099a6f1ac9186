"""
Error types for the relgraph evaluator.

This module defines every exception the evaluator raises:
- RelgraphError: Base exception
- CompileError: Model references an undefined type or relation (load time)
- DepthExceeded: Recursion ceiling hit while walking tuples
- DeadlineExceeded: Query ran past its deadline
- StoreUnavailable: Tuple store read failed
- InvalidSnapshot: Snapshot token cannot be served by the store
- UnknownRelation: Query names a type/relation the model does not declare

Invariants:
    - All errors inherit from RelgraphError
    - CompileError is only raised while compiling, never by queries
    - StoreUnavailable is never converted into a "denied" answer
"""

from __future__ import annotations

from typing import Any


class RelgraphError(Exception):
    """Base exception for all relgraph errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RELGRAPH_ERROR"
        self.details = details or {}


class CompileError(RelgraphError):
    """Model description failed to compile.

    Attributes:
        declaration: The offending declaration, e.g. "document#viewer"
    """

    def __init__(
        self,
        message: str,
        declaration: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "COMPILE_ERROR",
            details={"declaration": declaration},
        )
        self.declaration = declaration


class UndefinedType(CompileError):
    """A declaration references a type that is not declared."""

    def __init__(self, type_name: str, declaration: str) -> None:
        super().__init__(
            f"{declaration}: undefined type '{type_name}'",
            declaration=declaration,
            code="UNDEFINED_TYPE",
        )
        self.type_name = type_name


class UndefinedRelation(CompileError):
    """A declaration references a relation that is not declared."""

    def __init__(self, type_name: str, relation: str, declaration: str) -> None:
        super().__init__(
            f"{declaration}: undefined relation '{type_name}#{relation}'",
            declaration=declaration,
            code="UNDEFINED_RELATION",
        )
        self.type_name = type_name
        self.relation = relation


class InvalidRewrite(CompileError):
    """A rewrite expression is structurally invalid."""

    def __init__(self, reason: str, declaration: str) -> None:
        super().__init__(
            f"{declaration}: invalid rewrite: {reason}",
            declaration=declaration,
            code="INVALID_REWRITE",
        )
        self.reason = reason


class DepthExceeded(RelgraphError):
    """Evaluation recursed deeper than the configured ceiling."""

    def __init__(self, max_depth: int, object_ref: str, relation: str) -> None:
        super().__init__(
            f"Maximum recursion depth {max_depth} exceeded at {object_ref}#{relation}",
            code="DEPTH_EXCEEDED",
            details={"max_depth": max_depth, "object": object_ref, "relation": relation},
        )
        self.max_depth = max_depth


class DeadlineExceeded(RelgraphError):
    """Query did not finish before its deadline."""

    def __init__(self, deadline_ms: float) -> None:
        super().__init__(
            f"Query exceeded its deadline of {deadline_ms:g}ms",
            code="DEADLINE_EXCEEDED",
            details={"deadline_ms": deadline_ms},
        )
        self.deadline_ms = deadline_ms


class StoreUnavailable(RelgraphError):
    """Tuple store read failed.

    Raised when:
    - The backend cannot be reached
    - The backend returns an error for a read
    """

    def __init__(self, message: str, backend: str | None = None) -> None:
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            details={"backend": backend},
        )
        self.backend = backend


class InvalidSnapshot(RelgraphError):
    """Snapshot token is malformed or ahead of the store."""

    def __init__(self, message: str, token: str | None = None) -> None:
        super().__init__(
            message,
            code="INVALID_SNAPSHOT",
            details={"token": token},
        )
        self.token = token


class UnknownRelation(RelgraphError):
    """Query names a type or relation the compiled model does not declare."""

    def __init__(self, type_name: str, relation: str | None = None) -> None:
        target = f"{type_name}#{relation}" if relation else type_name
        super().__init__(
            f"Model does not declare '{target}'",
            code="UNKNOWN_RELATION",
            details={"type": type_name, "relation": relation},
        )
        self.type_name = type_name
        self.relation = relation
