"""
Base protocol and types for the tuple store abstraction.

This module defines the TupleStore protocol every backend implements,
along with the value types shared by the store and the evaluator:
ObjectRef, SubjectRef, RelationTuple and Snapshot.

Invariants:
    - The evaluator only reads; writes belong to the external store owner
    - A read at snapshot S never observes writes committed after S
    - Reads at the same snapshot always return the same tuples
    - Backend failures surface as StoreUnavailable, never as empty results

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the string encodings stable; they are part of the API
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import InvalidSnapshot

if TYPE_CHECKING:
    from ..config import RelgraphConfig


@dataclass(frozen=True, order=True)
class ObjectRef:
    """An object, written "type:id".

    Attributes:
        type: Object type name
        id: Object identifier
    """

    type: str
    id: str

    @classmethod
    def parse(cls, value: str) -> ObjectRef:
        """Parse an object string.

        Args:
            value: String like "document:doc1"

        Returns:
            Parsed ObjectRef

        Raises:
            ValueError: If format is invalid
        """
        type_name, sep, object_id = value.partition(":")
        if not sep or not type_name or not object_id or "#" in value:
            raise ValueError(f"Invalid object format: {value!r}")
        return cls(type=type_name, id=object_id)

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class SubjectRef:
    """A subject: a concrete object, or a userset "type:id#relation".

    Attributes:
        type: Subject object type
        id: Subject object identifier
        relation: Userset relation, None for a concrete subject
    """

    type: str
    id: str
    relation: str | None = None

    @classmethod
    def parse(cls, value: str) -> SubjectRef:
        """Parse a subject string.

        Args:
            value: String like "user:alice" or "domain:acme#member"

        Raises:
            ValueError: If format is invalid
        """
        object_part, sep, relation = value.partition("#")
        if sep and not relation:
            raise ValueError(f"Invalid subject format: {value!r}")
        obj = ObjectRef.parse(object_part)
        return cls(type=obj.type, id=obj.id, relation=relation or None)

    @classmethod
    def userset(cls, obj: ObjectRef, relation: str) -> SubjectRef:
        return cls(type=obj.type, id=obj.id, relation=relation)

    @property
    def object(self) -> ObjectRef:
        return ObjectRef(self.type, self.id)

    @property
    def is_userset(self) -> bool:
        return self.relation is not None

    def __str__(self) -> str:
        if self.relation:
            return f"{self.type}:{self.id}#{self.relation}"
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class RelationTuple:
    """A stored fact "object#relation@subject"."""

    object: ObjectRef
    relation: str
    subject: SubjectRef

    @classmethod
    def parse(cls, value: str) -> RelationTuple:
        """Parse "document:doc1#viewer@domain:acme#member".

        Raises:
            ValueError: If format is invalid
        """
        left, sep, subject = value.partition("@")
        object_part, sep2, relation = left.partition("#")
        if not sep or not sep2 or not relation:
            raise ValueError(f"Invalid tuple format: {value!r}")
        return cls(
            object=ObjectRef.parse(object_part),
            relation=relation,
            subject=SubjectRef.parse(subject),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "object": str(self.object),
            "relation": self.relation,
            "subject": str(self.subject),
        }

    def __str__(self) -> str:
        return f"{self.object}#{self.relation}@{self.subject}"


@dataclass(frozen=True, order=True)
class Snapshot:
    """Point-in-time view of the tuple store.

    The token is opaque to callers; internally it is the store revision
    whose writes are visible.
    """

    revision: int

    @property
    def token(self) -> str:
        return f"rev:{self.revision}"

    @classmethod
    def parse(cls, token: str) -> Snapshot:
        """Parse a snapshot token.

        Raises:
            InvalidSnapshot: If the token is malformed
        """
        prefix, sep, revision = token.partition(":")
        if prefix != "rev" or not sep or not revision.isdigit():
            raise InvalidSnapshot(f"Malformed snapshot token: {token!r}", token=token)
        return cls(int(revision))

    def __str__(self) -> str:
        return self.token


@runtime_checkable
class TupleStore(Protocol):
    """Protocol for tuple store backends.

    Consistency contract:
        - read() at snapshot S returns exactly the tuples live at revision S
        - Reads at an old snapshot stay valid while later writes happen
        - Read-your-writes is guaranteed within one snapshot only

    Example:
        >>> snapshot = await store.head()
        >>> tuples = await store.read(ObjectRef("document", "doc1"), "viewer", snapshot)
    """

    @abstractmethod
    async def head(self) -> Snapshot:
        """Snapshot covering every committed write."""
        ...

    @abstractmethod
    async def read(
        self,
        obj: ObjectRef,
        relation: str,
        snapshot: Snapshot,
        subject_types: Iterable[str] | None = None,
    ) -> list[RelationTuple]:
        """Read tuples stored against (obj, relation).

        Args:
            obj: Object to read
            relation: Relation to read
            snapshot: Consistency snapshot
            subject_types: If given, only return subjects of these types

        Returns:
            Matching tuples in a deterministic order

        Raises:
            StoreUnavailable: If the backend read fails
            InvalidSnapshot: If the snapshot is ahead of the store
        """
        ...

    @abstractmethod
    async def read_by_subject(
        self,
        subject: SubjectRef,
        snapshot: Snapshot,
        object_type: str | None = None,
        relation: str | None = None,
    ) -> list[RelationTuple]:
        """Reverse lookup: tuples whose subject is exactly `subject`.

        Raises:
            StoreUnavailable: If the backend read fails
            InvalidSnapshot: If the snapshot is ahead of the store
        """
        ...


def create_tuple_store(config: RelgraphConfig) -> TupleStore:
    """Factory function to create a tuple store from configuration.

    Args:
        config: relgraph configuration

    Returns:
        Appropriate TupleStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryTupleStore
    from .sqlite import SqliteTupleStore

    if config.store_backend == StoreBackend.MEMORY:
        return InMemoryTupleStore()
    elif config.store_backend == StoreBackend.SQLITE:
        return SqliteTupleStore(
            config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
