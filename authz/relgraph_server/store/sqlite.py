"""
SQLite tuple store for relgraph.

This module keeps relationship tuples in a single SQLite database with
multi-version rows, so every historical snapshot stays readable:
- Each write batch allocates one revision in the revisions table
- Inserting a tuple records created_rev
- Deleting a tuple sets deleted_rev on its live row

Invariants:
    - A row is visible at S iff created_rev <= S and (deleted_rev IS NULL
      or deleted_rev > S)
    - At most one live row per tuple
    - All write batches are atomic (single transaction)
    - Every sqlite3 failure on read surfaces as StoreUnavailable

How to change safely:
    - Schema migrations must be backward compatible
    - Keep the visibility predicate identical in every query
    - Use transactions for all write operations

Table schema:
    tuples:
        - object_type TEXT
        - object_id TEXT
        - relation TEXT
        - subject_type TEXT
        - subject_id TEXT
        - subject_relation TEXT ('' for concrete subjects)
        - created_rev INTEGER
        - deleted_rev INTEGER NULL
        - INDEX on (object_type, object_id, relation, created_rev)
        - INDEX on (subject_type, subject_id, subject_relation)

    revisions:
        - revision INTEGER PRIMARY KEY
        - committed_at INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import InvalidSnapshot, StoreUnavailable
from .base import ObjectRef, RelationTuple, Snapshot, SubjectRef

logger = logging.getLogger(__name__)

_VISIBLE = "created_rev <= ? AND (deleted_rev IS NULL OR deleted_rev > ?)"


def _as_tuple(value: RelationTuple | str) -> RelationTuple:
    if isinstance(value, RelationTuple):
        return value
    return RelationTuple.parse(value)


def _row_to_tuple(row: sqlite3.Row) -> RelationTuple:
    return RelationTuple(
        object=ObjectRef(row["object_type"], row["object_id"]),
        relation=row["relation"],
        subject=SubjectRef(
            row["subject_type"],
            row["subject_id"],
            row["subject_relation"] or None,
        ),
    )


class SqliteTupleStore:
    """SQLite-backed multi-version tuple store.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteTupleStore("/var/lib/relgraph/tuples.db")
        >>> await store.initialize()
        >>> snapshot = await store.write(["document:doc1#owner@user:bob"])
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StoreUnavailable: If the database cannot be opened or configured
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"Cannot open tuple database: {e}", backend="sqlite") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            conn.close()
            raise StoreUnavailable(f"Cannot configure tuple database: {e}", backend="sqlite") from e

        try:
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS revisions (
                revision INTEGER PRIMARY KEY,
                committed_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tuples (
                object_type TEXT NOT NULL,
                object_id TEXT NOT NULL,
                relation TEXT NOT NULL,
                subject_type TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                subject_relation TEXT NOT NULL DEFAULT '',
                created_rev INTEGER NOT NULL,
                deleted_rev INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_tuples_object
                ON tuples(object_type, object_id, relation, created_rev);
            CREATE INDEX IF NOT EXISTS idx_tuples_subject
                ON tuples(subject_type, subject_id, subject_relation);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_tuples_live
                ON tuples(object_type, object_id, relation,
                          subject_type, subject_id, subject_relation)
                WHERE deleted_rev IS NULL;

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            try:
                self._create_schema(conn)
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot create schema: {e}", backend="sqlite") from e
        self._initialized = True
        logger.info(f"Initialized tuple database: {self.db_path}")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    def _head_revision(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(revision), 0) AS head FROM revisions").fetchone()
        return int(row["head"])

    async def head(self) -> Snapshot:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            try:
                return Snapshot(self._head_revision(conn))
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot read head revision: {e}", backend="sqlite") from e

    async def write(
        self,
        inserts: Iterable[RelationTuple | str] = (),
        deletes: Iterable[RelationTuple | str] = (),
    ) -> Snapshot:
        """Apply a batch of inserts and deletes as one new revision.

        Returns:
            Snapshot at which the batch is visible
        """
        await self._ensure_initialized()
        insert_list = [_as_tuple(v) for v in inserts]
        delete_list = [_as_tuple(v) for v in deletes]

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                revision = self._head_revision(conn) + 1
                conn.execute(
                    "INSERT INTO revisions (revision, committed_at) VALUES (?, ?)",
                    (revision, int(time.time() * 1000)),
                )

                for rt in delete_list:
                    conn.execute(
                        """
                        UPDATE tuples SET deleted_rev = ?
                        WHERE object_type = ? AND object_id = ? AND relation = ?
                          AND subject_type = ? AND subject_id = ? AND subject_relation = ?
                          AND deleted_rev IS NULL
                        """,
                        (revision, *self._key(rt)),
                    )

                for rt in insert_list:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO tuples (object_type, object_id, relation,
                                                      subject_type, subject_id,
                                                      subject_relation, created_rev)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (*self._key(rt), revision),
                    )

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Committed tuple batch",
            extra={
                "revision": revision,
                "inserts": len(insert_list),
                "deletes": len(delete_list),
            },
        )
        return Snapshot(revision)

    @staticmethod
    def _key(rt: RelationTuple) -> tuple[str, str, str, str, str, str]:
        return (
            rt.object.type,
            rt.object.id,
            rt.relation,
            rt.subject.type,
            rt.subject.id,
            rt.subject.relation or "",
        )

    def _check_snapshot(self, conn: sqlite3.Connection, snapshot: Snapshot) -> None:
        head = self._head_revision(conn)
        if snapshot.revision > head:
            raise InvalidSnapshot(
                f"Snapshot {snapshot} is ahead of store head rev:{head}",
                token=snapshot.token,
            )

    async def read(
        self,
        obj: ObjectRef,
        relation: str,
        snapshot: Snapshot,
        subject_types: Iterable[str] | None = None,
    ) -> list[RelationTuple]:
        await self._ensure_initialized()
        sql = f"""
            SELECT * FROM tuples
            WHERE object_type = ? AND object_id = ? AND relation = ? AND {_VISIBLE}
        """
        params: list[object] = [obj.type, obj.id, relation, snapshot.revision, snapshot.revision]

        if subject_types is not None:
            types = sorted(set(subject_types))
            if not types:
                return []
            sql += f" AND subject_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)

        sql += " ORDER BY subject_type, subject_id, subject_relation"

        with self._get_connection() as conn:
            try:
                self._check_snapshot(conn, snapshot)
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(
                    f"Read of {obj}#{relation} failed: {e}", backend="sqlite"
                ) from e

        return [_row_to_tuple(row) for row in rows]

    async def read_by_subject(
        self,
        subject: SubjectRef,
        snapshot: Snapshot,
        object_type: str | None = None,
        relation: str | None = None,
    ) -> list[RelationTuple]:
        await self._ensure_initialized()
        sql = f"""
            SELECT * FROM tuples
            WHERE subject_type = ? AND subject_id = ? AND subject_relation = ? AND {_VISIBLE}
        """
        params: list[object] = [
            subject.type,
            subject.id,
            subject.relation or "",
            snapshot.revision,
            snapshot.revision,
        ]
        if object_type is not None:
            sql += " AND object_type = ?"
            params.append(object_type)
        if relation is not None:
            sql += " AND relation = ?"
            params.append(relation)
        sql += " ORDER BY object_type, object_id, relation"

        with self._get_connection() as conn:
            try:
                self._check_snapshot(conn, snapshot)
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(
                    f"Reverse read of {subject} failed: {e}", backend="sqlite"
                ) from e

        return [_row_to_tuple(row) for row in rows]
