"""
Unit tests for tuple store backends.

Tests cover:
- String encodings of objects, subjects, tuples and snapshots
- Snapshot visibility (MVCC) on both backends
- Subject type filtering and reverse lookups
- Error surfaces (StoreUnavailable, InvalidSnapshot)
- Backend factory
"""

import asyncio
import os
import sqlite3

import pytest

from authz.relgraph_server.config import RelgraphConfig, StorageConfig, StoreBackend
from authz.relgraph_server.errors import InvalidSnapshot, StoreUnavailable
from authz.relgraph_server.store import (
    InMemoryTupleStore,
    ObjectRef,
    RelationTuple,
    Snapshot,
    SqliteTupleStore,
    SubjectRef,
    TupleStore,
    create_tuple_store,
)

DOC = ObjectRef("document", "doc1")
ACME = ObjectRef("domain", "acme")
ALICE = SubjectRef("user", "alice")


class TestEncodings:
    """Tests for the string forms of store values."""

    def test_object_parse(self):
        """type:id parses into ObjectRef."""
        assert ObjectRef.parse("document:doc1") == DOC
        assert str(DOC) == "document:doc1"

    @pytest.mark.parametrize("value", ["document", ":doc1", "document:", "domain:acme#member"])
    def test_object_parse_invalid(self, value):
        """Malformed objects are rejected."""
        with pytest.raises(ValueError):
            ObjectRef.parse(value)

    def test_subject_parse(self):
        """Subjects are concrete objects or usersets."""
        userset = SubjectRef.parse("domain:acme#member")

        assert SubjectRef.parse("user:alice") == ALICE
        assert not ALICE.is_userset
        assert userset.is_userset
        assert userset.object == ACME
        assert userset == SubjectRef.userset(ACME, "member")
        assert str(userset) == "domain:acme#member"

    def test_subject_parse_empty_relation(self):
        """A trailing '#' is not a userset."""
        with pytest.raises(ValueError):
            SubjectRef.parse("domain:acme#")

    def test_tuple_parse(self):
        """object#relation@subject parses into RelationTuple."""
        rt = RelationTuple.parse("document:doc1#viewer@domain:acme#member")

        assert rt.object == DOC
        assert rt.relation == "viewer"
        assert rt.subject == SubjectRef("domain", "acme", "member")
        assert str(rt) == "document:doc1#viewer@domain:acme#member"
        assert rt.to_dict() == {
            "object": "document:doc1",
            "relation": "viewer",
            "subject": "domain:acme#member",
        }

    @pytest.mark.parametrize("value", ["document:doc1#viewer", "document:doc1@user:alice"])
    def test_tuple_parse_invalid(self, value):
        """Tuples need both a relation and a subject."""
        with pytest.raises(ValueError):
            RelationTuple.parse(value)

    def test_snapshot_token(self):
        """Snapshot tokens are rev:<n>."""
        assert Snapshot(7).token == "rev:7"
        assert Snapshot.parse("rev:7") == Snapshot(7)
        assert Snapshot(3) < Snapshot(7)

    @pytest.mark.parametrize("token", ["7", "rev:", "rev:x", "snap:7"])
    def test_snapshot_parse_invalid(self, token):
        """Malformed tokens raise InvalidSnapshot."""
        with pytest.raises(InvalidSnapshot):
            Snapshot.parse(token)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each contract test runs against both backends."""
    if request.param == "memory":
        return InMemoryTupleStore()
    return SqliteTupleStore(str(tmp_path / "tuples.db"))


class TestTupleStoreContract:
    """Behaviour every TupleStore backend shares."""

    @pytest.mark.asyncio
    async def test_implements_protocol(self, store):
        """Backends satisfy the TupleStore protocol."""
        assert isinstance(store, TupleStore)

    @pytest.mark.asyncio
    async def test_empty_store_head(self, store):
        """A new store is at revision 0."""
        assert await store.head() == Snapshot(0)

    @pytest.mark.asyncio
    async def test_write_returns_new_revision(self, store):
        """Each batch commits one revision."""
        first = await store.write(["domain:acme#member@user:alice"])
        second = await store.write(["domain:acme#member@user:bob"])

        assert first == Snapshot(1)
        assert second == Snapshot(2)
        assert await store.head() == second

    @pytest.mark.asyncio
    async def test_read_at_snapshot(self, store):
        """Reads return exactly the tuples live at the snapshot."""
        snapshot = await store.write(
            [
                "domain:acme#member@user:bob",
                "domain:acme#member@user:alice",
                "document:doc1#viewer@domain:acme#member",
            ]
        )

        tuples = await store.read(ACME, "member", snapshot)

        assert [str(t) for t in tuples] == [
            "domain:acme#member@user:alice",
            "domain:acme#member@user:bob",
        ]

    @pytest.mark.asyncio
    async def test_old_snapshot_is_stable(self, store):
        """Later writes and deletes never change an earlier snapshot."""
        before = await store.write(["domain:acme#member@user:alice"])
        after = await store.write(
            inserts=["domain:acme#member@user:carol"],
            deletes=["domain:acme#member@user:alice"],
        )

        old = await store.read(ACME, "member", before)
        new = await store.read(ACME, "member", after)

        assert [t.subject for t in old] == [ALICE]
        assert [t.subject for t in new] == [SubjectRef("user", "carol")]

    @pytest.mark.asyncio
    async def test_reinsert_after_delete(self, store):
        """A deleted tuple can be written again at a later revision."""
        await store.write(["domain:acme#member@user:alice"])
        gone = await store.write(deletes=["domain:acme#member@user:alice"])
        back = await store.write(["domain:acme#member@user:alice"])

        assert await store.read(ACME, "member", gone) == []
        assert [t.subject for t in await store.read(ACME, "member", back)] == [ALICE]

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_noop(self, store):
        """Inserting a live tuple again does not duplicate it."""
        await store.write(["domain:acme#member@user:alice"])
        snapshot = await store.write(["domain:acme#member@user:alice"])

        assert len(await store.read(ACME, "member", snapshot)) == 1

    @pytest.mark.asyncio
    async def test_subject_type_filter(self, store):
        """subject_types restricts results to those subject types."""
        snapshot = await store.write(
            [
                "document:doc1#parent@domain:acme",
                "document:doc1#parent@user:alice",
            ]
        )

        tuples = await store.read(DOC, "parent", snapshot, subject_types=["domain"])
        nothing = await store.read(DOC, "parent", snapshot, subject_types=[])

        assert [t.subject for t in tuples] == [SubjectRef("domain", "acme")]
        assert nothing == []

    @pytest.mark.asyncio
    async def test_userset_and_concrete_subjects_distinct(self, store):
        """domain:acme and domain:acme#member are different subjects."""
        snapshot = await store.write(
            [
                "document:doc1#viewer@domain:acme",
                "document:doc1#viewer@domain:acme#member",
            ]
        )

        subjects = {t.subject for t in await store.read(DOC, "viewer", snapshot)}

        assert subjects == {SubjectRef("domain", "acme"), SubjectRef("domain", "acme", "member")}

    @pytest.mark.asyncio
    async def test_read_by_subject(self, store):
        """Reverse lookup finds tuples by exact subject."""
        snapshot = await store.write(
            [
                "document:doc1#viewer@user:alice",
                "document:doc2#editor@user:alice",
                "domain:acme#member@user:alice",
                "document:doc3#viewer@user:bob",
            ]
        )

        all_tuples = await store.read_by_subject(ALICE, snapshot)
        documents = await store.read_by_subject(ALICE, snapshot, object_type="document")
        viewers = await store.read_by_subject(ALICE, snapshot, relation="viewer")

        assert len(all_tuples) == 3
        assert {str(t.object) for t in documents} == {"document:doc1", "document:doc2"}
        assert [str(t) for t in viewers] == ["document:doc1#viewer@user:alice"]

    @pytest.mark.asyncio
    async def test_snapshot_ahead_of_head(self, store):
        """Reading a snapshot the store has not reached raises InvalidSnapshot."""
        await store.write(["domain:acme#member@user:alice"])

        with pytest.raises(InvalidSnapshot):
            await store.read(ACME, "member", Snapshot(5))


class TestInMemoryTupleStore:
    """Tests specific to InMemoryTupleStore."""

    @pytest.fixture
    def store(self):
        return InMemoryTupleStore()

    @pytest.mark.asyncio
    async def test_fail_reads(self, store):
        """fail_reads makes every read raise StoreUnavailable."""
        snapshot = await store.write(["domain:acme#member@user:alice"])
        store.fail_reads("backend down")

        with pytest.raises(StoreUnavailable, match="backend down"):
            await store.read(ACME, "member", snapshot)

        store.restore_reads()
        assert len(await store.read(ACME, "member", snapshot)) == 1

    @pytest.mark.asyncio
    async def test_fail_reads_for_one_pair(self, store):
        """fail_reads_for only breaks one (object, relation)."""
        snapshot = await store.write(
            ["domain:acme#member@user:alice", "document:doc1#viewer@user:alice"]
        )
        store.fail_reads_for(ACME, "member")

        with pytest.raises(StoreUnavailable):
            await store.read(ACME, "member", snapshot)
        assert len(await store.read(DOC, "viewer", snapshot)) == 1

    @pytest.mark.asyncio
    async def test_tuple_count(self, store):
        """tuple_count reports live tuples per snapshot."""
        first = await store.write(["domain:acme#member@user:alice", "domain:acme#member@user:bob"])
        await store.write(deletes=["domain:acme#member@user:bob"])

        assert store.tuple_count(first) == 2
        assert store.tuple_count() == 1

    @pytest.mark.asyncio
    async def test_read_count(self, store):
        """read_count counts every read call."""
        snapshot = await store.write(["domain:acme#member@user:alice"])

        await store.read(ACME, "member", snapshot)
        await store.read_by_subject(ALICE, snapshot)

        assert store.read_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_writes_get_distinct_revisions(self, store):
        """Concurrent batches are serialized into distinct revisions."""
        snapshots = await asyncio.gather(
            *(store.write([f"domain:acme#member@user:u{i}"]) for i in range(10))
        )

        assert sorted(s.revision for s in snapshots) == list(range(1, 11))
        assert store.tuple_count() == 10


class TestSqliteTupleStore:
    """Tests specific to SqliteTupleStore."""

    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "data" / "tuples.db")

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, db_path):
        """initialize() creates the file and schema."""
        store = SqliteTupleStore(db_path)

        await store.initialize()

        assert os.path.exists(db_path)
        with sqlite3.connect(db_path) as conn:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"tuples", "revisions", "schema_version"} <= tables

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, db_path):
        """A second store instance on the same file sees earlier writes."""
        snapshot = await SqliteTupleStore(db_path).write(["domain:acme#member@user:alice"])

        reopened = SqliteTupleStore(db_path)

        assert await reopened.head() == snapshot
        assert [t.subject for t in await reopened.read(ACME, "member", snapshot)] == [ALICE]

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_store_unavailable(self, tmp_path):
        """A path that cannot hold a database surfaces as StoreUnavailable."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        store = SqliteTupleStore(str(blocker / "tuples.db"))

        with pytest.raises(StoreUnavailable):
            await store.head()

    @pytest.mark.asyncio
    async def test_connection_setup_failure_raises_store_unavailable(self, db_path, monkeypatch):
        """A PRAGMA failing on a locked database surfaces as StoreUnavailable."""
        connections = []

        class LockedConnection:
            row_factory = None
            closed = False

            def execute(self, sql, *args):
                raise sqlite3.OperationalError("database is locked")

            def close(self):
                self.closed = True

        def connect(*args, **kwargs):
            connections.append(LockedConnection())
            return connections[-1]

        monkeypatch.setattr(sqlite3, "connect", connect)
        store = SqliteTupleStore(db_path)

        with pytest.raises(StoreUnavailable) as exc_info:
            await store.head()

        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert "database is locked" in str(exc_info.value)
        assert connections and all(c.closed for c in connections)

    @pytest.mark.asyncio
    async def test_without_wal_mode(self, db_path):
        """The store works with WAL mode disabled."""
        store = SqliteTupleStore(db_path, wal_mode=False)

        snapshot = await store.write(["domain:acme#member@user:alice"])

        assert len(await store.read(ACME, "member", snapshot)) == 1


class TestCreateTupleStore:
    """Tests for the backend factory."""

    def test_memory_backend(self):
        """MEMORY config creates an InMemoryTupleStore."""
        store = create_tuple_store(RelgraphConfig(store_backend=StoreBackend.MEMORY))

        assert isinstance(store, InMemoryTupleStore)

    def test_sqlite_backend(self, tmp_path):
        """SQLITE config creates a store at the configured path."""
        config = RelgraphConfig(
            store_backend=StoreBackend.SQLITE,
            storage=StorageConfig(data_dir=str(tmp_path), db_name="authz.db", wal_mode=False),
        )

        store = create_tuple_store(config)

        assert isinstance(store, SqliteTupleStore)
        assert str(store.db_path) == os.path.join(str(tmp_path), "authz.db")
        assert store.wal_mode is False
