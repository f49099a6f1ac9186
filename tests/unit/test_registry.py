"""
Unit tests for the type registry.

Tests cover:
- Type and relation lookup
- Fingerprint generation
- Version numbering
- Publishing and resetting the process-wide registry
"""

import json
import threading

import pytest

from authz.relgraph_server.errors import UnknownRelation
from authz.relgraph_server.schema import (
    compile_model,
    get_registry,
    publish_registry,
    reset_registry,
)
from tests.conftest import load_example_model


class TestTypeRegistry:
    """Tests for TypeRegistry lookups."""

    def test_types_in_declaration_order(self, document_registry):
        """types() preserves the model's declaration order."""
        assert [t.name for t in document_registry.types()] == ["user", "domain", "document"]

    def test_get_type(self, document_registry):
        """Can look up types by name."""
        assert document_registry.get_type("document").name == "document"
        assert document_registry.get_type("folder") is None

    def test_has_relation(self, document_registry):
        """has_relation checks both type and relation."""
        assert document_registry.has_relation("document", "viewer")
        assert not document_registry.has_relation("document", "member")
        assert not document_registry.has_relation("folder", "viewer")

    def test_unknown_type_raises(self, document_registry):
        """Looking up an undeclared type raises UnknownRelation."""
        with pytest.raises(UnknownRelation, match="'folder'"):
            document_registry.expression_for("folder", "viewer")

    def test_unknown_relation_raises(self, document_registry):
        """Looking up an undeclared relation raises UnknownRelation."""
        with pytest.raises(UnknownRelation) as exc_info:
            document_registry.get_relation("document", "admin")

        assert exc_info.value.details == {"type": "document", "relation": "admin"}

    def test_types_defining(self, folder_registry):
        """types_defining finds every type declaring a relation."""
        assert folder_registry.types_defining("viewer") == frozenset({"folder", "document"})
        assert folder_registry.types_defining("member") == frozenset({"group"})
        assert folder_registry.types_defining("nothing") == frozenset()

    def test_linked_types(self, folder_registry):
        """linked_types intersects tupleset subjects with types defining the relation."""
        assert folder_registry.linked_types("document", "folder", "viewer") == frozenset({"folder"})
        assert folder_registry.linked_types("document", "audit_group", "member") == frozenset({"group"})
        assert folder_registry.linked_types("document", "audit_group", "viewer") == frozenset()

    def test_to_json(self, document_registry):
        """to_json produces the canonical model as JSON."""
        data = json.loads(document_registry.to_json())

        assert [t["name"] for t in data["types"]] == ["user", "domain", "document"]


class TestFingerprint:
    """Tests for fingerprints and versions."""

    def test_fingerprint_format(self, document_registry):
        """Fingerprint is a sha256 hash."""
        assert document_registry.fingerprint.startswith("sha256:")
        assert len(document_registry.fingerprint) == len("sha256:") + 64

    def test_fingerprint_is_deterministic(self):
        """Same model compiles to the same fingerprint."""
        first = compile_model(load_example_model("document_model.yaml"))
        second = compile_model(load_example_model("document_model.yaml"))

        assert first.fingerprint == second.fingerprint

    def test_fingerprint_changes_with_model(self, document_registry, folder_registry):
        """Different models have different fingerprints."""
        assert document_registry.fingerprint != folder_registry.fingerprint

    def test_versions_increase(self):
        """Every compiled registry gets a new, larger version."""
        first = compile_model(load_example_model("document_model.yaml"))
        second = compile_model(load_example_model("document_model.yaml"))

        assert second.version > first.version


class TestGlobalRegistry:
    """Tests for the process-wide registry holder."""

    def test_no_registry_before_publish(self):
        """get_registry returns None until a model is published."""
        assert get_registry() is None

    def test_publish_and_get(self, document_registry):
        """Published registry becomes current."""
        previous = publish_registry(document_registry)

        assert previous is None
        assert get_registry() is document_registry

    def test_publish_returns_previous(self, document_registry, folder_registry):
        """Publishing swaps registries and returns the old one."""
        publish_registry(document_registry)

        previous = publish_registry(folder_registry)

        assert previous is document_registry
        assert get_registry() is folder_registry

    def test_captured_registry_unaffected_by_swap(self, document_registry, folder_registry):
        """A reference taken before a swap still sees the old model."""
        publish_registry(document_registry)
        captured = get_registry()

        publish_registry(folder_registry)

        assert captured.has_relation("document", "commenter")
        assert not get_registry().has_relation("document", "commenter")

    def test_reset_registry(self, document_registry):
        """reset_registry clears the current registry."""
        publish_registry(document_registry)

        reset_registry()

        assert get_registry() is None

    def test_concurrent_publish(self):
        """Concurrent publishers always leave one complete registry in place."""
        registries = [
            compile_model(load_example_model("document_model.yaml")) for _ in range(8)
        ]
        threads = [threading.Thread(target=publish_registry, args=(r,)) for r in registries]

        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert get_registry() in registries
