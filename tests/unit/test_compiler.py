"""
Unit tests for the model compiler.

Tests cover:
- Compiling rewrites into typed expressions
- Dangling type and relation references
- tuple_to_userset linkage rules
- 'this' / allowed agreement
- Computed relation cycles
"""

import pytest

from authz.relgraph_server.errors import (
    CompileError,
    InvalidRewrite,
    UndefinedRelation,
    UndefinedType,
)
from authz.relgraph_server.schema import (
    AllowedSubject,
    ComputedRelation,
    Direct,
    Exclusion,
    Intersection,
    TupleToUserset,
    Union,
    compile_model,
    get_registry,
    load_model,
)
from authz.relgraph_server.schema.model import (
    ModelDescription,
    RelationDescription,
    TypeDescription,
)


def model_with(*relations, extra_types=()):
    """Model with user, group(member) and a doc type holding `relations`."""
    return ModelDescription(
        types=[
            TypeDescription("user"),
            TypeDescription("group", [RelationDescription("member", allowed=["user", "group#member"])]),
            *extra_types,
            TypeDescription("doc", list(relations)),
        ]
    )


class TestCompileExpressions:
    """Tests for successful compilation."""

    def test_plain_relation_is_direct(self, document_registry):
        """A relation without rewrite compiles to Direct over its allowed subjects."""
        expression = document_registry.expression_for("document", "viewer")

        assert expression == Direct(
            (AllowedSubject("user"), AllowedSubject("domain", "member"))
        )

    def test_rewrites_compile_to_typed_nodes(self, folder_registry):
        """Every rewrite kind becomes its expression class."""
        viewer = folder_registry.expression_for("document", "viewer")
        reader = folder_registry.expression_for("document", "reader")
        auditor = folder_registry.expression_for("document", "auditor")

        assert isinstance(viewer, Union)
        assert isinstance(viewer.children[0], Direct)
        assert viewer.children[1] == ComputedRelation("editor")
        assert viewer.children[2] == TupleToUserset("folder", "viewer")
        assert reader == Exclusion(ComputedRelation("viewer"), ComputedRelation("blocked"))
        assert auditor == Intersection(
            (ComputedRelation("viewer"), TupleToUserset("audit_group", "member"))
        )

    def test_allowed_subjects_recorded(self, folder_registry):
        """Relation definitions keep their allowed subject forms."""
        editor = folder_registry.get_relation("document", "editor")
        reader = folder_registry.get_relation("document", "reader")

        assert editor.allowed == (AllowedSubject("user"), AllowedSubject("group", "member"))
        assert editor.directly_assignable
        assert not reader.directly_assignable

    def test_duplicate_allowed_subjects_collapse(self):
        """Listing the same subject form twice is harmless."""
        registry = compile_model(
            model_with(RelationDescription("viewer", allowed=["user", "user"]))
        )

        assert registry.get_relation("doc", "viewer").allowed == (AllowedSubject("user"),)

    def test_compile_does_not_publish(self, document_registry):
        """Compiling never changes the process-wide registry."""
        assert get_registry() is None

    def test_instance_level_cycles_allowed(self):
        """Self-referencing usersets (groups of groups) compile fine."""
        registry = compile_model(model_with())

        assert registry.has_relation("group", "member")


class TestCompileErrors:
    """Tests for compile failures."""

    def test_undefined_allowed_type(self):
        """An allowed subject of an undeclared type fails."""
        with pytest.raises(UndefinedType) as exc_info:
            compile_model(model_with(RelationDescription("viewer", allowed=["team"])))

        assert exc_info.value.declaration == "doc#viewer"
        assert exc_info.value.type_name == "team"
        assert exc_info.value.code == "UNDEFINED_TYPE"

    def test_undefined_allowed_relation(self):
        """An allowed userset naming an undeclared relation fails."""
        with pytest.raises(UndefinedRelation, match="group#admin"):
            compile_model(model_with(RelationDescription("viewer", allowed=["group#admin"])))

    def test_undefined_computed_relation(self):
        """A computed relation must exist on the same type."""
        relation = RelationDescription(
            "viewer",
            allowed=["user"],
            rewrite={"union": [{"this": {}}, {"computed": "editor"}]},
        )

        with pytest.raises(UndefinedRelation) as exc_info:
            compile_model(model_with(relation))

        assert exc_info.value.declaration == "doc#viewer"
        assert exc_info.value.relation == "editor"

    def test_undefined_tupleset(self):
        """A tuple_to_userset tupleset must exist on the same type."""
        relation = RelationDescription(
            "viewer",
            rewrite={"tuple_to_userset": {"tupleset": "parent", "computed": "member"}},
        )

        with pytest.raises(UndefinedRelation, match="doc#parent"):
            compile_model(model_with(relation))

    def test_tupleset_must_link_to_type_defining_computed(self):
        """No type reachable through the tupleset defines the computed relation."""
        model = model_with(
            RelationDescription("parent", allowed=["user"]),
            RelationDescription(
                "viewer",
                rewrite={"tuple_to_userset": {"tupleset": "parent", "computed": "member"}},
            ),
        )

        with pytest.raises(InvalidRewrite, match="no type reachable through 'parent'"):
            compile_model(model)

    def test_tupleset_userset_subjects_are_not_links(self):
        """Only plain object subjects of a tupleset count as linked types."""
        model = model_with(
            RelationDescription("parent", allowed=["group#member"]),
            RelationDescription(
                "viewer",
                rewrite={"tuple_to_userset": {"tupleset": "parent", "computed": "member"}},
            ),
        )

        with pytest.raises(InvalidRewrite):
            compile_model(model)

    def test_tupleset_must_be_directly_assignable(self):
        """A computed-only tupleset can never hold tuples to follow."""
        model = model_with(
            RelationDescription("owner", allowed=["group"]),
            RelationDescription("parent", rewrite={"computed": "owner"}),
            RelationDescription(
                "viewer",
                rewrite={"tuple_to_userset": {"tupleset": "parent", "computed": "member"}},
            ),
        )

        with pytest.raises(InvalidRewrite, match="not directly assignable"):
            compile_model(model)

    def test_this_requires_allowed(self):
        """'this' inside a rewrite needs allowed subjects."""
        relation = RelationDescription("viewer", rewrite={"this": {}})

        with pytest.raises(InvalidRewrite, match="'this' requires allowed subjects"):
            compile_model(model_with(relation))

    def test_allowed_requires_this(self):
        """Allowed subjects are unreachable if the rewrite never uses 'this'."""
        model = model_with(
            RelationDescription("owner", allowed=["user"]),
            RelationDescription("viewer", allowed=["user"], rewrite={"computed": "owner"}),
        )

        with pytest.raises(InvalidRewrite, match="never uses 'this'"):
            compile_model(model)

    def test_computed_cycle_rejected(self):
        """Computed relations may not form a cycle within one type."""
        model = model_with(
            RelationDescription("a", rewrite={"computed": "b"}),
            RelationDescription("b", rewrite={"computed": "c"}),
            RelationDescription("c", rewrite={"union": [{"computed": "a"}]}),
        )

        with pytest.raises(InvalidRewrite, match="a -> b -> c -> a"):
            compile_model(model)

    def test_self_computed_rejected(self):
        """A relation computed from itself is a one-step cycle."""
        model = model_with(RelationDescription("a", rewrite={"computed": "a"}))

        with pytest.raises(InvalidRewrite, match="a -> a"):
            compile_model(model)

    def test_malformed_description_is_compile_error(self):
        """Structural validation errors surface as CompileError."""
        model = ModelDescription(types=[TypeDescription("user"), TypeDescription("user")])

        with pytest.raises(CompileError, match="Duplicate type name"):
            compile_model(model)

    def test_first_error_stops_compilation(self):
        """Compilation is all-or-nothing; no registry escapes a failure."""
        model = load_model(
            """
            types:
              - name: user
              - name: doc
                relations:
                  - name: viewer
                    allowed: [user]
                  - name: editor
                    allowed: [ghost]
            """
        )

        with pytest.raises(UndefinedType, match="doc#editor"):
            compile_model(model)
        assert get_registry() is None
