"""
Tests for convergedb.schema.definitions module.
"""

import os
import tempfile

import pytest
from pydantic import ValidationError as PydanticValidationError

from convergedb.exceptions import ConfigurationError, SchemaDefinitionError
from convergedb.schema.definitions import (
    IndexKind,
    IndexSpec,
    TableSchema,
    load_table_schemas,
    resolve_index_spec,
)


class TestIndexSpec:
    """Test IndexSpec model."""

    def test_defaults_to_plain_index(self):
        spec = IndexSpec(columns=["Email"])

        assert spec.columns == ("Email",)
        assert spec.kind == IndexKind.INDEX

    def test_accepts_fields_and_type_aliases(self):
        """Mappings may say 'fields' and 'type' instead of 'columns' and 'kind'."""
        spec = IndexSpec.model_validate({"fields": ["A", "B"], "type": "UNIQUE"})

        assert spec.columns == ("A", "B")
        assert spec.kind == IndexKind.UNIQUE

    def test_empty_columns_rejected(self):
        with pytest.raises(PydanticValidationError):
            IndexSpec(columns=[])

    def test_equality_by_value(self):
        """Equal columns and kind compare equal."""
        assert IndexSpec(columns=["A"], kind="unique") == IndexSpec(columns=("A",), kind=IndexKind.UNIQUE)
        assert IndexSpec(columns=["A"]) != IndexSpec(columns=["A", "B"])

    def test_str(self):
        assert str(IndexSpec(columns=["A", "B"], kind="fulltext")) == "fulltext (A, B)"


class TestResolveIndexSpec:
    """Test resolve_index_spec."""

    def test_true_is_single_column_sugar(self):
        """True means an index on the field named like the index."""
        assert resolve_index_spec("Email", True) == IndexSpec(columns=("Email",))

    @pytest.mark.parametrize("spec", [False, None])
    def test_false_and_none_mean_absent(self, spec):
        assert resolve_index_spec("Email", spec) is None

    def test_index_spec_passes_through(self):
        spec = IndexSpec(columns=["A"])

        assert resolve_index_spec("x", spec) is spec

    @pytest.mark.parametrize(
        "text, columns, kind",
        [
            ("unique (Email, Name)", ("Email", "Name"), IndexKind.UNIQUE),
            ("fulltext (Body)", ("Body",), IndexKind.FULLTEXT),
            ("(A, B)", ("A", "B"), IndexKind.INDEX),
            ("Email", ("Email",), IndexKind.INDEX),
            ("unique", ("Code",), IndexKind.UNIQUE),
        ],
    )
    def test_string_forms(self, text, columns, kind):
        """String specifications are parsed into columns and kind."""
        spec = resolve_index_spec("Code", text)

        assert spec.columns == columns
        assert spec.kind == kind

    def test_invalid_kind_in_mapping(self):
        with pytest.raises(SchemaDefinitionError, match="Invalid index specification"):
            resolve_index_spec("x", {"columns": ["A"], "type": "hash"})

    def test_unsupported_type(self):
        with pytest.raises(SchemaDefinitionError, match="Unsupported index specification"):
            resolve_index_spec("x", 42)


class TestTableSchema:
    """Test TableSchema model."""

    def test_defaults(self):
        schema = TableSchema(name="Member")

        assert schema.fields == {}
        assert schema.indexes == {}
        assert schema.has_auto_inc_pk is True
        assert schema.options is None

    def test_indexes_resolved(self):
        """Every accepted index form is turned into an IndexSpec or None."""
        schema = TableSchema(
            name="Member",
            fields={"Email": "VARCHAR(255)", "Name": "VARCHAR(100)"},
            indexes={
                "Email": True,
                "Name": False,
                "Both": {"fields": ["Email", "Name"], "type": "unique"},
            },
        )

        assert schema.indexes["Email"] == IndexSpec(columns=("Email",))
        assert schema.indexes["Name"] is None
        assert schema.indexes["Both"].kind == IndexKind.UNIQUE
        assert set(schema.declared_indexes) == {"Email", "Both"}

    def test_index_on_undeclared_field_rejected(self):
        """Indexes must only reference declared fields."""
        with pytest.raises(SchemaDefinitionError, match="undeclared fields: Missing"):
            TableSchema(
                name="Member",
                fields={"Email": "VARCHAR(255)"},
                indexes={"ix": {"columns": ["Email", "Missing"]}},
            )

    def test_index_on_surrogate_key_allowed(self):
        """The surrogate key counts as declared on auto-increment tables."""
        schema = TableSchema(name="Member", indexes={"ix": {"columns": ["ID"]}})

        assert schema.indexes["ix"].columns == ("ID",)

    def test_index_on_surrogate_key_without_auto_increment_rejected(self):
        with pytest.raises(SchemaDefinitionError):
            TableSchema(
                name="Member",
                has_auto_inc_pk=False,
                indexes={"ix": {"columns": ["ID"]}},
            )

    def test_empty_name_rejected(self):
        with pytest.raises(PydanticValidationError):
            TableSchema(name="  ")


class TestLoadTableSchemas:
    """Test loading schemas from YAML."""

    def test_load(self, schema_file):
        schemas = load_table_schemas(schema_file)

        assert [s.name for s in schemas] == ["Member", "Post"]
        assert schemas[0].indexes["Email"].kind == IndexKind.UNIQUE
        assert schemas[1].indexes["MemberID"] == IndexSpec(columns=("MemberID",))
        assert schemas[1].indexes["Body"].kind == IndexKind.FULLTEXT

    def test_missing_file(self):
        with pytest.raises(ConfigurationError, match="Schema file not found"):
            load_table_schemas("/nonexistent/schema.yaml")

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write("tables: [unclosed")
        try:
            with pytest.raises(ConfigurationError, match="Invalid YAML"):
                load_table_schemas(f.name)
        finally:
            os.unlink(f.name)

    def test_invalid_table(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write("tables:\n  - fields: {A: TEXT}\n")
        try:
            with pytest.raises(SchemaDefinitionError, match="Invalid table schema"):
                load_table_schemas(f.name)
        finally:
            os.unlink(f.name)
