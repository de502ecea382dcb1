"""
Declarative table schema definitions.

A ``TableSchema`` describes the desired end state of one table: its fields,
its indexes, whether it carries an auto-incrementing surrogate key, and an
optional options string appended to the CREATE TABLE statement.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..exceptions import ConfigurationError, SchemaDefinitionError


PRIMARY_KEY_FIELD = "ID"

_INDEX_STRING = re.compile(
    r"^\s*(?:(index|unique|fulltext)\b)?\s*\(?(?P<columns>[^()]*)\)?\s*$",
    re.IGNORECASE,
)


class IndexKind(str, Enum):
    """Supported index kinds."""

    INDEX = "index"
    UNIQUE = "unique"
    FULLTEXT = "fulltext"


class IndexSpec(BaseModel):
    """Structured index specification: ordered columns plus a kind."""

    model_config = ConfigDict(frozen=True)

    columns: Tuple[str, ...]
    kind: IndexKind = IndexKind.INDEX

    @model_validator(mode="before")
    @classmethod
    def accept_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "columns" not in data and "fields" in data:
                data["columns"] = data.pop("fields")
            if "kind" not in data and "type" in data:
                data["kind"] = data.pop("type")
            if isinstance(data.get("kind"), str):
                data["kind"] = data["kind"].lower()
        return data

    @field_validator("columns")
    @classmethod
    def validate_columns(cls, v):
        if not v:
            raise ValueError("An index needs at least one column")
        return tuple(c.strip() for c in v)

    def __str__(self) -> str:
        return f"{self.kind.value} ({', '.join(self.columns)})"


def resolve_index_spec(index: str, spec: Any) -> Optional[IndexSpec]:
    """
    Turn any accepted index specification form into an ``IndexSpec``.

    ``True`` means a single-column index on the field named like the index;
    ``False`` or ``None`` means the index must not exist and yields ``None``.
    Strings such as ``"unique (Email, Name)"`` are parsed as well.
    """
    if spec is None or spec is False:
        return None
    if spec is True:
        return IndexSpec(columns=(index,))
    if isinstance(spec, IndexSpec):
        return spec
    if isinstance(spec, str):
        match = _INDEX_STRING.match(spec)
        if not match:
            raise SchemaDefinitionError(f"Cannot parse index specification for '{index}': {spec}")
        columns = [c for c in (part.strip() for part in match.group("columns").split(",")) if c]
        kind = (match.group(1) or "index").lower()
        spec = {"columns": columns or [index], "kind": kind}
    if isinstance(spec, dict):
        try:
            return IndexSpec.model_validate(spec)
        except ValidationError as e:
            raise SchemaDefinitionError(f"Invalid index specification for '{index}': {e}") from e
    raise SchemaDefinitionError(
        f"Unsupported index specification for '{index}': {spec!r}"
    )


class TableSchema(BaseModel):
    """Desired schema of a single table."""

    name: str = Field(..., description="Table name")
    fields: Dict[str, str] = Field(
        default_factory=dict, description="Field name to field specification"
    )
    indexes: Dict[str, Optional[IndexSpec]] = Field(
        default_factory=dict,
        description="Index name to index specification; None marks an index for removal",
    )
    has_auto_inc_pk: bool = Field(
        True, description="Primary key is an auto-incrementing surrogate"
    )
    options: Optional[str] = Field(
        None, description="Engine-specific options appended to CREATE TABLE"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Table name is required")
        return v

    @field_validator("indexes", mode="before")
    @classmethod
    def resolve_indexes(cls, v):
        if v is None:
            return {}
        return {name: resolve_index_spec(name, spec) for name, spec in v.items()}

    @model_validator(mode="after")
    def check_index_columns(self) -> "TableSchema":
        known = set(self.fields)
        if self.has_auto_inc_pk:
            known.add(PRIMARY_KEY_FIELD)

        for index, spec in self.indexes.items():
            if spec is None:
                continue
            missing = [c for c in spec.columns if c not in known and c != index]
            if missing:
                raise SchemaDefinitionError(
                    f"Index '{index}' on table '{self.name}' references undeclared "
                    f"fields: {', '.join(missing)}"
                )
        return self

    @property
    def declared_indexes(self) -> Dict[str, IndexSpec]:
        """Indexes that must exist (those not marked for removal)."""
        return {name: spec for name, spec in self.indexes.items() if spec is not None}


def load_table_schemas(path: Union[str, Path]) -> List[TableSchema]:
    """Load table schemas from a YAML document with a top-level ``tables`` list."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Schema file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in schema file: {e}")

    tables = data.get("tables", []) if isinstance(data, dict) else data
    try:
        return [TableSchema(**table) for table in tables]
    except ValidationError as e:
        raise SchemaDefinitionError(f"Invalid table schema in {path}: {e}") from e
