"""
PostgreSQL schema introspection for convergedb.

Reads tables, columns and indexes from ``information_schema`` and the
``pg_catalog`` tables so the PostgreSQL driver can report live schema state.
Query columns are aliased to the dataclass field names, so each row maps onto
its dataclass directly.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .pool import ConnectionPool
from ..exceptions import DatabaseError, SchemaError


logger = logging.getLogger(__name__)

# Index comments hold ";"-separated "key:value" pairs. "fulltext:<col>,<col>"
# marks a fulltext index; "name:<index>" keeps the declared name of an index
# whose physical name had to be shortened.
FULLTEXT_COMMENT_KEY = "fulltext"
NAME_COMMENT_KEY = "name"

_TABLES_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = $1 AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""

# Exact-case match wins when two tables differ only by case
_RESOLVE_TABLE_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = $1 AND table_type = 'BASE TABLE'
      AND lower(table_name) = lower($2)
    ORDER BY table_name = $2 DESC
    LIMIT 1
"""

_COLUMNS_QUERY = """
    SELECT column_name AS name,
           data_type,
           is_nullable = 'YES' AS is_nullable,
           column_default AS default_value,
           character_maximum_length AS max_length,
           numeric_precision,
           numeric_scale,
           udt_name,
           is_identity = 'YES' AS is_identity
    FROM information_schema.columns
    WHERE table_schema = $1 AND table_name = $2
    ORDER BY ordinal_position
"""

_INDEXES_QUERY = """
    SELECT ic.relname AS name,
           tc.relname AS table_name,
           ARRAY(
               SELECT a.attname
               FROM unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, pos)
               JOIN pg_attribute a ON a.attrelid = ix.indrelid AND a.attnum = k.attnum
               ORDER BY k.pos
           ) AS columns,
           ix.indisunique AS is_unique,
           ix.indisprimary AS is_primary,
           am.amname AS index_type,
           pg_get_indexdef(ix.indexrelid) AS definition,
           obj_description(ix.indexrelid, 'pg_class') AS comment
    FROM pg_index ix
    JOIN pg_class ic ON ic.oid = ix.indexrelid
    JOIN pg_class tc ON tc.oid = ix.indrelid
    JOIN pg_namespace n ON n.oid = tc.relnamespace
    JOIN pg_am am ON am.oid = ic.relam
    WHERE n.nspname = $1 AND tc.relname = $2
    ORDER BY ic.relname
"""


@dataclass
class ColumnInfo:
    """One live column."""

    name: str
    data_type: str
    is_nullable: bool
    default_value: Optional[str] = None
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    udt_name: Optional[str] = None
    is_identity: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ColumnInfo":
        return cls(**dict(row))

    @property
    def type_name(self) -> str:
        """Column type as it would be written in DDL."""
        data_type = self.data_type.lower()

        if data_type == "user-defined" and self.udt_name:
            return self.udt_name
        if data_type == "array" and self.udt_name:
            return f"{self.udt_name.lstrip('_')}[]"
        if data_type in ("character varying", "character") and self.max_length:
            return f"{data_type}({self.max_length})"
        if data_type == "numeric" and self.numeric_precision is not None:
            return f"numeric({self.numeric_precision},{self.numeric_scale or 0})"
        return data_type

    def to_spec(self) -> str:
        """Render the column as a field specification string."""
        parts = [self.type_name]
        if not self.is_nullable:
            parts.append("NOT NULL")
        if self.default_value is not None:
            parts.append(f"DEFAULT {self.default_value}")
        return " ".join(parts)

    def __str__(self) -> str:
        return f"{self.name} {self.to_spec()}"


@dataclass
class IndexInfo:
    """One live index, primary keys included."""

    name: str
    table_name: str
    columns: List[str]
    is_unique: bool
    is_primary: bool
    index_type: str
    definition: str
    comment: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IndexInfo":
        data = dict(row)
        data["columns"] = list(data.get("columns") or [])
        return cls(**data)

    @property
    def comment_fields(self) -> Dict[str, str]:
        fields = {}
        for part in (self.comment or "").split(";"):
            key, sep, value = part.partition(":")
            if sep:
                fields[key.strip()] = value
        return fields

    @property
    def is_fulltext(self) -> bool:
        return FULLTEXT_COMMENT_KEY in self.comment_fields

    @property
    def fulltext_columns(self) -> List[str]:
        return [c for c in self.comment_fields.get(FULLTEXT_COMMENT_KEY, "").split(",") if c]

    @property
    def declared_name(self) -> Optional[str]:
        return self.comment_fields.get(NAME_COMMENT_KEY) or None


@dataclass
class TableInfo:
    schema: str
    name: str
    columns: Dict[str, ColumnInfo] = field(default_factory=dict)
    indexes: List[IndexInfo] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def has_column(self, column_name: str) -> bool:
        return column_name in self.columns


class SchemaIntrospector:
    """Live schema lookups for one PostgreSQL schema."""

    def __init__(self, pool: ConnectionPool, schema: str = "public"):
        self.pool = pool
        self.schema = schema

    async def list_tables(self) -> List[str]:
        try:
            rows = await self.pool.fetch(_TABLES_QUERY, self.schema)
        except Exception as e:
            logger.error(f"Error listing tables in schema {self.schema}: {e}")
            raise DatabaseError(f"Failed to list tables: {e}") from e
        return [row["table_name"] for row in rows]

    async def resolve_table_name(self, table: str) -> Optional[str]:
        """Stored name of ``table``, matched case-insensitively; None if absent."""
        try:
            return await self.pool.fetchval(_RESOLVE_TABLE_QUERY, self.schema, table)
        except Exception as e:
            logger.error(f"Error resolving table name {self.schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e

    async def get_table_info(self, table: str) -> Optional[TableInfo]:
        actual = await self.resolve_table_name(table)
        if actual is None:
            return None
        return TableInfo(
            schema=self.schema,
            name=actual,
            columns=await self.get_columns(actual),
            indexes=await self.get_indexes(actual),
        )

    async def get_columns(self, table: str) -> Dict[str, ColumnInfo]:
        """Columns of ``table`` (exact stored name), in ordinal order."""
        try:
            rows = await self.pool.fetch(_COLUMNS_QUERY, self.schema, table)
        except Exception as e:
            logger.error(f"Error getting columns for {self.schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e
        return {info.name: info for info in map(ColumnInfo.from_row, rows)}

    async def get_indexes(self, table: str) -> List[IndexInfo]:
        """
        Indexes of ``table`` (exact stored name) with their columns in index
        order and their comments. Expression columns do not appear in
        ``columns``; fulltext indexes list theirs in the comment instead.
        """
        try:
            rows = await self.pool.fetch(_INDEXES_QUERY, self.schema, table)
        except Exception as e:
            logger.error(f"Error getting indexes for {self.schema}.{table}: {e}")
            raise SchemaError(f"Failed to get indexes: {e}") from e
        return [IndexInfo.from_row(row) for row in rows]
