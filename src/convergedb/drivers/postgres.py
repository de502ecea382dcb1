"""
PostgreSQL driver for convergedb, built on asyncpg.
"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import asyncpg
from pydantic import ValidationError

from .base import Driver, ManipulationCommand, QueryResult, Severity
from .introspection import FULLTEXT_COMMENT_KEY, NAME_COMMENT_KEY, IndexInfo, SchemaIntrospector
from .pool import ConnectionConfig, ConnectionPool
from ..exceptions import (
    ConfigurationError,
    DatabaseConnectionError,
    DriverExecutionError,
    NotFoundError,
)
from ..schema.definitions import IndexKind, IndexSpec
from ..schema.fields import FieldSpec, parse_field_spec


logger = logging.getLogger(__name__)

_ROW_RETURNING = re.compile(r"^\s*(SELECT|WITH|SHOW|VALUES|EXPLAIN|TABLE)\b|\bRETURNING\b", re.IGNORECASE)
_STATUS_COUNT = re.compile(r"(\d+)\s*$")

# NAMEDATALEN - 1; longer identifiers are silently truncated by the server
MAX_IDENTIFIER_BYTES = 63

# Pseudo-types that expand to an integer column fed by an owned sequence
_SERIAL_TYPES = {
    "SMALLSERIAL": "SMALLINT",
    "SERIAL2": "SMALLINT",
    "SERIAL": "INTEGER",
    "SERIAL4": "INTEGER",
    "BIGSERIAL": "BIGINT",
    "SERIAL8": "BIGINT",
}
_SEQUENCE_DEFAULT = "NEXTVAL"
# Live numeric defaults come back quoted, e.g. '-1'::integer
_QUOTED_NUMBER = re.compile(r"'(-?\d+(?:\.\d+)?)'")


def bounded_identifier(name: str) -> str:
    """
    ``name`` when it fits in a PostgreSQL identifier, otherwise a shortened
    form ending in a hash of the full name so distinct names stay distinct.
    """
    raw = name.encode("utf-8")
    if len(raw) <= MAX_IDENTIFIER_BYTES:
        return name
    digest = hashlib.sha1(raw).hexdigest()[:8]
    head = raw[: MAX_IDENTIFIER_BYTES - len(digest) - 1].decode("utf-8", errors="ignore")
    return f"{head}_{digest}"


def _comparable(parsed: FieldSpec) -> Tuple[str, bool, Optional[str]]:
    """
    The parts of a field spec the catalog reports back: type, nullability and
    default. Constraint clauses are only applied when a column is created.
    """
    if parsed.type in _SERIAL_TYPES:
        return _SERIAL_TYPES[parsed.type], True, _SEQUENCE_DEFAULT

    not_null = parsed.not_null or any(e.startswith("PRIMARY KEY") for e in parsed.extras)
    default = parsed.default
    if default is not None:
        if default.startswith("NEXTVAL("):
            default = _SEQUENCE_DEFAULT
        else:
            number = _QUOTED_NUMBER.fullmatch(default)
            if number:
                default = number.group(1)
    return parsed.type, not_null, default


class PostgreSQLDriver(Driver):
    """Driver for PostgreSQL databases."""

    name = "postgres"

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        super().__init__(config)
        self.connection_config: Optional[ConnectionConfig] = None
        self.pool: Optional[ConnectionPool] = None
        self.introspector: Optional[SchemaIntrospector] = None
        self._generated_ids: Dict[str, int] = {}

    # -- connection ----------------------------------------------------------

    @staticmethod
    def parse_config(config: Mapping[str, Any]) -> ConnectionConfig:
        """Validate driver settings; explicit keys win over a ``url``."""
        data = dict(config)
        url = data.pop("url", None)
        data.pop("type", None)
        try:
            if url:
                base = ConnectionConfig.from_url(url).model_dump(by_alias=True)
                data = {**base, **{k: v for k, v in data.items() if v is not None}}
            return ConnectionConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid PostgreSQL configuration: {e}") from e

    async def connect_with(self, config: Mapping[str, Any]) -> None:
        self.config = dict(config)
        self.connection_config = self.parse_config(config)
        self.pool = ConnectionPool(self.connection_config)
        await self.pool.initialize()
        self.introspector = SchemaIntrospector(self.pool, self.connection_config.schema_name)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()

    def _require_pool(self) -> ConnectionPool:
        if self.pool is None or not self.pool.is_initialized:
            raise DatabaseConnectionError("PostgreSQL driver is not connected")
        return self.pool

    async def is_active(self) -> bool:
        if self.pool is None or not self.pool.is_initialized:
            return False
        try:
            return await self.pool.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.debug(f"Liveness check failed: {e}")
            return False

    async def create_database(self, connect: str, user: str, password: str, dbname: str) -> bool:
        """
        Create ``dbname`` on the server at ``connect`` and switch to it.

        ``connect`` is either a host name or a postgresql:// URL.
        """
        if "://" in connect:
            server = ConnectionConfig.from_url(connect).model_dump(by_alias=True)
        else:
            server = {"host": connect}
        server.update({"user": user, "password": password, "database": "postgres"})
        server_config = ConnectionConfig(**server)

        try:
            conn = await asyncpg.connect(**server_config.to_connection_kwargs())
            try:
                exists = await conn.fetchval(
                    "SELECT 1 FROM pg_database WHERE datname = $1", dbname
                )
                if not exists:
                    await conn.execute(f"CREATE DATABASE {self.quote_identifier(dbname)}")
                    self.announce(f"Database {dbname}: created")
            finally:
                await conn.close()

            await self.close()
            await self.connect_with({**self.config, **server, "database": dbname})
            return True

        except Exception as e:
            logger.error(f"Failed to create database '{dbname}': {e}")
            return False

    # -- execution -----------------------------------------------------------

    async def _run_query(self, sql: str) -> Tuple[List[Mapping[str, Any]], int]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            if _ROW_RETURNING.search(sql):
                rows = await conn.fetch(sql)
                return rows, len(rows)
            status = await conn.execute(sql)

        match = _STATUS_COUNT.search(status or "")
        return [], int(match.group(1)) if match else 0

    async def _run_ddl(self, statements: List[str]) -> None:
        """Run DDL statements in one transaction, failing loudly."""
        pool = self._require_pool()
        current = None
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for current in statements:
                        await conn.execute(current)
        except Exception as e:
            logger.error(f"Schema statement failed: {e}")
            raise DriverExecutionError(
                f"Schema statement failed: {e}", sql=current, severity="fatal", cause=e
            ) from e

    def build_manipulation_sql(self, table: str, entry: Mapping[str, Any]) -> str:
        sql = super().build_manipulation_sql(table, entry)
        if entry["command"] == ManipulationCommand.INSERT:
            sql += " RETURNING *"
        return sql

    async def execute(self, sql: str, severity: Severity = Severity.FATAL) -> QueryResult:
        result = await super().execute(sql, severity)
        if sql.lstrip().upper().startswith("INSERT"):
            table = self._insert_target(sql)
            if table:
                row = result.peek()
                if row is not None and row.get(self.primary_key_field) is not None:
                    self._generated_ids[table.lower()] = row[self.primary_key_field]
                else:
                    # Whatever was remembered belongs to an earlier row
                    self._generated_ids.pop(table.lower(), None)
        return result

    @staticmethod
    def _insert_target(sql: str) -> Optional[str]:
        match = re.match(r'\s*INSERT\s+INTO\s+(?:"((?:[^"]|"")+)"|([\w.]+))', sql, re.IGNORECASE)
        if not match:
            return None
        return (match.group(1) or match.group(2)).replace('""', '"')

    # -- naming --------------------------------------------------------------

    def _qualified(self, table: str) -> str:
        schema = self.connection_config.schema_name if self.connection_config else "public"
        return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"

    async def _actual_table(self, table: str) -> str:
        actual = await self.introspector.resolve_table_name(table)
        if actual is None:
            raise NotFoundError(table)
        return actual

    @staticmethod
    def _physical_index_name(table: str, index: str) -> str:
        return bounded_identifier(f"{table}_{index}")

    def _logical_index_name(self, table: str, info: IndexInfo) -> str:
        """Declared name of a live index on ``table``."""
        if info.declared_name:
            return info.declared_name
        prefix = f"{table}_"
        return info.name[len(prefix):] if info.name.startswith(prefix) else info.name

    def _index_comment(
        self, table: str, index: str, fulltext_columns: Optional[Sequence[str]] = None
    ) -> Optional[str]:
        fields = []
        if fulltext_columns is not None:
            fields.append(f"{FULLTEXT_COMMENT_KEY}:{','.join(fulltext_columns)}")
        if self._physical_index_name(table, index) != f"{table}_{index}":
            fields.append(f"{NAME_COMMENT_KEY}:{index}")
        return ";".join(fields) or None

    def _comment_statement(self, physical: str, comment: str) -> str:
        schema = self.quote_identifier(self.connection_config.schema_name)
        literal = comment.replace("'", "''")
        return f"COMMENT ON INDEX {schema}.{self.quote_identifier(physical)} IS '{literal}'"

    # -- ids -----------------------------------------------------------------

    async def get_generated_id(self, table: str) -> Optional[int]:
        if table.lower() in self._generated_ids:
            return self._generated_ids[table.lower()]

        actual = await self._actual_table(table)
        result = await self.execute(
            "SELECT currval(pg_get_serial_sequence("
            f"'{self._qualified(actual)}', '{self.primary_key_field}'))",
            "notice",
        )
        return result.value()

    async def get_next_id(self, table: str) -> int:
        actual = await self._actual_table(table)
        pk = self.quote_identifier(self.primary_key_field)
        result = await self.execute(
            f"SELECT COALESCE(MAX({pk}), 0) + 1 FROM {self._qualified(actual)}"
        )
        return int(result.value() or 1)

    # -- introspection -------------------------------------------------------

    async def table_list(self) -> Set[str]:
        self._require_pool()
        return {name.lower() for name in await self.introspector.list_tables()}

    async def field_list(self, table: str) -> Dict[str, str]:
        actual = await self._actual_table(table)
        columns = await self.introspector.get_columns(actual)
        return {name: self.canonical_spec(col.to_spec()) for name, col in columns.items()}

    def spec_satisfied(self, current: str, wanted: str) -> bool:
        """
        Compare type, nullability and default only. UNIQUE, REFERENCES,
        CHECK and COLLATE clauses never show up in the column catalog, a
        SERIAL column reads back as an integer with a ``nextval`` default,
        and numeric defaults read back as quoted literals.
        """
        return _comparable(parse_field_spec(current, self.type_aliases)) == _comparable(
            parse_field_spec(wanted, self.type_aliases)
        )

    async def index_list(self, table: str) -> Dict[str, IndexSpec]:
        actual = await self._actual_table(table)
        indexes = {}
        for info in await self.introspector.get_indexes(actual):
            if info.is_primary:
                continue
            indexes[self._logical_index_name(actual, info)] = self._index_spec(info)
        return indexes

    @staticmethod
    def _index_spec(info: IndexInfo) -> IndexSpec:
        if info.is_fulltext:
            return IndexSpec(columns=tuple(info.fulltext_columns), kind=IndexKind.FULLTEXT)
        kind = IndexKind.UNIQUE if info.is_unique else IndexKind.INDEX
        return IndexSpec(columns=tuple(info.columns), kind=kind)

    # -- DDL -----------------------------------------------------------------

    def _index_statements(self, table: str, index: str, spec: IndexSpec) -> List[str]:
        physical_name = self._physical_index_name(table, index)
        physical = self.quote_identifier(physical_name)
        target = self._qualified(table)

        if spec.kind == IndexKind.FULLTEXT:
            document = " || ' ' || ".join(
                f"coalesce({self.quote_identifier(c)}, '')" for c in spec.columns
            )
            statements = [
                f"CREATE INDEX {physical} ON {target} USING gin (to_tsvector('simple', {document}))"
            ]
            comment = self._index_comment(table, index, spec.columns)
        else:
            unique = "UNIQUE " if spec.kind == IndexKind.UNIQUE else ""
            columns = ", ".join(self.quote_identifier(c) for c in spec.columns)
            statements = [f"CREATE {unique}INDEX {physical} ON {target} ({columns})"]
            comment = self._index_comment(table, index)

        if comment:
            statements.append(self._comment_statement(physical_name, comment))
        return statements

    async def create_table(
        self,
        table: str,
        fields: Optional[Mapping[str, str]] = None,
        indexes: Optional[Mapping[str, IndexSpec]] = None,
        has_auto_inc_pk: bool = True,
        options: Optional[str] = None,
    ) -> str:
        definitions = []
        if has_auto_inc_pk:
            definitions.append(
                f"{self.quote_identifier(self.primary_key_field)} "
                "INTEGER GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY"
            )
        for field, spec in (fields or {}).items():
            if has_auto_inc_pk and field == self.primary_key_field:
                continue
            definitions.append(f"{self.quote_identifier(field)} {spec}")

        create = f"CREATE TABLE {self._qualified(table)} ({', '.join(definitions)})"
        if options:
            create += f" {options}"

        statements = [create]
        for index, spec in (indexes or {}).items():
            statements.extend(self._index_statements(table, index, spec))

        await self._run_ddl(statements)
        return table

    async def create_field(self, table: str, field: str, spec: str) -> None:
        actual = await self._actual_table(table)
        await self._run_ddl([
            f"ALTER TABLE {self._qualified(actual)} ADD COLUMN {self.quote_identifier(field)} {spec}"
        ])

    async def alter_field(self, table: str, field: str, spec: str) -> None:
        actual = await self._actual_table(table)
        parsed = parse_field_spec(spec, self.type_aliases)
        if parsed.type in _SERIAL_TYPES:
            await self._alter_serial_field(actual, field, _SERIAL_TYPES[parsed.type])
            return

        column = self.quote_identifier(field)
        _, not_null, _ = _comparable(parsed)

        actions = [
            f"ALTER COLUMN {column} DROP DEFAULT",
            f"ALTER COLUMN {column} TYPE {parsed.type} USING {column}::{parsed.type}",
        ]
        if parsed.default is not None:
            actions.append(f"ALTER COLUMN {column} SET DEFAULT {parsed.default}")
        actions.append(f"ALTER COLUMN {column} {'SET' if not_null else 'DROP'} NOT NULL")
        if parsed.extras:
            logger.warning(
                f"Field {actual}.{field}: constraints not altered in place: {' '.join(parsed.extras)}"
            )

        await self._run_ddl([f"ALTER TABLE {self._qualified(actual)} {', '.join(actions)}"])

    async def _alter_serial_field(self, actual: str, field: str, base_type: str) -> None:
        """Turn ``field`` into a sequence-fed ``base_type`` column, keeping any sequence it has."""
        column = self.quote_identifier(field)
        table = self._qualified(actual)
        actions = [f"ALTER COLUMN {column} TYPE {base_type} USING {column}::{base_type}"]
        before, after = [], []

        live = (await self.introspector.get_columns(actual)).get(field)
        if live is None or not (live.default_value or "").lower().startswith("nextval("):
            schema = self.quote_identifier(self.connection_config.schema_name)
            sequence = f"{schema}.{self.quote_identifier(bounded_identifier(f'{actual}_{field}_seq'))}"
            regclass = sequence.replace("'", "''")
            before.append(
                f"CREATE SEQUENCE IF NOT EXISTS {sequence} AS {base_type} OWNED BY {table}.{column}"
            )
            actions.append(f"ALTER COLUMN {column} SET DEFAULT nextval('{regclass}')")
            # Existing rows keep their values; the sequence continues after them
            after.append(
                f"SELECT setval('{regclass}', COALESCE(MAX({column}), 0) + 1, false) FROM {table}"
            )

        actions.append(f"ALTER COLUMN {column} SET NOT NULL")
        await self._run_ddl(before + [f"ALTER TABLE {table} {', '.join(actions)}"] + after)

    async def create_index(self, table: str, index: str, spec: IndexSpec) -> None:
        actual = await self._actual_table(table)
        await self._run_ddl(self._index_statements(actual, index, spec))

    async def drop_index(self, table: str, index: str) -> None:
        actual = await self._actual_table(table)
        physical = next(
            (
                info.name
                for info in await self.introspector.get_indexes(actual)
                if not info.is_primary and self._logical_index_name(actual, info) == index
            ),
            self._physical_index_name(actual, index),
        )

        schema = self.quote_identifier(self.connection_config.schema_name)
        await self._run_ddl([f"DROP INDEX {schema}.{self.quote_identifier(physical)}"])

    async def rename_table(self, old_name: str, new_name: str) -> None:
        """
        Rename ``old_name`` and the indexes named after it, so the old index
        names are free when a table of the old name is created again.
        """
        actual = await self._actual_table(old_name)
        schema = self.quote_identifier(self.connection_config.schema_name)
        statements = [
            f"ALTER TABLE {self._qualified(actual)} RENAME TO {self.quote_identifier(new_name)}"
        ]

        for info in await self.introspector.get_indexes(actual):
            if info.is_primary:
                continue
            index = self._logical_index_name(actual, info)
            if info.name != self._physical_index_name(actual, index):
                continue
            target = self._physical_index_name(new_name, index)
            statements.append(
                f"ALTER INDEX {schema}.{self.quote_identifier(info.name)} "
                f"RENAME TO {self.quote_identifier(target)}"
            )
            comment = self._index_comment(
                new_name, index, info.fulltext_columns if info.is_fulltext else None
            )
            if comment and comment != info.comment:
                statements.append(self._comment_statement(target, comment))

        await self._run_ddl(statements)

    async def check_and_repair_table(self, table: str) -> bool:
        try:
            actual = await self._actual_table(table)
            pool = self._require_pool()
            async with pool.acquire() as conn:
                await conn.execute(f"VACUUM ANALYZE {self._qualified(actual)}")
                await conn.execute(f"REINDEX TABLE {self._qualified(actual)}")
            return True
        except Exception as e:
            logger.warning(f"Table check/repair failed for '{table}': {e}")
            return False
