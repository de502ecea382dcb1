"""
Pytest configuration and shared fixtures for convergedb tests.

``RecordingDriver`` keeps tables in memory and records every schema-altering
call, so reconciliation behaviour can be asserted without a database.
"""

import logging
import os
import tempfile
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from convergedb.database import Database
from convergedb.drivers import _DRIVERS, register_driver
from convergedb.drivers.base import Driver
from convergedb.exceptions import NotFoundError
from convergedb.log import PACKAGE_LOGGER
from convergedb.registry import ConnectionRegistry
from convergedb.schema.definitions import IndexSpec, TableSchema


DDL_OPERATIONS = {
    "create_table",
    "create_field",
    "alter_field",
    "create_index",
    "drop_index",
    "rename_table",
}


class RecordingDriver(Driver):
    """In-memory driver that records every primitive it is asked to run."""

    name = "recording"

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        super().__init__(config)
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.operations: List[Tuple[str, ...]] = []
        self.statements: List[str] = []
        self.results: Dict[str, List[Dict[str, Any]]] = {}
        self.failing: set = set()
        self.active = True
        self.healthy = True
        self.connected_config: Optional[Dict[str, Any]] = None
        self.closed = False

    # -- helpers -------------------------------------------------------------

    @property
    def ddl_operations(self) -> List[Tuple[str, ...]]:
        return [op for op in self.operations if op[0] in DDL_OPERATIONS]

    def reset_operations(self) -> None:
        self.operations.clear()

    def add_table(self, name, fields=None, indexes=None, rows=None) -> None:
        self.tables[name] = {
            "fields": dict(fields or {}),
            "indexes": dict(indexes or {}),
            "rows": list(rows or []),
        }

    def _table(self, table: str) -> Tuple[str, Dict[str, Any]]:
        for name, data in self.tables.items():
            if name.lower() == table.lower():
                return name, data
        raise NotFoundError(table)

    def _check_failure(self, operation: str) -> None:
        if operation in self.failing:
            raise RuntimeError(f"{operation} failed")

    # -- primitives ----------------------------------------------------------

    async def connect_with(self, config):
        if config.get("fail"):
            raise RuntimeError("connection refused")
        self.connected_config = dict(config)

    async def close(self):
        self.closed = True

    async def _run_query(self, sql):
        self.statements.append(sql)
        if "FAIL" in sql:
            raise RuntimeError("syntax error")
        rows = self.results.get(sql, [])
        return rows, len(rows) if rows else 1

    async def is_active(self):
        if self.active == "raise":
            raise RuntimeError("socket closed")
        return self.active

    async def get_generated_id(self, table):
        _, data = self._table(table)
        return len(data["rows"]) or None

    async def get_next_id(self, table):
        _, data = self._table(table)
        return len(data["rows"]) + 1

    async def create_database(self, connect, user, password, dbname):
        self.operations.append(("create_database", dbname))
        return True

    async def table_list(self):
        return {name.lower() for name in self.tables}

    async def field_list(self, table):
        _, data = self._table(table)
        return {name: self.canonical_spec(spec) for name, spec in data["fields"].items()}

    async def index_list(self, table):
        _, data = self._table(table)
        return dict(data["indexes"])

    async def create_table(self, table, fields=None, indexes=None, has_auto_inc_pk=True, options=None):
        self._check_failure("create_table")
        self.operations.append(("create_table", table))
        columns = {}
        if has_auto_inc_pk:
            columns[self.primary_key_field] = "INTEGER NOT NULL"
        for name, spec in (fields or {}).items():
            if has_auto_inc_pk and name == self.primary_key_field:
                continue
            columns[name] = spec
        self.add_table(table, columns, indexes)
        self.tables[table]["options"] = options
        self.tables[table]["has_auto_inc_pk"] = has_auto_inc_pk
        return table

    async def create_field(self, table, field, spec):
        self._check_failure("create_field")
        name, data = self._table(table)
        self.operations.append(("create_field", name, field))
        data["fields"][field] = spec

    async def alter_field(self, table, field, spec):
        self._check_failure("alter_field")
        name, data = self._table(table)
        self.operations.append(("alter_field", name, field))
        data["fields"][field] = spec

    async def create_index(self, table, index, spec: IndexSpec):
        self._check_failure("create_index")
        name, data = self._table(table)
        self.operations.append(("create_index", name, index))
        data["indexes"][index] = spec

    async def drop_index(self, table, index):
        self._check_failure("drop_index")
        name, data = self._table(table)
        self.operations.append(("drop_index", name, index))
        del data["indexes"][index]

    async def rename_table(self, old_name, new_name):
        self._check_failure("rename_table")
        name, data = self._table(old_name)
        self.operations.append(("rename_table", name, new_name))
        self.tables[new_name] = self.tables.pop(name)

    async def check_and_repair_table(self, table):
        self._check_failure("check_and_repair_table")
        self._table(table)
        return self.healthy


# ============================================================================
# Driver and facade fixtures
# ============================================================================

@pytest.fixture
def driver() -> RecordingDriver:
    """A fresh in-memory driver."""
    return RecordingDriver()


@pytest.fixture
def registry(driver) -> ConnectionRegistry:
    """Registry with the in-memory driver installed."""
    registry = ConnectionRegistry()
    registry.set_connection(driver)
    return registry


@pytest.fixture
def db(registry) -> Database:
    """Facade over the in-memory driver."""
    return Database(registry)


@pytest.fixture
def recording_driver_registered():
    """Make the in-memory driver selectable as type 'recording'."""
    register_driver("recording", RecordingDriver)
    yield RecordingDriver
    _DRIVERS.pop("recording", None)


# ============================================================================
# Schema fixtures
# ============================================================================

@pytest.fixture
def member_schema() -> TableSchema:
    """The Member table: surrogate key plus an email address."""
    return TableSchema(
        name="Member",
        fields={"ID": "INTEGER", "Email": "VARCHAR(255)"},
        indexes={},
        has_auto_inc_pk=True,
    )


@pytest.fixture
def schema_file():
    """A YAML file declaring two tables."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
tables:
  - name: Member
    fields:
      Email: VARCHAR(255) NOT NULL
      Name: VARCHAR(100)
    indexes:
      Email:
        columns: [Email]
        type: unique
  - name: Post
    fields:
      MemberID: INTEGER NOT NULL
      Body: TEXT
    indexes:
      MemberID: true
      Body: fulltext (Body)
""")
        f.flush()
        yield f.name
    os.unlink(f.name)


@pytest.fixture
def restore_package_logger():
    """Undo handler and propagation changes made by configure_logging."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def config_file():
    """A configuration file selecting the in-memory driver."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
database:
  type: recording
  host: localhost
  database: proddb
  user: app
  password: secret

schema_management:
  mode: apply
  obsolete_prefix: _obsolete_

logging:
  level: INFO
  rich: false
""")
        f.flush()
        yield f.name
    os.unlink(f.name)
