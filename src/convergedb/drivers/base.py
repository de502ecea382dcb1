"""
Driver capability contract for convergedb.

Every concrete database-engine adapter subclasses ``Driver``. The base class
owns the behaviour shared by all engines: failure-severity handling, the
quiet switch, affected-row bookkeeping, manipulation batch expansion and field
specification canonicalisation. Subclasses implement the engine primitives.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from ..exceptions import DriverExecutionError, ValidationError
from ..schema.definitions import IndexSpec, PRIMARY_KEY_FIELD
from ..schema.fields import DEFAULT_TYPE_ALIASES, canonicalize_field_spec


logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """How a failed statement should be treated."""

    FATAL = "fatal"      # raise DriverExecutionError
    WARNING = "warning"  # log a warning, return an empty result
    NOTICE = "notice"    # log at debug level, return an empty result


class ManipulationCommand(str, Enum):
    """Commands accepted in a manipulation batch."""

    INSERT = "insert"
    UPDATE = "update"


ManipulationEntry = Mapping[str, Any]
Manipulation = Mapping[str, Union[ManipulationEntry, Sequence[ManipulationEntry]]]


class QueryResult:
    """
    Result of an executed query.

    Rows are handed out in a single forward pass; once consumed, iterating
    again yields nothing.
    """

    def __init__(self, rows: Optional[Sequence[Mapping[str, Any]]] = None):
        self._rows = [dict(row) for row in rows or []]
        self._total = len(self._rows)
        self._iterator = iter(self._rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return self._iterator

    def __next__(self) -> Dict[str, Any]:
        return next(self._iterator)

    def num_records(self) -> int:
        """Number of rows the query produced."""
        return self._total

    def peek(self) -> Optional[Dict[str, Any]]:
        """First row of the result without consuming anything."""
        return self._rows[0] if self._rows else None

    def first(self) -> Optional[Dict[str, Any]]:
        """Next row, or None when exhausted."""
        return next(self._iterator, None)

    def value(self) -> Any:
        """First column of the next row."""
        row = self.first()
        if row is None:
            return None
        return next(iter(row.values()), None)

    def column(self, name: Optional[str] = None) -> List[Any]:
        """Values of one column (the first by default) across remaining rows."""
        values = []
        for row in self:
            if name is None:
                values.append(next(iter(row.values()), None))
            else:
                values.append(row.get(name))
        return values

    def map(self) -> Dict[Any, Any]:
        """Map the first column to the second across remaining rows."""
        result = {}
        for row in self:
            items = list(row.values())
            if len(items) >= 2:
                result[items[0]] = items[1]
            elif items:
                result[items[0]] = items[0]
        return result


def expand_manipulation(batch: Manipulation) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Flatten a manipulation batch into ordered ``(table, entry)`` pairs.

    Entries for one table keep the order given; tables keep mapping order.
    """
    entries = []
    for table, value in batch.items():
        items = [value] if isinstance(value, Mapping) else list(value)
        for entry in items:
            command = str(entry.get("command", "")).lower()
            if command not in (c.value for c in ManipulationCommand):
                raise ValidationError(
                    f"Invalid manipulation command '{entry.get('command')}' for table '{table}'"
                )
            if not entry.get("fields"):
                raise ValidationError(f"Manipulation for table '{table}' has no fields")
            if command == ManipulationCommand.UPDATE and entry.get("id") is None and not entry.get("where"):
                raise ValidationError(
                    f"Update manipulation for table '{table}' needs an 'id' or a 'where' clause"
                )
            entries.append((table, {**entry, "command": ManipulationCommand(command)}))
    return entries


class Driver(ABC):
    """Base class for database-engine drivers."""

    #: Name used to select the driver in configuration
    name: str = "base"

    #: Type-name aliases used when canonicalising field specifications
    type_aliases: Mapping[str, str] = DEFAULT_TYPE_ALIASES

    #: Name of the surrogate key column created for auto-increment tables
    primary_key_field: str = PRIMARY_KEY_FIELD

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config: Dict[str, Any] = dict(config or {})
        self._quiet = False
        self._affected_rows = 0

    # -- diagnostics ---------------------------------------------------------

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    def quiet(self) -> None:
        """Suppress non-fatal diagnostics for the rest of this driver's life."""
        self._quiet = True

    def announce(self, message: str) -> None:
        """Report a schema alteration."""
        logger.log(logging.DEBUG if self._quiet else logging.INFO, message)

    def affected_rows(self) -> int:
        return self._affected_rows

    def canonical_spec(self, spec: str) -> str:
        return canonicalize_field_spec(spec, self.type_aliases)

    def spec_satisfied(self, current: str, wanted: str) -> bool:
        """Whether the live field spec ``current`` already meets ``wanted``."""
        return self.canonical_spec(current) == self.canonical_spec(wanted)

    def quote_identifier(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    # -- execution -----------------------------------------------------------

    async def execute(self, sql: str, severity: Severity = Severity.FATAL) -> QueryResult:
        """Run a query, applying the failure policy for ``severity``."""
        severity = Severity(severity)
        try:
            rows, affected = await self._run_query(sql)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._affected_rows = 0
            return self._handle_failure(sql, severity, e)

        self._affected_rows = affected
        return QueryResult(rows)

    def _handle_failure(self, sql: str, severity: Severity, error: Exception) -> QueryResult:
        if severity == Severity.FATAL:
            logger.error(f"Query failed: {error}")
            raise DriverExecutionError(
                f"Query failed: {error}", sql=sql, severity=severity.value, cause=error
            ) from error

        level = logging.WARNING
        if severity == Severity.NOTICE or self._quiet:
            level = logging.DEBUG
        logger.log(level, f"Query failed ({severity.value}): {error} [sql={sql}]")
        return QueryResult()

    async def manipulate(self, batch: Manipulation) -> None:
        """Apply a batch of inserts and updates."""
        total = 0
        for table, entry in expand_manipulation(batch):
            sql = self.build_manipulation_sql(table, entry)
            await self.execute(sql)
            total += self._affected_rows
        self._affected_rows = total

    def build_manipulation_sql(self, table: str, entry: Mapping[str, Any]) -> str:
        """Render one manipulation entry as an INSERT or UPDATE statement."""
        quoted_table = self.quote_identifier(table)
        fields = entry["fields"]

        if entry["command"] == ManipulationCommand.INSERT:
            columns = ", ".join(self.quote_identifier(c) for c in fields)
            values = ", ".join(str(v) for v in fields.values())
            return f"INSERT INTO {quoted_table} ({columns}) VALUES ({values})"

        assignments = ", ".join(
            f"{self.quote_identifier(c)} = {v}" for c, v in fields.items()
        )
        if entry.get("where"):
            where = entry["where"]
        else:
            where = f"{self.quote_identifier(self.primary_key_field)} = {int(entry['id'])}"
        return f"UPDATE {quoted_table} SET {assignments} WHERE {where}"

    # -- engine primitives ---------------------------------------------------

    @abstractmethod
    async def connect_with(self, config: Mapping[str, Any]) -> None:
        """Open the underlying connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying connection."""

    @abstractmethod
    async def _run_query(self, sql: str) -> Tuple[List[Mapping[str, Any]], int]:
        """Run SQL and return ``(rows, affected_row_count)``; raise on failure."""

    @abstractmethod
    async def is_active(self) -> bool:
        """Whether the connection is alive."""

    @abstractmethod
    async def get_generated_id(self, table: str) -> Optional[int]:
        """Surrogate key produced by the most recent insert into ``table``."""

    @abstractmethod
    async def get_next_id(self, table: str) -> int:
        """Best-effort prediction of the next surrogate key for ``table``."""

    @abstractmethod
    async def create_database(self, connect: str, user: str, password: str, dbname: str) -> bool:
        """Create a database and connect to it."""

    @abstractmethod
    async def table_list(self) -> Set[str]:
        """Lower-cased names of all tables."""

    @abstractmethod
    async def field_list(self, table: str) -> Dict[str, str]:
        """Field name to canonical specification; NotFoundError if missing."""

    @abstractmethod
    async def index_list(self, table: str) -> Dict[str, IndexSpec]:
        """Index name to specification (primary keys excluded)."""

    @abstractmethod
    async def create_table(
        self,
        table: str,
        fields: Optional[Mapping[str, str]] = None,
        indexes: Optional[Mapping[str, IndexSpec]] = None,
        has_auto_inc_pk: bool = True,
        options: Optional[str] = None,
    ) -> str:
        """Create a table in one step and return its name."""

    @abstractmethod
    async def create_field(self, table: str, field: str, spec: str) -> None:
        """Add a field to an existing table."""

    @abstractmethod
    async def alter_field(self, table: str, field: str, spec: str) -> None:
        """Change an existing field to match ``spec``."""

    @abstractmethod
    async def create_index(self, table: str, index: str, spec: IndexSpec) -> None:
        """Create an index."""

    @abstractmethod
    async def drop_index(self, table: str, index: str) -> None:
        """Drop an index."""

    @abstractmethod
    async def rename_table(self, old_name: str, new_name: str) -> None:
        """Rename a table."""

    @abstractmethod
    async def check_and_repair_table(self, table: str) -> bool:
        """Check and repair a table; True when healthy afterwards."""
