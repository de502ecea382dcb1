"""
Execution facade for convergedb.

``Database`` is what application code talks to: it forwards raw SQL and
manipulation batches to the active driver, exposes the table lifecycle
primitives and runs schema reconciliation against the live schema.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Union

from pydantic import BaseModel

from .drivers import Driver, QueryResult, Severity
from .drivers.base import Manipulation
from .exceptions import DatabaseConnectionError
from .registry import ConnectionRegistry
from .schema.definitions import IndexSpec, TableSchema
from .schema.reconciler import (
    DEFAULT_OBSOLETE_PREFIX,
    OperationMode,
    ReconciliationResult,
    SchemaReconciler,
)


logger = logging.getLogger(__name__)


class Database:
    """Facade over the active connection of a ``ConnectionRegistry``."""

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        operation_mode: OperationMode = OperationMode.APPLY,
        obsolete_prefix: str = DEFAULT_OBSOLETE_PREFIX,
    ):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.operation_mode = OperationMode(operation_mode)
        self.obsolete_prefix = obsolete_prefix
        self.last_query: Union[str, Manipulation, None] = None

    @property
    def driver(self) -> Driver:
        """The active driver; DatabaseConnectionError when none is registered."""
        driver = self.registry.get_connection()
        if driver is None:
            raise DatabaseConnectionError("No database connection has been established")
        return driver

    def reconciler(self) -> SchemaReconciler:
        return SchemaReconciler(self.driver, self.operation_mode, self.obsolete_prefix)

    async def connect(self, config: Union[Mapping[str, Any], BaseModel]) -> Driver:
        return await self.registry.connect(config)

    async def close(self) -> None:
        await self.registry.close()

    # -- execution -----------------------------------------------------------

    async def execute(self, sql: str, severity: Severity = Severity.FATAL) -> QueryResult:
        """
        Run ``sql`` on the active driver.

        At ``Severity.FATAL`` a failing statement raises DriverExecutionError;
        at ``WARNING`` or ``NOTICE`` the failure is logged and an empty result
        is returned.
        """
        driver = self.driver
        self.last_query = sql
        return await driver.execute(sql, severity)

    async def manipulate(self, batch: Manipulation) -> None:
        """Apply a batch of inserts and updates, keyed by table."""
        driver = self.driver
        self.last_query = batch
        await driver.manipulate(batch)

    def affected_rows(self) -> int:
        driver = self.registry.get_connection()
        return driver.affected_rows() if driver is not None else 0

    def quiet(self) -> None:
        """Silence non-fatal diagnostics and schema change announcements."""
        self.driver.quiet()

    # -- pass-throughs -------------------------------------------------------

    async def get_generated_id(self, table: str) -> Optional[int]:
        return await self.driver.get_generated_id(table)

    async def get_next_id(self, table: str) -> int:
        return await self.driver.get_next_id(table)

    async def is_active(self) -> bool:
        return await self.registry.is_active()

    async def create_database(self, connect: str, user: str, password: str, dbname: str) -> bool:
        return await self.driver.create_database(connect, user, password, dbname)

    async def create_table(
        self,
        table: str,
        fields: Optional[Mapping[str, str]] = None,
        indexes: Optional[Mapping[str, IndexSpec]] = None,
        has_auto_inc_pk: bool = True,
        options: Optional[str] = None,
    ) -> str:
        return await self.driver.create_table(table, fields, indexes, has_auto_inc_pk, options)

    async def create_field(self, table: str, field: str, spec: str) -> None:
        await self.driver.create_field(table, field, spec)

    async def table_list(self) -> Set[str]:
        return await self.driver.table_list()

    async def field_list(self, table: str) -> Dict[str, str]:
        return await self.driver.field_list(table)

    async def index_list(self, table: str) -> Dict[str, IndexSpec]:
        return await self.driver.index_list(table)

    # -- reconciliation ------------------------------------------------------

    async def require_table(self, schema: Union[TableSchema, Mapping[str, Any]]) -> ReconciliationResult:
        return await self.reconciler().require_table(schema)

    async def require_tables(
        self, schemas: Iterable[Union[TableSchema, Mapping[str, Any]]]
    ) -> Dict[str, ReconciliationResult]:
        return await self.reconciler().require_tables(schemas)

    async def require_field(self, table: str, field: str, spec: str) -> ReconciliationResult:
        return await self.reconciler().require_field(table, field, spec)

    async def require_index(self, table: str, index: str, spec: Any) -> ReconciliationResult:
        return await self.reconciler().require_index(table, index, spec)

    async def dont_require_table(self, table: str) -> ReconciliationResult:
        return await self.reconciler().dont_require_table(table)

    async def check_and_repair_table(self, table: str) -> bool:
        return await self.reconciler().check_and_repair_table(table)
