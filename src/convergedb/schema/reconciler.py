"""
Schema reconciliation core logic for convergedb.

Compares the declared schema of a table with the live schema reported by the
active driver and issues the minimal additive patch that converges them.
Fields are never dropped and tables are never deleted; retiring a table is an
explicit rename.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .definitions import IndexSpec, TableSchema, resolve_index_spec

if TYPE_CHECKING:
    from ..drivers.base import Driver


logger = logging.getLogger(__name__)

DEFAULT_OBSOLETE_PREFIX = "_obsolete_"


class ChangeType(str, Enum):
    """Types of schema changes."""

    CREATE_TABLE = "create_table"
    ADD_FIELD = "add_field"
    ALTER_FIELD = "alter_field"
    CREATE_INDEX = "create_index"
    DROP_INDEX = "drop_index"
    RENAME_TABLE = "rename_table"


class OperationMode(str, Enum):
    """Schema operation modes."""

    APPLY = "apply"       # execute changes
    DRY_RUN = "dry_run"   # plan changes, execute nothing


class ReconciliationStatus(str, Enum):
    """Status of reconciliation operations."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SchemaChange:
    """A single schema change issued (or planned) during reconciliation."""

    change_type: ChangeType
    table: str
    target: str
    description: str
    old_definition: Optional[str] = None
    new_definition: Optional[str] = None

    # Execution results
    executed: bool = False
    error: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Result of reconciling one table."""

    table: str
    status: ReconciliationStatus = ReconciliationStatus.UNCHANGED
    changes: List[SchemaChange] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    @property
    def successful_changes(self) -> int:
        """Count of successfully applied changes."""
        return sum(1 for c in self.changes if c.executed)

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for c in self.changes if c.change_type == change_type)


class SchemaReconciler:
    """
    Schema reconciliation engine.

    Every operation is idempotent: once a table has converged, repeating the
    same call issues no DDL. Driver errors are recorded on the failing change
    and then propagate, so a failed convergence halts startup.
    """

    def __init__(
        self,
        driver: "Driver",
        operation_mode: OperationMode = OperationMode.APPLY,
        obsolete_prefix: str = DEFAULT_OBSOLETE_PREFIX,
    ):
        self.driver = driver
        self.operation_mode = OperationMode(operation_mode)
        self.obsolete_prefix = obsolete_prefix

    @property
    def dry_run(self) -> bool:
        return self.operation_mode == OperationMode.DRY_RUN

    # -- public operations ---------------------------------------------------

    async def require_table(self, schema: Union[TableSchema, Mapping[str, Any]]) -> ReconciliationResult:
        """
        Converge one table onto its declared schema.

        A missing table is created in a single step carrying all fields,
        indexes, the auto-increment flag and options. For an existing table
        every declared field and index is required individually; anything the
        schema does not mention is left alone.
        """
        if not isinstance(schema, TableSchema):
            schema = TableSchema(**schema)

        result = ReconciliationResult(table=schema.name)
        start_time = time.perf_counter()

        try:
            if not await self._table_exists(schema.name):
                change = SchemaChange(
                    change_type=ChangeType.CREATE_TABLE,
                    table=schema.name,
                    target=schema.name,
                    description=f"Table {schema.name}: created",
                    new_definition=", ".join(f"{f} {s}" for f, s in schema.fields.items()),
                )
                await self._apply(
                    result,
                    change,
                    lambda: self.driver.create_table(
                        schema.name,
                        schema.fields,
                        schema.declared_indexes,
                        schema.has_auto_inc_pk,
                        schema.options,
                    ),
                )
            else:
                current_fields = await self.driver.field_list(schema.name)
                for name, spec in schema.fields.items():
                    if schema.has_auto_inc_pk and name == self.driver.primary_key_field:
                        continue
                    await self._require_field(result, schema.name, name, spec, current_fields)

                current_indexes = await self.driver.index_list(schema.name)
                for name, spec in schema.indexes.items():
                    await self._require_index(result, schema.name, name, spec, current_indexes)
        finally:
            self._finish(result, start_time)

        return result

    async def require_tables(
        self, schemas: Iterable[Union[TableSchema, Mapping[str, Any]]]
    ) -> Dict[str, ReconciliationResult]:
        """Reconcile several tables in order."""
        results = {}
        for schema in schemas:
            result = await self.require_table(schema)
            results[result.table] = result

        changed = sum(1 for r in results.values() if r.changed)
        logger.info(f"Reconciled {len(results)} tables ({changed} changed)")
        return results

    async def require_field(self, table: str, field_name: str, spec: str) -> ReconciliationResult:
        """Make sure ``field_name`` exists on ``table`` with ``spec``."""
        result = ReconciliationResult(table=table)
        start_time = time.perf_counter()

        try:
            if not await self._table_exists(table):
                logger.debug(f"Field {table}.{field_name}: table missing, deferred")
                result.status = ReconciliationStatus.SKIPPED
                return result

            current = await self.driver.field_list(table)
            await self._require_field(result, table, field_name, spec, current)
        finally:
            self._finish(result, start_time)

        return result

    async def require_index(self, table: str, index: str, spec: Any) -> ReconciliationResult:
        """
        Make sure ``index`` on ``table`` matches ``spec``.

        ``True`` is a single-column index on the field named like the index;
        ``False`` or ``None`` removes an existing index of that name. A
        differing index is dropped and created again, never altered.
        """
        result = ReconciliationResult(table=table)
        start_time = time.perf_counter()

        try:
            if not await self._table_exists(table):
                logger.debug(f"Index {table}.{index}: table missing, deferred")
                result.status = ReconciliationStatus.SKIPPED
                return result

            current = await self.driver.index_list(table)
            await self._require_index(
                result, table, index, resolve_index_spec(index, spec), current
            )
        finally:
            self._finish(result, start_time)

        return result

    async def dont_require_table(self, table: str) -> ReconciliationResult:
        """Retire ``table`` by renaming it with the obsolete prefix."""
        result = ReconciliationResult(table=table)
        start_time = time.perf_counter()

        try:
            if table.lower().startswith(self.obsolete_prefix.lower()):
                logger.debug(f"Table {table}: already retired")
                result.status = ReconciliationStatus.SKIPPED
                return result

            tables = await self.driver.table_list()
            obsolete = f"{self.obsolete_prefix}{table}"

            if table.lower() not in tables:
                result.status = ReconciliationStatus.SKIPPED
                return result

            if obsolete.lower() in tables:
                logger.warning(
                    f"Table {table}: not retired, {obsolete} already exists"
                )
                result.status = ReconciliationStatus.SKIPPED
                return result

            change = SchemaChange(
                change_type=ChangeType.RENAME_TABLE,
                table=table,
                target=obsolete,
                description=f"Table {table}: renamed to {obsolete}",
                old_definition=table,
                new_definition=obsolete,
            )
            await self._apply(result, change, lambda: self.driver.rename_table(table, obsolete))
        finally:
            self._finish(result, start_time)

        return result

    async def check_and_repair_table(self, table: str) -> bool:
        """Best-effort integrity check; failures are reported as False."""
        if self.dry_run:
            logger.info(f"DRY RUN: Table {table}: check and repair")
            return True

        try:
            healthy = bool(await self.driver.check_and_repair_table(table))
        except Exception as e:
            logger.warning(f"Table {table}: check and repair failed: {e}")
            return False

        if not healthy:
            logger.warning(f"Table {table}: check and repair reported problems")
        return healthy

    # -- decisions -----------------------------------------------------------

    async def _table_exists(self, table: str) -> bool:
        return table.lower() in await self.driver.table_list()

    async def _require_field(
        self,
        result: ReconciliationResult,
        table: str,
        field_name: str,
        spec: str,
        current: Mapping[str, str],
    ) -> None:
        existing_name = _lookup(current, field_name)

        if existing_name is None:
            change = SchemaChange(
                change_type=ChangeType.ADD_FIELD,
                table=table,
                target=field_name,
                description=f"Field {table}.{field_name}: added",
                new_definition=spec,
            )
            await self._apply(
                result, change, lambda: self.driver.create_field(table, field_name, spec)
            )
            return

        if self.driver.spec_satisfied(current[existing_name], spec):
            return

        existing = self.driver.canonical_spec(current[existing_name])
        wanted = self.driver.canonical_spec(spec)

        change = SchemaChange(
            change_type=ChangeType.ALTER_FIELD,
            table=table,
            target=existing_name,
            description=f"Field {table}.{existing_name}: altered from {existing} to {wanted}",
            old_definition=existing,
            new_definition=wanted,
        )
        await self._apply(
            result, change, lambda: self.driver.alter_field(table, existing_name, spec)
        )

    async def _require_index(
        self,
        result: ReconciliationResult,
        table: str,
        index: str,
        spec: Optional[IndexSpec],
        current: Mapping[str, IndexSpec],
    ) -> None:
        existing_name = _lookup(current, index)
        existing = current[existing_name] if existing_name is not None else None

        if spec is None:
            if existing is not None:
                await self._drop_index(result, table, existing_name, existing)
            return

        if existing is not None:
            if _same_index(existing, spec):
                return
            await self._drop_index(result, table, existing_name, existing)

        change = SchemaChange(
            change_type=ChangeType.CREATE_INDEX,
            table=table,
            target=index,
            description=f"Index {table}.{index}: created",
            old_definition=str(existing) if existing is not None else None,
            new_definition=str(spec),
        )
        await self._apply(
            result, change, lambda: self.driver.create_index(table, index, spec)
        )

    async def _drop_index(
        self, result: ReconciliationResult, table: str, index: str, existing: IndexSpec
    ) -> None:
        change = SchemaChange(
            change_type=ChangeType.DROP_INDEX,
            table=table,
            target=index,
            description=f"Index {table}.{index}: dropped",
            old_definition=str(existing),
        )
        await self._apply(result, change, lambda: self.driver.drop_index(table, index))

    # -- execution -----------------------------------------------------------

    async def _apply(
        self,
        result: ReconciliationResult,
        change: SchemaChange,
        action: Callable[[], Awaitable[Any]],
    ) -> None:
        result.changes.append(change)

        if self.dry_run:
            logger.info(f"DRY RUN: {change.description}")
            return

        try:
            await action()
        except Exception as e:
            change.error = str(e)
            result.errors.append(f"{change.description}: {e}")
            result.status = ReconciliationStatus.FAILED
            logger.error(f"Schema change failed ({change.change_type.value} {change.target}): {e}")
            raise

        change.executed = True
        self.driver.announce(change.description)

    @staticmethod
    def _finish(result: ReconciliationResult, start_time: float) -> None:
        result.execution_time_ms = (time.perf_counter() - start_time) * 1000
        if result.status in (ReconciliationStatus.FAILED, ReconciliationStatus.SKIPPED):
            return
        result.status = (
            ReconciliationStatus.CHANGED if result.changes else ReconciliationStatus.UNCHANGED
        )


def _lookup(current: Mapping[str, Any], name: str) -> Optional[str]:
    """Key of ``current`` naming ``name``; exact match first, then case-insensitive."""
    if name in current:
        return name
    lowered = name.lower()
    for key in current:
        if key.lower() == lowered:
            return key
    return None


def _same_index(existing: IndexSpec, wanted: IndexSpec) -> bool:
    return existing.kind == wanted.kind and [c.lower() for c in existing.columns] == [
        c.lower() for c in wanted.columns
    ]
