"""
Tests for the convergedb.database execution facade.
"""

import pytest

from convergedb.database import Database
from convergedb.drivers.base import Severity
from convergedb.exceptions import DatabaseConnectionError, DriverExecutionError
from convergedb.schema.definitions import IndexSpec
from convergedb.schema.reconciler import OperationMode, ReconciliationStatus


class TestDatabaseWithoutConnection:
    """Calls needing a driver fail cleanly before connect()."""

    @pytest.mark.asyncio
    async def test_execute_requires_connection(self):
        with pytest.raises(DatabaseConnectionError, match="No database connection"):
            await Database().execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_require_table_requires_connection(self, member_schema):
        with pytest.raises(DatabaseConnectionError):
            await Database().require_table(member_schema)

    @pytest.mark.asyncio
    async def test_is_active_false(self):
        assert await Database().is_active() is False

    def test_affected_rows_zero(self):
        assert Database().affected_rows() == 0


class TestDatabaseExecution:
    """Test execute and manipulate."""

    @pytest.mark.asyncio
    async def test_execute_records_last_query(self, db, driver):
        driver.results["SELECT COUNT(*) FROM \"Member\""] = [{"count": 3}]

        result = await db.execute('SELECT COUNT(*) FROM "Member"')

        assert db.last_query == 'SELECT COUNT(*) FROM "Member"'
        assert result.value() == 3
        assert db.affected_rows() == 1

    @pytest.mark.asyncio
    async def test_fatal_failure_raises(self, db):
        with pytest.raises(DriverExecutionError):
            await db.execute("SELECT FAIL")

        assert db.last_query == "SELECT FAIL"

    @pytest.mark.asyncio
    async def test_warning_failure_returns_empty(self, db):
        result = await db.execute("SELECT FAIL", Severity.WARNING)

        assert result.num_records() == 0
        assert db.affected_rows() == 0

    @pytest.mark.asyncio
    async def test_manipulate_records_batch(self, db, driver):
        batch = {"Member": {"command": "update", "id": 4, "fields": {"Name": "'Ann'"}}}

        await db.manipulate(batch)

        assert db.last_query is batch
        assert driver.statements == ['UPDATE "Member" SET "Name" = \'Ann\' WHERE "ID" = 4']
        assert db.affected_rows() == 1

    def test_quiet_reaches_driver(self, db, driver):
        db.quiet()

        assert driver.is_quiet is True


class TestDatabasePassThroughs:
    """Test lifecycle and introspection pass-throughs."""

    @pytest.mark.asyncio
    async def test_table_and_field_lists(self, db, driver):
        driver.add_table("Member", {"Email": "varchar(255)"}, {"Email": IndexSpec(columns=("Email",))})

        assert await db.table_list() == {"member"}
        assert await db.field_list("member") == {"Email": "VARCHAR(255)"}
        assert await db.index_list("Member") == {"Email": IndexSpec(columns=("Email",))}

    @pytest.mark.asyncio
    async def test_ids(self, db, driver):
        driver.add_table("Member", rows=[{"ID": 1}, {"ID": 2}])

        assert await db.get_generated_id("Member") == 2
        assert await db.get_next_id("Member") == 3

    @pytest.mark.asyncio
    async def test_create_table_and_field(self, db, driver):
        await db.create_table("Tag", {"Label": "TEXT"})
        await db.create_field("Tag", "Color", "TEXT")

        assert set(driver.tables["Tag"]["fields"]) == {"ID", "Label", "Color"}

    @pytest.mark.asyncio
    async def test_create_database(self, db, driver):
        assert await db.create_database("localhost", "app", "secret", "newdb") is True
        assert ("create_database", "newdb") in driver.operations


class TestDatabaseReconciliation:
    """Reconciliation entry points run against the active driver."""

    @pytest.mark.asyncio
    async def test_require_table_then_field(self, db, driver, member_schema):
        await db.require_table(member_schema)
        result = await db.require_field("Member", "Name", "VARCHAR(100)")

        assert result.status == ReconciliationStatus.CHANGED
        assert "Name" in driver.tables["Member"]["fields"]

    @pytest.mark.asyncio
    async def test_require_index_and_retire(self, db, driver, member_schema):
        await db.require_table(member_schema)
        await db.require_index("Member", "Email", True)
        await db.dont_require_table("Member")

        assert "_obsolete_Member" in driver.tables

    @pytest.mark.asyncio
    async def test_require_tables(self, db, member_schema):
        results = await db.require_tables([member_schema])

        assert results["Member"].status == ReconciliationStatus.CHANGED

    @pytest.mark.asyncio
    async def test_check_and_repair(self, db, driver):
        driver.add_table("Member")

        assert await db.check_and_repair_table("Member") is True

    @pytest.mark.asyncio
    async def test_dry_run_and_prefix_settings(self, registry, driver, member_schema):
        db = Database(registry, operation_mode=OperationMode.DRY_RUN, obsolete_prefix="old_")
        driver.add_table("Foo")

        await db.require_table(member_schema)
        result = await db.dont_require_table("Foo")

        assert driver.ddl_operations == []
        assert result.changes[0].target == "old_Foo"

    @pytest.mark.asyncio
    async def test_connect_through_registry(self, recording_driver_registered):
        db = Database()

        driver = await db.connect({"type": "recording", "database": "proddb"})

        assert db.driver is driver
        assert await db.is_active() is True

        await db.close()
        assert driver.closed is True
