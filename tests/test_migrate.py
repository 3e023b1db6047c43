"""Tests for the migration runner."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pcnpay.db.schema.migrate import (
    MIGRATION_LOCK_ID,
    MIGRATIONS_DIR,
    migrate,
    pending_migrations,
    split_sql_statements,
)


def _mock_pool(conn) -> MagicMock:
    acquire = MagicMock()
    acquire.__aenter__.return_value = conn
    acquire.__aexit__.return_value = False
    pool = MagicMock()
    pool.acquire.return_value = acquire
    return pool


def _mock_conn(applied_versions, lock_acquired=True) -> AsyncMock:
    conn = AsyncMock()
    conn.fetchval.return_value = lock_acquired
    conn.fetch.return_value = [{"version": v} for v in applied_versions]
    transaction = MagicMock()
    transaction.__aenter__.return_value = None
    transaction.__aexit__.return_value = False
    conn.transaction = MagicMock(return_value=transaction)
    return conn


class TestSplitStatements:
    """Statement splitting for migration scripts."""

    def test_splits_on_semicolons(self):
        sql = "CREATE TABLE a (id INT);\nCREATE TABLE b (id INT);"

        assert split_sql_statements(sql) == [
            "CREATE TABLE a (id INT)",
            "CREATE TABLE b (id INT)",
        ]

    def test_ignores_comments(self):
        sql = "-- header; with semicolon\nSELECT 1; /* block; comment */ SELECT 2;"

        assert split_sql_statements(sql) == ["SELECT 1", "SELECT 2"]

    def test_keeps_semicolons_inside_quotes(self):
        sql = "INSERT INTO t VALUES ('a;b'); SELECT 1"

        assert split_sql_statements(sql) == ["INSERT INTO t VALUES ('a;b')", "SELECT 1"]

    def test_empty_script(self):
        assert split_sql_statements("-- nothing here\n;\n") == []


class TestPendingMigrations:
    """Migration discovery and ordering."""

    def test_orders_by_version_and_skips_applied(self, tmp_path):
        for name in ["010_late.sql", "002_second.sql", "001_first.sql", "notes.sql"]:
            (tmp_path / name).write_text("SELECT 1;")

        pending = pending_migrations(tmp_path, applied={2})

        assert [(v, p.name) for v, p in pending] == [(1, "001_first.sql"), (10, "010_late.sql")]

    def test_nothing_pending(self, tmp_path):
        (tmp_path / "001_first.sql").write_text("SELECT 1;")

        assert pending_migrations(tmp_path, applied={1}) == []

    def test_packaged_customers_migration(self):
        pending = pending_migrations(MIGRATIONS_DIR, applied=set())

        assert pending[0][0] == 1
        statements = split_sql_statements(pending[0][1].read_text(encoding="utf-8"))
        assert len(statements) == 3
        assert statements[0].startswith("CREATE TABLE IF NOT EXISTS customers")
        assert "UNIQUE INDEX" in statements[1]
        assert "WHERE processor_customer_id IS NOT NULL" in statements[2]


class TestMigrate:
    """Runner behaviour against a mocked pool."""

    @pytest.mark.asyncio
    async def test_applies_pending_and_records_versions(self, tmp_path):
        (tmp_path / "001_first.sql").write_text("CREATE TABLE a (id INT);")
        (tmp_path / "002_second.sql").write_text("CREATE TABLE b (id INT);")
        conn = _mock_conn(applied_versions=[1])

        with patch("pcnpay.db.schema.migrate.get_pool", AsyncMock(return_value=_mock_pool(conn))):
            applied = await migrate(tmp_path)

        assert applied == 1
        executed = [c.args for c in conn.execute.await_args_list]
        assert ("CREATE TABLE b (id INT)",) in executed
        assert not any(args[0] == "CREATE TABLE a (id INT)" for args in executed)
        assert any(len(args) == 3 and args[1:] == (2, "002_second.sql") for args in executed)
        assert executed[-1] == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, tmp_path):
        conn = _mock_conn(applied_versions=[], lock_acquired=False)

        with patch("pcnpay.db.schema.migrate.get_pool", AsyncMock(return_value=_mock_pool(conn))):
            with pytest.raises(RuntimeError, match="Another migration"):
                await migrate(tmp_path)

        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await migrate(tmp_path / "missing")
