"""Forward-only migration runner for the customers schema."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

import asyncpg

from pcnpay.db.models import Table
from pcnpay.db.pool import get_pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# pg advisory lock key shared by every migration runner of this service
MIGRATION_LOCK_ID = 731_042


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL DEFAULT '',
            applied_at TIMESTAMPTZ DEFAULT now()
        )
    """)


def pending_migrations(migrations_dir: Path, applied: set[int]) -> list[tuple[int, Path]]:
    """
    List migrations not yet applied, ordered by version.

    Files are named ``NNN_description.sql``; files without a numeric prefix
    are ignored.
    """
    pending = []
    for sql_file in migrations_dir.glob("*.sql"):
        try:
            version = int(sql_file.stem.split("_")[0])
        except ValueError:
            continue
        if version not in applied:
            pending.append((version, sql_file))
    return sorted(pending, key=lambda x: x[0])


def split_sql_statements(sql: str) -> list[str]:
    """Split a migration script on top-level semicolons, ignoring comments."""
    sql = re.sub(r"--.*$", "", sql, flags=re.MULTILINE)
    sql = re.sub(r"/\*.*?\*/", "", sql, flags=re.DOTALL)

    statements = []
    current: list[str] = []
    in_quote = False
    for char in sql:
        if char == "'":
            in_quote = not in_quote
        if char == ";" and not in_quote:
            stmt = "".join(current).strip()
            if stmt:
                statements.append(stmt)
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


async def migrate(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in order.

    Uses an advisory lock to prevent concurrent runs. Idempotent.

    Returns:
        int: Number of migrations applied in this run

    Raises:
        FileNotFoundError: If migrations directory not found
        RuntimeError: If another migration run holds the lock
    """
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    pool = await get_pool()
    applied_count = 0

    async with pool.acquire() as conn:
        lock_acquired = await conn.fetchval(
            "SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_ID
        )
        if not lock_acquired:
            raise RuntimeError(
                "Another migration is currently running. "
                "Wait for it to complete and try again."
            )

        try:
            await _ensure_migrations_table(conn)
            rows = await conn.fetch(f"SELECT version FROM {Table.SCHEMA_MIGRATIONS}")
            applied = {row["version"] for row in rows}

            for version, sql_path in pending_migrations(migrations_dir, applied):
                async with conn.transaction():
                    for statement in split_sql_statements(sql_path.read_text(encoding="utf-8")):
                        await conn.execute(statement)
                    await conn.execute(
                        f"INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename) VALUES ($1, $2)",
                        version,
                        sql_path.name,
                    )
                applied_count += 1
                logger.info(f"Applied migration {version:03d}: {sql_path.name}")

            return applied_count

        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


async def schema_version() -> Optional[int]:
    """Get the highest applied migration version, or None."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point for running migrations."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _run():
        applied = await migrate()
        version = await schema_version()
        logger.info(f"Applied {applied} migration(s). Current schema version: {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
