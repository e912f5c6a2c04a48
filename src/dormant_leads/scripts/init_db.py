"""Initialize the lead database by running the migration."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import asyncpg

from dormant_leads.core.config import Settings
from dormant_leads.core.database import Database

logger = logging.getLogger(__name__)

MIGRATION_PATH = (
    Path(__file__).parent.parent.parent.parent / "migrations" / "001_dormant_schema.sql"
)


async def run_migration(settings: Settings | None = None) -> None:
    settings = settings or Settings()

    if settings.use_sqlite:
        # The SQLite backend creates its schema on connect
        db = Database(settings)
        await db.connect()
        await db.close()
        logger.info("SQLite schema ready at %s", settings.sqlite_path)
        return

    if not MIGRATION_PATH.exists():
        logger.error("Migration file not found: %s", MIGRATION_PATH)
        return

    sql = MIGRATION_PATH.read_text(encoding="utf-8")

    # Connect to the default database to create the target database if needed
    base_url, db_name = settings.database_url.rsplit("/", 1)

    try:
        conn = await asyncpg.connect(f"{base_url}/postgres")
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", db_name
            )
            if not exists:
                await conn.execute(f'CREATE DATABASE "{db_name}"')
                logger.info("Created database: %s", db_name)
            else:
                logger.info("Database already exists: %s", db_name)
        finally:
            await conn.close()
    except (OSError, asyncpg.PostgresError) as e:
        logger.warning("Could not create database (may already exist): %s", e)

    conn = await asyncpg.connect(settings.database_url)
    try:
        await conn.execute(sql)
        logger.info("Migration completed successfully.")
    finally:
        await conn.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(run_migration())


if __name__ == "__main__":
    main()
