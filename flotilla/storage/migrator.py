"""Schema migrations for Postgres.

``sql/migrations/NNN_name.sql`` files are applied once each, in version
order, in a single transaction, and recorded in ``schema_migrations`` with
a sha256 of the file. A recorded migration whose file has changed since is
reported, never re-run. sqlite databases use ``Base.metadata.create_all``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from flotilla.errors import FlotillaError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "sql" / "migrations"

_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version    TEXT PRIMARY KEY,
    name       TEXT NOT NULL,
    checksum   TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def discover(directory: Path) -> list[Migration]:
    """Migrations in ``directory`` ordered by version; duplicate versions are an error."""
    if not directory.is_dir():
        logger.debug("No migrations directory at %s", directory)
        return []

    migrations: dict[str, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        version = path.stem.partition("_")[0]
        if version in migrations:
            raise FlotillaError(f"Duplicate migration version {version}: {path.name}")
        migrations[version] = Migration(version, path.stem, path.read_text(encoding="utf-8"))
    return list(migrations.values())


async def run_migrations(engine: AsyncEngine, directory: Path | None = None) -> list[str]:
    """Apply pending migrations; returns the names applied by this call."""
    migrations = discover(directory or MIGRATIONS_DIR)
    if not migrations:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        await conn.execute(text(_TRACKING_TABLE))
        rows = await conn.execute(text("SELECT version, checksum FROM schema_migrations"))
        recorded = {version: checksum for version, checksum in rows.all()}

        for migration in migrations:
            checksum = recorded.get(migration.version)
            if checksum is not None:
                if checksum != migration.checksum:
                    logger.warning("Migration %s was modified after it was applied", migration.name)
                continue

            logger.info("Applying migration %s", migration.name)
            # Files hold several statements; asyncpg only runs those outside a prepared statement
            raw = await conn.get_raw_connection()
            await raw.driver_connection.execute(migration.sql)
            await conn.execute(
                text("INSERT INTO schema_migrations (version, name, checksum) VALUES (:v, :n, :c)"),
                {"v": migration.version, "n": migration.name, "c": migration.checksum},
            )
            applied.append(migration.name)

    if applied:
        logger.info("Applied %d migration(s): %s", len(applied), ", ".join(applied))
    else:
        logger.debug("Schema up to date (%d migrations)", len(migrations))
    return applied
