"""
Forward-only schema migrations for the state store.

Each ``NNN_<name>.py`` module in this package defines ``VERSION``, ``NAME``
and ``upgrade(conn)``. Applied versions are recorded in the ``migrations``
table; a version is applied at most once, in ascending order.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def load_migrations() -> list[Migration]:
    """Migrations shipped with the package, ordered by version.

    Raises:
        RuntimeError: If two modules declare the same version.
    """
    migrations = []
    for py_file in Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py"):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(Migration(module.VERSION, module.NAME, module.upgrade))

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise RuntimeError(f"Duplicate migration versions: {sorted(versions)}")
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """Applies pending migrations on one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def applied_versions(self) -> set[int]:
        return {row[0] for row in self.conn.execute("SELECT version FROM migrations")}

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded.

        Each migration commits together with its bookkeeping row; a failure
        rolls that migration back and propagates.

        Returns:
            Versions applied by this call.
        """
        applied = self.applied_versions()
        done = []
        for migration in load_migrations():
            if migration.version in applied:
                continue
            logger.info("Applying migration %03d_%s", migration.version, migration.name)
            try:
                migration.upgrade(self.conn)
                self.conn.execute(
                    "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (
                        migration.version,
                        migration.name,
                        datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                    ),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                logger.error("Migration %03d_%s failed", migration.version, migration.name)
                raise
            done.append(migration.version)

        if done:
            logger.info("Applied migrations: %s", done)
        return done
