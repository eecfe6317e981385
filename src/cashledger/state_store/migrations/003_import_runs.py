"""
Migration 003: Add import_runs table.

One row per batch import with its batch output and per-record errors.
"""

import sqlite3

VERSION = 3
NAME = "import_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create import_runs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_id INTEGER NOT NULL,
            state TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            summary_json TEXT NOT NULL,
            errors_json TEXT NOT NULL,
            FOREIGN KEY (company_id) REFERENCES companies(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_import_runs_company ON import_runs(company_id)"
    )
