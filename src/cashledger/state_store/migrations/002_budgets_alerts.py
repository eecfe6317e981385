"""
Migration 002: Add budgets and alerts tables.

Budget alerts are unique per (company_id, category, threshold, month_key),
enforced by a partial unique index so repeated audits in the same month
cannot create a second alert for the same threshold.
"""

import sqlite3

VERSION = 2
NAME = "budgets_alerts"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create budgets and alerts tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_id INTEGER NOT NULL,
            category TEXT NOT NULL,
            monthly_limit TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (company_id, category),
            FOREIGN KEY (company_id) REFERENCES companies(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_id INTEGER NOT NULL,
            alert_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            message TEXT NOT NULL,
            category TEXT,
            threshold INTEGER,
            month_key TEXT,  -- YYYY-MM
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (company_id) REFERENCES companies(id)
        )
    """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_budget_key
        ON alerts(company_id, category, threshold, month_key)
        WHERE alert_type = 'budget'
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_company ON alerts(company_id, alert_type)")
