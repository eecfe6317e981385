"""
Migration 001: Add subscriptions and recurring_expenses tables.

Both tables are keyed by (company_id, vendor_key) where vendor_key is the
normalized vendor slug, so the same vendor can never produce two rows.
"""

import sqlite3

VERSION = 1
NAME = "recurrence"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create subscriptions and recurring_expenses tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_id INTEGER NOT NULL,
            vendor_key TEXT NOT NULL,
            name TEXT NOT NULL,
            amount TEXT NOT NULL,
            billing_cycle TEXT NOT NULL,  -- weekly, monthly, quarterly, yearly
            start_date TEXT NOT NULL,
            last_billed_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            category TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (company_id, vendor_key),
            FOREIGN KEY (company_id) REFERENCES companies(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS recurring_expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_id INTEGER NOT NULL,
            vendor_key TEXT NOT NULL,
            description TEXT NOT NULL,
            amount TEXT NOT NULL,
            frequency TEXT NOT NULL,
            category TEXT NOT NULL,
            start_date TEXT NOT NULL,
            last_payment_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (company_id, vendor_key),
            FOREIGN KEY (company_id) REFERENCES companies(id)
        )
    """
    )
