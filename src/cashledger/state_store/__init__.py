"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Companies and cash balances
- Ledger transactions and review state
- Invoices and bills
- Subscriptions, recurring expenses, budgets and alerts
- Import runs

Enforces one vendor key per subscription / recurring expense and one
budget alert per (company, category, threshold, month).
"""

from .sqlite_store import PaymentApplication, ReviewUpdate, StateStore

__all__ = [
    "StateStore",
    "PaymentApplication",
    "ReviewUpdate",
]
