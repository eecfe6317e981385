"""
Versioned schema migrations for the SQLite state store.
"""

from .runner import MigrationRunner, load_migrations

__all__ = ["MigrationRunner", "load_migrations"]
