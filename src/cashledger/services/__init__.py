"""Pipeline services."""

from .importer import ImportedTransaction, ImportResult, ImportState, StatementImporter

__all__ = [
    "ImportedTransaction",
    "ImportResult",
    "ImportState",
    "StatementImporter",
]
