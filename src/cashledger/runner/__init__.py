"""
CLI runner module.

Provides commands:
- init: Default config and database
- company: Create / show / set cash balance
- import: Statement rows into the ledger
- review: Work the review queue
- audit: Anomalies, integrity checks and alerts
- dedupe: Stored duplicate cleanup
- status: Companies and runway overview
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
