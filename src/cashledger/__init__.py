"""
Bank statement rows → Deduplicated, classified ledger → Reconciled AR/AP → Cash runway

A deterministic, testable pipeline that turns normalized bank-statement rows
into ledger transactions with confidence scoring, a manual review queue,
invoice/bill reconciliation and periodic anomaly and integrity auditing.
"""

__version__ = "0.1.0"
