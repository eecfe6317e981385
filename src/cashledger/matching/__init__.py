"""Reconciliation of bank transactions with invoices and bills."""

from .engine import (
    ENTITY_BILL,
    ENTITY_INVOICE,
    CandidateMatch,
    MatchDecision,
    MatchingEngine,
    MatchScore,
    ReconcileResult,
    name_similarity,
)

__all__ = [
    "ENTITY_BILL",
    "ENTITY_INVOICE",
    "CandidateMatch",
    "MatchDecision",
    "MatchScore",
    "MatchingEngine",
    "ReconcileResult",
    "name_similarity",
]
