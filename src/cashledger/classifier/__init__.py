"""Transaction classification: keyword rules, optional oracle, layered service."""

from .oracle import (
    ClassificationOracle,
    OracleOutcome,
    OracleRequest,
    OracleVerdict,
    validate_verdict,
)
from .rules import RuleEngine, RuleResult
from .service import (
    FLAG_MULTIPLE_MATCHES,
    FLAG_NO_MATCH,
    ClassificationRequest,
    ClassificationResult,
    TransactionClassifier,
    review_gate,
)

__all__ = [
    "FLAG_MULTIPLE_MATCHES",
    "FLAG_NO_MATCH",
    "ClassificationOracle",
    "ClassificationRequest",
    "ClassificationResult",
    "OracleOutcome",
    "OracleRequest",
    "OracleVerdict",
    "RuleEngine",
    "RuleResult",
    "TransactionClassifier",
    "review_gate",
    "validate_verdict",
]
