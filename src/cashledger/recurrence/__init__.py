"""Recurring expense and subscription detection."""

from .detector import (
    ExpenseClassification,
    PatternAnalysis,
    PatternConfidence,
    RecurrenceDetector,
    RecurrenceOutcome,
    SubscriptionCandidate,
    analyze_pattern,
    cadence_for_interval,
)

__all__ = [
    "ExpenseClassification",
    "PatternAnalysis",
    "PatternConfidence",
    "RecurrenceDetector",
    "RecurrenceOutcome",
    "SubscriptionCandidate",
    "analyze_pattern",
    "cadence_for_interval",
]
