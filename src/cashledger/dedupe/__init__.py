"""Duplicate detection for ingested bank rows."""

from .detector import (
    DedupeReport,
    DuplicateCheckResult,
    DuplicateDetector,
    DuplicateGroup,
    description_similarity,
)

__all__ = [
    "DedupeReport",
    "DuplicateCheckResult",
    "DuplicateDetector",
    "DuplicateGroup",
    "description_similarity",
]
