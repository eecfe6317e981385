"""Manual review queue for low-confidence classifications."""

from .workflow import TERMINAL_STATES, BulkReviewResult, ReviewQueue, initial_status

__all__ = ["TERMINAL_STATES", "BulkReviewResult", "ReviewQueue", "initial_status"]
