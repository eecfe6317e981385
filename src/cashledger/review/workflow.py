"""
Review queue state machine.

    auto_approved                       (terminal, set at insert time)
    pending_review -> approved          (terminal)
                   -> rejected          (terminal, still needs review)
                   -> recategorized     (terminal, confidence 100)

A transaction enters pending_review when its confidence is below the
review threshold or it carries an ambiguity flag. Only pending_review
transitions; every other source state raises InvalidTransition. Bulk
operations run item by item and report success or failure per id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..errors import CashLedgerError, InvalidTransition, NotFoundError
from ..matching.engine import ENTITY_BILL, ENTITY_INVOICE, MatchingEngine
from ..schemas.categories import Category
from ..schemas.ledger import LedgerTransaction, ReviewReason, ReviewStatus
from ..state_store.sqlite_store import ReviewUpdate

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

USER_CONFIRMED_CONFIDENCE = 100

TERMINAL_STATES = (
    ReviewStatus.AUTO_APPROVED,
    ReviewStatus.APPROVED,
    ReviewStatus.REJECTED,
    ReviewStatus.RECATEGORIZED,
)


def initial_status(needs_review: bool) -> ReviewStatus:
    """Entry state of a freshly inserted transaction."""
    return ReviewStatus.PENDING_REVIEW if needs_review else ReviewStatus.AUTO_APPROVED


@dataclass
class BulkReviewResult:
    """Per-id outcome of a bulk review action."""

    action: str
    succeeded: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "succeeded": self.succeeded,
            "failed": {str(k): v for k, v in self.failed.items()},
            "count": self.success_count,
        }


class ReviewQueue:
    """Manual disposition of low-confidence or ambiguous transactions."""

    def __init__(
        self, store: StateStore, config: Config, matcher: MatchingEngine | None = None
    ):
        self.store = store
        self.config = config
        self.matcher = matcher or MatchingEngine(store, config)

    def pending(self, company_id: int, page: int = 1, limit: int = 20) -> list[LedgerTransaction]:
        """Pending transactions, lowest confidence first (1-based pages)."""
        page = max(1, page)
        return self.store.pending_review(company_id, limit=limit, offset=(page - 1) * limit)

    def stats(self, company_id: int) -> dict[str, Any]:
        """Queue statistics: pending, reviewed today, reasons, status counts."""
        today = datetime.now(timezone.utc).date().isoformat()
        stats = self.store.pending_review_stats(company_id, reviewed_since=today)
        stats["reviewed_today"] = stats.pop("reviewed_since")
        stats["by_status"] = self.store.review_status_counts(company_id)
        return stats

    def _require_pending(self, company_id: int, txn_id: int) -> LedgerTransaction:
        txn = self.store.get_transaction(company_id, txn_id)
        if txn is None:
            raise NotFoundError(f"Transaction {txn_id} not found")
        if txn.review_status != ReviewStatus.PENDING_REVIEW:
            raise InvalidTransition(
                f"Transaction {txn_id} is {txn.review_status.value}, not pending_review"
            )
        return txn

    def _transition(
        self,
        company_id: int,
        txn_id: int,
        target: ReviewStatus,
        *,
        needs_review: bool,
        review_reason: ReviewReason | None,
        reviewed_by: str | None,
        notes: str,
        category: Category | None = None,
        confidence_score: int | None = None,
    ) -> LedgerTransaction:
        self._require_pending(company_id, txn_id)
        updated = self.store.update_review_state(
            company_id,
            txn_id,
            review_status=target,
            needs_review=needs_review,
            review_reason=review_reason,
            reviewed_by=reviewed_by,
            review_notes=notes,
            category=category,
            confidence_score=confidence_score,
            expected_status=ReviewStatus.PENDING_REVIEW,
        )
        if not updated:
            # Another reviewer got there first
            raise InvalidTransition(f"Transaction {txn_id} left pending_review concurrently")

        logger.info("Transaction %d: pending_review -> %s", txn_id, target.value)
        return self.store.get_transaction(company_id, txn_id)

    def approve(
        self,
        company_id: int,
        txn_id: int,
        notes: str | None = None,
        reviewed_by: str | None = None,
    ) -> LedgerTransaction:
        """Accept the classification as is."""
        return self._transition(
            company_id,
            txn_id,
            ReviewStatus.APPROVED,
            needs_review=False,
            review_reason=None,
            reviewed_by=reviewed_by,
            notes=notes or "Approved by user",
        )

    def reject(
        self,
        company_id: int,
        txn_id: int,
        reason: str | None = None,
        reviewed_by: str | None = None,
    ) -> LedgerTransaction:
        """Reject the classification; the transaction keeps needs_review."""
        return self._transition(
            company_id,
            txn_id,
            ReviewStatus.REJECTED,
            needs_review=True,
            review_reason=ReviewReason.USER_REJECTED,
            reviewed_by=reviewed_by,
            notes=reason or "Rejected by user",
        )

    def recategorize(
        self,
        company_id: int,
        txn_id: int,
        category: Category | str,
        notes: str | None = None,
        reviewed_by: str | None = None,
    ) -> LedgerTransaction:
        """Replace the category; a user-confirmed category has confidence 100.

        Raises:
            ValueError: If the category name is not a known category.
        """
        new_category = category if isinstance(category, Category) else Category(category)
        return self._transition(
            company_id,
            txn_id,
            ReviewStatus.RECATEGORIZED,
            needs_review=False,
            review_reason=None,
            reviewed_by=reviewed_by,
            notes=notes or "Recategorized by user",
            category=new_category,
            confidence_score=USER_CONFIRMED_CONFIDENCE,
        )

    def match_invoice(
        self, company_id: int, txn_id: int, invoice_id: int, reviewed_by: str | None = None
    ) -> LedgerTransaction:
        """Reconcile a pending credit with an invoice and approve it."""
        return self._match(company_id, txn_id, ENTITY_INVOICE, invoice_id, reviewed_by)

    def match_bill(
        self, company_id: int, txn_id: int, bill_id: int, reviewed_by: str | None = None
    ) -> LedgerTransaction:
        """Reconcile a pending debit with a bill and approve it."""
        return self._match(company_id, txn_id, ENTITY_BILL, bill_id, reviewed_by)

    def _match(
        self,
        company_id: int,
        txn_id: int,
        entity_type: str,
        entity_id: int,
        reviewed_by: str | None,
    ) -> LedgerTransaction:
        self._require_pending(company_id, txn_id)
        review = ReviewUpdate(
            review_status=ReviewStatus.APPROVED,
            reviewed_by=reviewed_by,
            confidence_score=USER_CONFIRMED_CONFIDENCE,
            expected_status=ReviewStatus.PENDING_REVIEW,
        )
        self.matcher.link_transaction(company_id, txn_id, entity_type, entity_id, review=review)
        logger.info("Transaction %d: pending_review -> %s", txn_id, ReviewStatus.APPROVED.value)
        return self.store.get_transaction(company_id, txn_id)

    def bulk_approve(
        self, company_id: int, txn_ids: list[int], reviewed_by: str | None = None
    ) -> BulkReviewResult:
        return self._bulk(
            "approve",
            txn_ids,
            lambda txn_id: self.approve(
                company_id, txn_id, notes="Bulk approved by user", reviewed_by=reviewed_by
            ),
        )

    def bulk_reject(
        self,
        company_id: int,
        txn_ids: list[int],
        reason: str | None = None,
        reviewed_by: str | None = None,
    ) -> BulkReviewResult:
        return self._bulk(
            "reject",
            txn_ids,
            lambda txn_id: self.reject(
                company_id,
                txn_id,
                reason=reason or "Bulk rejected by user",
                reviewed_by=reviewed_by,
            ),
        )

    def _bulk(self, action: str, txn_ids: list[int], operation) -> BulkReviewResult:
        result = BulkReviewResult(action=action)
        for txn_id in txn_ids:
            try:
                operation(txn_id)
            except (CashLedgerError, ValueError) as e:
                logger.warning("Bulk %s failed for transaction %d: %s", action, txn_id, e)
                result.failed[txn_id] = str(e)
            else:
                result.succeeded.append(txn_id)

        logger.info(
            "Bulk %s: %d succeeded, %d failed", action, result.success_count, len(result.failed)
        )
        return result
