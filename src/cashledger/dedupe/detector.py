"""
Duplicate transaction detection.

Prevents double-counting when statements are re-imported or overlap.
Tiers are tried in order and the first hit wins:

1. Bank transaction id contained in an existing description -> 100
2. Reference number contained in an existing description -> 95
3. Same amount (within 0.5%) within +-1 day and description
   similarity >= 0.8 -> round(similarity * 100)
4. Exactly the same absolute amount on the same calendar day -> 85

The check only reads the store. Accepting a record is the caller's job,
which is why a resubmitted record always finds itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from rapidfuzz.distance import Levenshtein

from ..schemas.ledger import LedgerTransaction, NormalizedRecord

if TYPE_CHECKING:
    from ..config import DuplicateConfig
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

BANK_ID_CONFIDENCE = 100
REFERENCE_CONFIDENCE = 95
SAME_DAY_AMOUNT_CONFIDENCE = 85


@dataclass
class DuplicateCheckResult:
    """Outcome of a duplicate check. A duplicate is a value, not an error."""

    is_duplicate: bool
    matched_id: int | None = None
    confidence: int = 0
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "matched_id": self.matched_id,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass
class DuplicateGroup:
    """Stored transactions that look like copies of each other."""

    transactions: list[LedgerTransaction]
    reason: str

    @property
    def keeper(self) -> LedgerTransaction:
        """Oldest transaction of the group (the one to keep)."""
        return min(self.transactions, key=lambda t: (t.date, t.id))

    @property
    def extras(self) -> list[LedgerTransaction]:
        keep = self.keeper
        return [t for t in self.transactions if t.id != keep.id]


@dataclass
class DedupeReport:
    """Result of a stored-duplicate cleanup run."""

    duplicates_found: int = 0
    duplicates_removed: int = 0
    removed_ids: list[int] = field(default_factory=list)
    cash_reversed: Decimal = Decimal("0.00")
    dry_run: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "duplicates_found": self.duplicates_found,
            "duplicates_removed": self.duplicates_removed,
            "removed_ids": self.removed_ids,
            "cash_reversed": str(self.cash_reversed),
            "dry_run": self.dry_run,
        }


def description_similarity(first: str, second: str) -> float:
    """Similarity of two descriptions in [0, 1].

    Word overlap over words longer than two characters (a word matches if
    either contains the other). When one side has no such words, falls
    back to the normalized Levenshtein similarity.
    """
    s1 = (first or "").lower().strip()
    s2 = (second or "").lower().strip()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    words1 = [w for w in s1.split() if len(w) > 2]
    words2 = [w for w in s2.split() if len(w) > 2]

    if not words1 or not words2:
        return Levenshtein.normalized_similarity(s1, s2)

    matched = sum(
        1 for w1 in words1 if any(w1 == w2 or w1 in w2 or w2 in w1 for w2 in words2)
    )
    return matched / max(len(words1), len(words2))


class DuplicateDetector:
    """Tiered duplicate detection against the ledger of one company."""

    def __init__(self, store: StateStore, config: DuplicateConfig):
        self.store = store
        self.config = config

    def check(self, record: NormalizedRecord, company_id: int) -> DuplicateCheckResult:
        """Check whether a record is already in the ledger.

        Args:
            record: Normalized statement row
            company_id: Company whose ledger is searched

        Returns:
            DuplicateCheckResult (is_duplicate False when no tier matches)
        """
        if record.bank_transaction_id:
            existing = self.store.find_transaction_containing(
                company_id, record.bank_transaction_id
            )
            if existing:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_id=existing.id,
                    confidence=BANK_ID_CONFIDENCE,
                    reason="Bank transaction ID match",
                )

        if record.reference_number:
            existing = self.store.find_transaction_containing(company_id, record.reference_number)
            if existing:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_id=existing.id,
                    confidence=REFERENCE_CONFIDENCE,
                    reason="Reference number match",
                )

        return self._check_content(record, company_id)

    def _check_content(self, record: NormalizedRecord, company_id: int) -> DuplicateCheckResult:
        window = timedelta(days=self.config.date_tolerance_days)
        candidates = self.store.transactions_between(
            company_id, record.date - window, record.date + window
        )

        amount = record.abs_amount
        tolerance = amount * Decimal(str(self.config.amount_tolerance))
        amount_matches = [c for c in candidates if abs(c.abs_amount - amount) <= tolerance]

        for candidate in amount_matches:
            if not candidate.description:
                continue
            similarity = description_similarity(record.description, candidate.description)
            if similarity >= self.config.similarity_threshold:
                percent = round(similarity * 100)
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_id=candidate.id,
                    confidence=percent,
                    reason=f"Content match: {percent}% description similarity",
                )

        for candidate in amount_matches:
            if candidate.date == record.date and candidate.abs_amount == amount:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_id=candidate.id,
                    confidence=SAME_DAY_AMOUNT_CONFIDENCE,
                    reason="Exact amount match on same day",
                )

        return DuplicateCheckResult(is_duplicate=False)

    def check_batch(
        self, records: list[NormalizedRecord], company_id: int
    ) -> dict[int, DuplicateCheckResult]:
        """Check several records against the stored ledger (index -> result).

        Records are not checked against each other; the importer handles
        in-batch repeats by persisting each accepted row before checking
        the next one.
        """
        return {i: self.check(record, company_id) for i, record in enumerate(records)}

    def find_existing_duplicates(self, company_id: int) -> list[DuplicateGroup]:
        """Group stored transactions that look like duplicates of each other.

        Same absolute amount, dates within the tolerance window and
        similar descriptions.
        """
        transactions = self.store.list_transactions(company_id)
        tolerance_days = self.config.date_tolerance_days
        processed: set[int] = set()
        groups: list[DuplicateGroup] = []

        for i, txn in enumerate(transactions):
            if txn.id in processed:
                continue
            members = [txn]

            for candidate in transactions[i + 1 :]:
                if candidate.id in processed:
                    continue
                if abs((txn.date - candidate.date).days) > tolerance_days:
                    continue
                if txn.abs_amount != candidate.abs_amount:
                    continue
                similarity = description_similarity(txn.description, candidate.description)
                if similarity >= self.config.similarity_threshold:
                    members.append(candidate)
                    processed.add(candidate.id)

            if len(members) > 1:
                processed.add(txn.id)
                groups.append(
                    DuplicateGroup(
                        transactions=members,
                        reason=(
                            f"{len(members)} transactions with same amount within "
                            f"{tolerance_days} day(s) and similar description"
                        ),
                    )
                )

        return groups

    def remove_duplicates(self, company_id: int, dry_run: bool = True) -> DedupeReport:
        """Remove stored duplicates, keeping the oldest of each group.

        Deleting a transaction reverses its effect on the cash balance.
        With dry_run nothing is changed.
        """
        groups = self.find_existing_duplicates(company_id)
        to_remove = [t.id for group in groups for t in group.extras]

        report = DedupeReport(duplicates_found=len(to_remove), dry_run=dry_run)
        if dry_run or not to_remove:
            return report

        report.cash_reversed = self.store.delete_transactions(company_id, to_remove)
        report.duplicates_removed = len(to_remove)
        report.removed_ids = to_remove
        logger.info(
            "Removed %d duplicate transactions for company %s (cash reversed %s)",
            len(to_remove),
            company_id,
            report.cash_reversed,
        )
        return report
