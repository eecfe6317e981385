"""Bank statement import pipeline.

Per row, in order:
    normalize -> duplicate check -> classify -> recurrence -> reconcile / insert

After the batch the net cash delta of the inserted rows is applied to the
company balance in one atomic update and the runway is recomputed.

Rows are processed strictly one after another so that every accepted row
is persisted before the next one is duplicate-checked. Imports for the
same company are serialized by a per-company lock; different companies
import concurrently.

Failure handling:
- Skippable rows (no money movement, balance lines, unparseable date or
  amount) are counted, never reported as errors.
- Any other per-row failure is appended to errors[] and the batch goes on.
- PersistenceUnavailable aborts the batch.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from ..classifier import TransactionClassifier
from ..dedupe import DuplicateDetector
from ..errors import CashLedgerError, ParseError, PersistenceUnavailable
from ..ledger.cash import CashLedger, RunwayMetrics
from ..matching import ENTITY_BILL, ENTITY_INVOICE, MatchingEngine
from ..recurrence import RecurrenceDetector
from ..review import initial_status
from ..schemas.ledger import (
    ZERO,
    Direction,
    NewLedgerTransaction,
    NormalizedRecord,
    RawTransactionRecord,
)

if TYPE_CHECKING:
    from ..classifier import ClassificationOracle, ClassificationResult
    from ..config import Config
    from ..matching import ReconcileResult
    from ..recurrence import RecurrenceOutcome
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class ImportState(str, Enum):
    """Possible states of an import run."""

    PROCESSING = "PROCESSING"
    UPDATING_CASH = "UPDATING_CASH"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class ImportedTransaction:
    """One ledger entry created by an import."""

    transaction_id: int
    date: str
    description: str
    amount: Decimal
    category: str
    transaction_type: str
    confidence: int
    needs_review: bool
    review_reason: str | None
    matched_entity: str | None = None
    matched_id: int | None = None
    flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "date": self.date,
            "description": self.description,
            "amount": str(self.amount),
            "category": self.category,
            "transaction_type": self.transaction_type,
            "confidence": self.confidence,
            "needs_review": self.needs_review,
            "review_reason": self.review_reason,
            "matched_entity": self.matched_entity,
            "matched_id": self.matched_id,
            "flags": self.flags,
        }


@dataclass
class ImportResult:
    """Batch output of one import."""

    state: ImportState
    transactions: list[ImportedTransaction] = field(default_factory=list)
    cash_balance_change: Decimal = ZERO
    new_cash_balance: Decimal | None = None
    bills_paid: int = 0
    invoices_paid: int = 0
    duplicates_skipped: int = 0
    rows_skipped: int = 0
    needs_review_count: int = 0
    runway: RunwayMetrics | None = None
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def new_transactions(self) -> int:
        return len(self.transactions)

    @property
    def average_confidence(self) -> float:
        if not self.transactions:
            return 0.0
        return sum(t.confidence for t in self.transactions) / len(self.transactions)

    @property
    def success(self) -> bool:
        """Return True if the import completed without a fatal error."""
        return self.state == ImportState.COMPLETED

    def summary(self) -> dict[str, Any]:
        """Counters without the per-transaction list."""
        return {
            "state": self.state.value,
            "cash_balance_change": str(self.cash_balance_change),
            "new_cash_balance": (
                str(self.new_cash_balance) if self.new_cash_balance is not None else None
            ),
            "bills_paid": self.bills_paid,
            "invoices_paid": self.invoices_paid,
            "new_transactions": self.new_transactions,
            "needs_review_count": self.needs_review_count,
            "duplicates_skipped": self.duplicates_skipped,
            "rows_skipped": self.rows_skipped,
            "average_confidence": round(self.average_confidence, 1),
            "duration_ms": self.duration_ms,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.summary()
        data["transactions"] = [t.to_dict() for t in self.transactions]
        data["runway"] = self.runway.to_dict() if self.runway else None
        data["errors"] = self.errors
        return data


class StatementImporter:
    """Runs normalized statement rows through the ledger pipeline.

    Usage:
        importer = StatementImporter(state_store, config)
        result = importer.import_rows(company_id, rows)
    """

    _locks: dict[int, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        oracle: ClassificationOracle | None = None,
    ) -> None:
        self.store = state_store
        self.config = config

        self.dedupe = DuplicateDetector(state_store, config.duplicates)
        self.classifier = TransactionClassifier(state_store, config, oracle=oracle)
        self.recurrence = RecurrenceDetector(state_store)
        self.matcher = MatchingEngine(state_store, config)
        self.ledger = CashLedger(state_store, config)

    @classmethod
    def company_lock(cls, company_id: int) -> threading.Lock:
        with cls._locks_guard:
            lock = cls._locks.get(company_id)
            if lock is None:
                lock = cls._locks[company_id] = threading.Lock()
            return lock

    def import_rows(
        self,
        company_id: int,
        rows: Iterable[RawTransactionRecord | dict[str, Any]],
    ) -> ImportResult:
        """Import one statement batch for a company.

        Args:
            company_id: Target company
            rows: Parser output, as RawTransactionRecord or plain dicts

        Returns:
            ImportResult; state FAILED only when persistence is unavailable.
        """
        with self.company_lock(company_id):
            return self._import_locked(company_id, list(rows))

    def _import_locked(self, company_id: int, rows: list[Any]) -> ImportResult:
        start_time = time.time()
        started_at = datetime.now(timezone.utc).isoformat()
        result = ImportResult(state=ImportState.PROCESSING)

        try:
            self.store.require_company(company_id)
            logger.info("Importing %d rows for company %d", len(rows), company_id)

            for index, row in enumerate(rows, start=1):
                record = self._normalize(index, row, result)
                if record is None:
                    continue
                try:
                    self._process_record(company_id, record, result)
                except PersistenceUnavailable:
                    raise
                except (CashLedgerError, ValueError) as e:
                    logger.warning("Row %d failed: %s", index, e)
                    result.errors.append(f"Row {index}: {e}")

            result.state = ImportState.UPDATING_CASH
            self._apply_cash(company_id, result)
            result.runway = self.ledger.recalculate(company_id)
            result.state = ImportState.COMPLETED

        except PersistenceUnavailable as e:
            logger.exception("Import for company %d aborted: %s", company_id, e)
            result.errors.append(f"Fatal error: {e}")
            if result.state == ImportState.PROCESSING:
                self._salvage_cash(company_id, result)
            result.state = ImportState.FAILED

        result.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Import for company %d %s: %d new, %d duplicates, %d need review, cash %+.2f",
            company_id,
            result.state.value,
            result.new_transactions,
            result.duplicates_skipped,
            result.needs_review_count,
            result.cash_balance_change,
        )
        self._record_run(company_id, started_at, result)
        return result

    def _normalize(self, index: int, row: Any, result: ImportResult) -> NormalizedRecord | None:
        try:
            raw = (
                row if isinstance(row, RawTransactionRecord) else RawTransactionRecord.from_dict(row)
            )
        except ParseError as e:
            logger.warning("Row %d rejected: %s", index, e)
            result.errors.append(f"Row {index}: {e}")
            return None
        try:
            record = raw.normalize()
        except ParseError as e:
            logger.debug("Row %d skipped: %s", index, e)
            result.rows_skipped += 1
            return None
        if record is None:
            result.rows_skipped += 1
        return record

    def _process_record(
        self, company_id: int, record: NormalizedRecord, result: ImportResult
    ) -> None:
        duplicate = self.dedupe.check(record, company_id)
        if duplicate.is_duplicate:
            logger.debug(
                "Duplicate of transaction %s (%s, %d%%)",
                duplicate.matched_id,
                duplicate.reason,
                duplicate.confidence,
            )
            result.duplicates_skipped += 1
            return

        classification = self.classifier.classify(
            record.description, record.abs_amount, record.date, record.direction, company_id
        )

        recurrence = None
        if record.direction == Direction.DEBIT and classification.matched_bill_id is None:
            recurrence = self.recurrence.record(
                company_id,
                record.description,
                record.abs_amount,
                record.date,
                classification.category,
                classifier_recurring=classification.is_recurring,
                classifier_frequency=classification.suggested_frequency,
            )

        txn = self._build_transaction(company_id, record, classification, recurrence)
        reconciled = self.matcher.reconcile(
            txn, company_id, oracle_confidence=classification.oracle_confidence
        )
        self._collect(record, txn, reconciled, result)

    def _build_transaction(
        self,
        company_id: int,
        record: NormalizedRecord,
        classification: ClassificationResult,
        recurrence: RecurrenceOutcome | None,
    ) -> NewLedgerTransaction:
        if recurrence is not None:
            expense_type, frequency = recurrence.expense_type, recurrence.frequency
        else:
            expense_type = classification.expense_type
            frequency = classification.suggested_frequency if classification.is_recurring else None

        # Identifiers are kept so a resubmitted row hits the strong duplicate tiers
        identifiers = [i for i in (record.reference_number, record.bank_transaction_id) if i]
        reference = " ".join(dict.fromkeys(identifiers)) or classification.extracted_reference

        return NewLedgerTransaction(
            company_id=company_id,
            date=record.date,
            description=record.description,
            amount=record.amount,
            category=classification.category,
            transaction_type=classification.transaction_type,
            confidence_score=classification.confidence,
            needs_review=classification.needs_review,
            review_status=initial_status(classification.needs_review),
            review_reason=classification.review_reason,
            vendor_name=classification.vendor_name,
            payment_method=classification.payment_method,
            reference_number=reference,
            expense_type=expense_type,
            frequency=frequency,
            matched_invoice_id=classification.matched_invoice_id,
            matched_bill_id=classification.matched_bill_id,
            classification_reasoning=list(classification.reasoning),
            flags=list(classification.flags),
        )

    def _collect(
        self,
        record: NormalizedRecord,
        txn: NewLedgerTransaction,
        reconciled: ReconcileResult,
        result: ImportResult,
    ) -> None:
        result.cash_balance_change += record.amount
        if txn.needs_review:
            result.needs_review_count += 1
        if reconciled.payment is not None:
            if reconciled.entity_type == ENTITY_INVOICE:
                result.invoices_paid += 1
            elif reconciled.entity_type == ENTITY_BILL:
                result.bills_paid += 1

        result.transactions.append(
            ImportedTransaction(
                transaction_id=reconciled.transaction_id,
                date=record.date.isoformat(),
                description=record.description,
                amount=record.amount,
                category=txn.category.value,
                transaction_type=txn.transaction_type.value,
                confidence=txn.confidence_score,
                needs_review=txn.needs_review,
                review_reason=txn.review_reason.value if txn.review_reason else None,
                matched_entity=reconciled.entity_type,
                matched_id=reconciled.entity_id,
                flags=list(txn.flags),
            )
        )

    def _apply_cash(self, company_id: int, result: ImportResult) -> None:
        _, result.new_cash_balance = self.ledger.apply_batch_delta(
            company_id, result.cash_balance_change
        )

    def _salvage_cash(self, company_id: int, result: ImportResult) -> None:
        """Apply the delta of rows persisted before an abort, if the store answers."""
        if result.cash_balance_change == 0:
            return
        try:
            self._apply_cash(company_id, result)
        except PersistenceUnavailable as e:
            result.errors.append(
                f"Cash delta {result.cash_balance_change} of persisted rows not applied: {e}"
            )

    def _record_run(self, company_id: int, started_at: str, result: ImportResult) -> None:
        try:
            self.store.record_import_run(
                company_id, result.state.value, started_at, result.summary(), result.errors
            )
        except PersistenceUnavailable as e:
            logger.error("Could not record import run for company %d: %s", company_id, e)
