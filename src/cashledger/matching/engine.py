"""Matching and reconciliation of bank transactions against invoices and bills.

A credit can settle an open invoice, a debit an open bill. Reconciling a
transaction links it to exactly one document and applies the full amount
to that document; nothing is ever allocated across several documents.

Decision order for a transaction about to be persisted:

1. A document id chosen by the classifier. Ids that came from the oracle
   are trusted only when the raw oracle confidence reaches
   classifier.oracle_match_floor; every id must name an open document of
   the same company and the right direction.
2. Heuristic fallback over open documents: amount equal within
   matching.amount_tolerance currency units, OR counterparty name / document
   number contained in the description. First match wins.
3. Otherwise a plain revenue (credit) or expense (debit) entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from rapidfuzz.distance import Levenshtein

from ..classifier.service import FLAG_NO_MATCH, review_gate
from ..errors import NotFoundError
from ..schemas.ledger import (
    Bill,
    Direction,
    Invoice,
    NewLedgerTransaction,
    ReviewStatus,
    TransactionType,
)

if TYPE_CHECKING:
    from ..config import Config, MatchingConfig
    from ..state_store import StateStore
    from ..state_store.sqlite_store import PaymentApplication, ReviewUpdate

logger = logging.getLogger(__name__)

ENTITY_INVOICE = "invoice"
ENTITY_BILL = "bill"


@dataclass
class MatchScore:
    """Individual signal contribution to a candidate score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Points contributed by this signal."""
        return round(self.score * self.weight)


@dataclass
class CandidateMatch:
    """An open document scored against a bank transaction."""

    entity_type: str
    entity_id: int
    document_number: str
    counterparty: str
    amount: Decimal
    total_score: int
    signals: list[MatchScore] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "document_number": self.document_number,
            "counterparty": self.counterparty,
            "amount": str(self.amount),
            "total_score": self.total_score,
            "signals": [
                {
                    "signal": s.signal,
                    "score": s.score,
                    "weight": s.weight,
                    "weighted_score": s.weighted_score,
                    "detail": s.detail,
                }
                for s in self.signals
            ],
            "reasons": self.reasons,
        }


@dataclass
class MatchDecision:
    """Which document (if any) a transaction settles, and why."""

    transaction_type: TransactionType
    entity_type: str | None = None
    entity_id: int | None = None
    source: str = "none"
    reason: str = ""

    @property
    def matched(self) -> bool:
        return self.entity_id is not None


@dataclass
class ReconcileResult:
    """Outcome of reconcile(): the persisted transaction and its settlement."""

    matched: bool
    transaction_type: TransactionType
    transaction_id: int | None = None
    entity_type: str | None = None
    entity_id: int | None = None
    source: str = "none"
    payment: PaymentApplication | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "transaction_type": self.transaction_type.value,
            "transaction_id": self.transaction_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "source": self.source,
            "payment": self.payment.to_dict() if self.payment else None,
        }


def name_similarity(text: str, name: str) -> float:
    """Similarity of a counterparty name to a description, 0..1.

    Containment either way scores 0.9. Otherwise the share of words (3+
    characters) that overlap, if at least half do; otherwise the normalized
    Levenshtein similarity of the whole strings.
    """
    first = text.lower().strip()
    second = name.lower().strip()
    if not first or not second:
        return 0.0
    if second in first or first in second:
        return 0.9

    words1 = [w for w in first.split() if len(w) >= 3]
    words2 = [w for w in second.split() if len(w) >= 3]
    overlap = sum(1 for w1 in words1 if any(w1 in w2 or w2 in w1 for w2 in words2))
    word_similarity = overlap / max(len(words1), len(words2), 1)
    if word_similarity >= 0.5:
        return word_similarity

    return Levenshtein.normalized_similarity(first, second)


def document_number(document: Invoice | Bill) -> str:
    return document.invoice_number if isinstance(document, Invoice) else document.bill_number


def counterparty(document: Invoice | Bill) -> str:
    return document.customer_name if isinstance(document, Invoice) else document.vendor_name


def _entity_type(document: Invoice | Bill) -> str:
    return ENTITY_INVOICE if isinstance(document, Invoice) else ENTITY_BILL


def _payment_type(entity_type: str) -> TransactionType:
    if entity_type == ENTITY_INVOICE:
        return TransactionType.INVOICE_PAYMENT
    return TransactionType.BILL_PAYMENT


def _plain_type(direction: Direction) -> TransactionType:
    return TransactionType.REVENUE if direction == Direction.CREDIT else TransactionType.EXPENSE


class MatchingEngine:
    """Links bank transactions to open invoices and bills.

    Candidate scoring (for review suggestions) adds up weighted signals:
    - Amount: within 1 unit (40) or within 1% (25)
    - Document number found in the description (30)
    - Counterparty name similarity above 0.6 (20 x similarity)
    - Payment date within 30 days of the due date (10, decaying)

    Candidates below matching.min_candidate_score are dropped.
    """

    WEIGHT_EXACT_AMOUNT = 40
    WEIGHT_CLOSE_AMOUNT = 25
    WEIGHT_DOCUMENT_NUMBER = 30
    WEIGHT_NAME = 20
    WEIGHT_DATE = 10

    CLOSE_AMOUNT_PERCENT = Decimal("0.01")
    NAME_THRESHOLD = 0.6
    DATE_PROXIMITY_DAYS = 30

    def __init__(self, state_store: StateStore, config: Config) -> None:
        """Initialize the matching engine.

        Args:
            state_store: Repository for documents and transactions.
            config: Application configuration.
        """
        self.store = state_store
        self.config = config
        self.match_config: MatchingConfig = config.matching

    # Decision

    def resolve(
        self,
        description: str,
        amount: Decimal,
        direction: Direction,
        company_id: int,
        matched_invoice_id: int | None = None,
        matched_bill_id: int | None = None,
        oracle_confidence: int | None = None,
    ) -> MatchDecision:
        """Decide which open document (if any) a transaction settles.

        Args:
            description: Bank description
            amount: Transaction amount (sign ignored)
            direction: Credit or debit
            company_id: Company owning the documents
            matched_invoice_id: Invoice chosen by the classifier
            matched_bill_id: Bill chosen by the classifier
            oracle_confidence: Raw oracle confidence when the ids came from
                the oracle, None for deterministic classifier matches

        Returns:
            MatchDecision (never raises for unknown ids)
        """
        amount = abs(amount)

        trusted = self._trusted_classifier_match(
            direction, company_id, matched_invoice_id, matched_bill_id, oracle_confidence
        )
        if trusted is not None:
            return trusted

        document = self.find_heuristic_match(description, amount, direction, company_id)
        if document is not None:
            entity_type = _entity_type(document)
            return MatchDecision(
                transaction_type=_payment_type(entity_type),
                entity_type=entity_type,
                entity_id=document.id,
                source="heuristic",
                reason=f"Heuristic match: {document_number(document)}",
            )

        return MatchDecision(
            transaction_type=_plain_type(direction),
            reason="No open invoice or bill matched",
        )

    def _trusted_classifier_match(
        self,
        direction: Direction,
        company_id: int,
        matched_invoice_id: int | None,
        matched_bill_id: int | None,
        oracle_confidence: int | None,
    ) -> MatchDecision | None:
        if matched_invoice_id is None and matched_bill_id is None:
            return None
        if matched_invoice_id is not None and matched_bill_id is not None:
            logger.warning("Classifier matched both an invoice and a bill, ignoring both")
            return None

        floor = self.config.classifier.oracle_match_floor
        if oracle_confidence is not None and oracle_confidence < floor:
            logger.info(
                "Oracle match ignored: confidence %d below floor %d", oracle_confidence, floor
            )
            return None

        if matched_invoice_id is not None:
            if direction != Direction.CREDIT:
                logger.info("Invoice %d proposed for a debit, ignoring", matched_invoice_id)
                return None
            document: Invoice | Bill | None = self.store.get_invoice(company_id, matched_invoice_id)
        else:
            if direction != Direction.DEBIT:
                logger.info("Bill %d proposed for a credit, ignoring", matched_bill_id)
                return None
            document = self.store.get_bill(company_id, matched_bill_id)

        if document is None or not document.is_open:
            logger.info(
                "Classifier match %s is not an open document of company %d",
                matched_invoice_id if matched_invoice_id is not None else matched_bill_id,
                company_id,
            )
            return None

        entity_type = _entity_type(document)
        return MatchDecision(
            transaction_type=_payment_type(entity_type),
            entity_type=entity_type,
            entity_id=document.id,
            source="oracle" if oracle_confidence is not None else "classifier",
            reason=f"Classifier match: {document_number(document)}",
        )

    def open_documents(self, direction: Direction, company_id: int) -> list[Invoice] | list[Bill]:
        """Open invoices for credits, open bills for debits."""
        if direction == Direction.CREDIT:
            return self.store.open_invoices(company_id)
        return self.store.open_bills(company_id)

    def find_heuristic_match(
        self, description: str, amount: Decimal, direction: Direction, company_id: int
    ) -> Invoice | Bill | None:
        """First open document whose amount, counterparty or number fits.

        Amount fits when the balance or the total is within
        matching.amount_tolerance of the transaction amount.
        """
        tolerance = Decimal(str(self.match_config.amount_tolerance))
        desc = description.lower()
        amount = abs(amount)

        for document in self.open_documents(direction, company_id):
            if (
                abs(document.balance_amount - amount) <= tolerance
                or abs(document.total_amount - amount) <= tolerance
            ):
                return document
            name = counterparty(document).lower().strip()
            if name and name in desc:
                return document
            number = document_number(document).lower().strip()
            if number and number in desc:
                return document
        return None

    # Persistence

    def reconcile(
        self,
        transaction: NewLedgerTransaction,
        company_id: int | None = None,
        oracle_confidence: int | None = None,
    ) -> ReconcileResult:
        """Resolve the match of a pending transaction and persist it.

        The transaction row and the document payment are written in one
        database transaction. When a document is found, a "no_match" flag
        set by the classifier is cleared and the review gate re-evaluated.

        Args:
            transaction: Classified, not yet persisted transaction
            company_id: Defaults to transaction.company_id
            oracle_confidence: Raw oracle confidence of the classification

        Returns:
            ReconcileResult with the new transaction id
        """
        if company_id is None:
            company_id = transaction.company_id
        direction = Direction.CREDIT if transaction.amount > 0 else Direction.DEBIT

        decision = self.resolve(
            transaction.description,
            transaction.amount,
            direction,
            company_id,
            matched_invoice_id=transaction.matched_invoice_id,
            matched_bill_id=transaction.matched_bill_id,
            oracle_confidence=oracle_confidence,
        )
        self.apply_decision(transaction, decision)

        txn_id, payment = self.store.insert_transaction_with_payment(
            transaction, apply_payment=decision.matched
        )
        if payment is not None:
            logger.info(
                "Transaction %d settles %s %s: %s -> %s (balance %s)",
                txn_id,
                payment.entity_type,
                payment.document_number,
                payment.previous_status,
                payment.new_status,
                payment.remaining_balance,
            )

        return ReconcileResult(
            matched=decision.matched,
            transaction_type=decision.transaction_type,
            transaction_id=txn_id,
            entity_type=decision.entity_type,
            entity_id=decision.entity_id,
            source=decision.source,
            payment=payment,
        )

    def apply_decision(self, transaction: NewLedgerTransaction, decision: MatchDecision) -> None:
        """Write a decision into the pending transaction (type, ids, review gate)."""
        transaction.transaction_type = decision.transaction_type
        transaction.matched_invoice_id = (
            decision.entity_id if decision.entity_type == ENTITY_INVOICE else None
        )
        transaction.matched_bill_id = (
            decision.entity_id if decision.entity_type == ENTITY_BILL else None
        )
        if decision.reason:
            transaction.classification_reasoning.append(decision.reason)

        if decision.matched and FLAG_NO_MATCH in transaction.flags:
            transaction.flags = [f for f in transaction.flags if f != FLAG_NO_MATCH]
            transaction.needs_review, transaction.review_reason = review_gate(
                transaction.confidence_score,
                transaction.flags,
                self.config.classifier.review_threshold,
            )
            transaction.review_status = (
                ReviewStatus.PENDING_REVIEW
                if transaction.needs_review
                else ReviewStatus.AUTO_APPROVED
            )

    def record_payment(
        self,
        company_id: int,
        entity_type: str,
        entity_id: int,
        amount: Decimal,
        paid_on: date | None = None,
    ) -> PaymentApplication:
        """Record a manual payment against an invoice or bill.

        Raises:
            ValueError: If the amount is not positive or the type is unknown.
            NotFoundError: If the document does not exist.
        """
        if amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {amount}")
        paid_on = paid_on or date.today()

        if entity_type == ENTITY_INVOICE:
            payment = self.store.apply_invoice_payment(company_id, entity_id, amount, paid_on)
        elif entity_type == ENTITY_BILL:
            payment = self.store.apply_bill_payment(company_id, entity_id, amount, paid_on)
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")

        logger.info(
            "Recorded payment of %s on %s %s (%s -> %s)",
            amount,
            entity_type,
            payment.document_number,
            payment.previous_status,
            payment.new_status,
        )
        return payment

    def link_transaction(
        self,
        company_id: int,
        txn_id: int,
        entity_type: str,
        entity_id: int,
        review: ReviewUpdate | None = None,
    ) -> PaymentApplication:
        """Manually reconcile a stored transaction with a document.

        A review outcome, when given, is stored atomically with the link.

        Raises:
            NotFoundError: If the transaction or document does not exist.
            ValueError: If the direction does not fit the document type, the
                document is not open, or the transaction is already linked.
            InvalidTransition: If the review outcome no longer applies.
        """
        txn = self.store.get_transaction(company_id, txn_id)
        if txn is None:
            raise NotFoundError(f"Transaction {txn_id} not found")

        if entity_type == ENTITY_INVOICE:
            if txn.direction != Direction.CREDIT:
                raise ValueError("Only credits can settle an invoice")
            document: Invoice | Bill | None = self.store.get_invoice(company_id, entity_id)
        elif entity_type == ENTITY_BILL:
            if txn.direction != Direction.DEBIT:
                raise ValueError("Only debits can settle a bill")
            document = self.store.get_bill(company_id, entity_id)
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")

        if document is None:
            raise NotFoundError(f"{entity_type.capitalize()} {entity_id} not found")
        if not document.is_open:
            raise ValueError(f"{entity_type.capitalize()} {document_number(document)} is not open")

        return self.store.link_transaction_payment(
            company_id, txn_id, entity_type, entity_id, review=review
        )

    # Candidate scoring

    def score_candidates(
        self,
        description: str,
        amount: Decimal,
        txn_date: date,
        direction: Direction,
        company_id: int,
        max_results: int = 5,
    ) -> list[CandidateMatch]:
        """Score open documents of the transaction's direction.

        Returns:
            Candidates at or above matching.min_candidate_score, best first.
        """
        amount = abs(amount)
        results: list[CandidateMatch] = []

        for document in self.open_documents(direction, company_id):
            signals = [
                self._score_amount(amount, document.balance_amount),
                self._score_document_number(description, document_number(document)),
                self._score_name(description, counterparty(document)),
                self._score_date(txn_date, document.due_date),
            ]
            total = sum(s.weighted_score for s in signals)
            if total < self.match_config.min_candidate_score:
                continue
            results.append(
                CandidateMatch(
                    entity_type=_entity_type(document),
                    entity_id=document.id,
                    document_number=document_number(document),
                    counterparty=counterparty(document),
                    amount=document.balance_amount,
                    total_score=total,
                    signals=signals,
                    reasons=[f"{s.signal}: {s.detail}" for s in signals if s.score > 0],
                )
            )

        results.sort(key=lambda c: c.total_score, reverse=True)
        return results[:max_results]

    def _score_amount(self, amount: Decimal, document_amount: Decimal) -> MatchScore:
        diff = abs(amount - document_amount)
        if diff <= Decimal(str(self.match_config.amount_tolerance)):
            return MatchScore("amount", 1.0, self.WEIGHT_EXACT_AMOUNT, f"exact: {document_amount}")
        if document_amount > 0 and diff / document_amount <= self.CLOSE_AMOUNT_PERCENT:
            percent = diff / document_amount * 100
            return MatchScore(
                "amount", 1.0, self.WEIGHT_CLOSE_AMOUNT, f"within {percent:.1f}%"
            )
        return MatchScore(
            "amount", 0.0, self.WEIGHT_EXACT_AMOUNT, f"mismatch: {amount} vs {document_amount}"
        )

    def _score_document_number(self, description: str, number: str) -> MatchScore:
        if number and number.lower() in description.lower():
            return MatchScore("document_number", 1.0, self.WEIGHT_DOCUMENT_NUMBER, number)
        return MatchScore("document_number", 0.0, self.WEIGHT_DOCUMENT_NUMBER, "not found")

    def _score_name(self, description: str, name: str) -> MatchScore:
        similarity = name_similarity(description, name)
        if similarity > self.NAME_THRESHOLD:
            return MatchScore(
                "name", similarity, self.WEIGHT_NAME, f"{name} ({similarity:.0%})"
            )
        return MatchScore("name", 0.0, self.WEIGHT_NAME, f"{name} ({similarity:.0%})")

    def _score_date(self, txn_date: date, due_date: date | None) -> MatchScore:
        if due_date is None:
            return MatchScore("date", 0.0, self.WEIGHT_DATE, "no due date")
        days = abs((txn_date - due_date).days)
        if days <= self.DATE_PROXIMITY_DAYS:
            return MatchScore(
                "date",
                1 - days / self.DATE_PROXIMITY_DAYS,
                self.WEIGHT_DATE,
                f"{days} days from due date",
            )
        return MatchScore("date", 0.0, self.WEIGHT_DATE, f"{days} days from due date")
