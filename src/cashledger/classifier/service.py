"""
Multi-layer transaction classifier.

Layers, in order; the first that decides wins:

1. Document number in the description matches an open invoice (credit)
   or bill (debit) -> 95
2. Amount within 1% of an open document -> 85 (70 and flagged
   "multiple_matches" when several documents qualify; the first is used)
3. Counterparty name of an open document found in the description -> 75
4. Same-vendor history within the window: a regular cadence -> 70 and
   recurring, otherwise the most common past category at 60
5. Oracle (when enabled), confidence capped at 85
6. Keyword rules -> 50-65

needs_review is set iff confidence < review_threshold or any flag is
present. Flags are only ever added for ambiguity or failure.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from rapidfuzz.distance import Levenshtein

from ..config import MAX_ORACLE_BATCH_SIZE
from ..errors import OracleError
from ..extraction.entities import clean_vendor_name, document_number_matches, normalize_vendor_key
from ..recurrence.detector import cadence_for_interval
from ..schemas.categories import Category
from ..schemas.ledger import (
    Bill,
    Direction,
    ExpenseType,
    Frequency,
    Invoice,
    LedgerTransaction,
    NormalizedRecord,
    ReviewReason,
    TransactionType,
)
from .oracle import ClassificationOracle, OracleOutcome, OracleRequest
from .rules import RuleEngine, RuleResult

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

EXACT_MATCH_CONFIDENCE = 95
AMOUNT_MATCH_CONFIDENCE = 85
MULTIPLE_MATCH_CONFIDENCE = 70
NAME_MATCH_CONFIDENCE = 75
HISTORICAL_PATTERN_CONFIDENCE = 70
HISTORICAL_CATEGORY_CONFIDENCE = 60
ORACLE_FALLBACK_CONFIDENCE = 50

NAME_SIMILARITY_THRESHOLD = 0.6
HISTORY_SAMPLE_SIZE = 10
MIN_HISTORY_MATCHES = 2
MAX_CONTEXT_DOCUMENTS = 20

FLAG_MULTIPLE_MATCHES = "multiple_matches"
FLAG_NO_MATCH = "no_match"


@dataclass
class ClassificationRequest:
    """One transaction to classify. id correlates batch results."""

    description: str
    amount: Decimal
    date: date
    direction: Direction
    id: int | None = None

    @classmethod
    def from_record(cls, record: NormalizedRecord, id: int | None = None) -> ClassificationRequest:
        return cls(
            description=record.description,
            amount=record.abs_amount,
            date=record.date,
            direction=record.direction,
            id=id,
        )


@dataclass
class ClassificationResult:
    """Classification of one transaction."""

    category: Category
    confidence: int
    transaction_type: TransactionType
    vendor_name: str | None = None
    payment_method: str | None = None
    is_recurring: bool = False
    suggested_frequency: Frequency | None = None
    extracted_reference: str | None = None
    flags: list[str] = field(default_factory=list)
    matched_invoice_id: int | None = None
    matched_bill_id: int | None = None
    needs_review: bool = False
    review_reason: ReviewReason | None = None
    reasoning: list[str] = field(default_factory=list)
    source: str = "rules"
    # Raw oracle confidence (before the cap), used for the match floor
    oracle_confidence: int | None = None

    @property
    def expense_type(self) -> ExpenseType:
        return ExpenseType.RECURRING if self.is_recurring else ExpenseType.ONE_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "confidence": self.confidence,
            "transaction_type": self.transaction_type.value,
            "vendor_name": self.vendor_name,
            "payment_method": self.payment_method,
            "is_recurring": self.is_recurring,
            "suggested_frequency": (
                self.suggested_frequency.value if self.suggested_frequency else None
            ),
            "extracted_reference": self.extracted_reference,
            "flags": self.flags,
            "matched_invoice_id": self.matched_invoice_id,
            "matched_bill_id": self.matched_bill_id,
            "needs_review": self.needs_review,
            "review_reason": self.review_reason.value if self.review_reason else None,
            "reasoning": self.reasoning,
            "source": self.source,
        }


def _plain_type(direction: Direction) -> TransactionType:
    return TransactionType.REVENUE if direction == Direction.CREDIT else TransactionType.EXPENSE


class TransactionClassifier:
    """Assigns category, confidence and review gating to bank transactions."""

    def __init__(
        self,
        store: StateStore,
        config: Config,
        oracle: ClassificationOracle | None = None,
    ):
        self.store = store
        self.config = config
        self.rules = RuleEngine()
        if oracle is None and config.oracle.enabled:
            oracle = ClassificationOracle(config.oracle)
        self.oracle = oracle

    @property
    def oracle_enabled(self) -> bool:
        return self.oracle is not None and self.oracle.is_enabled

    def classify(
        self,
        description: str,
        amount: Decimal,
        txn_date: date,
        direction: Direction,
        company_id: int,
        history: list[LedgerTransaction] | None = None,
    ) -> ClassificationResult:
        """Classify one transaction.

        Args:
            description: Bank description
            amount: Amount (sign ignored; direction decides)
            txn_date: Transaction date
            direction: Credit or debit
            company_id: Company whose documents and history are consulted
            history: Prior transactions (defaults to the store's window)

        Returns:
            ClassificationResult (never raises for oracle problems)
        """
        request = ClassificationRequest(description, abs(amount), txn_date, direction)
        result, rule, reasoning = self._deterministic(request, company_id, history)
        if result is not None:
            return result

        if self.oracle_enabled:
            outcome = self._classify_single(
                self._oracle_request(request, rule, 1, company_id, history), company_id
            )
            return self._from_oracle(request, rule, outcome, reasoning)

        return self._from_rules(request, rule, reasoning)

    def classify_batch(
        self,
        requests: list[ClassificationRequest],
        company_id: int,
        history: list[LedgerTransaction] | None = None,
    ) -> list[ClassificationResult]:
        """Classify many transactions, batching oracle calls.

        Deterministic layers run per item. Items they leave undecided go to
        the oracle in groups of oracle.batch_size, correlated by position
        (1..n). A failed group degrades to one oracle call per item.

        Returns:
            Results in request order.
        """
        results: list[ClassificationResult | None] = []
        pending: list[tuple[int, ClassificationRequest, RuleResult, list[str]]] = []

        for index, request in enumerate(requests):
            result, rule, reasoning = self._deterministic(request, company_id, history)
            results.append(result)
            if result is None:
                pending.append((index, request, rule, reasoning))

        if not self.oracle_enabled:
            for index, request, rule, reasoning in pending:
                results[index] = self._from_rules(request, rule, reasoning)
            return results

        size = max(1, min(self.config.oracle.batch_size, MAX_ORACLE_BATCH_SIZE))
        for start in range(0, len(pending), size):
            group = pending[start : start + size]
            oracle_requests = [
                self._oracle_request(request, rule, position, company_id, history)
                for position, (_, request, rule, _) in enumerate(group, start=1)
            ]
            try:
                outcomes = self.oracle.classify_batch(oracle_requests)
            except OracleError as e:
                logger.warning(
                    "Batch classification failed (%s), falling back to per-item calls", e.tag
                )
                outcomes = {
                    req.id: self._classify_single(req, company_id) for req in oracle_requests
                }

            for position, (index, request, rule, reasoning) in enumerate(group, start=1):
                results[index] = self._from_oracle(request, rule, outcomes[position], reasoning)

        return results

    def summarize(self, results: list[ClassificationResult]) -> dict[str, Any]:
        """Confidence buckets (high >= 80, medium >= 60, low), review and type counts."""
        by_type: Counter[str] = Counter()
        by_category: Counter[str] = Counter()
        high = medium = low = needs_review = 0

        for result in results:
            if result.confidence >= 80:
                high += 1
            elif result.confidence >= 60:
                medium += 1
            else:
                low += 1
            if result.needs_review:
                needs_review += 1
            by_type[result.transaction_type.value] += 1
            by_category[result.category.value] += 1

        return {
            "total": len(results),
            "high_confidence": high,
            "medium_confidence": medium,
            "low_confidence": low,
            "needs_review": needs_review,
            "by_type": dict(by_type),
            "by_category": dict(by_category),
        }

    # Layers

    def _deterministic(
        self,
        request: ClassificationRequest,
        company_id: int,
        history: list[LedgerTransaction] | None,
    ) -> tuple[ClassificationResult | None, RuleResult, list[str]]:
        rule = self.rules.classify(request.description, request.amount, request.direction)
        reasoning: list[str] = []

        if request.direction == Direction.CREDIT:
            documents: list[Invoice] | list[Bill] = self.store.open_invoices(company_id)
        else:
            documents = self.store.open_bills(company_id)

        for layer in (self._by_document_number, self._by_amount, self._by_name):
            result = layer(request, rule, documents, reasoning)
            if result is not None:
                return self._finalize(result, rule), rule, reasoning

        result = self._by_history(request, rule, company_id, history, reasoning)
        if result is not None:
            return self._finalize(result, rule), rule, reasoning
        return None, rule, reasoning

    def _document_result(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        document: Invoice | Bill,
        confidence: int,
        reason: str,
        reasoning: list[str],
        source: str,
        flags: list[str] | None = None,
    ) -> ClassificationResult:
        is_invoice = isinstance(document, Invoice)
        category = rule.category if rule.matched_keyword else Category.G_A
        return ClassificationResult(
            category=category,
            confidence=confidence,
            transaction_type=(
                TransactionType.INVOICE_PAYMENT if is_invoice else TransactionType.BILL_PAYMENT
            ),
            vendor_name=document.customer_name if is_invoice else document.vendor_name,
            payment_method=rule.payment_method,
            extracted_reference=rule.extracted_reference,
            matched_invoice_id=document.id if is_invoice else None,
            matched_bill_id=None if is_invoice else document.id,
            flags=flags or [],
            reasoning=[*reasoning, reason],
            source=source,
        )

    def _by_document_number(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        documents: list[Invoice] | list[Bill],
        reasoning: list[str],
    ) -> ClassificationResult | None:
        number = rule.invoice_number if request.direction == Direction.CREDIT else rule.bill_number
        if number:
            for document in documents:
                if document_number_matches(number, _document_number(document)):
                    return self._document_result(
                        request,
                        rule,
                        document,
                        EXACT_MATCH_CONFIDENCE,
                        f"Exact document match: {_document_number(document)}",
                        reasoning,
                        source="document_number",
                    )
        reasoning.append("No exact invoice/bill number match found in description")
        return None

    def _by_amount(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        documents: list[Invoice] | list[Bill],
        reasoning: list[str],
    ) -> ClassificationResult | None:
        tolerance = request.amount * Decimal(str(self.config.classifier.amount_match_tolerance))
        matches = [
            d
            for d in documents
            if abs(d.total_amount - request.amount) <= tolerance
            or abs(d.balance_amount - request.amount) <= tolerance
        ]
        if len(matches) == 1:
            return self._document_result(
                request,
                rule,
                matches[0],
                AMOUNT_MATCH_CONFIDENCE,
                f"Amount match: {_document_number(matches[0])} ({matches[0].total_amount})",
                reasoning,
                source="amount",
            )
        if len(matches) > 1:
            return self._document_result(
                request,
                rule,
                matches[0],
                MULTIPLE_MATCH_CONFIDENCE,
                f"Multiple document matches ({len(matches)}) for amount {request.amount}",
                reasoning,
                source="amount",
                flags=[FLAG_MULTIPLE_MATCHES],
            )
        reasoning.append("No amount match found")
        return None

    def _by_name(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        documents: list[Invoice] | list[Bill],
        reasoning: list[str],
    ) -> ClassificationResult | None:
        desc = request.description.lower().strip()
        for document in documents:
            name = _counterparty(document).lower().strip()
            if not name:
                continue
            if name in desc or Levenshtein.normalized_similarity(desc, name) > (
                NAME_SIMILARITY_THRESHOLD
            ):
                return self._document_result(
                    request,
                    rule,
                    document,
                    NAME_MATCH_CONFIDENCE,
                    f'Counterparty name match: "{_counterparty(document)}"',
                    reasoning,
                    source="name",
                )
        reasoning.append("No vendor/customer name match found")
        return None

    def _history_window(
        self,
        request: ClassificationRequest,
        company_id: int,
        history: list[LedgerTransaction] | None,
    ) -> list[LedgerTransaction]:
        since = request.date - timedelta(days=self.config.classifier.history_window_days)
        if history is None:
            history = self.store.list_transactions(company_id, since=since)
        return [t for t in history if since <= t.date <= request.date]

    def _by_history(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        company_id: int,
        history: list[LedgerTransaction] | None,
        reasoning: list[str],
    ) -> ClassificationResult | None:
        vendor_key = normalize_vendor_key(clean_vendor_name(request.description))
        if vendor_key == "unknown":
            reasoning.append("No historical pattern found")
            return None

        tolerance = request.amount * Decimal(str(self.config.classifier.history_amount_tolerance))
        similar = [
            t
            for t in self._history_window(request, company_id, history)
            if t.direction == request.direction
            and abs(t.abs_amount - request.amount) <= tolerance
            and normalize_vendor_key(clean_vendor_name(t.description)) == vendor_key
        ]
        similar.sort(key=lambda t: (t.date, t.id), reverse=True)
        similar = similar[:HISTORY_SAMPLE_SIZE]

        if len(similar) < MIN_HISTORY_MATCHES:
            reasoning.append("No historical pattern found")
            return None

        dates = sorted(t.date for t in similar)
        average = sum((b - a).days for a, b in zip(dates, dates[1:])) / (len(dates) - 1)
        frequency = cadence_for_interval(average)

        if frequency is not None:
            return ClassificationResult(
                category=similar[0].category,
                confidence=HISTORICAL_PATTERN_CONFIDENCE,
                transaction_type=_plain_type(request.direction),
                vendor_name=rule.vendor_name,
                payment_method=rule.payment_method,
                is_recurring=True,
                suggested_frequency=frequency,
                extracted_reference=rule.extracted_reference,
                reasoning=[
                    *reasoning,
                    f"Recurring {frequency.value} pattern detected ({len(similar)} occurrences)",
                ],
                source="history",
            )

        counts = Counter(t.category for t in similar)
        category = counts.most_common(1)[0][0]
        return ClassificationResult(
            category=category,
            confidence=HISTORICAL_CATEGORY_CONFIDENCE,
            transaction_type=_plain_type(request.direction),
            vendor_name=rule.vendor_name,
            payment_method=rule.payment_method,
            extracted_reference=rule.extracted_reference,
            reasoning=[
                *reasoning,
                f"Historical pattern: {len(similar)} similar transactions found",
            ],
            source="history",
        )

    def _oracle_request(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        position: int,
        company_id: int,
        history: list[LedgerTransaction] | None,
    ) -> OracleRequest:
        recent = [
            t
            for t in self._history_window(request, company_id, history)
            if t.category == rule.category
        ]
        recent.sort(key=lambda t: (t.date, t.id), reverse=True)
        return OracleRequest(
            id=position,
            description=request.description,
            amount=request.amount,
            date=request.date,
            direction=request.direction,
            fallback_category=rule.category,
            recent=[
                {
                    "description": t.description,
                    "category": t.category.value,
                    "amount": str(t.abs_amount),
                }
                for t in recent[: self.config.oracle.context_examples]
            ],
        )

    def _classify_single(self, request: OracleRequest, company_id: int) -> OracleOutcome:
        """One oracle call with the open documents of the request's direction."""
        if request.direction == Direction.CREDIT:
            invoices = [i.to_dict() for i in self.store.open_invoices(company_id)]
            return self.oracle.classify(request, invoices=invoices[:MAX_CONTEXT_DOCUMENTS])
        bills = [b.to_dict() for b in self.store.open_bills(company_id)]
        return self.oracle.classify(request, bills=bills[:MAX_CONTEXT_DOCUMENTS])

    def _from_oracle(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        outcome: OracleOutcome,
        reasoning: list[str],
    ) -> ClassificationResult:
        if not outcome.ok:
            result = self._from_rules(request, rule, reasoning, finalize=False)
            result.confidence = ORACLE_FALLBACK_CONFIDENCE
            result.flags = [outcome.error_tag or "llm_error"]
            result.reasoning.append(
                f"Oracle classification failed ({outcome.error_tag}), used rule-based fallback"
            )
            return self._finalize(result, rule)

        verdict = outcome.verdict
        if verdict.matched_invoice_id is not None:
            transaction_type = TransactionType.INVOICE_PAYMENT
        elif verdict.matched_bill_id is not None:
            transaction_type = TransactionType.BILL_PAYMENT
        else:
            transaction_type = _plain_type(request.direction)

        note = f"Oracle classification ({verdict.model})"
        if verdict.reasoning:
            note += f": {verdict.reasoning}"
        if verdict.category_remapped:
            note += f" [category mapped to {verdict.category.value}]"

        result = ClassificationResult(
            category=verdict.category,
            confidence=min(verdict.confidence, self.config.classifier.oracle_confidence_cap),
            transaction_type=transaction_type,
            vendor_name=verdict.vendor_name or rule.vendor_name,
            payment_method=verdict.payment_method or rule.payment_method,
            is_recurring=verdict.is_recurring,
            suggested_frequency=verdict.suggested_frequency,
            extracted_reference=verdict.extracted_reference or rule.extracted_reference,
            flags=list(verdict.flags),
            matched_invoice_id=verdict.matched_invoice_id,
            matched_bill_id=verdict.matched_bill_id,
            reasoning=[*reasoning, note],
            source="oracle",
            oracle_confidence=verdict.confidence,
        )
        return self._finalize(result, rule)

    def _from_rules(
        self,
        request: ClassificationRequest,
        rule: RuleResult,
        reasoning: list[str],
        finalize: bool = True,
    ) -> ClassificationResult:
        result = ClassificationResult(
            category=rule.category,
            confidence=rule.confidence,
            transaction_type=_plain_type(request.direction),
            vendor_name=rule.vendor_name,
            payment_method=rule.payment_method,
            is_recurring=rule.is_recurring,
            suggested_frequency=rule.suggested_frequency,
            extracted_reference=rule.extracted_reference,
            reasoning=[*reasoning, *rule.reasoning, "Used rule-based keyword matching"],
            source="rules",
        )
        return self._finalize(result, rule) if finalize else result

    def _finalize(self, result: ClassificationResult, rule: RuleResult) -> ClassificationResult:
        """Apply the no-match flag and the review gate."""
        if result.transaction_type == TransactionType.REVENUE:
            cited = rule.invoice_number
        else:
            cited = rule.bill_number
        if (
            cited
            and result.matched_invoice_id is None
            and result.matched_bill_id is None
            and FLAG_NO_MATCH not in result.flags
        ):
            result.flags.append(FLAG_NO_MATCH)
            result.reasoning.append(f"Description cites {cited} but no open document matches")

        result.needs_review, result.review_reason = review_gate(
            result.confidence, result.flags, self.config.classifier.review_threshold
        )
        return result


def review_gate(
    confidence: int, flags: list[str], threshold: int
) -> tuple[bool, ReviewReason | None]:
    """Decide (needs_review, review_reason).

    needs_review is True iff confidence < threshold or any flag is present.
    """
    needs_review = confidence < threshold or bool(flags)
    if not needs_review:
        return False, None
    if FLAG_MULTIPLE_MATCHES in flags:
        return True, ReviewReason.MULTIPLE_MATCHES
    if FLAG_NO_MATCH in flags:
        return True, ReviewReason.NO_MATCH
    if confidence < threshold:
        return True, ReviewReason.LOW_CONFIDENCE
    return True, ReviewReason.UNCLEAR_DESCRIPTION


def _document_number(document: Invoice | Bill) -> str:
    return document.invoice_number if isinstance(document, Invoice) else document.bill_number


def _counterparty(document: Invoice | Bill) -> str:
    return document.customer_name if isinstance(document, Invoice) else document.vendor_name
