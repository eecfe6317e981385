"""
Recurrence and subscription detection.

Decides whether a debit is one-time or recurring, infers its cadence from
the vendor's history and upserts RecurringExpense / Subscription records.

Cadence bands (average days between payments):
- weekly: 5-10
- monthly: 25-35
- quarterly: 85-95
- yearly: 360-370
Anything else is irregular; a single occurrence is one-time.

Records are keyed by normalize_vendor_key(clean_vendor_name(description)),
so "Slack Technologies" and "SLACK TECHNOLOGIES LTD" share one record and
unrelated vendors that merely share a substring do not.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..extraction.entities import clean_vendor_name, normalize_vendor_key
from ..schemas.categories import Category, contains_keyword
from ..schemas.ledger import Direction, ExpenseType, Frequency, LedgerTransaction

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100

# (low, high, frequency), inclusive
CADENCE_BANDS: list[tuple[float, float, Frequency]] = [
    (5, 10, Frequency.WEEKLY),
    (25, 35, Frequency.MONTHLY),
    (85, 95, Frequency.QUARTERLY),
    (360, 370, Frequency.YEARLY),
]

ONE_TIME_KEYWORDS = [
    "laptop", "computer", "macbook", "pc", "monitor", "keyboard", "mouse",
    "furniture", "desk", "chair", "table", "equipment",
    "setup", "installation", "initial", "onboard", "onboarding",
    "deposit", "security deposit", "advance",
    "purchase", "buy", "bought", "acquisition", "procure",
    "repair", "fix", "maintenance",
    "conference", "event", "seminar", "training", "course",
    "bonus", "one-time", "adhoc", "ad-hoc", "special",
    "license fee", "registration", "incorporation",
]

RECURRING_KEYWORDS: list[tuple[str, Frequency]] = [
    ("subscription", Frequency.MONTHLY),
    ("monthly", Frequency.MONTHLY),
    ("annual", Frequency.YEARLY),
    ("yearly", Frequency.YEARLY),
    ("quarterly", Frequency.QUARTERLY),
    ("rent", Frequency.MONTHLY),
    ("salary", Frequency.MONTHLY),
    ("payroll", Frequency.MONTHLY),
    ("retainer", Frequency.MONTHLY),
    ("saas", Frequency.MONTHLY),
    ("membership", Frequency.MONTHLY),
    ("recurring", Frequency.MONTHLY),
]

SUBSCRIPTION_KEYWORDS = [
    "netflix", "spotify", "amazon prime", "prime video",
    "slack", "zoom", "github", "gitlab", "jira",
    "aws", "azure", "google cloud", "digitalocean", "heroku",
    "dropbox", "google workspace", "microsoft 365", "office 365",
    "adobe", "canva", "figma", "notion", "trello",
    "salesforce", "hubspot", "mailchimp", "sendgrid",
    "subscription", "membership", "saas",
]

# Categories that usually recur; a weak signal that needs some history
RECURRING_CATEGORIES = (Category.SAAS, Category.HIRING, Category.CLOUD)

SIMILAR_AMOUNT_TOLERANCE = 0.15
SUBSCRIPTION_AMOUNT_TOLERANCE = 0.10
MIN_SIMILAR_FOR_RECURRING = 3
MIN_SIMILAR_FOR_SUBSCRIPTION = 2
MIN_HISTORY_FOR_CATEGORY_HINT = 5
# Intervals count as regular when their std dev is below this share of the mean
REGULARITY_RATIO = 0.2


class PatternConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class PatternAnalysis:
    """Cadence inferred from a series of payment dates."""

    is_regular: bool
    frequency: Frequency
    confidence: PatternConfidence
    average_interval: float = 0.0
    occurrences: int = 0


@dataclass
class ExpenseClassification:
    """One-time vs recurring decision for a debit."""

    expense_type: ExpenseType
    confidence: PatternConfidence
    reason: str
    frequency: Frequency | None = None

    @property
    def is_recurring(self) -> bool:
        return self.expense_type == ExpenseType.RECURRING

    def to_dict(self) -> dict[str, Any]:
        return {
            "expense_type": self.expense_type.value,
            "frequency": self.frequency.value if self.frequency else None,
            "confidence": self.confidence.value,
            "reason": self.reason,
        }


@dataclass
class SubscriptionCandidate:
    is_subscription: bool
    name: str
    billing_cycle: Frequency
    confidence: PatternConfidence


@dataclass
class RecurrenceOutcome:
    """What the detector decided and persisted for one transaction."""

    classification: ExpenseClassification
    subscription: SubscriptionCandidate
    vendor_key: str
    expense_type: ExpenseType
    frequency: Frequency | None
    recurring_expense_id: int | None = None
    subscription_id: int | None = None
    created_recurring: bool = False
    created_subscription: bool = False


def cadence_for_interval(average_days: float) -> Frequency | None:
    """Billing cadence of an average interval, or None outside every band."""
    for low, high, frequency in CADENCE_BANDS:
        if low <= average_days <= high:
            return frequency
    return None


def recurring_keyword_frequency(description: str) -> Frequency | None:
    """Frequency implied by a recurring keyword, unless a one-time keyword wins."""
    if any(contains_keyword(description, kw) for kw in ONE_TIME_KEYWORDS):
        return None
    for keyword, frequency in RECURRING_KEYWORDS:
        if contains_keyword(description, keyword):
            return frequency
    return None


def analyze_pattern(dates: Iterable[date]) -> PatternAnalysis:
    """Infer a cadence from payment dates (any order).

    Intervals are regular when their population standard deviation is
    under 20% of the average interval. A band match is high confidence
    when regular and medium otherwise; no band match is low confidence.
    """
    ordered = sorted(dates)
    if len(ordered) < 2:
        return PatternAnalysis(
            is_regular=False,
            frequency=Frequency.ONE_TIME,
            confidence=PatternConfidence.LOW,
            occurrences=len(ordered),
        )

    intervals = [(b - a).days for a, b in zip(ordered, ordered[1:])]
    average = sum(intervals) / len(intervals)
    deviation = statistics.pstdev(intervals)
    is_regular = average > 0 and deviation < average * REGULARITY_RATIO

    frequency = cadence_for_interval(average)
    if frequency is None:
        return PatternAnalysis(
            is_regular=is_regular,
            frequency=Frequency.IRREGULAR,
            confidence=PatternConfidence.LOW,
            average_interval=average,
            occurrences=len(ordered),
        )
    return PatternAnalysis(
        is_regular=is_regular,
        frequency=frequency,
        confidence=PatternConfidence.HIGH if is_regular else PatternConfidence.MEDIUM,
        average_interval=average,
        occurrences=len(ordered),
    )


def _average_monthly_spend(history: list[LedgerTransaction]) -> Decimal:
    if not history:
        return Decimal("0")
    total = sum((t.abs_amount for t in history), Decimal("0"))
    dates = [t.date for t in history]
    months = max(Decimal("1"), Decimal((max(dates) - min(dates)).days) / Decimal("30"))
    return total / months


def _similar(
    history: list[LedgerTransaction], vendor_key: str, amount: Decimal, tolerance: float
) -> list[LedgerTransaction]:
    limit = amount * Decimal(str(tolerance))
    return [
        t
        for t in history
        if normalize_vendor_key(clean_vendor_name(t.description)) == vendor_key
        and abs(t.abs_amount - amount) < limit
    ]


class RecurrenceDetector:
    """Cadence inference and recurring-record upserts for one store."""

    def __init__(self, store: StateStore):
        self.store = store

    def history(self, company_id: int) -> list[LedgerTransaction]:
        """Debits among the last HISTORY_LIMIT transactions of a company."""
        recent = self.store.list_transactions(company_id, limit=HISTORY_LIMIT)
        return [t for t in recent if t.direction == Direction.DEBIT]

    def classify_expense(
        self,
        description: str,
        amount: Decimal,
        category: Category,
        history: list[LedgerTransaction],
    ) -> ExpenseClassification:
        """Decide one-time vs recurring for a debit.

        Checked in order: one-time keywords, recurring keywords, the
        vendor's history (3+ similar payments with a regular cadence),
        unusually large amount, recurring-category hint, default one-time.
        """
        amount = abs(amount)

        for keyword in ONE_TIME_KEYWORDS:
            if contains_keyword(description, keyword):
                return ExpenseClassification(
                    expense_type=ExpenseType.ONE_TIME,
                    confidence=PatternConfidence.HIGH,
                    reason=f'Contains one-time keyword: "{keyword}"',
                )

        for keyword, frequency in RECURRING_KEYWORDS:
            if contains_keyword(description, keyword):
                return ExpenseClassification(
                    expense_type=ExpenseType.RECURRING,
                    confidence=PatternConfidence.HIGH,
                    frequency=frequency,
                    reason=f'Contains recurring keyword: "{keyword}"',
                )

        vendor_key = normalize_vendor_key(clean_vendor_name(description))
        if vendor_key != "unknown" and len(history) >= MIN_SIMILAR_FOR_RECURRING:
            similar = _similar(history, vendor_key, amount, SIMILAR_AMOUNT_TOLERANCE)
            if len(similar) >= MIN_SIMILAR_FOR_RECURRING:
                pattern = analyze_pattern(t.date for t in similar)
                if pattern.is_regular and pattern.confidence != PatternConfidence.LOW:
                    return ExpenseClassification(
                        expense_type=ExpenseType.RECURRING,
                        confidence=pattern.confidence,
                        frequency=pattern.frequency,
                        reason=(
                            f"Vendor appears {len(similar) + 1} times with a regular "
                            f"{pattern.frequency.value} pattern"
                        ),
                    )

        average_monthly = _average_monthly_spend(history)
        if average_monthly > 0 and amount > average_monthly * 2:
            return ExpenseClassification(
                expense_type=ExpenseType.ONE_TIME,
                confidence=PatternConfidence.MEDIUM,
                reason=f"Large amount ({amount}) relative to average monthly spend",
            )

        if category in RECURRING_CATEGORIES and len(history) >= MIN_HISTORY_FOR_CATEGORY_HINT:
            return ExpenseClassification(
                expense_type=ExpenseType.RECURRING,
                confidence=PatternConfidence.LOW,
                frequency=Frequency.MONTHLY,
                reason=f"Category {category.value} is typically recurring (no pattern yet)",
            )

        return ExpenseClassification(
            expense_type=ExpenseType.ONE_TIME,
            confidence=PatternConfidence.LOW,
            reason="No recurring pattern detected, defaulting to one-time",
        )

    def detect_subscription(
        self, description: str, amount: Decimal, history: list[LedgerTransaction]
    ) -> SubscriptionCandidate:
        """Decide whether a debit is a subscription charge.

        A stable amount (within 10%) paid to the same vendor on a regular
        monthly / quarterly / yearly cadence wins; otherwise a subscription
        keyword alone yields a monthly candidate at medium confidence.
        """
        amount = abs(amount)
        name = clean_vendor_name(description)
        vendor_key = normalize_vendor_key(name)

        similar = _similar(history, vendor_key, amount, SUBSCRIPTION_AMOUNT_TOLERANCE)
        if vendor_key != "unknown" and len(similar) >= MIN_SIMILAR_FOR_SUBSCRIPTION:
            pattern = analyze_pattern(t.date for t in similar)
            if pattern.is_regular and pattern.frequency in (
                Frequency.MONTHLY,
                Frequency.QUARTERLY,
                Frequency.YEARLY,
            ):
                return SubscriptionCandidate(
                    is_subscription=True,
                    name=name,
                    billing_cycle=pattern.frequency,
                    confidence=pattern.confidence,
                )

        if any(contains_keyword(description, kw) for kw in SUBSCRIPTION_KEYWORDS):
            return SubscriptionCandidate(
                is_subscription=True,
                name=name,
                billing_cycle=Frequency.MONTHLY,
                confidence=PatternConfidence.MEDIUM,
            )

        return SubscriptionCandidate(
            is_subscription=False,
            name=name,
            billing_cycle=Frequency.MONTHLY,
            confidence=PatternConfidence.LOW,
        )

    def record(
        self,
        company_id: int,
        description: str,
        amount: Decimal,
        txn_date: date,
        category: Category,
        classifier_recurring: bool = False,
        classifier_frequency: Frequency | None = None,
        history: list[LedgerTransaction] | None = None,
    ) -> RecurrenceOutcome:
        """Classify a debit and upsert its recurring records.

        A RecurringExpense is upserted when the classifier already judged
        the transaction recurring, or when classify_expense says recurring
        with non-low confidence. A Subscription is upserted for any
        subscription candidate with non-low confidence.

        Args:
            company_id: Company of the transaction
            description: Bank description
            amount: Debit amount (sign ignored)
            txn_date: Payment date
            category: Final category of the transaction
            classifier_recurring: Classifier's recurring verdict
            classifier_frequency: Classifier's suggested frequency
            history: Preloaded history (defaults to self.history(company_id))
        """
        if history is None:
            history = self.history(company_id)
        amount = abs(amount)

        classification = self.classify_expense(description, amount, category, history)
        candidate = self.detect_subscription(description, amount, history)
        vendor_key = normalize_vendor_key(candidate.name)

        is_recurring = classifier_recurring or (
            classification.is_recurring and classification.confidence != PatternConfidence.LOW
        )
        frequency = classification.frequency or classifier_frequency or Frequency.MONTHLY

        outcome = RecurrenceOutcome(
            classification=classification,
            subscription=candidate,
            vendor_key=vendor_key,
            expense_type=ExpenseType.RECURRING if is_recurring else ExpenseType.ONE_TIME,
            frequency=frequency if is_recurring else None,
        )

        if is_recurring:
            outcome.recurring_expense_id, outcome.created_recurring = (
                self.store.upsert_recurring_expense(
                    company_id,
                    vendor_key=vendor_key,
                    description=description,
                    amount=amount,
                    frequency=frequency,
                    category=category,
                    paid_on=txn_date,
                )
            )
            logger.debug(
                "Recurring expense %s (%s) for company %s",
                vendor_key,
                frequency.value,
                company_id,
            )

        if candidate.is_subscription and candidate.confidence != PatternConfidence.LOW:
            outcome.subscription_id, outcome.created_subscription = self.store.upsert_subscription(
                company_id,
                vendor_key=vendor_key,
                name=candidate.name,
                amount=amount,
                billing_cycle=candidate.billing_cycle,
                billed_on=txn_date,
                category=category,
            )
            logger.debug(
                "Subscription %s (%s) for company %s",
                vendor_key,
                candidate.billing_cycle.value,
                company_id,
            )

        return outcome
