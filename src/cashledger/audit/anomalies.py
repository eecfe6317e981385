"""
Statistical anomaly detection over a lookback window.

Checks:
- Amount: z-score of a debit against the other debits of its category
  (needs audit.min_category_samples debits in the category). Severity low /
  medium / high at the zscore_low / zscore_medium / zscore_high thresholds.
- Amount ratio (legacy, audit.legacy_ratio_check): a debit above 3x its
  category average with at least 5 samples.
- Duplicate group: two or more transactions with the same amount (within
  one unit) inside duplicate_window_hours. Cross-checks the duplicate
  detector over what was actually persisted.
- New high-value vendor: a recent debit above new_vendor_threshold from a
  vendor never seen before.
- Frequency spike: a vendor's count in the last 30 days exceeds
  frequency_spike_ratio x its historical monthly average (minimum
  frequency_spike_min_count occurrences).
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from statistics import mean, pstdev
from typing import TYPE_CHECKING, Any

from ..extraction.entities import clean_vendor_name, normalize_vendor_key
from ..schemas.ledger import LedgerTransaction, Severity

if TYPE_CHECKING:
    from ..config import AuditConfig, Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

RATIO_MULTIPLIER = 3.0
RATIO_HIGH_MULTIPLIER = 5.0
RATIO_MIN_SAMPLES = 5
DUPLICATE_AMOUNT_TOLERANCE = Decimal("1")
RECENT_DAYS = 30


class AnomalyType(str, Enum):
    AMOUNT = "amount"
    AMOUNT_RATIO = "amount_ratio"
    DUPLICATE = "duplicate"
    NEW_VENDOR = "new_vendor"
    FREQUENCY = "frequency"


@dataclass
class Anomaly:
    """One suspicious transaction or group."""

    anomaly_type: AnomalyType
    severity: Severity
    message: str
    transaction_ids: list[int]
    confidence: int
    suggested_action: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Stable token identifying this finding inside an alert message."""
        ids = ",".join(str(i) for i in self.transaction_ids)
        return f"[{self.anomaly_type.value}:{ids}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.anomaly_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "transaction_ids": self.transaction_ids,
            "confidence": self.confidence,
            "suggested_action": self.suggested_action,
            "details": self.details,
        }


def zscore_severity(z: float, config: AuditConfig) -> Severity | None:
    """Severity for an absolute z-score, None below the low threshold."""
    if z >= config.zscore_high:
        return Severity.HIGH
    if z >= config.zscore_medium:
        return Severity.MEDIUM
    if z > config.zscore_low:
        return Severity.LOW
    return None


def vendor_key(txn: LedgerTransaction) -> str:
    return normalize_vendor_key(txn.vendor_name or clean_vendor_name(txn.description))


class AnomalyDetector:
    """Runs the statistical checks for one company."""

    def __init__(self, store: StateStore, config: Config):
        self.store = store
        self.config: AuditConfig = config.audit

    def window(self, company_id: int, as_of: date | None = None) -> list[LedgerTransaction]:
        """Transactions of the lookback window, oldest first."""
        as_of = as_of or date.today()
        start = as_of - timedelta(days=self.config.lookback_days)
        return self.store.transactions_between(company_id, start, as_of)

    def detect(self, company_id: int, as_of: date | None = None) -> list[Anomaly]:
        """Run every check over the lookback window."""
        as_of = as_of or date.today()
        transactions = self.window(company_id, as_of)
        if not transactions:
            return []

        anomalies: list[Anomaly] = []
        anomalies.extend(self.amount_anomalies(transactions))
        if self.config.legacy_ratio_check:
            anomalies.extend(self.amount_ratio_anomalies(transactions))
        anomalies.extend(self.duplicate_groups(transactions))
        anomalies.extend(self.new_vendor_anomalies(company_id, transactions, as_of))
        anomalies.extend(self.frequency_spikes(transactions, as_of))

        logger.info(
            "Anomaly scan for company %d: %d findings over %d transactions",
            company_id,
            len(anomalies),
            len(transactions),
        )
        return anomalies

    def amount_anomalies(self, transactions: list[LedgerTransaction]) -> list[Anomaly]:
        """Z-score of each debit against the rest of its category.

        A category is judged once it holds min_category_samples debits. When
        the other debits are all equal, any different amount is unbounded
        and reported as high.
        """
        by_category: dict[str, list[LedgerTransaction]] = defaultdict(list)
        for txn in transactions:
            if txn.amount < 0:
                by_category[txn.category.value].append(txn)

        anomalies = []
        for category, debits in by_category.items():
            if len(debits) < max(2, self.config.min_category_samples):
                continue
            for txn in debits:
                amount = float(txn.abs_amount)
                others = [float(t.abs_amount) for t in debits if t.id != txn.id]
                average = mean(others)
                spread = pstdev(others)
                if spread == 0:
                    if amount == average:
                        continue
                    z = math.inf
                else:
                    z = abs(amount - average) / spread
                severity = zscore_severity(z, self.config)
                if severity is None:
                    continue
                if math.isinf(z):
                    deviation = "differs from every other debit"
                else:
                    deviation = f"is {z:.1f} standard deviations from"
                anomalies.append(
                    Anomaly(
                        anomaly_type=AnomalyType.AMOUNT,
                        severity=severity,
                        message=(
                            f"{txn.description}: {txn.abs_amount} {deviation} "
                            f"the {category} average of {average:,.2f}"
                        ),
                        transaction_ids=[txn.id],
                        confidence=85,
                        suggested_action="Review transaction for accuracy",
                        details={
                            "category": category,
                            "zscore": None if math.isinf(z) else round(z, 2),
                            "mean": round(average, 2),
                            "stddev": round(spread, 2),
                            "samples": len(others),
                        },
                    )
                )
        return anomalies

    def amount_ratio_anomalies(self, transactions: list[LedgerTransaction]) -> list[Anomaly]:
        """Legacy check: debit above 3x its category average (5+ samples)."""
        by_category: dict[str, list[LedgerTransaction]] = defaultdict(list)
        for txn in transactions:
            if txn.amount < 0:
                by_category[txn.category.value].append(txn)

        anomalies = []
        for category, debits in by_category.items():
            if len(debits) < RATIO_MIN_SAMPLES:
                continue
            average = mean(float(t.abs_amount) for t in debits)
            for txn in debits:
                amount = float(txn.abs_amount)
                if average <= 0 or amount <= average * RATIO_MULTIPLIER:
                    continue
                anomalies.append(
                    Anomaly(
                        anomaly_type=AnomalyType.AMOUNT_RATIO,
                        severity=(
                            Severity.HIGH
                            if amount > average * RATIO_HIGH_MULTIPLIER
                            else Severity.MEDIUM
                        ),
                        message=(
                            f"{txn.description}: {txn.abs_amount} is {amount / average:.0f}x the "
                            f"{category} average of {average:,.2f}"
                        ),
                        transaction_ids=[txn.id],
                        confidence=85,
                        suggested_action="Review transaction for accuracy",
                        details={"category": category, "ratio": round(amount / average, 2)},
                    )
                )
        return anomalies

    def duplicate_groups(self, transactions: list[LedgerTransaction]) -> list[Anomaly]:
        """Same-sign transactions of equal amount within the duplicate window."""
        window = timedelta(hours=self.config.duplicate_window_hours)
        ordered = sorted(transactions, key=lambda t: (t.amount, t.date, t.id))

        anomalies = []
        used: set[int] = set()
        for index, first in enumerate(ordered):
            if first.id in used:
                continue
            group = [first]
            for other in ordered[index + 1 :]:
                if abs(other.amount - first.amount) > DUPLICATE_AMOUNT_TOLERANCE:
                    break
                if other.id in used:
                    continue
                if abs(other.date - first.date) < window:
                    group.append(other)
            if len(group) < 2:
                continue

            used.update(t.id for t in group)
            group.sort(key=lambda t: (t.date, t.id))
            anomalies.append(
                Anomaly(
                    anomaly_type=AnomalyType.DUPLICATE,
                    severity=Severity.MEDIUM,
                    message=(
                        f"Possible duplicate payment: {first.description} ({first.abs_amount}) "
                        f"appears {len(group)} times within "
                        f"{self.config.duplicate_window_hours}h"
                    ),
                    transaction_ids=[t.id for t in group],
                    confidence=70,
                    suggested_action="Check for duplicate payments",
                    details={"amount": str(first.amount), "count": len(group)},
                )
            )
        return anomalies

    def new_vendor_anomalies(
        self, company_id: int, transactions: list[LedgerTransaction], as_of: date
    ) -> list[Anomaly]:
        """Recent high-value debits from vendors with no earlier transaction."""
        threshold = Decimal(str(self.config.new_vendor_threshold))
        high = Decimal(str(self.config.new_vendor_high_threshold))
        recent_start = as_of - timedelta(days=self.config.new_vendor_recent_days)

        candidates = [
            t
            for t in transactions
            if t.amount < 0 and t.abs_amount > threshold and t.date >= recent_start
        ]
        if not candidates:
            return []

        first_seen: dict[str, tuple[date, int]] = {}
        for txn in reversed(self.store.list_transactions(company_id)):
            key = vendor_key(txn)
            if key not in first_seen:
                first_seen[key] = (txn.date, txn.id)

        anomalies = []
        for txn in candidates:
            key = vendor_key(txn)
            if key == "unknown" or first_seen.get(key, (txn.date, txn.id))[1] != txn.id:
                continue
            anomalies.append(
                Anomaly(
                    anomaly_type=AnomalyType.NEW_VENDOR,
                    severity=Severity.HIGH if txn.abs_amount > high else Severity.LOW,
                    message=f"New vendor with large payment: {txn.description} ({txn.abs_amount})",
                    transaction_ids=[txn.id],
                    confidence=60,
                    suggested_action="Verify vendor identity and payment authorization",
                    details={"vendor_key": key},
                )
            )
        return anomalies

    def frequency_spikes(self, transactions: list[LedgerTransaction], as_of: date) -> list[Anomaly]:
        """Vendors whose recent count exceeds the ratio x historical monthly average."""
        recent_start = as_of - timedelta(days=RECENT_DAYS)
        history_months = max(1.0, (self.config.lookback_days - RECENT_DAYS) / 30)

        recent: dict[str, list[LedgerTransaction]] = defaultdict(list)
        earlier: dict[str, int] = defaultdict(int)
        for txn in transactions:
            key = vendor_key(txn)
            if key == "unknown":
                continue
            if txn.date > recent_start:
                recent[key].append(txn)
            else:
                earlier[key] += 1

        anomalies = []
        for key, txns in recent.items():
            count = len(txns)
            if count < self.config.frequency_spike_min_count:
                continue
            monthly_average = earlier[key] / history_months
            if count <= monthly_average * self.config.frequency_spike_ratio:
                continue
            anomalies.append(
                Anomaly(
                    anomaly_type=AnomalyType.FREQUENCY,
                    severity=Severity.MEDIUM,
                    message=(
                        f"Frequency spike: {txns[0].vendor_name or key} has {count} transactions "
                        f"in {RECENT_DAYS} days (monthly average {monthly_average:.1f})"
                    ),
                    transaction_ids=[t.id for t in txns],
                    confidence=65,
                    suggested_action="Confirm the additional payments are expected",
                    details={
                        "vendor_key": key,
                        "recent_count": count,
                        "monthly_average": round(monthly_average, 2),
                    },
                )
            )
        return anomalies
