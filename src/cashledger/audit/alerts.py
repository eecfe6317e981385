"""
Budget, overdue and runway alerts.

Alert creation is idempotent:
- Budget alerts are unique per (company, category, threshold, month_key);
  the store enforces this with a partial unique index.
- Overdue alerts carry a "[document number]" token and are deduplicated by
  that token plus the severity tier, so an item escalating from 31 to 61 days
  gets one new alert per tier.
- Runway and anomaly alerts are deduplicated by a token in the message.
"""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..ledger.cash import CashLedger, RunwayMetrics, RunwayTier, compute_runway
from ..schemas.categories import display_name
from ..schemas.ledger import (
    COLLECTIBLE_INVOICE_STATUSES,
    PAYABLE_BILL_STATUSES,
    AlertType,
    BillStatus,
    InvoiceStatus,
    Severity,
    ZERO,
    month_key,
)

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore
    from .anomalies import Anomaly

logger = logging.getLogger(__name__)

# Runway (months, after the projected overrun) below which an alert is risky / dangerous
RISKY_RUNWAY = 12.0
DANGEROUS_RUNWAY = 6.0

# (days overdue strictly greater than, severity), most severe first
INVOICE_OVERDUE_TIERS = ((90, Severity.CRITICAL), (60, Severity.HIGH), (30, Severity.MEDIUM))
BILL_OVERDUE_TIERS = ((60, Severity.CRITICAL), (30, Severity.HIGH), (15, Severity.MEDIUM))

AGING_BUCKETS = ("1-30", "31-60", "61-90", "90+")

RUNWAY_SEVERITY = {
    RunwayTier.CRITICAL: Severity.CRITICAL,
    RunwayTier.WARNING: Severity.MEDIUM,
    RunwayTier.INFO: Severity.INFO,
}


def aging_bucket(days_overdue: int) -> str:
    if days_overdue > 90:
        return "90+"
    if days_overdue > 60:
        return "61-90"
    if days_overdue > 30:
        return "31-60"
    return "1-30"


def overdue_severity(days_overdue: int, tiers: tuple[tuple[int, Severity], ...]) -> Severity | None:
    for days, severity in tiers:
        if days_overdue > days:
            return severity
    return None


def _months(value: float) -> str:
    return "∞" if math.isinf(value) else f"{value:.1f}"


@dataclass
class BudgetAlertResult:
    category: str
    threshold: int
    month_key: str
    spent: Decimal
    limit: Decimal
    percent: float
    runway_before: float
    runway_after: float
    alert_id: int | None

    @property
    def created(self) -> bool:
        return self.alert_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "threshold": self.threshold,
            "month_key": self.month_key,
            "spent": str(self.spent),
            "limit": str(self.limit),
            "percent": round(self.percent, 1),
            "runway_before": None if math.isinf(self.runway_before) else self.runway_before,
            "runway_after": None if math.isinf(self.runway_after) else self.runway_after,
            "created": self.created,
        }


class BudgetMonitor:
    """Month-to-date category spend against active budgets."""

    def __init__(self, store: StateStore, config: Config, ledger: CashLedger | None = None):
        self.store = store
        self.config = config
        self.ledger = ledger or CashLedger(store, config)

    def month_to_date_spend(self, company_id: int, as_of: date) -> dict[str, Decimal]:
        start = as_of.replace(day=1)
        spend: dict[str, Decimal] = {}
        for txn in self.store.transactions_between(company_id, start, as_of):
            if txn.amount < 0:
                spend[txn.category.value] = spend.get(txn.category.value, ZERO) + txn.abs_amount
        return spend

    def runway_impact(
        self, company_id: int, spent: Decimal, limit: Decimal, as_of: date
    ) -> tuple[float, float]:
        """Runway before and after the projected monthly overrun."""
        company = self.store.require_company(company_id)
        burn = self.ledger.monthly_burn(company_id, as_of)
        before = compute_runway(company.cash_balance, burn)

        days_in_month = calendar.monthrange(as_of.year, as_of.month)[1]
        projected = spent / max(1, as_of.day) * days_in_month
        overrun = max(ZERO, projected - limit)
        after = compute_runway(company.cash_balance, burn + overrun)
        return before, after

    def check(self, company_id: int, as_of: date | None = None) -> list[BudgetAlertResult]:
        """Evaluate every active budget and create threshold alerts.

        Only the highest threshold reached produces an alert. Repeated
        checks in the same month never create a second alert for the same
        (category, threshold).
        """
        as_of = as_of or date.today()
        key = month_key(as_of)
        spend = self.month_to_date_spend(company_id, as_of)
        thresholds = sorted(self.config.audit.budget_thresholds, reverse=True)

        results = []
        for budget in self.store.active_budgets(company_id):
            if budget.monthly_limit <= 0:
                continue
            spent = spend.get(budget.category.value, ZERO)
            percent = float(spent / budget.monthly_limit * 100)
            reached = next((t for t in thresholds if percent >= t), None)
            if reached is None:
                continue

            before, after = self.runway_impact(company_id, spent, budget.monthly_limit, as_of)
            if after < DANGEROUS_RUNWAY:
                risk = f"DANGEROUS: runway drops to {_months(after)} months. Act immediately."
            elif after < RISKY_RUNWAY:
                risk = f"RISKY: runway drops to {_months(after)} months. Consider cost reduction."
            else:
                risk = f"Runway remains healthy at {_months(after)} months."

            verb = "exceeded" if reached >= 100 else "reached"
            message = (
                f"Budget {verb}: {display_name(budget.category)} has spent {percent:.1f}% of "
                f"budget ({spent} / {budget.monthly_limit}). {risk} "
                f"Runway: {_months(before)} months -> {_months(after)} months."
            )
            severity = (
                Severity.HIGH if reached >= 100 or after < DANGEROUS_RUNWAY else Severity.MEDIUM
            )
            alert_id = self.store.create_alert(
                company_id,
                AlertType.BUDGET,
                severity,
                message,
                category=budget.category.value,
                threshold=reached,
                month_key=key,
            )
            if alert_id is not None:
                logger.info(
                    "Budget alert for %s at %d%% (%s)", budget.category.value, reached, key
                )
            results.append(
                BudgetAlertResult(
                    category=budget.category.value,
                    threshold=reached,
                    month_key=key,
                    spent=spent,
                    limit=budget.monthly_limit,
                    percent=percent,
                    runway_before=before,
                    runway_after=after,
                    alert_id=alert_id,
                )
            )
        return results


@dataclass
class OverdueItem:
    entity_type: str
    entity_id: int
    document_number: str
    counterparty: str
    total_amount: Decimal
    balance_amount: Decimal
    due_date: date
    days_overdue: int
    aging_bucket: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "document_number": self.document_number,
            "counterparty": self.counterparty,
            "total_amount": str(self.total_amount),
            "balance_amount": str(self.balance_amount),
            "due_date": self.due_date.isoformat(),
            "days_overdue": self.days_overdue,
            "aging_bucket": self.aging_bucket,
        }


@dataclass
class OverdueReport:
    invoices: list[OverdueItem] = field(default_factory=list)
    bills: list[OverdueItem] = field(default_factory=list)
    alerts_created: int = 0
    marked_overdue: int = 0

    @property
    def overdue_receivable(self) -> Decimal:
        return sum((i.balance_amount for i in self.invoices), ZERO)

    @property
    def overdue_payable(self) -> Decimal:
        return sum((b.balance_amount for b in self.bills), ZERO)

    def aging(self) -> dict[str, dict[str, str]]:
        """Outstanding balance per aging bucket for AR and AP."""
        report: dict[str, dict[str, str]] = {}
        for label, items in (("receivable", self.invoices), ("payable", self.bills)):
            buckets = {bucket: ZERO for bucket in AGING_BUCKETS}
            for item in items:
                buckets[item.aging_bucket] += item.balance_amount
            report[label] = {bucket: str(amount) for bucket, amount in buckets.items()}
        return report

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoices": [i.to_dict() for i in self.invoices],
            "bills": [b.to_dict() for b in self.bills],
            "overdue_receivable": str(self.overdue_receivable),
            "overdue_payable": str(self.overdue_payable),
            "aging": self.aging(),
            "alerts_created": self.alerts_created,
            "marked_overdue": self.marked_overdue,
        }


class OverdueTracker:
    """Marks past-due documents overdue and raises tiered alerts."""

    def __init__(self, store: StateStore):
        self.store = store

    def track(self, company_id: int, as_of: date | None = None) -> OverdueReport:
        as_of = as_of or date.today()
        report = OverdueReport()

        invoices = self.store.list_invoices(
            company_id, (*COLLECTIBLE_INVOICE_STATUSES, InvoiceStatus.OVERDUE)
        )
        for invoice in invoices:
            if invoice.due_date is None or invoice.balance_amount <= 0:
                continue
            days = (as_of - invoice.due_date).days
            if days <= 0:
                continue
            report.invoices.append(
                OverdueItem(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    document_number=invoice.invoice_number,
                    counterparty=invoice.customer_name,
                    total_amount=invoice.total_amount,
                    balance_amount=invoice.balance_amount,
                    due_date=invoice.due_date,
                    days_overdue=days,
                    aging_bucket=aging_bucket(days),
                )
            )
            if invoice.status != InvoiceStatus.OVERDUE:
                self.store.set_invoice_status(company_id, invoice.id, InvoiceStatus.OVERDUE)
                report.marked_overdue += 1

            severity = overdue_severity(days, INVOICE_OVERDUE_TIERS)
            if severity is not None:
                prefix = "CRITICAL: " if severity == Severity.CRITICAL else ""
                message = (
                    f"{prefix}Invoice {invoice.invoice_number} is {days} days overdue. "
                    f"Outstanding: {invoice.balance_amount} [{invoice.invoice_number}]"
                )
                if self._alert_once(
                    company_id, AlertType.OVERDUE_INVOICE, invoice.invoice_number, severity, message
                ):
                    report.alerts_created += 1

        bills = self.store.list_bills(company_id, (*PAYABLE_BILL_STATUSES, BillStatus.OVERDUE))
        for bill in bills:
            if bill.due_date is None or bill.balance_amount <= 0:
                continue
            days = (as_of - bill.due_date).days
            if days <= 0:
                continue
            report.bills.append(
                OverdueItem(
                    entity_type="bill",
                    entity_id=bill.id,
                    document_number=bill.bill_number,
                    counterparty=bill.vendor_name,
                    total_amount=bill.total_amount,
                    balance_amount=bill.balance_amount,
                    due_date=bill.due_date,
                    days_overdue=days,
                    aging_bucket=aging_bucket(days),
                )
            )
            if bill.payment_status != BillStatus.OVERDUE:
                self.store.set_bill_status(company_id, bill.id, BillStatus.OVERDUE)
                report.marked_overdue += 1

            severity = overdue_severity(days, BILL_OVERDUE_TIERS)
            if severity is not None:
                prefix = "CRITICAL: " if severity == Severity.CRITICAL else ""
                message = (
                    f"{prefix}Bill {bill.bill_number} to {bill.vendor_name} is {days} days "
                    f"overdue. Outstanding: {bill.balance_amount} [{bill.bill_number}]"
                )
                if self._alert_once(
                    company_id, AlertType.OVERDUE_BILL, bill.bill_number, severity, message
                ):
                    report.alerts_created += 1

        logger.info(
            "Overdue scan for company %d: %d invoices, %d bills, %d new alerts",
            company_id,
            len(report.invoices),
            len(report.bills),
            report.alerts_created,
        )
        return report

    def _alert_once(
        self,
        company_id: int,
        alert_type: AlertType,
        document_number: str,
        severity: Severity,
        message: str,
    ) -> bool:
        if self.store.find_alert_containing(
            company_id, f"[{document_number}]", severity=severity, alert_type=alert_type
        ):
            return False
        return self.store.create_alert(company_id, alert_type, severity, message) is not None


def runway_alert(
    store: StateStore, company_id: int, metrics: RunwayMetrics, as_of: date | None = None
) -> int | None:
    """Create at most one runway alert per tier and month.

    Returns:
        New alert id, or None when the tier is healthy or already alerted.
    """
    severity = RUNWAY_SEVERITY.get(metrics.tier)
    if severity is None:
        return None
    token = f"[runway:{metrics.tier.value}:{month_key(as_of or date.today())}]"
    if store.find_alert_containing(company_id, token, alert_type=AlertType.RUNWAY):
        return None

    message = (
        f"Runway {metrics.tier.value}: {_months(metrics.runway)} months of cash at a monthly "
        f"burn of {metrics.monthly_burn} {token}"
    )
    return store.create_alert(company_id, AlertType.RUNWAY, severity, message)


def anomaly_alerts(store: StateStore, company_id: int, anomalies: list[Anomaly]) -> int:
    """Persist anomalies as alerts, once per finding key. Returns the count created."""
    created = 0
    for anomaly in anomalies:
        if store.find_alert_containing(company_id, anomaly.key, alert_type=AlertType.ANOMALY):
            continue
        if store.create_alert(
            company_id,
            AlertType.ANOMALY,
            anomaly.severity,
            f"{anomaly.message} {anomaly.key}",
        ):
            created += 1
    return created
