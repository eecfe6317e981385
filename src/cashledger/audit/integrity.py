"""
Consistency checks between the cash balance, the ledger and AR/AP.

Failed checks are reported, never corrected here. fix_integrity_issues()
is the only writer and must be invoked explicitly with the names of the
checks to fix.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..dedupe import DuplicateDetector
from ..errors import CashLedgerError, IntegrityViolation
from ..schemas.categories import Category, display_name
from ..schemas.ledger import (
    COLLECTIBLE_INVOICE_STATUSES,
    PAYABLE_BILL_STATUSES,
    ZERO,
    BillStatus,
    InvoiceStatus,
    Severity,
)

if TYPE_CHECKING:
    from ..config import AuditConfig, Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

MANY_DUPLICATES = 10


class IntegrityCheck(str, Enum):
    CASH_BALANCE = "cash_balance"
    AR_CONSISTENCY = "ar_consistency"
    AP_CONSISTENCY = "ap_consistency"
    ORPHANED_MATCHES = "orphaned_matches"
    DUPLICATES = "duplicates"
    INVOICE_STATUS = "invoice_status"
    BILL_STATUS = "bill_status"
    DATE_RANGE = "date_range"
    CATEGORY_CONCENTRATION = "category_concentration"


class OverallStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


@dataclass
class CheckResult:
    check: IntegrityCheck
    passed: bool
    details: str
    severity: Severity = Severity.LOW
    fixable: bool = False

    def to_violation(self) -> IntegrityViolation:
        return IntegrityViolation(
            self.details, check=self.check.value, severity=self.severity.value
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check.value,
            "passed": self.passed,
            "details": self.details,
            "severity": self.severity.value,
            "fixable": self.fixable,
        }


@dataclass
class IntegrityReport:
    company_id: int
    checks: list[CheckResult] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed and c.severity == Severity.CRITICAL]

    @property
    def warnings(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed and c.severity != Severity.CRITICAL]

    @property
    def overall_status(self) -> OverallStatus:
        if self.failures:
            return OverallStatus.FAIL
        if self.warnings:
            return OverallStatus.WARNING
        return OverallStatus.PASS

    @property
    def fixable(self) -> list[IntegrityCheck]:
        return [c.check for c in self.checks if not c.passed and c.fixable]

    def get(self, check: IntegrityCheck) -> CheckResult | None:
        return next((c for c in self.checks if c.check == check), None)

    def raise_for_failures(self) -> None:
        """Escalate the first critical failure to an exception."""
        if self.failures:
            raise self.failures[0].to_violation()

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "timestamp": self.timestamp,
            "overall_status": self.overall_status.value,
            "checks": [c.to_dict() for c in self.checks],
            "summary": {
                "total_checks": len(self.checks),
                "passed": sum(1 for c in self.checks if c.passed),
                "warnings": len(self.warnings),
                "failures": len(self.failures),
            },
        }


@dataclass
class FixResult:
    fixed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    details: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"fixed": self.fixed, "failed": self.failed, "details": self.details}


def discrepancy_percent(stored: Decimal, recomputed: Decimal) -> float:
    """Absolute difference as a percentage of the stored balance."""
    diff = abs(stored - recomputed)
    if diff == 0:
        return 0.0
    if stored == 0:
        return 100.0
    return float(diff / abs(stored) * 100)


class IntegrityAuditor:
    def __init__(self, store: StateStore, config: Config):
        self.store = store
        self.config: AuditConfig = config.audit
        self.dedupe = DuplicateDetector(store, config.duplicates)

    def run(
        self, company_id: int, as_of: date | None = None, include_duplicates: bool = True
    ) -> IntegrityReport:
        """Run every check for one company."""
        as_of = as_of or date.today()
        self.store.require_company(company_id)

        report = IntegrityReport(company_id=company_id)
        report.checks.append(self.check_cash_balance(company_id))
        report.checks.append(self.check_ar(company_id))
        report.checks.append(self.check_ap(company_id))
        report.checks.append(self.check_orphaned_matches(company_id))
        if include_duplicates:
            report.checks.append(self.check_duplicates(company_id))
        report.checks.append(self.check_invoice_status(company_id, as_of))
        report.checks.append(self.check_bill_status(company_id, as_of))
        report.checks.append(self.check_dates(company_id, as_of))
        report.checks.append(self.check_concentration(company_id, as_of))

        logger.info(
            "Integrity check for company %d: %s (%d warnings, %d failures)",
            company_id,
            report.overall_status.value,
            len(report.warnings),
            len(report.failures),
        )
        return report

    def recomputed_balance(self, company_id: int) -> Decimal:
        company = self.store.require_company(company_id)
        return company.initial_cash_balance + self.store.sum_transactions(company_id)

    def check_cash_balance(self, company_id: int) -> CheckResult:
        stored = self.store.require_company(company_id).cash_balance
        recomputed = self.recomputed_balance(company_id)
        percent = discrepancy_percent(stored, recomputed)

        if percent <= self.config.cash_flag_percent:
            return CheckResult(
                IntegrityCheck.CASH_BALANCE,
                passed=True,
                details=f"Stored balance {stored} matches ledger ({percent:.2f}% difference)",
            )
        severity = (
            Severity.CRITICAL if percent > self.config.cash_critical_percent else Severity.HIGH
        )
        return CheckResult(
            IntegrityCheck.CASH_BALANCE,
            passed=False,
            details=(
                f"Stored balance {stored} differs from recomputed {recomputed} "
                f"by {abs(stored - recomputed)} ({percent:.2f}%)"
            ),
            severity=severity,
            fixable=True,
        )

    def check_ar(self, company_id: int) -> CheckResult:
        invoices = self.store.list_invoices(company_id)
        bad = [i for i in invoices if i.status == InvoiceStatus.PAID and i.balance_amount > 0]
        if bad:
            return CheckResult(
                IntegrityCheck.AR_CONSISTENCY,
                passed=False,
                details=f"{len(bad)} invoices marked paid with a remaining balance",
                severity=Severity.HIGH,
                fixable=True,
            )
        open_invoices = [i for i in invoices if i.is_open]
        receivable = sum((i.balance_amount for i in open_invoices), ZERO)
        return CheckResult(
            IntegrityCheck.AR_CONSISTENCY,
            passed=True,
            details=f"AR total {receivable} across {len(open_invoices)} open invoices",
        )

    def check_ap(self, company_id: int) -> CheckResult:
        bills = self.store.list_bills(company_id)
        bad = [b for b in bills if b.payment_status == BillStatus.PAID and b.balance_amount > 0]
        if bad:
            return CheckResult(
                IntegrityCheck.AP_CONSISTENCY,
                passed=False,
                details=f"{len(bad)} bills marked paid with a remaining balance",
                severity=Severity.HIGH,
                fixable=True,
            )
        open_bills = [b for b in bills if b.is_open]
        payable = sum((b.balance_amount for b in open_bills), ZERO)
        return CheckResult(
            IntegrityCheck.AP_CONSISTENCY,
            passed=True,
            details=f"AP total {payable} across {len(open_bills)} open bills",
        )

    def check_orphaned_matches(self, company_id: int) -> CheckResult:
        invoice_ids = {i.id for i in self.store.list_invoices(company_id)}
        bill_ids = {b.id for b in self.store.list_bills(company_id)}
        orphans = [
            t.id
            for t in self.store.list_transactions(company_id)
            if (t.matched_invoice_id is not None and t.matched_invoice_id not in invoice_ids)
            or (t.matched_bill_id is not None and t.matched_bill_id not in bill_ids)
        ]
        if orphans:
            return CheckResult(
                IntegrityCheck.ORPHANED_MATCHES,
                passed=False,
                details=f"{len(orphans)} transactions reference missing invoices or bills",
                severity=Severity.HIGH,
            )
        return CheckResult(
            IntegrityCheck.ORPHANED_MATCHES, passed=True, details="All matches resolve"
        )

    def check_duplicates(self, company_id: int) -> CheckResult:
        extras = sum(len(g.extras) for g in self.dedupe.find_existing_duplicates(company_id))
        if extras:
            return CheckResult(
                IntegrityCheck.DUPLICATES,
                passed=False,
                details=f"{extras} potential duplicate transactions found",
                severity=Severity.HIGH if extras > MANY_DUPLICATES else Severity.MEDIUM,
            )
        return CheckResult(
            IntegrityCheck.DUPLICATES, passed=True, details="No duplicate transactions detected"
        )

    def _unflagged_invoices(self, company_id: int, as_of: date):
        return [
            i
            for i in self.store.list_invoices(company_id, COLLECTIBLE_INVOICE_STATUSES)
            if i.due_date is not None and i.due_date < as_of and i.balance_amount > 0
        ]

    def _unflagged_bills(self, company_id: int, as_of: date):
        return [
            b
            for b in self.store.list_bills(company_id, PAYABLE_BILL_STATUSES)
            if b.due_date is not None and b.due_date < as_of and b.balance_amount > 0
        ]

    def check_invoice_status(self, company_id: int, as_of: date) -> CheckResult:
        count = len(self._unflagged_invoices(company_id, as_of))
        if count:
            return CheckResult(
                IntegrityCheck.INVOICE_STATUS,
                passed=False,
                details=f"{count} invoices are past due but not marked overdue",
                severity=Severity.MEDIUM,
                fixable=True,
            )
        return CheckResult(
            IntegrityCheck.INVOICE_STATUS, passed=True, details="Invoice statuses are consistent"
        )

    def check_bill_status(self, company_id: int, as_of: date) -> CheckResult:
        count = len(self._unflagged_bills(company_id, as_of))
        if count:
            return CheckResult(
                IntegrityCheck.BILL_STATUS,
                passed=False,
                details=f"{count} bills are past due but not marked overdue",
                severity=Severity.MEDIUM,
                fixable=True,
            )
        return CheckResult(
            IntegrityCheck.BILL_STATUS, passed=True, details="Bill statuses are consistent"
        )

    def check_dates(self, company_id: int, as_of: date) -> CheckResult:
        future_limit = as_of + timedelta(days=self.config.future_date_days)
        try:
            oldest_allowed = as_of.replace(year=as_of.year - self.config.max_age_years)
        except ValueError:
            # 29 February
            oldest_allowed = as_of.replace(year=as_of.year - self.config.max_age_years, day=28)

        transactions = self.store.list_transactions(company_id)
        future = sum(1 for t in transactions if t.date > future_limit)
        ancient = sum(1 for t in transactions if t.date < oldest_allowed)
        if future or ancient:
            return CheckResult(
                IntegrityCheck.DATE_RANGE,
                passed=False,
                details=f"{future} future transactions, {ancient} very old transactions",
                severity=Severity.HIGH if future else Severity.MEDIUM,
            )
        return CheckResult(
            IntegrityCheck.DATE_RANGE, passed=True, details="All transaction dates are in range"
        )

    def check_concentration(self, company_id: int, as_of: date) -> CheckResult:
        """Informational: one category holding most of the window's spend."""
        start = as_of - timedelta(days=self.config.lookback_days)
        window = self.store.transactions_between(company_id, start, as_of)
        debits = [t for t in window if t.amount < 0]

        spend: dict[Category, Decimal] = defaultdict(lambda: ZERO)
        for txn in debits:
            spend[txn.category] += txn.abs_amount
        total = sum(spend.values(), ZERO)

        if total > 0 and len(debits) > self.config.concentration_min_transactions:
            category, amount = max(spend.items(), key=lambda item: item[1])
            share = float(amount / total * 100)
            if share > self.config.concentration_percent:
                label = display_name(category)
                return CheckResult(
                    IntegrityCheck.CATEGORY_CONCENTRATION,
                    passed=False,
                    details=f"{label} accounts for {share:.0f}% of spending",
                    severity=Severity.INFO,
                )
        return CheckResult(
            IntegrityCheck.CATEGORY_CONCENTRATION,
            passed=True,
            details=f"Expenses spread across {len(spend)} categories",
        )


def fix_integrity_issues(
    store: StateStore,
    company_id: int,
    issues: list[IntegrityCheck | str],
    as_of: date | None = None,
) -> FixResult:
    """Apply automatic fixes for the named checks.

    Each fix runs on its own; a failure is reported for that issue and the
    remaining fixes still run.
    """
    as_of = as_of or date.today()
    result = FixResult()

    for issue in issues:
        name = issue.value if isinstance(issue, IntegrityCheck) else str(issue)
        try:
            check = IntegrityCheck(name)
            if check == IntegrityCheck.CASH_BALANCE:
                company = store.require_company(company_id)
                balance = company.initial_cash_balance + store.sum_transactions(company_id)
                store.overwrite_cash_balance(company_id, balance)
                result.details[name] = f"Cash balance set to {balance}"
            elif check == IntegrityCheck.AR_CONSISTENCY:
                count = 0
                for invoice in store.list_invoices(company_id, (InvoiceStatus.PAID,)):
                    if invoice.balance_amount > 0:
                        store.set_invoice_status(company_id, invoice.id, InvoiceStatus.PARTIAL)
                        count += 1
                result.details[name] = f"{count} invoices moved to partial"
            elif check == IntegrityCheck.AP_CONSISTENCY:
                count = 0
                for bill in store.list_bills(company_id, (BillStatus.PAID,)):
                    if bill.balance_amount > 0:
                        store.set_bill_status(company_id, bill.id, BillStatus.PARTIAL)
                        count += 1
                result.details[name] = f"{count} bills moved to partial"
            elif check == IntegrityCheck.INVOICE_STATUS:
                count = 0
                for invoice in store.list_invoices(company_id, COLLECTIBLE_INVOICE_STATUSES):
                    if invoice.due_date and invoice.due_date < as_of and invoice.balance_amount > 0:
                        store.set_invoice_status(company_id, invoice.id, InvoiceStatus.OVERDUE)
                        count += 1
                result.details[name] = f"{count} invoices marked overdue"
            elif check == IntegrityCheck.BILL_STATUS:
                count = 0
                for bill in store.list_bills(company_id, PAYABLE_BILL_STATUSES):
                    if bill.due_date and bill.due_date < as_of and bill.balance_amount > 0:
                        store.set_bill_status(company_id, bill.id, BillStatus.OVERDUE)
                        count += 1
                result.details[name] = f"{count} bills marked overdue"
            else:
                result.failed.append(name)
                result.details[name] = "No automatic fix available"
                continue
        except (CashLedgerError, ValueError) as e:
            logger.warning("Integrity fix %s failed for company %d: %s", name, company_id, e)
            result.failed.append(name)
            result.details[name] = f"Fix failed: {e}"
            continue

        result.fixed.append(name)
        logger.info(
            "Integrity fix %s applied for company %d: %s", name, company_id, result.details[name]
        )

    return result
