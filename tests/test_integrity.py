"""Tests for integrity checks and explicit fixes.

These tests verify:
- Cash balance discrepancy tiers (1% warning, 2% critical)
- AR / AP and overdue status consistency, sharing the tracker's open statuses
- Orphaned matches, duplicates, date range and concentration checks
- fix_integrity_issues() only touches the named checks
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import make_transaction

from cashledger.audit import (
    IntegrityAuditor,
    IntegrityCheck,
    OverallStatus,
    OverdueTracker,
    fix_integrity_issues,
)
from cashledger.audit.integrity import discrepancy_percent
from cashledger.errors import IntegrityViolation, NotFoundError
from cashledger.schemas import Category
from cashledger.schemas.ledger import (
    InvoiceStatus,
    NewLedgerTransaction,
    ReviewStatus,
    Severity,
    TransactionType,
)

AS_OF = date(2024, 3, 31)


@pytest.fixture
def auditor(store, config) -> IntegrityAuditor:
    return IntegrityAuditor(store, config)


class TestDiscrepancyPercent:
    @pytest.mark.parametrize(
        "stored,recomputed,expected",
        [("100", "100", 0.0), ("0", "5", 100.0), ("200", "198", 1.0), ("-200", "-204", 2.0)],
    )
    def test_relative_to_stored(self, stored, recomputed, expected):
        assert discrepancy_percent(Decimal(stored), Decimal(recomputed)) == expected


class TestCashBalance:
    """Tests for the cash balance check."""

    def test_clean_company_passes(self, auditor, company_id):
        report = auditor.run(company_id, AS_OF)
        assert report.overall_status == OverallStatus.PASS
        assert report.fixable == []

    def test_critical_discrepancy(self, auditor, store, company_id):
        """A 3% gap between stored and recomputed cash is a failure."""
        make_transaction(store, company_id, date(2024, 3, 1), "Office rent", "-15000")
        report = auditor.run(company_id, AS_OF)

        check = report.get(IntegrityCheck.CASH_BALANCE)
        assert check.passed is False
        assert check.severity == Severity.CRITICAL
        assert report.overall_status == OverallStatus.FAIL
        assert IntegrityCheck.CASH_BALANCE in report.fixable

        with pytest.raises(IntegrityViolation) as exc_info:
            report.raise_for_failures()
        assert exc_info.value.check == "cash_balance"

    def test_small_discrepancy_is_a_warning(self, auditor, store, company_id):
        make_transaction(store, company_id, date(2024, 3, 1), "Office rent", "-7500")
        report = auditor.run(company_id, AS_OF)
        assert report.get(IntegrityCheck.CASH_BALANCE).severity == Severity.HIGH
        assert report.overall_status == OverallStatus.WARNING

    def test_fix_recomputes_balance(self, auditor, store, company_id):
        make_transaction(store, company_id, date(2024, 3, 1), "Office rent", "-15000")
        result = fix_integrity_issues(store, company_id, [IntegrityCheck.CASH_BALANCE])
        assert result.fixed == ["cash_balance"]
        assert store.get_company(company_id).cash_balance == Decimal("485000.00")
        assert auditor.run(company_id, AS_OF).get(IntegrityCheck.CASH_BALANCE).passed is True

    def test_unknown_company(self, auditor):
        with pytest.raises(NotFoundError):
            auditor.run(404, AS_OF)


class TestDocumentChecks:
    """Tests for AR / AP and status checks."""

    def test_paid_invoice_with_balance(self, auditor, store, company_id):
        invoice_id = store.create_invoice(
            company_id, "INV-1", "Initech", Decimal("1000"), status=InvoiceStatus.PAID
        )
        check = auditor.run(company_id, AS_OF).get(IntegrityCheck.AR_CONSISTENCY)
        assert check.passed is False
        assert check.fixable is True

        fix_integrity_issues(store, company_id, ["ar_consistency"])
        assert store.get_invoice(company_id, invoice_id).status == InvoiceStatus.PARTIAL

    def test_unflagged_overdue(self, auditor, store, company_id):
        """Past-due documents not marked overdue are reported and fixable."""
        invoice_id = store.create_invoice(
            company_id, "INV-2", "Initech", Decimal("1000"), due_date=date(2024, 1, 1)
        )
        store.create_bill(company_id, "BILL-2", "Hooli", Decimal("500"), due_date=date(2024, 2, 1))
        report = auditor.run(company_id, AS_OF)
        assert report.get(IntegrityCheck.INVOICE_STATUS).passed is False
        assert report.get(IntegrityCheck.BILL_STATUS).passed is False

        result = fix_integrity_issues(
            store, company_id, ["invoice_status", "bill_status"], as_of=AS_OF
        )
        assert result.fixed == ["invoice_status", "bill_status"]
        assert store.get_invoice(company_id, invoice_id).status == InvoiceStatus.OVERDUE
        assert auditor.run(company_id, AS_OF).get(IntegrityCheck.BILL_STATUS).passed is True

    def test_overdue_rules_agree_with_tracker(self, auditor, store, company_id):
        """A late partial invoice is reported and marked; a late draft is neither."""
        partial_id = store.create_invoice(
            company_id,
            "INV-5",
            "Initech",
            Decimal("1000"),
            due_date=date(2024, 1, 1),
            status=InvoiceStatus.PARTIAL,
            paid_amount=Decimal("400"),
        )
        draft_id = store.create_invoice(
            company_id,
            "INV-6",
            "Initech",
            Decimal("1000"),
            due_date=date(2024, 1, 1),
            status=InvoiceStatus.DRAFT,
        )
        check = auditor.run(company_id, AS_OF).get(IntegrityCheck.INVOICE_STATUS)
        assert check.passed is False
        assert check.details.startswith("1 invoices")

        report = OverdueTracker(store).track(company_id, AS_OF)
        assert [i.document_number for i in report.invoices] == ["INV-5"]
        assert store.get_invoice(company_id, partial_id).status == InvoiceStatus.OVERDUE
        assert store.get_invoice(company_id, draft_id).status == InvoiceStatus.DRAFT
        assert auditor.run(company_id, AS_OF).get(IntegrityCheck.INVOICE_STATUS).passed is True

    def test_orphaned_match(self, auditor, store, company_id):
        """A match pointing at another company's invoice is orphaned."""
        other = store.create_company("Globex")
        foreign_invoice = store.create_invoice(other, "INV-X", "Initech", Decimal("10"))
        store.insert_transaction(
            NewLedgerTransaction(
                company_id=company_id,
                date=date(2024, 3, 1),
                description="Receipt",
                amount=Decimal("10"),
                category=Category.OTHER,
                transaction_type=TransactionType.INVOICE_PAYMENT,
                confidence_score=90,
                needs_review=False,
                review_status=ReviewStatus.AUTO_APPROVED,
                matched_invoice_id=foreign_invoice,
            )
        )
        check = auditor.run(company_id, AS_OF).get(IntegrityCheck.ORPHANED_MATCHES)
        assert check.passed is False
        assert check.fixable is False


class TestLedgerChecks:
    def test_duplicates_reported(self, auditor, store, company_id):
        make_transaction(store, company_id, date(2024, 3, 1), "Globex supplies", "-9000")
        make_transaction(store, company_id, date(2024, 3, 1), "Globex supplies", "-9000")
        check = auditor.run(company_id, AS_OF).get(IntegrityCheck.DUPLICATES)
        assert check.passed is False
        assert check.severity == Severity.MEDIUM

    def test_duplicates_can_be_skipped(self, auditor, company_id):
        report = auditor.run(company_id, AS_OF, include_duplicates=False)
        assert report.get(IntegrityCheck.DUPLICATES) is None

    def test_future_dates(self, auditor, store, company_id):
        make_transaction(store, company_id, AS_OF + timedelta(days=30), "Prepaid", "-10")
        check = auditor.run(company_id, AS_OF).get(IntegrityCheck.DATE_RANGE)
        assert check.passed is False
        assert check.severity == Severity.HIGH

    def test_concentration_is_informational(self, auditor, store, company_id):
        for day in range(1, 12):
            make_transaction(
                store, company_id, date(2024, 3, day), f"AWS usage {day}", "-1000", Category.CLOUD
            )
        report = auditor.run(company_id, AS_OF, include_duplicates=False)
        check = report.get(IntegrityCheck.CATEGORY_CONCENTRATION)
        assert check.passed is False
        assert check.severity == Severity.INFO
        assert check in report.warnings


class TestFixResult:
    def test_unfixable_and_unknown(self, store, company_id):
        """Checks without a fix and unknown names are reported as failed."""
        result = fix_integrity_issues(store, company_id, ["duplicates", "bogus"])
        assert result.fixed == []
        assert result.failed == ["duplicates", "bogus"]
        assert result.details["duplicates"] == "No automatic fix available"
        assert result.details["bogus"].startswith("Fix failed")
