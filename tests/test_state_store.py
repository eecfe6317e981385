"""Tests for the SQLite state store.

These tests verify:
- Company cash balance updates (delta, declaration, overwrite)
- Transaction persistence and lookup
- Invoice / bill payment application, reversal on delete and the balance invariant
- Manual payment links written together with their review outcome
- Subscription and recurring expense upserts keyed by vendor
- Budget alert uniqueness per (category, threshold, month)
- Migrations are applied once, in version order
"""

from __future__ import annotations

import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from conftest import make_transaction

from cashledger.errors import InvalidTransition, NotFoundError
from cashledger.schemas import Category
from cashledger.schemas.ledger import (
    AlertType,
    BillStatus,
    Frequency,
    InvoiceStatus,
    ReviewStatus,
    Severity,
)
from cashledger.state_store import ReviewUpdate
from cashledger.state_store.migrations import MigrationRunner, load_migrations


class TestCompanies:
    """Tests for company records and the cash scalar."""

    def test_create_and_get(self, store, company_id):
        """A created company round-trips with its opening balance."""
        company = store.get_company(company_id)
        assert company.name == "Acme Labs"
        assert company.cash_balance == Decimal("500000.00")
        assert company.initial_cash_balance == Decimal("500000.00")
        assert company.currency == "INR"

    def test_require_missing_company(self, store):
        """require_company raises NotFoundError for unknown ids."""
        with pytest.raises(NotFoundError):
            store.require_company(999)

    def test_apply_cash_delta(self, store, company_id):
        """Deltas are added atomically and old/new balances returned."""
        old, new = store.apply_cash_delta(company_id, Decimal("-15000.00"))
        assert old == Decimal("500000.00")
        assert new == Decimal("485000.00")
        assert store.get_company(company_id).cash_balance == Decimal("485000.00")

    def test_set_cash_balance_rederives_opening(self, store, company_id):
        """Declaring a balance keeps opening + sum(transactions) == balance."""
        make_transaction(store, company_id, date(2024, 1, 5), "Office rent", "-20000")
        store.set_cash_balance(company_id, Decimal("300000.00"))
        company = store.get_company(company_id)
        assert company.cash_balance == Decimal("300000.00")
        assert company.initial_cash_balance == Decimal("320000.00")

    def test_overwrite_keeps_opening(self, store, company_id):
        """overwrite_cash_balance only touches the stored balance."""
        store.overwrite_cash_balance(company_id, Decimal("1.00"))
        company = store.get_company(company_id)
        assert company.cash_balance == Decimal("1.00")
        assert company.initial_cash_balance == Decimal("500000.00")


class TestTransactions:
    """Tests for ledger transaction storage."""

    def test_insert_and_get(self, store, company_id):
        """Inserted transactions keep amount, category and flags."""
        txn_id = make_transaction(
            store,
            company_id,
            date(2024, 2, 1),
            "AWS Cloud Services",
            "-15000",
            category=Category.CLOUD,
            flags=["llm_error"],
        )
        txn = store.get_transaction(company_id, txn_id)
        assert txn.amount == Decimal("-15000")
        assert txn.category == Category.CLOUD
        assert txn.flags == ["llm_error"]

    def test_transactions_are_company_scoped(self, store, company_id):
        """A transaction is invisible to other companies."""
        other = store.create_company("Globex")
        txn_id = make_transaction(store, company_id, date(2024, 2, 1), "Coffee", "-250")
        assert store.get_transaction(other, txn_id) is None

    def test_find_containing_matches_reference(self, store, company_id):
        """Lookup searches the description and the reference number."""
        make_transaction(store, company_id, date(2024, 2, 1), "NEFT UTR HDFC0099887", "-900")
        found = store.find_transaction_containing(company_id, "hdfc0099887")
        assert found is not None
        assert store.find_transaction_containing(company_id, "ZZZ000") is None

    def test_between_and_list_order(self, store, company_id):
        """transactions_between is oldest first, list_transactions newest first."""
        make_transaction(store, company_id, date(2024, 2, 10), "Second", "-2")
        make_transaction(store, company_id, date(2024, 2, 1), "First", "-1")
        between = store.transactions_between(company_id, date(2024, 2, 1), date(2024, 2, 28))
        assert [t.description for t in between] == ["First", "Second"]
        listed = store.list_transactions(company_id)
        assert [t.description for t in listed] == ["Second", "First"]

    def test_delete_reverses_cash(self, store, company_id):
        """Deleting transactions subtracts their signed sum from the balance."""
        txn_id = make_transaction(store, company_id, date(2024, 2, 1), "Vendor", "-1000")
        removed = store.delete_transactions(company_id, [txn_id])
        assert removed == Decimal("-1000")
        assert store.get_company(company_id).cash_balance == Decimal("501000.00")
        assert store.count_transactions(company_id) == 0

    def test_delete_reopens_paid_invoice(self, store, company_id):
        """Deleting the only payment puts the invoice back to sent."""
        invoice_id = store.create_invoice(company_id, "INV-3", "Initech", Decimal("5000"))
        txn_id = make_transaction(store, company_id, date(2024, 2, 1), "Initech INV-3", "5000")
        store.link_transaction_payment(company_id, txn_id, "invoice", invoice_id)
        assert store.get_invoice(company_id, invoice_id).status == InvoiceStatus.PAID

        store.delete_transactions(company_id, [txn_id])

        invoice = store.get_invoice(company_id, invoice_id)
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.paid_amount == Decimal("0")
        assert invoice.balance_amount == Decimal("5000")
        assert invoice.paid_date is None

    def test_link_with_review_outcome(self, store, company_id):
        """The review outcome is written with the payment link."""
        bill_id = store.create_bill(company_id, "BILL-2", "Hooli", Decimal("700"))
        txn_id = make_transaction(
            store, company_id, date(2024, 2, 1), "Hooli", "-700", needs_review=True
        )
        review = ReviewUpdate(
            review_status=ReviewStatus.APPROVED,
            reviewed_by="ops",
            confidence_score=100,
            expected_status=ReviewStatus.PENDING_REVIEW,
        )
        store.link_transaction_payment(company_id, txn_id, "bill", bill_id, review=review)

        txn = store.get_transaction(company_id, txn_id)
        assert txn.review_status == ReviewStatus.APPROVED
        assert txn.needs_review is False
        assert txn.matched_bill_id == bill_id
        assert txn.review_notes == "Matched to bill BILL-2"
        assert txn.confidence_score == 100

    def test_link_refused_when_review_state_moved(self, store, company_id):
        """A stale expected status leaves both the row and the bill untouched."""
        bill_id = store.create_bill(company_id, "BILL-3", "Hooli", Decimal("700"))
        txn_id = make_transaction(store, company_id, date(2024, 2, 1), "Hooli", "-700")
        review = ReviewUpdate(
            review_status=ReviewStatus.APPROVED,
            expected_status=ReviewStatus.PENDING_REVIEW,
        )
        with pytest.raises(InvalidTransition):
            store.link_transaction_payment(company_id, txn_id, "bill", bill_id, review=review)

        assert store.get_bill(company_id, bill_id).payment_status == BillStatus.UNPAID
        assert store.get_transaction(company_id, txn_id).matched_bill_id is None


class TestDocuments:
    """Tests for invoice and bill payments."""

    def test_invoice_full_payment(self, store, company_id):
        """A full payment marks the invoice paid with zero balance."""
        invoice_id = store.create_invoice(company_id, "INV001", "Initech", Decimal("50000"))
        payment = store.apply_invoice_payment(
            company_id, invoice_id, Decimal("50000"), date(2024, 3, 1)
        )
        invoice = store.get_invoice(company_id, invoice_id)
        assert payment.previous_status == "sent"
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.balance_amount == Decimal("0")
        assert invoice.paid_date == date(2024, 3, 1)

    def test_bill_partial_payments(self, store, company_id):
        """balance == max(0, total - paid) after every payment."""
        bill_id = store.create_bill(company_id, "BILL-7", "Hooli", Decimal("10000"))
        store.apply_bill_payment(company_id, bill_id, Decimal("4000"), date(2024, 3, 1))
        bill = store.get_bill(company_id, bill_id)
        assert bill.payment_status == BillStatus.PARTIAL
        assert bill.balance_amount == Decimal("6000")

        store.apply_bill_payment(company_id, bill_id, Decimal("7000"), date(2024, 3, 9))
        bill = store.get_bill(company_id, bill_id)
        assert bill.payment_status == BillStatus.PAID
        assert bill.paid_amount == Decimal("11000")
        assert bill.balance_amount == Decimal("0")

    def test_open_documents(self, store, company_id):
        """Paid documents are not open."""
        store.create_invoice(company_id, "INV-A", "Initech", Decimal("10"))
        store.create_invoice(
            company_id, "INV-B", "Initech", Decimal("10"), status=InvoiceStatus.PAID
        )
        assert [i.invoice_number for i in store.open_invoices(company_id)] == ["INV-A"]

    def test_payment_on_missing_invoice(self, store, company_id):
        """Paying an unknown invoice raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.apply_invoice_payment(company_id, 42, Decimal("1"), date(2024, 1, 1))


class TestRecurringRecords:
    """Tests for vendor-keyed upserts."""

    def test_subscription_upsert_by_vendor_key(self, store, company_id):
        """The same vendor key updates the existing subscription."""
        first, created = store.upsert_subscription(
            company_id, "slack", "Slack", Decimal("4200"), Frequency.MONTHLY,
            date(2024, 1, 5), Category.SAAS,
        )
        second, created_again = store.upsert_subscription(
            company_id, "slack", "Slack", Decimal("4400"), Frequency.MONTHLY,
            date(2024, 2, 5), Category.SAAS,
        )
        assert created is True
        assert created_again is False
        assert first == second
        subscription = store.list_subscriptions(company_id)[0]
        assert subscription.amount == Decimal("4400")
        assert subscription.last_billed_date == date(2024, 2, 5)

    def test_distinct_vendor_keys_do_not_merge(self, store, company_id):
        """Vendors sharing a substring keep separate records."""
        store.upsert_recurring_expense(
            company_id, "acme", "Acme", Decimal("100"), Frequency.MONTHLY,
            Category.OTHER, date(2024, 1, 1),
        )
        store.upsert_recurring_expense(
            company_id, "acme-cloud", "Acme Cloud", Decimal("200"), Frequency.MONTHLY,
            Category.CLOUD, date(2024, 1, 1),
        )
        assert len(store.list_recurring_expenses(company_id)) == 2


class TestAlerts:
    """Tests for alert persistence."""

    def test_budget_alert_unique_per_month(self, store, company_id):
        """A second budget alert for the same key is ignored."""
        first = store.create_alert(
            company_id, AlertType.BUDGET, Severity.MEDIUM, "Budget reached",
            category="Cloud", threshold=80, month_key="2024-03",
        )
        second = store.create_alert(
            company_id, AlertType.BUDGET, Severity.MEDIUM, "Budget reached again",
            category="Cloud", threshold=80, month_key="2024-03",
        )
        next_month = store.create_alert(
            company_id, AlertType.BUDGET, Severity.MEDIUM, "Budget reached",
            category="Cloud", threshold=80, month_key="2024-04",
        )
        assert first is not None
        assert second is None
        assert next_month is not None
        assert len(store.list_alerts(company_id, alert_type=AlertType.BUDGET)) == 2

    def test_find_alert_containing(self, store, company_id):
        """Alerts are found by message fragment and filtered by severity."""
        store.create_alert(
            company_id, AlertType.OVERDUE_INVOICE, Severity.MEDIUM, "Invoice INV9 is 31 days"
        )
        assert store.find_alert_containing(company_id, "INV9") is not None
        assert store.find_alert_containing(company_id, "INV9", severity=Severity.HIGH) is None

    def test_import_runs(self, store, company_id):
        """Import runs are recorded with their summary."""
        store.record_import_run(
            company_id, "COMPLETED", "2024-03-01T00:00:00", {"new_transactions": 3}, []
        )
        runs = store.list_import_runs(company_id)
        assert runs[0]["state"] == "COMPLETED"
        assert runs[0]["summary"]["new_transactions"] == 3


class TestMigrations:
    """Tests for the forward-only migration runner."""

    def test_all_versions_applied_once(self, store, temp_db):
        conn = sqlite3.connect(str(temp_db))
        try:
            runner = MigrationRunner(conn)
            assert runner.applied_versions() == {m.version for m in load_migrations()}
            assert runner.run_pending() == []
        finally:
            conn.close()

    def test_versions_are_ordered(self):
        versions = [m.version for m in load_migrations()]
        assert versions == sorted(versions) == [1, 2, 3]
