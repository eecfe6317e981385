"""Tests for budget, overdue, runway and anomaly alerts.

These tests verify:
- Budget alerts fire once per (category, threshold, month), highest threshold only
- Overdue tiers for invoices and bills, one alert per tier and document number
- Runway and anomaly alerts are deduplicated by their message token
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from conftest import make_transaction

from cashledger.audit import (
    Anomaly,
    AnomalyType,
    BudgetMonitor,
    OverdueTracker,
    aging_bucket,
    anomaly_alerts,
    overdue_severity,
    runway_alert,
)
from cashledger.audit.alerts import BILL_OVERDUE_TIERS, INVOICE_OVERDUE_TIERS
from cashledger.ledger import RunwayMetrics, RunwayTier
from cashledger.schemas import Category
from cashledger.schemas.ledger import AlertType, BillStatus, InvoiceStatus, Severity

AS_OF = date(2024, 3, 20)


class TestBudgetMonitor:
    """Tests for BudgetMonitor.check()."""

    def test_threshold_alerts_are_idempotent(self, store, config, company_id):
        """80% alerts once per month; crossing 100% adds one more."""
        store.set_budget(company_id, Category.CLOUD, Decimal("10000"))
        make_transaction(store, company_id, date(2024, 3, 5), "AWS", "-9000", Category.CLOUD)
        monitor = BudgetMonitor(store, config)

        first = monitor.check(company_id, AS_OF)
        assert len(first) == 1
        assert first[0].threshold == 80
        assert first[0].created is True
        assert first[0].percent == 90.0

        again = monitor.check(company_id, AS_OF)
        assert again[0].created is False

        make_transaction(store, company_id, date(2024, 3, 12), "AWS", "-2000", Category.CLOUD)
        exceeded = monitor.check(company_id, AS_OF)
        assert exceeded[0].threshold == 100
        assert exceeded[0].created is True

        alerts = store.list_alerts(company_id, alert_type=AlertType.BUDGET)
        assert len(alerts) == 2
        messages = sorted(a.message.split(":")[0] for a in alerts)
        assert messages == ["Budget exceeded", "Budget reached"]
        assert {a.severity for a in alerts} == {Severity.MEDIUM, Severity.HIGH}

    def test_under_budget(self, store, config, company_id):
        store.set_budget(company_id, Category.CLOUD, Decimal("10000"))
        make_transaction(store, company_id, date(2024, 3, 5), "AWS", "-7000", Category.CLOUD)
        assert BudgetMonitor(store, config).check(company_id, AS_OF) == []

    def test_previous_month_spend_ignored(self, store, config, company_id):
        store.set_budget(company_id, Category.CLOUD, Decimal("10000"))
        make_transaction(store, company_id, date(2024, 2, 25), "AWS", "-9000", Category.CLOUD)
        assert BudgetMonitor(store, config).check(company_id, AS_OF) == []

    def test_dangerous_runway_message(self, store, config):
        """A projected overrun that leaves under six months is called out."""
        company_id = store.create_company("Thin Co", cash_balance=Decimal("50000"))
        store.set_budget(company_id, Category.CLOUD, Decimal("1000"))
        make_transaction(store, company_id, date(2024, 3, 5), "AWS", "-5000", Category.CLOUD)

        result = BudgetMonitor(store, config).check(company_id, AS_OF)[0]
        assert result.runway_after < 6
        alert = store.list_alerts(company_id, alert_type=AlertType.BUDGET)[0]
        assert "DANGEROUS" in alert.message
        assert alert.severity == Severity.HIGH


class TestOverdueSeverity:
    @pytest.mark.parametrize(
        "days,expected",
        [(30, None), (31, Severity.MEDIUM), (60, Severity.MEDIUM), (61, Severity.HIGH),
         (90, Severity.HIGH), (91, Severity.CRITICAL)],
    )
    def test_invoice_tiers(self, days, expected):
        """Invoice tiers are strictly greater than 30 / 60 / 90 days."""
        assert overdue_severity(days, INVOICE_OVERDUE_TIERS) == expected

    @pytest.mark.parametrize(
        "days,expected",
        [(15, None), (16, Severity.MEDIUM), (31, Severity.HIGH), (61, Severity.CRITICAL)],
    )
    def test_bill_tiers(self, days, expected):
        assert overdue_severity(days, BILL_OVERDUE_TIERS) == expected

    @pytest.mark.parametrize(
        "days,bucket", [(1, "1-30"), (30, "1-30"), (31, "31-60"), (61, "61-90"), (91, "90+")]
    )
    def test_aging_buckets(self, days, bucket):
        assert aging_bucket(days) == bucket


class TestOverdueTracker:
    """Tests for OverdueTracker.track()."""

    AS_OF = date(2024, 4, 5)

    @pytest.fixture
    def documents(self, store, company_id):
        store.create_invoice(
            company_id, "INV-OLD", "Initech", Decimal("5000"), due_date=date(2024, 1, 1)
        )
        store.create_invoice(
            company_id, "INV-NEW", "Globex", Decimal("3000"), due_date=date(2024, 3, 1)
        )
        store.create_invoice(
            company_id, "INV-FUTURE", "Globex", Decimal("100"), due_date=date(2024, 5, 1)
        )
        store.create_bill(
            company_id, "BILL-A", "Hooli", Decimal("800"), due_date=date(2024, 3, 15)
        )
        store.create_bill(
            company_id, "BILL-B", "Hooli", Decimal("200"), due_date=date(2024, 3, 30)
        )

    def test_track(self, store, company_id, documents):
        report = OverdueTracker(store).track(company_id, self.AS_OF)

        assert [i.document_number for i in report.invoices] == ["INV-OLD", "INV-NEW"]
        assert [b.document_number for b in report.bills] == ["BILL-A", "BILL-B"]
        assert report.marked_overdue == 4
        # INV-OLD critical, INV-NEW medium, BILL-A medium; BILL-B is only 6 days late
        assert report.alerts_created == 3
        assert report.overdue_receivable == Decimal("8000")
        assert Decimal(report.aging()["receivable"]["90+"]) == Decimal("5000")

        invoices = {i.invoice_number: i.status for i in store.list_invoices(company_id)}
        assert invoices["INV-OLD"] == InvoiceStatus.OVERDUE
        assert invoices["INV-FUTURE"] == InvoiceStatus.SENT
        assert all(b.payment_status == BillStatus.OVERDUE for b in store.list_bills(company_id))

        critical = store.find_alert_containing(company_id, "INV-OLD", severity=Severity.CRITICAL)
        assert critical.message.startswith("CRITICAL: Invoice INV-OLD is 95 days overdue")

    def test_rerun_is_idempotent(self, store, company_id, documents):
        tracker = OverdueTracker(store)
        tracker.track(company_id, self.AS_OF)
        again = tracker.track(company_id, self.AS_OF)
        assert again.alerts_created == 0
        assert again.marked_overdue == 0

    def test_escalation_adds_one_alert(self, store, company_id, documents):
        """Moving into a higher tier creates a new alert for that tier only."""
        tracker = OverdueTracker(store)
        tracker.track(company_id, self.AS_OF)
        later = tracker.track(company_id, date(2024, 5, 5))
        # INV-NEW 65 days -> high, BILL-A 51 days -> high, BILL-B 36 days -> high
        assert later.alerts_created == 3

    def test_prefix_numbers_get_their_own_alerts(self, store, company_id):
        """INV-1 is not mistaken for an existing INV-10 alert."""
        store.create_invoice(
            company_id, "INV-10", "Initech", Decimal("900"), due_date=date(2024, 1, 1)
        )
        store.create_invoice(
            company_id, "INV-1", "Initech", Decimal("400"), due_date=date(2024, 1, 1)
        )
        report = OverdueTracker(store).track(company_id, self.AS_OF)

        assert report.alerts_created == 2
        assert store.find_alert_containing(company_id, "[INV-1]") is not None
        assert store.find_alert_containing(company_id, "[INV-10]") is not None


class TestRunwayAlert:
    def metrics(self, tier: RunwayTier, runway: float = 2.0) -> RunwayMetrics:
        return RunwayMetrics(
            cash_balance=Decimal("400000"),
            monthly_burn=Decimal("200000"),
            runway=runway,
            target_months=int(runway),
            tier=tier,
        )

    def test_once_per_tier_and_month(self, store, company_id):
        first = runway_alert(store, company_id, self.metrics(RunwayTier.CRITICAL), AS_OF)
        again = runway_alert(store, company_id, self.metrics(RunwayTier.CRITICAL), AS_OF)
        next_month = runway_alert(
            store, company_id, self.metrics(RunwayTier.CRITICAL), date(2024, 4, 2)
        )
        assert first is not None
        assert again is None
        assert next_month is not None

        alert = store.list_alerts(company_id, alert_type=AlertType.RUNWAY)[0]
        assert alert.severity == Severity.CRITICAL

    def test_healthy_has_no_alert(self, store, company_id):
        assert runway_alert(store, company_id, self.metrics(RunwayTier.HEALTHY, 20.0)) is None


class TestAnomalyAlerts:
    def test_deduplicated_by_key(self, store, company_id):
        anomaly = Anomaly(
            anomaly_type=AnomalyType.DUPLICATE,
            severity=Severity.MEDIUM,
            message="Possible duplicate payment",
            transaction_ids=[3, 4],
            confidence=70,
            suggested_action="Check for duplicate payments",
        )
        assert anomaly_alerts(store, company_id, [anomaly]) == 1
        assert anomaly_alerts(store, company_id, [anomaly]) == 0
        alert = store.list_alerts(company_id, alert_type=AlertType.ANOMALY)[0]
        assert alert.message.endswith("[duplicate:3,4]")
