"""Tests for the periodic audit pass.

These tests verify:
- A clean company audits without anomalies, failures or alerts
- Integrity problems are only fixed when fix=True
- Overdue tracking and alerts run inside the audit and are idempotent
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from conftest import make_transaction

from cashledger.audit import Auditor, IntegrityCheck, OverallStatus
from cashledger.errors import NotFoundError
from cashledger.ledger import RunwayTier
from cashledger.schemas.ledger import InvoiceStatus

AS_OF = date(2024, 3, 31)


@pytest.fixture
def auditor(store, config) -> Auditor:
    return Auditor(store, config)


@pytest.fixture
def drifted(store, company_id) -> int:
    """Cash out of step with the ledger plus a past-due invoice."""
    make_transaction(store, company_id, date(2024, 3, 1), "Office rent", "-15000")
    return store.create_invoice(
        company_id, "INV-9", "Initech", Decimal("4000"), due_date=date(2024, 1, 1)
    )


class TestAuditRun:
    def test_clean_company(self, auditor, company_id):
        result = auditor.run(company_id, AS_OF)

        assert result.anomalies == []
        assert result.integrity.overall_status == OverallStatus.PASS
        assert result.alerts_created == 0
        assert result.fixes is None
        assert result.runway.tier == RunwayTier.HEALTHY

        data = result.to_dict()
        assert data["as_of"] == "2024-03-31"
        assert data["fixes"] is None

    def test_reports_without_fixing(self, auditor, store, company_id, drifted):
        """Without fix=True the stored balance is left alone."""
        result = auditor.run(company_id, AS_OF)

        assert result.integrity.overall_status == OverallStatus.FAIL
        assert IntegrityCheck.CASH_BALANCE in result.integrity.fixable
        assert result.fixes is None
        assert store.get_company(company_id).cash_balance == Decimal("500000.00")

        assert [i.document_number for i in result.overdue.invoices] == ["INV-9"]
        assert result.alerts_created == 1
        assert store.get_invoice(company_id, drifted).status == InvoiceStatus.OVERDUE

    def test_fix_applies_fixable_checks(self, auditor, store, company_id, drifted):
        result = auditor.run(company_id, AS_OF, fix=True)

        assert "cash_balance" in result.fixes.fixed
        assert "invoice_status" in result.fixes.fixed
        assert result.fixes.failed == []
        assert store.get_company(company_id).cash_balance == Decimal("485000.00")
        assert result.runway.cash_balance == Decimal("485000.00")

    def test_rerun_creates_no_new_alerts(self, auditor, company_id, drifted):
        auditor.run(company_id, AS_OF)
        assert auditor.run(company_id, AS_OF).alerts_created == 0

    def test_unknown_company(self, auditor):
        with pytest.raises(NotFoundError):
            auditor.run(404, AS_OF)
