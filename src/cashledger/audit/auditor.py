"""Periodic audit: anomalies, integrity checks and alerts in one pass."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from ..ledger.cash import CashLedger, RunwayMetrics
from .alerts import (
    BudgetAlertResult,
    BudgetMonitor,
    OverdueReport,
    OverdueTracker,
    anomaly_alerts,
    runway_alert,
)
from .anomalies import Anomaly, AnomalyDetector
from .integrity import FixResult, IntegrityAuditor, IntegrityReport, fix_integrity_issues

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class AuditResult:
    company_id: int
    as_of: date
    anomalies: list[Anomaly] = field(default_factory=list)
    integrity: IntegrityReport | None = None
    budgets: list[BudgetAlertResult] = field(default_factory=list)
    overdue: OverdueReport | None = None
    runway: RunwayMetrics | None = None
    alerts_created: int = 0
    fixes: FixResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "as_of": self.as_of.isoformat(),
            "anomalies": [a.to_dict() for a in self.anomalies],
            "integrity": self.integrity.to_dict() if self.integrity else None,
            "budgets": [b.to_dict() for b in self.budgets],
            "overdue": self.overdue.to_dict() if self.overdue else None,
            "runway": self.runway.to_dict() if self.runway else None,
            "alerts_created": self.alerts_created,
            "fixes": self.fixes.to_dict() if self.fixes else None,
        }


class Auditor:
    """Read-mostly audit over the lookback window.

    Writes only alerts, overdue status flags and the cached runway. Integrity
    problems are fixed only when fix=True is passed explicitly.
    """

    def __init__(self, store: StateStore, config: Config):
        self.store = store
        self.config = config
        self.ledger = CashLedger(store, config)
        self.anomalies = AnomalyDetector(store, config)
        self.integrity = IntegrityAuditor(store, config)
        self.budgets = BudgetMonitor(store, config, self.ledger)
        self.overdue = OverdueTracker(store)

    def run(self, company_id: int, as_of: date | None = None, fix: bool = False) -> AuditResult:
        as_of = as_of or date.today()
        self.store.require_company(company_id)
        result = AuditResult(company_id=company_id, as_of=as_of)

        result.anomalies = self.anomalies.detect(company_id, as_of)
        result.alerts_created += anomaly_alerts(self.store, company_id, result.anomalies)

        # Integrity runs before the overdue tracker so unflagged items are reported
        result.integrity = self.integrity.run(company_id, as_of)
        if fix and result.integrity.fixable:
            result.fixes = fix_integrity_issues(
                self.store, company_id, result.integrity.fixable, as_of
            )

        result.budgets = self.budgets.check(company_id, as_of)
        result.alerts_created += sum(1 for b in result.budgets if b.created)

        result.overdue = self.overdue.track(company_id, as_of)
        result.alerts_created += result.overdue.alerts_created

        result.runway = self.ledger.recalculate(company_id, as_of)
        if runway_alert(self.store, company_id, result.runway, as_of) is not None:
            result.alerts_created += 1

        logger.info(
            "Audit of company %d: %d anomalies, integrity %s, %d new alerts",
            company_id,
            len(result.anomalies),
            result.integrity.overall_status.value,
            result.alerts_created,
        )
        return result
