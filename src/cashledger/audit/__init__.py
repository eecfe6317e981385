"""Anomaly detection, integrity checks and alerting."""

from .alerts import (
    BudgetAlertResult,
    BudgetMonitor,
    OverdueItem,
    OverdueReport,
    OverdueTracker,
    aging_bucket,
    anomaly_alerts,
    overdue_severity,
    runway_alert,
)
from .anomalies import Anomaly, AnomalyDetector, AnomalyType, zscore_severity
from .auditor import AuditResult, Auditor
from .integrity import (
    CheckResult,
    FixResult,
    IntegrityAuditor,
    IntegrityCheck,
    IntegrityReport,
    OverallStatus,
    fix_integrity_issues,
)

__all__ = [
    "Anomaly",
    "AnomalyDetector",
    "AnomalyType",
    "AuditResult",
    "Auditor",
    "BudgetAlertResult",
    "BudgetMonitor",
    "CheckResult",
    "FixResult",
    "IntegrityAuditor",
    "IntegrityCheck",
    "IntegrityReport",
    "OverallStatus",
    "OverdueItem",
    "OverdueReport",
    "OverdueTracker",
    "aging_bucket",
    "anomaly_alerts",
    "fix_integrity_issues",
    "overdue_severity",
    "runway_alert",
    "zscore_severity",
]
