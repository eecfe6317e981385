"""
Cash ledger: company balance, burn rate and runway.

The company cash balance is a single stored scalar. A batch import adds
the signed sum of the ledger entries it created (credits minus debits) in
one atomic update; nothing else writes it except an explicit balance
declaration or an integrity fix.

Burn is the gross monthly outflow: the absolute sum of debits over the
trailing burn window divided by the window length in months. Runway is
cash / burn, unbounded when burn <= 0.
"""

from __future__ import annotations

import calendar
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from ..schemas.categories import display_name
from ..schemas.ledger import CURRENCY_PRECISION, ZERO, LedgerTransaction, month_key

if TYPE_CHECKING:
    from ..config import Config, RunwayConfig
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

# Month-over-month change (percent) below which burn counts as stable
TREND_STABLE_PERCENT = 5.0


class RunwayTier(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    HEALTHY = "healthy"


class BurnTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass
class RunwayMetrics:
    """Result of a runway recalculation."""

    cash_balance: Decimal
    monthly_burn: Decimal
    runway: float
    target_months: int
    tier: RunwayTier

    @property
    def is_unbounded(self) -> bool:
        return math.isinf(self.runway)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cash_balance": str(self.cash_balance),
            "monthly_burn": str(self.monthly_burn),
            "runway": None if self.is_unbounded else round(self.runway, 2),
            "target_months": self.target_months,
            "tier": self.tier.value,
        }


@dataclass
class MonthlyBurn:
    month: str
    burn: Decimal
    transaction_count: int


@dataclass
class BurnTrendReport:
    current: Decimal
    previous: Decimal
    trend: BurnTrend
    change_percent: float
    months: list[MonthlyBurn] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": str(self.current),
            "previous": str(self.previous),
            "trend": self.trend.value,
            "change_percent": self.change_percent,
            "months": [
                {"month": m.month, "burn": str(m.burn), "transactions": m.transaction_count}
                for m in self.months
            ],
        }


def batch_delta(transactions: Iterable[LedgerTransaction | Decimal]) -> Decimal:
    """Sum of credits minus sum of debits (signed amounts)."""
    total = ZERO
    for item in transactions:
        total += item if isinstance(item, Decimal) else item.amount
    return total


def months_back(day: date, months: int) -> date:
    """Same day-of-month `months` calendar months earlier (clamped to month end)."""
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def compute_runway(cash_balance: Decimal, monthly_burn: Decimal) -> float:
    """Months of cash at the current burn; inf when burn <= 0."""
    if monthly_burn <= 0:
        return math.inf
    if cash_balance <= 0:
        return 0.0
    return float(cash_balance / monthly_burn)


def runway_tier(runway: float, config: RunwayConfig) -> RunwayTier:
    """Classify a runway in months.

    Critical is `< critical_months`, or `<= critical_months` when
    critical_inclusive is set. Warning and info are strict.
    """
    if math.isinf(runway):
        return RunwayTier.HEALTHY
    if runway < config.critical_months or (
        config.critical_inclusive and runway == config.critical_months
    ):
        return RunwayTier.CRITICAL
    if runway < config.warning_months:
        return RunwayTier.WARNING
    if runway < config.info_months:
        return RunwayTier.INFO
    return RunwayTier.HEALTHY


def target_months_for(runway: float, sentinel: int) -> int:
    """floor(runway), or the sentinel when unbounded."""
    if math.isinf(runway):
        return sentinel
    return min(sentinel, max(0, math.floor(runway)))


class CashLedger:
    """Owns the company cash balance and the derived burn / runway figures."""

    def __init__(self, store: StateStore, config: Config):
        self.store = store
        self.config = config
        self.runway_config: RunwayConfig = config.runway

    def apply_batch_delta(self, company_id: int, delta: Decimal) -> tuple[Decimal, Decimal]:
        """Atomically add a batch's net cash change to the company balance.

        Returns:
            (old_balance, new_balance)
        """
        if delta == 0:
            balance = self.store.require_company(company_id).cash_balance
            return balance, balance

        old_balance, new_balance = self.store.apply_cash_delta(company_id, delta)
        logger.info(
            "Cash balance of company %d: %s -> %s (%+.2f)",
            company_id,
            old_balance,
            new_balance,
            delta,
        )
        return old_balance, new_balance

    def monthly_burn(self, company_id: int, as_of: date | None = None) -> Decimal:
        """Average monthly debit total over the trailing burn window."""
        as_of = as_of or date.today()
        window = self.runway_config.burn_window_months
        start = months_back(as_of, window) + timedelta(days=1)

        expenses = sum(
            (t.abs_amount for t in self.store.transactions_between(company_id, start, as_of)
             if t.amount < 0),
            ZERO,
        )
        return (expenses / window).quantize(CURRENCY_PRECISION, rounding=ROUND_HALF_UP)

    def recalculate(self, company_id: int, as_of: date | None = None) -> RunwayMetrics:
        """Recompute burn and runway and persist target_months."""
        company = self.store.require_company(company_id)
        burn = self.monthly_burn(company_id, as_of)
        runway = compute_runway(company.cash_balance, burn)
        target = target_months_for(runway, self.runway_config.infinite_sentinel)

        self.store.update_target_months(company_id, target)
        metrics = RunwayMetrics(
            cash_balance=company.cash_balance,
            monthly_burn=burn,
            runway=runway,
            target_months=target,
            tier=runway_tier(runway, self.runway_config),
        )
        logger.debug(
            "Runway for company %d: burn=%s runway=%s tier=%s",
            company_id,
            burn,
            "inf" if metrics.is_unbounded else f"{runway:.2f}",
            metrics.tier.value,
        )
        return metrics

    def burn_trend(
        self, company_id: int, months: int = 6, as_of: date | None = None
    ) -> BurnTrendReport:
        """Monthly debit totals for the last `months` months and the latest change."""
        as_of = as_of or date.today()
        start = months_back(as_of.replace(day=1), months - 1)

        totals: dict[str, Decimal] = {}
        counts: dict[str, int] = defaultdict(int)
        cursor = start
        while cursor <= as_of:
            totals[month_key(cursor)] = ZERO
            cursor = months_back(cursor, -1)

        for txn in self.store.transactions_between(company_id, start, as_of):
            if txn.amount >= 0:
                continue
            key = month_key(txn.date)
            totals[key] += txn.abs_amount
            counts[key] += 1

        series = [MonthlyBurn(key, totals[key], counts[key]) for key in sorted(totals)]
        current = series[-1].burn if series else ZERO
        previous = series[-2].burn if len(series) >= 2 else current

        if previous > 0:
            change = float((current - previous) / previous * 100)
            if change > TREND_STABLE_PERCENT:
                trend = BurnTrend.INCREASING
            elif change < -TREND_STABLE_PERCENT:
                trend = BurnTrend.DECREASING
            else:
                trend = BurnTrend.STABLE
        elif current > 0:
            trend, change = BurnTrend.INCREASING, 100.0
        else:
            trend, change = BurnTrend.STABLE, 0.0

        return BurnTrendReport(
            current=current,
            previous=previous,
            trend=trend,
            change_percent=round(change, 1),
            months=series,
        )

    def category_breakdown(
        self, company_id: int, since: date | None = None, as_of: date | None = None
    ) -> list[dict[str, Any]]:
        """Debit spend per category, largest first, with percentage shares."""
        as_of = as_of or date.today()
        since = since or months_back(as_of, self.runway_config.burn_window_months)

        spend: dict[str, Decimal] = defaultdict(lambda: ZERO)
        counts: dict[str, int] = defaultdict(int)
        labels: dict[str, str] = {}
        for txn in self.store.transactions_between(company_id, since, as_of):
            if txn.amount >= 0:
                continue
            spend[txn.category.value] += txn.abs_amount
            counts[txn.category.value] += 1
            labels[txn.category.value] = display_name(txn.category)

        total = sum(spend.values(), ZERO)
        rows = [
            {
                "category": category,
                "label": labels[category],
                "amount": str(amount),
                "count": counts[category],
                "percent": round(float(amount / total * 100), 1) if total else 0.0,
            }
            for category, amount in spend.items()
        ]
        rows.sort(key=lambda r: Decimal(r["amount"]), reverse=True)
        return rows
