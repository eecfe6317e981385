"""Company cash balance, burn rate and runway."""

from .cash import (
    BurnTrend,
    BurnTrendReport,
    CashLedger,
    RunwayMetrics,
    RunwayTier,
    batch_delta,
    compute_runway,
    months_back,
    runway_tier,
    target_months_for,
)

__all__ = [
    "BurnTrend",
    "BurnTrendReport",
    "CashLedger",
    "RunwayMetrics",
    "RunwayTier",
    "batch_delta",
    "compute_runway",
    "months_back",
    "runway_tier",
    "target_months_for",
]
