"""
Configuration management (SSOT).

This module defines ALL configuration for cashledger.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The review threshold gates needs_review for every classification layer
- The oracle is optional; when disabled the rule engine is authoritative
- Audit thresholds are absolute values in the company currency
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


# Upper bound for transactions per oracle batch request
MAX_ORACLE_BATCH_SIZE = 10


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class OracleConfig:
    """External classification oracle (Ollama-compatible chat endpoint).

    SSOT for oracle settings:
    - enabled: Master switch (default OFF)
    - base_url: localhost, LAN IP or remote URL
    - auth_header: Optional Authorization header for proxied deployments
    """

    enabled: bool = False
    base_url: str = "http://localhost:11434"
    auth_header: str | None = None
    model: str = "qwen2.5:7b-instruct-q4_K_M"
    # Request timeout (seconds)
    timeout_seconds: int = 30
    # Max transactions per batch request
    batch_size: int = 10
    # Recent same-category transactions sent as context
    context_examples: int = 3

    def is_remote(self) -> bool:
        """Check if the oracle URL is remote (not localhost)."""
        url_lower = self.base_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class DuplicateConfig:
    """Duplicate detection tolerances."""

    date_tolerance_days: int = 1
    # Relative amount tolerance for content matches (0.5%)
    amount_tolerance: float = 0.005
    similarity_threshold: float = 0.8


@dataclass
class ClassifierConfig:
    """Classification and review gating."""

    # Below this confidence a transaction goes to the review queue
    review_threshold: int = 70
    # Oracle-supplied invoice/bill ids are trusted only at or above this
    oracle_match_floor: int = 80
    # Oracle confidence is capped here
    oracle_confidence_cap: int = 85
    # Relative tolerance for amount matching against open documents (1%)
    amount_match_tolerance: float = 0.01
    # Historical pattern window (days) and amount tolerance (10%)
    history_window_days: int = 180
    history_amount_tolerance: float = 0.10


@dataclass
class MatchingConfig:
    """Heuristic reconciliation settings."""

    # Absolute amount tolerance in currency units
    amount_tolerance: float = 1.0
    # Minimum weighted score for candidate suggestions (0-100)
    min_candidate_score: int = 50


@dataclass
class RunwayConfig:
    """Burn and runway tiers (months)."""

    burn_window_months: int = 3
    info_months: float = 12.0
    warning_months: float = 6.0
    critical_months: float = 3.0
    # If true, runway == critical_months is already critical
    critical_inclusive: bool = False
    # Stored targetMonths when runway is unbounded
    infinite_sentinel: int = 999


@dataclass
class AuditConfig:
    """Anomaly and integrity auditing."""

    lookback_days: int = 90
    zscore_low: float = 2.5
    zscore_medium: float = 3.0
    zscore_high: float = 4.0
    min_category_samples: int = 3
    # Also flag debits above 3x their category average
    legacy_ratio_check: bool = False
    duplicate_window_hours: int = 48
    new_vendor_threshold: float = 50_000.0
    new_vendor_high_threshold: float = 100_000.0
    new_vendor_recent_days: int = 30
    frequency_spike_ratio: float = 2.0
    frequency_spike_min_count: int = 3
    budget_thresholds: list[int] = field(default_factory=lambda: [80, 100])
    # Cash balance discrepancy (percent of stored balance)
    cash_flag_percent: float = 1.0
    cash_critical_percent: float = 2.0
    future_date_days: int = 7
    max_age_years: int = 10
    concentration_percent: float = 80.0
    concentration_min_transactions: int = 10


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    oracle: OracleConfig = field(default_factory=OracleConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    runway: RunwayConfig = field(default_factory=RunwayConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/cashledger.db"))
    currency: str = "INR"

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.oracle.enabled:
            if not self.oracle.base_url:
                errors.append("oracle.base_url is required when the oracle is enabled")
            if not self.oracle.model:
                errors.append("oracle.model is required when the oracle is enabled")
        if not 1 <= self.oracle.batch_size <= MAX_ORACLE_BATCH_SIZE:
            errors.append(f"oracle.batch_size must be between 1 and {MAX_ORACLE_BATCH_SIZE}")

        if not 0 <= self.classifier.review_threshold <= 100:
            errors.append("classifier.review_threshold must be between 0 and 100")
        if self.classifier.oracle_match_floor < self.classifier.review_threshold:
            errors.append("classifier.oracle_match_floor must be >= review_threshold")

        if not 0 < self.duplicates.similarity_threshold <= 1:
            errors.append("duplicates.similarity_threshold must be in (0, 1]")

        runway = self.runway
        if not runway.critical_months < runway.warning_months < runway.info_months:
            errors.append("runway tiers must satisfy critical < warning < info")

        audit = self.audit
        if not audit.zscore_low <= audit.zscore_medium <= audit.zscore_high:
            errors.append("audit z-score thresholds must be ascending")
        if audit.cash_flag_percent > audit.cash_critical_percent:
            errors.append("audit.cash_flag_percent must be <= cash_critical_percent")
        if audit.lookback_days <= 0:
            errors.append("audit.lookback_days must be positive")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - CASHLEDGER_DB_PATH
    - CASHLEDGER_ORACLE_ENABLED (true/false)
    - CASHLEDGER_ORACLE_URL
    - CASHLEDGER_ORACLE_MODEL
    - CASHLEDGER_ORACLE_TIMEOUT (request timeout in seconds)
    - CASHLEDGER_ORACLE_AUTH (Authorization header value)
    - CASHLEDGER_AUDIT_LOOKBACK_DAYS
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Oracle config
    oracle_data = data.get("oracle", {})
    oracle = OracleConfig(
        enabled=_env_bool("CASHLEDGER_ORACLE_ENABLED", oracle_data.get("enabled", False)),
        base_url=os.environ.get(
            "CASHLEDGER_ORACLE_URL", oracle_data.get("base_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("CASHLEDGER_ORACLE_AUTH", oracle_data.get("auth_header")),
        model=os.environ.get(
            "CASHLEDGER_ORACLE_MODEL", oracle_data.get("model", "qwen2.5:7b-instruct-q4_K_M")
        ),
        timeout_seconds=int(
            os.environ.get("CASHLEDGER_ORACLE_TIMEOUT", oracle_data.get("timeout_seconds", 30))
        ),
        batch_size=oracle_data.get("batch_size", 10),
        context_examples=oracle_data.get("context_examples", 3),
    )

    dup_data = data.get("duplicates", {})
    duplicates = DuplicateConfig(
        date_tolerance_days=dup_data.get("date_tolerance_days", 1),
        amount_tolerance=dup_data.get("amount_tolerance", 0.005),
        similarity_threshold=dup_data.get("similarity_threshold", 0.8),
    )

    cls_data = data.get("classifier", {})
    classifier = ClassifierConfig(
        review_threshold=cls_data.get("review_threshold", 70),
        oracle_match_floor=cls_data.get("oracle_match_floor", 80),
        oracle_confidence_cap=cls_data.get("oracle_confidence_cap", 85),
        amount_match_tolerance=cls_data.get("amount_match_tolerance", 0.01),
        history_window_days=cls_data.get("history_window_days", 180),
        history_amount_tolerance=cls_data.get("history_amount_tolerance", 0.10),
    )

    match_data = data.get("matching", {})
    matching = MatchingConfig(
        amount_tolerance=match_data.get("amount_tolerance", 1.0),
        min_candidate_score=match_data.get("min_candidate_score", 50),
    )

    runway_data = data.get("runway", {})
    runway = RunwayConfig(
        burn_window_months=runway_data.get("burn_window_months", 3),
        info_months=runway_data.get("info_months", 12.0),
        warning_months=runway_data.get("warning_months", 6.0),
        critical_months=runway_data.get("critical_months", 3.0),
        critical_inclusive=runway_data.get("critical_inclusive", False),
        infinite_sentinel=runway_data.get("infinite_sentinel", 999),
    )

    # Audit config
    audit_data = data.get("audit", {})
    lookback_env = os.environ.get("CASHLEDGER_AUDIT_LOOKBACK_DAYS", "")
    lookback_days = audit_data.get("lookback_days", 90)
    if lookback_env:
        try:
            lookback_days = int(lookback_env)
        except ValueError:
            pass  # Keep configured value

    defaults = AuditConfig()
    audit = AuditConfig(
        lookback_days=lookback_days,
        zscore_low=audit_data.get("zscore_low", defaults.zscore_low),
        zscore_medium=audit_data.get("zscore_medium", defaults.zscore_medium),
        zscore_high=audit_data.get("zscore_high", defaults.zscore_high),
        min_category_samples=audit_data.get("min_category_samples", defaults.min_category_samples),
        legacy_ratio_check=audit_data.get("legacy_ratio_check", defaults.legacy_ratio_check),
        duplicate_window_hours=audit_data.get(
            "duplicate_window_hours", defaults.duplicate_window_hours
        ),
        new_vendor_threshold=audit_data.get("new_vendor_threshold", defaults.new_vendor_threshold),
        new_vendor_high_threshold=audit_data.get(
            "new_vendor_high_threshold", defaults.new_vendor_high_threshold
        ),
        new_vendor_recent_days=audit_data.get(
            "new_vendor_recent_days", defaults.new_vendor_recent_days
        ),
        frequency_spike_ratio=audit_data.get(
            "frequency_spike_ratio", defaults.frequency_spike_ratio
        ),
        frequency_spike_min_count=audit_data.get(
            "frequency_spike_min_count", defaults.frequency_spike_min_count
        ),
        budget_thresholds=audit_data.get("budget_thresholds", [80, 100]),
        cash_flag_percent=audit_data.get("cash_flag_percent", defaults.cash_flag_percent),
        cash_critical_percent=audit_data.get(
            "cash_critical_percent", defaults.cash_critical_percent
        ),
        future_date_days=audit_data.get("future_date_days", defaults.future_date_days),
        max_age_years=audit_data.get("max_age_years", defaults.max_age_years),
        concentration_percent=audit_data.get(
            "concentration_percent", defaults.concentration_percent
        ),
        concentration_min_transactions=audit_data.get(
            "concentration_min_transactions", defaults.concentration_min_transactions
        ),
    )

    state_db = os.environ.get("CASHLEDGER_DB_PATH", data.get("state_db_path", "data/cashledger.db"))

    return Config(
        oracle=oracle,
        duplicates=duplicates,
        classifier=classifier,
        matching=matching,
        runway=runway,
        audit=audit,
        state_db_path=Path(state_db),
        currency=data.get("currency", "INR"),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# cashledger configuration
#
# Money values are in the company currency. Only one currency is supported.

currency: "INR"

# State database path
state_db_path: "data/cashledger.db"

# Optional classification oracle (Ollama-compatible /api/chat)
oracle:
  enabled: false                           # Rule engine only when disabled
  base_url: "http://localhost:11434"
  auth_header: null                        # e.g. "Bearer <token>" behind a proxy
  model: "qwen2.5:7b-instruct-q4_K_M"
  timeout_seconds: 30
  batch_size: 10                           # Transactions per batch request
  context_examples: 3                      # Recent same-category examples

duplicates:
  date_tolerance_days: 1
  amount_tolerance: 0.005                  # 0.5%
  similarity_threshold: 0.8

classifier:
  review_threshold: 70                     # Below this: review queue
  oracle_match_floor: 80                   # Trust oracle invoice/bill ids from here
  oracle_confidence_cap: 85
  amount_match_tolerance: 0.01             # 1% against open invoices/bills

matching:
  amount_tolerance: 1.0                    # Currency units
  min_candidate_score: 50

runway:
  burn_window_months: 3
  info_months: 12
  warning_months: 6
  critical_months: 3
  critical_inclusive: false                # true: exactly 3.0 months is critical

audit:
  lookback_days: 90
  zscore_low: 2.5
  zscore_medium: 3.0
  zscore_high: 4.0
  min_category_samples: 3
  legacy_ratio_check: false
  new_vendor_threshold: 50000
  budget_thresholds: [80, 100]
  cash_flag_percent: 1.0
  cash_critical_percent: 2.0
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
