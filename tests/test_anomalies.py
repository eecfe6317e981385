"""Tests for statistical anomaly detection.

These tests verify:
- Z-score severity thresholds and the leave-one-out category statistics
- Zero-spread categories and the minimum sample count
- The ratio check only runs when audit.legacy_ratio_check is set
- Duplicate groups inside the duplicate window
- New high-value vendors
- Vendor frequency spikes
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from conftest import make_transaction

from cashledger.audit import AnomalyDetector, AnomalyType, zscore_severity
from cashledger.config import AuditConfig
from cashledger.schemas import Category
from cashledger.schemas.ledger import Severity

AS_OF = date(2024, 3, 31)


@pytest.fixture
def detector(store, config) -> AnomalyDetector:
    return AnomalyDetector(store, config)


class TestZscoreSeverity:
    @pytest.mark.parametrize(
        "z,expected",
        [
            (1.0, None),
            (2.5, None),
            (2.6, Severity.LOW),
            (3.0, Severity.MEDIUM),
            (3.9, Severity.MEDIUM),
            (4.0, Severity.HIGH),
        ],
    )
    def test_thresholds(self, z, expected):
        """Low is strict, medium and high are inclusive."""
        assert zscore_severity(z, AuditConfig()) == expected


class TestAmountAnomalies:
    """Tests for AnomalyDetector.amount_anomalies()."""

    def test_outlier_flagged(self, detector, store, company_id):
        """Only the debit far outside its category is reported."""
        amounts = ["-1000", "-1100", "-900", "-1000", "-10000"]
        ids = [
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 5), "AWS",
                amount, Category.CLOUD,
            )
            for i, amount in enumerate(amounts)
        ]
        anomalies = detector.amount_anomalies(detector.window(company_id, AS_OF))

        assert len(anomalies) == 1
        assert anomalies[0].transaction_ids == [ids[-1]]
        assert anomalies[0].severity == Severity.HIGH
        assert anomalies[0].details["samples"] == 4

    def test_too_few_samples(self, detector, store, company_id):
        """A category with only two debits is not judged."""
        for i, amount in enumerate(["-1000", "-90000"]):
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 5), "AWS",
                amount, Category.CLOUD,
            )
        assert detector.amount_anomalies(detector.window(company_id, AS_OF)) == []

    def test_three_debits_are_judged(self, detector, store, company_id):
        """Three debits in total are enough to judge a category."""
        ids = [
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 5), "AWS",
                amount, Category.CLOUD,
            )
            for i, amount in enumerate(["-1000", "-1000", "-90000"])
        ]
        anomalies = detector.amount_anomalies(detector.window(company_id, AS_OF))
        assert [a.transaction_ids for a in anomalies] == [[ids[-1]]]
        assert anomalies[0].details["samples"] == 2

    def test_zero_spread_outlier_is_high(self, detector, store, company_id):
        """A debit unlike identical peers has an unbounded z-score."""
        ids = [
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 5), "Swiggy",
                amount, Category.MEALS,
            )
            for i, amount in enumerate(["-500", "-500", "-500", "-9000"])
        ]
        anomalies = detector.amount_anomalies(detector.window(company_id, AS_OF))

        assert len(anomalies) == 1
        assert anomalies[0].transaction_ids == [ids[-1]]
        assert anomalies[0].severity == Severity.HIGH
        assert anomalies[0].details["zscore"] is None
        assert "differs from every other debit" in anomalies[0].message

    def test_identical_debits_are_not_outliers(self, detector, store, company_id):
        for i in range(4):
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 5), "Swiggy",
                "-500", Category.MEALS,
            )
        assert detector.amount_anomalies(detector.window(company_id, AS_OF)) == []

    def test_ratio_check(self, detector, store, company_id):
        """The ratio check flags debits above 3x the category average."""
        for i, amount in enumerate(["-100", "-100", "-100", "-100", "-100", "-3000"]):
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 3), "Swiggy",
                amount, Category.MEALS,
            )
        anomalies = detector.amount_ratio_anomalies(detector.window(company_id, AS_OF))
        assert len(anomalies) == 1
        assert anomalies[0].anomaly_type == AnomalyType.AMOUNT_RATIO
        assert anomalies[0].severity == Severity.HIGH


class TestDuplicateGroups:
    def test_same_amount_within_window(self, detector, store, company_id):
        first = make_transaction(store, company_id, date(2024, 3, 1), "Globex", "-5000")
        second = make_transaction(store, company_id, date(2024, 3, 2), "Globex again", "-5000")
        make_transaction(store, company_id, date(2024, 3, 10), "Globex", "-5000")
        make_transaction(store, company_id, date(2024, 3, 1), "Refund", "5000")

        groups = detector.duplicate_groups(detector.window(company_id, AS_OF))
        assert len(groups) == 1
        assert groups[0].transaction_ids == [first, second]
        assert groups[0].key == f"[duplicate:{first},{second}]"

    def test_window_is_exclusive(self, detector, store, company_id):
        """Exactly 48 hours apart is outside the window."""
        make_transaction(store, company_id, date(2024, 3, 1), "Globex", "-5000")
        make_transaction(store, company_id, date(2024, 3, 3), "Globex", "-5000")
        assert detector.duplicate_groups(detector.window(company_id, AS_OF)) == []


class TestNewVendor:
    def test_first_large_payment(self, detector, store, company_id):
        """Large first payments are flagged; known vendors are not."""
        big = make_transaction(store, company_id, date(2024, 3, 20), "Globex Consulting", "-150000")
        medium = make_transaction(store, company_id, date(2024, 3, 22), "Hooli Advisors", "-75000")
        make_transaction(store, company_id, date(2024, 1, 5), "Initech Services", "-100")
        make_transaction(store, company_id, date(2024, 3, 25), "Initech Services", "-60000")

        anomalies = detector.new_vendor_anomalies(
            company_id, detector.window(company_id, AS_OF), AS_OF
        )
        by_id = {a.transaction_ids[0]: a.severity for a in anomalies}
        assert by_id == {big: Severity.HIGH, medium: Severity.LOW}


class TestFrequencySpikes:
    def test_spike(self, detector, store, company_id):
        make_transaction(store, company_id, AS_OF - timedelta(days=60), "Zomato", "-300")
        for days in (2, 9, 16):
            make_transaction(store, company_id, AS_OF - timedelta(days=days), "Zomato", "-300")

        spikes = detector.frequency_spikes(detector.window(company_id, AS_OF), AS_OF)
        assert len(spikes) == 1
        assert spikes[0].details["recent_count"] == 3
        assert spikes[0].details["monthly_average"] == 0.5


class TestDetect:
    def test_empty_window(self, detector, company_id):
        assert detector.detect(company_id, AS_OF) == []

    def test_combines_checks(self, detector, store, company_id):
        make_transaction(store, company_id, date(2024, 3, 20), "Globex Consulting", "-150000")
        make_transaction(store, company_id, date(2024, 3, 21), "Globex Consulting", "-150000")
        types = {a.anomaly_type for a in detector.detect(company_id, AS_OF)}
        assert AnomalyType.DUPLICATE in types
        assert AnomalyType.NEW_VENDOR in types

    def test_ratio_check_is_off_by_default(self, detector, store, company_id):
        for i, amount in enumerate(["-100", "-100", "-100", "-100", "-100", "-3000"]):
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 3), "Swiggy",
                amount, Category.MEALS,
            )
        types = {a.anomaly_type for a in detector.detect(company_id, AS_OF)}
        assert AnomalyType.AMOUNT in types
        assert AnomalyType.AMOUNT_RATIO not in types

    def test_ratio_check_when_enabled(self, store, config, company_id):
        config.audit.legacy_ratio_check = True
        detector = AnomalyDetector(store, config)
        for i, amount in enumerate(["-100", "-100", "-100", "-100", "-100", "-3000"]):
            make_transaction(
                store, company_id, date(2024, 3, 1) + timedelta(days=i * 3), "Swiggy",
                amount, Category.MEALS,
            )
        types = {a.anomaly_type for a in detector.detect(company_id, AS_OF)}
        assert AnomalyType.AMOUNT_RATIO in types
