"""Tests for the layered transaction classifier.

These tests verify:
- Keyword rules and their confidence bands
- Review gating (confidence < 70 or any flag)
- Each deterministic layer: document number, amount, name, history
- Oracle verdicts, the confidence cap and the fallback on oracle failure
- Batch classification degrading to per-item oracle calls
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import make_transaction

from cashledger.classifier import (
    FLAG_MULTIPLE_MATCHES,
    FLAG_NO_MATCH,
    ClassificationOracle,
    ClassificationRequest,
    OracleOutcome,
    OracleVerdict,
    RuleEngine,
    TransactionClassifier,
    review_gate,
)
from cashledger.errors import OracleError
from cashledger.schemas import Category
from cashledger.schemas.ledger import (
    Direction,
    Frequency,
    ReviewReason,
    TransactionType,
)


@pytest.fixture
def classifier(store, config) -> TransactionClassifier:
    return TransactionClassifier(store, config)


@pytest.fixture
def mock_oracle() -> MagicMock:
    """Enabled oracle double."""
    oracle = MagicMock(spec=ClassificationOracle)
    oracle.is_enabled = True
    return oracle


class TestRuleEngine:
    """Tests for keyword classification."""

    def test_keyword_and_known_vendor(self):
        """Keyword hit is 60, a known vendor adds 5."""
        result = RuleEngine().classify("AWS Cloud Services", Decimal("15000"), Direction.DEBIT)
        assert result.category == Category.CLOUD
        assert result.confidence == 65
        assert result.vendor_name == "Amazon Web Services"

    def test_no_keyword(self):
        """No keyword is Other at 50."""
        result = RuleEngine().classify("Zxqv Holdings", Decimal("10"), Direction.DEBIT)
        assert result.category == Category.OTHER
        assert result.confidence == 50
        assert result.matched_keyword is None

    def test_recurring_keyword_on_debit(self):
        """Recurring keywords suggest a cadence for debits only."""
        debit = RuleEngine().classify("Office rent", Decimal("80000"), Direction.DEBIT)
        credit = RuleEngine().classify("Office rent", Decimal("80000"), Direction.CREDIT)
        assert debit.is_recurring is True
        assert debit.suggested_frequency == Frequency.MONTHLY
        assert credit.is_recurring is False

    def test_document_numbers_extracted(self):
        """Invoice and bill numbers are carried on the rule result."""
        result = RuleEngine().classify("IMPS BILL-5531 Hooli", Decimal("1"), Direction.DEBIT)
        assert result.bill_number == "5531"
        assert result.extracted_reference == "5531"


class TestReviewGate:
    """Tests for the review gate."""

    @pytest.mark.parametrize(
        "confidence,flags,expected",
        [
            (95, [], (False, None)),
            (70, [], (False, None)),
            (69, [], (True, ReviewReason.LOW_CONFIDENCE)),
            (85, [FLAG_MULTIPLE_MATCHES], (True, ReviewReason.MULTIPLE_MATCHES)),
            (60, [FLAG_NO_MATCH], (True, ReviewReason.NO_MATCH)),
            (90, ["llm_error"], (True, ReviewReason.UNCLEAR_DESCRIPTION)),
        ],
    )
    def test_gate(self, confidence, flags, expected):
        """needs_review iff confidence < 70 or a flag is present."""
        assert review_gate(confidence, flags, 70) == expected


class TestDeterministicLayers:
    """Tests for the document, amount, name and history layers."""

    def test_document_number_layer(self, classifier, store, company_id):
        """A cited open bill number wins at 95."""
        bill_id = store.create_bill(company_id, "BILL-5531", "Hooli", Decimal("10000"))
        result = classifier.classify(
            "IMPS BILL-5531 UTR ABC123456",
            Decimal("7777"),
            date(2024, 3, 1),
            Direction.DEBIT,
            company_id,
        )
        assert result.confidence == 95
        assert result.matched_bill_id == bill_id
        assert result.transaction_type == TransactionType.BILL_PAYMENT
        assert result.needs_review is False
        assert result.category == Category.G_A

    def test_amount_layer(self, classifier, store, company_id):
        """A single open invoice within 1% of the amount scores 85."""
        invoice_id = store.create_invoice(company_id, "INV001", "Initech", Decimal("50000"))
        result = classifier.classify(
            "NEFT receipt", Decimal("50000"), date(2024, 3, 1), Direction.CREDIT, company_id
        )
        assert result.confidence == 85
        assert result.matched_invoice_id == invoice_id
        assert result.transaction_type == TransactionType.INVOICE_PAYMENT
        assert result.source == "amount"

    def test_multiple_amount_matches(self, classifier, store, company_id):
        """Several amount matches are flagged for review."""
        store.create_invoice(company_id, "INV001", "Initech", Decimal("50000"))
        store.create_invoice(company_id, "INV002", "Globex", Decimal("50200"))
        result = classifier.classify(
            "NEFT receipt", Decimal("50000"), date(2024, 3, 1), Direction.CREDIT, company_id
        )
        assert result.confidence == 70
        assert FLAG_MULTIPLE_MATCHES in result.flags
        assert result.needs_review is True
        assert result.review_reason == ReviewReason.MULTIPLE_MATCHES

    def test_name_layer(self, classifier, store, company_id):
        """A counterparty name in the description scores 75."""
        invoice_id = store.create_invoice(company_id, "INV777", "Initech", Decimal("99999"))
        result = classifier.classify(
            "NEFT from Initech", Decimal("1234"), date(2024, 3, 1), Direction.CREDIT, company_id
        )
        assert result.confidence == 75
        assert result.matched_invoice_id == invoice_id
        assert result.needs_review is False

    def test_bills_are_ignored_for_credits(self, classifier, store, company_id):
        """Credits only look at invoices."""
        store.create_bill(company_id, "BILL-1", "Initech", Decimal("1234"))
        result = classifier.classify(
            "NEFT from Initech", Decimal("1234"), date(2024, 3, 1), Direction.CREDIT, company_id
        )
        assert result.matched_bill_id is None
        assert result.transaction_type == TransactionType.REVENUE

    def test_history_layer_with_cadence(self, classifier, store, company_id):
        """Two monthly payments to the same vendor make a recurring pattern."""
        for day in (date(2024, 1, 5), date(2024, 2, 5)):
            make_transaction(store, company_id, day, "Notion Labs", "-1600", Category.SAAS)

        result = classifier.classify(
            "Notion Labs", Decimal("1600"), date(2024, 3, 5), Direction.DEBIT, company_id
        )
        assert result.confidence == 70
        assert result.is_recurring is True
        assert result.suggested_frequency == Frequency.MONTHLY
        assert result.category == Category.SAAS
        assert result.needs_review is False

    def test_history_layer_without_cadence(self, classifier, store, company_id):
        """Irregular history only lends its category, at 60."""
        for day in (date(2024, 1, 5), date(2024, 1, 20)):
            make_transaction(store, company_id, day, "Notion Labs", "-1600", Category.SAAS)

        result = classifier.classify(
            "Notion Labs", Decimal("1600"), date(2024, 3, 5), Direction.DEBIT, company_id
        )
        assert result.confidence == 60
        assert result.category == Category.SAAS
        assert result.review_reason == ReviewReason.LOW_CONFIDENCE


class TestRuleFallback:
    """Tests for the rule layer and the no-match flag."""

    def test_rules_need_review(self, classifier, company_id):
        """Rule-only classifications are always below the threshold."""
        result = classifier.classify(
            "AWS Cloud Services", Decimal("15000"), date(2024, 3, 1), Direction.DEBIT, company_id
        )
        assert result.category == Category.CLOUD
        assert result.transaction_type == TransactionType.EXPENSE
        assert result.source == "rules"
        assert result.needs_review is True

    def test_cited_document_without_match(self, classifier, company_id):
        """A cited bill number with no open bill is flagged no_match."""
        result = classifier.classify(
            "Payment BILL-9001 Hooli", Decimal("500"), date(2024, 3, 1), Direction.DEBIT, company_id
        )
        assert FLAG_NO_MATCH in result.flags
        assert result.review_reason == ReviewReason.NO_MATCH


class TestOracleLayer:
    """Tests for oracle-assisted classification."""

    def test_verdict_is_capped(self, store, config, company_id, mock_oracle):
        """Oracle confidence is capped at 85 but the raw value is kept."""
        mock_oracle.classify.return_value = OracleOutcome(
            verdict=OracleVerdict(category=Category.SAAS, confidence=95, model="test-model")
        )
        classifier = TransactionClassifier(store, config, oracle=mock_oracle)
        result = classifier.classify(
            "Zxqv Holdings", Decimal("999"), date(2024, 3, 1), Direction.DEBIT, company_id
        )
        assert result.category == Category.SAAS
        assert result.confidence == 85
        assert result.oracle_confidence == 95
        assert result.source == "oracle"
        assert result.needs_review is False

    def test_deterministic_layers_skip_oracle(self, store, config, company_id, mock_oracle):
        """The oracle is not consulted when a document layer decides."""
        store.create_invoice(company_id, "INV001", "Initech", Decimal("50000"))
        classifier = TransactionClassifier(store, config, oracle=mock_oracle)
        classifier.classify(
            "NEFT receipt", Decimal("50000"), date(2024, 3, 1), Direction.CREDIT, company_id
        )
        mock_oracle.classify.assert_not_called()

    def test_oracle_failure_falls_back(self, store, config, company_id, mock_oracle):
        """A failed oracle call yields the rule category at 50, tagged."""
        mock_oracle.classify.return_value = OracleOutcome(error_tag="llm_error")
        classifier = TransactionClassifier(store, config, oracle=mock_oracle)
        result = classifier.classify(
            "AWS Cloud Services", Decimal("15000"), date(2024, 3, 1), Direction.DEBIT, company_id
        )
        assert result.category == Category.CLOUD
        assert result.confidence == 50
        assert result.flags == ["llm_error"]
        assert result.needs_review is True

    def test_batch_falls_back_to_single_calls(self, store, config, company_id, mock_oracle):
        """A failed batch call degrades to one call per item."""
        mock_oracle.classify_batch.side_effect = OracleError("boom", tag="parse_error")
        mock_oracle.classify.return_value = OracleOutcome(
            verdict=OracleVerdict(category=Category.TRAVEL, confidence=80, model="test-model")
        )
        classifier = TransactionClassifier(store, config, oracle=mock_oracle)
        requests = [
            ClassificationRequest("Zxqv one", Decimal("10"), date(2024, 3, 1), Direction.DEBIT),
            ClassificationRequest("Zxqv two", Decimal("20"), date(2024, 3, 2), Direction.DEBIT),
        ]
        results = classifier.classify_batch(requests, company_id)
        assert [r.category for r in results] == [Category.TRAVEL, Category.TRAVEL]
        assert mock_oracle.classify.call_count == 2

    def test_batch_groups_never_exceed_ten(self, store, config, company_id, mock_oracle):
        """An oversized configured batch size is clamped to ten per call."""
        config.oracle.batch_size = 50
        mock_oracle.classify_batch.side_effect = lambda reqs: {
            r.id: OracleOutcome(
                verdict=OracleVerdict(category=Category.OTHER, confidence=80, model="test-model")
            )
            for r in reqs
        }
        classifier = TransactionClassifier(store, config, oracle=mock_oracle)
        requests = [
            ClassificationRequest(f"Zxqv {i}", Decimal("10"), date(2024, 3, 1), Direction.DEBIT)
            for i in range(12)
        ]
        results = classifier.classify_batch(requests, company_id)

        assert len(results) == 12
        sizes = [len(c.args[0]) for c in mock_oracle.classify_batch.call_args_list]
        assert sizes == [10, 2]

    def test_batch_without_oracle(self, classifier, company_id):
        """Without an oracle every undecided item uses the rules."""
        requests = [
            ClassificationRequest(
                "AWS Cloud Services", Decimal("15000"), date(2024, 3, 1), Direction.DEBIT
            ),
            ClassificationRequest("Swiggy", Decimal("400"), date(2024, 3, 1), Direction.DEBIT),
        ]
        results = classifier.classify_batch(requests, company_id)
        assert [r.category for r in results] == [Category.CLOUD, Category.MEALS]

        summary = classifier.summarize(results)
        assert summary["total"] == 2
        assert summary["medium_confidence"] == 2
        assert summary["needs_review"] == 2
