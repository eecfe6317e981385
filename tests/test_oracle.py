"""Tests for the classification oracle client.

These tests verify:
- Answer validation (category mapping, confidence clamping, id conflicts)
- Transport failures come back as llm_error, bad JSON as parse_error
- Recovery of JSON from fenced or sloppy answers
- Batch answers are correlated by id
"""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from cashledger.classifier import ClassificationOracle, OracleRequest, validate_verdict
from cashledger.config import OracleConfig
from cashledger.errors import OracleError
from cashledger.schemas import Category
from cashledger.schemas.ledger import Direction, Frequency


def request(id: int = 1, description: str = "AWS invoice") -> OracleRequest:
    return OracleRequest(
        id=id,
        description=description,
        amount=Decimal("15000"),
        date=date(2024, 3, 1),
        direction=Direction.DEBIT,
        fallback_category=Category.OTHER,
    )


def chat_response(content: str, model: str = "test-model") -> MagicMock:
    response = MagicMock()
    response.json.return_value = {"message": {"content": content}, "model": model}
    return response


@pytest.fixture
def oracle() -> ClassificationOracle:
    """Enabled oracle with the HTTP client replaced."""
    client = ClassificationOracle(OracleConfig(enabled=True, base_url="http://oracle.local/"))
    client._client = MagicMock()
    return client


class TestValidateVerdict:
    """Tests for validate_verdict()."""

    def test_valid_answer(self):
        """Well-formed answers are taken as given."""
        verdict = validate_verdict(
            {
                "category": "Cloud",
                "confidence": 92,
                "vendorName": "Amazon Web Services",
                "isRecurring": True,
                "suggestedFrequency": "monthly",
                "matchedBillId": 7,
            },
            Category.OTHER,
            model="test-model",
        )
        assert verdict.category == Category.CLOUD
        assert verdict.category_remapped is False
        assert verdict.confidence == 92
        assert verdict.is_recurring is True
        assert verdict.suggested_frequency == Frequency.MONTHLY
        assert verdict.matched_bill_id == 7

    def test_display_name_is_remapped(self):
        """Display names map onto the enum and are marked remapped."""
        verdict = validate_verdict({"category": "Cloud Services"}, Category.OTHER)
        assert verdict.category == Category.CLOUD
        assert verdict.category_remapped is True

    def test_unknown_category_uses_fallback(self):
        verdict = validate_verdict({"category": "Crypto"}, Category.SAAS)
        assert verdict.category == Category.SAAS

    @pytest.mark.parametrize(
        "raw,expected",
        [(150, 100), (-5, 0), ("abc", 70), (None, 70), ("88.6", 89)],
    )
    def test_confidence_clamped(self, raw, expected):
        """Confidence is clamped to [0, 100] with 70 as the default."""
        verdict = validate_verdict({"category": "Cloud", "confidence": raw}, Category.OTHER)
        assert verdict.confidence == expected

    def test_both_ids_are_dropped(self):
        """An answer matching both an invoice and a bill matches neither."""
        verdict = validate_verdict(
            {"category": "Cloud", "matchedInvoiceId": 3, "matchedBillId": 4}, Category.OTHER
        )
        assert verdict.matched_invoice_id is None
        assert verdict.matched_bill_id is None

    def test_non_billing_frequency_dropped(self):
        verdict = validate_verdict(
            {"category": "Cloud", "suggestedFrequency": "daily"}, Category.OTHER
        )
        assert verdict.suggested_frequency is None

    def test_non_object_rejected(self):
        """Anything but a JSON object is a parse error."""
        with pytest.raises(OracleError) as exc_info:
            validate_verdict(["Cloud"], Category.OTHER)
        assert exc_info.value.tag == "parse_error"


class TestClassify:
    """Tests for ClassificationOracle.classify()."""

    def test_success(self, oracle):
        """A valid answer becomes a verdict carrying the reported model."""
        oracle._client.post.return_value = chat_response(
            json.dumps({"category": "Cloud", "confidence": 90})
        )
        outcome = oracle.classify(request(), bills=[])
        assert outcome.ok is True
        assert outcome.verdict.category == Category.CLOUD
        assert outcome.verdict.model == "test-model"

        url = oracle._client.post.call_args.args[0]
        payload = oracle._client.post.call_args.kwargs["json"]
        assert url == "http://oracle.local/api/chat"
        assert payload["format"] == "json"
        assert payload["stream"] is False

    def test_fenced_answer_with_trailing_comma(self, oracle):
        """Markdown fences and trailing commas are tolerated."""
        oracle._client.post.return_value = chat_response(
            '```json\n{"category": "Travel", "confidence": 81,}\n```'
        )
        outcome = oracle.classify(request())
        assert outcome.verdict.category == Category.TRAVEL
        assert outcome.verdict.confidence == 81

    def test_timeout_is_llm_error(self, oracle):
        """Transport failures never raise."""
        oracle._client.post.side_effect = httpx.TimeoutException("slow")
        outcome = oracle.classify(request())
        assert outcome.ok is False
        assert outcome.error_tag == "llm_error"

    def test_garbage_is_parse_error(self, oracle):
        oracle._client.post.return_value = chat_response("I think it is cloud spend")
        outcome = oracle.classify(request())
        assert outcome.error_tag == "parse_error"

    def test_non_json_body_is_parse_error(self, oracle):
        """A 200 response whose body is not JSON is a parse error, not a transport error."""
        response = MagicMock()
        response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        oracle._client.post.return_value = response
        outcome = oracle.classify(request())
        assert outcome.ok is False
        assert outcome.error_tag == "parse_error"

    def test_non_object_body_is_parse_error(self, oracle):
        response = MagicMock()
        response.json.return_value = ["not", "an", "object"]
        oracle._client.post.return_value = response
        assert oracle.classify(request()).error_tag == "parse_error"

    def test_disabled_oracle(self):
        """A disabled oracle makes no call and reports llm_error."""
        disabled = ClassificationOracle(OracleConfig(enabled=False))
        disabled._client = MagicMock()
        outcome = disabled.classify(request())
        assert outcome.error_tag == "llm_error"
        disabled._client.post.assert_not_called()


class TestClassifyBatch:
    """Tests for ClassificationOracle.classify_batch()."""

    def test_answers_correlated_by_id(self, oracle):
        """Answers come back keyed by request id, in any order."""
        oracle._client.post.return_value = chat_response(
            json.dumps(
                {
                    "results": [
                        {"id": 2, "category": "Meals", "confidence": 75},
                        {"id": 1, "category": "Cloud", "confidence": 90},
                    ]
                }
            )
        )
        outcomes = oracle.classify_batch([request(1), request(2, "Swiggy")])
        assert outcomes[1].verdict.category == Category.CLOUD
        assert outcomes[2].verdict.category == Category.MEALS

    def test_missing_answer_is_parse_error(self, oracle):
        """An item without an answer gets its own parse_error."""
        oracle._client.post.return_value = chat_response(
            json.dumps([{"id": 1, "category": "Cloud"}])
        )
        outcomes = oracle.classify_batch([request(1), request(2)])
        assert outcomes[1].ok is True
        assert outcomes[2].error_tag == "parse_error"

    def test_transport_failure_raises(self, oracle):
        """A failed batch call raises so the caller can degrade."""
        oracle._client.post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(OracleError) as exc_info:
            oracle.classify_batch([request(1)])
        assert exc_info.value.tag == "llm_error"

    def test_non_json_body_raises_parse_error(self, oracle):
        response = MagicMock()
        response.json.side_effect = ValueError("not json")
        oracle._client.post.return_value = response
        with pytest.raises(OracleError) as exc_info:
            oracle.classify_batch([request(1), request(2)])
        assert exc_info.value.tag == "parse_error"

    def test_oversized_batch(self, oracle):
        with pytest.raises(OracleError):
            oracle.classify_batch([request(i) for i in range(1, 12)])

    def test_empty_batch(self, oracle):
        assert oracle.classify_batch([]) == {}
        oracle._client.post.assert_not_called()
