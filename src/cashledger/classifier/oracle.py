"""
External classification oracle client.

Talks to an Ollama-compatible /api/chat endpoint and turns its JSON into
a validated OracleVerdict. Nothing from the response is trusted until it
has been checked:

- category must map onto the closed Category enum (exact value, member
  name, display name or squashed spelling); otherwise the caller's
  fallback category is used
- confidence is clamped to [0, 100]; missing or non-numeric means 70
- frequency must be a billing cadence, ids must be positive integers

Failures never raise out of classify(): they come back as an
OracleOutcome carrying an error tag ("llm_error" for transport problems,
"parse_error" for unusable JSON). classify_batch() raises OracleError
instead so the caller can degrade to per-item calls.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import OracleError
from ..schemas.categories import Category, match_category_name
from ..schemas.ledger import BILLING_FREQUENCIES, Direction, Frequency
from .prompts import PROMPT_VERSION, BatchClassificationPrompt, ClassificationPrompt

if TYPE_CHECKING:
    from ..config import OracleConfig

logger = logging.getLogger(__name__)

LLM_ERROR = "llm_error"
PARSE_ERROR = "parse_error"
ORACLE_ERROR_TAGS = (LLM_ERROR, PARSE_ERROR)

DEFAULT_CONFIDENCE = 70


@dataclass
class OracleVerdict:
    """Validated oracle classification."""

    category: Category
    confidence: int
    model: str
    vendor_name: str | None = None
    payment_method: str | None = None
    is_recurring: bool = False
    suggested_frequency: Frequency | None = None
    extracted_reference: str | None = None
    matched_invoice_id: int | None = None
    matched_bill_id: int | None = None
    flags: list[str] = field(default_factory=list)
    reasoning: str = ""
    category_remapped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "confidence": self.confidence,
            "model": self.model,
            "vendor_name": self.vendor_name,
            "payment_method": self.payment_method,
            "is_recurring": self.is_recurring,
            "suggested_frequency": (
                self.suggested_frequency.value if self.suggested_frequency else None
            ),
            "extracted_reference": self.extracted_reference,
            "matched_invoice_id": self.matched_invoice_id,
            "matched_bill_id": self.matched_bill_id,
            "flags": self.flags,
            "reasoning": self.reasoning,
        }


@dataclass
class OracleOutcome:
    """Either a verdict or the tag of the failure that prevented one."""

    verdict: OracleVerdict | None = None
    error_tag: str | None = None

    @property
    def ok(self) -> bool:
        return self.verdict is not None


@dataclass
class OracleRequest:
    """One transaction sent to the oracle.

    id correlates batch answers with requests (1..n inside a batch).
    """

    id: int
    description: str
    amount: Decimal
    date: date
    direction: Direction
    fallback_category: Category = Category.OTHER
    recent: list[dict[str, Any]] = field(default_factory=list)

    def to_prompt_item(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": str(abs(self.amount)),
            "date": self.date.isoformat(),
            "direction": self.direction.value,
        }


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "unknown"):
        return None
    return text


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return False


def _as_id(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


def _as_confidence(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    return int(round(min(100.0, max(0.0, number))))


def _as_frequency(value: Any) -> Frequency | None:
    text = _as_text(value)
    if text is None:
        return None
    try:
        frequency = Frequency(text.lower())
    except ValueError:
        return None
    return frequency if frequency in BILLING_FREQUENCIES else None


def validate_verdict(data: Any, fallback: Category, model: str = "") -> OracleVerdict:
    """Validate one decoded oracle answer.

    Args:
        data: Decoded JSON (must be an object)
        fallback: Category used when the answer's category is unusable
        model: Model name recorded on the verdict

    Raises:
        OracleError: With tag "parse_error" if data is not a JSON object.
    """
    if not isinstance(data, dict):
        raise OracleError("Oracle answer is not a JSON object", tag=PARSE_ERROR)

    raw_category = data.get("category")
    category = match_category_name(raw_category) if isinstance(raw_category, str) else None
    remapped = category is None or category.value != raw_category
    if category is None:
        logger.debug("Oracle category %r not in taxonomy, using %s", raw_category, fallback.value)
        category = fallback

    invoice_id = _as_id(data.get("matchedInvoiceId"))
    bill_id = _as_id(data.get("matchedBillId"))
    if invoice_id is not None and bill_id is not None:
        # Contradictory answer; let the heuristic matcher decide
        invoice_id = bill_id = None

    flags = data.get("flags")
    if not isinstance(flags, list):
        flags = []

    return OracleVerdict(
        category=category,
        confidence=_as_confidence(data.get("confidence")),
        model=model,
        vendor_name=_as_text(data.get("vendorName")),
        payment_method=_as_text(data.get("paymentMethod")),
        is_recurring=_as_bool(data.get("isRecurring")),
        suggested_frequency=_as_frequency(data.get("suggestedFrequency")),
        extracted_reference=_as_text(
            data.get("extractedReference") or data.get("extractedInvoiceNumber")
        ),
        matched_invoice_id=invoice_id,
        matched_bill_id=bill_id,
        flags=[str(f) for f in flags if _as_text(f)],
        reasoning=str(data.get("reasoning") or data.get("reason") or ""),
        category_remapped=remapped,
    )


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def _cleanup(content: str) -> str:
    # Remove control characters except newlines and tabs
    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", content)
    # Trailing commas before } or ]
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    # Unquoted keys (simple cases)
    return re.sub(r"(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:", r'\1"\2":', cleaned)


class ClassificationOracle:
    """HTTP client for the classification oracle.

    Construct once and reuse; the underlying httpx.Client keeps
    connections open. Use as a context manager or call close().
    """

    def __init__(self, config: OracleConfig) -> None:
        self.config = config

        headers = {}
        if config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._prompt = ClassificationPrompt()
        self._batch_prompt = BatchClassificationPrompt()

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    @property
    def prompt_version(self) -> str:
        return PROMPT_VERSION

    def _categories(self) -> list[str]:
        return [c.value for c in Category]

    def _call_oracle(self, system_prompt: str, user_message: str) -> dict | None:
        """POST one chat request.

        Never logs prompts at INFO level.

        Returns:
            Dict with "content" and "model" keys, or None on a transport or
            HTTP failure.

        Raises:
            OracleError: With tag "parse_error" if the response body is not a
                JSON object.
        """
        url = f"{self.config.base_url.rstrip('/')}/api/chat"
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "format": "json",
        }
        logger.debug("Calling oracle model %s at %s", self.config.model, self.config.base_url)

        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("Oracle request timed out after %ds", self.config.timeout_seconds)
            return None
        except httpx.HTTPStatusError as e:
            logger.error(
                "Oracle API error %s for model '%s' at %s",
                e.response.status_code,
                self.config.model,
                self.config.base_url,
            )
            return None
        except httpx.RequestError as e:
            logger.error("Oracle request failed: %s (URL: %s)", e, self.config.base_url)
            return None

        try:
            data = response.json()
        except ValueError as e:
            raise OracleError(f"Oracle body is not JSON: {e}", tag=PARSE_ERROR) from e
        if not isinstance(data, dict):
            raise OracleError("Oracle body is not a JSON object", tag=PARSE_ERROR)

        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            content = ""
        logger.debug("Oracle returned %d chars", len(content))
        return {"content": content, "model": data.get("model") or self.config.model}

    def _parse_json_response(self, content: str) -> Any:
        """Parse a JSON object from an oracle answer.

        Handles markdown code fences, JSON embedded in prose, control
        characters, trailing commas and unquoted keys.

        Raises:
            json.JSONDecodeError: If no JSON can be recovered.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)
        content = _strip_fences(content)

        try:
            return json.loads(content)
        except json.JSONDecodeError:
            pass

        json_match = re.search(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", content, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group())
            except json.JSONDecodeError:
                pass

        return json.loads(_cleanup(content))

    def _parse_json_array(self, content: str) -> list:
        """Parse a JSON array (batch answer).

        Also accepts an object wrapping the array under any key, which is
        what format=json models tend to produce.

        Raises:
            json.JSONDecodeError: If no array can be recovered.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)
        content = _strip_fences(content)

        for candidate in (content, _cleanup(content)):
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, list):
                return data
            if isinstance(data, dict):
                for value in data.values():
                    if isinstance(value, list):
                        return value

        array_match = re.search(r"\[[\s\S]*\]", content)
        if array_match:
            data = json.loads(_cleanup(array_match.group()))
            if isinstance(data, list):
                return data
        raise json.JSONDecodeError("No JSON array in response", content, 0)

    def classify(
        self,
        request: OracleRequest,
        invoices: list[dict[str, Any]] | None = None,
        bills: list[dict[str, Any]] | None = None,
    ) -> OracleOutcome:
        """Classify one transaction.

        Args:
            request: Transaction plus fallback category and recent context
            invoices: Open invoices offered for matching
            bills: Open bills offered for matching

        Returns:
            OracleOutcome with a verdict, or with error_tag set.
        """
        if not self.is_enabled:
            return OracleOutcome(error_tag=LLM_ERROR)

        user_message = self._prompt.format_user_message(
            description=request.description,
            amount=str(abs(request.amount)),
            date=request.date.isoformat(),
            direction=request.direction.value,
            categories=self._categories(),
            recent=request.recent[: self.config.context_examples],
            invoices=invoices,
            bills=bills,
        )
        try:
            result = self._call_oracle(self._prompt.system_prompt, user_message)
        except OracleError as e:
            logger.warning("Unusable oracle response: %s", e)
            return OracleOutcome(error_tag=e.tag)
        if result is None:
            return OracleOutcome(error_tag=LLM_ERROR)

        try:
            data = self._parse_json_response(result["content"])
            verdict = validate_verdict(data, request.fallback_category, model=result["model"])
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse oracle response: %s", e.msg)
            return OracleOutcome(error_tag=PARSE_ERROR)
        except OracleError as e:
            logger.warning("Invalid oracle response: %s", e)
            return OracleOutcome(error_tag=e.tag)

        return OracleOutcome(verdict=verdict)

    def classify_batch(self, requests: list[OracleRequest]) -> dict[int, OracleOutcome]:
        """Classify up to batch_size transactions in one call.

        Answers are correlated by request id; an item whose answer is
        missing or invalid gets an OracleOutcome with error_tag set.

        Raises:
            OracleError: If the whole call failed (transport error or no
                parseable array) or too many requests were given.
        """
        if not requests:
            return {}
        if len(requests) > self.config.batch_size:
            raise OracleError(
                f"Batch of {len(requests)} exceeds batch_size {self.config.batch_size}"
            )
        if not self.is_enabled:
            raise OracleError("Oracle disabled")

        user_message = self._batch_prompt.format_user_message(
            items=[r.to_prompt_item() for r in requests], categories=self._categories()
        )
        result = self._call_oracle(self._batch_prompt.system_prompt, user_message)
        if result is None:
            raise OracleError("Batch oracle call failed", tag=LLM_ERROR)

        try:
            answers = self._parse_json_array(result["content"])
        except json.JSONDecodeError as e:
            raise OracleError(f"Unparseable batch response: {e.msg}", tag=PARSE_ERROR) from e

        by_id: dict[int, Any] = {}
        for answer in answers:
            if isinstance(answer, dict):
                answer_id = _as_id(answer.get("id"))
                if answer_id is not None and answer_id not in by_id:
                    by_id[answer_id] = answer

        outcomes: dict[int, OracleOutcome] = {}
        for request in requests:
            answer = by_id.get(request.id)
            if answer is None:
                outcomes[request.id] = OracleOutcome(error_tag=PARSE_ERROR)
                continue
            try:
                verdict = validate_verdict(answer, request.fallback_category, model=result["model"])
            except OracleError as e:
                outcomes[request.id] = OracleOutcome(error_tag=e.tag)
                continue
            outcomes[request.id] = OracleOutcome(verdict=verdict)
        return outcomes

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> ClassificationOracle:
        return self

    def __exit__(self, *args) -> None:
        self.close()
