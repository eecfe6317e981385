"""
Deterministic keyword rule engine.

Always available and never fails. Confidence is deliberately modest so
rule-only classifications land in the review queue:

- no keyword hit: 50
- keyword hit: 60
- known vendor in the description: +5
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..extraction.entities import PaymentMethod, extract_entities
from ..recurrence.detector import recurring_keyword_frequency
from ..schemas.categories import Category, categorize_description
from ..schemas.ledger import Direction, Frequency

NO_HIT_CONFIDENCE = 50
KEYWORD_CONFIDENCE = 60
KNOWN_VENDOR_BONUS = 5


@dataclass
class RuleResult:
    """Outcome of the keyword rules for one description."""

    category: Category
    confidence: int
    vendor_name: str | None = None
    payment_method: str | None = None
    extracted_reference: str | None = None
    invoice_number: str | None = None
    bill_number: str | None = None
    is_recurring: bool = False
    suggested_frequency: Frequency | None = None
    matched_keyword: str | None = None
    reasoning: list[str] = field(default_factory=list)


class RuleEngine:
    """Keyword table classification plus entity extraction."""

    def classify(
        self, description: str, amount: Decimal | None = None, direction: Direction | None = None
    ) -> RuleResult:
        """Classify a description with the keyword table.

        Args:
            description: Bank description
            amount: Absolute amount (unused by the rules, kept for symmetry
                with the oracle contract)
            direction: Credit or debit

        Returns:
            RuleResult (never raises)
        """
        category, keyword = categorize_description(description)
        entities = extract_entities(description)

        reasoning = []
        if keyword:
            confidence = KEYWORD_CONFIDENCE
            reasoning.append(f"Keyword '{keyword}' -> {category.value}")
        else:
            confidence = NO_HIT_CONFIDENCE
            reasoning.append("No category keyword found")

        if entities.vendor_is_known:
            confidence += KNOWN_VENDOR_BONUS
            reasoning.append(f"Known vendor: {entities.vendor}")

        frequency = None
        if direction != Direction.CREDIT:
            frequency = recurring_keyword_frequency(description)

        method = entities.payment_method
        return RuleResult(
            category=category,
            confidence=confidence,
            vendor_name=entities.vendor,
            payment_method=method.value if method != PaymentMethod.UNKNOWN else None,
            extracted_reference=(
                entities.invoice_number or entities.bill_number or entities.reference_number
            ),
            invoice_number=entities.invoice_number,
            bill_number=entities.bill_number,
            is_recurring=frequency is not None,
            suggested_frequency=frequency,
            matched_keyword=keyword,
            reasoning=reasoning,
        )
