"""Prompt templates for oracle-assisted classification.

Prompts are versioned; the version is recorded in the classification
reasoning of every oracle-classified transaction.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

# v1.0: single and batch classification with recent-similar context
PROMPT_VERSION = "v1.0"


@dataclass
class ClassificationPrompt:
    """Prompt template for classifying one bank transaction.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting oracle behavior.
        user_template: Template for the user message.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a bookkeeping assistant for a small company.
Classify a bank transaction into exactly one category from the provided list.

Respond in JSON format:
{
    "category": "CategoryName",
    "confidence": 85,
    "vendorName": "Vendor or null",
    "paymentMethod": "UPI|NEFT|IMPS|RTGS|CARD|... or null",
    "isRecurring": false,
    "suggestedFrequency": "monthly|quarterly|yearly|weekly or null",
    "extractedReference": "invoice/bill/reference number or null",
    "matchedInvoiceId": null,
    "matchedBillId": null,
    "flags": []
}
confidence is an integer from 0 to 100."""

    user_template: str = """Classify this transaction:

Transaction Details:
- Description: {description}
- Amount: {amount}
- Date: {date}
- Direction: {direction}

Recent similar transactions:
{recent}

Open invoices:
{invoices}

Open bills:
{bills}

Available Categories:
{categories}

Provide your answer in JSON format."""

    def format_user_message(
        self,
        description: str,
        amount: str,
        date: str,
        direction: str,
        categories: list[str],
        recent: list[dict] | None = None,
        invoices: list[dict] | None = None,
        bills: list[dict] | None = None,
    ) -> str:
        """Format the user message with transaction details.

        Args:
            description: Bank description.
            amount: Absolute amount.
            date: ISO date.
            direction: "credit" or "debit".
            categories: Allowed category values.
            recent: Recent same-category transactions (already trimmed).
            invoices: Open invoices as dicts.
            bills: Open bills as dicts.

        Returns:
            Formatted user message.
        """
        return self.user_template.format(
            description=description,
            amount=amount,
            date=date,
            direction=direction,
            recent=_bullets(recent),
            invoices=_bullets(invoices),
            bills=_bullets(bills),
            categories="\n".join(f"- {cat}" for cat in categories),
        )


@dataclass
class BatchClassificationPrompt:
    """Prompt template for classifying up to batch_size transactions at once.

    Items are numbered 1..n; the response must echo each number as "id".
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a bookkeeping assistant for a small company.
Classify each numbered bank transaction into exactly one category from the
provided list.

Respond with a JSON array, one object per transaction:
[
    {"id": 1, "category": "CategoryName", "confidence": 85, "vendorName": null,
     "isRecurring": false, "suggestedFrequency": null, "flags": []}
]
confidence is an integer from 0 to 100."""

    user_template: str = """Classify these transactions:

{items}

Available Categories:
{categories}

Provide your answer as a JSON array."""

    def format_user_message(self, items: list[dict], categories: list[str]) -> str:
        lines = [
            f"{item['id']}. {item['description']} | {item['amount']} | {item['date']} | "
            f"{item['direction']}"
            for item in items
        ]
        return self.user_template.format(
            items="\n".join(lines),
            categories="\n".join(f"- {cat}" for cat in categories),
        )


def _bullets(rows: list[dict] | None) -> str:
    if not rows:
        return "- none"
    return "\n".join(f"- {json.dumps(row, default=str)}" for row in rows)
