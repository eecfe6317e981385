"""
Entity extraction from bank transaction descriptions.

Pulls structured hints out of free text:
- Payment method (UPI, NEFT, IMPS, RTGS, NACH, CHEQUE, CARD, WIRE, DD, CASH)
- UPI id, invoice / bill / reference numbers
- Vendor name (known-vendor table first, then a cleaned prefix of the text)
- Keyword groups and an embedded amount

All functions are pure; nothing here touches the state store.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ..schemas.categories import contains_keyword


class PaymentMethod(str, Enum):
    UPI = "UPI"
    NEFT = "NEFT"
    IMPS = "IMPS"
    RTGS = "RTGS"
    NACH = "NACH"
    CHEQUE = "CHEQUE"
    CARD = "CARD"
    WIRE = "WIRE"
    DD = "DD"
    CASH = "CASH"
    UNKNOWN = "UNKNOWN"


# Checked in order; UPI first because UPI narrations often mention a bank rail too
PAYMENT_METHOD_PATTERNS: list[tuple[PaymentMethod, re.Pattern[str]]] = [
    (PaymentMethod.UPI, re.compile(r"\bUPI\b|\bPHONEPE\b|\bGPAY\b|\bGOOGLE PAY\b|\bPAYTM\b|\bBHIM\b")),
    (PaymentMethod.NEFT, re.compile(r"\bNEFT\b|NATIONAL ELECTRONIC")),
    (PaymentMethod.IMPS, re.compile(r"\bIMPS\b|IMMEDIATE PAYMENT")),
    (PaymentMethod.RTGS, re.compile(r"\bRTGS\b|REAL TIME GROSS")),
    (PaymentMethod.NACH, re.compile(r"\bNACH\b|\bECS\b|ELECTRONIC CLEARING")),
    (PaymentMethod.CHEQUE, re.compile(r"\bCHQ\b|\bCHEQUE\b|\bCHECK\b|\bCLG\b")),
    (
        PaymentMethod.CARD,
        re.compile(r"\bPOS\b|\bCARD\b|\bVISA\b|\bMASTERCARD\b|\bRUPAY\b"),
    ),
    (PaymentMethod.WIRE, re.compile(r"\bWIRE\b|\bSWIFT\b|\bFOREIGN\b")),
    (PaymentMethod.DD, re.compile(r"\bDD\b|DEMAND DRAFT")),
    (PaymentMethod.CASH, re.compile(r"\bCASH\b|\bCDM\b|CASH DEPOSIT")),
]

UPI_ID_PATTERN = re.compile(r"\b([A-Za-z0-9._-]+@[A-Za-z]{2,})\b")

# Captured numbers must contain a digit so "INVOICE PAYMENT" yields nothing
INVOICE_PATTERNS = [
    re.compile(r"INV[-#/]?(\d{3,})", re.IGNORECASE),
    re.compile(r"INVOICE\s*(?:NUMBER|NO\.?)?\s*[-#:/]?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
    re.compile(r"INV[-_]?([A-Z]{2,}\d+)", re.IGNORECASE),
]

BILL_PATTERNS = [
    re.compile(r"BILL[-#/]?(\d{3,})", re.IGNORECASE),
    re.compile(r"BILL\s*(?:NUMBER|NO\.?)?\s*[-#:/]?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
    re.compile(r"BILL[-_]?([A-Z]{2,}\d+)", re.IGNORECASE),
    re.compile(r"\bPO[-#]?(\d{4,})", re.IGNORECASE),
    re.compile(r"PURCHASE\s*ORDER\s*[-#:/]?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
]

# Short references would collide across unrelated rows, hence the 6+ minimum
REFERENCE_PATTERNS = [
    re.compile(r"\bREF(?:ERENCE)?(?:\s*NO\.?)?\s*[-#:/]?\s*([A-Z0-9]{6,})", re.IGNORECASE),
    re.compile(r"\bUTR\s*(?:NO\.?)?\s*[-#:/]?\s*([A-Z0-9]{6,})", re.IGNORECASE),
    re.compile(r"\bTXN\s*(?:ID)?\s*[-#:/]?\s*([A-Z0-9]{6,})", re.IGNORECASE),
    re.compile(r"TRANSACTION\s*ID\s*[-:/]?\s*([A-Z0-9]{6,})", re.IGNORECASE),
    re.compile(r"\bRRN\s*[-#:/]?\s*(\d{6,})", re.IGNORECASE),
]

AMOUNT_PATTERNS = [
    re.compile(r"\bRS\.?\s*([\d,]+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\bINR\.?\s*([\d,]+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"₹\s*([\d,]+(?:\.\d+)?)"),
    re.compile(r"\bAMOUNT\s*[-:/]?\s*([\d,]+(?:\.\d+)?)", re.IGNORECASE),
]

TRANSACTION_PREFIXES = [
    "NEFT", "IMPS", "RTGS", "UPI", "NACH", "ECS", "ACH", "BIL", "POS", "ATM", "INB",
    "MOB", "NET", "CHQ", "DD", "FT", "TRF", "TRANSFER",
]

TRANSACTION_SUFFIXES = [
    "PAYMENT", "TRANSFER", "TXN", "TRANSACTION", "REF", "REFERENCE", "CREDIT", "DEBIT",
    "CR", "DR", "PVT LTD", "PRIVATE LIMITED", "LLP", "LIMITED", "LTD", "INC", "CORP",
]

# Lower-case key found in a description -> canonical vendor name
KNOWN_VENDORS: dict[str, str] = {
    "aws": "Amazon Web Services",
    "amazon web services": "Amazon Web Services",
    "azure": "Microsoft Azure",
    "microsoft": "Microsoft",
    "google cloud": "Google Cloud Platform",
    "gcp": "Google Cloud Platform",
    "digitalocean": "DigitalOcean",
    "github": "GitHub",
    "gitlab": "GitLab",
    "slack": "Slack",
    "zoom": "Zoom",
    "notion": "Notion",
    "figma": "Figma",
    "canva": "Canva",
    "hubspot": "HubSpot",
    "salesforce": "Salesforce",
    "stripe": "Stripe",
    "razorpay": "Razorpay",
    "paytm": "Paytm",
    "phonepe": "PhonePe",
    "gpay": "Google Pay",
    "google pay": "Google Pay",
    "freshworks": "Freshworks",
    "zoho": "Zoho",
    "tally": "Tally",
    "quickbooks": "QuickBooks",
    "xero": "Xero",
    "dropbox": "Dropbox",
    "adobe": "Adobe",
    "mailchimp": "Mailchimp",
    "sendgrid": "SendGrid",
    "twilio": "Twilio",
    "intercom": "Intercom",
    "heroku": "Heroku",
    "vercel": "Vercel",
    "netlify": "Netlify",
    "cloudflare": "Cloudflare",
    "fastly": "Fastly",
    "mongodb": "MongoDB",
    "firebase": "Firebase",
    "supabase": "Supabase",
}

KEYWORD_GROUPS: dict[str, list[str]] = {
    "hiring": ["salary", "payroll", "wages", "bonus", "recruitment", "hr", "employee", "staff", "contractor"],
    "marketing": ["marketing", "advertising", "ads", "campaign", "seo", "social media", "promotion", "branding"],
    "saas": ["subscription", "saas", "software", "license", "app", "tool", "platform", "api"],
    "cloud": ["aws", "azure", "gcp", "cloud", "hosting", "server", "infrastructure", "database"],
    "office": ["rent", "office", "electricity", "utilities", "internet", "wifi", "furniture"],
    "legal": ["legal", "lawyer", "attorney", "compliance", "registration", "trademark", "patent"],
    "travel": ["travel", "flight", "hotel", "cab", "uber", "ola", "taxi", "transport"],
    "tax": ["gst", "tds", "income tax", "tax", "filing", "return"],
}

# Leading phrases and trailing tails stripped before taking a vendor name
_LEAD_PHRASE = re.compile(
    r"^(payment to|paid to|transfer to|payment for|paid for|payment from|received from|neft|imps|rtgs|upi)\b[\s:/-]*",
    re.IGNORECASE,
)
_TAIL_PHRASE = re.compile(
    r"\b(payment|invoice|bill|receipt|transaction|ref|reference|txn)\b.*$", re.IGNORECASE
)
_LEGAL_SUFFIX = re.compile(
    r"\b(pvt\.?\s*ltd\.?|private\s+limited|llp|limited|ltd\.?|inc\.?|corp\.?|co\.?)$",
    re.IGNORECASE,
)


@dataclass
class ExtractedEntities:
    """Structured hints pulled out of one description."""

    vendor: str | None = None
    vendor_is_known: bool = False
    invoice_number: str | None = None
    bill_number: str | None = None
    reference_number: str | None = None
    payment_method: PaymentMethod = PaymentMethod.UNKNOWN
    upi_id: str | None = None
    keywords: list[str] = field(default_factory=list)
    amount: Decimal | None = None
    extraction_confidence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor": self.vendor,
            "vendor_is_known": self.vendor_is_known,
            "invoice_number": self.invoice_number,
            "bill_number": self.bill_number,
            "reference_number": self.reference_number,
            "payment_method": self.payment_method.value,
            "upi_id": self.upi_id,
            "keywords": self.keywords,
            "amount": str(self.amount) if self.amount is not None else None,
            "extraction_confidence": self.extraction_confidence,
        }


def extract_payment_method(description: str) -> tuple[PaymentMethod, str | None]:
    """Detect the payment rail and, for UPI, the UPI id."""
    desc = description.upper()
    upi = UPI_ID_PATTERN.search(description)
    if upi:
        return PaymentMethod.UPI, upi.group(1).lower()
    for method, pattern in PAYMENT_METHOD_PATTERNS:
        if pattern.search(desc):
            return method, None
    return PaymentMethod.UNKNOWN, None


def _first_group(patterns: list[re.Pattern[str]], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1).strip("-").upper()
    return None


def extract_invoice_number(description: str) -> str | None:
    return _first_group(INVOICE_PATTERNS, description)


def extract_bill_number(description: str) -> str | None:
    return _first_group(BILL_PATTERNS, description)


def extract_reference_number(description: str) -> str | None:
    return _first_group(REFERENCE_PATTERNS, description)


def extract_amount(description: str) -> Decimal | None:
    """Amount embedded in the text (e.g. "RS 1,500.00"), if any."""
    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(description)
        if match:
            try:
                amount = Decimal(match.group(1).replace(",", ""))
            except InvalidOperation:
                continue
            if amount > 0:
                return amount
    return None


def extract_keywords(description: str) -> list[str]:
    """Keyword groups present in the description, in table order."""
    return [
        group
        for group, words in KEYWORD_GROUPS.items()
        if any(contains_keyword(description, word) for word in words)
    ]


def known_vendor(description: str) -> str | None:
    """Canonical name of a known vendor mentioned in the description."""
    for key, name in KNOWN_VENDORS.items():
        if contains_keyword(description, key):
            return name
    return None


def _title(text: str) -> str:
    return " ".join(word.capitalize() for word in text.split())


def extract_vendor(description: str) -> tuple[str | None, bool]:
    """Extract a vendor / counterparty name.

    Returns:
        (name, is_known). Known vendors come from KNOWN_VENDORS; otherwise
        the first three meaningful words after stripping rails, references,
        dates, amounts and UPI ids.
    """
    name = known_vendor(description)
    if name:
        return name, True

    cleaned = description.upper()
    for prefix in TRANSACTION_PREFIXES:
        cleaned = re.sub(rf"^{prefix}\b[-/\s]*", "", cleaned)
    for suffix in TRANSACTION_SUFFIXES:
        cleaned = re.sub(rf"\s*\b{suffix}\s*$", "", cleaned)

    cleaned = re.sub(r"\b(REF|TXN|UTR)[-#:/]?\s*[A-Z0-9]+", " ", cleaned)
    cleaned = re.sub(r"\d{2}[-/]\d{2}[-/]\d{2,4}", " ", cleaned)
    cleaned = re.sub(r"\b(RS|INR)\.?\s*[\d,]+(\.\d+)?", " ", cleaned)
    cleaned = UPI_ID_PATTERN.sub(" ", cleaned)
    cleaned = re.sub(r"[^A-Z0-9&\s]", " ", cleaned)

    words = [w for w in cleaned.split() if len(w) >= 3 and not w.isdigit()]
    if words:
        return _title(" ".join(words[:3])), False
    return None, False


def clean_vendor_name(description: str) -> str:
    """Short counterparty label used on ledger entries.

    Strips rail prefixes ("NEFT", "payment to") and everything from the
    first document word ("payment", "invoice", "ref") onward, then keeps
    the first three words longer than two characters.
    """
    known = known_vendor(description)
    if known:
        return known

    cleaned = _LEAD_PHRASE.sub("", description.strip())
    cleaned = _TAIL_PHRASE.sub("", cleaned)
    cleaned = re.sub(r"[^\w&\s]", " ", cleaned)
    # Tokens with digits are document numbers, not names
    words = [w for w in cleaned.split() if len(w) > 2 and not any(c.isdigit() for c in w)]
    return _title(" ".join(words[:3])) if words else "Unknown"


def normalize_vendor_key(name: str | None) -> str:
    """Stable slug used as the unique key for subscriptions and recurring expenses.

    Lower-cases, drops legal suffixes and punctuation, and joins the words
    with "-". "Acme Pvt. Ltd." and "ACME" both become "acme".
    """
    if not name:
        return "unknown"
    text = name.strip().lower()
    previous = None
    while previous != text:
        previous = text
        text = _LEGAL_SUFFIX.sub("", text).strip(" .,-")
    words = re.findall(r"[a-z0-9]+", text)
    return "-".join(words) if words else "unknown"


def vendor_key_for(description: str) -> str:
    """Vendor key of a raw description (one entity-resolution step)."""
    return normalize_vendor_key(clean_vendor_name(description))


def extract_entities(description: str) -> ExtractedEntities:
    """Extract every entity from a description.

    extraction_confidence is the sum of points for what was found:
    payment method 10, invoice 20, bill 20, reference 10, vendor 30 when
    known else 15, keywords 10, embedded amount 5; capped at 100.
    """
    result = ExtractedEntities()
    if not description or not description.strip():
        return result

    points = 0

    method, upi_id = extract_payment_method(description)
    if method != PaymentMethod.UNKNOWN:
        result.payment_method = method
        result.upi_id = upi_id
        points += 10

    result.invoice_number = extract_invoice_number(description)
    if result.invoice_number:
        points += 20

    result.bill_number = extract_bill_number(description)
    if result.bill_number:
        points += 20

    result.reference_number = extract_reference_number(description)
    if result.reference_number:
        points += 10

    vendor, is_known = extract_vendor(description)
    if vendor:
        result.vendor = vendor
        result.vendor_is_known = is_known
        points += 30 if is_known else 15

    result.keywords = extract_keywords(description)
    if result.keywords:
        points += 10

    result.amount = extract_amount(description)
    if result.amount is not None:
        points += 5

    result.extraction_confidence = min(100, points)
    return result


def extraction_summary(results: list[ExtractedEntities]) -> dict[str, Any]:
    """Aggregate statistics over a batch of extractions."""
    by_method: Counter[str] = Counter()
    with_vendor = with_invoice = with_bill = with_method = 0
    total_confidence = 0

    for result in results:
        if result.vendor:
            with_vendor += 1
        if result.invoice_number:
            with_invoice += 1
        if result.bill_number:
            with_bill += 1
        if result.payment_method != PaymentMethod.UNKNOWN:
            with_method += 1
            by_method[result.payment_method.value] += 1
        total_confidence += result.extraction_confidence

    return {
        "total": len(results),
        "with_vendor": with_vendor,
        "with_invoice": with_invoice,
        "with_bill": with_bill,
        "with_payment_method": with_method,
        "average_confidence": total_confidence / len(results) if results else 0.0,
        "by_payment_method": dict(by_method),
    }


def document_number_matches(extracted: str | None, document_number: str | None) -> bool:
    """Whether a number pulled from a description refers to a document.

    True when the document number contains the extracted token, or the
    token contains the document number's digits ("0042" and "INV0042" both
    match "INV-0042").
    """
    if not extracted or not document_number:
        return False
    token = extracted.strip().lower()
    doc = document_number.strip().lower()
    if token in doc:
        return True
    digits = re.sub(r"\D", "", doc)
    return len(digits) >= 3 and digits in token
