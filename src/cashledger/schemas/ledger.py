"""
Ledger data model.

Amount Sign Convention:
- LedgerTransaction.amount is signed: credit positive, debit negative
- Invoice / Bill amounts are positive; balance_amount is never negative
- RawTransactionRecord carries debit and credit as non-negative columns

All money values are Decimal quantized to CURRENCY_PRECISION. SQLite stores
them as TEXT so no float rounding creeps into balances.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ..errors import ParseError
from .categories import Category

# Rounding precision for currency amounts
CURRENCY_PRECISION = Decimal("0.01")

ZERO = Decimal("0.00")

# Accepted statement date formats, tried in order
DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d %B %Y",
    "%b %d, %Y",
)


class Direction(str, Enum):
    """Cash direction of a bank row."""

    CREDIT = "credit"
    DEBIT = "debit"


class TransactionType(str, Enum):
    """What a ledger entry represents after reconciliation."""

    INVOICE_PAYMENT = "invoice_payment"
    BILL_PAYMENT = "bill_payment"
    REVENUE = "revenue"
    EXPENSE = "expense"
    UNMATCHED = "unmatched"


class ExpenseType(str, Enum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"


class Frequency(str, Enum):
    """Cadence of a recurring payment."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    IRREGULAR = "irregular"
    ONE_TIME = "one-time"


# Cadences that can be billed (subscriptions, recurring expenses)
BILLING_FREQUENCIES = (Frequency.WEEKLY, Frequency.MONTHLY, Frequency.QUARTERLY, Frequency.YEARLY)


class ReviewReason(str, Enum):
    """Why a transaction sits in the review queue."""

    LOW_CONFIDENCE = "low_confidence"
    UNCLEAR_DESCRIPTION = "unclear_description"
    NO_MATCH = "no_match"
    MULTIPLE_MATCHES = "multiple_matches"
    USER_REJECTED = "user_rejected"


class ReviewStatus(str, Enum):
    """Review queue states.

    AUTO_APPROVED, APPROVED, REJECTED and RECATEGORIZED are terminal.
    """

    AUTO_APPROVED = "auto_approved"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECATEGORIZED = "recategorized"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class BillStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


# Documents that can still receive a payment
OPEN_INVOICE_STATUSES = (
    InvoiceStatus.DRAFT,
    InvoiceStatus.SENT,
    InvoiceStatus.PENDING,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.OVERDUE,
)
OPEN_BILL_STATUSES = (BillStatus.UNPAID, BillStatus.PARTIAL, BillStatus.OVERDUE)

# Open documents the overdue tracker moves to OVERDUE once past due
COLLECTIBLE_INVOICE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.PENDING, InvoiceStatus.PARTIAL)
PAYABLE_BILL_STATUSES = (BillStatus.UNPAID, BillStatus.PARTIAL)


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    BUDGET = "budget"
    OVERDUE_INVOICE = "overdue_invoice"
    OVERDUE_BILL = "overdue_bill"
    RUNWAY = "runway"
    ANOMALY = "anomaly"
    INTEGRITY = "integrity"


def to_money(value: Any, *, field_name: str = "amount") -> Decimal:
    """Convert a loose amount (str, int, float, Decimal, None) to Decimal.

    None and empty strings are zero. Thousands separators and currency
    symbols are stripped.

    Raises:
        ParseError: If the value is not a number.
    """
    if value is None:
        return ZERO
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, str):
            cleaned = value.replace(",", "").replace("₹", "").replace("$", "").strip()
            if not cleaned or cleaned == "-":
                return ZERO
            amount = Decimal(cleaned)
        elif isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(value)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ParseError(f"{field_name}: invalid amount {value!r}") from e

    if not amount.is_finite():
        raise ParseError(f"{field_name}: invalid amount {value!r}")
    return amount.quantize(CURRENCY_PRECISION, rounding=ROUND_HALF_UP)


def parse_date(value: Any) -> date:
    """Parse a statement date.

    Accepts date / datetime objects, ISO timestamps and the formats in
    DATE_FORMATS.

    Raises:
        ParseError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ParseError(f"invalid date {value!r}")

    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ParseError(f"invalid date {value!r}")


def month_key(day: date) -> str:
    """YYYY-MM key used for monthly alert deduplication."""
    return f"{day.year:04d}-{day.month:02d}"


@dataclass(frozen=True)
class RawTransactionRecord:
    """One normalized bank-statement row as produced by the statement parser.

    Immutable input. bank_transaction_id and reference_number are optional
    identifiers some parsers provide; they drive the strongest duplicate
    tiers.
    """

    date: str | date
    description: str
    debit: Decimal | float | str | None = None
    credit: Decimal | float | str | None = None
    balance: Decimal | float | str | None = None
    bank_transaction_id: str | None = None
    reference_number: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawTransactionRecord:
        """Build from a parser row (snake_case or camelCase keys).

        Raises:
            ParseError: If the row is not a mapping.
        """
        if not isinstance(data, dict):
            raise ParseError(f"row must be an object, got {type(data).__name__}")
        return cls(
            date=data.get("date", ""),
            description=str(data.get("description") or ""),
            debit=data.get("debit"),
            credit=data.get("credit"),
            balance=data.get("balance"),
            bank_transaction_id=data.get("bank_transaction_id") or data.get("bankTransactionId"),
            reference_number=data.get("reference_number") or data.get("referenceNumber"),
        )

    def normalize(self) -> NormalizedRecord | None:
        """Validate and convert to a NormalizedRecord.

        Returns:
            None for rows that are skipped by design (no money movement,
            opening / closing balance lines).

        Raises:
            ParseError: If the date or an amount cannot be parsed.
        """
        debit = abs(to_money(self.debit, field_name="debit"))
        credit = abs(to_money(self.credit, field_name="credit"))
        description = (self.description or "").strip()

        if debit == 0 and credit == 0:
            return None
        desc_lower = description.lower()
        if "opening balance" in desc_lower or "closing balance" in desc_lower:
            return None
        if not description:
            raise ParseError("empty description")

        txn_date = parse_date(self.date)
        amount = credit if credit > 0 else -debit
        balance = to_money(self.balance, field_name="balance") if self.balance is not None else None

        return NormalizedRecord(
            date=txn_date,
            description=description,
            amount=amount,
            balance=balance,
            bank_transaction_id=self.bank_transaction_id,
            reference_number=self.reference_number,
        )


@dataclass(frozen=True)
class NormalizedRecord:
    """A parsed statement row with a signed amount."""

    date: date
    description: str
    amount: Decimal
    balance: Decimal | None = None
    bank_transaction_id: str | None = None
    reference_number: str | None = None

    @property
    def direction(self) -> Direction:
        return Direction.CREDIT if self.amount > 0 else Direction.DEBIT

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)


@dataclass
class LedgerTransaction:
    """A classified ledger entry.

    Created once per non-duplicate raw record. After creation only the
    review queue mutates it (status, category, notes).
    """

    id: int
    company_id: int
    date: date
    description: str
    amount: Decimal
    category: Category
    vendor_name: str | None
    payment_method: str | None
    reference_number: str | None
    expense_type: ExpenseType
    frequency: Frequency | None
    confidence_score: int
    needs_review: bool
    review_reason: ReviewReason | None
    review_status: ReviewStatus
    transaction_type: TransactionType
    matched_invoice_id: int | None
    matched_bill_id: int | None
    classification_reasoning: list[str]
    flags: list[str]
    reviewed_by: str | None
    reviewed_at: str | None
    review_notes: str | None
    created_at: str

    @property
    def direction(self) -> Direction:
        return Direction.CREDIT if self.amount > 0 else Direction.DEBIT

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LedgerTransaction:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            date=date.fromisoformat(row["date"]),
            description=row["description"],
            amount=Decimal(row["amount"]),
            category=Category(row["category"]),
            vendor_name=row["vendor_name"],
            payment_method=row["payment_method"],
            reference_number=row["reference_number"],
            expense_type=ExpenseType(row["expense_type"]),
            frequency=Frequency(row["frequency"]) if row["frequency"] else None,
            confidence_score=row["confidence_score"],
            needs_review=bool(row["needs_review"]),
            review_reason=ReviewReason(row["review_reason"]) if row["review_reason"] else None,
            review_status=ReviewStatus(row["review_status"]),
            transaction_type=TransactionType(row["transaction_type"]),
            matched_invoice_id=row["matched_invoice_id"],
            matched_bill_id=row["matched_bill_id"],
            classification_reasoning=json.loads(row["classification_reasoning"] or "[]"),
            flags=json.loads(row["flags"] or "[]"),
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            review_notes=row["review_notes"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "category": self.category.value,
            "vendor_name": self.vendor_name,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "expense_type": self.expense_type.value,
            "frequency": self.frequency.value if self.frequency else None,
            "confidence_score": self.confidence_score,
            "needs_review": self.needs_review,
            "review_reason": self.review_reason.value if self.review_reason else None,
            "review_status": self.review_status.value,
            "transaction_type": self.transaction_type.value,
            "matched_invoice_id": self.matched_invoice_id,
            "matched_bill_id": self.matched_bill_id,
            "classification_reasoning": self.classification_reasoning,
            "flags": self.flags,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "review_notes": self.review_notes,
        }


@dataclass
class NewLedgerTransaction:
    """Insert payload for a ledger entry (no id yet)."""

    company_id: int
    date: date
    description: str
    amount: Decimal
    category: Category
    transaction_type: TransactionType
    confidence_score: int
    needs_review: bool
    review_status: ReviewStatus
    review_reason: ReviewReason | None = None
    vendor_name: str | None = None
    payment_method: str | None = None
    reference_number: str | None = None
    expense_type: ExpenseType = ExpenseType.ONE_TIME
    frequency: Frequency | None = None
    matched_invoice_id: int | None = None
    matched_bill_id: int | None = None
    classification_reasoning: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.matched_invoice_id is not None and self.matched_bill_id is not None:
            raise ValueError("A transaction cannot match both an invoice and a bill")


@dataclass
class Invoice:
    """Receivable issued to a customer."""

    id: int
    company_id: int
    invoice_number: str
    customer_name: str
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: InvoiceStatus
    invoice_date: date | None
    due_date: date | None
    paid_date: date | None
    created_at: str

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INVOICE_STATUSES and self.balance_amount > 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Invoice:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            invoice_number=row["invoice_number"],
            customer_name=row["customer_name"],
            total_amount=Decimal(row["total_amount"]),
            paid_amount=Decimal(row["paid_amount"]),
            balance_amount=Decimal(row["balance_amount"]),
            status=InvoiceStatus(row["status"]),
            invoice_date=_opt_date(row["invoice_date"]),
            due_date=_opt_date(row["due_date"]),
            paid_date=_opt_date(row["paid_date"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_name": self.customer_name,
            "total_amount": str(self.total_amount),
            "paid_amount": str(self.paid_amount),
            "balance_amount": str(self.balance_amount),
            "status": self.status.value,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


@dataclass
class Bill:
    """Payable owed to a vendor."""

    id: int
    company_id: int
    bill_number: str
    vendor_name: str
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    payment_status: BillStatus
    bill_date: date | None
    due_date: date | None
    payment_date: date | None
    created_at: str

    @property
    def is_open(self) -> bool:
        return self.payment_status in OPEN_BILL_STATUSES and self.balance_amount > 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Bill:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            bill_number=row["bill_number"],
            vendor_name=row["vendor_name"],
            total_amount=Decimal(row["total_amount"]),
            paid_amount=Decimal(row["paid_amount"]),
            balance_amount=Decimal(row["balance_amount"]),
            payment_status=BillStatus(row["payment_status"]),
            bill_date=_opt_date(row["bill_date"]),
            due_date=_opt_date(row["due_date"]),
            payment_date=_opt_date(row["payment_date"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bill_number": self.bill_number,
            "vendor_name": self.vendor_name,
            "total_amount": str(self.total_amount),
            "paid_amount": str(self.paid_amount),
            "balance_amount": str(self.balance_amount),
            "payment_status": self.payment_status.value,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


@dataclass
class Company:
    """A company whose cash is tracked.

    cash_balance is owned by the cash ledger; target_months caches the
    last computed runway (floored, sentinel when unbounded).
    """

    id: int
    name: str
    cash_balance: Decimal
    initial_cash_balance: Decimal
    target_months: int | None
    currency: str
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Company:
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            cash_balance=Decimal(row["cash_balance"]),
            initial_cash_balance=Decimal(row["initial_cash_balance"]),
            target_months=row["target_months"],
            currency=row["currency"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cash_balance": str(self.cash_balance),
            "initial_cash_balance": str(self.initial_cash_balance),
            "target_months": self.target_months,
            "currency": self.currency,
        }


@dataclass
class Subscription:
    """Detected subscription, unique per (company_id, vendor_key)."""

    id: int
    company_id: int
    vendor_key: str
    name: str
    amount: Decimal
    billing_cycle: Frequency
    start_date: date
    last_billed_date: date
    status: str
    category: Category

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Subscription:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            vendor_key=row["vendor_key"],
            name=row["name"],
            amount=Decimal(row["amount"]),
            billing_cycle=Frequency(row["billing_cycle"]),
            start_date=date.fromisoformat(row["start_date"]),
            last_billed_date=date.fromisoformat(row["last_billed_date"]),
            status=row["status"],
            category=Category(row["category"]),
        )


@dataclass
class RecurringExpense:
    """Detected recurring expense, unique per (company_id, vendor_key)."""

    id: int
    company_id: int
    vendor_key: str
    description: str
    amount: Decimal
    frequency: Frequency
    category: Category
    start_date: date
    last_payment_date: date
    status: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RecurringExpense:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            vendor_key=row["vendor_key"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            frequency=Frequency(row["frequency"]),
            category=Category(row["category"]),
            start_date=date.fromisoformat(row["start_date"]),
            last_payment_date=date.fromisoformat(row["last_payment_date"]),
            status=row["status"],
        )


@dataclass
class Budget:
    """Monthly spending limit for one category."""

    id: int
    company_id: int
    category: Category
    monthly_limit: Decimal
    is_active: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Budget:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            category=Category(row["category"]),
            monthly_limit=Decimal(row["monthly_limit"]),
            is_active=bool(row["is_active"]),
        )


@dataclass
class Alert:
    """Persisted alert.

    Budget alerts carry (category, threshold, month_key) and are unique on
    that key per company. Other alert types are deduplicated by the
    caller (message containment).
    """

    id: int
    company_id: int
    alert_type: AlertType
    severity: Severity
    message: str
    category: str | None
    threshold: int | None
    month_key: str | None
    is_read: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Alert:
        """Create from database row."""
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            alert_type=AlertType(row["alert_type"]),
            severity=Severity(row["severity"]),
            message=row["message"],
            category=row["category"],
            threshold=row["threshold"],
            month_key=row["month_key"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "category": self.category,
            "threshold": self.threshold,
            "month_key": self.month_key,
            "created_at": self.created_at,
        }


def _opt_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None
