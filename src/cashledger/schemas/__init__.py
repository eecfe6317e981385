"""
SSOT (Single Source of Truth) schemas for the ledger pipeline.

These canonical models are the ONLY ones used across all modules.
No duplicated "near-same" models allowed.
"""

from .categories import (
    CATEGORY_DESCRIPTIONS,
    CATEGORY_DISPLAY_NAMES,
    CATEGORY_GROUPS,
    CATEGORY_KEYWORDS,
    PRIORITY_ORDER,
    Category,
    categorize_description,
    category_group,
    display_name,
    match_category_name,
)
from .ledger import (
    COLLECTIBLE_INVOICE_STATUSES,
    CURRENCY_PRECISION,
    OPEN_BILL_STATUSES,
    OPEN_INVOICE_STATUSES,
    PAYABLE_BILL_STATUSES,
    Alert,
    AlertType,
    Bill,
    BillStatus,
    Budget,
    Company,
    Direction,
    ExpenseType,
    Frequency,
    Invoice,
    InvoiceStatus,
    LedgerTransaction,
    NewLedgerTransaction,
    NormalizedRecord,
    RawTransactionRecord,
    RecurringExpense,
    ReviewReason,
    ReviewStatus,
    Severity,
    Subscription,
    TransactionType,
    month_key,
    parse_date,
    to_money,
)

__all__ = [
    # Categories
    "Category",
    "CATEGORY_DESCRIPTIONS",
    "CATEGORY_DISPLAY_NAMES",
    "CATEGORY_GROUPS",
    "CATEGORY_KEYWORDS",
    "PRIORITY_ORDER",
    "categorize_description",
    "category_group",
    "display_name",
    "match_category_name",
    # Ledger model
    "COLLECTIBLE_INVOICE_STATUSES",
    "CURRENCY_PRECISION",
    "OPEN_BILL_STATUSES",
    "OPEN_INVOICE_STATUSES",
    "PAYABLE_BILL_STATUSES",
    "Alert",
    "AlertType",
    "Bill",
    "BillStatus",
    "Budget",
    "Company",
    "Direction",
    "ExpenseType",
    "Frequency",
    "Invoice",
    "InvoiceStatus",
    "LedgerTransaction",
    "NewLedgerTransaction",
    "NormalizedRecord",
    "RawTransactionRecord",
    "RecurringExpense",
    "ReviewReason",
    "ReviewStatus",
    "Severity",
    "Subscription",
    "TransactionType",
    "month_key",
    "parse_date",
    "to_money",
]
