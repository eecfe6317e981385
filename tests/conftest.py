"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from cashledger.config import Config
from cashledger.schemas import Category
from cashledger.schemas.ledger import (
    Direction,
    NewLedgerTransaction,
    ReviewStatus,
    TransactionType,
)
from cashledger.state_store import StateStore


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test_state.db"


@pytest.fixture
def config(temp_db: Path) -> Config:
    """Default configuration pointing at the temporary database."""
    return Config(state_db_path=temp_db)


@pytest.fixture
def store(temp_db: Path) -> StateStore:
    """State store on a fresh database."""
    return StateStore(temp_db)


@pytest.fixture
def company_id(store: StateStore) -> int:
    """A company with 500000 opening cash."""
    return store.create_company("Acme Labs", cash_balance=Decimal("500000.00"))


@pytest.fixture
def sample_rows() -> list[dict]:
    """Ten distinct statement rows (parser output)."""
    return [
        {"date": "2024-03-01", "description": "AWS Cloud Services", "debit": "15000"},
        {"date": "2024-03-02", "description": "Office rent March", "debit": "80000"},
        {"date": "2024-03-04", "description": "Client payment Initech", "credit": "120000"},
        {"date": "2024-03-05", "description": "Slack subscription", "debit": "4200"},
        {"date": "2024-03-08", "description": "Swiggy team lunch", "debit": "3150"},
        {"date": "2024-03-11", "description": "GST challan payment", "debit": "27500"},
        {"date": "2024-03-14", "description": "Uber rides Bangalore", "debit": "1875"},
        {"date": "2024-03-18", "description": "Razorpay settlement", "credit": "64300"},
        {"date": "2024-03-22", "description": "Legal counsel retainer", "debit": "45000"},
        {"date": "2024-03-27", "description": "Airtel broadband", "debit": "2399"},
    ]


def make_transaction(
    store: StateStore,
    company_id: int,
    txn_date: date,
    description: str,
    amount: str,
    category: Category = Category.OTHER,
    confidence: int = 90,
    needs_review: bool = False,
    vendor_name: str | None = None,
    flags: list[str] | None = None,
) -> int:
    """Insert a ledger transaction directly (no cash update, no matching)."""
    value = Decimal(amount)
    direction = Direction.CREDIT if value > 0 else Direction.DEBIT
    return store.insert_transaction(
        NewLedgerTransaction(
            company_id=company_id,
            date=txn_date,
            description=description,
            amount=value,
            category=category,
            transaction_type=(
                TransactionType.REVENUE if direction == Direction.CREDIT else TransactionType.EXPENSE
            ),
            confidence_score=confidence,
            needs_review=needs_review,
            review_status=(
                ReviewStatus.PENDING_REVIEW if needs_review else ReviewStatus.AUTO_APPROVED
            ),
            vendor_name=vendor_name,
            flags=flags or [],
        )
    )
