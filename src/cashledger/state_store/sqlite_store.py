"""
SQLite-based state store implementation.

Tables:
- companies: Cash balance and cached runway per company
- ledger_transactions: Classified ledger entries (one per accepted bank row)
- invoices / bills: Open and settled AR / AP documents
- subscriptions / recurring_expenses: Detected recurring spend (migration 001)
- budgets / alerts: Monthly budgets and persisted alerts (migration 002)
- import_runs: Batch import audit trail (migration 003)

Money is stored as TEXT and handled as Decimal on the Python side.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..errors import InvalidTransition, NotFoundError, PersistenceUnavailable
from ..schemas.categories import Category
from ..schemas.ledger import (
    OPEN_BILL_STATUSES,
    OPEN_INVOICE_STATUSES,
    ZERO,
    Alert,
    AlertType,
    Bill,
    BillStatus,
    Budget,
    Company,
    Frequency,
    Invoice,
    InvoiceStatus,
    LedgerTransaction,
    NewLedgerTransaction,
    RecurringExpense,
    ReviewReason,
    ReviewStatus,
    Severity,
    Subscription,
    TransactionType,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _money(value: Decimal) -> str:
    return str(value)


@dataclass
class PaymentApplication:
    """Outcome of applying a payment to an invoice or bill."""

    entity_type: str  # "invoice" or "bill"
    entity_id: int
    document_number: str
    previous_status: str
    new_status: str
    paid_amount: Decimal
    remaining_balance: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "document_number": self.document_number,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "paid_amount": str(self.paid_amount),
            "remaining_balance": str(self.remaining_balance),
        }


@dataclass
class ReviewUpdate:
    """Review outcome written together with a manual payment link."""

    review_status: ReviewStatus
    reviewed_by: str | None = None
    review_notes: str | None = None  # defaults to "Matched to <type> <number>"
    confidence_score: int | None = None
    expected_status: ReviewStatus | None = None


class StateStore:
    """
    SQLite-based state store for the ledger pipeline.

    Provides persistent tracking of:
    - Companies and their cash balance
    - Ledger transactions and their review state
    - Invoices and bills (reconciliation targets)
    - Subscriptions and recurring expenses
    - Budgets, alerts and import runs

    Every public method opens its own short transaction. Read-modify-write
    operations on balances use BEGIN IMMEDIATE so concurrent writers
    serialize on the database lock.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self, db_path: Path | str, run_migrations: bool = True, busy_timeout: float = 30.0
    ):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout: Seconds to wait for a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot create {self.db_path.parent}: {e}") from e
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        except sqlite3.OperationalError as e:
            raise PersistenceUnavailable(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (read-modify-write).
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise PersistenceUnavailable(f"State store error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS companies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    cash_balance TEXT NOT NULL,
                    initial_cash_balance TEXT NOT NULL,
                    target_months INTEGER,
                    currency TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id INTEGER NOT NULL,
                    invoice_number TEXT NOT NULL,
                    customer_name TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    paid_amount TEXT NOT NULL,
                    balance_amount TEXT NOT NULL,
                    status TEXT NOT NULL,
                    invoice_date TEXT,
                    due_date TEXT,
                    paid_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (company_id, invoice_number),
                    FOREIGN KEY (company_id) REFERENCES companies(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bills (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id INTEGER NOT NULL,
                    bill_number TEXT NOT NULL,
                    vendor_name TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    paid_amount TEXT NOT NULL,
                    balance_amount TEXT NOT NULL,
                    payment_status TEXT NOT NULL,
                    bill_date TEXT,
                    due_date TEXT,
                    payment_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (company_id, bill_number),
                    FOREIGN KEY (company_id) REFERENCES companies(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    description TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    category TEXT NOT NULL,
                    vendor_name TEXT,
                    payment_method TEXT,
                    reference_number TEXT,
                    expense_type TEXT NOT NULL,
                    frequency TEXT,
                    confidence_score INTEGER NOT NULL,
                    needs_review INTEGER NOT NULL,
                    review_reason TEXT,
                    review_status TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    matched_invoice_id INTEGER,
                    matched_bill_id INTEGER,
                    classification_reasoning TEXT,  -- JSON array
                    flags TEXT,  -- JSON array
                    reviewed_by TEXT,
                    reviewed_at TEXT,
                    review_notes TEXT,
                    created_at TEXT NOT NULL,
                    CHECK (matched_invoice_id IS NULL OR matched_bill_id IS NULL),
                    FOREIGN KEY (company_id) REFERENCES companies(id),
                    FOREIGN KEY (matched_invoice_id) REFERENCES invoices(id),
                    FOREIGN KEY (matched_bill_id) REFERENCES bills(id)
                )
            """
            )

            # Create indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_company_date "
                "ON ledger_transactions(company_id, date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_review "
                "ON ledger_transactions(company_id, review_status)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(company_id, status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bills_status ON bills(company_id, payment_status)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        except sqlite3.OperationalError as e:
            raise PersistenceUnavailable(f"Migration failed: {e}") from e
        finally:
            conn.close()

    def ping(self) -> None:
        """Fail fast with PersistenceUnavailable if the database is unreachable."""
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    # Company methods

    def create_company(
        self, name: str, cash_balance: Decimal = ZERO, currency: str = "INR"
    ) -> int:
        """Create a company and return its id."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO companies
                (name, cash_balance, initial_cash_balance, target_months, currency,
                 created_at, updated_at)
                VALUES (?, ?, ?, NULL, ?, ?, ?)
            """,
                (name, _money(cash_balance), _money(cash_balance), currency, now, now),
            )
            return cursor.lastrowid

    def get_company(self, company_id: int) -> Company | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM companies WHERE id = ?", (company_id,)).fetchone()
            return Company.from_row(row) if row else None

    def require_company(self, company_id: int) -> Company:
        """Get a company or raise NotFoundError."""
        company = self.get_company(company_id)
        if company is None:
            raise NotFoundError(f"Company {company_id} not found")
        return company

    def list_companies(self) -> list[Company]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM companies ORDER BY id").fetchall()
            return [Company.from_row(row) for row in rows]

    def apply_cash_delta(self, company_id: int, delta: Decimal) -> tuple[Decimal, Decimal]:
        """Atomically add delta to the company cash balance.

        Returns:
            (old_balance, new_balance)
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT cash_balance FROM companies WHERE id = ?", (company_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Company {company_id} not found")
            old_balance = Decimal(row["cash_balance"])
            new_balance = old_balance + delta
            conn.execute(
                "UPDATE companies SET cash_balance = ?, updated_at = ? WHERE id = ?",
                (_money(new_balance), _now(), company_id),
            )
            return old_balance, new_balance

    def set_cash_balance(self, company_id: int, balance: Decimal) -> None:
        """Declare the current cash balance (e.g. from a bank statement).

        The opening balance is re-derived so that stored balance equals the
        opening balance plus the signed sum of all ledger transactions.
        """
        with self._transaction(immediate=True) as conn:
            total = self._sum_amounts(conn, company_id)
            cursor = conn.execute(
                """
                UPDATE companies
                SET cash_balance = ?, initial_cash_balance = ?, updated_at = ?
                WHERE id = ?
            """,
                (_money(balance), _money(balance - total), _now(), company_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Company {company_id} not found")

    def overwrite_cash_balance(self, company_id: int, balance: Decimal) -> None:
        """Replace the stored balance without touching the opening balance."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE companies SET cash_balance = ?, updated_at = ? WHERE id = ?",
                (_money(balance), _now(), company_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Company {company_id} not found")

    def update_target_months(self, company_id: int, months: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE companies SET target_months = ?, updated_at = ? WHERE id = ?",
                (months, _now(), company_id),
            )

    # Ledger transaction methods

    def insert_transaction(self, txn: NewLedgerTransaction, apply_payment: bool = False) -> int:
        """Insert a ledger transaction.

        Args:
            txn: Transaction payload
            apply_payment: Also apply abs(amount) as a payment to the matched
                invoice / bill in the same database transaction.

        Returns:
            New transaction id
        """
        txn_id, _ = self.insert_transaction_with_payment(txn, apply_payment=apply_payment)
        return txn_id

    def insert_transaction_with_payment(
        self, txn: NewLedgerTransaction, apply_payment: bool = True
    ) -> tuple[int, PaymentApplication | None]:
        """Insert a ledger transaction and settle its matched document atomically."""
        with self._transaction(immediate=True) as conn:
            payment = None
            if apply_payment and txn.matched_invoice_id is not None:
                payment = self._apply_invoice_payment(
                    conn, txn.company_id, txn.matched_invoice_id, abs(txn.amount), txn.date
                )
            elif apply_payment and txn.matched_bill_id is not None:
                payment = self._apply_bill_payment(
                    conn, txn.company_id, txn.matched_bill_id, abs(txn.amount), txn.date
                )

            cursor = conn.execute(
                """
                INSERT INTO ledger_transactions
                (company_id, date, description, amount, category, vendor_name, payment_method,
                 reference_number, expense_type, frequency, confidence_score, needs_review,
                 review_reason, review_status, transaction_type, matched_invoice_id,
                 matched_bill_id, classification_reasoning, flags, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    txn.company_id,
                    txn.date.isoformat(),
                    txn.description,
                    _money(txn.amount),
                    txn.category.value,
                    txn.vendor_name,
                    txn.payment_method,
                    txn.reference_number,
                    txn.expense_type.value,
                    txn.frequency.value if txn.frequency else None,
                    txn.confidence_score,
                    1 if txn.needs_review else 0,
                    txn.review_reason.value if txn.review_reason else None,
                    txn.review_status.value,
                    txn.transaction_type.value,
                    txn.matched_invoice_id,
                    txn.matched_bill_id,
                    json.dumps(txn.classification_reasoning),
                    json.dumps(txn.flags),
                    _now(),
                ),
            )
            return cursor.lastrowid, payment

    def get_transaction(self, company_id: int, txn_id: int) -> LedgerTransaction | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_transactions WHERE id = ? AND company_id = ?",
                (txn_id, company_id),
            ).fetchone()
            return LedgerTransaction.from_row(row) if row else None

    def find_transaction_containing(self, company_id: int, needle: str) -> LedgerTransaction | None:
        """First transaction whose description or reference contains needle (case-insensitive)."""
        if not needle:
            return None
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM ledger_transactions
                WHERE company_id = ? AND (
                    instr(lower(description), lower(?)) > 0
                    OR instr(lower(coalesce(reference_number, '')), lower(?)) > 0
                )
                ORDER BY id
                LIMIT 1
            """,
                (company_id, needle, needle),
            ).fetchone()
            return LedgerTransaction.from_row(row) if row else None

    def transactions_between(
        self, company_id: int, start: date, end: date
    ) -> list[LedgerTransaction]:
        """Transactions with start <= date <= end, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ledger_transactions
                WHERE company_id = ? AND date >= ? AND date <= ?
                ORDER BY date, id
            """,
                (company_id, start.isoformat(), end.isoformat()),
            ).fetchall()
            return [LedgerTransaction.from_row(row) for row in rows]

    def list_transactions(
        self, company_id: int, since: date | None = None, limit: int | None = None
    ) -> list[LedgerTransaction]:
        """Transactions newest first, optionally bounded by date and count."""
        query = "SELECT * FROM ledger_transactions WHERE company_id = ?"
        params: list[Any] = [company_id]
        if since is not None:
            query += " AND date >= ?"
            params.append(since.isoformat())
        query += " ORDER BY date DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [LedgerTransaction.from_row(row) for row in rows]

    def count_transactions(self, company_id: int) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM ledger_transactions WHERE company_id = ?", (company_id,)
            ).fetchone()
            return row[0]

    def sum_transactions(self, company_id: int) -> Decimal:
        """Signed sum of every ledger transaction of a company."""
        with self._transaction() as conn:
            return self._sum_amounts(conn, company_id)

    @staticmethod
    def _sum_amounts(conn: sqlite3.Connection, company_id: int) -> Decimal:
        rows = conn.execute(
            "SELECT amount FROM ledger_transactions WHERE company_id = ?", (company_id,)
        ).fetchall()
        return sum((Decimal(row["amount"]) for row in rows), ZERO)

    def pending_review(
        self, company_id: int, limit: int = 50, offset: int = 0
    ) -> list[LedgerTransaction]:
        """Transactions waiting for manual review, lowest confidence first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ledger_transactions
                WHERE company_id = ? AND review_status = ?
                ORDER BY confidence_score ASC, date DESC, id
                LIMIT ? OFFSET ?
            """,
                (company_id, ReviewStatus.PENDING_REVIEW.value, limit, offset),
            ).fetchall()
            return [LedgerTransaction.from_row(row) for row in rows]

    def review_status_counts(self, company_id: int) -> dict[str, int]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT review_status, COUNT(*) AS n FROM ledger_transactions
                WHERE company_id = ?
                GROUP BY review_status
            """,
                (company_id,),
            ).fetchall()
            return {row["review_status"]: row["n"] for row in rows}

    def pending_review_stats(self, company_id: int, reviewed_since: str) -> dict[str, Any]:
        """Pending count, average pending confidence, reasons, reviews since a timestamp."""
        with self._transaction() as conn:
            pending = conn.execute(
                """
                SELECT COUNT(*) AS n, AVG(confidence_score) AS avg_conf
                FROM ledger_transactions
                WHERE company_id = ? AND review_status = ?
            """,
                (company_id, ReviewStatus.PENDING_REVIEW.value),
            ).fetchone()
            reasons = conn.execute(
                """
                SELECT review_reason, COUNT(*) AS n FROM ledger_transactions
                WHERE company_id = ? AND review_status = ? AND review_reason IS NOT NULL
                GROUP BY review_reason
            """,
                (company_id, ReviewStatus.PENDING_REVIEW.value),
            ).fetchall()
            reviewed = conn.execute(
                """
                SELECT COUNT(*) FROM ledger_transactions
                WHERE company_id = ? AND reviewed_at IS NOT NULL AND reviewed_at >= ?
            """,
                (company_id, reviewed_since),
            ).fetchone()
            return {
                "pending_count": pending["n"],
                "average_confidence": round(pending["avg_conf"] or 0, 1),
                "by_review_reason": {row["review_reason"]: row["n"] for row in reasons},
                "reviewed_since": reviewed[0],
            }

    def update_review_state(
        self,
        company_id: int,
        txn_id: int,
        *,
        review_status: ReviewStatus,
        needs_review: bool,
        review_reason: ReviewReason | None,
        reviewed_by: str | None,
        review_notes: str | None,
        category: Category | None = None,
        confidence_score: int | None = None,
        expected_status: ReviewStatus | None = None,
    ) -> bool:
        """Update the review fields of a transaction.

        Args:
            expected_status: Only update if the row is currently in this state.

        Returns:
            True if a row was updated.
        """
        sets = [
            "review_status = ?",
            "needs_review = ?",
            "review_reason = ?",
            "reviewed_by = ?",
            "reviewed_at = ?",
            "review_notes = ?",
        ]
        params: list[Any] = [
            review_status.value,
            1 if needs_review else 0,
            review_reason.value if review_reason else None,
            reviewed_by,
            _now(),
            review_notes,
        ]
        if category is not None:
            sets.append("category = ?")
            params.append(category.value)
        if confidence_score is not None:
            sets.append("confidence_score = ?")
            params.append(confidence_score)

        query = f"UPDATE ledger_transactions SET {', '.join(sets)} WHERE id = ? AND company_id = ?"
        params.extend([txn_id, company_id])
        if expected_status is not None:
            query += " AND review_status = ?"
            params.append(expected_status.value)

        with self._transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount > 0

    def link_transaction_payment(
        self,
        company_id: int,
        txn_id: int,
        entity_type: str,
        entity_id: int,
        review: ReviewUpdate | None = None,
    ) -> PaymentApplication:
        """Link an existing transaction to an invoice / bill and apply its amount.

        When review is given, the review fields are written in the same
        transaction as the payment, so a link never lands without its
        review outcome.

        Raises:
            NotFoundError: If the transaction or document does not exist.
            ValueError: If the transaction is already linked to a document.
            InvalidTransition: If the row is no longer in review.expected_status.
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM ledger_transactions WHERE id = ? AND company_id = ?",
                (txn_id, company_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Transaction {txn_id} not found")
            txn = LedgerTransaction.from_row(row)
            if (
                review is not None
                and review.expected_status is not None
                and txn.review_status != review.expected_status
            ):
                raise InvalidTransition(
                    f"Transaction {txn_id} is {txn.review_status.value}, "
                    f"not {review.expected_status.value}"
                )
            if txn.matched_invoice_id is not None or txn.matched_bill_id is not None:
                raise ValueError(f"Transaction {txn_id} is already reconciled")

            if entity_type == "invoice":
                payment = self._apply_invoice_payment(
                    conn, company_id, entity_id, txn.abs_amount, txn.date
                )
                conn.execute(
                    """
                    UPDATE ledger_transactions
                    SET matched_invoice_id = ?, transaction_type = ?
                    WHERE id = ?
                """,
                    (entity_id, TransactionType.INVOICE_PAYMENT.value, txn_id),
                )
            elif entity_type == "bill":
                payment = self._apply_bill_payment(
                    conn, company_id, entity_id, txn.abs_amount, txn.date
                )
                conn.execute(
                    """
                    UPDATE ledger_transactions
                    SET matched_bill_id = ?, transaction_type = ?
                    WHERE id = ?
                """,
                    (entity_id, TransactionType.BILL_PAYMENT.value, txn_id),
                )
            else:
                raise ValueError(f"Unknown entity type: {entity_type}")

            if review is not None:
                notes = review.review_notes or f"Matched to {entity_type} {payment.document_number}"
                conn.execute(
                    """
                    UPDATE ledger_transactions
                    SET review_status = ?, needs_review = 0, review_reason = NULL,
                        reviewed_by = ?, reviewed_at = ?, review_notes = ?,
                        confidence_score = COALESCE(?, confidence_score)
                    WHERE id = ?
                """,
                    (
                        review.review_status.value,
                        review.reviewed_by,
                        _now(),
                        notes,
                        review.confidence_score,
                        txn_id,
                    ),
                )
            return payment

    def delete_transactions(self, company_id: int, txn_ids: list[int]) -> Decimal:
        """Delete transactions and reverse their cash effect atomically.

        Payments the removed rows applied to invoices or bills are taken
        back off those documents in the same transaction.

        Returns:
            The signed sum of the removed amounts (already subtracted from
            the company balance).
        """
        if not txn_ids:
            return ZERO
        placeholders = ",".join("?" for _ in txn_ids)
        with self._transaction(immediate=True) as conn:
            rows = conn.execute(
                f"SELECT id, amount, matched_invoice_id, matched_bill_id FROM ledger_transactions "
                f"WHERE company_id = ? AND id IN ({placeholders})",
                [company_id, *txn_ids],
            ).fetchall()
            removed = sum((Decimal(row["amount"]) for row in rows), ZERO)
            for row in rows:
                amount = abs(Decimal(row["amount"]))
                if row["matched_invoice_id"] is not None:
                    self._reverse_invoice_payment(
                        conn, company_id, row["matched_invoice_id"], amount
                    )
                elif row["matched_bill_id"] is not None:
                    self._reverse_bill_payment(conn, company_id, row["matched_bill_id"], amount)
            conn.execute(
                f"DELETE FROM ledger_transactions WHERE company_id = ? AND id IN ({placeholders})",
                [company_id, *txn_ids],
            )
            company = conn.execute(
                "SELECT cash_balance FROM companies WHERE id = ?", (company_id,)
            ).fetchone()
            if company is not None:
                conn.execute(
                    "UPDATE companies SET cash_balance = ?, updated_at = ? WHERE id = ?",
                    (_money(Decimal(company["cash_balance"]) - removed), _now(), company_id),
                )
            return removed

    # Invoice / bill methods

    def create_invoice(
        self,
        company_id: int,
        invoice_number: str,
        customer_name: str,
        total_amount: Decimal,
        due_date: date | None = None,
        invoice_date: date | None = None,
        status: InvoiceStatus = InvoiceStatus.SENT,
        paid_amount: Decimal = ZERO,
    ) -> int:
        now = _now()
        balance = max(ZERO, total_amount - paid_amount)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO invoices
                (company_id, invoice_number, customer_name, total_amount, paid_amount,
                 balance_amount, status, invoice_date, due_date, paid_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
                (
                    company_id,
                    invoice_number,
                    customer_name,
                    _money(total_amount),
                    _money(paid_amount),
                    _money(balance),
                    status.value,
                    invoice_date.isoformat() if invoice_date else None,
                    due_date.isoformat() if due_date else None,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid

    def create_bill(
        self,
        company_id: int,
        bill_number: str,
        vendor_name: str,
        total_amount: Decimal,
        due_date: date | None = None,
        bill_date: date | None = None,
        payment_status: BillStatus = BillStatus.UNPAID,
        paid_amount: Decimal = ZERO,
    ) -> int:
        now = _now()
        balance = max(ZERO, total_amount - paid_amount)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO bills
                (company_id, bill_number, vendor_name, total_amount, paid_amount,
                 balance_amount, payment_status, bill_date, due_date, payment_date,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
                (
                    company_id,
                    bill_number,
                    vendor_name,
                    _money(total_amount),
                    _money(paid_amount),
                    _money(balance),
                    payment_status.value,
                    bill_date.isoformat() if bill_date else None,
                    due_date.isoformat() if due_date else None,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid

    def get_invoice(self, company_id: int, invoice_id: int) -> Invoice | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE id = ? AND company_id = ?", (invoice_id, company_id)
            ).fetchone()
            return Invoice.from_row(row) if row else None

    def get_bill(self, company_id: int, bill_id: int) -> Bill | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM bills WHERE id = ? AND company_id = ?", (bill_id, company_id)
            ).fetchone()
            return Bill.from_row(row) if row else None

    def list_invoices(
        self, company_id: int, statuses: tuple[InvoiceStatus, ...] | None = None
    ) -> list[Invoice]:
        query = "SELECT * FROM invoices WHERE company_id = ?"
        params: list[Any] = [company_id]
        if statuses:
            query += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY id"
        with self._transaction() as conn:
            return [Invoice.from_row(row) for row in conn.execute(query, params).fetchall()]

    def list_bills(
        self, company_id: int, statuses: tuple[BillStatus, ...] | None = None
    ) -> list[Bill]:
        query = "SELECT * FROM bills WHERE company_id = ?"
        params: list[Any] = [company_id]
        if statuses:
            query += f" AND payment_status IN ({','.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY id"
        with self._transaction() as conn:
            return [Bill.from_row(row) for row in conn.execute(query, params).fetchall()]

    def open_invoices(self, company_id: int) -> list[Invoice]:
        """Invoices that can still receive a payment."""
        return [i for i in self.list_invoices(company_id, OPEN_INVOICE_STATUSES) if i.is_open]

    def open_bills(self, company_id: int) -> list[Bill]:
        """Bills that can still be paid."""
        return [b for b in self.list_bills(company_id, OPEN_BILL_STATUSES) if b.is_open]

    def apply_invoice_payment(
        self, company_id: int, invoice_id: int, amount: Decimal, paid_on: date
    ) -> PaymentApplication:
        with self._transaction(immediate=True) as conn:
            return self._apply_invoice_payment(conn, company_id, invoice_id, amount, paid_on)

    def apply_bill_payment(
        self, company_id: int, bill_id: int, amount: Decimal, paid_on: date
    ) -> PaymentApplication:
        with self._transaction(immediate=True) as conn:
            return self._apply_bill_payment(conn, company_id, bill_id, amount, paid_on)

    def _apply_invoice_payment(
        self,
        conn: sqlite3.Connection,
        company_id: int,
        invoice_id: int,
        amount: Decimal,
        paid_on: date,
    ) -> PaymentApplication:
        row = conn.execute(
            "SELECT * FROM invoices WHERE id = ? AND company_id = ?", (invoice_id, company_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        invoice = Invoice.from_row(row)

        paid = invoice.paid_amount + amount
        balance = max(ZERO, invoice.total_amount - paid)
        status = InvoiceStatus.PAID if balance == 0 else InvoiceStatus.PARTIAL
        conn.execute(
            """
            UPDATE invoices
            SET paid_amount = ?, balance_amount = ?, status = ?, paid_date = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                _money(paid),
                _money(balance),
                status.value,
                paid_on.isoformat() if status == InvoiceStatus.PAID else None,
                _now(),
                invoice_id,
            ),
        )
        return PaymentApplication(
            entity_type="invoice",
            entity_id=invoice_id,
            document_number=invoice.invoice_number,
            previous_status=invoice.status.value,
            new_status=status.value,
            paid_amount=paid,
            remaining_balance=balance,
        )

    def _apply_bill_payment(
        self,
        conn: sqlite3.Connection,
        company_id: int,
        bill_id: int,
        amount: Decimal,
        paid_on: date,
    ) -> PaymentApplication:
        row = conn.execute(
            "SELECT * FROM bills WHERE id = ? AND company_id = ?", (bill_id, company_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        bill = Bill.from_row(row)

        paid = bill.paid_amount + amount
        balance = max(ZERO, bill.total_amount - paid)
        status = BillStatus.PAID if balance == 0 else BillStatus.PARTIAL
        conn.execute(
            """
            UPDATE bills
            SET paid_amount = ?, balance_amount = ?, payment_status = ?, payment_date = ?,
                updated_at = ?
            WHERE id = ?
        """,
            (
                _money(paid),
                _money(balance),
                status.value,
                paid_on.isoformat() if status == BillStatus.PAID else None,
                _now(),
                bill_id,
            ),
        )
        return PaymentApplication(
            entity_type="bill",
            entity_id=bill_id,
            document_number=bill.bill_number,
            previous_status=bill.payment_status.value,
            new_status=status.value,
            paid_amount=paid,
            remaining_balance=balance,
        )

    def _reverse_invoice_payment(
        self, conn: sqlite3.Connection, company_id: int, invoice_id: int, amount: Decimal
    ) -> None:
        row = conn.execute(
            "SELECT * FROM invoices WHERE id = ? AND company_id = ?", (invoice_id, company_id)
        ).fetchone()
        if row is None:
            logger.warning("Removed payment points at missing invoice %d", invoice_id)
            return
        invoice = Invoice.from_row(row)

        paid = max(ZERO, invoice.paid_amount - amount)
        balance = max(ZERO, invoice.total_amount - paid)
        if balance == 0:
            status = InvoiceStatus.PAID
        elif paid > 0:
            status = InvoiceStatus.PARTIAL
        else:
            status = InvoiceStatus.SENT
        conn.execute(
            """
            UPDATE invoices
            SET paid_amount = ?, balance_amount = ?, status = ?, paid_date = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                _money(paid),
                _money(balance),
                status.value,
                invoice.paid_date.isoformat()
                if status == InvoiceStatus.PAID and invoice.paid_date
                else None,
                _now(),
                invoice_id,
            ),
        )
        logger.info(
            "Reversed %s on invoice %s (%s -> %s)",
            amount,
            invoice.invoice_number,
            invoice.status.value,
            status.value,
        )

    def _reverse_bill_payment(
        self, conn: sqlite3.Connection, company_id: int, bill_id: int, amount: Decimal
    ) -> None:
        row = conn.execute(
            "SELECT * FROM bills WHERE id = ? AND company_id = ?", (bill_id, company_id)
        ).fetchone()
        if row is None:
            logger.warning("Removed payment points at missing bill %d", bill_id)
            return
        bill = Bill.from_row(row)

        paid = max(ZERO, bill.paid_amount - amount)
        balance = max(ZERO, bill.total_amount - paid)
        if balance == 0:
            status = BillStatus.PAID
        elif paid > 0:
            status = BillStatus.PARTIAL
        else:
            status = BillStatus.UNPAID
        conn.execute(
            """
            UPDATE bills
            SET paid_amount = ?, balance_amount = ?, payment_status = ?, payment_date = ?,
                updated_at = ?
            WHERE id = ?
        """,
            (
                _money(paid),
                _money(balance),
                status.value,
                bill.payment_date.isoformat()
                if status == BillStatus.PAID and bill.payment_date
                else None,
                _now(),
                bill_id,
            ),
        )
        logger.info(
            "Reversed %s on bill %s (%s -> %s)",
            amount,
            bill.bill_number,
            bill.payment_status.value,
            status.value,
        )

    def set_invoice_status(self, company_id: int, invoice_id: int, status: InvoiceStatus) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE invoices SET status = ?, updated_at = ? WHERE id = ? AND company_id = ?",
                (status.value, _now(), invoice_id, company_id),
            )

    def set_bill_status(self, company_id: int, bill_id: int, status: BillStatus) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE bills SET payment_status = ?, updated_at = ? "
                "WHERE id = ? AND company_id = ?",
                (status.value, _now(), bill_id, company_id),
            )

    # Subscription / recurring expense methods

    def upsert_subscription(
        self,
        company_id: int,
        vendor_key: str,
        name: str,
        amount: Decimal,
        billing_cycle: Frequency,
        billed_on: date,
        category: Category,
    ) -> tuple[int, bool]:
        """Insert or update a subscription keyed by vendor_key.

        Returns:
            (subscription id, created)
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            existing = conn.execute(
                "SELECT id FROM subscriptions WHERE company_id = ? AND vendor_key = ?",
                (company_id, vendor_key),
            ).fetchone()
            if existing:
                conn.execute(
                    """
                    UPDATE subscriptions
                    SET amount = ?, billing_cycle = ?, last_billed_date = ?, status = 'active',
                        updated_at = ?
                    WHERE id = ?
                """,
                    (_money(amount), billing_cycle.value, billed_on.isoformat(), now, existing["id"]),
                )
                return existing["id"], False

            cursor = conn.execute(
                """
                INSERT INTO subscriptions
                (company_id, vendor_key, name, amount, billing_cycle, start_date,
                 last_billed_date, status, category, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)
            """,
                (
                    company_id,
                    vendor_key,
                    name,
                    _money(amount),
                    billing_cycle.value,
                    billed_on.isoformat(),
                    billed_on.isoformat(),
                    category.value,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid, True

    def upsert_recurring_expense(
        self,
        company_id: int,
        vendor_key: str,
        description: str,
        amount: Decimal,
        frequency: Frequency,
        category: Category,
        paid_on: date,
    ) -> tuple[int, bool]:
        """Insert or update a recurring expense keyed by vendor_key.

        Returns:
            (recurring expense id, created)
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            existing = conn.execute(
                "SELECT id FROM recurring_expenses WHERE company_id = ? AND vendor_key = ?",
                (company_id, vendor_key),
            ).fetchone()
            if existing:
                conn.execute(
                    """
                    UPDATE recurring_expenses
                    SET amount = ?, frequency = ?, last_payment_date = ?, status = 'active',
                        updated_at = ?
                    WHERE id = ?
                """,
                    (_money(amount), frequency.value, paid_on.isoformat(), now, existing["id"]),
                )
                return existing["id"], False

            cursor = conn.execute(
                """
                INSERT INTO recurring_expenses
                (company_id, vendor_key, description, amount, frequency, category, start_date,
                 last_payment_date, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
            """,
                (
                    company_id,
                    vendor_key,
                    description,
                    _money(amount),
                    frequency.value,
                    category.value,
                    paid_on.isoformat(),
                    paid_on.isoformat(),
                    now,
                    now,
                ),
            )
            return cursor.lastrowid, True

    def list_subscriptions(self, company_id: int) -> list[Subscription]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE company_id = ? ORDER BY id", (company_id,)
            ).fetchall()
            return [Subscription.from_row(row) for row in rows]

    def list_recurring_expenses(self, company_id: int) -> list[RecurringExpense]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM recurring_expenses WHERE company_id = ? ORDER BY id", (company_id,)
            ).fetchall()
            return [RecurringExpense.from_row(row) for row in rows]

    # Budget / alert methods

    def set_budget(self, company_id: int, category: Category, monthly_limit: Decimal) -> int:
        """Create or replace the active budget of a category."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO budgets (company_id, category, monthly_limit, is_active,
                                     created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(company_id, category) DO UPDATE SET
                    monthly_limit = excluded.monthly_limit,
                    is_active = 1,
                    updated_at = excluded.updated_at
            """,
                (company_id, category.value, _money(monthly_limit), now, now),
            )
            row = conn.execute(
                "SELECT id FROM budgets WHERE company_id = ? AND category = ?",
                (company_id, category.value),
            ).fetchone()
            return row["id"]

    def active_budgets(self, company_id: int) -> list[Budget]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM budgets WHERE company_id = ? AND is_active = 1 ORDER BY id",
                (company_id,),
            ).fetchall()
            return [Budget.from_row(row) for row in rows]

    def create_alert(
        self,
        company_id: int,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        category: str | None = None,
        threshold: int | None = None,
        month_key: str | None = None,
    ) -> int | None:
        """Persist an alert.

        Budget alerts are unique on (company_id, category, threshold,
        month_key); a second insert for the same key is ignored.

        Returns:
            New alert id, or None if an alert with the same key exists.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO alerts
                (company_id, alert_type, severity, message, category, threshold, month_key,
                 is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
                (
                    company_id,
                    alert_type.value,
                    severity.value,
                    message,
                    category,
                    threshold,
                    month_key,
                    _now(),
                ),
            )
            return cursor.lastrowid if cursor.rowcount > 0 else None

    def find_alert_containing(
        self,
        company_id: int,
        needle: str,
        severity: Severity | None = None,
        alert_type: AlertType | None = None,
    ) -> Alert | None:
        """First alert whose message contains needle."""
        query = "SELECT * FROM alerts WHERE company_id = ? AND instr(message, ?) > 0"
        params: list[Any] = [company_id, needle]
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        if alert_type is not None:
            query += " AND alert_type = ?"
            params.append(alert_type.value)
        query += " ORDER BY id LIMIT 1"
        with self._transaction() as conn:
            row = conn.execute(query, params).fetchone()
            return Alert.from_row(row) if row else None

    def list_alerts(
        self, company_id: int, alert_type: AlertType | None = None, unread_only: bool = False
    ) -> list[Alert]:
        query = "SELECT * FROM alerts WHERE company_id = ?"
        params: list[Any] = [company_id]
        if alert_type is not None:
            query += " AND alert_type = ?"
            params.append(alert_type.value)
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY id"
        with self._transaction() as conn:
            return [Alert.from_row(row) for row in conn.execute(query, params).fetchall()]

    # Import run methods

    def record_import_run(
        self,
        company_id: int,
        state: str,
        started_at: str,
        summary: dict[str, Any],
        errors: list[str],
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO import_runs
                (company_id, state, started_at, finished_at, summary_json, errors_json)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (company_id, state, started_at, _now(), json.dumps(summary), json.dumps(errors)),
            )
            return cursor.lastrowid

    def list_import_runs(self, company_id: int, limit: int = 20) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM import_runs WHERE company_id = ?
                ORDER BY id DESC LIMIT ?
            """,
                (company_id, limit),
            ).fetchall()
            return [
                {
                    "id": row["id"],
                    "state": row["state"],
                    "started_at": row["started_at"],
                    "finished_at": row["finished_at"],
                    "summary": json.loads(row["summary_json"] or "{}"),
                    "errors": json.loads(row["errors_json"] or "[]"),
                }
                for row in rows
            ]
