"""Invoicing repository - schema, entities and the transactional unit of work."""
import logging
import re
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Iterator

log = logging.getLogger(__name__)

BASE_PLATFORM_FEE_CENTS = 50
MAX_PLATFORM_FEE_CENTS = 1500
PERCENT_PLATFORM_FEE = Decimal("1.5")

OWNER_INVOICE = "invoice"
OWNER_EXPENSE = "expense"


class InvoiceStatus:
    """Invoice status values."""
    RECEIVED = "received"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class User:
    id: str
    legal_name: str
    email: str
    street_address: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    country_code: str | None
    created_at: str


@dataclass
class Company:
    id: str
    name: str
    equity_enabled: bool
    fmv_per_share_usd: str | None
    created_at: str


@dataclass
class Contractor:
    """A user working for a company."""
    id: str
    user_id: str
    company_id: str
    pay_rate_in_subunits: int
    hourly: bool
    created_at: str


@dataclass
class ExpenseCategory:
    id: int
    company_id: str
    name: str


@dataclass
class EquityGrant:
    id: str
    contractor_id: str
    year: int
    share_price_usd: str


@dataclass
class Attachment:
    id: str
    owner_type: str
    owner_id: str
    filename: str
    content_type: str
    byte_size: int
    storage_path: str
    sha256: str
    created_at: str
    purge_requested_at: str | None = None

    @property
    def active(self) -> bool:
        return self.purge_requested_at is None


@dataclass
class InvoiceLineItem:
    id: str | None
    description: str | None
    quantity: int
    pay_rate_in_subunits: int
    hourly: bool = False
    marked_for_removal: bool = False

    @property
    def total_amount_cents(self) -> int:
        """Hourly quantities are minutes; partial cents round up."""
        if self.hourly:
            return -(-(self.pay_rate_in_subunits * self.quantity) // 60)
        return self.pay_rate_in_subunits * self.quantity


@dataclass
class InvoiceExpense:
    id: str | None
    description: str | None
    expense_category_id: int | None
    total_amount_in_cents: int
    attachment: Attachment | None = None
    marked_for_removal: bool = False


@dataclass
class Invoice:
    """Invoice aggregate root. Children stay in memory until save_invoice()."""
    id: str
    user_id: str
    company_id: str
    company_worker_id: str
    status: str = InvoiceStatus.RECEIVED
    invoice_date: str | None = None
    invoice_number: str | None = None
    notes: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country_code: str | None = None
    created_by_user_id: str | None = None
    total_amount_in_usd_cents: int = 0
    cash_amount_in_cents: int = 0
    equity_amount_in_cents: int = 0
    equity_amount_in_options: int = 0
    equity_percentage: int = 0
    platform_fee_cents: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    line_items: list[InvoiceLineItem] = field(default_factory=list)
    expenses: list[InvoiceExpense] = field(default_factory=list)
    attachment: Attachment | None = None
    persisted: bool = False

    def calculate_platform_fee_cents(self) -> int:
        fee = BASE_PLATFORM_FEE_CENTS + Decimal(self.total_amount_in_usd_cents) * PERCENT_PLATFORM_FEE / 100
        fee = min(fee, Decimal(MAX_PLATFORM_FEE_CENTS))
        return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


_INVOICE_COLUMNS = (
    "id, user_id, company_id, company_worker_id, status, invoice_date, invoice_number, notes, "
    "street_address, city, state, zip_code, country_code, created_by_user_id, "
    "total_amount_in_usd_cents, cash_amount_in_cents, equity_amount_in_cents, "
    "equity_amount_in_options, equity_percentage, platform_fee_cents, created_at, updated_at"
)

_ATTACHMENT_COLUMNS = (
    "id, owner_type, owner_id, filename, content_type, byte_size, storage_path, sha256, "
    "created_at, purge_requested_at"
)


def next_invoice_number(last_number: str | None) -> str:
    """Increment the last run of digits, keeping prefix, suffix and zero padding."""
    if not last_number:
        return "1"
    matches = list(re.finditer(r"\d+", last_number))
    if not matches:
        return "1"
    last = matches[-1]
    digits = last.group()
    incremented = str(int(digits) + 1).zfill(len(digits))
    return last_number[:last.start()] + incremented + last_number[last.end():]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _line_item_from_row(r) -> InvoiceLineItem:
    return InvoiceLineItem(r[0], r[1], r[2], r[3], bool(r[4]))


def _expense_from_row(r) -> InvoiceExpense:
    return InvoiceExpense(r[0], r[1], r[2], r[3])


def _load_attachments(conn, owner_type: str, owner_id: str, active_only: bool) -> list[Attachment]:
    sql = f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE owner_type = ? AND owner_id = ?"
    if active_only:
        sql += " AND purge_requested_at IS NULL"
    sql += " ORDER BY created_at ASC, rowid ASC"
    return [Attachment(*r) for r in conn.execute(sql, (owner_type, owner_id)).fetchall()]


def _load_invoice(conn, invoice_id: str) -> Invoice | None:
    row = conn.execute(
        f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = ?", (invoice_id,),
    ).fetchone()
    if not row:
        return None
    invoice = Invoice(*row, persisted=True)
    invoice.line_items = [
        _line_item_from_row(r) for r in conn.execute(
            "SELECT id, description, quantity, pay_rate_in_subunits, hourly "
            "FROM invoice_line_items WHERE invoice_id = ? ORDER BY position ASC, rowid ASC",
            (invoice_id,),
        ).fetchall()
    ]
    invoice.expenses = [
        _expense_from_row(r) for r in conn.execute(
            "SELECT id, description, expense_category_id, total_amount_in_cents "
            "FROM invoice_expenses WHERE invoice_id = ? ORDER BY position ASC, rowid ASC",
            (invoice_id,),
        ).fetchall()
    ]
    for expense in invoice.expenses:
        active = _load_attachments(conn, OWNER_EXPENSE, expense.id, active_only=True)
        expense.attachment = active[-1] if active else None
    active = _load_attachments(conn, OWNER_INVOICE, invoice_id, active_only=True)
    invoice.attachment = active[-1] if active else None
    return invoice


class UnitOfWork:
    """
    One open write transaction.

    Changes become visible only when the surrounding InvoiceRepository.transaction()
    block exits without rollback() having been called.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.rolled_back = False
        self.committed = False
        self._rollback_hooks: list[Callable[[], None]] = []

    def on_rollback(self, hook: Callable[[], None]) -> None:
        """Register cleanup for side effects outside the database (staged files)."""
        self._rollback_hooks.append(hook)

    def commit(self) -> None:
        self.conn.execute("COMMIT")
        self.committed = True
        self._rollback_hooks.clear()

    def rollback(self) -> None:
        """Explicit abort: discard every change made in this transaction."""
        if self.rolled_back or self.committed:
            return
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")
        self.rolled_back = True
        hooks, self._rollback_hooks = self._rollback_hooks, []
        for hook in reversed(hooks):
            hook()

    # ── Reads inside the transaction ──

    def load_invoice(self, invoice_id: str) -> Invoice | None:
        return _load_invoice(self.conn, invoice_id)

    def recommended_invoice_number(self, user_id: str, company_id: str) -> str:
        row = self.conn.execute(
            "SELECT invoice_number FROM invoices WHERE user_id = ? AND company_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (user_id, company_id),
        ).fetchone()
        return next_invoice_number(row[0] if row else None)

    def expense_category_exists(self, company_id: str, category_id: int | None) -> bool:
        if category_id is None:
            return False
        row = self.conn.execute(
            "SELECT 1 FROM expense_categories WHERE id = ? AND company_id = ?",
            (category_id, company_id),
        ).fetchone()
        return row is not None

    # ── Attachments ──

    def active_attachments(self, owner_type: str, owner_id: str) -> list[Attachment]:
        return _load_attachments(self.conn, owner_type, owner_id, active_only=True)

    def insert_attachment(self, attachment: Attachment) -> None:
        self.conn.execute(
            f"INSERT INTO attachments ({_ATTACHMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (attachment.id, attachment.owner_type, attachment.owner_id, attachment.filename,
             attachment.content_type, attachment.byte_size, attachment.storage_path,
             attachment.sha256, attachment.created_at, attachment.purge_requested_at),
        )

    def request_purge(self, owner_type: str, owner_id: str) -> list[Attachment]:
        """Mark the owner's active attachments for deferred removal."""
        current = self.active_attachments(owner_type, owner_id)
        now = _now()
        for attachment in current:
            self.conn.execute(
                "UPDATE attachments SET purge_requested_at = ? WHERE id = ?", (now, attachment.id),
            )
            attachment.purge_requested_at = now
        return current

    # ── Aggregate persistence ──

    def validate_invoice(self, invoice: Invoice) -> list[str]:
        errors = []
        if not invoice.invoice_number or not invoice.invoice_number.strip():
            errors.append("Invoice number can't be blank")
        if not invoice.invoice_date:
            errors.append("Invoice date can't be blank")
        if invoice.total_amount_in_usd_cents <= 0:
            errors.append("Total amount in cents must be greater than 0")
        for item in invoice.line_items:
            if item.marked_for_removal:
                continue
            if not item.description or not item.description.strip():
                errors.append("Line item description can't be blank")
            if item.quantity < 0:
                errors.append("Line item quantity must be greater than or equal to 0")
            if item.pay_rate_in_subunits < 0:
                errors.append("Line item rate must be greater than or equal to 0")
        for expense in invoice.expenses:
            if expense.marked_for_removal:
                continue
            if not expense.description or not expense.description.strip():
                errors.append("Expense description can't be blank")
            if not self.expense_category_exists(invoice.company_id, expense.expense_category_id):
                errors.append("Expense category must exist")
            if expense.total_amount_in_cents <= 0:
                errors.append("Expense total amount in cents must be greater than 0")
        # Keep first occurrence order, drop repeats
        return list(dict.fromkeys(errors))

    def save_invoice(self, invoice: Invoice) -> list[str]:
        """
        Validate and write the aggregate.

        Returns validation messages; nothing is written when any are returned.
        Children marked for removal are deleted and dropped from the aggregate.
        """
        errors = self.validate_invoice(invoice)
        if errors:
            return errors

        now = _now()
        invoice.updated_at = now
        values = (
            invoice.user_id, invoice.company_id, invoice.company_worker_id, invoice.status,
            invoice.invoice_date, invoice.invoice_number, invoice.notes,
            invoice.street_address, invoice.city, invoice.state, invoice.zip_code,
            invoice.country_code, invoice.created_by_user_id,
            invoice.total_amount_in_usd_cents, invoice.cash_amount_in_cents,
            invoice.equity_amount_in_cents, invoice.equity_amount_in_options,
            invoice.equity_percentage, invoice.platform_fee_cents,
        )
        if invoice.persisted:
            self.conn.execute(
                "UPDATE invoices SET user_id = ?, company_id = ?, company_worker_id = ?, status = ?, "
                "invoice_date = ?, invoice_number = ?, notes = ?, street_address = ?, city = ?, "
                "state = ?, zip_code = ?, country_code = ?, created_by_user_id = ?, "
                "total_amount_in_usd_cents = ?, cash_amount_in_cents = ?, equity_amount_in_cents = ?, "
                "equity_amount_in_options = ?, equity_percentage = ?, platform_fee_cents = ?, "
                "updated_at = ? WHERE id = ?",
                (*values, now, invoice.id),
            )
        else:
            invoice.created_at = now
            self.conn.execute(
                f"INSERT INTO invoices ({_INVOICE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (invoice.id, *values, now, now),
            )

        kept_items = []
        for position, item in enumerate(invoice.line_items):
            if item.marked_for_removal:
                self.conn.execute("DELETE FROM invoice_line_items WHERE id = ?", (item.id,))
                continue
            self.conn.execute(
                "INSERT INTO invoice_line_items "
                "(id, invoice_id, description, quantity, pay_rate_in_subunits, hourly, position) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET description = excluded.description, "
                "quantity = excluded.quantity, pay_rate_in_subunits = excluded.pay_rate_in_subunits, "
                "hourly = excluded.hourly, position = excluded.position",
                (item.id, invoice.id, item.description, item.quantity,
                 item.pay_rate_in_subunits, int(item.hourly), position),
            )
            kept_items.append(item)

        kept_expenses = []
        for position, expense in enumerate(invoice.expenses):
            if expense.marked_for_removal:
                self.conn.execute("DELETE FROM invoice_expenses WHERE id = ?", (expense.id,))
                self.request_purge(OWNER_EXPENSE, expense.id)
                continue
            self.conn.execute(
                "INSERT INTO invoice_expenses "
                "(id, invoice_id, description, expense_category_id, total_amount_in_cents, position) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET description = excluded.description, "
                "expense_category_id = excluded.expense_category_id, "
                "total_amount_in_cents = excluded.total_amount_in_cents, position = excluded.position",
                (expense.id, invoice.id, expense.description, expense.expense_category_id,
                 expense.total_amount_in_cents, position),
            )
            kept_expenses.append(expense)

        invoice.line_items = kept_items
        invoice.expenses = kept_expenses
        invoice.persisted = True
        return []


class InvoiceRepository:
    """Repository for invoices and their reference data. Uses a single SQLite file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    legal_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    street_address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    country_code TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS companies (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    equity_enabled INTEGER NOT NULL DEFAULT 0,
                    fmv_per_share_usd TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS company_workers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    company_id TEXT NOT NULL,
                    pay_rate_in_subunits INTEGER NOT NULL DEFAULT 0,
                    hourly INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, company_id),
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    FOREIGN KEY (company_id) REFERENCES companies(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS expense_categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    UNIQUE (company_id, name),
                    FOREIGN KEY (company_id) REFERENCES companies(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS equity_allocations (
                    company_worker_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    equity_percentage INTEGER NOT NULL,
                    PRIMARY KEY (company_worker_id, year),
                    FOREIGN KEY (company_worker_id) REFERENCES company_workers(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS equity_grants (
                    id TEXT PRIMARY KEY,
                    company_worker_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    share_price_usd TEXT NOT NULL,
                    FOREIGN KEY (company_worker_id) REFERENCES company_workers(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    company_id TEXT NOT NULL,
                    company_worker_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'received',
                    invoice_date TEXT NOT NULL,
                    invoice_number TEXT NOT NULL,
                    notes TEXT,
                    street_address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    country_code TEXT,
                    created_by_user_id TEXT,
                    total_amount_in_usd_cents INTEGER NOT NULL DEFAULT 0,
                    cash_amount_in_cents INTEGER NOT NULL DEFAULT 0,
                    equity_amount_in_cents INTEGER NOT NULL DEFAULT 0,
                    equity_amount_in_options INTEGER NOT NULL DEFAULT 0,
                    equity_percentage INTEGER NOT NULL DEFAULT 0,
                    platform_fee_cents INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    FOREIGN KEY (company_id) REFERENCES companies(id),
                    FOREIGN KEY (company_worker_id) REFERENCES company_workers(id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_invoices_owner
                ON invoices(user_id, company_id)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS invoice_line_items (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    pay_rate_in_subunits INTEGER NOT NULL,
                    hourly INTEGER NOT NULL DEFAULT 0,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS invoice_expenses (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    expense_category_id INTEGER NOT NULL,
                    total_amount_in_cents INTEGER NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE,
                    FOREIGN KEY (expense_category_id) REFERENCES expense_categories(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS attachments (
                    id TEXT PRIMARY KEY,
                    owner_type TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    byte_size INTEGER NOT NULL,
                    storage_path TEXT NOT NULL,
                    sha256 TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    purge_requested_at TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_attachments_owner
                ON attachments(owner_type, owner_id)
            """)
            conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """
        Open a write transaction.

        Commits on normal exit unless rollback() was called; rolls back and
        re-raises on any exception.
        """
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        uow = UnitOfWork(conn)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield uow
            if not uow.rolled_back:
                uow.commit()
        except Exception as e:
            log.warning("Transaction failed, rolling back: %s", e)
            uow.rollback()
            raise
        finally:
            conn.close()

    # ── Users, companies, contractors ──

    def create_user(
        self,
        legal_name: str,
        email: str,
        street_address: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip_code: str | None = None,
        country_code: str | None = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO users (id, legal_name, email, street_address, city, state, zip_code, "
                "country_code, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (user_id, legal_name, email, street_address, city, state, zip_code, country_code, _now()),
            )
            conn.commit()
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> User | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, legal_name, email, street_address, city, state, zip_code, country_code, "
                "created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            return User(*row) if row else None

    def create_company(
        self, name: str, equity_enabled: bool = False, fmv_per_share_usd: str | None = None,
    ) -> Company:
        company_id = str(uuid.uuid4())
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO companies (id, name, equity_enabled, fmv_per_share_usd, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (company_id, name, int(equity_enabled), fmv_per_share_usd, _now()),
            )
            conn.commit()
        return self.get_company(company_id)

    def get_company(self, company_id: str) -> Company | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, name, equity_enabled, fmv_per_share_usd, created_at FROM companies WHERE id = ?",
                (company_id,),
            ).fetchone()
            return Company(row[0], row[1], bool(row[2]), row[3], row[4]) if row else None

    def update_company(self, company_id: str, **kwargs) -> Company | None:
        allowed = {"name", "equity_enabled", "fmv_per_share_usd"}
        updates = []
        params = []
        for k, v in kwargs.items():
            if k in allowed:
                if k == "equity_enabled":
                    v = int(v)
                updates.append(f"{k} = ?")
                params.append(v)
        if not updates:
            return self.get_company(company_id)
        params.append(company_id)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(f"UPDATE companies SET {', '.join(updates)} WHERE id = ?", params)
            conn.commit()
        return self.get_company(company_id)

    def create_contractor(
        self, user_id: str, company_id: str, pay_rate_in_subunits: int = 0, hourly: bool = True,
    ) -> Contractor:
        contractor_id = str(uuid.uuid4())
        with sqlite3.connect(self.db_path) as conn:
            try:
                conn.execute(
                    "INSERT INTO company_workers (id, user_id, company_id, pay_rate_in_subunits, hourly, "
                    "created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (contractor_id, user_id, company_id, pay_rate_in_subunits, int(hourly), _now()),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValueError("User is already a contractor of this company")
        return self.get_contractor(contractor_id)

    def get_contractor(self, contractor_id: str) -> Contractor | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, user_id, company_id, pay_rate_in_subunits, hourly, created_at "
                "FROM company_workers WHERE id = ?",
                (contractor_id,),
            ).fetchone()
            return Contractor(row[0], row[1], row[2], row[3], bool(row[4]), row[5]) if row else None

    def find_contractor(self, user_id: str, company_id: str) -> Contractor | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id FROM company_workers WHERE user_id = ? AND company_id = ?",
                (user_id, company_id),
            ).fetchone()
        return self.get_contractor(row[0]) if row else None

    # ── Expense categories ──

    def create_expense_category(self, company_id: str, name: str) -> ExpenseCategory:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO expense_categories (company_id, name) VALUES (?, ?)", (company_id, name),
            )
            conn.commit()
            return ExpenseCategory(cursor.lastrowid, company_id, name)

    def list_expense_categories(self, company_id: str) -> list[ExpenseCategory]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, company_id, name FROM expense_categories WHERE company_id = ? ORDER BY id ASC",
                (company_id,),
            ).fetchall()
            return [ExpenseCategory(*r) for r in rows]

    # ── Equity ──

    def set_equity_allocation(self, contractor_id: str, year: int, equity_percentage: int) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO equity_allocations (company_worker_id, year, equity_percentage) VALUES (?, ?, ?) "
                "ON CONFLICT(company_worker_id, year) DO UPDATE SET equity_percentage = excluded.equity_percentage",
                (contractor_id, year, equity_percentage),
            )
            conn.commit()

    def get_equity_percentage(self, contractor_id: str, year: int) -> int | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT equity_percentage FROM equity_allocations WHERE company_worker_id = ? AND year = ?",
                (contractor_id, year),
            ).fetchone()
            return row[0] if row else None

    def create_equity_grant(self, contractor_id: str, year: int, share_price_usd: str) -> EquityGrant:
        grant_id = str(uuid.uuid4())
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO equity_grants (id, company_worker_id, year, share_price_usd) VALUES (?, ?, ?, ?)",
                (grant_id, contractor_id, year, str(share_price_usd)),
            )
            conn.commit()
        return EquityGrant(grant_id, contractor_id, year, str(share_price_usd))

    def get_equity_grant(self, contractor_id: str, year: int) -> EquityGrant | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, company_worker_id, year, share_price_usd FROM equity_grants "
                "WHERE company_worker_id = ? AND year = ? ORDER BY rowid DESC LIMIT 1",
                (contractor_id, year),
            ).fetchone()
            return EquityGrant(*row) if row else None

    # ── Invoices ──

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with sqlite3.connect(self.db_path) as conn:
            return _load_invoice(conn, invoice_id)

    def list_invoices(self, user_id: str, company_id: str) -> list[Invoice]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM invoices WHERE user_id = ? AND company_id = ? "
                "ORDER BY invoice_date DESC, created_at DESC",
                (user_id, company_id),
            ).fetchall()
            return [_load_invoice(conn, r[0]) for r in rows]

    def count_invoices(self, user_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM invoices"
        params: list = []
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute(sql, params).fetchone()[0]

    def count_line_items(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM invoice_line_items").fetchone()[0]

    def count_expenses(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM invoice_expenses").fetchone()[0]

    # ── Attachments ──

    def list_attachments(self, owner_type: str, owner_id: str, active_only: bool = False) -> list[Attachment]:
        with sqlite3.connect(self.db_path) as conn:
            return _load_attachments(conn, owner_type, owner_id, active_only)

    def list_purge_requested(self) -> list[Attachment]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments "
                "WHERE purge_requested_at IS NOT NULL ORDER BY purge_requested_at ASC",
            ).fetchall()
            return [Attachment(*r) for r in rows]

    def count_attachments(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM attachments").fetchone()[0]

    def delete_attachment(self, attachment_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            deleted = conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,)).rowcount
            conn.commit()
            return deleted > 0
