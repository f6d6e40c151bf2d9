"""
Create-or-update of an invoice aggregate as one transaction.

InvoiceService.process() reconciles line items and expenses against the
stored invoice, asks the equity calculator for the settlement split, swaps
in the invoice PDF and saves. Any failing step rolls the whole edit back and
comes back as InvoiceResult(success=False, error_message=...).
"""
import logging
import uuid
from dataclasses import dataclass, field, fields
from datetime import date
from typing import Any, Callable, Mapping

from src.invoicing.services.attachments import normalize_upload, replace_invoice_pdf
from src.invoicing.services.collection_diff import CollectionDiff, reconcile_children
from src.invoicing.services.equity_calculator import InvoiceEquityCalculator
from src.invoicing.storage.attachment_store import AttachmentStore, UploadedFile
from src.invoicing.storage.invoice_repository import (
    OWNER_EXPENSE,
    Company,
    Contractor,
    Invoice,
    InvoiceExpense,
    InvoiceLineItem,
    InvoiceRepository,
    InvoiceStatus,
    UnitOfWork,
    User,
)
from src.shared.errors import AppErrors, to_sentence

log = logging.getLogger(__name__)


# ── Request / result types ──

@dataclass
class LineItemEdit:
    """None means the field was not sent and is left as it is."""
    id: str | None = None
    description: str | None = None
    quantity: int | None = None
    pay_rate_in_subunits: int | None = None
    hourly: bool | None = None


@dataclass
class ExpenseEdit:
    id: str | None = None
    description: str | None = None
    expense_category_id: int | None = None
    total_amount_in_cents: int | None = None
    attachment: Any = None


@dataclass
class InvoiceEdit:
    invoice_date: date | None = None
    invoice_number: str | None = None
    notes: str | None = None
    equity_percentage: int | None = None


@dataclass
class InvoiceEditRequest:
    invoice: InvoiceEdit = field(default_factory=InvoiceEdit)
    line_items: list[LineItemEdit] = field(default_factory=list)
    expenses: list[ExpenseEdit] = field(default_factory=list)
    invoice_pdf: Any = None

    @classmethod
    def from_params(cls, params: Mapping, files: Mapping | None = None) -> "InvoiceEditRequest":
        """
        Build a request from decoded params.

        Expense "attachment" values naming a key of `files` are replaced by that file.
        Raises ValueError on values that cannot be coerced.
        """
        files = files or {}
        params = _to_object(params, "payload")
        header = _to_object(params.get("invoice") or {}, "invoice")
        invoice = InvoiceEdit(
            invoice_date=_to_date(header.get("invoice_date")),
            invoice_number=_to_text(header.get("invoice_number"), "invoice_number"),
            notes=_to_text(header.get("notes"), "notes"),
            equity_percentage=_to_int(header.get("equity_percentage"), "equity_percentage"),
        )
        line_items = [
            LineItemEdit(
                id=_to_text(raw.get("id"), "line item id") or None,
                description=_to_text(raw.get("description"), "description"),
                quantity=_to_int(raw.get("quantity"), "quantity"),
                pay_rate_in_subunits=_to_int(raw.get("pay_rate_in_subunits"), "pay_rate_in_subunits"),
                hourly=_to_bool(raw.get("hourly")),
            )
            for raw in _to_objects(params.get("invoice_line_items"), "invoice_line_items")
        ]
        expenses = []
        for raw in _to_objects(params.get("invoice_expenses"), "invoice_expenses"):
            attachment = raw.get("attachment")
            if isinstance(attachment, str) and attachment in files:
                attachment = files[attachment]
            expenses.append(ExpenseEdit(
                id=_to_text(raw.get("id"), "expense id") or None,
                description=_to_text(raw.get("description"), "description"),
                expense_category_id=_to_int(raw.get("expense_category_id"), "expense_category_id"),
                total_amount_in_cents=_to_int(raw.get("total_amount_in_cents"), "total_amount_in_cents"),
                attachment=attachment,
            ))
        return cls(
            invoice=invoice,
            line_items=line_items,
            expenses=expenses,
            invoice_pdf=files.get("invoice_pdf", params.get("invoice_pdf")),
        )


@dataclass
class ActingContext:
    """Who is submitting the invoice, passed in explicitly."""
    user: User
    company: Company
    contractor: Contractor


@dataclass
class InvoiceResult:
    success: bool
    invoice: Invoice | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, invoice: Invoice) -> "InvoiceResult":
        return cls(success=True, invoice=invoice)

    @classmethod
    def fail(cls, message: str) -> "InvoiceResult":
        return cls(success=False, error_message=message)


def _to_object(value, name: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ValueError(f"{name} must be an object")
    return value


def _to_objects(value, name: str) -> list[Mapping]:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list of objects")
    return [_to_object(raw, f"each entry of {name}") for raw in value]


def _to_text(value, name: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise ValueError(f"{name} must be text")


def _to_int(value, name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a whole number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a whole number")


def _to_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValueError("invoice_date must be an ISO date (YYYY-MM-DD)")


def _to_bool(value) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _assign(target, edit, exclude: tuple[str, ...] = ()) -> None:
    """Copy every field the edit actually carries onto target."""
    for f in fields(edit):
        if f.name == "id" or f.name in exclude:
            continue
        value = getattr(edit, f.name)
        if value is not None:
            setattr(target, f.name, value)


# ── Orchestrator ──

class InvoiceService:
    """Creates or updates invoices atomically."""

    def __init__(
        self,
        repository: InvoiceRepository,
        attachment_store: AttachmentStore,
        calculator=None,
        today: Callable[[], date] = date.today,
    ):
        self.repository = repository
        self.attachment_store = attachment_store
        self.calculator = calculator or InvoiceEquityCalculator(repository)
        self.today = today

    def process(
        self,
        request: InvoiceEditRequest,
        context: ActingContext,
        invoice_id: str | None = None,
    ) -> InvoiceResult:
        with self.repository.transaction() as uow:
            invoice = self._locate_invoice(uow, context, invoice_id)
            if invoice is None:
                error = AppErrors.INVOICE_NOT_FOUND
            else:
                error = self._reconcile(uow, invoice, request, context)
            if error is not None:
                uow.rollback()
                log.info("Invoice edit rolled back (invoice=%s): %s", invoice_id or "new", error)
                return InvoiceResult.fail(error)

        log.info(
            "Invoice %s saved: total=%d cash=%d equity=%d",
            invoice.id, invoice.total_amount_in_usd_cents,
            invoice.cash_amount_in_cents, invoice.equity_amount_in_cents,
        )
        return InvoiceResult.ok(self.repository.get_invoice(invoice.id))

    def _locate_invoice(self, uow: UnitOfWork, context: ActingContext, invoice_id: str | None) -> Invoice | None:
        if invoice_id is None:
            return Invoice(
                id=str(uuid.uuid4()),
                user_id=context.user.id,
                company_id=context.company.id,
                company_worker_id=context.contractor.id,
            )
        invoice = uow.load_invoice(invoice_id)
        if invoice is None or invoice.company_id != context.company.id:
            return None
        return invoice

    def _reconcile(
        self, uow: UnitOfWork, invoice: Invoice, request: InvoiceEditRequest, context: ActingContext,
    ) -> str | None:
        self._assign_header(uow, invoice, request.invoice, context)
        invoice.total_amount_in_usd_cents = 0

        line_items = self._reconcile_line_items(invoice, request.line_items)
        invoice.total_amount_in_usd_cents += sum(item.total_amount_cents for item in line_items.kept)

        expenses = self._reconcile_expenses(uow, invoice, request.expenses)
        expenses_in_cents = sum(expense.total_amount_in_cents for expense in expenses.kept)
        invoice.total_amount_in_usd_cents += expenses_in_cents

        services_in_cents = invoice.total_amount_in_usd_cents - expenses_in_cents
        invoice_year = date.fromisoformat(invoice.invoice_date).year
        split = self.calculator.calculate(
            contractor=context.contractor,
            company=context.company,
            service_amount_cents=services_in_cents,
            invoice_year=invoice_year,
        )
        if split is None:
            log.warning("Equity calculation failed for invoice %s", invoice.id)
            return AppErrors.SETTLEMENT_UNAVAILABLE

        invoice.equity_percentage = split.equity_percentage
        invoice.cash_amount_in_cents = invoice.total_amount_in_usd_cents - split.equity_cents
        invoice.equity_amount_in_cents = split.equity_cents
        invoice.equity_amount_in_options = split.equity_options
        invoice.platform_fee_cents = invoice.calculate_platform_fee_cents()

        pdf_error = replace_invoice_pdf(uow, self.attachment_store, invoice, request.invoice_pdf)
        if pdf_error:
            return pdf_error

        errors = uow.save_invoice(invoice)
        if errors:
            return to_sentence(errors)
        return None

    def _assign_header(self, uow: UnitOfWork, invoice: Invoice, edit: InvoiceEdit, context: ActingContext) -> None:
        user = context.user
        invoice.status = InvoiceStatus.RECEIVED
        invoice.invoice_date = self.today().isoformat()
        invoice.street_address = user.street_address
        invoice.city = user.city
        invoice.state = user.state
        invoice.zip_code = user.zip_code
        invoice.country_code = user.country_code
        if not invoice.persisted:
            invoice.invoice_number = uow.recommended_invoice_number(invoice.user_id, invoice.company_id)
        invoice.created_by_user_id = user.id

        if edit.invoice_date is not None:
            invoice.invoice_date = edit.invoice_date.isoformat()
        if edit.invoice_number is not None:
            invoice.invoice_number = edit.invoice_number
        if edit.notes is not None:
            invoice.notes = edit.notes
        if edit.equity_percentage is not None:
            invoice.equity_percentage = edit.equity_percentage

    def _reconcile_line_items(self, invoice: Invoice, edits: list[LineItemEdit]) -> CollectionDiff:
        def build(edit: LineItemEdit) -> InvoiceLineItem:
            item = InvoiceLineItem(id=str(uuid.uuid4()), description=None, quantity=0, pay_rate_in_subunits=0)
            _assign(item, edit)
            return item

        diff = reconcile_children(invoice.line_items, edits, build=build, update=_assign)
        invoice.line_items = diff.children
        return diff

    def _reconcile_expenses(self, uow: UnitOfWork, invoice: Invoice, edits: list[ExpenseEdit]) -> CollectionDiff:
        uploads = {}

        def build(edit: ExpenseEdit) -> InvoiceExpense:
            expense = InvoiceExpense(
                id=str(uuid.uuid4()), description=None, expense_category_id=None, total_amount_in_cents=0,
            )
            _assign(expense, edit, exclude=("attachment",))
            uploads[expense.id] = edit.attachment
            return expense

        def update(expense: InvoiceExpense, edit: ExpenseEdit) -> None:
            _assign(expense, edit, exclude=("attachment",))

        diff = reconcile_children(invoice.expenses, edits, build=build, update=update)
        invoice.expenses = diff.children

        for expense in diff.created:
            upload = normalize_upload(uploads.get(expense.id))
            if upload is None:
                continue
            if not isinstance(upload, UploadedFile):
                log.warning("Ignoring non-file attachment value for expense %s", expense.id)
                continue
            expense.attachment = self.attachment_store.attach(uow, OWNER_EXPENSE, expense.id, upload)
        return diff
