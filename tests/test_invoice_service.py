"""Tests for the create-or-update invoice transaction."""
from datetime import date

import pytest

from src.invoicing.services.equity_calculator import NO_EQUITY, InvoiceEquityCalculator
from src.invoicing.services.invoice_service import (
    ActingContext,
    ExpenseEdit,
    InvoiceEdit,
    InvoiceEditRequest,
    InvoiceService,
    LineItemEdit,
)
from src.invoicing.storage.attachment_store import AttachmentStore, UploadedFile
from src.invoicing.storage.invoice_repository import OWNER_EXPENSE, OWNER_INVOICE, InvoiceRepository
from src.shared.errors import AppErrors

TODAY = date(2025, 6, 15)


class RecordingCalculator:
    """Wraps the real calculator and remembers every call."""

    def __init__(self, repository):
        self.inner = InvoiceEquityCalculator(repository)
        self.calls = []

    def calculate(self, **kwargs):
        self.calls.append(kwargs)
        return self.inner.calculate(**kwargs)


class UnavailableCalculator:
    def __init__(self):
        self.calls = 0

    def calculate(self, **kwargs):
        self.calls += 1
        return None


def _pdf(size=64, content_type="application/pdf", name="invoice.pdf"):
    return UploadedFile(filename=name, content_type=content_type, content=b"%PDF-" + b"0" * (size - 5))


def _request(line_items=None, expenses=None, invoice_pdf=None, **header):
    return InvoiceEditRequest(
        invoice=InvoiceEdit(**header),
        line_items=line_items if line_items is not None else [LineItemEdit(description="Work", quantity=1, pay_rate_in_subunits=1000)],
        expenses=expenses or [],
        invoice_pdf=invoice_pdf,
    )


def _files_under(root):
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


@pytest.fixture
def repo(tmp_path):
    return InvoiceRepository(tmp_path / "inv.db")


@pytest.fixture
def store(tmp_path, repo):
    return AttachmentStore(tmp_path / "attachments", repo)


@pytest.fixture
def context(repo):
    user = repo.create_user("Jane Contractor", "jane@example.com", "1 Main St", "Springfield", "IL", "62701", "US")
    company = repo.create_company("Acme")
    contractor = repo.create_contractor(user.id, company.id, pay_rate_in_subunits=6000)
    return ActingContext(user=user, company=company, contractor=contractor)


@pytest.fixture
def category(repo, context):
    return repo.create_expense_category(context.company.id, "Travel")


@pytest.fixture
def calculator(repo):
    return RecordingCalculator(repo)


@pytest.fixture
def service(repo, store, calculator):
    return InvoiceService(repo, store, calculator=calculator, today=lambda: TODAY)


# ── Creating ──


class TestCreate:
    def test_create_minimal_invoice(self, service, repo, context):
        items = [LineItemEdit(description="Development", quantity=121, pay_rate_in_subunits=6000, hourly=True)]
        result = service.process(_request(line_items=items), context)

        assert result.success is True
        inv = result.invoice
        assert inv.persisted is True
        assert inv.status == "received"
        assert inv.invoice_number == "1"
        assert inv.invoice_date == "2025-06-15"
        assert inv.total_amount_in_usd_cents == 12100
        assert inv.cash_amount_in_cents == 12100
        assert inv.equity_amount_in_cents == 0
        assert inv.equity_amount_in_options == 0
        assert inv.platform_fee_cents == 232
        assert inv.attachment is None
        assert repo.count_invoices() == 1
        assert repo.count_attachments() == 0

    def test_header_copied_from_user(self, service, context):
        inv = service.process(_request(), context).invoice
        assert inv.street_address == "1 Main St"
        assert inv.city == "Springfield"
        assert inv.state == "IL"
        assert inv.zip_code == "62701"
        assert inv.country_code == "US"
        assert inv.created_by_user_id == context.user.id
        assert inv.company_worker_id == context.contractor.id

    def test_supplied_header_fields_win(self, service, context):
        req = _request(invoice_date=date(2025, 2, 1), invoice_number="INV-7", notes="Thanks!")
        inv = service.process(req, context).invoice
        assert inv.invoice_date == "2025-02-01"
        assert inv.invoice_number == "INV-7"
        assert inv.notes == "Thanks!"

    def test_recommended_number_follows_previous(self, service, context):
        service.process(_request(invoice_number="INV-009"), context)
        inv = service.process(_request(), context).invoice
        assert inv.invoice_number == "INV-010"

    def test_client_equity_percentage_is_overwritten(self, service, context):
        inv = service.process(_request(equity_percentage=80), context).invoice
        assert inv.equity_percentage == 0
        assert inv.equity_amount_in_cents == 0

    def test_expenses_count_towards_total_not_services(self, service, context, category, calculator):
        expenses = [ExpenseEdit(description="Train", expense_category_id=category.id, total_amount_in_cents=500)]
        inv = service.process(_request(expenses=expenses), context).invoice

        assert inv.total_amount_in_usd_cents == 1500
        assert calculator.calls[0]["service_amount_cents"] == 1000
        assert calculator.calls[0]["invoice_year"] == 2025
        assert len(inv.expenses) == 1

    def test_calculator_invoked_once(self, service, context, calculator):
        service.process(_request(), context)
        assert len(calculator.calls) == 1

    def test_new_expense_attachment_stored(self, service, repo, context, category):
        receipt = UploadedFile("receipt.jpg", "image/jpeg", b"\xff\xd8receipt")
        expenses = [ExpenseEdit(description="Taxi", expense_category_id=category.id,
                                total_amount_in_cents=2000, attachment=receipt)]
        inv = service.process(_request(expenses=expenses), context).invoice

        expense = inv.expenses[0]
        assert expense.attachment is not None
        assert expense.attachment.filename == "receipt.jpg"
        assert [a.id for a in repo.list_attachments(OWNER_EXPENSE, expense.id)] == [expense.attachment.id]

    def test_validation_errors_joined(self, service, repo, context):
        result = service.process(_request(line_items=[], invoice_number=""), context)
        assert result.success is False
        assert result.error_message == (
            "Invoice number can't be blank and Total amount in cents must be greater than 0"
        )
        assert repo.count_invoices() == 0

    def test_unknown_category_rejected(self, service, repo, context):
        expenses = [ExpenseEdit(description="Train", expense_category_id=999, total_amount_in_cents=500)]
        result = service.process(_request(expenses=expenses), context)
        assert result.error_message == "Expense category must exist"
        assert repo.count_expenses() == 0


# ── Cash / equity split ──


class TestSettlement:
    def _enable_equity(self, repo, context, percentage=20, price="2.34"):
        company = repo.update_company(context.company.id, equity_enabled=True)
        repo.set_equity_allocation(context.contractor.id, 2025, percentage)
        if price is not None:
            repo.create_equity_grant(context.contractor.id, 2025, price)
        return ActingContext(user=context.user, company=company, contractor=context.contractor)

    def test_equity_split_applied(self, service, repo, context, category):
        ctx = self._enable_equity(repo, context)
        items = [LineItemEdit(description="Development", quantity=121, pay_rate_in_subunits=6000, hourly=True)]
        expenses = [ExpenseEdit(description="Train", expense_category_id=category.id, total_amount_in_cents=500)]
        inv = service.process(_request(line_items=items, expenses=expenses), ctx).invoice

        assert inv.total_amount_in_usd_cents == 12600
        assert inv.equity_percentage == 20
        assert inv.equity_amount_in_cents == 2420
        assert inv.equity_amount_in_options == 10
        assert inv.cash_amount_in_cents == 10180
        assert inv.platform_fee_cents == 239

    @pytest.mark.parametrize("rate", [1, 99, 1000, 12345, 999_999])
    def test_cash_plus_equity_is_total(self, service, repo, context, rate):
        ctx = self._enable_equity(repo, context, percentage=35, price="0.50")
        items = [LineItemEdit(description="Work", quantity=7, pay_rate_in_subunits=rate, hourly=True)]
        inv = service.process(_request(line_items=items), ctx).invoice
        assert inv.cash_amount_in_cents + inv.equity_amount_in_cents == inv.total_amount_in_usd_cents

    def test_missing_share_price_aborts(self, service, repo, context, store, category):
        ctx = self._enable_equity(repo, context, price=None)
        receipt = UploadedFile("receipt.pdf", "application/pdf", b"%PDF-receipt")
        expenses = [ExpenseEdit(description="Taxi", expense_category_id=category.id,
                                total_amount_in_cents=2000, attachment=receipt)]
        result = service.process(_request(expenses=expenses, invoice_pdf=_pdf()), ctx)

        assert result.success is False
        assert result.error_message == AppErrors.SETTLEMENT_UNAVAILABLE
        assert repo.count_invoices() == 0
        assert repo.count_line_items() == 0
        assert repo.count_expenses() == 0
        assert repo.count_attachments() == 0
        assert _files_under(store.root) == []

    def test_unavailable_split_on_update_keeps_stored_invoice(self, repo, store, context):
        created = InvoiceService(repo, store, today=lambda: TODAY).process(_request(), context).invoice
        failing = UnavailableCalculator()
        service = InvoiceService(repo, store, calculator=failing, today=lambda: TODAY)
        items = [LineItemEdit(description="Other", quantity=5, pay_rate_in_subunits=100)]

        result = service.process(_request(line_items=items), context, invoice_id=created.id)

        assert result.error_message == AppErrors.SETTLEMENT_UNAVAILABLE
        assert failing.calls == 1
        stored = repo.get_invoice(created.id)
        assert [i.description for i in stored.line_items] == ["Work"]
        assert stored.total_amount_in_usd_cents == 1000


# ── Updating ──


class TestUpdate:
    def _create(self, service, context, **kwargs):
        items = [
            LineItemEdit(description="A", quantity=1, pay_rate_in_subunits=1000),
            LineItemEdit(description="B", quantity=1, pay_rate_in_subunits=2000),
            LineItemEdit(description="C", quantity=1, pay_rate_in_subunits=3000),
        ]
        return service.process(_request(line_items=items, **kwargs), context).invoice

    def test_diff_keeps_updates_adds_and_removes(self, service, repo, context):
        inv = self._create(service, context)
        a, b, c = inv.line_items
        items = [
            LineItemEdit(id=a.id, quantity=2),
            LineItemEdit(description="D", quantity=3, pay_rate_in_subunits=500),
        ]
        updated = service.process(_request(line_items=items), context, invoice_id=inv.id).invoice

        assert [i.description for i in updated.line_items] == ["A", "D"]
        assert updated.line_items[0].id == a.id
        assert updated.line_items[0].quantity == 2
        assert updated.total_amount_in_usd_cents == 3500
        assert repo.count_line_items() == 2
        ids = {i.id for i in updated.line_items}
        assert b.id not in ids and c.id not in ids

    def test_identical_update_is_a_no_op(self, service, repo, context, category):
        expenses = [ExpenseEdit(description="Train", expense_category_id=category.id, total_amount_in_cents=500)]
        inv = self._create(service, context, expenses=expenses, invoice_date=date(2025, 3, 1))
        items = [
            LineItemEdit(id=i.id, description=i.description, quantity=i.quantity,
                         pay_rate_in_subunits=i.pay_rate_in_subunits, hourly=i.hourly)
            for i in inv.line_items
        ]
        same_expenses = [
            ExpenseEdit(id=e.id, description=e.description, expense_category_id=e.expense_category_id,
                        total_amount_in_cents=e.total_amount_in_cents)
            for e in inv.expenses
        ]
        again = service.process(
            _request(line_items=items, expenses=same_expenses, invoice_date=date(2025, 3, 1)),
            context, invoice_id=inv.id,
        ).invoice

        assert again.invoice_number == inv.invoice_number
        assert again.total_amount_in_usd_cents == inv.total_amount_in_usd_cents == 6500
        assert again.cash_amount_in_cents == inv.cash_amount_in_cents
        assert again.platform_fee_cents == inv.platform_fee_cents
        assert [i.id for i in again.line_items] == [i.id for i in inv.line_items]
        assert [e.id for e in again.expenses] == [e.id for e in inv.expenses]
        assert repo.count_line_items() == 3
        assert repo.count_expenses() == 1

    def test_number_kept_when_not_supplied(self, service, context):
        inv = self._create(service, context, invoice_number="INV-100")
        self._create(service, context)
        updated = service.process(_request(), context, invoice_id=inv.id).invoice
        assert updated.invoice_number == "INV-100"

    def test_unknown_id_is_a_new_line_item(self, service, context):
        inv = self._create(service, context)
        items = [LineItemEdit(id="not-mine", description="E", quantity=1, pay_rate_in_subunits=700)]
        updated = service.process(_request(line_items=items), context, invoice_id=inv.id).invoice
        assert len(updated.line_items) == 1
        assert updated.line_items[0].id != "not-mine"
        assert updated.total_amount_in_usd_cents == 700

    def test_duplicate_ids_counted_once(self, service, context):
        inv = self._create(service, context)
        a = inv.line_items[0]
        items = [LineItemEdit(id=a.id, quantity=2), LineItemEdit(id=a.id, quantity=4)]
        updated = service.process(_request(line_items=items), context, invoice_id=inv.id).invoice
        assert len(updated.line_items) == 1
        assert updated.line_items[0].quantity == 4
        assert updated.total_amount_in_usd_cents == 4000

    def test_removed_expense_attachment_scheduled_for_purge(self, service, repo, store, context, category):
        receipt = UploadedFile("receipt.pdf", "application/pdf", b"%PDF-receipt")
        expenses = [ExpenseEdit(description="Taxi", expense_category_id=category.id,
                                total_amount_in_cents=2000, attachment=receipt)]
        inv = self._create(service, context, expenses=expenses)
        expense = inv.expenses[0]

        updated = service.process(_request(), context, invoice_id=inv.id).invoice
        assert updated.expenses == []
        assert [a.id for a in repo.list_purge_requested()] == [expense.attachment.id]
        assert store.purge_pending() == 1
        assert repo.list_attachments(OWNER_EXPENSE, expense.id) == []

    def test_existing_expense_attachment_not_replaced(self, service, repo, context, category):
        receipt = UploadedFile("receipt.pdf", "application/pdf", b"%PDF-receipt")
        expenses = [ExpenseEdit(description="Taxi", expense_category_id=category.id,
                                total_amount_in_cents=2000, attachment=receipt)]
        inv = self._create(service, context, expenses=expenses)
        expense = inv.expenses[0]

        other = UploadedFile("other.pdf", "application/pdf", b"%PDF-other")
        edit = [ExpenseEdit(id=expense.id, total_amount_in_cents=2500, attachment=other)]
        updated = service.process(_request(expenses=edit), context, invoice_id=inv.id).invoice

        assert updated.expenses[0].total_amount_in_cents == 2500
        assert updated.expenses[0].attachment.id == expense.attachment.id
        assert len(repo.list_attachments(OWNER_EXPENSE, expense.id)) == 1

    def test_invoice_of_other_company_not_found(self, service, repo, context):
        inv = self._create(service, context)
        other = repo.create_company("Other")
        ctx = ActingContext(user=context.user, company=other, contractor=context.contractor)
        result = service.process(_request(), ctx, invoice_id=inv.id)
        assert result.error_message == AppErrors.INVOICE_NOT_FOUND

    def test_missing_invoice_not_found(self, service, repo, context):
        result = service.process(_request(), context, invoice_id="nope")
        assert result.success is False
        assert result.error_message == AppErrors.INVOICE_NOT_FOUND
        assert repo.count_invoices() == 0


# ── Invoice PDF ──


class TestInvoiceAttachment:
    @pytest.mark.parametrize("value", [None, "", "  ", UploadedFile("empty.pdf", "application/pdf", b"")])
    def test_no_file_on_create(self, service, repo, context, value):
        result = service.process(_request(invoice_pdf=value), context)
        assert result.success is True
        assert result.invoice.attachment is None
        assert repo.count_attachments() == 0

    @pytest.mark.parametrize("value", [None, "", UploadedFile("empty.pdf", "application/pdf", b"")])
    def test_no_file_on_update_keeps_existing(self, service, repo, context, value):
        inv = service.process(_request(invoice_pdf=_pdf()), context).invoice
        updated = service.process(_request(invoice_pdf=value), context, invoice_id=inv.id).invoice
        assert updated.attachment.id == inv.attachment.id
        assert repo.list_purge_requested() == []

    def test_pdf_stored_on_create(self, service, store, context):
        inv = service.process(_request(invoice_pdf=_pdf(name="march.pdf")), context).invoice
        assert inv.attachment.filename == "march.pdf"
        assert inv.attachment.content_type == "application/pdf"
        assert store.path_for(inv.attachment).exists()

    def test_non_pdf_rejected_and_nothing_saved(self, service, repo, store, context):
        result = service.process(_request(invoice_pdf=_pdf(content_type="image/jpeg", name="scan.jpg")), context)
        assert result.success is False
        assert result.error_message == AppErrors.PDF_ONLY
        assert repo.count_invoices() == 0
        assert _files_under(store.root) == []

    def test_oversized_pdf_rejected(self, service, repo, context):
        result = service.process(_request(invoice_pdf=_pdf(size=2 * 1024 * 1024 + 1)), context)
        assert result.error_message == AppErrors.PDF_TOO_LARGE
        assert repo.count_invoices() == 0

    def test_pdf_at_limit_accepted(self, service, context):
        result = service.process(_request(invoice_pdf=_pdf(size=2 * 1024 * 1024)), context)
        assert result.success is True
        assert result.invoice.attachment.byte_size == 2 * 1024 * 1024

    def test_rejected_update_leaves_invoice_untouched(self, service, repo, context):
        inv = service.process(_request(invoice_pdf=_pdf()), context).invoice
        items = [LineItemEdit(description="Changed", quantity=9, pay_rate_in_subunits=9)]
        result = service.process(
            _request(line_items=items, invoice_pdf=_pdf(content_type="image/png")), context, invoice_id=inv.id,
        )
        assert result.error_message == AppErrors.PDF_ONLY
        stored = repo.get_invoice(inv.id)
        assert [i.description for i in stored.line_items] == ["Work"]
        assert stored.attachment.id == inv.attachment.id

    def test_replacement_purges_previous_after_commit(self, service, repo, store, context):
        inv = service.process(_request(invoice_pdf=_pdf(name="v1.pdf")), context).invoice
        old = inv.attachment
        updated = service.process(_request(invoice_pdf=_pdf(name="v2.pdf")), context, invoice_id=inv.id).invoice

        assert updated.attachment.filename == "v2.pdf"
        every = repo.list_attachments(OWNER_INVOICE, inv.id)
        assert {a.id for a in every} == {old.id, updated.attachment.id}
        assert [a.id for a in repo.list_purge_requested()] == [old.id]

        assert store.purge_pending() == 1
        assert not store.path_for(old).exists()
        assert [a.id for a in repo.list_attachments(OWNER_INVOICE, inv.id)] == [updated.attachment.id]

    def test_non_blank_string_is_not_a_pdf(self, service, repo, context):
        result = service.process(_request(invoice_pdf="invoice.pdf"), context)
        assert result.error_message == AppErrors.PDF_ONLY
        assert repo.count_invoices() == 0


# ── Params parsing ──


class TestFromParams:
    def test_coerces_strings(self):
        req = InvoiceEditRequest.from_params({
            "invoice": {"invoice_date": "2025-04-30", "invoice_number": "7", "equity_percentage": "10"},
            "invoice_line_items": [
                {"id": "", "description": "Dev", "quantity": "90", "pay_rate_in_subunits": "6000", "hourly": "true"},
            ],
            "invoice_expenses": [
                {"description": "Taxi", "expense_category_id": "3", "total_amount_in_cents": "1200"},
            ],
        })
        assert req.invoice.invoice_date == date(2025, 4, 30)
        assert req.invoice.equity_percentage == 10
        item = req.line_items[0]
        assert item.id is None
        assert (item.quantity, item.pay_rate_in_subunits, item.hourly) == (90, 6000, True)
        assert req.expenses[0].expense_category_id == 3
        assert req.invoice_pdf is None

    def test_missing_fields_stay_none(self):
        req = InvoiceEditRequest.from_params({"invoice_line_items": [{"id": "li-1", "quantity": 3}]})
        item = req.line_items[0]
        assert item.description is None
        assert item.hourly is None
        assert req.invoice.invoice_number is None
        assert req.expenses == []

    def test_resolves_file_references(self):
        receipt = UploadedFile("r.pdf", "application/pdf", b"%PDF-r")
        pdf = _pdf()
        req = InvoiceEditRequest.from_params(
            {"invoice_expenses": [{"description": "Taxi", "attachment": "receipt_0"}]},
            {"receipt_0": receipt, "invoice_pdf": pdf},
        )
        assert req.expenses[0].attachment is receipt
        assert req.invoice_pdf is pdf

    @pytest.mark.parametrize("params", [
        {"invoice_line_items": [{"quantity": "lots"}]},
        {"invoice_line_items": [{"pay_rate_in_subunits": True}]},
        {"invoice": {"invoice_date": "30/04/2025"}},
        {"invoice_expenses": [{"total_amount_in_cents": "12.50"}]},
        {"invoice": {"invoice_number": 42}},
        {"invoice": {"notes": ["a", "b"]}},
        {"invoice_line_items": [{"description": 5}]},
        {"invoice_line_items": [{"id": 3}]},
        {"invoice_expenses": [{"description": {"text": "Taxi"}}]},
        {"invoice": "hello"},
        {"invoice": ["x"]},
        {"invoice_line_items": ["x"]},
        {"invoice_line_items": "x"},
        {"invoice_expenses": [None]},
        {"invoice_expenses": {"description": "Taxi"}},
    ])
    def test_bad_values_raise(self, params):
        with pytest.raises(ValueError):
            InvoiceEditRequest.from_params(params)

    def test_payload_must_be_an_object(self):
        with pytest.raises(ValueError, match="payload must be an object"):
            InvoiceEditRequest.from_params(["not", "an", "object"])

    def test_wrong_type_names_the_field(self):
        with pytest.raises(ValueError, match="invoice_number must be text"):
            InvoiceEditRequest.from_params({"invoice": {"invoice_number": 42}})
        with pytest.raises(ValueError, match="each entry of invoice_line_items must be an object"):
            InvoiceEditRequest.from_params({"invoice_line_items": ["x"]})

    def test_empty_collections_allowed(self):
        req = InvoiceEditRequest.from_params({"invoice": None, "invoice_line_items": None, "invoice_expenses": []})
        assert req.line_items == []
        assert req.expenses == []
