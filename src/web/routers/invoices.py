"""Invoices router - create/update through the reconciliation service, reads, downloads."""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.datastructures import UploadFile

from src.invoicing.services.invoice_service import ActingContext, InvoiceEditRequest
from src.invoicing.storage.attachment_store import UploadedFile
from src.shared.errors import AppErrors
from src.web.dependencies import (
    get_attachment_store,
    get_invoice_repository,
    get_invoice_service,
    get_state,
)

log = logging.getLogger(__name__)
router = APIRouter()


def _attachment_to_dict(a):
    if a is None:
        return None
    return {
        "id": a.id,
        "filename": a.filename,
        "content_type": a.content_type,
        "byte_size": a.byte_size,
        "sha256": a.sha256,
        "created_at": a.created_at,
    }


def _line_item_to_dict(item):
    return {
        "id": item.id,
        "description": item.description,
        "quantity": item.quantity,
        "pay_rate_in_subunits": item.pay_rate_in_subunits,
        "hourly": item.hourly,
        "total_amount_cents": item.total_amount_cents,
    }


def _expense_to_dict(e):
    return {
        "id": e.id,
        "description": e.description,
        "expense_category_id": e.expense_category_id,
        "total_amount_in_cents": e.total_amount_in_cents,
        "attachment": _attachment_to_dict(e.attachment),
    }


def _invoice_to_dict(inv):
    return {
        "id": inv.id,
        "user_id": inv.user_id,
        "company_id": inv.company_id,
        "company_worker_id": inv.company_worker_id,
        "status": inv.status,
        "invoice_date": inv.invoice_date,
        "invoice_number": inv.invoice_number,
        "notes": inv.notes,
        "street_address": inv.street_address,
        "city": inv.city,
        "state": inv.state,
        "zip_code": inv.zip_code,
        "country_code": inv.country_code,
        "total_amount_in_usd_cents": inv.total_amount_in_usd_cents,
        "cash_amount_in_cents": inv.cash_amount_in_cents,
        "equity_amount_in_cents": inv.equity_amount_in_cents,
        "equity_amount_in_options": inv.equity_amount_in_options,
        "equity_percentage": inv.equity_percentage,
        "platform_fee_cents": inv.platform_fee_cents,
        "created_at": inv.created_at,
        "updated_at": inv.updated_at,
        "line_items": [_line_item_to_dict(i) for i in inv.line_items],
        "expenses": [_expense_to_dict(e) for e in inv.expenses],
        "attachment": _attachment_to_dict(inv.attachment),
    }


def _acting_context(request: Request, company_id: str):
    """Returns (ActingContext, None) or (None, error response)."""
    state = get_state(request)
    if not state.acting_user_id:
        return None, JSONResponse({"error_message": AppErrors.NOT_SIGNED_IN}, status_code=401)
    repo = get_invoice_repository()
    user = repo.get_user(state.acting_user_id)
    if user is None:
        return None, JSONResponse({"error_message": AppErrors.NOT_SIGNED_IN}, status_code=401)
    company = repo.get_company(company_id)
    if company is None:
        return None, JSONResponse({"error_message": "Company not found."}, status_code=404)
    contractor = repo.find_contractor(user.id, company.id)
    if contractor is None:
        return None, JSONResponse({"error_message": AppErrors.NOT_A_CONTRACTOR}, status_code=403)
    return ActingContext(user=user, company=company, contractor=contractor), None


def _owned_invoice(ctx: ActingContext, invoice_id: str):
    invoice = get_invoice_repository().get_invoice(invoice_id)
    if invoice is None or invoice.user_id != ctx.user.id or invoice.company_id != ctx.company.id:
        return None
    return invoice


async def _read_edit_request(request: Request) -> InvoiceEditRequest:
    """
    Accept either a JSON body or a multipart form.

    Multipart forms carry the params as a JSON "payload" field; every file part
    is available to expense "attachment" references by its field name.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        params = await request.json()
        files = {}
    else:
        form = await request.form()
        params = json.loads(form.get("payload") or "{}")
        files = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                files[key] = UploadedFile(
                    filename=value.filename or "upload",
                    content_type=value.content_type,
                    content=await value.read(),
                )
            elif key == "invoice_pdf":
                files[key] = value
    if not isinstance(params, dict):
        raise ValueError("Request payload must be a JSON object")
    return InvoiceEditRequest.from_params(params, files)


def _process(ctx: ActingContext, edit: InvoiceEditRequest, background: BackgroundTasks,
             invoice_id: str | None, success_status: int):
    service = get_invoice_service()
    result = service.process(edit, ctx, invoice_id=invoice_id)
    if not result.success:
        return JSONResponse({"error_message": result.error_message}, status_code=422)
    background.add_task(service.attachment_store.purge_pending)
    return JSONResponse(_invoice_to_dict(result.invoice), status_code=success_status)


# ── Invoices API ──

@router.get("/api/companies/{company_id}/invoices")
async def list_invoices(company_id: str, request: Request):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    repo = get_invoice_repository()
    invoices = repo.list_invoices(user_id=ctx.user.id, company_id=company_id)
    return {
        "invoices": [_invoice_to_dict(inv) for inv in invoices],
        "count": len(invoices),
    }


@router.post("/api/companies/{company_id}/invoices")
async def create_invoice(company_id: str, request: Request, background: BackgroundTasks):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    try:
        edit = await _read_edit_request(request)
    except ValueError as e:
        return JSONResponse({"error_message": str(e)}, status_code=422)
    return _process(ctx, edit, background, invoice_id=None, success_status=201)


@router.patch("/api/companies/{company_id}/invoices/{invoice_id}")
async def update_invoice(company_id: str, invoice_id: str, request: Request, background: BackgroundTasks):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    if _owned_invoice(ctx, invoice_id) is None:
        return JSONResponse({"error_message": AppErrors.INVOICE_NOT_FOUND}, status_code=404)
    try:
        edit = await _read_edit_request(request)
    except ValueError as e:
        return JSONResponse({"error_message": str(e)}, status_code=422)
    return _process(ctx, edit, background, invoice_id=invoice_id, success_status=200)


@router.get("/api/companies/{company_id}/invoices/{invoice_id}")
async def get_invoice(company_id: str, invoice_id: str, request: Request):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    invoice = _owned_invoice(ctx, invoice_id)
    if invoice is None:
        return JSONResponse({"error_message": AppErrors.INVOICE_NOT_FOUND}, status_code=404)
    return _invoice_to_dict(invoice)


@router.get("/api/companies/{company_id}/invoices/{invoice_id}/attachment")
async def download_attachment(company_id: str, invoice_id: str, request: Request):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    invoice = _owned_invoice(ctx, invoice_id)
    if invoice is None:
        return JSONResponse({"error_message": AppErrors.INVOICE_NOT_FOUND}, status_code=404)
    if invoice.attachment is None:
        return JSONResponse({"error_message": AppErrors.ATTACHMENT_NOT_FOUND}, status_code=404)
    file_path = get_attachment_store().path_for(invoice.attachment)
    if not file_path.exists():
        return JSONResponse({"error_message": "File not found on disk."}, status_code=404)
    return FileResponse(
        path=str(file_path),
        filename=invoice.attachment.filename,
        media_type=invoice.attachment.content_type,
    )


@router.get("/api/companies/{company_id}/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(company_id: str, invoice_id: str, request: Request):
    ctx, error = _acting_context(request, company_id)
    if error:
        return error
    invoice = _owned_invoice(ctx, invoice_id)
    if invoice is None:
        return JSONResponse({"error_message": AppErrors.INVOICE_NOT_FOUND}, status_code=404)

    from src.invoicing.pdf.invoice_pdf import render_invoice_pdf
    categories = get_invoice_repository().list_expense_categories(company_id)
    content = render_invoice_pdf(invoice, ctx.user, ctx.company, categories=categories)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="invoice_{invoice.invoice_number}.pdf"'},
    )
