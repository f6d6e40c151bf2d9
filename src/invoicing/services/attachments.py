"""Upload normalization, invoice PDF validation and attachment replacement."""
import logging

from src.invoicing.storage.attachment_store import AttachmentStore, UploadedFile
from src.invoicing.storage.invoice_repository import OWNER_INVOICE, Invoice, UnitOfWork
from src.shared.errors import AppErrors

log = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
MAX_PDF_BYTES = 2 * 1024 * 1024


def normalize_upload(file):
    """
    Return the upload, or None when nothing was really provided.

    None, blank strings and zero-byte uploads all mean "no attachment".
    """
    if file is None:
        return None
    if isinstance(file, str) and not file.strip():
        return None
    if isinstance(file, UploadedFile) and file.size == 0:
        return None
    return file


def validate_invoice_pdf(upload) -> str | None:
    """Content type is checked before size."""
    if not isinstance(upload, UploadedFile) or upload.content_type != PDF_CONTENT_TYPE:
        return AppErrors.PDF_ONLY
    if upload.size > MAX_PDF_BYTES:
        return AppErrors.PDF_TOO_LARGE
    return None


def replace_invoice_pdf(uow: UnitOfWork, store: AttachmentStore, invoice: Invoice, file) -> str | None:
    """
    Validate the invoice-level file and swap it in.

    Returns an error message, or None on success or when no file was given.
    The previous attachment stays until the purge worker removes it.
    """
    upload = normalize_upload(file)
    if upload is None:
        return None

    error = validate_invoice_pdf(upload)
    if error:
        log.info("Rejected invoice attachment for %s: %s", invoice.id, error)
        return error

    store.purge_later(uow, OWNER_INVOICE, invoice.id)
    invoice.attachment = store.attach(uow, OWNER_INVOICE, invoice.id, upload)
    return None
