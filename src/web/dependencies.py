"""
Dependency injection for FastAPI routes.
"""
import os
from pathlib import Path

from fastapi import Request

from src.shared.app_state import AppState

DATA_ROOT = Path(os.environ.get("INVOICING_DATA_ROOT", "./data"))


def get_state(request: Request) -> AppState:
    """Reconstruct AppState from session."""
    return AppState(
        data_root=DATA_ROOT,
        acting_user_id=request.session.get("user_id"),
    )


def get_invoice_repository():
    """Get InvoiceRepository instance for the data root."""
    from src.invoicing.storage.invoice_repository import InvoiceRepository
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return InvoiceRepository(DATA_ROOT / "invoicing.sqlite")


def get_attachment_store(repository=None):
    """Get AttachmentStore writing under <data root>/attachments."""
    from src.invoicing.storage.attachment_store import AttachmentStore
    repository = repository or get_invoice_repository()
    return AttachmentStore(DATA_ROOT / "attachments", repository)


def get_invoice_service():
    """Get InvoiceService wired to the default repository, store and equity calculator."""
    from src.invoicing.services.invoice_service import InvoiceService
    repository = get_invoice_repository()
    return InvoiceService(repository, get_attachment_store(repository))
