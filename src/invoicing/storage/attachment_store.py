"""Attachment blob storage on disk with deferred (purge-later) deletion."""
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from src.invoicing.storage.invoice_repository import Attachment, InvoiceRepository, UnitOfWork

log = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    """An uploaded file, detached from the web framework that received it."""
    filename: str
    content_type: str | None
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class AttachmentStore:
    """
    Stores attachment files under a root folder.

    Files are written immediately and removed again if the surrounding
    transaction rolls back. Superseded attachments are only marked inside the
    transaction; purge_pending() deletes them later.
    """

    def __init__(self, root: Path, repository: InvoiceRepository):
        self.root = Path(root)
        self.repository = repository

    def path_for(self, attachment: Attachment) -> Path:
        return self.root / attachment.storage_path

    def attach(self, uow: UnitOfWork, owner_type: str, owner_id: str, upload: UploadedFile) -> Attachment:
        now = datetime.now(UTC)
        folder = Path(owner_type) / str(now.year) / f"{now.month:02d}"
        (self.root / folder).mkdir(parents=True, exist_ok=True)

        attachment_id = str(uuid.uuid4())
        safe_name = Path(upload.filename).name if upload.filename else "upload"
        relative = folder / f"{attachment_id}_{safe_name}"
        dest = self.root / relative
        dest.write_bytes(upload.content)
        uow.on_rollback(lambda: dest.unlink(missing_ok=True))

        attachment = Attachment(
            id=attachment_id,
            owner_type=owner_type,
            owner_id=owner_id,
            filename=safe_name,
            content_type=upload.content_type or "application/octet-stream",
            byte_size=upload.size,
            storage_path=relative.as_posix(),
            sha256=hashlib.sha256(upload.content).hexdigest(),
            created_at=now.isoformat(),
        )
        uow.insert_attachment(attachment)
        return attachment

    def purge_later(self, uow: UnitOfWork, owner_type: str, owner_id: str) -> list[Attachment]:
        """Schedule the owner's current attachments for removal after commit."""
        scheduled = uow.request_purge(owner_type, owner_id)
        if scheduled:
            log.info("Scheduled %d %s attachment(s) of %s for purge", len(scheduled), owner_type, owner_id)
        return scheduled

    def purge_pending(self) -> int:
        """Delete files and rows of every attachment marked for purge. Returns the count."""
        purged = 0
        for attachment in self.repository.list_purge_requested():
            self.path_for(attachment).unlink(missing_ok=True)
            if self.repository.delete_attachment(attachment.id):
                purged += 1
        if purged:
            log.info("Purged %d attachment(s)", purged)
        return purged
