"""Tests for upload normalization, PDF validation and the attachment store."""
import pytest

from src.invoicing.services.attachments import (
    MAX_PDF_BYTES,
    normalize_upload,
    replace_invoice_pdf,
    validate_invoice_pdf,
)
from src.invoicing.storage.attachment_store import AttachmentStore, UploadedFile
from src.invoicing.storage.invoice_repository import (
    OWNER_EXPENSE,
    OWNER_INVOICE,
    Invoice,
    InvoiceRepository,
)
from src.shared.errors import AppErrors


def _pdf(size=64, content_type="application/pdf", name="invoice.pdf"):
    return UploadedFile(filename=name, content_type=content_type, content=b"%PDF-" + b"0" * (size - 5))


@pytest.fixture
def repo(tmp_path):
    return InvoiceRepository(tmp_path / "inv.db")


@pytest.fixture
def store(tmp_path, repo):
    return AttachmentStore(tmp_path / "attachments", repo)


def _files_under(root):
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


class TestNormalizeUpload:
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_nothing_provided(self, value):
        assert normalize_upload(value) is None

    def test_zero_byte_upload(self):
        assert normalize_upload(UploadedFile("empty.pdf", "application/pdf", b"")) is None

    def test_real_upload_passes_through(self):
        upload = _pdf()
        assert normalize_upload(upload) is upload

    def test_non_blank_string_passes_through(self):
        assert normalize_upload("not-a-file") == "not-a-file"


class TestValidateInvoicePdf:
    def test_pdf_accepted(self):
        assert validate_invoice_pdf(_pdf()) is None

    def test_exactly_two_mebibytes_accepted(self):
        assert validate_invoice_pdf(_pdf(size=MAX_PDF_BYTES)) is None

    def test_one_byte_over_rejected(self):
        assert validate_invoice_pdf(_pdf(size=MAX_PDF_BYTES + 1)) == AppErrors.PDF_TOO_LARGE

    def test_wrong_type_rejected(self):
        assert validate_invoice_pdf(_pdf(content_type="image/jpeg", name="scan.jpg")) == AppErrors.PDF_ONLY

    def test_type_checked_before_size(self):
        upload = _pdf(size=MAX_PDF_BYTES + 1, content_type="image/jpeg")
        assert validate_invoice_pdf(upload) == AppErrors.PDF_ONLY

    def test_string_rejected_as_not_pdf(self):
        assert validate_invoice_pdf("invoice.pdf") == AppErrors.PDF_ONLY


class TestAttachmentStore:
    def test_attach_writes_file_and_row(self, store, repo):
        with repo.transaction() as uow:
            attachment = store.attach(uow, OWNER_EXPENSE, "ex-1", _pdf(name="../../receipt.pdf"))

        assert attachment.filename == "receipt.pdf"
        assert attachment.byte_size == 64
        assert len(attachment.sha256) == 64
        assert attachment.storage_path.startswith("expense/")
        assert store.path_for(attachment).read_bytes().startswith(b"%PDF-")
        assert [a.id for a in repo.list_attachments(OWNER_EXPENSE, "ex-1")] == [attachment.id]

    def test_rollback_unlinks_staged_file(self, store, repo):
        with repo.transaction() as uow:
            attachment = store.attach(uow, OWNER_INVOICE, "inv-1", _pdf())
            staged = store.path_for(attachment)
            assert staged.exists()
            uow.rollback()

        assert not staged.exists()
        assert repo.count_attachments() == 0

    def test_exception_unlinks_staged_file(self, store, repo):
        with pytest.raises(RuntimeError):
            with repo.transaction() as uow:
                store.attach(uow, OWNER_INVOICE, "inv-1", _pdf())
                raise RuntimeError("boom")
        assert _files_under(store.root) == []

    def test_purge_pending_removes_marked_only(self, store, repo):
        with repo.transaction() as uow:
            old = store.attach(uow, OWNER_INVOICE, "inv-1", _pdf())
        with repo.transaction() as uow:
            assert [a.id for a in store.purge_later(uow, OWNER_INVOICE, "inv-1")] == [old.id]
            new = store.attach(uow, OWNER_INVOICE, "inv-1", _pdf())

        # marked but still present until the purge runs
        assert store.path_for(old).exists()
        assert store.purge_pending() == 1
        assert not store.path_for(old).exists()
        assert store.path_for(new).exists()
        assert [a.id for a in repo.list_attachments(OWNER_INVOICE, "inv-1")] == [new.id]
        assert store.purge_pending() == 0

    def test_purge_pending_tolerates_missing_file(self, store, repo):
        with repo.transaction() as uow:
            old = store.attach(uow, OWNER_INVOICE, "inv-1", _pdf())
        store.path_for(old).unlink()
        with repo.transaction() as uow:
            store.purge_later(uow, OWNER_INVOICE, "inv-1")
        assert store.purge_pending() == 1
        assert repo.count_attachments() == 0


class TestReplaceInvoicePdf:
    def _invoice(self):
        return Invoice(id="inv-1", user_id="u", company_id="c", company_worker_id="w")

    @pytest.mark.parametrize("value", [None, "", UploadedFile("empty.pdf", "application/pdf", b"")])
    def test_nothing_to_do(self, store, repo, value):
        invoice = self._invoice()
        with repo.transaction() as uow:
            assert replace_invoice_pdf(uow, store, invoice, value) is None
        assert invoice.attachment is None
        assert repo.count_attachments() == 0

    def test_rejection_leaves_existing_attachment(self, store, repo):
        invoice = self._invoice()
        with repo.transaction() as uow:
            replace_invoice_pdf(uow, store, invoice, _pdf())
        first = invoice.attachment

        with repo.transaction() as uow:
            error = replace_invoice_pdf(uow, store, invoice, _pdf(content_type="image/png"))
        assert error == AppErrors.PDF_ONLY
        assert invoice.attachment is first
        assert repo.list_purge_requested() == []

    def test_replacement_marks_previous(self, store, repo):
        invoice = self._invoice()
        with repo.transaction() as uow:
            replace_invoice_pdf(uow, store, invoice, _pdf())
        first = invoice.attachment

        with repo.transaction() as uow:
            assert replace_invoice_pdf(uow, store, invoice, _pdf(name="v2.pdf")) is None
        assert invoice.attachment.id != first.id
        assert invoice.attachment.filename == "v2.pdf"
        assert [a.id for a in repo.list_purge_requested()] == [first.id]
        active = repo.list_attachments(OWNER_INVOICE, "inv-1", active_only=True)
        assert [a.id for a in active] == [invoice.attachment.id]
