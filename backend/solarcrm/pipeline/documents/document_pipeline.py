from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ...errors import RenderError, UploadError
from ...infrastructure.storage import blob_store
from ...observability.logging import get_logger
from ...repositories import documents_repo
from ...settings import settings
from .signature_placement import format_signed_label, signed_file_name, stamp_signature

log = get_logger("document_pipeline")

PDF_MIME = "application/pdf"


class PdfSource(ABC):
    """Where the bytes of a produced PDF come from."""

    kind: str
    file_name: str

    @abstractmethod
    def render(self) -> bytes:
        raise NotImplementedError


@dataclass(slots=True)
class SignedContractSource(PdfSource):
    """Mutate: fetch the customer's contract PDF and stamp the signature onto it."""

    source_document: dict[str, Any]
    signature_data: str
    signed_by_name: str
    signed_at: datetime
    kind: str = "signed_contract"
    file_name: str = field(init=False)

    def __post_init__(self) -> None:
        self.file_name = signed_file_name(self.source_document.get("name"))

    def render(self) -> bytes:
        storage_id = str(self.source_document.get("storageId") or "").strip()
        if not storage_id:
            raise UploadError(message="Source document has no stored file", code="source_missing")
        original = blob_store.fetch(storage_id)
        return stamp_signature(
            original,
            signature_data=self.signature_data,
            signed_by_name=self.signed_by_name,
            signed_at_label=format_signed_label(self.signed_at, settings.business_timezone),
        )


@dataclass(slots=True)
class GeneratedPdfSource(PdfSource):
    """Generate: draw a new PDF (invoice, receipt) from structured data."""

    kind: str
    file_name: str
    draw: Callable[[], bytes]

    def render(self) -> bytes:
        try:
            data = self.draw()
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(message=f"Failed to draw {self.kind} PDF", cause=e) from e
        if not data:
            raise RenderError(message=f"Empty {self.kind} PDF")
        return data


@dataclass(frozen=True, slots=True)
class ProducedDocument:
    document: dict[str, Any]
    url: str
    data: bytes

    @property
    def document_id(self) -> str:
        return str(self.document.get("documentId") or "")


def produce_document(
    source: PdfSource,
    *,
    opportunity_id: str,
    invoice_id: str | None = None,
    agreement_id: str | None = None,
) -> ProducedDocument:
    """
    render -> blob store -> Document record -> retrievable URL.

    Raises RenderError or UploadError; nothing is recorded unless the bytes
    were stored.
    """
    try:
        data = source.render()
    except (RenderError, UploadError):
        log.exception("document_render_failed", kind=source.kind, opportunityId=opportunity_id)
        raise

    storage_id = blob_store.put(data, content_type=PDF_MIME)
    document = documents_repo.create_document(
        name=source.file_name,
        mime_type=PDF_MIME,
        storage_id=storage_id,
        file_size=len(data),
        opportunity_id=opportunity_id,
        kind=source.kind,
        invoice_id=invoice_id,
        agreement_id=agreement_id,
    )
    url = blob_store.get_url(storage_id)
    log.info(
        "document_produced",
        kind=source.kind,
        documentId=document.get("documentId"),
        opportunityId=opportunity_id,
        size=len(data),
    )
    return ProducedDocument(document=document, url=url, data=data)


def document_url(document_id: str) -> str | None:
    doc = documents_repo.get_document(document_id)
    if not doc or not doc.get("storageId"):
        return None
    return blob_store.get_url(str(doc["storageId"]))
