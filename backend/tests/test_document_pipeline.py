from __future__ import annotations

import io
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
from pypdf import PdfReader


@pytest.fixture()
def storage(monkeypatch):
    from solarcrm.infrastructure.storage import blob_store
    from solarcrm.repositories import documents_repo

    blobs: dict[str, bytes] = {}
    docs: dict[str, dict[str, Any]] = {}

    def _put(data, *, content_type="application/pdf"):
        sid = f"{len(blobs):064x}"
        blobs[sid] = data
        return sid

    def _create_document(**kw):
        did = f"doc_{len(docs) + 1}"
        doc = {
            "documentId": did,
            "name": kw["name"],
            "mimeType": kw["mime_type"],
            "storageId": kw["storage_id"],
            "fileSize": kw["file_size"],
            "kind": kw["kind"],
            "opportunityId": kw["opportunity_id"],
            "agreementId": kw.get("agreement_id"),
            "invoiceId": kw.get("invoice_id"),
        }
        docs[did] = doc
        return dict(doc)

    monkeypatch.setattr(blob_store, "put", _put)
    monkeypatch.setattr(blob_store, "fetch", lambda sid: blobs[sid])
    monkeypatch.setattr(blob_store, "get_url", lambda sid, **kw: f"https://assets.example/{sid}")
    monkeypatch.setattr(documents_repo, "create_document", _create_document)
    monkeypatch.setattr(documents_repo, "get_document", lambda did: dict(docs[did]) if did in docs else None)
    return blobs, docs


def test_generated_source_is_stored_and_recorded(storage):
    from solarcrm.pipeline.documents.document_pipeline import GeneratedPdfSource, produce_document

    blobs, docs = storage
    produced = produce_document(
        GeneratedPdfSource(kind="receipt", file_name="Receipt_1.pdf", draw=lambda: b"%PDF-1.4 test"),
        opportunity_id="opp_1",
    )
    assert produced.data == b"%PDF-1.4 test"
    assert produced.url.startswith("https://assets.example/")
    doc = docs[produced.document_id]
    assert doc["kind"] == "receipt"
    assert doc["fileSize"] == len(b"%PDF-1.4 test")
    assert blobs[doc["storageId"]] == b"%PDF-1.4 test"


def test_draw_failure_is_a_render_error_and_nothing_is_recorded(storage):
    from solarcrm.errors import RenderError
    from solarcrm.pipeline.documents.document_pipeline import GeneratedPdfSource, produce_document

    blobs, docs = storage

    def _broken():
        raise KeyError("lineItems")

    with pytest.raises(RenderError):
        produce_document(GeneratedPdfSource(kind="invoice", file_name="x.pdf", draw=_broken), opportunity_id="opp_1")
    with pytest.raises(RenderError):
        produce_document(GeneratedPdfSource(kind="invoice", file_name="x.pdf", draw=lambda: b""), opportunity_id="opp_1")
    assert blobs == {} and docs == {}


def test_signed_contract_without_stored_source_is_an_upload_error(storage):
    from solarcrm.errors import UploadError
    from solarcrm.pipeline.documents.document_pipeline import SignedContractSource

    src = SignedContractSource(
        source_document={"documentId": "doc_x", "name": "Agreement.pdf"},
        signature_data="data:image/png;base64,AAAA",
        signed_by_name="Juan",
        signed_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    assert src.file_name == "Agreement-signed.pdf"
    with pytest.raises(UploadError):
        src.render()


def test_document_url_for_missing_document_is_none(storage):
    from solarcrm.pipeline.documents.document_pipeline import document_url

    assert document_url("doc_missing") is None


def test_invoice_document_renders_a_real_pdf(storage):
    from solarcrm.services.billing_service import render_invoice_document

    invoice = {
        "invoiceId": "inv_1",
        "invoiceNumber": "INV-2024-007",
        "opportunityId": "opp_1",
        "createdAt": "2024-05-01T08:00:00.000Z",
        "dueDate": "2024-05-08T08:00:00.000Z",
        "lineItems": [
            {"description": "Solar panel 550W", "quantity": Decimal("2"), "unitPrice": Decimal("1000.00"), "lineTotal": Decimal("2000.00"), "sortOrder": 0}
        ],
        "subtotal": Decimal("2000.00"),
        "taxRate": Decimal("12"),
        "taxAmount": Decimal("240.00"),
        "discountAmount": Decimal("0.00"),
        "total": Decimal("2240.00"),
        "amountPaid": Decimal("0"),
        "status": "pending",
    }
    produced = render_invoice_document(
        invoice,
        {"opportunityId": "opp_1", "name": "Dela Cruz Residence"},
        {"firstName": "Juan", "lastName": "Dela Cruz", "address": "123 Rizal St, Orion, Bataan"},
    )
    assert produced.document["name"] == "Invoice_INV-2024-007_Juan_Dela_Cruz.pdf"
    assert produced.document["invoiceId"] == "inv_1"
    text = "".join((p.extract_text() or "") for p in PdfReader(io.BytesIO(produced.data)).pages)
    assert "INV-2024-007" in text
    assert "PHP 2,240.00" in text


def test_signed_notification_goes_out_without_attachment_when_pdf_fails(storage, monkeypatch):
    from solarcrm.repositories import agreements_repo, contacts_repo, opportunities_repo, users_repo
    from solarcrm.services import notification_dispatcher

    _, docs = storage
    # Source document record exists but its bytes were never stored.
    docs["doc_src"] = {"documentId": "doc_src", "name": "Agreement.pdf", "mimeType": "application/pdf"}
    agreement = {
        "agreementId": "agr_1",
        "opportunityId": "opp_1",
        "contactId": "c_1",
        "documentId": "doc_src",
        "status": "signed",
        "clientName": "Juan Dela Cruz",
        "signatureData": "data:image/png;base64,AAAA",
        "signedByName": "Juan",
        "signedAt": "2024-05-01T08:00:00.000Z",
    }
    sent: list[dict[str, Any]] = []
    attached: list[str] = []
    monkeypatch.setattr(agreements_repo, "get_agreement", lambda aid, consistent=False: dict(agreement))
    monkeypatch.setattr(agreements_repo, "attach_signed_document", lambda aid, document_id: attached.append(document_id))
    monkeypatch.setattr(opportunities_repo, "get_opportunity", lambda oid: {"opportunityId": oid, "name": "Dela Cruz Residence"})
    monkeypatch.setattr(contacts_repo, "get_contact", lambda cid: {"contactId": cid, "firstName": "Juan", "email": "juan@example.com"})
    monkeypatch.setattr(users_repo, "list_users_by_role", lambda role, **kw: [])
    monkeypatch.setattr(notification_dispatcher, "send_email", lambda **kw: sent.append(kw) or {"ok": True, "messageId": "m1"})

    out = notification_dispatcher.handle_agreement_signed({"agreementId": "agr_1"})
    assert out["ok"] is True
    assert out["attachment"] is False
    assert attached == []
    assert len(sent) == 1
    assert sent[0]["attachments"] is None
    assert "shortly" in sent[0]["text"]
