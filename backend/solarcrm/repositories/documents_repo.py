from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ._items import new_id, now_iso, required_id, strip_db_fields

DOCUMENT_KINDS = ("signed_contract", "invoice", "receipt", "upload")


def document_key(document_id: str) -> dict[str, str]:
    return {"pk": f"DOCUMENT#{required_id(document_id, 'document_id')}", "sk": "PROFILE"}


def opportunity_documents_gsi_pk(opportunity_id: str) -> str:
    return f"OPPORTUNITY_DOCUMENTS#{required_id(opportunity_id, 'opportunity_id')}"


def normalize_document(item: dict[str, Any] | None) -> dict[str, Any] | None:
    out = strip_db_fields(item)
    if out is None:
        return None
    out["_id"] = str(out.get("documentId") or "").strip() or None
    return out


def create_document(
    *,
    name: str,
    mime_type: str,
    storage_id: str,
    file_size: int,
    opportunity_id: str,
    kind: str,
    invoice_id: str | None = None,
    agreement_id: str | None = None,
) -> dict[str, Any]:
    # Document records are immutable: create only, never update.
    if kind not in DOCUMENT_KINDS:
        raise ValueError(f"Unknown document kind: {kind}")
    did = new_id("doc")
    now = now_iso()
    item: dict[str, Any] = {
        **document_key(did),
        "entityType": "Document",
        "documentId": did,
        "name": str(name or "").strip() or "document.pdf",
        "mimeType": mime_type,
        "storageId": required_id(storage_id, "storage_id"),
        "fileSize": int(file_size),
        "opportunityId": opportunity_id,
        "invoiceId": invoice_id,
        "agreementId": agreement_id,
        "kind": kind,
        "createdAt": now,
        "gsi1pk": opportunity_documents_gsi_pk(opportunity_id),
        "gsi1sk": f"{now}#{did}",
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_document(item) or {}


def get_document(document_id: str) -> dict[str, Any] | None:
    return normalize_document(get_main_table().get_item(key=document_key(document_id)))


def list_documents_for_opportunity(
    opportunity_id: str, *, limit: int = 50, next_token: str | None = None
) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(opportunity_documents_gsi_pk(opportunity_id)),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    return {"data": [d for d in (normalize_document(it) for it in pg.items) if d], "nextToken": pg.next_token}
