from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ._items import now_iso, required_id, strip_db_fields


def agreement_key(agreement_id: str) -> dict[str, str]:
    return {"pk": f"AGREEMENT#{required_id(agreement_id, 'agreement_id')}", "sk": "PROFILE"}


def token_claim_key(token: str) -> dict[str, str]:
    return {"pk": f"SIGNING_TOKEN#{required_id(token, 'token')}", "sk": "CLAIM"}


def opportunity_agreements_gsi_pk(opportunity_id: str) -> str:
    return f"OPPORTUNITY_AGREEMENTS#{required_id(opportunity_id, 'opportunity_id')}"


def normalize_agreement(item: dict[str, Any] | None) -> dict[str, Any] | None:
    out = strip_db_fields(item)
    if out is None:
        return None
    out["_id"] = str(out.get("agreementId") or "").strip() or None
    return out


def create_agreement(*, agreement: dict[str, Any]) -> dict[str, Any]:
    """
    Write the agreement and its signing-token claim in one transaction.

    The claim item makes the token unique across the table; a collision
    surfaces as DdbConflict so the caller can retry with a fresh token.
    """
    aid = required_id(agreement.get("agreementId"), "agreementId")
    token = required_id(agreement.get("signingToken"), "signingToken")
    created_at = str(agreement.get("createdAt") or now_iso())
    item: dict[str, Any] = {
        **agreement_key(aid),
        "entityType": "Agreement",
        **agreement,
        "gsi1pk": opportunity_agreements_gsi_pk(str(agreement.get("opportunityId") or "")),
        "gsi1sk": f"{created_at}#{aid}",
    }
    claim = {
        **token_claim_key(token),
        "entityType": "SigningTokenClaim",
        "agreementId": aid,
        "createdAt": created_at,
    }
    t = get_main_table()
    t.transact_write(
        puts=[
            t.tx_put(item=item, condition_expression="attribute_not_exists(pk)"),
            t.tx_put(item=claim, condition_expression="attribute_not_exists(pk)"),
        ]
    )
    return normalize_agreement(item) or {}


def get_agreement(agreement_id: str, *, consistent: bool = False) -> dict[str, Any] | None:
    return normalize_agreement(get_main_table().get_item(key=agreement_key(agreement_id), consistent=consistent))


def get_agreement_by_token(token: str) -> dict[str, Any] | None:
    tok = str(token or "").strip()
    if not tok:
        return None
    claim = get_main_table().get_item(key=token_claim_key(tok))
    if not claim or not claim.get("agreementId"):
        return None
    agreement = get_agreement(str(claim["agreementId"]), consistent=True)
    # The claim and the agreement are written together; a mismatch is a stale claim.
    if not agreement or agreement.get("signingToken") != tok:
        return None
    return agreement


def list_agreements_for_opportunity(
    opportunity_id: str, *, limit: int = 50, next_token: str | None = None
) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(opportunity_agreements_gsi_pk(opportunity_id)),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    items = [a for a in (normalize_agreement(it) for it in pg.items) if a]
    return {"data": items, "nextToken": pg.next_token}


def _transition(
    agreement_id: str,
    *,
    set_fields: dict[str, Any],
    condition_expression: str,
    condition_values: dict[str, Any],
) -> dict[str, Any] | None:
    names = {"#s": "status"}
    values: dict[str, Any] = dict(condition_values)
    parts: list[str] = []
    for i, (k, v) in enumerate(set_fields.items()):
        if k == "status":
            parts.append("#s = :new_status")
            values[":new_status"] = v
            continue
        parts.append(f"#f{i} = :v{i}")
        names[f"#f{i}"] = k
        values[f":v{i}"] = v
    try:
        updated = get_main_table().update_item(
            key=agreement_key(agreement_id),
            update_expression="SET " + ", ".join(parts),
            expression_attribute_names=names,
            expression_attribute_values=values,
            condition_expression=condition_expression,
            return_values="ALL_NEW",
        )
    except DdbConflict:
        return None
    return normalize_agreement(updated)


def mark_sent(agreement_id: str, *, sent_at: str) -> dict[str, Any] | None:
    """pending -> sent. None when the agreement is missing or already past pending."""
    return _transition(
        agreement_id,
        set_fields={"status": "sent", "sentAt": sent_at, "updatedAt": sent_at},
        condition_expression="attribute_exists(pk) AND #s = :pending",
        condition_values={":pending": "pending"},
    )


def mark_viewed(agreement_id: str, *, viewed_at: str) -> dict[str, Any] | None:
    """pending|sent -> viewed. None when the view is a no-op."""
    return _transition(
        agreement_id,
        set_fields={"status": "viewed", "viewedAt": viewed_at, "updatedAt": viewed_at},
        condition_expression="attribute_exists(pk) AND #s IN (:pending, :sent)",
        condition_values={":pending": "pending", ":sent": "sent"},
    )


def record_signature(
    agreement_id: str,
    *,
    signature_data: str,
    signed_by_name: str,
    signed_by_ip: str | None,
    signed_at: str,
    now_ms: int,
) -> dict[str, Any]:
    """
    Record the signature in a single conditional write.

    The condition re-checks "not yet signed" and "not expired" at write time, so
    of two concurrent signers exactly one wins. The loser gets DdbConflict.
    """
    updated = get_main_table().update_item(
        key=agreement_key(agreement_id),
        update_expression=(
            "SET #s = :signed, signatureData = :sig, signedByName = :name, "
            "signedByIp = :ip, signedAt = :at, updatedAt = :at"
        ),
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={
            ":signed": "signed",
            ":sig": signature_data,
            ":name": signed_by_name,
            ":ip": signed_by_ip,
            ":at": signed_at,
            ":now": int(now_ms),
        },
        condition_expression="attribute_exists(pk) AND #s <> :signed AND expiresAtMs >= :now",
        return_values="ALL_NEW",
    )
    return normalize_agreement(updated) or {}


def attach_signed_document(agreement_id: str, *, document_id: str) -> dict[str, Any] | None:
    """Set signedDocumentId once. None when it was already attached."""
    try:
        updated = get_main_table().update_item(
            key=agreement_key(agreement_id),
            update_expression="SET signedDocumentId = :d, updatedAt = :u",
            expression_attribute_names={"#s": "status"},
            expression_attribute_values={":d": document_id, ":u": now_iso(), ":signed": "signed"},
            condition_expression="#s = :signed AND attribute_not_exists(signedDocumentId)",
            return_values="ALL_NEW",
        )
    except DdbConflict:
        return None
    return normalize_agreement(updated)
