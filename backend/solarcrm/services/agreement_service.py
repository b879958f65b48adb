"""
Agreement lifecycle: create -> send -> view -> sign.

Every transition is a single conditional write on the agreement item. Side
effects (stage advancement, notifications, PDFs) run after the write and never
undo it; each is logged on failure and dropped.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable

from ..db.dynamodb.errors import DdbConflict
from ..domain import agreement_state
from ..domain.billing import to_money
from ..domain.clock import Clock, to_epoch_ms, to_iso, utc_now
from ..domain.tokens import compute_expiry, issue_signing_token, is_well_formed_token
from ..errors import AlreadySignedError, ExpiredError, NotFoundError, ValidationError
from ..observability.logging import get_logger
from ..repositories import agreements_repo, contacts_repo, documents_repo, opportunities_repo
from ..repositories._items import new_id
from . import notification_dispatcher, opportunity_service

log = get_logger("agreement_service")

TokenFactory = Callable[[], str]

_TOKEN_ATTEMPTS = 3

# Client, system and financial terms copied onto the agreement as given.
AGREEMENT_FIELDS = (
    "clientName",
    "clientAddress",
    "projectLocation",
    "systemType",
    "systemSize",
    "batteryCapacity",
    "agreementDate",
    "warrantyTerms",
    "additionalTerms",
)

# Never returned to the public signing page.
_PRIVATE_FIELDS = ("signatureData", "signedByIp", "signingToken")


def token_ref(token: str | None) -> str:
    """Loggable reference to a signing token (the token itself is a credential)."""
    return hashlib.sha256(str(token or "").encode("utf-8")).hexdigest()[:12]


def _after_commit(step: str, fn: Callable[[], Any], **ctx: Any) -> None:
    try:
        fn()
    except Exception:
        log.exception("agreement_follow_on_failed", step=step, **ctx)


def create_agreement(
    *,
    opportunity_id: str,
    contact_id: str,
    total_amount: Any,
    fields: dict[str, Any] | None = None,
    materials: list[Any] | None = None,
    payments: list[Any] | None = None,
    phases: list[Any] | None = None,
    document_id: str | None = None,
    created_by: str | None = None,
    clock: Clock = utc_now,
    token_factory: TokenFactory = issue_signing_token,
) -> dict[str, Any]:
    if not opportunities_repo.get_opportunity(opportunity_id):
        raise NotFoundError(message="Opportunity not found")
    if not contacts_repo.get_contact(contact_id):
        raise NotFoundError(message="Contact not found")
    if document_id:
        doc = documents_repo.get_document(document_id)
        if not doc:
            raise NotFoundError(message="Source document not found")
        if str(doc.get("mimeType") or "") != "application/pdf":
            raise ValidationError(message="Source document must be a PDF", code="invalid_document")

    amount = to_money(total_amount, field="totalAmount")
    if amount < 0:
        raise ValidationError(message="totalAmount cannot be negative", code="invalid_amount")

    created = clock()
    # Stored timestamps carry millisecond precision; derive both from the same instant.
    created = created.replace(microsecond=(created.microsecond // 1000) * 1000)
    expires = compute_expiry(created)
    terms = {k: v for k, v in (fields or {}).items() if k in AGREEMENT_FIELDS and v is not None}
    base: dict[str, Any] = {
        **terms,
        "opportunityId": opportunity_id,
        "contactId": contact_id,
        "documentId": document_id,
        "totalAmount": amount,
        "materialsJson": json.dumps(materials or []),
        "paymentsJson": json.dumps(payments or []),
        "phasesJson": json.dumps(phases or []),
        "status": agreement_state.PENDING,
        "createdBy": created_by,
        "createdAt": to_iso(created),
        "updatedAt": to_iso(created),
        # Fixed at creation; never recomputed.
        "expiresAt": to_iso(expires),
        "expiresAtMs": to_epoch_ms(expires),
    }

    for attempt in range(1, _TOKEN_ATTEMPTS + 1):
        token = token_factory()
        if not is_well_formed_token(token):
            raise ValueError("token_factory produced a malformed signing token")
        try:
            agreement = agreements_repo.create_agreement(
                agreement={**base, "agreementId": new_id("agr"), "signingToken": token}
            )
        except DdbConflict:
            log.warning("signing_token_collision", attempt=attempt, tokenRef=token_ref(token))
            continue
        log.info(
            "agreement_created",
            agreementId=agreement.get("agreementId"),
            opportunityId=opportunity_id,
            tokenRef=token_ref(token),
        )
        return agreement
    raise RuntimeError("Could not allocate a unique signing token")


def get_agreement(agreement_id: str) -> dict[str, Any]:
    agreement = agreements_repo.get_agreement(agreement_id)
    if not agreement:
        raise NotFoundError(message="Agreement not found")
    return agreement


def _by_token(token: str) -> dict[str, Any]:
    # Malformed tokens cannot exist; skip the lookup.
    agreement = agreements_repo.get_agreement_by_token(token) if is_well_formed_token(token) else None
    if not agreement:
        raise NotFoundError(message="Agreement not found")
    return agreement


def _parse_payload(raw: Any) -> list[Any]:
    try:
        val = json.loads(raw) if isinstance(raw, str) and raw else []
    except ValueError:
        return []
    return val if isinstance(val, list) else []


def get_by_token(token: str, *, clock: Clock = utc_now) -> dict[str, Any]:
    """Public signing view: parsed payloads plus the derived `isExpired` flag."""
    agreement = _by_token(token)
    view = {k: v for k, v in agreement.items() if k not in _PRIVATE_FIELDS}
    view["materials"] = _parse_payload(agreement.get("materialsJson"))
    view["payments"] = _parse_payload(agreement.get("paymentsJson"))
    view["phases"] = _parse_payload(agreement.get("phasesJson"))
    view["isExpired"] = agreement_state.is_expired(agreement, clock())
    view["isSigned"] = agreement.get("status") == agreement_state.SIGNED
    return view


def mark_sent(agreement_id: str, *, actor: str | None = None, clock: Clock = utc_now) -> dict[str, Any]:
    """
    pending -> sent. From any later status this is a no-op: nothing is
    written and no SMS, reminder or stage change is triggered.
    """
    agreement = agreements_repo.get_agreement(agreement_id, consistent=True)
    if not agreement:
        raise NotFoundError(message="Agreement not found")
    if not agreement_state.can_mark_sent(agreement.get("status")):
        log.info("agreement_mark_sent_noop", agreementId=agreement_id, status=agreement.get("status"))
        return agreement

    now = clock()
    updated = agreements_repo.mark_sent(agreement_id, sent_at=to_iso(now))
    if updated is None:
        # Lost a race with another send (or a view); that writer owns the side effects.
        return agreements_repo.get_agreement(agreement_id, consistent=True) or agreement

    log.info("agreement_sent", agreementId=agreement_id)
    opp_id = str(updated.get("opportunityId") or "")
    _after_commit("notify_sent", lambda: notification_dispatcher.agreement_sent(updated, now=now), agreementId=agreement_id)
    _after_commit(
        "advance_stage",
        lambda: opportunity_service.advance_stage_if_behind(opp_id, "contract_sent", reason="agreement_sent", actor=actor),
        agreementId=agreement_id,
    )
    return updated


def mark_viewed(token: str, *, clock: Clock = utc_now) -> dict[str, Any]:
    """pending|sent -> viewed. Viewed or signed agreements are returned untouched."""
    agreement = _by_token(token)
    if not agreement_state.can_mark_viewed(agreement.get("status")):
        return agreement
    aid = str(agreement.get("agreementId") or "")
    updated = agreements_repo.mark_viewed(aid, viewed_at=to_iso(clock()))
    if updated is None:
        return agreements_repo.get_agreement(aid, consistent=True) or agreement
    log.info("agreement_viewed", agreementId=aid)
    return updated


def sign(
    token: str,
    *,
    signature_data: str,
    signed_by_name: str,
    signed_by_ip: str | None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """
    Record the customer's signature.

    Raises AlreadySignedError / ExpiredError before anything is written. The
    write itself re-checks both conditions, so of two concurrent signers only
    one succeeds. Everything after the write is best-effort.
    """
    data = agreement_state.validate_signature_payload(signature_data)
    name = str(signed_by_name or "").strip()
    if not name:
        raise ValidationError(message="Signer name is required", code="invalid_signer_name")

    agreement = _by_token(token)
    aid = str(agreement.get("agreementId") or "")
    now = clock()
    agreement_state.ensure_signable(agreement, now)

    try:
        signed = agreements_repo.record_signature(
            aid,
            signature_data=data,
            signed_by_name=name[:200],
            signed_by_ip=(str(signed_by_ip).strip() or None) if signed_by_ip else None,
            signed_at=to_iso(now),
            now_ms=to_epoch_ms(now),
        )
    except DdbConflict:
        fresh = agreements_repo.get_agreement(aid, consistent=True)
        if fresh and fresh.get("status") == agreement_state.SIGNED:
            raise AlreadySignedError() from None
        if fresh and agreement_state.is_expired(fresh, now):
            raise ExpiredError() from None
        raise

    log.info("agreement_signed", agreementId=aid, opportunityId=signed.get("opportunityId"), tokenRef=token_ref(token))

    opp_id = str(signed.get("opportunityId") or "")
    opportunity = None
    try:
        opportunity = opportunities_repo.get_opportunity(opp_id) if opp_id else None
    except Exception:
        log.exception("agreement_follow_on_failed", step="load_opportunity", agreementId=aid)
    _after_commit(
        "in_app_notifications",
        lambda: notification_dispatcher.notify_agreement_signed_in_app(signed, opportunity),
        agreementId=aid,
    )
    _after_commit(
        "advance_stage",
        lambda: opportunity_service.advance_stage_if_behind(opp_id, "for_installation", reason="agreement_signed"),
        agreementId=aid,
    )
    _after_commit("notify_signed", lambda: notification_dispatcher.agreement_signed(signed), agreementId=aid)
    return signed


def list_for_opportunity(opportunity_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    return agreements_repo.list_agreements_for_opportunity(opportunity_id, limit=limit, next_token=next_token)
