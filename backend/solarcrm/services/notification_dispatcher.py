"""
Lifecycle events -> outbound SMS / email / in-app notifications.

State transitions only *enqueue* outbox events here (`agreement_sent`,
`agreement_signed`, ...). The outbox worker later calls the matching
`handle_*` function. Enqueue failures are logged and swallowed so a transition
that already committed is never rolled back or blocked by delivery plumbing.

Handlers return a result dict; `ok: False` parks the event as failed for an
operator resend. There is no automatic retry.
"""

from __future__ import annotations

import html as html_lib
from datetime import datetime, timedelta
from typing import Any, Callable

from ..domain.agreement_state import AWAITING_SIGNATURE, SIGNED
from ..domain.clock import parse_iso, to_iso, utc_now
from ..infrastructure.integrations.email_ses import EmailAttachment, send_email
from ..infrastructure.integrations.sms_semaphore import send_sms
from ..infrastructure.storage import blob_store
from ..observability.logging import get_logger
from ..pipeline.documents.document_pipeline import SignedContractSource, produce_document
from ..repositories import (
    agreements_repo,
    contacts_repo,
    documents_repo,
    invoices_repo,
    opportunities_repo,
    outbox_repo,
    users_repo,
)
from ..settings import settings

log = get_logger("notification_dispatcher")

AGREEMENT_SENT = "agreement.sent"
AGREEMENT_REMINDER = "agreement.reminder"
AGREEMENT_SIGNED = "agreement.signed"
OPPORTUNITY_CLOSED = "opportunity.closed"
INVOICE_CREATED = "invoice.created"

SMS_FOOTER = "(automated sms, do not reply)"


# --- enqueue (called from state transitions) ---


def _enqueue(event_type: str, payload: dict[str, Any], *, dedupe_key: str, not_before: str | None = None) -> dict[str, Any] | None:
    try:
        ev = outbox_repo.enqueue_event(
            event_type=event_type,
            payload=payload,
            dedupe_key=dedupe_key,
            not_before=not_before,
        )
    except Exception:
        log.exception("outbox_enqueue_failed", eventType=event_type, dedupeKey=dedupe_key)
        return None
    log.info("outbox_enqueued", eventType=event_type, eventId=ev.get("eventId"), notBefore=ev.get("notBefore"))
    return ev


def agreement_sent(agreement: dict[str, Any], *, now: datetime | None = None) -> None:
    """Immediate 'agreement sent' SMS plus the reminder job at T+72h."""
    aid = str(agreement.get("agreementId") or "")
    at = now or utc_now()
    _enqueue(AGREEMENT_SENT, {"agreementId": aid}, dedupe_key=f"{AGREEMENT_SENT}#{aid}")
    _enqueue(
        AGREEMENT_REMINDER,
        {"agreementId": aid},
        dedupe_key=f"{AGREEMENT_REMINDER}#{aid}",
        not_before=to_iso(at + timedelta(hours=int(settings.agreement_reminder_delay_hours))),
    )


def agreement_signed(agreement: dict[str, Any]) -> None:
    aid = str(agreement.get("agreementId") or "")
    _enqueue(AGREEMENT_SIGNED, {"agreementId": aid}, dedupe_key=f"{AGREEMENT_SIGNED}#{aid}")


def opportunity_closed(opportunity_id: str, *, trigger_id: str) -> None:
    # One event per close; a reopened-then-closed deal gets a new trigger id.
    _enqueue(
        OPPORTUNITY_CLOSED,
        {"opportunityId": opportunity_id, "triggerId": trigger_id},
        dedupe_key=f"{OPPORTUNITY_CLOSED}#{opportunity_id}#{trigger_id}",
    )


def invoice_created(invoice: dict[str, Any]) -> None:
    iid = str(invoice.get("invoiceId") or "")
    _enqueue(INVOICE_CREATED, {"invoiceId": iid}, dedupe_key=f"{INVOICE_CREATED}#{iid}")


def notify_agreement_signed_in_app(agreement: dict[str, Any], opportunity: dict[str, Any] | None) -> list[dict[str, Any]]:
    """In-app notifications: opportunity owner plus every project manager (each user once)."""
    client = str(agreement.get("clientName") or "The client")
    opp_name = str((opportunity or {}).get("name") or "the project")
    recipients: list[str] = []
    owner = str((opportunity or {}).get("ownerUserId") or "").strip()
    if owner:
        recipients.append(owner)
    for pm in users_repo.list_users_by_role("project_manager"):
        uid = str(pm.get("userId") or "").strip()
        if uid and uid not in recipients:
            recipients.append(uid)

    out: list[dict[str, Any]] = []
    for uid in recipients:
        out.append(
            users_repo.create_notification(
                user_id=uid,
                type="agreement_signed",
                title="Agreement signed",
                message=f"{client} signed the agreement for {opp_name}.",
                opportunity_id=agreement.get("opportunityId"),
                agreement_id=agreement.get("agreementId"),
            )
        )
    return out


# --- templates ---


def _sms(*lines: str) -> str:
    return "\n\n".join([*lines, SMS_FOOTER])


def sms_agreement_sent(first_name: str, email: str | None, sign_url: str) -> str:
    where = f"to your email at: {email}" if email else f"here: {sign_url}"
    return _sms(
        f"Hi {first_name},",
        f"We have sent the agreement {where}.",
        "Please review and sign the agreement so we can process the invoice and proceed with installation.",
        "Thank you!",
    )


def sms_agreement_reminder(first_name: str, sign_url: str) -> str:
    return _sms(
        f"Hi {first_name},",
        "We would like to follow up regarding the agreement we have sent over.",
        f"You can review and sign it here: {sign_url}",
    )


def sms_agreement_signed_client(first_name: str, email: str | None) -> str:
    copy = f"A copy of the signed agreement has been sent to your email at: {email}." if email else "We have received your signed agreement."
    return _sms(f"Hi {first_name},", f"Thank you for signing! {copy}", "Our team will contact you about the next steps.")


def sms_agreement_signed_pm(pm_first_name: str, client_name: str, opportunity_name: str) -> str:
    return _sms(
        f"Hi {pm_first_name},",
        f"Agreement signed by {client_name} for {opportunity_name}.",
        "Please check the CRM to review and proceed with project planning.",
    )


def sms_invoice_sent(first_name: str, email: str) -> str:
    return _sms(
        f"Hi {first_name},",
        f"We have sent the invoice to your email at: {email}.",
        f"Thank you for trusting {settings.company_legal_name}!",
    )


def sms_receipt_sent(first_name: str, email: str) -> str:
    return _sms(
        f"Hi {first_name},",
        f"A copy of the receipt has been sent to your email at: {email}.",
        f"Thank you for trusting {settings.company_legal_name}!",
    )


def email_body(first_name: str, paragraphs: list[str], *, link: tuple[str, str] | None = None) -> tuple[str, str]:
    """Return (html, text) for a branded transactional email."""
    esc = html_lib.escape
    brand = settings.company_brand_name
    parts = [f"<p>Hi {esc(first_name)},</p>"] + [f"<p>{esc(p)}</p>" for p in paragraphs]
    text_parts = [f"Hi {first_name},", *paragraphs]
    if link:
        label, url = link
        parts.append(
            f'<p style="text-align:center;margin:32px 0"><a href="{esc(url)}" '
            f'style="background:#ff5603;color:#fff;text-decoration:none;padding:14px 32px;border-radius:8px;'
            f'font-weight:600">{esc(label)}</a></p>'
        )
        text_parts.append(f"{label}: {url}")
    parts.append(f"<p>Best regards,<br><strong>{esc(brand)} Team</strong></p>")
    text_parts.append(f"Best regards,\n{brand} Team")
    html = (
        '<!DOCTYPE html><html><body style="font-family:Arial,sans-serif;line-height:1.6;color:#333;'
        'max-width:600px;margin:0 auto;padding:20px">'
        f'<div style="background:#ff5603;padding:24px;border-radius:12px 12px 0 0;text-align:center">'
        f'<h1 style="color:#fff;margin:0;font-size:24px">{esc(brand)}</h1></div>'
        '<div style="padding:30px;border:1px solid #e5e5e5;border-top:none">'
        + "".join(parts)
        + "</div></body></html>"
    )
    return html, "\n\n".join(text_parts)


# --- handlers (called by the outbox worker) ---


def sign_url(agreement: dict[str, Any]) -> str:
    return f"{settings.public_base_url}/sign/{agreement.get('signingToken') or ''}"


def first_name_of(person: dict[str, Any] | None) -> str:
    return str((person or {}).get("firstName") or "").strip() or "there"


def full_name_of(person: dict[str, Any] | None) -> str:
    p = person or {}
    return " ".join(s for s in (str(p.get("firstName") or "").strip(), str(p.get("lastName") or "").strip()) if s)


def _attempt(label: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Run one send; a transport failure becomes a failed result for this recipient only."""
    try:
        return fn()
    except Exception as e:
        log.exception("notification_send_failed", channel=label)
        return {"ok": False, "error": f"{type(e).__name__}: {e}"[:300]}


def _summarize(results: dict[str, dict[str, Any]]) -> dict[str, Any]:
    failed = sorted(k for k, r in results.items() if not r.get("ok"))
    out: dict[str, Any] = {"ok": not failed, "results": results}
    if failed:
        out["error"] = "send_failed:" + ",".join(failed)
    return out


def _load_agreement(payload: dict[str, Any]) -> dict[str, Any] | None:
    aid = str(payload.get("agreementId") or "").strip()
    return agreements_repo.get_agreement(aid, consistent=True) if aid else None


def handle_agreement_sent(payload: dict[str, Any]) -> dict[str, Any]:
    agreement = _load_agreement(payload)
    if not agreement:
        return {"ok": False, "error": "agreement_not_found"}
    contact = contacts_repo.get_contact(str(agreement.get("contactId") or "")) if agreement.get("contactId") else None
    if not contact:
        return {"ok": False, "error": "contact_not_found"}

    results: dict[str, dict[str, Any]] = {}
    first = first_name_of(contact)
    url = sign_url(agreement)
    email = str(contact.get("email") or "").strip() or None
    if email:
        location = str(agreement.get("projectLocation") or "your home")
        html, text = email_body(
            first,
            [
                f"Your solar installation agreement for {location} is ready.",
                "Please review the agreement carefully and sign it online. If you have any questions, feel free to reach out to us.",
            ],
            link=("Review and Sign", url),
        )
        results["email"] = _attempt(
            "email",
            lambda: send_email(
                to_email=email,
                subject=f"Solar Installation Agreement - {settings.company_brand_name}",
                html=html,
                text=text,
            ),
        )
    if contact.get("phone"):
        results["sms"] = _attempt("sms", lambda: send_sms(to=contact.get("phone"), message=sms_agreement_sent(first, email, url)))
    if not results:
        return {"ok": True, "skipped": "no_contact_channel"}
    return _summarize(results)


def handle_agreement_reminder(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Fires 72h after sending. The job is never cancelled; it re-reads the
    agreement and only reminds a customer who still has not signed.
    """
    agreement = _load_agreement(payload)
    if not agreement:
        return {"ok": True, "skipped": "agreement_not_found"}
    status = str(agreement.get("status") or "")
    if status not in AWAITING_SIGNATURE:
        log.info("agreement_reminder_skipped", agreementId=agreement.get("agreementId"), status=status)
        return {"ok": True, "skipped": f"status_{status}"}
    contact = contacts_repo.get_contact(str(agreement.get("contactId") or "")) if agreement.get("contactId") else None
    if not contact or not contact.get("phone"):
        return {"ok": True, "skipped": "no_phone"}
    msg = sms_agreement_reminder(first_name_of(contact), sign_url(agreement))
    return _summarize({"sms": _attempt("sms", lambda: send_sms(to=contact.get("phone"), message=msg))})


def _signed_pdf(agreement: dict[str, Any]) -> EmailAttachment | None:
    """
    The signed contract as an attachment, producing it on first use.

    Best-effort: any failure is logged and the confirmation goes out without
    an attachment.
    """
    aid = str(agreement.get("agreementId") or "")
    try:
        existing_id = str(agreement.get("signedDocumentId") or "").strip()
        if existing_id:
            doc = documents_repo.get_document(existing_id)
            if doc and doc.get("storageId"):
                return EmailAttachment(filename=str(doc.get("name") or "agreement-signed.pdf"), content=blob_store.fetch(str(doc["storageId"])))
            return None

        source_id = str(agreement.get("documentId") or "").strip()
        source_doc = documents_repo.get_document(source_id) if source_id else None
        if not source_doc:
            log.info("signed_pdf_skipped_no_source", agreementId=aid)
            return None
        signed_at = parse_iso(agreement.get("signedAt")) or utc_now()
        produced = produce_document(
            SignedContractSource(
                source_document=source_doc,
                signature_data=str(agreement.get("signatureData") or ""),
                signed_by_name=str(agreement.get("signedByName") or ""),
                signed_at=signed_at,
            ),
            opportunity_id=str(agreement.get("opportunityId") or ""),
            agreement_id=aid,
        )
        attached = agreements_repo.attach_signed_document(aid, document_id=produced.document_id)
        if attached is None:
            log.warning("signed_document_already_attached", agreementId=aid, documentId=produced.document_id)
        return EmailAttachment(filename=str(produced.document.get("name") or "agreement-signed.pdf"), content=produced.data)
    except Exception:
        # Storage or render failures only cost the attachment.
        log.exception("signed_pdf_unavailable", agreementId=aid)
        return None


def handle_agreement_signed(payload: dict[str, Any]) -> dict[str, Any]:
    agreement = _load_agreement(payload)
    if not agreement:
        return {"ok": False, "error": "agreement_not_found"}
    if agreement.get("status") != SIGNED:
        return {"ok": True, "skipped": "not_signed"}

    attachment = _signed_pdf(agreement)
    opportunity = opportunities_repo.get_opportunity(str(agreement.get("opportunityId") or ""))
    contact = contacts_repo.get_contact(str(agreement.get("contactId") or "")) if agreement.get("contactId") else None
    client_name = str(agreement.get("clientName") or full_name_of(contact) or "Client")
    opp_name = str((opportunity or {}).get("name") or client_name)

    results: dict[str, dict[str, Any]] = {}
    if contact:
        first = first_name_of(contact)
        email = str(contact.get("email") or "").strip() or None
        if email:
            paragraphs = ["Thank you for signing your solar installation agreement."]
            paragraphs.append(
                "A copy of the signed agreement is attached for your records."
                if attachment
                else "Our team will send you a copy of the signed agreement shortly."
            )
            html, text = email_body(first, paragraphs)
            results["client_email"] = _attempt(
                "email",
                lambda: send_email(
                    to_email=email,
                    subject=f"Signed Agreement - {settings.company_brand_name}",
                    html=html,
                    text=text,
                    attachments=[attachment] if attachment else None,
                ),
            )
        if contact.get("phone"):
            results["client_sms"] = _attempt(
                "sms", lambda: send_sms(to=contact.get("phone"), message=sms_agreement_signed_client(first, email))
            )

    opp_url = f"{settings.public_base_url}/pipeline?opportunity={agreement.get('opportunityId') or ''}"
    for pm in users_repo.list_users_by_role("project_manager"):
        uid = str(pm.get("userId") or "")
        pm_first = first_name_of(pm)
        if pm.get("email"):
            html, text = email_body(
                pm_first,
                [f"Agreement signed by {client_name} for {opp_name}.", "Please review and proceed with project planning."],
                link=("Open in CRM", opp_url),
            )
            results[f"pm_email:{uid}"] = _attempt(
                "email",
                lambda: send_email(
                    to_email=pm.get("email"),
                    subject=f"Agreement Signed: {opp_name} - {settings.company_brand_name}",
                    html=html,
                    text=text,
                ),
            )
        if pm.get("phone"):
            results[f"pm_sms:{uid}"] = _attempt(
                "sms", lambda: send_sms(to=pm.get("phone"), message=sms_agreement_signed_pm(pm_first, client_name, opp_name))
            )

    out = _summarize(results)
    out["attachment"] = bool(attachment)
    return out


def handle_opportunity_closed(payload: dict[str, Any]) -> dict[str, Any]:
    from .billing_service import issue_receipt

    opp_id = str(payload.get("opportunityId") or "").strip()
    trigger = str(payload.get("triggerId") or "").strip() or "manual"
    opportunity = opportunities_repo.get_opportunity(opp_id) if opp_id else None
    if not opportunity:
        return {"ok": False, "error": "opportunity_not_found"}
    contact = contacts_repo.get_contact(str(opportunity.get("contactId") or "")) if opportunity.get("contactId") else None
    if not contact:
        return {"ok": False, "error": "contact_not_found"}
    email = str(contact.get("email") or "").strip()
    if not email:
        return {"ok": False, "error": "contact_has_no_email"}

    issued = issue_receipt(opportunity, contact, trigger_id=trigger)
    first = first_name_of(contact)
    html, text = email_body(
        first,
        ["Thank you for choosing us for your solar installation!", "Please find attached the official receipt for your project."],
    )
    results = {
        "email": _attempt(
            "email",
            lambda: send_email(
                to_email=email,
                subject=f"Receipt {issued.receipt.get('receiptNumber')} - {settings.company_brand_name}",
                html=html,
                text=text,
                attachments=[EmailAttachment(filename=issued.file_name, content=issued.data)],
            ),
        )
    }
    if contact.get("phone"):
        results["sms"] = _attempt("sms", lambda: send_sms(to=contact.get("phone"), message=sms_receipt_sent(first, email)))
    out = _summarize(results)
    out["receiptId"] = issued.receipt.get("receiptId")
    return out


def handle_invoice_created(payload: dict[str, Any]) -> dict[str, Any]:
    from .billing_service import render_invoice_document

    iid = str(payload.get("invoiceId") or "").strip()
    invoice = invoices_repo.get_invoice(iid) if iid else None
    if not invoice:
        return {"ok": False, "error": "invoice_not_found"}
    opportunity = opportunities_repo.get_opportunity(str(invoice.get("opportunityId") or ""))
    contact = (
        contacts_repo.get_contact(str(opportunity.get("contactId") or ""))
        if opportunity and opportunity.get("contactId")
        else None
    )
    if not contact:
        return {"ok": False, "error": "contact_not_found"}
    email = str(contact.get("email") or "").strip()
    if not email:
        return {"ok": False, "error": "contact_has_no_email"}

    produced = render_invoice_document(invoice, opportunity or {}, contact)
    first = first_name_of(contact)
    html, text = email_body(
        first,
        [
            f"Please pay your invoice {invoice.get('invoiceNumber') or ''} from {settings.company_legal_name}.",
            "See the attached file for a copy of the invoice.",
        ],
        link=("View Invoice", produced.url),
    )
    results = {
        "email": _attempt(
            "email",
            lambda: send_email(
                to_email=email,
                subject=f"Invoice {invoice.get('invoiceNumber') or ''} - {settings.company_brand_name}",
                html=html,
                text=text,
                attachments=[EmailAttachment(filename=str(produced.document.get("name")), content=produced.data)],
            ),
        )
    }
    if contact.get("phone"):
        results["sms"] = _attempt("sms", lambda: send_sms(to=contact.get("phone"), message=sms_invoice_sent(first, email)))
    out = _summarize(results)
    out["documentId"] = produced.document_id
    return out


HANDLERS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    AGREEMENT_SENT: handle_agreement_sent,
    AGREEMENT_REMINDER: handle_agreement_reminder,
    AGREEMENT_SIGNED: handle_agreement_signed,
    OPPORTUNITY_CLOSED: handle_opportunity_closed,
    INVOICE_CREATED: handle_invoice_created,
}