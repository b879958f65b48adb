from __future__ import annotations

from dataclasses import dataclass
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from ...settings import settings
from ..aws import aws_client


@dataclass(frozen=True, slots=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


def _build_mime(
    *, to_email: str, from_email: str, subject: str, html: str, text: str, attachments: list[EmailAttachment]
) -> bytes:
    root = MIMEMultipart("mixed")
    root["Subject"] = subject
    root["From"] = from_email
    root["To"] = to_email

    body = MIMEMultipart("alternative")
    body.attach(MIMEText(text, "plain", "utf-8"))
    body.attach(MIMEText(html, "html", "utf-8"))
    root.attach(body)

    for a in attachments:
        _, _, subtype = a.content_type.partition("/")
        part = MIMEApplication(a.content, _subtype=subtype or "octet-stream")
        part.add_header("Content-Disposition", "attachment", filename=a.filename)
        root.attach(part)
    return root.as_bytes()


def send_email(
    *,
    to_email: str | None,
    subject: str,
    html: str,
    text: str,
    attachments: list[EmailAttachment] | None = None,
    from_email: str | None = None,
) -> dict[str, Any]:
    to_ = str(to_email or "").strip()
    frm = str(from_email or settings.email_from_address or "").strip()
    if not to_ or not frm:
        return {"ok": False, "error": "missing_to_or_from"}
    subj = str(subject or "").strip()[:200] or settings.company_brand_name

    raw = _build_mime(
        to_email=to_,
        from_email=frm,
        subject=subj,
        html=html,
        text=text or "(empty)",
        attachments=list(attachments or []),
    )
    resp = aws_client("sesv2").send_email(
        FromEmailAddress=frm,
        Destination={"ToAddresses": [to_]},
        Content={"Raw": {"Data": raw}},
    )
    msg_id = (resp or {}).get("MessageId") if isinstance(resp, dict) else None
    return {"ok": True, "messageId": msg_id}
