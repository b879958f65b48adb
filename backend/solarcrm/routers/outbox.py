from __future__ import annotations

from fastapi import APIRouter

from ..workers.outbox_worker import resend

router = APIRouter(tags=["outbox"])


@router.post("/outbox/{eventId}/resend")
def resend_event(eventId: str):
    ev = resend(eventId)
    return {"ok": True, "event": {"eventId": ev.get("eventId"), "eventType": ev.get("eventType"), "status": ev.get("status")}}
