from __future__ import annotations

from typing import Any

from ..domain.clock import to_iso, utc_now
from ..errors import CrmError, NotFoundError
from ..observability.logging import configure_logging, get_logger
from ..repositories.outbox_repo import claim_event, get_event, list_due, mark_done, mark_failed, requeue_event
from ..services.notification_dispatcher import HANDLERS
from ..settings import settings

log = get_logger("outbox_worker")


def dispatch_event(event: dict[str, Any]) -> dict[str, Any]:
    """Dispatch a single outbox event to its notification handler."""
    et = str(event.get("eventType") or "").strip()
    payload_raw = event.get("payload")
    payload: dict[str, Any] = payload_raw if isinstance(payload_raw, dict) else {}

    handler = HANDLERS.get(et)
    if handler is None:
        return {"ok": False, "error": "unknown_event_type", "eventType": et}
    return handler(payload)


def run_once(*, limit: int = 30, now: str | None = None) -> dict[str, Any]:
    """
    Process every event that is due. Safe to run from cron/ECS scheduled task.

    A failing event is parked as `failed` (no automatic retry); see `resend`.
    """
    lim = max(1, min(100, int(limit or 30)))
    scanned = 0
    processed = 0
    failed = 0

    for it in list_due(now=now or to_iso(utc_now()), limit=lim):
        scanned += 1
        eid = str(it.get("eventId") or "").strip()
        if not eid:
            continue
        claimed = claim_event(event_id=eid)
        if not claimed:
            continue
        try:
            res = dispatch_event(claimed)
        except Exception as e:
            failed += 1
            log.exception("outbox_event_failed", eventId=eid, eventType=claimed.get("eventType"))
            mark_failed(event_id=eid, error=f"{type(e).__name__}: {e}")
            continue
        if res.get("ok"):
            processed += 1
            mark_done(event_id=eid, result=res)
        else:
            failed += 1
            log.warning("outbox_event_rejected", eventId=eid, eventType=claimed.get("eventType"), error=res.get("error"))
            mark_failed(event_id=eid, error=str(res.get("error") or "dispatch_failed"))

    out = {"ok": True, "scanned": scanned, "processed": processed, "failed": failed}
    log.info("outbox_run_once_done", **out)
    return out


def resend(event_id: str) -> dict[str, Any]:
    """Operator-initiated resend: a failed event goes back to pending, due now."""
    current = get_event(event_id)
    if not current:
        raise NotFoundError(message="Event not found")
    ev = requeue_event(event_id=event_id)
    if not ev:
        raise CrmError(
            message=f"Only failed events can be resent (status: {current.get('status')})",
            code="event_not_failed",
            status_code=409,
        )
    log.info("outbox_event_requeued", eventId=event_id, eventType=ev.get("eventType"))
    return ev


if __name__ == "__main__":
    configure_logging(level=settings.log_level)
    run_once(limit=30)
