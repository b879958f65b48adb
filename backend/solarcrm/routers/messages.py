from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ..services import message_ingest

router = APIRouter(tags=["messages"])


class IngestMessageRequest(BaseModel):
    channel: str = Field(..., min_length=1)
    platformUserId: str = Field(..., min_length=1)
    externalMessageId: str = Field(..., min_length=1)
    text: str | None = None
    firstName: str | None = None
    lastName: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: int | str | None = None


@router.post("/messages/ingest")
def ingest(body: IngestMessageRequest):
    out = message_ingest.ingest_message(
        channel=body.channel,
        platform_user_id=body.platformUserId,
        text=body.text,
        external_message_id=body.externalMessageId,
        first_name=body.firstName,
        last_name=body.lastName,
        attachments=body.attachments,
        timestamp=body.timestamp,
    )
    return {"ok": True, **out}
