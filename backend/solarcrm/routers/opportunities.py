from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..services import opportunity_service
from ._actor import actor_id

router = APIRouter(tags=["opportunities"])


class SetStageRequest(BaseModel):
    stage: str = Field(..., min_length=1)


@router.put("/opportunities/{opportunityId}/stage")
def set_stage(request: Request, opportunityId: str, body: SetStageRequest):
    # Manual moves may go backwards; only automated moves are forward-only.
    opp = opportunity_service.set_stage_manually(opportunityId, body.stage, actor=actor_id(request))
    return {"ok": True, "opportunity": opp}
