from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..middleware.signing_rate_limit import client_ip
from ..services import agreement_service

router = APIRouter(tags=["signing"])


class SignRequest(BaseModel):
    signatureData: str = Field(..., min_length=1)
    signedByName: str = Field(..., min_length=1, max_length=200)


@router.get("/sign/{token}")
def get_signing_view(token: str):
    return {"ok": True, "agreement": agreement_service.get_by_token(token)}


@router.post("/sign/{token}/viewed")
def mark_viewed(token: str):
    agreement = agreement_service.mark_viewed(token)
    return {"ok": True, "status": agreement.get("status")}


@router.post("/sign/{token}")
def sign(request: Request, token: str, body: SignRequest):
    # AlreadySigned / Expired surface as terminal problem responses (409 / 410).
    signed = agreement_service.sign(
        token,
        signature_data=body.signatureData,
        signed_by_name=body.signedByName,
        signed_by_ip=client_ip(request),
    )
    return {"ok": True, "signedAt": signed.get("signedAt")}
