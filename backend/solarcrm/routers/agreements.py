from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..services import agreement_service
from ._actor import actor_id

router = APIRouter(tags=["agreements"])


class CreateAgreementRequest(BaseModel):
    opportunityId: str = Field(..., min_length=1)
    contactId: str = Field(..., min_length=1)
    totalAmount: Decimal = Field(..., ge=0)
    documentId: str | None = None
    clientName: str = Field(..., min_length=1)
    clientAddress: str | None = None
    projectLocation: str | None = None
    systemType: str | None = None
    systemSize: str | None = None
    batteryCapacity: str | None = None
    agreementDate: str | None = None
    warrantyTerms: str | None = None
    additionalTerms: str | None = None
    materials: list[Any] = Field(default_factory=list)
    payments: list[Any] = Field(default_factory=list)
    phases: list[Any] = Field(default_factory=list)


@router.post("/agreements", status_code=201)
def create_agreement(request: Request, body: CreateAgreementRequest):
    fields = body.model_dump(include=set(agreement_service.AGREEMENT_FIELDS))
    agreement = agreement_service.create_agreement(
        opportunity_id=body.opportunityId,
        contact_id=body.contactId,
        total_amount=body.totalAmount,
        fields=fields,
        materials=body.materials,
        payments=body.payments,
        phases=body.phases,
        document_id=body.documentId,
        created_by=actor_id(request),
    )
    return {"ok": True, "agreement": agreement}


@router.get("/agreements/{agreementId}")
def get_agreement(agreementId: str):
    return {"ok": True, "agreement": agreement_service.get_agreement(agreementId)}


@router.get("/opportunities/{opportunityId}/agreements")
def list_agreements(opportunityId: str, limit: int = 50, nextToken: str | None = None):
    page = agreement_service.list_for_opportunity(
        opportunityId, limit=max(1, min(100, int(limit or 50))), next_token=nextToken
    )
    return {"ok": True, **page}


@router.post("/agreements/{agreementId}/send")
def send_agreement(request: Request, agreementId: str):
    agreement = agreement_service.mark_sent(agreementId, actor=actor_id(request))
    return {"ok": True, "agreement": agreement}
