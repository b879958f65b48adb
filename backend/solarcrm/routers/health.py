from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter(tags=["health"])


def _configured(value: object) -> str:
    return "configured" if str(value or "").strip() else "missing"


@router.get("/")
def health():
    # Unauthenticated: configuration presence only, never values.
    return {
        "ok": True,
        "service": f"{settings.company_brand_name} CRM API",
        "version": "1.0.0",
        "environment": settings.normalized_environment,
        "integrations": {
            "dynamodb": _configured(settings.ddb_table_name),
            "documents": _configured(settings.assets_bucket_name),
            "email": _configured(settings.email_from_address),
            "sms": _configured(settings.semaphore_api_key),
        },
    }
