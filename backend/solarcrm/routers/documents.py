from __future__ import annotations

from fastapi import APIRouter

from ..errors import NotFoundError
from ..pipeline.documents.document_pipeline import document_url

router = APIRouter(tags=["documents"])


@router.post("/documents/{documentId}/url")
def get_document_url(documentId: str):
    url = document_url(documentId)
    if not url:
        raise NotFoundError(message="Document not found")
    return {"ok": True, "url": url}
