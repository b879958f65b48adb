from __future__ import annotations

import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..observability.context import request_id_var

REQUEST_ID_HEADER = "X-Request-Id"
# Inbound ids end up in every log line; only accept plain tokens.
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(inbound: str | None) -> str:
    rid = str(inbound or "").strip()
    return rid if _SAFE_ID_RE.fullmatch(rid) else str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id for logs and problem bodies, echoed as X-Request-Id."""

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get("x-request-id"))
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
