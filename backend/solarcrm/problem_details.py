"""
RFC 7807 problem+json bodies for every error the API returns.

Shape: type/title/status/detail/instance/requestId, plus `errors` for request
validation and an `extensions` object for machine-readable members such as
the CRM error `code` and the signing page's `terminal` flag.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.responses import ORJSONResponse

from .observability.logging import redact_path
from .settings import get_settings

PROBLEM_JSON = "application/problem+json"

_TITLE_OVERRIDES = {
    410: "Gone",
    422: "Unprocessable Entity",
}


def default_title(status_code: int) -> str:
    if status_code in _TITLE_OVERRIDES:
        return _TITLE_OVERRIDES[status_code]
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Internal Server Error" if status_code >= 500 else "Error"


def _request_id(request: Request) -> str | None:
    rid = getattr(getattr(request, "state", None), "request_id", None) or request.headers.get("x-request-id")
    return str(rid) if rid else None


def problem_payload(
    *,
    request: Request,
    status_code: int,
    title: str | None = None,
    detail: str | None = None,
    type: str = "about:blank",
    errors: list[dict[str, Any]] | None = None,
    extensions: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": type or "about:blank",
        "title": title or default_title(int(status_code)),
        "status": int(status_code),
    }
    if detail:
        payload["detail"] = str(detail)
    # Signing URLs carry the token; the instance member must not echo it.
    path = str(getattr(request.url, "path", "") or "")
    if path:
        payload["instance"] = redact_path(path)
    rid = _request_id(request)
    if rid:
        payload["requestId"] = rid
    if errors:
        payload["errors"] = errors
    payload["extensions"] = dict(extensions or {})
    return payload


def problem_response(
    *,
    request: Request,
    status_code: int,
    title: str | None = None,
    detail: str | None = None,
    type: str = "about:blank",
    errors: list[dict[str, Any]] | None = None,
    extensions: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> ORJSONResponse:
    # Server errors carry no internal detail in production.
    if int(status_code) >= 500 and get_settings().is_production:
        detail = None

    return ORJSONResponse(
        status_code=int(status_code),
        content=problem_payload(
            request=request,
            status_code=int(status_code),
            title=title,
            detail=detail,
            type=type,
            errors=errors,
            extensions=extensions,
        ),
        media_type=PROBLEM_JSON,
        headers=headers,
    )
