from __future__ import annotations

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..observability.logging import get_logger, redact_path

SLOW_REQUEST_MS = 2000.0


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured line per request; signing tokens are redacted from the path."""

    def __init__(self, app, *, exclude_paths: set[str] | None = None):
        super().__init__(app)
        self._exclude = frozenset(exclude_paths or ())
        self._log = get_logger("access")

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self._exclude:
            return await call_next(request)

        start = time.perf_counter()
        fields = {
            "http_method": request.method.upper(),
            "path": redact_path(request.url.path),
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception:
            self._log.exception("request_error", duration_ms=_elapsed_ms(start), **fields)
            raise

        duration = _elapsed_ms(start)
        status = int(response.status_code)
        if status >= 500:
            emit = self._log.error
        elif status == 429 or duration >= SLOW_REQUEST_MS:
            emit = self._log.warning
        else:
            emit = self._log.info
        emit("request", status_code=status, duration_ms=duration, **fields)
        return response


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)
