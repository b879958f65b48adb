from __future__ import annotations

import math
import time

from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..problem_details import problem_response
from ..settings import settings

SIGN_PREFIX = "/api/sign/"
WINDOW_SECONDS = 60

# (client, token prefix, window number) -> hits. Entries age out with their window.
_hits: TTLCache[tuple[str, str, int], int] = TTLCache(maxsize=20_000, ttl=WINDOW_SECONDS * 2)


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop (load balancer), else the socket peer."""
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    peer = request.client.host if request.client else ""
    return peer or "unknown"


def _token_prefix(path: str) -> str:
    token = path[len(SIGN_PREFIX) :].split("/", 1)[0].strip()
    return token[:8] or "none"


class SigningRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window limit on the public signing endpoints, per client IP and
    token prefix. Per-process memory only.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not path.startswith(SIGN_PREFIX):
            return await call_next(request)

        limit = max(1, min(6000, int(settings.signing_rate_limit_rpm or 60)))
        now = time.time()
        window = int(now // WINDOW_SECONDS)
        key = (client_ip(request), _token_prefix(path), window)
        count = _hits.get(key, 0) + 1
        _hits[key] = count

        if count > limit:
            retry_after = max(1, math.ceil((window + 1) * WINDOW_SECONDS - now))
            return problem_response(
                request=request,
                status_code=429,
                detail="Too many requests; try again shortly",
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
