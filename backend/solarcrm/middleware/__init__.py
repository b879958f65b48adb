from __future__ import annotations

from .access_log import AccessLogMiddleware
from .request_context import RequestContextMiddleware
from .signing_rate_limit import SigningRateLimitMiddleware

__all__ = ["AccessLogMiddleware", "RequestContextMiddleware", "SigningRateLimitMiddleware"]
