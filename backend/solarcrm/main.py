from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .db.dynamodb.errors import DdbError
from .errors import CrmError
from .middleware import AccessLogMiddleware, RequestContextMiddleware, SigningRateLimitMiddleware
from .observability.logging import configure_logging, get_logger, redact_path
from .problem_details import problem_response
from .routers.agreements import router as agreements_router
from .routers.documents import router as documents_router
from .routers.health import router as health_router
from .routers.invoices import router as invoices_router
from .routers.messages import router as messages_router
from .routers.opportunities import router as opportunities_router
from .routers.outbox import router as outbox_router
from .routers.signing import router as signing_router
from .settings import settings

API_ROUTERS = (
    signing_router,
    agreements_router,
    opportunities_router,
    invoices_router,
    documents_router,
    messages_router,
    outbox_router,
)


def create_app() -> FastAPI:
    configure_logging(level=settings.log_level)
    get_logger("startup").info("app_starting", settings=settings.to_log_safe_dict())

    app = FastAPI(
        title=f"{settings.company_brand_name} CRM Backend",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        redirect_slashes=False,
    )

    # Last added is outermost: request id -> CORS -> access log -> signing rate limit.
    app.add_middleware(SigningRateLimitMiddleware)
    app.add_middleware(AccessLogMiddleware, exclude_paths={"/"})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_base_url.rstrip("/")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-Id", "X-User-Id"],
        expose_headers=["X-Request-Id", "Retry-After"],
        max_age=3000,
    )
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(CrmError, _crm_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DdbError, _ddb_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    app.include_router(health_router)
    for router in API_ROUTERS:
        app.include_router(router, prefix="/api")
    return app


def _crm_error_handler(request: Request, exc: CrmError) -> Response:
    extensions: dict[str, object] = {"code": exc.code}
    if exc.terminal:
        # The signing page stops offering "try again" for these.
        extensions["terminal"] = True
    if exc.details:
        extensions["details"] = exc.details
    if exc.status_code >= 500:
        get_logger("crm_error").error(
            "crm_error",
            code=exc.code,
            status_code=exc.status_code,
            error=exc.message,
            path=redact_path(request.url.path),
        )
    return problem_response(request=request, status_code=exc.status_code, detail=exc.message, extensions=extensions)


def _ddb_error_handler(request: Request, exc: DdbError) -> Response:
    if exc.http_status >= 500:
        get_logger("ddb_error").error(
            "ddb_error",
            operation=exc.operation,
            error=exc.message,
            awsRequestId=exc.aws_request_id,
            path=redact_path(request.url.path),
        )
    extensions = {
        "operation": exc.operation,
        "awsRequestId": exc.aws_request_id,
        "retryable": bool(exc.retryable),
    }
    return problem_response(
        request=request,
        status_code=exc.http_status,
        title=exc.http_title,
        detail=exc.message,
        extensions={k: v for k, v in extensions.items() if v is not None},
    )


def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    status_code = int(exc.status_code or 500)
    detail = exc.detail if isinstance(exc.detail, str) and exc.detail.strip() else None
    if status_code == 404 and (not detail or detail == "Not Found"):
        detail = "Route not found"
    return problem_response(
        request=request,
        status_code=status_code,
        detail=detail,
        headers=getattr(exc, "headers", None),
    )


def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    errors: list[dict[str, object]] = []
    for e in exc.errors():
        loc = tuple(e.get("loc") or ())
        errors.append(
            {
                "location": list(loc),
                "path": ".".join(str(x) for x in loc if x != "body"),
                "message": e.get("msg", "Invalid value"),
                "type": e.get("type"),
            }
        )
    return problem_response(
        request=request,
        status_code=422,
        title="Validation Failed",
        detail="Request validation failed",
        errors=errors,
    )


def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    get_logger("unhandled").exception(
        "unhandled_exception",
        http_method=request.method.upper(),
        path=redact_path(request.url.path),
    )
    return problem_response(request=request, status_code=500, detail=str(exc) or None)


app = create_app()
