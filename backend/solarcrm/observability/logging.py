from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog

from .context import get_request_id

# Bearer credentials and customer signature images never reach the logs, even
# when a caller passes a whole agreement dict as a field.
_SECRET_KEYS = frozenset({"signingToken", "token", "signatureData", "apikey", "apiKey"})
_REDACTED = "[redacted]"
_SIGN_PATH_RE = re.compile(r"^(/api/sign/)[^/]+")


def redact_path(path: str) -> str:
    return _SIGN_PATH_RE.sub(r"\1<token>", path)


def _add_request_id(_: logging.Logger, __: str, event_dict: dict) -> dict:
    rid = get_request_id()
    if rid:
        event_dict["request_id"] = rid
    return event_dict


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: (_REDACTED if k in _SECRET_KEYS and v else _scrub(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def _redact_secrets(_: logging.Logger, __: str, event_dict: dict) -> dict:
    for k in list(event_dict):
        if k in _SECRET_KEYS and event_dict[k]:
            event_dict[k] = _REDACTED
        elif isinstance(event_dict[k], (dict, list, tuple)):
            event_dict[k] = _scrub(event_dict[k])
    return event_dict


def _shared_processors() -> list:
    return [
        _add_request_id,
        _redact_secrets,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


_CONFIGURED = False


def configure_logging(*, level: str | int = "INFO") -> None:
    """JSON lines on stdout for both structlog and stdlib loggers (uvicorn, botocore)."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper() if isinstance(level, str) else level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True
    # The access middleware logs requests (with signing tokens redacted).
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
