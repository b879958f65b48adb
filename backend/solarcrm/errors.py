from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class CrmError(Exception):
    """Base error for domain operations.

    Rendered into RFC7807 problem-details responses by the handler registered in
    `solarcrm.main`. `code` is a stable machine-readable identifier; `message`
    is safe to show to the end user.
    """

    message: str
    code: str = "crm_error"
    status_code: int = 500
    details: dict[str, Any] | None = None
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    @property
    def terminal(self) -> bool:
        # Terminal errors will never succeed on retry (signing page uses this).
        return False


@dataclass(slots=True)
class ValidationError(CrmError):
    code: str = "validation_error"
    status_code: int = 400


@dataclass(slots=True)
class NotFoundError(CrmError):
    code: str = "not_found"
    status_code: int = 404


@dataclass(slots=True)
class AlreadySignedError(CrmError):
    message: str = "This agreement has already been signed"
    code: str = "already_signed"
    status_code: int = 409

    @property
    def terminal(self) -> bool:
        return True


@dataclass(slots=True)
class ExpiredError(CrmError):
    message: str = "This agreement has expired"
    code: str = "expired"
    status_code: int = 410

    @property
    def terminal(self) -> bool:
        return True


@dataclass(slots=True)
class UploadError(CrmError):
    """Blob store rejected or failed a read/write."""

    code: str = "upload_failed"
    status_code: int = 502


@dataclass(slots=True)
class RenderError(CrmError):
    """PDF could not be produced (bad source bytes, unsupported image, layout failure)."""

    code: str = "render_failed"
    status_code: int = 500
