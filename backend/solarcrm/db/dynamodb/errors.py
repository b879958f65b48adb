from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(slots=True)
class DdbError(Exception):
    """Base error for DynamoDB operations.

    Services that need domain semantics (already signed, lost a stage race)
    catch the specific subclass and translate it. Anything that escapes is
    rendered as problem-details using `http_status` / `http_title`.
    """

    http_status: ClassVar[int] = 500
    http_title: ClassVar[str] = "Storage Error"

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    cause: Exception | None = None
    # TransactWriteItems only: per-item cancellation codes, in request order.
    cancellation_codes: list[str] | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class DdbConflict(DdbError):
    """A condition expression failed (directly or inside a transaction)."""

    http_status: ClassVar[int] = 409
    http_title: ClassVar[str] = "Conflict"


@dataclass(slots=True)
class DdbValidation(DdbError):
    http_status: ClassVar[int] = 400
    http_title: ClassVar[str] = "Bad Request"


@dataclass(slots=True)
class DdbThrottled(DdbError):
    http_status: ClassVar[int] = 503
    http_title: ClassVar[str] = "Service Unavailable"


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    http_status: ClassVar[int] = 503
    http_title: ClassVar[str] = "Service Unavailable"


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass
