from __future__ import annotations

import hashlib
import re

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from cachetools import TTLCache

from ...errors import UploadError
from ...observability.logging import get_logger
from ...settings import settings
from ..aws import aws_client

log = get_logger("blob_store")

_BLOB_ID_RE = re.compile(r"^[a-f0-9]{64}$")

# Presigned URLs are reused until shortly before they lapse.
_URL_CACHE: TTLCache[str, str] = TTLCache(maxsize=4096, ttl=50 * 60)


def get_assets_bucket_name() -> str:
    name = (settings.assets_bucket_name or "").strip()
    if not name:
        raise UploadError(message="ASSETS_BUCKET_NAME is not set", code="storage_not_configured")
    return name


def blob_key(blob_id: str) -> str:
    bid = str(blob_id or "").strip().lower()
    if not _BLOB_ID_RE.fullmatch(bid):
        raise UploadError(message="Invalid blob id", code="invalid_blob_id")
    return f"blobs/sha256/{bid[:2]}/{bid}"


def put(data: bytes, *, content_type: str = "application/pdf") -> str:
    """
    Store bytes and return their content address (sha256 hex).

    Identical content maps to the same key, so re-uploading after a partial
    failure is harmless.
    """
    if not data:
        raise UploadError(message="Refusing to store an empty blob", code="empty_blob")
    blob_id = hashlib.sha256(data).hexdigest()
    try:
        aws_client("s3").put_object(
            Bucket=get_assets_bucket_name(),
            Key=blob_key(blob_id),
            Body=data,
            ContentType=str(content_type or "application/octet-stream"),
        )
    except (BotoCoreError, ClientError) as e:
        log.warning("blob_put_failed", blobId=blob_id, size=len(data), error=str(e))
        raise UploadError(message="Failed to store file", cause=e) from e
    return blob_id


def get_url(blob_id: str, *, expires_in: int | None = None) -> str:
    key = blob_key(blob_id)
    ttl = int(expires_in or settings.document_url_expires_seconds)
    cache_key = f"{key}:{ttl}"
    cached = _URL_CACHE.get(cache_key)
    if cached:
        return cached
    try:
        url = aws_client("s3").generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": get_assets_bucket_name(), "Key": key},
            ExpiresIn=max(60, min(7 * 24 * 3600, ttl)),
        )
    except (BotoCoreError, ClientError) as e:
        raise UploadError(message="Failed to sign file URL", cause=e) from e
    # Only cache URLs that outlive the cache entry.
    if ttl > 3600:
        _URL_CACHE[cache_key] = url
    return url


def fetch_url(url: str, *, max_bytes: int | None = None) -> bytes:
    """
    Download a file over HTTP with a bounded timeout and size.

    Raises UploadError for network failures, non-2xx responses and oversize bodies.
    """
    limit = int(max_bytes or settings.max_download_bytes)
    timeout = httpx.Timeout(float(settings.http_timeout_seconds), connect=5.0)
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            with client.stream("GET", url) as r:
                if r.status_code >= 400:
                    raise UploadError(
                        message=f"File download failed ({r.status_code})",
                        code="download_failed",
                        details={"statusCode": int(r.status_code)},
                    )
                chunks: list[bytes] = []
                total = 0
                for chunk in r.iter_bytes():
                    total += len(chunk)
                    if total > limit:
                        raise UploadError(message="File too large", code="download_too_large")
                    chunks.append(chunk)
    except httpx.HTTPError as e:
        raise UploadError(message="File download failed", code="download_failed", cause=e) from e
    return b"".join(chunks)


def fetch(blob_id: str) -> bytes:
    return fetch_url(get_url(blob_id))
