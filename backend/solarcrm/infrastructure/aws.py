from __future__ import annotations

from functools import lru_cache

import boto3
from botocore.config import Config

from ..settings import settings

# Per-service timeouts (seconds) and SDK retry budget. DynamoDB is on the
# request path of the signing page, so it fails fast and leans on the
# app-layer retry in db/dynamodb/retry.py. S3 moves whole PDFs.
_SERVICE_LIMITS: dict[str, tuple[int, int, int, str]] = {
    "dynamodb": (2, 8, 4, "adaptive"),
    "s3": (3, 20, 3, "standard"),
    "sesv2": (3, 15, 3, "standard"),
}


def _config(service: str) -> Config:
    connect, read, attempts, mode = _SERVICE_LIMITS.get(service, (3, 15, 3, "standard"))
    return Config(
        retries={"max_attempts": attempts, "mode": mode},
        connect_timeout=connect,
        read_timeout=read,
    )


@lru_cache(maxsize=None)
def aws_client(service: str):
    return boto3.client(service, region_name=settings.aws_region, config=_config(service))


@lru_cache(maxsize=1)
def _dynamodb_resource():
    return boto3.resource("dynamodb", region_name=settings.aws_region, config=_config("dynamodb"))


def dynamodb_table(table_name: str):
    return _dynamodb_resource().Table(table_name)
