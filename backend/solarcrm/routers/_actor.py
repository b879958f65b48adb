from __future__ import annotations

from fastapi import Request


def actor_id(request: Request) -> str | None:
    # Set by the upstream auth proxy; used for attribution only.
    raw = str(request.headers.get("x-user-id") or "").strip()
    return raw[:128] or None
