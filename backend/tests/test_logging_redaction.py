from __future__ import annotations

import uuid

from solarcrm.middleware.request_context import resolve_request_id
from solarcrm.observability.logging import _redact_secrets, redact_path


def test_signing_tokens_and_signatures_are_redacted():
    ev = _redact_secrets(
        None,
        "info",
        {
            "event": "agreement_signed",
            "token": "A" * 32,
            "agreement": {"agreementId": "agr_1", "signingToken": "A" * 32, "signatureData": "data:image/png;base64,AAAA"},
        },
    )
    assert ev["token"] == "[redacted]"
    assert ev["agreement"]["signingToken"] == "[redacted]"
    assert ev["agreement"]["signatureData"] == "[redacted]"
    assert ev["agreement"]["agreementId"] == "agr_1"


def test_empty_secret_fields_are_left_alone():
    ev = _redact_secrets(None, "info", {"event": "x", "signingToken": None})
    assert ev["signingToken"] is None


def test_sign_paths_are_redacted():
    assert redact_path("/api/sign/" + "A" * 32) == "/api/sign/<token>"
    assert redact_path("/api/sign/" + "A" * 32 + "/viewed") == "/api/sign/<token>/viewed"
    assert redact_path("/api/agreements/agr_1") == "/api/agreements/agr_1"


def test_unsafe_inbound_request_ids_are_replaced():
    assert resolve_request_id("abc-123") == "abc-123"
    generated = resolve_request_id("bad id\nforged=1")
    assert str(uuid.UUID(generated)) == generated
    assert resolve_request_id(None) != resolve_request_id(None)
