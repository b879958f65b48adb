from __future__ import annotations

from fastapi.testclient import TestClient

from solarcrm.main import create_app


def test_request_id_is_generated_and_returned():
    app = create_app()
    client = TestClient(app)

    r = client.get("/")
    assert r.status_code == 200
    assert "X-Request-Id" in r.headers
    assert r.headers["X-Request-Id"]


def test_request_id_is_propagated_from_client():
    app = create_app()
    client = TestClient(app)

    r = client.get("/", headers={"X-Request-Id": "abc-123"})
    assert r.status_code == 200
    assert r.headers.get("X-Request-Id") == "abc-123"


def test_validation_errors_are_problem_json():
    app = create_app()
    client = TestClient(app)

    # Missing required body fields => pydantic validation error
    r = client.post("/api/sign/" + "A" * 32, json={}, headers={"X-Forwarded-For": "198.51.100.1"})
    assert r.status_code == 422
    assert r.headers.get("content-type", "").startswith("application/problem+json")
    body = r.json()
    assert body["title"] == "Validation Failed"
    assert body["status"] == 422
    assert "errors" in body and isinstance(body["errors"], list)
    assert body.get("requestId")


def test_404_is_problem_json():
    app = create_app()
    client = TestClient(app)

    r = client.get("/this-route-does-not-exist")
    assert r.status_code == 404
    assert r.headers.get("content-type", "").startswith("application/problem+json")
    body = r.json()
    assert body["status"] == 404
    assert body.get("requestId")


def test_already_signed_is_terminal_conflict(monkeypatch):
    from solarcrm.errors import AlreadySignedError
    from solarcrm.services import agreement_service

    def _sign(*_a, **_kw):
        raise AlreadySignedError()

    monkeypatch.setattr(agreement_service, "sign", _sign)
    client = TestClient(create_app())

    r = client.post(
        "/api/sign/" + "B" * 32,
        json={"signatureData": "data:image/png;base64,AAAA", "signedByName": "Juan"},
        headers={"X-Forwarded-For": "198.51.100.2"},
    )
    assert r.status_code == 409
    body = r.json()
    assert body["extensions"]["code"] == "already_signed"
    assert body["extensions"]["terminal"] is True
    assert body["instance"] == "/api/sign/<token>"


def test_expired_is_terminal_gone(monkeypatch):
    from solarcrm.errors import ExpiredError
    from solarcrm.services import agreement_service

    def _view(*_a, **_kw):
        raise ExpiredError()

    monkeypatch.setattr(agreement_service, "get_by_token", _view)
    client = TestClient(create_app())

    r = client.get("/api/sign/" + "C" * 32, headers={"X-Forwarded-For": "198.51.100.3"})
    assert r.status_code == 410
    assert r.json()["extensions"]["terminal"] is True


def test_not_found_is_not_terminal(monkeypatch):
    from solarcrm.errors import NotFoundError
    from solarcrm.services import agreement_service

    def _view(*_a, **_kw):
        raise NotFoundError(message="Agreement not found")

    monkeypatch.setattr(agreement_service, "get_by_token", _view)
    client = TestClient(create_app())

    r = client.get("/api/sign/" + "D" * 32, headers={"X-Forwarded-For": "198.51.100.4"})
    assert r.status_code == 404
    body = r.json()
    assert body["detail"] == "Agreement not found"
    assert "terminal" not in body["extensions"]


def test_sign_passes_client_ip_from_forwarded_header(monkeypatch):
    from solarcrm.services import agreement_service

    seen = {}

    def _sign(token, **kw):
        seen.update(kw, token=token)
        return {"signedAt": "2024-05-01T08:00:00.000Z"}

    monkeypatch.setattr(agreement_service, "sign", _sign)
    client = TestClient(create_app())

    r = client.post(
        "/api/sign/" + "E" * 32,
        json={"signatureData": "data:image/png;base64,AAAA", "signedByName": "Juan"},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
    )
    assert r.status_code == 200
    assert r.json() == {"ok": True, "signedAt": "2024-05-01T08:00:00.000Z"}
    assert seen["signed_by_ip"] == "203.0.113.7"
    assert seen["token"] == "E" * 32


def test_signing_endpoints_are_rate_limited(monkeypatch):
    from solarcrm.services import agreement_service
    from solarcrm.settings import settings

    monkeypatch.setattr(settings, "signing_rate_limit_rpm", 2)
    monkeypatch.setattr(agreement_service, "get_by_token", lambda token: {"agreementId": "agr_1"})
    client = TestClient(create_app())

    headers = {"X-Forwarded-For": "192.0.2.55"}
    path = "/api/sign/" + "F" * 32
    assert client.get(path, headers=headers).status_code == 200
    assert client.get(path, headers=headers).status_code == 200
    r = client.get(path, headers=headers)
    assert r.status_code == 429
    assert r.headers.get("content-type", "").startswith("application/problem+json")
    assert int(r.headers["Retry-After"]) >= 1


def test_manual_stage_change_records_actor(monkeypatch):
    from solarcrm.services import opportunity_service

    seen = {}

    def _set(opportunity_id, stage, *, actor):
        seen.update(opportunity_id=opportunity_id, stage=stage, actor=actor)
        return {"opportunityId": opportunity_id, "stage": stage}

    monkeypatch.setattr(opportunity_service, "set_stage_manually", _set)
    client = TestClient(create_app())

    r = client.put("/api/opportunities/opp_1/stage", json={"stage": "follow_up"}, headers={"X-User-Id": "u_42"})
    assert r.status_code == 200
    assert seen == {"opportunity_id": "opp_1", "stage": "follow_up", "actor": "u_42"}


def test_resend_of_non_failed_event_is_conflict(monkeypatch):
    from solarcrm.errors import CrmError
    from solarcrm.routers import outbox

    def _resend(_eid):
        raise CrmError(message="Only failed events can be resent (status: done)", code="event_not_failed", status_code=409)

    monkeypatch.setattr(outbox, "resend", _resend)
    client = TestClient(create_app())

    r = client.post("/api/outbox/e1/resend")
    assert r.status_code == 409
    assert r.json()["extensions"]["code"] == "event_not_failed"

