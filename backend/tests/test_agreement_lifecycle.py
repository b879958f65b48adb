from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from solarcrm.db.dynamodb.errors import DdbConflict
from solarcrm.domain.clock import parse_iso, to_epoch_ms

SIG = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
T0 = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeAgreements:
    """In-memory stand-in for agreements_repo with the same write conditions."""

    def __init__(self):
        self.items: dict[str, dict[str, Any]] = {}
        self.tokens: dict[str, str] = {}
        self.signature_writes = 0

    def create_agreement(self, *, agreement: dict[str, Any]) -> dict[str, Any]:
        tok = agreement["signingToken"]
        if tok in self.tokens:
            raise DdbConflict(message="DynamoDB conditional check failed")
        self.tokens[tok] = agreement["agreementId"]
        self.items[agreement["agreementId"]] = dict(agreement)
        return dict(agreement)

    def get_agreement(self, agreement_id: str, *, consistent: bool = False):
        it = self.items.get(agreement_id)
        return dict(it) if it else None

    def get_agreement_by_token(self, token: str):
        aid = self.tokens.get(token)
        return self.get_agreement(aid) if aid else None

    def mark_sent(self, agreement_id: str, *, sent_at: str):
        it = self.items.get(agreement_id)
        if not it or it["status"] != "pending":
            return None
        it.update(status="sent", sentAt=sent_at, updatedAt=sent_at)
        return dict(it)

    def mark_viewed(self, agreement_id: str, *, viewed_at: str):
        it = self.items.get(agreement_id)
        if not it or it["status"] not in ("pending", "sent"):
            return None
        it.update(status="viewed", viewedAt=viewed_at, updatedAt=viewed_at)
        return dict(it)

    def record_signature(self, agreement_id: str, *, signature_data, signed_by_name, signed_by_ip, signed_at, now_ms):
        it = self.items.get(agreement_id)
        if not it or it["status"] == "signed" or int(it["expiresAtMs"]) < int(now_ms):
            raise DdbConflict(message="DynamoDB conditional check failed")
        self.signature_writes += 1
        it.update(
            status="signed",
            signatureData=signature_data,
            signedByName=signed_by_name,
            signedByIp=signed_by_ip,
            signedAt=signed_at,
            updatedAt=signed_at,
        )
        return dict(it)


@pytest.fixture()
def env(monkeypatch):
    from solarcrm.repositories import agreements_repo, contacts_repo, documents_repo, opportunities_repo
    from solarcrm.services import agreement_service, notification_dispatcher, opportunity_service

    fake = FakeAgreements()
    for name in (
        "create_agreement",
        "get_agreement",
        "get_agreement_by_token",
        "mark_sent",
        "mark_viewed",
        "record_signature",
    ):
        monkeypatch.setattr(agreements_repo, name, getattr(fake, name))

    opp = {"opportunityId": "opp_1", "name": "Dela Cruz Residence", "stage": "follow_up", "ownerUserId": "u_owner"}
    monkeypatch.setattr(opportunities_repo, "get_opportunity", lambda oid: dict(opp) if oid == "opp_1" else None)
    monkeypatch.setattr(
        contacts_repo,
        "get_contact",
        lambda cid: {"contactId": cid, "firstName": "Juan", "phone": "09171234567"} if cid == "c_1" else None,
    )
    monkeypatch.setattr(documents_repo, "get_document", lambda did: None)

    calls: dict[str, list] = {"advance": [], "sent": [], "signed": [], "in_app": []}
    monkeypatch.setattr(
        opportunity_service,
        "advance_stage_if_behind",
        lambda oid, target, **kw: calls["advance"].append((oid, target, kw.get("reason"))),
    )
    monkeypatch.setattr(notification_dispatcher, "agreement_sent", lambda a, **kw: calls["sent"].append(a["agreementId"]))
    monkeypatch.setattr(notification_dispatcher, "agreement_signed", lambda a: calls["signed"].append(a["agreementId"]))
    monkeypatch.setattr(
        notification_dispatcher,
        "notify_agreement_signed_in_app",
        lambda a, o: calls["in_app"].append(a["agreementId"]),
    )
    return agreement_service, fake, calls


def _create(svc, **kw):
    return svc.create_agreement(
        opportunity_id="opp_1",
        contact_id="c_1",
        total_amount="350000",
        fields={"clientName": "Juan Dela Cruz", "systemType": "hybrid", "systemSize": "8", "bogus": "x"},
        materials=[{"name": "Panel", "qty": 16}],
        clock=lambda: T0,
        **kw,
    )


def test_create_sets_pending_status_and_exact_expiry(env):
    svc, fake, _ = env
    a = _create(svc)
    assert a["status"] == "pending"
    assert len(a["signingToken"]) == 32
    assert "bogus" not in a
    created = parse_iso(a["createdAt"])
    assert a["expiresAtMs"] - to_epoch_ms(created) == 2_592_000_000
    assert to_epoch_ms(parse_iso(a["expiresAt"])) == a["expiresAtMs"]


def test_create_retries_on_token_collision(env):
    svc, fake, _ = env
    tokens = iter(["A" * 32, "A" * 32, "B" * 32])
    first = _create(svc, token_factory=lambda: "A" * 32)
    second = _create(svc, token_factory=lambda: next(tokens))
    assert first["signingToken"] == "A" * 32
    assert second["signingToken"] == "B" * 32


def test_create_rejects_missing_opportunity(env):
    from solarcrm.errors import NotFoundError

    svc, _, _ = env
    with pytest.raises(NotFoundError):
        svc.create_agreement(opportunity_id="opp_x", contact_id="c_1", total_amount=1)


def test_public_view_hides_credentials_and_parses_payloads(env):
    svc, _, _ = env
    a = _create(svc)
    view = svc.get_by_token(a["signingToken"], clock=lambda: T0 + timedelta(days=1))
    assert "signingToken" not in view and "signatureData" not in view
    assert view["materials"] == [{"name": "Panel", "qty": 16}]
    assert view["payments"] == []
    assert view["isExpired"] is False
    assert view["isSigned"] is False


def test_view_reports_expired_after_thirty_days(env):
    svc, _, _ = env
    a = _create(svc)
    view = svc.get_by_token(a["signingToken"], clock=lambda: T0 + timedelta(days=30, milliseconds=1))
    assert view["isExpired"] is True


def test_unknown_or_malformed_token_is_not_found(env):
    from solarcrm.errors import NotFoundError

    svc, _, _ = env
    with pytest.raises(NotFoundError):
        svc.get_by_token("nope")
    with pytest.raises(NotFoundError):
        svc.get_by_token("Z" * 32)


def test_mark_sent_enqueues_and_advances_once(env):
    svc, _, calls = env
    a = _create(svc)
    out = svc.mark_sent(a["agreementId"], clock=lambda: T0)
    assert out["status"] == "sent"
    assert calls["sent"] == [a["agreementId"]]
    assert calls["advance"] == [("opp_1", "contract_sent", "agreement_sent")]

    again = svc.mark_sent(a["agreementId"], clock=lambda: T0)
    assert again["status"] == "sent"
    assert calls["sent"] == [a["agreementId"]]
    assert len(calls["advance"]) == 1


def test_mark_sent_after_signing_is_a_noop(env):
    svc, fake, calls = env
    a = _create(svc)
    svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="Juan", signed_by_ip="1.2.3.4", clock=lambda: T0)
    calls["advance"].clear()
    out = svc.mark_sent(a["agreementId"], clock=lambda: T0)
    assert out["status"] == "signed"
    assert calls["sent"] == []
    assert calls["advance"] == []


def test_mark_viewed_only_moves_forward(env):
    svc, _, _ = env
    a = _create(svc)
    assert svc.mark_viewed(a["signingToken"], clock=lambda: T0)["status"] == "viewed"
    assert svc.mark_viewed(a["signingToken"], clock=lambda: T0)["status"] == "viewed"


def test_sign_records_signature_and_runs_follow_ons(env):
    svc, fake, calls = env
    a = _create(svc)
    signed = svc.sign(a["signingToken"], signature_data=SIG, signed_by_name=" Juan Dela Cruz ", signed_by_ip="1.2.3.4", clock=lambda: T0)
    assert signed["status"] == "signed"
    assert signed["signedByName"] == "Juan Dela Cruz"
    assert signed["signedByIp"] == "1.2.3.4"
    assert calls["in_app"] == [a["agreementId"]]
    assert calls["signed"] == [a["agreementId"]]
    assert ("opp_1", "for_installation", "agreement_signed") in calls["advance"]


def test_second_sign_is_rejected_and_first_signature_kept(env):
    from solarcrm.errors import AlreadySignedError

    svc, fake, _ = env
    a = _create(svc)
    first = svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="Juan", signed_by_ip=None, clock=lambda: T0)
    later = T0 + timedelta(hours=1)
    with pytest.raises(AlreadySignedError) as ei:
        svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="Someone Else", signed_by_ip=None, clock=lambda: later)
    assert ei.value.terminal is True
    stored = fake.items[a["agreementId"]]
    assert stored["signedAt"] == first["signedAt"]
    assert stored["signedByName"] == "Juan"
    assert fake.signature_writes == 1


def test_signing_after_expiry_fails_without_writing(env):
    from solarcrm.errors import ExpiredError

    svc, fake, calls = env
    a = _create(svc)
    with pytest.raises(ExpiredError):
        svc.sign(
            a["signingToken"],
            signature_data=SIG,
            signed_by_name="Juan",
            signed_by_ip=None,
            clock=lambda: T0 + timedelta(days=31),
        )
    assert fake.items[a["agreementId"]]["status"] == "pending"
    assert fake.signature_writes == 0
    assert calls["signed"] == []


def test_concurrent_signer_losing_the_write_gets_already_signed(env, monkeypatch):
    from solarcrm.errors import AlreadySignedError
    from solarcrm.repositories import agreements_repo

    svc, fake, _ = env
    a = _create(svc)
    real_record = fake.record_signature

    def _racing_record(agreement_id, **kw):
        # Another request signs between our read and our write.
        real_record(agreement_id, **{**kw, "signed_by_name": "Winner"})
        return real_record(agreement_id, **kw)

    monkeypatch.setattr(agreements_repo, "record_signature", _racing_record)
    with pytest.raises(AlreadySignedError):
        svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="Loser", signed_by_ip=None, clock=lambda: T0)
    assert fake.items[a["agreementId"]]["signedByName"] == "Winner"


def test_invalid_signature_payload_is_rejected(env):
    from solarcrm.errors import ValidationError

    svc, _, _ = env
    a = _create(svc)
    with pytest.raises(ValidationError):
        svc.sign(a["signingToken"], signature_data="not-an-image", signed_by_name="Juan", signed_by_ip=None)
    with pytest.raises(ValidationError):
        svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="   ", signed_by_ip=None)


def test_follow_on_failures_do_not_undo_signing(env, monkeypatch):
    from solarcrm.services import notification_dispatcher, opportunity_service

    svc, fake, _ = env

    def _boom(*_a, **_kw):
        raise RuntimeError("downstream unavailable")

    monkeypatch.setattr(opportunity_service, "advance_stage_if_behind", _boom)
    monkeypatch.setattr(notification_dispatcher, "agreement_signed", _boom)
    monkeypatch.setattr(notification_dispatcher, "notify_agreement_signed_in_app", _boom)

    a = _create(svc)
    signed = svc.sign(a["signingToken"], signature_data=SIG, signed_by_name="Juan", signed_by_ip=None, clock=lambda: T0)
    assert signed["status"] == "signed"
    assert fake.items[a["agreementId"]]["status"] == "signed"
