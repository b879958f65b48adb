from __future__ import annotations

from typing import Any

import pytest

from solarcrm.errors import ValidationError


@pytest.fixture()
def store(monkeypatch):
    from solarcrm.repositories import contacts_repo, messages_repo
    from solarcrm.services import message_ingest

    contacts: dict[tuple[str, str], dict[str, Any]] = {}
    messages: dict[tuple[str, str], dict[str, Any]] = {}
    windows: list[dict[str, Any]] = []

    def _get_or_create(*, channel, platform_user_id, first_name=None, last_name=None):
        key = (channel, platform_user_id)
        if key in contacts:
            return contacts[key], False
        c = {"contactId": f"c_{len(contacts) + 1}", "firstName": first_name, "lastName": last_name}
        contacts[key] = c
        return c, True

    def _record(*, contact_id, channel, content, attachments, external_message_id, received_at):
        key = (channel, external_message_id)
        if key in messages:
            return messages[key], False
        m = {"messageId": f"m_{len(messages) + 1}", "contactId": contact_id, "content": content, "receivedAt": received_at}
        messages[key] = m
        return m, True

    monkeypatch.setattr(contacts_repo, "get_or_create_platform_contact", _get_or_create)
    monkeypatch.setattr(messages_repo, "record_inbound_message", _record)
    monkeypatch.setattr(messages_repo, "get_message_for_external_id", lambda ch, ext: messages.get((ch, ext)))
    monkeypatch.setattr(messages_repo, "touch_messaging_window", lambda **kw: windows.append(kw))
    return message_ingest, contacts, messages, windows


def test_first_message_creates_contact_and_message(store):
    svc, contacts, messages, windows = store
    out = svc.ingest_message(
        channel="facebook",
        platform_user_id="psid_1",
        text="Hi, how much for a 5kW system?",
        external_message_id="mid.1",
        first_name="Ana",
        timestamp=1714550400000,
    )
    assert out["created"] is True
    assert out["contactCreated"] is True
    assert out["message"]["receivedAt"] == "2024-05-01T08:00:00.000Z"
    assert len(contacts) == 1 and len(messages) == 1
    assert windows[0]["customer_message_at"] == "2024-05-01T08:00:00.000Z"


def test_webhook_replay_is_idempotent(store):
    svc, contacts, messages, windows = store
    kw = dict(channel="instagram", platform_user_id="igsid_9", text="hello", external_message_id="mid.9")
    first = svc.ingest_message(**kw)
    again = svc.ingest_message(**kw)
    assert again["created"] is False
    assert again["contactId"] == first["contactId"]
    assert len(contacts) == 1 and len(messages) == 1
    assert len(windows) == 1


def test_second_message_reuses_contact(store):
    svc, contacts, messages, _ = store
    svc.ingest_message(channel="facebook", platform_user_id="psid_1", text="a", external_message_id="mid.1")
    out = svc.ingest_message(channel="facebook", platform_user_id="psid_1", text="b", external_message_id="mid.2")
    assert out["contactCreated"] is False
    assert len(contacts) == 1 and len(messages) == 2


def test_attachment_only_message_is_accepted(store):
    svc, _, _, _ = store
    out = svc.ingest_message(
        channel="facebook",
        platform_user_id="psid_1",
        text=None,
        external_message_id="mid.3",
        attachments=[{"type": "image", "url": "https://cdn.example/roof.jpg"}],
    )
    assert out["created"] is True


@pytest.mark.parametrize(
    "kw,code",
    [
        ({"channel": "sms"}, "invalid_channel"),
        ({"platform_user_id": " "}, "invalid_platform_user"),
        ({"external_message_id": ""}, "invalid_external_message_id"),
        ({"text": "  "}, "empty_message"),
        ({"timestamp": "yesterday"}, "invalid_timestamp"),
        ({"timestamp": 10**20}, "invalid_timestamp"),
    ],
)
def test_invalid_input_is_rejected(store, kw, code):
    svc, _, messages, _ = store
    base = dict(channel="facebook", platform_user_id="psid_1", text="hi", external_message_id="mid.1")
    with pytest.raises(ValidationError) as ei:
        svc.ingest_message(**{**base, **kw})
    assert ei.value.code == code
    assert messages == {}
