from __future__ import annotations

from datetime import datetime, timezone

from solarcrm.domain.clock import to_epoch_ms
from solarcrm.domain.stages import STAGE_ORDER, should_advance
from solarcrm.domain.tokens import (
    SIGNING_TOKEN_ALPHABET,
    compute_expiry,
    is_well_formed_token,
    issue_signing_token,
)


def test_signing_token_is_32_alphanumeric_chars():
    tok = issue_signing_token()
    assert len(tok) == 32
    assert all(ch in SIGNING_TOKEN_ALPHABET for ch in tok)
    assert is_well_formed_token(tok)


def test_signing_token_uses_injected_choice():
    seq = iter("abcdefghijklmnopqrstuvwxyz012345")
    tok = issue_signing_token(choice=lambda _alphabet: next(seq))
    assert tok == "abcdefghijklmnopqrstuvwxyz012345"


def test_tokens_do_not_repeat():
    assert len({issue_signing_token() for _ in range(200)}) == 200


def test_malformed_tokens_are_rejected():
    assert not is_well_formed_token(None)
    assert not is_well_formed_token("short")
    assert not is_well_formed_token("a" * 31 + "-")
    assert not is_well_formed_token("a" * 33)


def test_expiry_is_exactly_thirty_days_in_ms():
    created = datetime(2024, 3, 10, 15, 30, 12, 345000, tzinfo=timezone.utc)
    expires = compute_expiry(created)
    assert to_epoch_ms(expires) - to_epoch_ms(created) == 2_592_000_000


def test_expiry_treats_naive_datetimes_as_utc():
    naive = datetime(2024, 1, 1, 0, 0, 0)
    assert compute_expiry(naive).tzinfo is not None


def test_should_advance_examples():
    assert should_advance("follow_up", "contract_sent") is True
    assert should_advance("contract_sent", "contract_sent") is False
    assert should_advance("closed", "contract_sent") is False
    assert should_advance("inbox", "closed") is True
    assert should_advance("for_installation", "closed") is True


def test_should_advance_never_moves_backwards():
    for i, cur in enumerate(STAGE_ORDER):
        for j, tgt in enumerate(STAGE_ORDER):
            assert should_advance(cur, tgt) is (j > i)


def test_unknown_stages_never_advance():
    assert should_advance("mystery", "closed") is False
    assert should_advance("inbox", "mystery") is False
    assert should_advance(None, "closed") is False
