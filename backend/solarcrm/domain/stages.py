from __future__ import annotations

from typing import Literal

Stage = Literal[
    "inbox",
    "to_call",
    "did_not_answer",
    "booked_call",
    "did_not_book_call",
    "for_ocular",
    "follow_up",
    "contract_sent",
    "for_installation",
    "closed",
]

STAGE_ORDER: tuple[str, ...] = (
    "inbox",
    "to_call",
    "did_not_answer",
    "booked_call",
    "did_not_book_call",
    "for_ocular",
    "follow_up",
    "contract_sent",
    "for_installation",
    "closed",
)

_STAGE_INDEX = {s: i for i, s in enumerate(STAGE_ORDER)}


def is_known_stage(stage: str | None) -> bool:
    return str(stage or "") in _STAGE_INDEX


def should_advance(current: str | None, target: str | None) -> bool:
    """
    Gate for automated stage transitions (agreement sent/signed, invoice paid).

    Automation may only move an opportunity forward. Unknown stages never
    advance. Manual stage changes by users do not go through this check; they
    may move an opportunity anywhere.
    """
    cur = _STAGE_INDEX.get(str(current or ""))
    tgt = _STAGE_INDEX.get(str(target or ""))
    if cur is None or tgt is None:
        return False
    return tgt > cur
