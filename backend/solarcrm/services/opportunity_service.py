from __future__ import annotations

from typing import Any

from ..domain.stages import is_known_stage, should_advance
from ..errors import CrmError, NotFoundError, ValidationError
from ..observability.logging import get_logger
from ..repositories import opportunities_repo
from . import notification_dispatcher

log = get_logger("opportunity_service")

_MANUAL_ATTEMPTS = 3


def advance_stage_if_behind(
    opportunity_id: str,
    target: str,
    *,
    reason: str,
    actor: str | None = None,
) -> dict[str, Any] | None:
    """
    Automated stage transition: move forward to `target` only if the
    opportunity is currently behind it.

    Returns the activity-log entry when the stage moved, otherwise None. The
    update is conditioned on the stage that was read, so a concurrent change
    (manual or automated) makes this a no-op instead of a regression.
    """
    opp = opportunities_repo.get_opportunity(opportunity_id)
    if not opp:
        log.warning("stage_advance_missing_opportunity", opportunityId=opportunity_id, target=target)
        return None

    current = opp.get("stage")
    if not should_advance(current, target):
        log.info(
            "stage_advance_skipped",
            opportunityId=opportunity_id,
            current=current,
            target=target,
            reason=reason,
        )
        return None

    entry = opportunities_repo.change_stage(
        opportunity_id,
        from_stage=current,
        to_stage=target,
        actor=actor,
        automated=True,
        reason=reason,
    )
    if entry is None:
        log.info("stage_advance_lost_race", opportunityId=opportunity_id, current=current, target=target)
        return None

    log.info("opportunity_stage_advanced", opportunityId=opportunity_id, fromStage=current, toStage=target, reason=reason)
    return entry


def set_stage_manually(opportunity_id: str, stage: str, *, actor: str | None) -> dict[str, Any]:
    """
    User-initiated stage change. Not gated by `should_advance`: a user may move
    an opportunity backwards (e.g. a deal that fell through).
    """
    if not is_known_stage(stage):
        raise ValidationError(message=f"Unknown stage: {stage}", code="invalid_stage")

    for _ in range(_MANUAL_ATTEMPTS):
        opp = opportunities_repo.get_opportunity(opportunity_id)
        if not opp:
            raise NotFoundError(message="Opportunity not found")
        current = opp.get("stage")
        if current == stage:
            return opp
        entry = opportunities_repo.change_stage(
            opportunity_id,
            from_stage=current,
            to_stage=stage,
            actor=actor,
            automated=False,
            reason="manual",
        )
        if entry is None:
            continue
        log.info("opportunity_stage_set", opportunityId=opportunity_id, fromStage=current, toStage=stage, actor=actor)
        if stage == "closed":
            notification_dispatcher.opportunity_closed(opportunity_id, trigger_id=str(entry.get("activityId") or ""))
        return opportunities_repo.get_opportunity(opportunity_id) or {**opp, "stage": stage}

    raise CrmError(message="Opportunity was modified concurrently; retry", code="conflict", status_code=409)
