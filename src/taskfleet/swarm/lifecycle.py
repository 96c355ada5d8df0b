"""Plan lifecycle state machine.

    draft -> delegating -> in_progress -> ready_for_review -> completed
                 |              |
                 +--> failed <--+

``delegating -> ready_for_review`` is allowed for a resumed plan with
nothing left to run. ``cancel`` is accepted from any non-terminal status
and always ends in ``failed`` with the cancelled flag set.
"""

from __future__ import annotations

import logging

from taskfleet.core.activity import ActivityLog, ActivityType
from taskfleet.core.models import GraphStats, Plan, PlanStatus, utcnow
from taskfleet.core.result import PlanStateError

logger = logging.getLogger(__name__)

TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.DELEGATING}),
    PlanStatus.DELEGATING: frozenset(
        {PlanStatus.IN_PROGRESS, PlanStatus.READY_FOR_REVIEW, PlanStatus.FAILED}
    ),
    PlanStatus.IN_PROGRESS: frozenset({PlanStatus.READY_FOR_REVIEW, PlanStatus.FAILED}),
    PlanStatus.READY_FOR_REVIEW: frozenset({PlanStatus.COMPLETED}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.FAILED: frozenset(),
}

_ACTIVITY: dict[PlanStatus, tuple[ActivityType, str]] = {
    PlanStatus.DELEGATING: (ActivityType.INFO, "Plan execution started"),
    PlanStatus.IN_PROGRESS: (ActivityType.INFO, "Agents are working on the plan"),
    PlanStatus.READY_FOR_REVIEW: (ActivityType.SUCCESS, "Plan is ready for review"),
    PlanStatus.COMPLETED: (ActivityType.SUCCESS, "Plan completed"),
    PlanStatus.FAILED: (ActivityType.ERROR, "Plan failed"),
}


def can_transition(current: PlanStatus, target: PlanStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(
    plan: Plan, target: PlanStatus, activity: ActivityLog, details: str | None = None
) -> None:
    """Move ``plan`` to ``target`` and record it.

    Raises:
        PlanStateError: the move is not in the transition table
    """
    if not can_transition(plan.status, target):
        raise PlanStateError(
            f"Cannot move plan from {plan.status.value} to {target.value}",
            context={"plan": plan.id},
        )
    previous = plan.status
    plan.status = target
    plan.touch()
    activity_type, message = _ACTIVITY[target]
    activity.append(activity_type, message, details)
    logger.debug("Plan %s: %s -> %s", plan.id, previous.value, target.value)


def cancel(plan: Plan, activity: ActivityLog) -> None:
    """Mark a non-terminal plan as cancelled. Teardown is the caller's job."""
    if plan.is_terminal:
        raise PlanStateError(
            f"Plan is already {plan.status.value}", context={"plan": plan.id}
        )
    plan.status = PlanStatus.FAILED
    plan.cancelled = True
    plan.cancelled_at = utcnow()
    plan.touch()
    activity.warning("Plan cancelled")


def settle(stats: GraphStats) -> PlanStatus:
    """Terminal-ish status for a plan with nothing live and nothing dispatchable.

    No completed work at all while something failed is unrecoverable; any
    partial success goes to review.
    """
    if stats.completed == 0 and stats.failed > 0:
        return PlanStatus.FAILED
    return PlanStatus.READY_FOR_REVIEW


__all__ = ["TRANSITIONS", "can_transition", "cancel", "settle", "transition"]
