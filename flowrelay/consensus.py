"""Group consensus for steps assigned to several identities."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .definitions import CompletionMode
from .errors import ValidationError
from .models import (
    GROUP_COMPLETION_KEY,
    GroupAssignee,
    GroupAssigneeStatus,
    Identity,
    RunState,
    StepExecution,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class ConsensusOutcome:
    satisfied: bool
    completed: int
    total: int
    # False when the member had already submitted
    recorded: bool = True
    result_data: Optional[Dict[str, Any]] = None


def is_satisfied(mode: CompletionMode, completed: int, total: int) -> bool:
    if total == 0:
        return False
    if mode == CompletionMode.ALL:
        return completed == total
    if mode == CompletionMode.MAJORITY:
        return completed > total / 2
    return completed >= 1


def record_submission(
    state: RunState,
    execution: StepExecution,
    actor: Optional[Identity],
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> ConsensusOutcome:
    """Mark ``actor``'s share of a group step done and evaluate the threshold.

    Mutates the member record inside ``state``; the caller persists it.

    Raises:
        ValidationError: If no actor is given or the actor is not a member.
    """
    members = state.group_for(execution.id)
    mode = execution.completion_mode or CompletionMode.ANY
    if actor is None:
        raise ValidationError(f"Group step {execution.step_id} requires the submitting member")
    member = next((m for m in members if m.identity == actor), None)
    if member is None:
        raise ValidationError(f"{actor} is not assigned to group step {execution.step_id}")

    if member.status == GroupAssigneeStatus.COMPLETED:
        done = _completed(members)
        logger.info(f"{actor} already submitted group step {execution.step_id}; ignoring")
        return ConsensusOutcome(False, len(done), len(members), recorded=False)

    member.status = GroupAssigneeStatus.COMPLETED
    member.completed_at = now or utcnow()
    member.result_data = dict(payload)

    done = _completed(members)
    satisfied = is_satisfied(mode, len(done), len(members))
    logger.info(
        f"Group step {execution.step_id}: {len(done)}/{len(members)} submitted "
        f"({mode.value}{', satisfied' if satisfied else ''})"
    )
    outcome = ConsensusOutcome(satisfied, len(done), len(members))
    if satisfied:
        outcome.result_data = aggregate(mode, payload, members)
    return outcome


def aggregate(
    mode: CompletionMode, payload: Dict[str, Any], members: List[GroupAssignee]
) -> Dict[str, Any]:
    """The triggering payload plus a summary of every member's submission."""
    done = _completed(members)
    return {
        **payload,
        GROUP_COMPLETION_KEY: {
            "mode": mode.value,
            "totalAssignees": len(members),
            "completedAssignees": len(done),
            "submissions": [
                {
                    "assignee": str(m.identity),
                    "completedAt": m.completed_at.isoformat() if m.completed_at else None,
                    "resultData": m.result_data or {},
                }
                for m in done
            ],
        },
    }


def _completed(members: List[GroupAssignee]) -> List[GroupAssignee]:
    return [m for m in members if m.status == GroupAssigneeStatus.COMPLETED]
