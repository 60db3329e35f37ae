"""Turn relative or anchored due specs into absolute deadlines."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from .definitions import DueSpec, DueType, DueUnit

_UNIT_SECONDS = {
    DueUnit.MINUTES: 60,
    DueUnit.HOURS: 60 * 60,
    DueUnit.DAYS: 24 * 60 * 60,
    DueUnit.WEEKS: 7 * 24 * 60 * 60,
}


def to_timedelta(value: float, unit: DueUnit) -> timedelta:
    return timedelta(seconds=value * _UNIT_SECONDS[unit])


def compute_step_due(
    spec: Optional[DueSpec],
    started_at: datetime,
    flow_due_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """Deadline for a step that became active at ``started_at``.

    ``BEFORE_FLOW_DUE`` counts back from the run's own deadline; a run without
    one leaves the step without a due date.
    """
    if spec is None:
        return None
    if spec.type == DueType.RELATIVE:
        return started_at + to_timedelta(spec.value, spec.unit)
    if spec.type == DueType.FIXED:
        return spec.date
    if flow_due_at is None:
        return None
    return flow_due_at - to_timedelta(spec.value, spec.unit)


def compute_flow_due(spec: Optional[DueSpec], started_at: datetime) -> Optional[datetime]:
    """Deadline for the whole run. ``BEFORE_FLOW_DUE`` has no meaning here."""
    if spec is None or spec.type == DueType.BEFORE_FLOW_DUE:
        return None
    if spec.type == DueType.FIXED:
        return spec.date
    return started_at + to_timedelta(spec.value, spec.unit)
