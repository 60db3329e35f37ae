"""Decide which executions become active after a step completes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

from .definitions import StepType
from .errors import ValidationError
from .graph import FlowGraph, Region, StepNode, outcome_keys
from .models import RunState, StepExecution, StepStatus

logger = logging.getLogger(__name__)


@dataclass
class Navigation:
    """Result of advancing from one completed execution.

    ``next_ids`` may be empty without the run being complete: a parallel lane
    that finished before its siblings simply waits.
    """

    next_ids: List[str] = field(default_factory=list)
    run_complete: bool = False


def navigate(
    graph: FlowGraph,
    state: RunState,
    completed: StepExecution,
    result_data: Optional[Mapping[str, Any]] = None,
) -> Navigation:
    """Compute the executions to activate after ``completed``.

    Must run under the same per-run lock as the write that made ``completed``
    terminal, otherwise two lanes finishing together can both miss the join.

    Raises:
        ValidationError: If a decision outcome has no matching branch or the
            completed execution does not belong to the graph.
    """
    if not 0 <= completed.step_index < len(graph):
        raise ValidationError(
            f"Step index {completed.step_index} is outside the definition"
        )
    node = graph.node(completed.step_index)
    result_data = result_data or {}

    if node.outcome_lanes:
        region = _region_after(graph, node)
        lanes = select_lanes(node, result_data)
        missing = [key for key in lanes if key not in region.lanes]
        if region.splitter != node.index or missing:
            raise ValidationError(
                f"Decision {node.id} points at branches it does not own: {', '.join(missing or lanes)}"
            )
        return _activate(state, [region.lanes[key].head for key in lanes])

    if node.type == StepType.PARALLEL_BRANCH:
        region = _region_after(graph, node)
        return _activate(state, [lane.head for lane in region.lanes.values()])

    if node.region is not None:
        if not node.is_last_in_lane:
            return _activate(state, [node.index + 1])
        if not lanes_converged(node.region, state):
            logger.debug(
                f"Lane {node.lane!r} of run {state.run.id} finished; waiting for siblings"
            )
            return Navigation()
        return _continue(graph, state, node.region.exit)

    return _continue(graph, state, node.index + 1)


def select_lanes(node: StepNode, result_data: Mapping[str, Any]) -> List[str]:
    """Lane keys selected by a decision's completion payload."""
    keys = outcome_keys(result_data)
    if not keys:
        raise ValidationError(f"Decision {node.id} was completed without an outcome")
    if len(keys) > 1 and node.type != StepType.MULTI_CHOICE_BRANCH:
        raise ValidationError(f"Decision {node.id} accepts a single outcome, got {keys}")
    lanes: List[str] = []
    for key in keys:
        if key not in node.outcome_lanes:
            raise ValidationError(f"Outcome {key!r} has no matching branch in step {node.id}")
        lanes.extend(lane for lane in node.outcome_lanes[key] if lane not in lanes)
    return lanes


def lanes_converged(region: Region, state: RunState) -> bool:
    """True when every lane that was entered has a terminal last step.

    Lanes never entered (the unchosen outcomes of a decision) do not hold
    the join back.
    """
    for lane in region.lanes.values():
        entered = any(
            state.execution_at(i).status != StepStatus.PENDING for i in lane.indices
        )
        if entered and not state.execution_at(lane.tail).is_terminal:
            return False
    return True


def _region_after(graph: FlowGraph, node: StepNode) -> Region:
    if node.index + 1 >= len(graph) or graph.node(node.index + 1).region is None:
        raise ValidationError(f"Step {node.id} has no branches to advance into")
    return graph.node(node.index + 1).region


def _continue(graph: FlowGraph, state: RunState, index: Optional[int]) -> Navigation:
    indices = graph.enter(index)
    if not indices:
        return Navigation(run_complete=True)
    return _activate(state, indices)


def _activate(state: RunState, indices: Iterable[int]) -> Navigation:
    next_ids = [
        state.execution_at(i).id
        for i in sorted(set(indices))
        if state.execution_at(i).status == StepStatus.PENDING
    ]
    return Navigation(next_ids=next_ids)
