"""Condition evaluation for automatic choice branches.

Sources are dotted paths into the run context:

- ``kickoff.<field>``
- ``variables.<key>``
- ``steps.<stepId>.<field>`` (result data of a completed step)
- ``roles.<role>`` (the resolved identity, as ``kind:id``)

Anything else is compared as a literal.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .definitions import BranchPathDef, Condition, StepType
from .errors import ValidationError
from .graph import StepNode
from .models import RunState, StepStatus

logger = logging.getLogger(__name__)


def build_context(state: RunState) -> Dict[str, Any]:
    run = state.run
    return {
        "kickoff": run.kickoff_input,
        "variables": run.flow_variables,
        "roles": {name: str(identity) for name, identity in run.role_assignments.items()},
        "steps": {
            e.step_id: e.result_data
            for e in state.executions
            if e.status == StepStatus.COMPLETED
        },
    }


def resolve_source(source: str, context: Mapping[str, Any]) -> str:
    head, _, rest = source.partition(".")
    if head not in context or not rest:
        return source
    value: Any = context[head]
    for part in rest.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return ""
        value = value[part]
    return "" if value is None else str(value)


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    source = resolve_source(condition.source, context)
    value = "" if condition.value is None else str(condition.value)
    op = condition.operator.lower()

    if op == "equals":
        return source.lower() == value.lower()
    if op == "not_equals":
        return source.lower() != value.lower()
    if op == "contains":
        return value.lower() in source.lower()
    if op == "not_contains":
        return value.lower() not in source.lower()
    if op in ("greater_than", "less_than"):
        try:
            left, right = float(source), float(value)
        except ValueError:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "is_empty":
        return source.strip() == ""
    if op == "not_empty":
        return source.strip() != ""
    if op in ("in", "not_in"):
        options = [v.strip().lower() for v in value.split(",")]
        return (source.lower() in options) == (op == "in")

    logger.warning(f"Unknown condition operator: {condition.operator}")
    return False


def path_matches(path: BranchPathDef, context: Mapping[str, Any]) -> bool:
    results = [evaluate_condition(c, context) for c in path.all_conditions()]
    if path.condition_logic.upper() == "ANY":
        return any(results)
    return all(results)


def choose_paths(node: StepNode, state: RunState) -> List[str]:
    """Path ids an automatic choice branch selects.

    Paths without conditions act as the fallback when nothing matches.

    Raises:
        ValidationError: If no path matches and there is no fallback.
    """
    context = build_context(state)
    paths: Sequence[BranchPathDef] = node.step.paths
    matched = [p.path_id for p in paths if p.all_conditions() and path_matches(p, context)]
    if node.type == StepType.SINGLE_CHOICE_BRANCH:
        matched = matched[:1]
    if not matched:
        matched = [p.path_id for p in paths if not p.all_conditions()][:1]
    if not matched:
        raise ValidationError(f"No branch of {node.id} matches and it has no default path")
    return matched


def selection_payload(paths: List[str]) -> Dict[str, Optional[List[str]]]:
    return {"selectedOutcomes": paths}
