"""Compile a :class:`FlowDefinition` into a typed step graph.

Steps are kept as one flat, indexed list (one execution per index). Branches
and parallel groups are described by *regions*: a contiguous slice of the list
that follows a splitting step (or, for a parallel group without a splitter,
simply shares a ``parallelGroup`` tag). A region is divided into *lanes*, each
a contiguous run of steps sharing a branch path.

Nested documents (``outcomes[].steps`` / ``paths[].steps``) are flattened into
that representation, so both authoring styles compile to the same graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .definitions import (
    COORDINATOR_ROLE,
    BranchPathDef,
    CompletionMode,
    FlowDefinition,
    Milestone,
    StepDef,
    StepType,
)
from .errors import ValidationError

logger = logging.getLogger(__name__)

DECISION_TYPES = (
    StepType.DECISION,
    StepType.APPROVAL,
    StepType.SINGLE_CHOICE_BRANCH,
    StepType.MULTI_CHOICE_BRANCH,
)


@dataclass(frozen=True)
class Lane:
    key: str
    indices: Tuple[int, ...]

    @property
    def head(self) -> int:
        return self.indices[0]

    @property
    def tail(self) -> int:
        return self.indices[-1]


@dataclass
class Region:
    """Contiguous block of lanes entered from a splitter or a parallel group."""

    kind: str  # "decision" or "parallel"
    start: int
    end: int
    lanes: Dict[str, Lane]
    splitter: Optional[int] = None
    group_id: Optional[str] = None
    exit: Optional[int] = None


@dataclass
class StepNode:
    index: int
    step: StepDef
    roles: Tuple[str, ...] = ()
    completion_mode: Optional[CompletionMode] = None
    region: Optional[Region] = None
    lane: Optional[str] = None
    # splitters only: outcome key -> lane keys it activates
    outcome_lanes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    conditional_paths: Tuple[BranchPathDef, ...] = ()

    @property
    def id(self) -> str:
        return self.step.id

    @property
    def type(self) -> StepType:
        return self.step.type

    @property
    def branch_path(self) -> Optional[str]:
        return self.step.branch_path

    @property
    def parallel_group(self) -> Optional[str]:
        return self.step.parallel_group

    @property
    def is_group(self) -> bool:
        return self.completion_mode is not None

    @property
    def is_splitter(self) -> bool:
        return bool(self.outcome_lanes) or self.type == StepType.PARALLEL_BRANCH

    @property
    def is_automatic(self) -> bool:
        """Control steps the engine completes by itself on activation."""
        return self.type == StepType.PARALLEL_BRANCH or bool(self.conditional_paths)

    @property
    def is_last_in_lane(self) -> bool:
        return self.region is not None and self.region.lanes[self.lane].tail == self.index


class FlowGraph:
    """Validated, index-addressable view of a flow definition."""

    def __init__(self, definition: FlowDefinition, nodes: List[StepNode]) -> None:
        self.definition = definition
        self.nodes = nodes
        self._by_id = {node.id: node for node in nodes}

    # ------------------------------------------------------------------
    @classmethod
    def build(cls, definition: FlowDefinition) -> "FlowGraph":
        """Flatten and validate ``definition``.

        Raises:
            ValidationError: If the definition cannot be advanced.
        """
        if not definition.steps:
            raise ValidationError(f"Definition {definition.id} has no steps")

        flat = _flatten(definition.steps)
        ids = [step.id for step in flat]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate step ids: {', '.join(duplicates)}")

        flat = _tag_outcome_targets(flat)
        nodes = [
            StepNode(index=i, step=step, **_assignment(definition, step))
            for i, step in enumerate(flat)
        ]
        for node in nodes:
            node.outcome_lanes = _outcome_lanes(node.step)
            if node.type in (StepType.SINGLE_CHOICE_BRANCH, StepType.MULTI_CHOICE_BRANCH):
                node.conditional_paths = tuple(
                    p for p in node.step.paths if p.all_conditions()
                )
            if node.type == StepType.SUB_FLOW and not node.step.sub_flow_id:
                raise ValidationError(f"Sub-flow step {node.id} has no subFlowId")

        _build_regions(nodes)
        for node in nodes:
            # a splitter inside a lane would need a region of its own
            if node.is_splitter and node.region is not None:
                raise ValidationError(
                    f"Nested branches are not supported (step {node.id} on lane {node.lane!r})"
                )
        _check_milestones(definition.milestones, len(nodes))
        return cls(definition, nodes)

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> StepNode:
        return self.nodes[index]

    def node_for(self, step_id: str) -> Optional[StepNode]:
        return self._by_id.get(step_id)

    def enter(self, index: Optional[int]) -> List[int]:
        """Indices activated when control arrives at ``index``.

        Arriving at the first step of a parallel group without a splitter
        fans out to the head of every lane.
        """
        if index is None or index >= len(self.nodes):
            return []
        region = self.nodes[index].region
        if region is not None and region.splitter is None and region.start == index:
            return [lane.head for lane in region.lanes.values()]
        return [index]

    def entry_points(self) -> List[int]:
        return self.enter(0)

    def milestone_for(self, index: int) -> Optional[Milestone]:
        for milestone in self.definition.milestones:
            if index <= milestone.boundary:
                return milestone
        return None

    def milestone_progress(self, completed: Iterable[int]) -> List[Dict[str, object]]:
        """Per milestone: how many of its steps are done."""
        done = set(completed)
        progress = []
        start = 0
        for milestone in self.definition.milestones:
            indices = range(start, milestone.boundary + 1)
            progress.append(
                {
                    "name": milestone.name,
                    "total": len(indices),
                    "completed": sum(1 for i in indices if i in done),
                }
            )
            start = milestone.boundary + 1
        return progress


# ----------------------------------------------------------------------
# construction helpers


def _flatten(
    steps: Sequence[StepDef],
    branch_path: Optional[str] = None,
    parallel_group: Optional[str] = None,
    nested: bool = False,
) -> List[StepDef]:
    flat: List[StepDef] = []
    for step in steps:
        children = [o for o in step.outcomes if o.steps] + [p for p in step.paths if p.steps]
        if nested and children:
            raise ValidationError(f"Nested branches are not supported (step {step.id})")

        fan_out = step.type in (StepType.PARALLEL_BRANCH, StepType.MULTI_CHOICE_BRANCH)
        flat.append(
            step.model_copy(
                update={
                    "branch_path": step.branch_path or branch_path,
                    "parallel_group": step.parallel_group or parallel_group,
                    "outcomes": [
                        o.model_copy(update={"steps": [], "targets": o.targets or [o.key]})
                        if o.steps
                        else o
                        for o in step.outcomes
                    ],
                    "paths": [p.model_copy(update={"steps": []}) for p in step.paths],
                }
            )
        )
        for outcome in step.outcomes:
            if outcome.steps:
                flat.extend(_flatten(outcome.steps, branch_path=outcome.key, nested=True))
        for path in step.paths:
            if path.steps:
                flat.extend(
                    _flatten(
                        path.steps,
                        branch_path=path.path_id,
                        parallel_group=step.id if fan_out else None,
                        nested=True,
                    )
                )
    return flat


def _tag_outcome_targets(flat: List[StepDef]) -> List[StepDef]:
    """Outcomes may name a step id instead of a branch path.

    An untagged target step is tagged with the outcome key, and the outcome is
    rewritten to point at the target's branch path.
    """
    index_of = {step.id: i for i, step in enumerate(flat)}
    for i, step in enumerate(flat):
        if not step.outcomes:
            continue
        outcomes = []
        for outcome in step.outcomes:
            targets = []
            for target in outcome.targets:
                j = index_of.get(target)
                if j is None or j <= i:
                    targets.append(target)
                    continue
                if flat[j].branch_path is None:
                    flat[j] = flat[j].model_copy(update={"branch_path": outcome.key})
                targets.append(flat[j].branch_path)
            outcomes.append(outcome.model_copy(update={"targets": targets}))
        flat[i] = step.model_copy(update={"outcomes": outcomes})
    return flat


def _outcome_lanes(step: StepDef) -> Dict[str, Tuple[str, ...]]:
    if step.type not in DECISION_TYPES:
        return {}
    if step.outcomes:
        return {o.key: tuple(o.targets or [o.key]) for o in step.outcomes}
    return {p.path_id: (p.path_id,) for p in step.paths}


def _assignment(definition: FlowDefinition, step: StepDef) -> Dict[str, object]:
    refs = list(step.assignees) if step.is_group else ([step.assignee] if step.assignee else [])
    roles = []
    for ref in refs:
        if ref == COORDINATOR_ROLE:
            roles.append(ref)
            continue
        role = definition.role(ref)
        if role is None:
            raise ValidationError(f"Step {step.id} references unknown role {ref!r}")
        roles.append(role.name)
    mode = None
    if step.is_group:
        mode = step.completion_mode or CompletionMode.ANY
    return {"roles": tuple(roles), "completion_mode": mode}


def _build_regions(nodes: List[StepNode]) -> None:
    n = len(nodes)
    i = 0
    while i < n:
        node = nodes[i]
        following_tagged = i + 1 < n and _is_tagged(nodes[i + 1])
        if node.outcome_lanes:
            if not following_tagged:
                raise ValidationError(f"Decision {node.id} has no branch steps after it")
            allowed = {lane for lanes in node.outcome_lanes.values() for lane in lanes}
            j = i + 1
            while j < n and nodes[j].branch_path in allowed:
                j += 1
            region = _make_region("decision", nodes, i + 1, j - 1, splitter=i)
            missing = sorted(allowed - set(region.lanes))
            if missing:
                raise ValidationError(
                    f"Decision {node.id} has outcomes without branch steps: {', '.join(missing)}"
                )
            i = j
            continue
        if node.type == StepType.PARALLEL_BRANCH:
            if not following_tagged or nodes[i + 1].parallel_group is None:
                raise ValidationError(f"Parallel branch {node.id} has no lanes after it")
            j = _group_end(nodes, i + 1)
            _make_region("parallel", nodes, i + 1, j - 1, splitter=i)
            i = j
            continue
        if _is_tagged(node):
            if node.parallel_group is None:
                raise ValidationError(
                    f"Step {node.id} is on branch {node.branch_path!r} "
                    "but does not follow a decision"
                )
            j = _group_end(nodes, i)
            _make_region("parallel", nodes, i, j - 1, splitter=None)
            i = j
            continue
        i += 1


def _group_end(nodes: List[StepNode], start: int) -> int:
    group = nodes[start].parallel_group
    j = start
    while j < len(nodes) and nodes[j].parallel_group == group:
        j += 1
    return j


def _is_tagged(node: StepNode) -> bool:
    return node.branch_path is not None or node.parallel_group is not None


def _make_region(
    kind: str, nodes: List[StepNode], start: int, end: int, splitter: Optional[int]
) -> Region:
    lanes: Dict[str, List[int]] = {}
    for index in range(start, end + 1):
        node = nodes[index]
        key = node.branch_path or node.id
        if key in lanes and lanes[key][-1] != index - 1:
            raise ValidationError(f"Branch lane {key!r} is not contiguous")
        lanes.setdefault(key, []).append(index)
    region = Region(
        kind=kind,
        start=start,
        end=end,
        lanes={key: Lane(key, tuple(indices)) for key, indices in lanes.items()},
        splitter=splitter,
        group_id=nodes[start].parallel_group,
        exit=end + 1 if end + 1 < len(nodes) else None,
    )
    for key, lane in region.lanes.items():
        for index in lane.indices:
            nodes[index].region = region
            nodes[index].lane = key
    return region


def _check_milestones(milestones: Sequence[Milestone], step_count: int) -> None:
    previous = -1
    for milestone in milestones:
        if not previous < milestone.boundary < step_count:
            raise ValidationError(
                f"Milestone {milestone.name!r} has an invalid boundary {milestone.boundary}"
            )
        previous = milestone.boundary


def outcome_keys(result_data: Mapping[str, object]) -> List[str]:
    """Outcome key(s) carried by a decision's completion payload."""
    for key in ("decision", "outcome", "selectedOutcome", "selectedPathId", "selectedOutcomes"):
        value = result_data.get(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return [str(value)]
    return []
