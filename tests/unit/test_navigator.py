"""Tests for next-step navigation."""

import pytest

from flowrelay.definitions import FlowDefinition
from flowrelay.errors import ValidationError
from flowrelay.graph import FlowGraph
from flowrelay.models import FlowRun, Identity, RunState, StepExecution, StepStatus
from flowrelay.navigator import lanes_converged, navigate


def make_state(graph, statuses=None):
    statuses = statuses or {}
    run = FlowRun(definition_id=graph.definition.id, organization_id="org", started_by=Identity.user("u"))
    return RunState(
        run=run,
        executions=[
            StepExecution(
                run_id=run.id,
                step_id=node.id,
                step_index=node.index,
                status=statuses.get(node.id, StepStatus.PENDING),
            )
            for node in graph.nodes
        ],
    )


def complete(state, step_id):
    execution = state.execution_for_step(step_id)
    execution.status = StepStatus.COMPLETED
    return execution


def ids_to_steps(state, ids):
    return [state.execution(i).step_id for i in ids]


def test_linear_advances_to_next_index(linear_definition):
    graph = FlowGraph.build(FlowDefinition.parse(linear_definition))
    state = make_state(graph)
    nav = navigate(graph, state, complete(state, "intake"))
    assert ids_to_steps(state, nav.next_ids) == ["check"]
    assert not nav.run_complete


def test_last_step_signals_run_complete(linear_definition):
    graph = FlowGraph.build(FlowDefinition.parse(linear_definition))
    state = make_state(graph)
    nav = navigate(graph, state, complete(state, "wrap-up"))
    assert nav.next_ids == []
    assert nav.run_complete


def test_decision_activates_only_matching_lane(approval_definition):
    graph = FlowGraph.build(FlowDefinition.parse(approval_definition))
    state = make_state(graph)
    nav = navigate(graph, state, complete(state, "STEP_B"), {"decision": "rejected"})
    assert ids_to_steps(state, nav.next_ids) == ["STEP_D"]


def test_unmatched_outcome_is_a_validation_error(approval_definition):
    graph = FlowGraph.build(FlowDefinition.parse(approval_definition))
    state = make_state(graph)
    with pytest.raises(ValidationError, match="no matching branch"):
        navigate(graph, state, complete(state, "STEP_B"), {"decision": "maybe"})
    with pytest.raises(ValidationError, match="without an outcome"):
        navigate(graph, state, complete(state, "STEP_B"), {})


def test_outcome_pointing_at_unknown_lane_is_a_validation_error(approval_definition):
    graph = FlowGraph.build(FlowDefinition.parse(approval_definition))
    graph.node_for("STEP_B").outcome_lanes = {"approved": ("ghost",)}
    state = make_state(graph)
    with pytest.raises(ValidationError, match="does not own: ghost"):
        navigate(graph, state, complete(state, "STEP_B"), {"decision": "approved"})


def test_finishing_chosen_lane_ignores_unentered_lanes(approval_definition):
    graph = FlowGraph.build(FlowDefinition.parse(approval_definition))
    state = make_state(graph, {"STEP_A": StepStatus.COMPLETED, "STEP_B": StepStatus.COMPLETED})
    nav = navigate(graph, state, complete(state, "STEP_C"))
    assert nav.run_complete


def test_parallel_join_waits_for_every_lane(parallel_definition):
    graph = FlowGraph.build(FlowDefinition.parse(parallel_definition))
    state = make_state(
        graph,
        {
            "kickoff": StepStatus.COMPLETED,
            "split": StepStatus.COMPLETED,
            "legal": StepStatus.IN_PROGRESS,
            "finance": StepStatus.IN_PROGRESS,
        },
    )
    nav = navigate(graph, state, complete(state, "finance"))
    assert nav.next_ids == [] and not nav.run_complete
    assert not lanes_converged(graph.node_for("legal").region, state)

    nav = navigate(graph, state, complete(state, "legal"))
    assert ids_to_steps(state, nav.next_ids) == ["legal-sign"]
    state.execution_for_step("legal-sign").status = StepStatus.IN_PROGRESS

    nav = navigate(graph, state, complete(state, "legal-sign"))
    assert ids_to_steps(state, nav.next_ids) == ["join"]


def test_parallel_branch_fans_out(parallel_definition):
    graph = FlowGraph.build(FlowDefinition.parse(parallel_definition))
    state = make_state(graph, {"kickoff": StepStatus.COMPLETED})
    nav = navigate(graph, state, complete(state, "split"))
    assert ids_to_steps(state, nav.next_ids) == ["legal", "finance"]


def test_already_active_targets_are_not_returned(parallel_definition):
    graph = FlowGraph.build(FlowDefinition.parse(parallel_definition))
    state = make_state(graph, {"legal": StepStatus.IN_PROGRESS})
    nav = navigate(graph, state, complete(state, "split"))
    assert ids_to_steps(state, nav.next_ids) == ["finance"]
