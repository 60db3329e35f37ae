"""End-to-end progression of linear and branching runs."""

import asyncio
from datetime import timedelta

import pytest

from flowrelay.collaborators import EventNotifier
from flowrelay.definitions import FlowDefinition
from flowrelay.engine import RunEngine, StartContext
from flowrelay.errors import NotFoundError, StateError, ValidationError
from flowrelay.events import ACCESS_ISSUE, RUN_COMPLETED, STEP_ACTIVATED, STEP_COMPLETED
from flowrelay.models import Identity, RunStatus, StepStatus
from flowrelay.persistence import SQLiteRunRepository

STARTER = Identity.user("coordinator-1")


def statuses(state):
    return {e.step_id: e.status for e in state.executions}


@pytest.mark.asyncio
async def test_linear_run_advances_one_step_at_a_time(engine, notifier, linear_definition, start_context):
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)

    state = await engine.get_run(run.id)
    assert statuses(state) == {
        "intake": StepStatus.IN_PROGRESS,
        "check": StepStatus.PENDING,
        "wrap-up": StepStatus.PENDING,
    }
    intake = state.execution_for_step("intake")
    assert intake.assignee == Identity.contact("client@example.com")
    assert intake.due_at == intake.started_at + timedelta(days=2)
    assert state.run.role_assignments["Owner"] == STARTER

    result = await engine.complete_step(run.id, "intake", {"company": "Acme"})
    assert result.advanced
    assert result.next_step_ids == ["check"]

    state = await engine.get_run(run.id)
    assert state.execution_for_step("check").assignee == STARTER
    assert state.execution_for_step("intake").result_data == {"company": "Acme"}
    assert state.run.current_step_index == 1

    await engine.complete_step(run.id, "check", {})
    result = await engine.complete_step(run.id, "wrap-up", {})
    assert result.run_completed

    state = await engine.get_run(run.id)
    assert state.run.status == RunStatus.COMPLETED
    assert state.run.completed_at is not None
    assert notifier.topics().count(RUN_COMPLETED) == 1
    assert len(notifier.of(STEP_COMPLETED)) == 3


@pytest.mark.asyncio
async def test_activation_events_and_access_tokens(engine, notifier, linear_definition, start_context):
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)
    state = await engine.get_run(run.id)
    intake = state.execution_for_step("intake")

    activated = notifier.of(STEP_ACTIVATED)
    assert [e.execution_ids for e in activated] == [[intake.id]]
    assert activated[0].due_at == intake.due_at
    tokens = notifier.of(ACCESS_ISSUE)
    assert [e.data["identity"] for e in tokens] == ["contact:client@example.com"]

    await engine.complete_step(run.id, "intake", {})
    # internal users get no access token
    assert len(notifier.of(ACCESS_ISSUE)) == 1

    actions = [r.action for r in await engine.audit_trail(run.id)]
    assert actions == ["RUN_STARTED", "STEP_ACTIVATED", "STEP_COMPLETED", "STEP_ACTIVATED"]


@pytest.mark.asyncio
async def test_decision_takes_exactly_one_branch(engine, approval_definition, start_context):
    await engine.register_definition(approval_definition)
    run = await engine.start_run("approval", start_context)

    await engine.complete_step(run.id, "STEP_A", {"amount": 10})
    state = await engine.get_run(run.id)
    assert state.execution_for_step("STEP_B").assignee == STARTER

    result = await engine.complete_step(run.id, "STEP_B", {"decision": "rejected"})
    assert result.next_step_ids == ["STEP_D"]
    state = await engine.get_run(run.id)
    assert state.execution_for_step("STEP_C").status == StepStatus.PENDING
    assert state.execution_for_step("STEP_D").status == StepStatus.IN_PROGRESS

    result = await engine.complete_step(run.id, "STEP_D", {})
    assert result.run_completed
    state = await engine.get_run(run.id)
    # the unchosen branch is never activated
    assert state.execution_for_step("STEP_C").status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_unmatched_outcome_leaves_run_untouched(engine, approval_definition, start_context):
    await engine.register_definition(approval_definition)
    run = await engine.start_run("approval", start_context)
    await engine.complete_step(run.id, "STEP_A", {})

    with pytest.raises(ValidationError):
        await engine.complete_step(run.id, "STEP_B", {"decision": "maybe"})

    state = await engine.get_run(run.id)
    assert state.execution_for_step("STEP_B").status == StepStatus.IN_PROGRESS
    assert state.execution_for_step("STEP_B").result_data == {}


@pytest.mark.asyncio
async def test_conditional_branch_is_chosen_automatically(engine, start_context):
    await engine.register_definition(
        {
            "id": "routing",
            "steps": [
                {
                    "id": "route",
                    "type": "SINGLE_CHOICE_BRANCH",
                    "paths": [
                        {
                            "pathId": "big",
                            "conditions": [{"source": "kickoff.amount", "operator": "greater_than", "value": 1000}],
                        },
                        {"pathId": "small"},
                    ],
                },
                {"id": "big-review", "type": "TODO", "branchPath": "big"},
                {"id": "small-review", "type": "TODO", "branchPath": "small"},
            ],
        }
    )
    context = start_context.model_copy(update={"kickoff_input": {"amount": 5000}})
    run = await engine.start_run("routing", context)

    state = await engine.get_run(run.id)
    assert state.execution_for_step("route").status == StepStatus.COMPLETED
    assert state.execution_for_step("route").result_data == {"selectedOutcomes": ["big"]}
    assert state.execution_for_step("big-review").status == StepStatus.IN_PROGRESS
    assert state.execution_for_step("small-review").status == StepStatus.PENDING

    result = await engine.complete_step(run.id, "big-review", {})
    assert result.run_completed


@pytest.mark.asyncio
async def test_step_errors(engine, linear_definition, start_context):
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)

    with pytest.raises(NotFoundError):
        await engine.complete_step(run.id, "nope", {})
    with pytest.raises(StateError):
        await engine.complete_step(run.id, "check", {})
    with pytest.raises(NotFoundError):
        await engine.complete_step("missing-run", "intake", {})
    with pytest.raises(NotFoundError):
        await engine.start_run("missing-definition", start_context)


@pytest.mark.asyncio
async def test_concurrent_completion_advances_once(engine, notifier, linear_definition, start_context):
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)

    results = await asyncio.gather(
        engine.complete_step(run.id, "intake", {"n": 1}),
        engine.complete_step(run.id, "intake", {"n": 2}),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1 and successes[0].advanced
    assert len(errors) == 1 and isinstance(errors[0], StateError)

    state = await engine.get_run(run.id)
    assert state.execution_for_step("check").status == StepStatus.IN_PROGRESS
    check_id = state.execution_for_step("check").id
    assert sum(check_id in e.execution_ids for e in notifier.of(STEP_ACTIVATED)) == 1


@pytest.mark.asyncio
async def test_reserved_keys_are_stripped(engine, linear_definition, start_context):
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)
    await engine.complete_step(
        run.id, "intake", {"answer": 1, "_aiReview": {"status": "APPROVED"}, "_groupCompletion": {}}
    )
    state = await engine.get_run(run.id)
    assert state.execution_for_step("intake").result_data == {"answer": 1}


@pytest.mark.asyncio
async def test_required_kickoff_fields(engine, start_context):
    await engine.register_definition(
        {
            "id": "kickoff",
            "kickoff": {
                "fields": [
                    {"fieldId": "email", "label": "Email", "required": True},
                    {"fieldId": "intro", "type": "HEADING", "required": True},
                ]
            },
            "steps": [{"id": "a", "type": "TODO"}],
        }
    )
    with pytest.raises(ValidationError, match="Email"):
        await engine.start_run("kickoff", start_context)

    context = start_context.model_copy(update={"kickoff_input": {"email": "x@example.com"}})
    run = await engine.start_run("kickoff", context)
    assert run.kickoff_input == {"email": "x@example.com"}


@pytest.mark.asyncio
async def test_unpublished_definitions_only_start_as_test_runs(engine, start_context):
    await engine.register_definition(
        {"id": "draft", "status": "DRAFT", "steps": [{"id": "a", "type": "TODO"}]}
    )
    with pytest.raises(StateError):
        await engine.start_run("draft", start_context)

    run = await engine.start_run("draft", start_context.model_copy(update={"is_test": True}))
    assert run.is_test


@pytest.mark.asyncio
async def test_definition_without_steps_cannot_start(engine, repository, start_context):
    with pytest.raises(ValidationError):
        await engine.register_definition({"id": "empty", "steps": []})

    await repository.save_definition(FlowDefinition.parse({"id": "empty", "steps": []}))
    with pytest.raises(ValidationError):
        await engine.start_run("empty", start_context)
    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_unresolved_role_waits_for_assignee(engine, start_context):
    await engine.register_definition(
        {
            "id": "tbd",
            "roles": [{"name": "Vendor", "resolution": {"type": "CONTACT_TBD"}}],
            "steps": [{"id": "quote", "type": "FORM", "assignee": "Vendor"}],
        }
    )
    run = await engine.start_run("tbd", start_context)
    state = await engine.get_run(run.id)
    assert state.execution_for_step("quote").status == StepStatus.WAITING_FOR_ASSIGNEE
    assert "Vendor" not in state.run.role_assignments

    # waiting steps can still be completed
    result = await engine.complete_step(run.id, "quote", {})
    assert result.run_completed


@pytest.mark.asyncio
async def test_role_overrides_and_flow_variables(engine, start_context):
    await engine.register_definition(
        {
            "id": "vars",
            "roles": [
                {"name": "Auditor", "resolution": {"type": "FLOW_VARIABLE", "variableKey": "auditor"}},
                {"name": "Client", "resolution": {"type": "CONTACT_TBD"}},
            ],
            "steps": [
                {"id": "audit", "type": "TODO", "assignee": "Auditor"},
                {"id": "sign", "type": "ESIGN", "assignee": "Client"},
            ],
        }
    )
    context = StartContext(
        starter=STARTER,
        organization_id="org-1",
        role_overrides={"Client": Identity.contact("client@example.com")},
        kickoff_input={"flowVariables": {"auditor": "Audit@Example.com"}},
    )
    run = await engine.start_run("vars", context)
    assert run.flow_variables == {"auditor": "Audit@Example.com"}
    assert run.role_assignments["Auditor"] == Identity.contact("audit@example.com")
    assert run.role_assignments["Client"] == Identity.contact("client@example.com")


@pytest.mark.asyncio
async def test_failing_notifier_does_not_undo_transitions(repository, linear_definition, start_context):
    class BrokenNotifier(EventNotifier):
        async def emit(self, event):
            raise RuntimeError("scheduler down")

    engine = RunEngine(repository, notifier=BrokenNotifier())
    await engine.register_definition(linear_definition)
    run = await engine.start_run("linear", start_context)
    result = await engine.complete_step(run.id, "intake", {})
    assert result.next_step_ids == ["check"]
    state = await engine.get_run(run.id)
    assert state.execution_for_step("check").status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_sqlite_backed_run_survives_restart(tmp_path, approval_definition, start_context):
    path = tmp_path / "runs.db"
    engine = RunEngine(SQLiteRunRepository(path))
    await engine.register_definition(approval_definition)
    run = await engine.start_run("approval", start_context)
    await engine.complete_step(run.id, "STEP_A", {})

    restarted = RunEngine(SQLiteRunRepository(path))
    result = await restarted.complete_step(run.id, "STEP_B", {"decision": "approved"})
    assert result.next_step_ids == ["STEP_C"]
    await restarted.complete_step(run.id, "STEP_C", {})

    state = await restarted.get_run(run.id)
    assert state.run.status == RunStatus.COMPLETED
    assert state.run.version == 3
    progress = await restarted.milestone_progress(run.id)
    assert progress == []
