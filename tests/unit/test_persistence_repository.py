import pytest

from flowrelay.definitions import DefinitionStatus, FlowDefinition
from flowrelay.errors import NotFoundError, TransientError
from flowrelay.models import (
    AuditRecord,
    FlowRun,
    GroupAssignee,
    Identity,
    RunState,
    StepExecution,
    StepStatus,
)
from flowrelay.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRunRepository(tmp_path / "runs.db")
    return InMemoryRunRepository()


def make_state(definition_id="flow"):
    run = FlowRun(
        definition_id=definition_id,
        organization_id="org",
        started_by=Identity.user("u1"),
        kickoff_input={"foo": "bar"},
    )
    first = StepExecution(run_id=run.id, step_id="a", step_index=0, status=StepStatus.IN_PROGRESS)
    second = StepExecution(run_id=run.id, step_id="b", step_index=1)
    members = [
        GroupAssignee(execution_id=second.id, identity=Identity.contact("x@example.com")),
        GroupAssignee(execution_id=second.id, identity=Identity.contact("y@example.com")),
    ]
    return RunState(run=run, executions=[first, second], group_assignees=members)


def make_definition(version=1, status="PUBLISHED"):
    return FlowDefinition.parse(
        {
            "id": "flow",
            "version": version,
            "status": status,
            "steps": [{"id": "a", "type": "TODO"}, {"id": "b", "type": "APPROVAL"}],
        }
    )


@pytest.mark.asyncio
async def test_definitions_are_versioned(repo):
    await repo.save_definition(make_definition(1))
    await repo.save_definition(make_definition(2, status="DRAFT"))

    latest = await repo.get_definition("flow")
    assert latest.version == 2
    assert latest.status == DefinitionStatus.DRAFT
    first = await repo.get_definition("flow", version=1)
    assert [s.id for s in first.steps] == ["a", "b"]
    assert await repo.get_definition("missing") is None
    assert [d.version for d in await repo.list_definitions()] == [2]


@pytest.mark.asyncio
async def test_run_crud(repo):
    state = make_state()
    await repo.create_run(state)

    loaded = await repo.get_run(state.run.id)
    assert loaded is not None
    assert loaded.run.kickoff_input == {"foo": "bar"}
    assert [e.step_id for e in loaded.executions] == ["a", "b"]
    assert loaded.executions[0].status == StepStatus.IN_PROGRESS
    assert [g.identity.id for g in loaded.group_for(loaded.executions[1].id)] == [
        "x@example.com",
        "y@example.com",
    ]
    assert await repo.get_run("missing") is None
    assert [r.id for r in await repo.list_runs()] == [state.run.id]


@pytest.mark.asyncio
async def test_transaction_commits_and_bumps_version(repo):
    state = make_state()
    await repo.create_run(state)

    async with repo.run_transaction(state.run.id) as tx:
        tx.state.executions[0].status = StepStatus.COMPLETED
        tx.create_run(make_state("child"))

    loaded = await repo.get_run(state.run.id)
    assert loaded.run.version == 1
    assert loaded.executions[0].status == StepStatus.COMPLETED
    assert len(await repo.list_runs()) == 2


@pytest.mark.asyncio
async def test_failed_transaction_discards_changes(repo):
    state = make_state()
    await repo.create_run(state)

    with pytest.raises(RuntimeError):
        async with repo.run_transaction(state.run.id) as tx:
            tx.state.executions[0].status = StepStatus.COMPLETED
            raise RuntimeError("boom")

    loaded = await repo.get_run(state.run.id)
    assert loaded.run.version == 0
    assert loaded.executions[0].status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_transaction_on_unknown_run(repo):
    with pytest.raises(NotFoundError):
        async with repo.run_transaction("missing"):
            pass


@pytest.mark.asyncio
async def test_concurrent_write_is_a_version_conflict(repo):
    state = make_state()
    await repo.create_run(state)

    with pytest.raises(TransientError):
        async with repo.run_transaction(state.run.id) as tx:
            tx.state.executions[0].status = StepStatus.COMPLETED
            # another writer slips in outside the run lock
            bumped = state.model_copy(deep=True)
            bumped.run.version = 7
            await repo.create_run(bumped)

    loaded = await repo.get_run(state.run.id)
    assert loaded.run.version == 7
    assert loaded.executions[0].status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_rotation_and_audit(repo):
    assert [await repo.next_rotation("flow", "Agent") for _ in range(3)] == [0, 1, 2]
    assert await repo.next_rotation("flow", "Other") == 0

    await repo.append_audit(AuditRecord(run_id="r1", action="RUN_STARTED"))
    await repo.append_audit(AuditRecord(run_id="r1", action="RUN_COMPLETED", step_ids=["a"]))
    await repo.append_audit(AuditRecord(run_id="r2", action="RUN_STARTED"))
    records = await repo.list_audit("r1")
    assert [r.action for r in records] == ["RUN_STARTED", "RUN_COMPLETED"]
    assert records[1].step_ids == ["a"]


@pytest.mark.asyncio
async def test_create_run_stores_children_with_the_parent(repo):
    parent, child = make_state(), make_state("child")
    await repo.create_run(parent, [child])

    assert [r.definition_id for r in await repo.list_runs()] == ["flow", "child"]
    assert (await repo.get_run(child.run.id)).executions[0].step_id == "a"


@pytest.mark.asyncio
async def test_member_slot_keeps_one_row_when_reassigned(repo):
    state = make_state()
    execution_id = state.executions[1].id
    state.group_assignees = [
        GroupAssignee(execution_id=execution_id, role="Lead", identity=Identity.contact("x@example.com")),
        GroupAssignee(execution_id=execution_id, role="Auditor"),
    ]
    await repo.create_run(state)

    async with repo.run_transaction(state.run.id) as tx:
        members = tx.state.group_for(execution_id)
        members[0].identity = Identity.user("deputy")
        members[1].identity = Identity.contact("z@example.com")

    loaded = await repo.get_run(state.run.id)
    assert [(m.role, str(m.identity)) for m in loaded.group_for(execution_id)] == [
        ("Lead", "user:deputy"),
        ("Auditor", "contact:z@example.com"),
    ]
