"""Sub-flow steps start linked child runs."""

import sqlite3

import pytest

from flowrelay.engine import RunEngine
from flowrelay.errors import NotFoundError, ValidationError
from flowrelay.models import RunStatus, StepStatus
from flowrelay.persistence import SQLiteRunRepository

CHILD = {"id": "child", "steps": [{"id": "child-task", "type": "TODO"}]}

PARENT = {
    "id": "parent",
    "steps": [
        {"id": "intake", "type": "FORM"},
        {"id": "spawn", "type": "SUB_FLOW", "subFlowId": "child", "inputs": {"origin": "parent"}},
        {"id": "after", "type": "TODO"},
    ],
}


@pytest.mark.asyncio
async def test_sub_flow_step_starts_linked_child_run(engine, repository, start_context):
    await engine.register_definition(CHILD)
    await engine.register_definition(PARENT)
    context = start_context.model_copy(update={"kickoff_input": {"customer": "Acme"}})
    run = await engine.start_run("parent", context)

    result = await engine.complete_step(run.id, "intake", {})
    assert result.next_step_ids == ["spawn"]

    parent = await engine.get_run(run.id)
    spawn = parent.execution_for_step("spawn")
    assert spawn.status == StepStatus.IN_PROGRESS
    assert spawn.child_run_id is not None

    child = await engine.get_run(spawn.child_run_id)
    assert child.run.parent_run_id == run.id
    assert child.run.parent_step_execution_id == spawn.id
    assert child.run.kickoff_input == {"customer": "Acme", "origin": "parent"}
    assert child.execution_for_step("child-task").status == StepStatus.IN_PROGRESS
    assert len(await repository.list_runs()) == 2

    actions = [r.action for r in await engine.audit_trail(run.id)]
    assert "SUB_FLOW_STARTED" in actions


@pytest.mark.asyncio
async def test_parent_advances_independently_of_child(engine, start_context):
    await engine.register_definition(CHILD)
    await engine.register_definition(PARENT)
    run = await engine.start_run("parent", start_context)
    await engine.complete_step(run.id, "intake", {})

    result = await engine.complete_step(run.id, "spawn", {})
    assert result.next_step_ids == ["after"]
    await engine.complete_step(run.id, "after", {})

    parent = await engine.get_run(run.id)
    child = await engine.get_run(parent.execution_for_step("spawn").child_run_id)
    assert parent.run.status == RunStatus.COMPLETED
    assert child.run.status == RunStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_cancelling_parent_leaves_child_running(engine, start_context):
    await engine.register_definition(CHILD)
    await engine.register_definition(PARENT)
    run = await engine.start_run("parent", start_context)
    await engine.complete_step(run.id, "intake", {})

    await engine.cancel_run(run.id)
    parent = await engine.get_run(run.id)
    child = await engine.get_run(parent.execution_for_step("spawn").child_run_id)
    assert parent.run.status == RunStatus.CANCELLED
    assert child.run.status == RunStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_sub_flow_at_start_is_created_with_the_parent(engine, repository, start_context):
    await engine.register_definition(CHILD)
    await engine.register_definition(
        {"id": "direct", "steps": [{"id": "spawn", "type": "SUB_FLOW", "subFlowId": "child"}]}
    )
    run = await engine.start_run("direct", start_context)
    runs = await repository.list_runs()
    assert [r.definition_id for r in runs] == ["direct", "child"]
    assert runs[1].parent_run_id == run.id


@pytest.mark.asyncio
async def test_self_starting_sub_flow_is_rejected(engine, repository, start_context):
    await engine.register_definition(
        {"id": "loop", "steps": [{"id": "again", "type": "SUB_FLOW", "subFlowId": "loop"}]}
    )
    with pytest.raises(ValidationError):
        await engine.start_run("loop", start_context)
    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_missing_child_definition_commits_nothing(engine, start_context):
    await engine.register_definition(PARENT)
    run = await engine.start_run("parent", start_context)

    with pytest.raises(NotFoundError):
        await engine.complete_step(run.id, "intake", {})

    parent = await engine.get_run(run.id)
    assert parent.execution_for_step("intake").status == StepStatus.IN_PROGRESS
    assert parent.execution_for_step("spawn").status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_failed_child_write_stores_neither_run(tmp_path, monkeypatch, start_context):
    repository = SQLiteRunRepository(tmp_path / "runs.db")
    engine = RunEngine(repository)
    await engine.register_definition(CHILD)
    await engine.register_definition(
        {"id": "direct", "steps": [{"id": "spawn", "type": "SUB_FLOW", "subFlowId": "child"}]}
    )

    write_state = repository._write_state

    def refuse_child(state):
        if state.run.definition_id == "child":
            raise sqlite3.OperationalError("disk I/O error")
        write_state(state)

    monkeypatch.setattr(repository, "_write_state", refuse_child)
    with pytest.raises(sqlite3.OperationalError):
        await engine.start_run("direct", start_context)
    assert await repository.list_runs() == []
