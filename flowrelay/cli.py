"""Command line interface for managing flow definitions and runs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from flowrelay.config import load_config
from flowrelay.engine import RunEngine, StartContext
from flowrelay.errors import FlowRelayError, NotFoundError
from flowrelay.models import Identity, StepStatus
from flowrelay.persistence import get_repository
from flowrelay.utils.retry import retry_transient

app = typer.Typer(help="CLI for flowrelay definitions and runs")

# Command groups
definition_app = typer.Typer(help="Commands for managing flow definitions")
run_app = typer.Typer(help="Commands for starting and advancing runs")

app.add_typer(definition_app, name="definition")
app.add_typer(run_app, name="run")


@app.callback()
def main() -> None:
    """flowrelay CLI entry point."""
    pass


def _engine() -> RunEngine:
    return RunEngine.from_config(load_config(), repository=get_repository())


def _identity(value: str) -> Identity:
    try:
        return Identity.parse(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))


def _json_option(value: Optional[str], name: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{name} must be a JSON object: {exc}")
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{name} must be a JSON object")
    return data


def _run(operation) -> Any:
    """Run an engine coroutine, retrying transient failures, and report errors."""
    attempts = load_config().retry.attempts
    try:
        return asyncio.run(retry_transient(operation, attempts=attempts))
    except FlowRelayError as exc:
        typer.secho(f"{type(exc).__name__}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("load")
def definition_load(path: Path) -> None:
    """
    Validate and store a flow definition from a JSON or YAML file.

    Example:
        flowrelay definition load ./onboarding.json
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    raw = yaml.safe_load(path.read_text())
    engine = _engine()
    definition = _run(lambda: engine.register_definition(raw))
    typer.echo(
        f"Loaded {definition.id} v{definition.version} "
        f"({len(definition.steps)} steps, {definition.status.value})"
    )


@definition_app.command("list")
def definition_list() -> None:
    """List the latest version of every stored definition."""
    definitions = asyncio.run(get_repository().list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.id}\tv{d.version}\t{d.status.value}\t{d.name or ''}")


@run_app.command("start")
def run_start(
    definition_id: str,
    starter: str = typer.Option(..., help="Identity starting the run, e.g. user:42"),
    org: str = typer.Option(..., help="Organization id"),
    role: List[str] = typer.Option([], help="Role override as NAME=IDENTITY"),
    kickoff: Optional[str] = typer.Option(None, help="Kickoff form input as JSON"),
    test: bool = typer.Option(False, help="Start a test run (allows unpublished definitions)"),
) -> None:
    """
    Start a run of a stored definition.

    Example:
        flowrelay run start onboarding --starter user:1 --org acme \\
            --role Client=contact:jane@example.com --kickoff '{"email": "jane@example.com"}'
    """
    overrides: Dict[str, Identity] = {}
    for item in role:
        name, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Role override must look like NAME=IDENTITY, got {item!r}")
        overrides[name] = _identity(value)
    context = StartContext(
        starter=_identity(starter),
        organization_id=org,
        role_overrides=overrides,
        kickoff_input=_json_option(kickoff, "--kickoff"),
        is_test=test,
    )
    engine = _engine()
    run = _run(lambda: engine.start_run(definition_id, context))
    typer.echo(f"Started run {run.id}: {run.status.value}")


@run_app.command("complete")
def run_complete(
    run_id: str,
    step_id: str,
    data: Optional[str] = typer.Option(None, help="Result data as JSON"),
    actor: Optional[str] = typer.Option(None, help="Submitting identity (required for group steps)"),
) -> None:
    """Submit a step result and advance the run."""
    payload = _json_option(data, "--data")
    identity = _identity(actor) if actor else None
    engine = _engine()
    result = _run(lambda: engine.complete_step(run_id, step_id, payload, actor=identity))
    if result.revision_requested:
        typer.echo(f"Revision requested: {result.feedback or 'no feedback'}")
        for issue in result.issues:
            typer.echo(f"  - {issue}")
    elif result.awaiting_review:
        typer.echo("Submission is awaiting review")
    elif result.partial:
        typer.echo("Submission recorded; waiting for other group members")
    else:
        typer.echo(f"Completed {step_id}")
        if result.next_step_ids:
            typer.echo(f"Next: {', '.join(result.next_step_ids)}")
        if result.run_completed:
            typer.echo("Run completed")


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Cancel a run and skip every unfinished step."""
    engine = _engine()
    result = _run(lambda: engine.cancel_run(run_id))
    typer.echo(f"Cancelled run {run_id}; skipped {len(result.skipped_step_ids)} step(s)")


@run_app.command("reassign")
def run_reassign(
    run_id: str,
    step_id: str,
    identity: str,
    replacing: Optional[str] = typer.Option(
        None, help="Group steps: role or identity of the member being replaced"
    ),
) -> None:
    """Hand an unfinished step (or one member slot of a group step) to another identity."""
    target = _identity(identity)
    engine = _engine()
    execution = _run(
        lambda: engine.reassign_step(run_id, step_id, target, replacing=replacing)
    )
    typer.echo(f"{step_id} assigned to {target} ({execution.status.value})")


@run_app.command("list")
def run_list() -> None:
    """
    List all runs with their current status.

    Example:
        flowrelay run list
        # Output: 3f2a...    onboarding    IN_PROGRESS
    """
    runs = asyncio.run(get_repository().list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.definition_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show steps, milestones and the audit trail of a run.

    Example:
        flowrelay run show 3f2a...
        # Output: Run 3f2a... (onboarding v1): IN_PROGRESS
        #         - [0] intake: COMPLETED
        #         - [1] review: IN_PROGRESS -> user:1
    """
    engine = _engine()
    state = asyncio.run(engine.repository.get_run(run_id))
    if state is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    run = state.run
    typer.echo(f"Run {run.id} ({run.definition_id} v{run.definition_version}): {run.status.value}")
    if run.due_at:
        typer.echo(f"Due: {run.due_at.isoformat()}")
    for execution in state.executions:
        members = state.group_for(execution.id)
        if members:
            who = ", ".join(
                f"{m.identity or m.role + ' (unassigned)'} ({m.status.value})" for m in members
            )
        else:
            who = str(execution.assignee) if execution.assignee else ""
        line = f"- [{execution.step_index}] {execution.step_id}: {execution.status.value}"
        if who and execution.status != StepStatus.PENDING:
            line += f" -> {who}"
        typer.echo(line)

    try:
        progress = asyncio.run(engine.milestone_progress(run_id))
    except NotFoundError:
        progress = []
    for milestone in progress:
        typer.echo(f"Milestone {milestone['name']}: {milestone['completed']}/{milestone['total']}")

    for record in asyncio.run(engine.audit_trail(run_id)):
        steps = f" {','.join(record.step_ids)}" if record.step_ids else ""
        typer.echo(f"  {record.created_at.isoformat()} {record.action}{steps}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
