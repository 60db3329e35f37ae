"""The run-advancement engine.

Every mutating operation is one read-modify-write of a single run inside
:meth:`RunRepository.run_transaction`. Collaborator deliveries (scheduler,
token issuer, audit) are queued while the transaction is open and sent only
after it committed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .collaborators import (
    AccessTokenIssuer,
    AuditAction,
    AuditLog,
    EventNotifier,
    NotificationScheduler,
    RepositoryAuditLog,
    TransportNotifier,
)
from .conditions import choose_paths, selection_payload
from .config import FlowRelayConfig, load_config
from .consensus import record_submission
from .definitions import FlowDefinition, StepType
from .due_dates import compute_flow_due, compute_step_due
from .errors import NotFoundError, StateError, TransientError, ValidationError
from .graph import FlowGraph, StepNode
from .models import (
    RESERVED_RESULT_KEYS,
    AuditRecord,
    FlowRun,
    GroupAssignee,
    GroupAssigneeStatus,
    Identity,
    RunState,
    RunStatus,
    StepExecution,
    StepStatus,
    utcnow,
)
from .navigator import navigate
from .persistence import RunRepository, get_repository
from .resolution import AssigneeResolver, ResolutionContext
from .review import AIReviewer, PydanticAIReviewer, ReviewGate, ReviewStatus
from .transports import get_transport

logger = logging.getLogger(__name__)

DISPLAY_ONLY_FIELDS = ("HEADING", "PARAGRAPH")


class StartContext(BaseModel):
    """Who starts a run and with what input."""

    starter: Identity
    organization_id: str
    role_overrides: Dict[str, Identity] = Field(default_factory=dict)
    kickoff_input: Dict[str, Any] = Field(default_factory=dict)
    flow_variables: Dict[str, Any] = Field(default_factory=dict)
    is_test: bool = False
    name: Optional[str] = None


class CompletionResult(BaseModel):
    advanced: bool
    next_step_ids: List[str] = Field(default_factory=list)
    run_completed: bool = False
    # group step still waiting for more members
    partial: bool = False
    revision_requested: bool = False
    awaiting_review: bool = False
    feedback: Optional[str] = None
    issues: List[str] = Field(default_factory=list)


class CancelResult(BaseModel):
    skipped_step_ids: List[str] = Field(default_factory=list)
    skipped_execution_ids: List[str] = Field(default_factory=list)


class _Outbox:
    """Deliveries deferred until the run state is committed."""

    def __init__(self) -> None:
        self._deliveries: List[Tuple[str, Callable[[], Awaitable[None]]]] = []

    def add(self, label: str, delivery: Callable[[], Awaitable[None]]) -> None:
        self._deliveries.append((label, delivery))

    async def flush(self) -> None:
        for label, delivery in self._deliveries:
            try:
                await delivery()
            except Exception:
                logger.exception(f"Delivering {label} failed")
        self._deliveries.clear()


class RunEngine:
    """Start, advance, cancel and reassign flow runs."""

    def __init__(
        self,
        repository: RunRepository,
        notifier: Optional[NotificationScheduler] = None,
        tokens: Optional[AccessTokenIssuer] = None,
        audit: Optional[AuditLog] = None,
        reviewer: Optional[AIReviewer] = None,
        resolver: Optional[AssigneeResolver] = None,
        review_timeout: float = 30.0,
        sub_flow_timeout: float = 10.0,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        if tokens is None and isinstance(notifier, EventNotifier):
            tokens = notifier
        self.tokens = tokens
        self.audit = audit if audit is not None else RepositoryAuditLog(repository)
        self.resolver = resolver or AssigneeResolver(rotation=repository)
        self.gate = ReviewGate(reviewer, timeout=review_timeout)
        self.sub_flow_timeout = sub_flow_timeout
        self._graphs: Dict[Tuple[str, int], FlowGraph] = {}

    @classmethod
    def from_config(
        cls,
        config: Optional[FlowRelayConfig] = None,
        repository: Optional[RunRepository] = None,
    ) -> "RunEngine":
        config = config or load_config()
        reviewer = PydanticAIReviewer(config.review.model) if config.review.enabled else None
        return cls(
            repository or get_repository(config=config),
            notifier=TransportNotifier(get_transport(config=config)),
            reviewer=reviewer,
            review_timeout=config.review.timeout_seconds,
            sub_flow_timeout=config.sub_flow_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # definitions
    async def register_definition(self, raw: Dict[str, Any] | FlowDefinition) -> FlowDefinition:
        """Validate and store a definition version.

        Raises:
            ValidationError: If the document cannot be compiled into a graph.
        """
        definition = raw if isinstance(raw, FlowDefinition) else FlowDefinition.parse(raw)
        self._compile(definition)
        await self.repository.save_definition(definition)
        logger.info(f"Registered definition {definition.id} v{definition.version}")
        return definition

    async def _definition(self, definition_id: str, version: Optional[int] = None) -> FlowDefinition:
        definition = await self.repository.get_definition(definition_id, version)
        if definition is None:
            raise NotFoundError(f"Definition {definition_id} not found")
        return definition

    def _compile(self, definition: FlowDefinition) -> FlowGraph:
        key = (definition.id, definition.version)
        graph = self._graphs.get(key)
        if graph is None:
            graph = FlowGraph.build(definition)
            self._graphs[key] = graph
        return graph

    # ------------------------------------------------------------------
    # reads
    async def get_run(self, run_id: str) -> RunState:
        state = await self.repository.get_run(run_id)
        if state is None:
            raise NotFoundError(f"Run {run_id} not found")
        return state

    async def milestone_progress(self, run_id: str) -> List[Dict[str, object]]:
        state = await self.get_run(run_id)
        graph = self._compile(
            await self._definition(state.run.definition_id, state.run.definition_version)
        )
        done = [e.step_index for e in state.executions if e.status == StepStatus.COMPLETED]
        return graph.milestone_progress(done)

    async def audit_trail(self, run_id: str) -> List[AuditRecord]:
        return await self.repository.list_audit(run_id)

    # ------------------------------------------------------------------
    # operations
    async def start_run(self, definition_id: str, context: StartContext) -> FlowRun:
        """Resolve assignees, materialize every execution and activate the entry.

        Raises:
            NotFoundError: Unknown definition.
            ValidationError: Empty or malformed definition, missing kickoff fields.
            StateError: The definition is not published and this is not a test run.
        """
        definition = await self._definition(definition_id)
        outbox = _Outbox()
        spawned: List[RunState] = []
        state = await self._prepare_run(definition, context, outbox, spawned)
        await self.repository.create_run(state, spawned)
        await outbox.flush()
        logger.info(f"Started run {state.run.id} of {definition.id} v{definition.version}")
        return state.run

    async def complete_step(
        self,
        run_id: str,
        step_id: str,
        result_data: Optional[Dict[str, Any]] = None,
        actor: Optional[Identity] = None,
    ) -> CompletionResult:
        """Submit a step's result and advance the run.

        ``actor`` is required for group steps and names the submitting member.

        Raises:
            NotFoundError: Unknown run or step.
            StateError: The run is finished or the step is not active.
            ValidationError: The outcome matches no branch, or the actor is not
                a member of the group.
            TransientError: AI review or a sub-flow start failed; nothing was
                committed.
        """
        payload = {k: v for k, v in (result_data or {}).items() if k not in RESERVED_RESULT_KEYS}
        outbox = _Outbox()
        async with self.repository.run_transaction(run_id) as tx:
            state = tx.state
            if state.run.is_terminal:
                raise StateError(f"Run {run_id} is {state.run.status.value}")
            execution = state.execution_for_step(step_id)
            if execution is None:
                raise NotFoundError(f"Step {step_id} not found in run {run_id}")
            if not execution.is_active:
                raise StateError(f"Step {step_id} is {execution.status.value}")

            definition = await self._definition(state.run.definition_id, state.run.definition_version)
            graph = self._compile(definition)
            node = graph.node(execution.step_index)
            now = utcnow()

            decision = await self.gate.check(execution, node.step, payload)
            if not decision.passed:
                verdict = decision.verdict
                execution.result_data = decision.result_data(payload)
                execution.completed_at = None
                self._audit(
                    outbox,
                    state.run.id,
                    AuditAction.STEP_REVISION_REQUESTED,
                    [step_id],
                    actor,
                    status=verdict.status.value,
                    cached=decision.cached,
                )
                result = CompletionResult(
                    advanced=False,
                    revision_requested=verdict.status == ReviewStatus.REVISION_NEEDED,
                    awaiting_review=verdict.status == ReviewStatus.PENDING,
                    feedback=verdict.feedback or None,
                    issues=list(verdict.issues),
                )
            else:
                data = decision.result_data(payload)
                if node.is_group:
                    outcome = record_submission(state, execution, actor, data, now)
                    if outcome.satisfied:
                        result = await self._finish(
                            graph, tx.new_runs, state, execution, outcome.result_data, actor, outbox, now
                        )
                    else:
                        if outcome.recorded:
                            self._audit(
                                outbox,
                                state.run.id,
                                AuditAction.STEP_PARTIALLY_COMPLETED,
                                [step_id],
                                actor,
                                completed=outcome.completed,
                                total=outcome.total,
                            )
                        result = CompletionResult(advanced=False, partial=True)
                else:
                    result = await self._finish(
                        graph, tx.new_runs, state, execution, data, actor, outbox, now
                    )
        await outbox.flush()
        return result

    async def cancel_run(self, run_id: str, actor: Optional[Identity] = None) -> CancelResult:
        """Skip every unfinished execution and cancel the run.

        Raises:
            StateError: The run is already completed or cancelled.
        """
        outbox = _Outbox()
        async with self.repository.run_transaction(run_id) as tx:
            state = tx.state
            if state.run.is_terminal:
                raise StateError(f"Run {run_id} is already {state.run.status.value}")
            now = utcnow()
            skipped = [e for e in state.executions if not e.is_terminal]
            for execution in skipped:
                execution.status = StepStatus.SKIPPED
                execution.completed_at = now
            state.run.status = RunStatus.CANCELLED
            state.run.completed_at = now

            result = CancelResult(
                skipped_step_ids=[e.step_id for e in skipped],
                skipped_execution_ids=[e.id for e in skipped],
            )
            run = state.run.model_copy(deep=True)
            if self.notifier is not None:
                outbox.add(
                    f"run.cancelled {run_id}",
                    partial(self.notifier.on_run_cancelled, run, list(result.skipped_execution_ids)),
                )
            self._audit(outbox, run_id, AuditAction.RUN_CANCELLED, result.skipped_step_ids, actor)
        await outbox.flush()
        logger.info(f"Cancelled run {run_id}; skipped {len(skipped)} step(s)")
        return result

    async def reassign_step(
        self,
        run_id: str,
        step_id: str,
        identity: Identity,
        actor: Optional[Identity] = None,
        replacing: Optional[str] = None,
    ) -> StepExecution:
        """Hand a non-terminal step to another identity.

        For a group step one member slot changes hands: the slot whose role
        or current identity equals ``replacing``, or the first unfilled slot
        when ``replacing`` is omitted. The step keeps its completion mode.
        A step waiting for an assignee becomes active once nobody is missing.

        Raises:
            StateError: The run is finished, the step is already terminal, or
                the replaced member already submitted.
            ValidationError: No such member, no unfilled slot, or the new
                identity already holds another slot of the group.
        """
        outbox = _Outbox()
        async with self.repository.run_transaction(run_id) as tx:
            state = tx.state
            if state.run.is_terminal:
                raise StateError(f"Run {run_id} is {state.run.status.value}")
            execution = state.execution_for_step(step_id)
            if execution is None:
                raise NotFoundError(f"Step {step_id} not found in run {run_id}")
            if execution.is_terminal:
                raise StateError(f"Step {step_id} is {execution.status.value}")

            members = state.group_for(execution.id)
            if members:
                member = _member_to_replace(step_id, members, identity, replacing)
                previous = member.identity
                member.identity = identity
                waiting = any(m.identity is None for m in members)
            else:
                previous = execution.assignee
                execution.assignee = identity
                waiting = False
            if execution.status == StepStatus.WAITING_FOR_ASSIGNEE and not waiting:
                execution.status = StepStatus.IN_PROGRESS
            snapshot = execution.model_copy(deep=True)
            if execution.is_active and self.tokens is not None:
                outbox.add(
                    f"access.reassigned {execution.id}",
                    partial(self.tokens.on_execution_reassigned, snapshot, previous, identity),
                )
            self._audit(
                outbox,
                run_id,
                AuditAction.STEP_REASSIGNED,
                [step_id],
                actor,
                previous=str(previous) if previous else None,
                assignee=str(identity),
                member=member.slot if members else None,
            )
        await outbox.flush()
        logger.info(f"Reassigned {step_id} of run {run_id} to {identity}")
        return snapshot

    # ------------------------------------------------------------------
    # internals
    async def _prepare_run(
        self,
        definition: FlowDefinition,
        context: StartContext,
        outbox: _Outbox,
        spawned: List[RunState],
        parent: Optional[Tuple[str, str]] = None,
        lineage: Tuple[str, ...] = (),
    ) -> RunState:
        if not definition.is_published and not context.is_test:
            raise StateError(
                f"Definition {definition.id} is {definition.status.value}; only test runs are allowed"
            )
        graph = self._compile(definition)
        _check_kickoff(definition, context.kickoff_input)

        carried = context.kickoff_input.get("flowVariables")
        flow_variables = {**(carried if isinstance(carried, dict) else {}), **context.flow_variables}
        report = await self.resolver.resolve(
            definition.roles,
            ResolutionContext(
                organization_id=context.organization_id,
                starter=context.starter,
                definition_id=definition.id,
                overrides=context.role_overrides,
                kickoff_input=context.kickoff_input,
                flow_variables=flow_variables,
            ),
        )

        now = utcnow()
        run = FlowRun(
            definition_id=definition.id,
            definition_version=definition.version,
            name=context.name or definition.name,
            organization_id=context.organization_id,
            started_by=context.starter,
            is_test=context.is_test,
            started_at=now,
            due_at=compute_flow_due(definition.due_dates.flow_due, now),
            role_assignments=report.assignments,
            kickoff_input=dict(context.kickoff_input),
            flow_variables=flow_variables,
            parent_run_id=parent[0] if parent else None,
            parent_step_execution_id=parent[1] if parent else None,
        )
        state = RunState(
            run=run,
            executions=[
                StepExecution(
                    run_id=run.id,
                    step_id=node.id,
                    step_index=node.index,
                    completion_mode=node.completion_mode,
                    branch_path=node.branch_path,
                    parallel_group_id=node.parallel_group,
                )
                for node in graph.nodes
            ],
        )
        for node in graph.nodes:
            if node.is_group:
                state.group_assignees.extend(
                    _member_slots(state.execution_at(node.index), node, report.assignments)
                )
        self._audit(
            outbox,
            run.id,
            AuditAction.RUN_STARTED,
            [],
            context.starter,
            definition_id=definition.id,
            unresolved_roles=report.unresolved,
        )
        entry = [state.execution_at(i).id for i in graph.entry_points()]
        await self._activate(
            graph, state, entry, outbox, spawned, now, lineage + (definition.id,)
        )
        if not state.active_executions():
            self._complete_run(state, outbox, now)
        return state

    async def _finish(
        self,
        graph: FlowGraph,
        spawned: List[RunState],
        state: RunState,
        execution: StepExecution,
        data: Dict[str, Any],
        actor: Optional[Identity],
        outbox: _Outbox,
        now,
    ) -> CompletionResult:
        self._mark_completed(state, execution, data, actor, outbox, now)
        navigation = navigate(graph, state, execution, data)
        activated = await self._activate(
            graph, state, navigation.next_ids, outbox, spawned, now, (graph.definition.id,)
        )
        if not state.active_executions():
            self._complete_run(state, outbox, now)
        logger.info(
            f"Completed {execution.step_id} of run {state.run.id}; "
            f"activated {[e.step_id for e in activated]}"
        )
        return CompletionResult(
            advanced=True,
            next_step_ids=[e.step_id for e in activated if e.is_active],
            run_completed=state.run.status == RunStatus.COMPLETED,
        )

    def _mark_completed(
        self,
        state: RunState,
        execution: StepExecution,
        data: Dict[str, Any],
        actor: Optional[Identity],
        outbox: _Outbox,
        now,
        automatic: bool = False,
    ) -> None:
        execution.status = StepStatus.COMPLETED
        execution.completed_at = now
        execution.completed_by = actor or execution.assignee
        execution.result_data = data
        snapshot = execution.model_copy(deep=True)
        run = state.run.model_copy(deep=True)
        if self.notifier is not None:
            outbox.add(
                f"step.completed {execution.id}",
                partial(self.notifier.on_step_completed, snapshot, run),
            )
        self._audit(
            outbox,
            state.run.id,
            AuditAction.STEP_COMPLETED,
            [execution.step_id],
            actor,
            automatic=automatic,
        )

    async def _activate(
        self,
        graph: FlowGraph,
        state: RunState,
        execution_ids: List[str],
        outbox: _Outbox,
        spawned: List[RunState],
        now,
        lineage: Tuple[str, ...],
    ) -> List[StepExecution]:
        """Start the given executions, running automatic control steps inline."""
        queue = deque(execution_ids)
        activated: List[StepExecution] = []
        while queue:
            execution = state.execution(queue.popleft())
            if execution is None or execution.status != StepStatus.PENDING:
                continue
            node = graph.node(execution.step_index)
            self._start_execution(state, node, execution, now)
            activated.append(execution)

            if node.is_automatic:
                data: Dict[str, Any] = {}
                if node.conditional_paths:
                    data = selection_payload(choose_paths(node, state))
                self._mark_completed(state, execution, data, None, outbox, now, automatic=True)
                queue.extend(navigate(graph, state, execution, data).next_ids)
                continue

            if node.type == StepType.SUB_FLOW:
                await self._start_sub_flow(state, node, execution, outbox, spawned, lineage)
            self._announce(graph.definition, state, execution, outbox)

        active = state.active_executions()
        if active:
            state.run.current_step_index = min(e.step_index for e in active)
        return activated

    def _start_execution(
        self, state: RunState, node: StepNode, execution: StepExecution, now
    ) -> None:
        execution.status = StepStatus.IN_PROGRESS
        execution.started_at = now
        execution.due_at = compute_step_due(node.step.due, now, state.run.due_at)
        assignments = state.run.role_assignments
        if node.is_group:
            if any(m.identity is None for m in state.group_for(execution.id)):
                execution.status = StepStatus.WAITING_FOR_ASSIGNEE
        elif node.roles:
            # a reassignment made while the step was pending wins over the role map
            if execution.assignee is None:
                execution.assignee = assignments.get(node.roles[0])
            if execution.assignee is None:
                execution.status = StepStatus.WAITING_FOR_ASSIGNEE

    def _announce(
        self,
        definition: FlowDefinition,
        state: RunState,
        execution: StepExecution,
        outbox: _Outbox,
    ) -> None:
        snapshot = execution.model_copy(deep=True)
        if self.notifier is not None:
            outbox.add(
                f"step.activated {execution.id}",
                partial(self.notifier.on_step_activated, snapshot, execution.due_at, definition),
            )
        if self.tokens is not None:
            identities = [g.identity for g in state.group_for(execution.id) if g.identity]
            if execution.assignee is not None:
                identities.append(execution.assignee)
            for identity in identities:
                if identity.is_external:
                    outbox.add(
                        f"access.issue {execution.id}",
                        partial(self.tokens.on_execution_activated, snapshot, identity),
                    )
        self._audit(
            outbox,
            state.run.id,
            AuditAction.STEP_ACTIVATED,
            [execution.step_id],
            None,
            status=execution.status.value,
            due_at=execution.due_at.isoformat() if execution.due_at else None,
        )

    async def _start_sub_flow(
        self,
        state: RunState,
        node: StepNode,
        execution: StepExecution,
        outbox: _Outbox,
        spawned: List[RunState],
        lineage: Tuple[str, ...],
    ) -> None:
        sub_flow_id = node.step.sub_flow_id
        if sub_flow_id in lineage:
            raise ValidationError(f"Sub-flow {sub_flow_id} of step {node.id} starts itself")
        definition = await self._definition(sub_flow_id)
        context = StartContext(
            starter=state.run.started_by,
            organization_id=state.run.organization_id,
            kickoff_input={**state.run.kickoff_input, **node.step.inputs},
            is_test=state.run.is_test,
        )
        try:
            child = await asyncio.wait_for(
                self._prepare_run(
                    definition,
                    context,
                    outbox,
                    spawned,
                    parent=(state.run.id, execution.id),
                    lineage=lineage,
                ),
                timeout=self.sub_flow_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(f"Starting sub-flow {sub_flow_id} timed out") from exc
        spawned.append(child)
        execution.child_run_id = child.run.id
        self._audit(
            outbox,
            state.run.id,
            AuditAction.SUB_FLOW_STARTED,
            [node.id],
            None,
            child_run_id=child.run.id,
            definition_id=sub_flow_id,
        )
        logger.info(f"Step {node.id} of run {state.run.id} started sub-flow run {child.run.id}")

    def _complete_run(self, state: RunState, outbox: _Outbox, now) -> None:
        state.run.status = RunStatus.COMPLETED
        state.run.completed_at = now
        state.run.current_step_index = len(state.executions) - 1
        run = state.run.model_copy(deep=True)
        if self.notifier is not None:
            outbox.add(f"run.completed {run.id}", partial(self.notifier.on_run_completed, run))
        self._audit(outbox, run.id, AuditAction.RUN_COMPLETED, [], None)
        logger.info(f"Run {run.id} completed")

    def _audit(
        self,
        outbox: _Outbox,
        run_id: str,
        action: AuditAction,
        step_ids: List[str],
        actor: Optional[Identity],
        **details: Any,
    ) -> None:
        record = AuditRecord(
            run_id=run_id,
            action=action.value,
            step_ids=list(step_ids),
            actor=actor,
            details=details,
        )
        outbox.add(f"audit {action.value}", partial(self.audit.record, record))


def _member_slots(
    execution: StepExecution, node: StepNode, assignments: Dict[str, Identity]
) -> List[GroupAssignee]:
    """One slot per role; roles resolving to someone already listed share that slot."""
    slots: List[GroupAssignee] = []
    for role in node.roles:
        identity = assignments.get(role)
        if identity is not None and any(s.identity == identity for s in slots):
            continue
        slots.append(GroupAssignee(execution_id=execution.id, identity=identity, role=role))
    return slots


def _member_to_replace(
    step_id: str,
    members: List[GroupAssignee],
    identity: Identity,
    replacing: Optional[str],
) -> GroupAssignee:
    if replacing is None:
        member = next((m for m in members if m.identity is None), None)
        if member is None:
            raise ValidationError(f"Group step {step_id} has no open slot; name the member to replace")
    else:
        member = next(
            (m for m in members if replacing in (m.role, str(m.identity) if m.identity else None)),
            None,
        )
        if member is None:
            raise ValidationError(f"{replacing} is not a member of group step {step_id}")
    if member.status == GroupAssigneeStatus.COMPLETED:
        raise StateError(f"{member.identity} already submitted group step {step_id}")
    if any(m is not member and m.identity == identity for m in members):
        raise ValidationError(f"{identity} already holds a slot of group step {step_id}")
    return member


def _check_kickoff(definition: FlowDefinition, kickoff_input: Dict[str, Any]) -> None:
    if definition.kickoff is None or not definition.kickoff.enabled:
        return
    missing = [
        field.label or field.field_id
        for field in definition.kickoff.fields
        if field.required
        and field.type.upper() not in DISPLAY_ONLY_FIELDS
        and kickoff_input.get(field.field_id) in (None, "", [])
    ]
    if missing:
        raise ValidationError(f"Missing required kickoff fields: {', '.join(missing)}")
