"""Runtime records for flow runs and their step executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .definitions import CompletionMode

# keys owned by the engine inside StepExecution.result_data
AWAITING_REVIEW_KEY = "_awaitingReview"
AI_DRAFT_KEY = "_aiDraft"
AI_REVIEW_KEY = "_aiReview"
GROUP_COMPLETION_KEY = "_groupCompletion"
RESERVED_RESULT_KEYS = (
    AWAITING_REVIEW_KEY,
    AI_DRAFT_KEY,
    AI_REVIEW_KEY,
    GROUP_COMPLETION_KEY,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Identity(BaseModel):
    """An internal user or an external contact."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["user", "contact"]
    id: str

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(kind="user", id=user_id)

    @classmethod
    def contact(cls, contact_id: str) -> "Identity":
        return cls(kind="contact", id=contact_id)

    @classmethod
    def parse(cls, value: str) -> "Identity":
        """Parse ``"user:42"`` or ``"contact:jane@example.com"``."""
        kind, sep, ident = value.partition(":")
        if not sep or kind not in ("user", "contact") or not ident:
            raise ValueError(f"Identity must look like 'user:<id>' or 'contact:<id>', got {value!r}")
        return cls(kind=kind, id=ident)

    @property
    def is_external(self) -> bool:
        return self.kind == "contact"

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class RunStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_FOR_ASSIGNEE = "WAITING_FOR_ASSIGNEE"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


ACTIVE_STATUSES = (StepStatus.IN_PROGRESS, StepStatus.WAITING_FOR_ASSIGNEE)
TERMINAL_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED)


class GroupAssigneeStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class FlowRun(BaseModel):
    """One executing instance of a flow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int = 1
    name: Optional[str] = None
    organization_id: str
    started_by: Identity
    status: RunStatus = RunStatus.IN_PROGRESS
    is_test: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    role_assignments: Dict[str, Identity] = Field(default_factory=dict)
    kickoff_input: Dict[str, Any] = Field(default_factory=dict)
    flow_variables: Dict[str, Any] = Field(default_factory=dict)
    # display hint only; the executions are authoritative
    current_step_index: int = 0
    parent_run_id: Optional[str] = None
    parent_step_execution_id: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.IN_PROGRESS


class StepExecution(BaseModel):
    """Runtime record of one step's progress within a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    step_id: str
    step_index: int
    status: StepStatus = StepStatus.PENDING
    assignee: Optional[Identity] = None
    completion_mode: Optional[CompletionMode] = None
    branch_path: Optional[str] = None
    parallel_group_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[Identity] = None
    due_at: Optional[datetime] = None
    result_data: Dict[str, Any] = Field(default_factory=dict)
    reminder_count: int = 0
    child_run_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_review(self) -> bool:
        return bool(self.result_data.get(AWAITING_REVIEW_KEY))


class GroupAssignee(BaseModel):
    """One member slot of a group step.

    Slots are created per role when the run starts. A slot whose role did
    not resolve has no identity until the step is reassigned.
    """

    execution_id: str
    identity: Optional[Identity] = None
    role: Optional[str] = None
    status: GroupAssigneeStatus = GroupAssigneeStatus.PENDING
    completed_at: Optional[datetime] = None
    result_data: Optional[Dict[str, Any]] = None

    @property
    def slot(self) -> str:
        return self.role or str(self.identity)


class RunState(BaseModel):
    """A run together with every execution and group assignee it owns."""

    run: FlowRun
    executions: List[StepExecution] = Field(default_factory=list)
    group_assignees: List[GroupAssignee] = Field(default_factory=list)

    def execution(self, execution_id: str) -> Optional[StepExecution]:
        return next((e for e in self.executions if e.id == execution_id), None)

    def execution_for_step(self, step_id: str) -> Optional[StepExecution]:
        return next((e for e in self.executions if e.step_id == step_id), None)

    def execution_at(self, step_index: int) -> StepExecution:
        return self.executions[step_index]

    def group_for(self, execution_id: str) -> List[GroupAssignee]:
        return [g for g in self.group_assignees if g.execution_id == execution_id]

    def active_executions(self) -> List[StepExecution]:
        """The current frontier, derived from execution statuses."""
        return [e for e in self.executions if e.is_active]


class AuditRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    run_id: str
    action: str
    step_ids: List[str] = Field(default_factory=list)
    actor: Optional[Identity] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
