"""Repository abstraction for flow definitions and run state."""

from __future__ import annotations

from typing import AsyncContextManager, List, Optional, Protocol, Sequence

from ..definitions import FlowDefinition
from ..models import AuditRecord, FlowRun, RunState


class RunTransaction:
    """Mutable view of one run inside :meth:`RunRepository.run_transaction`.

    Runs registered with :meth:`create_run` are written in the same commit as
    ``state``, so a started sub-flow never outlives a rolled back parent.
    """

    def __init__(self, state: RunState) -> None:
        self.state = state
        self.expected_version = state.run.version
        self.new_runs: List[RunState] = []

    def create_run(self, state: RunState) -> None:
        self.new_runs.append(state)


class RunRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def save_definition(self, definition: FlowDefinition) -> None:
        """Store a definition version, replacing the same id and version."""

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[FlowDefinition]:
        """Return the given version, or the latest one."""

    async def list_definitions(self) -> List[FlowDefinition]:
        """Return the latest version of every definition."""

    async def create_run(self, state: RunState, children: Sequence[RunState] = ()) -> None:
        """Persist a freshly started run with all of its executions.

        ``children`` (sub-flow runs started at the entry) go into the same
        commit, parent first.
        """

    async def get_run(self, run_id: str) -> Optional[RunState]:
        """Load a run snapshot."""

    async def list_runs(self) -> List[FlowRun]:
        """Return every run, without executions."""

    def run_transaction(self, run_id: str) -> AsyncContextManager[RunTransaction]:
        """Serialize a read-modify-write of one run.

        The state is committed when the block exits cleanly and discarded
        when it raises. Raises ``NotFoundError`` for unknown runs and
        ``TransientError`` if another writer committed first.
        """

    async def next_rotation(self, definition_id: str, role: str) -> int:
        """Return the round-robin position for a role and advance it."""

    async def append_audit(self, record: AuditRecord) -> None:
        """Store one audit record."""

    async def list_audit(self, run_id: str) -> List[AuditRecord]:
        """Audit records of a run, oldest first."""
