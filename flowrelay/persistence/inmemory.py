"""In-memory implementation of the run repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..definitions import FlowDefinition
from ..errors import NotFoundError, TransientError
from ..models import AuditRecord, FlowRun, RunState
from .repository import RunRepository, RunTransaction


class InMemoryRunRepository(RunRepository):
    """Store definitions and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, Dict[int, FlowDefinition]] = {}
        self._runs: Dict[str, RunState] = {}
        self._rotations: Dict[Tuple[str, str], int] = {}
        self._audit: List[AuditRecord] = []
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    async def save_definition(self, definition: FlowDefinition) -> None:
        versions = self._definitions.setdefault(definition.id, {})
        versions[definition.version] = definition.model_copy(deep=True)

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[FlowDefinition]:
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        definition = versions.get(version)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(self) -> List[FlowDefinition]:
        return [versions[max(versions)] for versions in self._definitions.values()]

    # ------------------------------------------------------------------
    async def create_run(self, state: RunState, children: Sequence[RunState] = ()) -> None:
        for run_state in (state, *children):
            self._runs[run_state.run.id] = run_state.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[RunState]:
        state = self._runs.get(run_id)
        return state.model_copy(deep=True) if state else None

    async def list_runs(self) -> List[FlowRun]:
        return [state.run.model_copy() for state in self._runs.values()]

    @asynccontextmanager
    async def run_transaction(self, run_id: str) -> AsyncIterator[RunTransaction]:
        async with self._locks[run_id]:
            stored = self._runs.get(run_id)
            if stored is None:
                raise NotFoundError(f"Run {run_id} not found")
            tx = RunTransaction(stored.model_copy(deep=True))
            yield tx
            self._commit(tx)

    def _commit(self, tx: RunTransaction) -> None:
        run_id = tx.state.run.id
        if self._runs[run_id].run.version != tx.expected_version:
            raise TransientError(f"Run {run_id} was modified concurrently")
        tx.state.run.version = tx.expected_version + 1
        self._runs[run_id] = tx.state
        for child in tx.new_runs:
            self._runs[child.run.id] = child.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def next_rotation(self, definition_id: str, role: str) -> int:
        key = (definition_id, role)
        position = self._rotations.get(key, 0)
        self._rotations[key] = position + 1
        return position

    async def append_audit(self, record: AuditRecord) -> None:
        self._audit.append(record)

    async def list_audit(self, run_id: str) -> List[AuditRecord]:
        return [r for r in self._audit if r.run_id == run_id]
