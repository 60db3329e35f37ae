"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..definitions import FlowDefinition
from ..errors import NotFoundError, TransientError
from ..models import AuditRecord, FlowRun, GroupAssignee, RunState, StepExecution
from .repository import RunRepository, RunTransaction


class _VersionConflict(Exception):
    pass


class SQLiteRunRepository(RunRepository):
    """Persist definitions and runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # one connection is shared by the worker threads
        self._db_lock = threading.Lock()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS definitions (
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (id, version)
                );
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    definition_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS step_executions (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE (run_id, step_index)
                );
                CREATE TABLE IF NOT EXISTS group_assignees (
                    execution_id TEXT NOT NULL,
                    slot TEXT NOT NULL,
                    identity TEXT,
                    status TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (execution_id, slot)
                );
                CREATE TABLE IF NOT EXISTS rotations (
                    definition_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (definition_id, role)
                );
                CREATE TABLE IF NOT EXISTS audit_log (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._db_lock, self._conn:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            return self._conn.execute(query, params).fetchall()

    def _load(self, run_id: str) -> Optional[RunState]:
        with self._db_lock:
            row = self._conn.execute("SELECT body FROM runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            executions = self._conn.execute(
                "SELECT body FROM step_executions WHERE run_id = ? ORDER BY step_index",
                (run_id,),
            ).fetchall()
            members = self._conn.execute(
                """
                SELECT g.body FROM group_assignees g
                JOIN step_executions e ON e.id = g.execution_id
                WHERE e.run_id = ?
                ORDER BY e.step_index, g.rowid
                """,
                (run_id,),
            ).fetchall()
        return RunState(
            run=FlowRun.model_validate_json(row["body"]),
            executions=[StepExecution.model_validate_json(r["body"]) for r in executions],
            group_assignees=[GroupAssignee.model_validate_json(r["body"]) for r in members],
        )

    def _write_state(self, state: RunState) -> None:
        run = state.run
        self._conn.execute(
            "INSERT OR REPLACE INTO runs (id, definition_id, status, version, body) VALUES (?, ?, ?, ?, ?)",
            (run.id, run.definition_id, run.status.value, run.version, run.model_dump_json()),
        )
        self._conn.executemany(
            "INSERT OR REPLACE INTO step_executions (id, run_id, step_index, status, body) VALUES (?, ?, ?, ?, ?)",
            [
                (e.id, e.run_id, e.step_index, e.status.value, e.model_dump_json())
                for e in state.executions
            ],
        )
        self._conn.executemany(
            "INSERT OR REPLACE INTO group_assignees (execution_id, slot, identity, status, body) VALUES (?, ?, ?, ?, ?)",
            [
                (
                    g.execution_id,
                    g.slot,
                    str(g.identity) if g.identity else None,
                    g.status.value,
                    g.model_dump_json(),
                )
                for g in state.group_assignees
            ],
        )

    def _insert(self, states: Sequence[RunState]) -> None:
        with self._db_lock, self._conn:
            for state in states:
                self._write_state(state)

    def _commit(self, tx: RunTransaction) -> None:
        run = tx.state.run
        with self._db_lock, self._conn:
            cur = self._conn.execute(
                "UPDATE runs SET version = ? WHERE id = ? AND version = ?",
                (tx.expected_version + 1, run.id, tx.expected_version),
            )
            if cur.rowcount != 1:
                raise _VersionConflict(run.id)
            run.version = tx.expected_version + 1
            self._write_state(tx.state)
            for child in tx.new_runs:
                self._write_state(child)

    def _rotate(self, definition_id: str, role: str) -> int:
        with self._db_lock, self._conn:
            row = self._conn.execute(
                "SELECT position FROM rotations WHERE definition_id = ? AND role = ?",
                (definition_id, role),
            ).fetchone()
            position = row["position"] if row else 0
            self._conn.execute(
                "INSERT OR REPLACE INTO rotations (definition_id, role, position) VALUES (?, ?, ?)",
                (definition_id, role, position + 1),
            )
        return position

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: FlowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO definitions (id, version, status, body) VALUES (?, ?, ?, ?)",
            definition.id,
            definition.version,
            definition.status.value,
            definition.model_dump_json(by_alias=True),
        )

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[FlowDefinition]:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE id = ? ORDER BY version DESC LIMIT 1",
                definition_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE id = ? AND version = ?",
                definition_id,
                version,
            )
        if not row:
            return None
        return FlowDefinition.model_validate_json(row["body"])

    async def list_definitions(self) -> List[FlowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT d.body FROM definitions d
            WHERE d.version = (SELECT MAX(version) FROM definitions WHERE id = d.id)
            ORDER BY d.id
            """,
        )
        return [FlowDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_run(self, state: RunState, children: Sequence[RunState] = ()) -> None:
        await asyncio.to_thread(self._insert, [state, *children])

    async def get_run(self, run_id: str) -> Optional[RunState]:
        return await asyncio.to_thread(self._load, run_id)

    async def list_runs(self) -> List[FlowRun]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT body FROM runs ORDER BY rowid")
        return [FlowRun.model_validate_json(r["body"]) for r in rows]

    @asynccontextmanager
    async def run_transaction(self, run_id: str) -> AsyncIterator[RunTransaction]:
        async with self._locks[run_id]:
            state = await asyncio.to_thread(self._load, run_id)
            if state is None:
                raise NotFoundError(f"Run {run_id} not found")
            tx = RunTransaction(state)
            yield tx
            try:
                await asyncio.to_thread(self._commit, tx)
            except _VersionConflict as exc:
                raise TransientError(f"Run {run_id} was modified concurrently") from exc

    async def next_rotation(self, definition_id: str, role: str) -> int:
        return await asyncio.to_thread(self._rotate, definition_id, role)

    async def append_audit(self, record: AuditRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit_log (id, run_id, created_at, body) VALUES (?, ?, ?, ?)",
            record.id,
            record.run_id,
            record.created_at.isoformat(),
            record.model_dump_json(),
        )

    async def list_audit(self, run_id: str) -> List[AuditRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM audit_log WHERE run_id = ? ORDER BY rowid",
            run_id,
        )
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]
