"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence

import asyncpg

from ..definitions import FlowDefinition
from ..errors import NotFoundError, TransientError
from ..models import AuditRecord, FlowRun, GroupAssignee, RunState, StepExecution
from .repository import RunRepository, RunTransaction


class PostgresRunRepository(RunRepository):
    """Persist definitions and runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_definitions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_runs (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES flow_runs (id),
                step_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                body TEXT NOT NULL,
                UNIQUE (run_id, step_index)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS group_assignees (
                execution_id TEXT NOT NULL REFERENCES step_executions (id),
                slot TEXT NOT NULL,
                identity TEXT,
                position SERIAL,
                status TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (execution_id, slot)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS assignee_rotations (
                definition_id TEXT NOT NULL,
                role TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (definition_id, role)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                position SERIAL,
                run_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body TEXT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _load(self, conn: asyncpg.Connection, run_id: str, lock: bool = False) -> Optional[RunState]:
        query = "SELECT body FROM flow_runs WHERE id = $1"
        if lock:
            query += " FOR UPDATE"
        row = await conn.fetchrow(query, run_id)
        if not row:
            return None
        executions = await conn.fetch(
            "SELECT body FROM step_executions WHERE run_id = $1 ORDER BY step_index", run_id
        )
        members = await conn.fetch(
            """
            SELECT g.body FROM group_assignees g
            JOIN step_executions e ON e.id = g.execution_id
            WHERE e.run_id = $1
            ORDER BY e.step_index, g.position
            """,
            run_id,
        )
        return RunState(
            run=FlowRun.model_validate_json(row["body"]),
            executions=[StepExecution.model_validate_json(r["body"]) for r in executions],
            group_assignees=[GroupAssignee.model_validate_json(r["body"]) for r in members],
        )

    async def _write_state(self, conn: asyncpg.Connection, state: RunState) -> None:
        run = state.run
        await conn.execute(
            """
            INSERT INTO flow_runs (id, definition_id, status, version, started_at, body)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE
            SET status = EXCLUDED.status, version = EXCLUDED.version, body = EXCLUDED.body
            """,
            run.id,
            run.definition_id,
            run.status.value,
            run.version,
            run.started_at,
            run.model_dump_json(),
        )
        await conn.executemany(
            """
            INSERT INTO step_executions (id, run_id, step_index, status, body)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, body = EXCLUDED.body
            """,
            [
                (e.id, e.run_id, e.step_index, e.status.value, e.model_dump_json())
                for e in state.executions
            ],
        )
        await conn.executemany(
            """
            INSERT INTO group_assignees (execution_id, slot, identity, status, body)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (execution_id, slot) DO UPDATE
            SET identity = EXCLUDED.identity, status = EXCLUDED.status, body = EXCLUDED.body
            """,
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

    # ------------------------------------------------------------------
    async def save_definition(self, definition: FlowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flow_definitions (id, version, status, body) VALUES ($1, $2, $3, $4)
                ON CONFLICT (id, version) DO UPDATE SET status = EXCLUDED.status, body = EXCLUDED.body
                """,
                definition.id,
                definition.version,
                definition.status.value,
                definition.model_dump_json(by_alias=True),
            )
        finally:
            await conn.close()

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[FlowDefinition]:
        conn = await self._connect()
        try:
            if version is None:
                row = await conn.fetchrow(
                    "SELECT body FROM flow_definitions WHERE id = $1 ORDER BY version DESC LIMIT 1",
                    definition_id,
                )
            else:
                row = await conn.fetchrow(
                    "SELECT body FROM flow_definitions WHERE id = $1 AND version = $2",
                    definition_id,
                    version,
                )
        finally:
            await conn.close()
        return FlowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(self) -> List[FlowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT DISTINCT ON (id) body FROM flow_definitions ORDER BY id, version DESC"
            )
        finally:
            await conn.close()
        return [FlowDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_run(self, state: RunState, children: Sequence[RunState] = ()) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                for run_state in (state, *children):
                    await self._write_state(conn, run_state)
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Optional[RunState]:
        conn = await self._connect()
        try:
            return await self._load(conn, run_id)
        finally:
            await conn.close()

    async def list_runs(self) -> List[FlowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT body FROM flow_runs ORDER BY started_at")
        finally:
            await conn.close()
        return [FlowRun.model_validate_json(r["body"]) for r in rows]

    @asynccontextmanager
    async def run_transaction(self, run_id: str) -> AsyncIterator[RunTransaction]:
        async with self._locks[run_id]:
            conn = await self._connect()
            try:
                async with conn.transaction():
                    state = await self._load(conn, run_id, lock=True)
                    if state is None:
                        raise NotFoundError(f"Run {run_id} not found")
                    tx = RunTransaction(state)
                    yield tx
                    result = await conn.execute(
                        "UPDATE flow_runs SET version = $1 WHERE id = $2 AND version = $3",
                        tx.expected_version + 1,
                        run_id,
                        tx.expected_version,
                    )
                    if result != "UPDATE 1":
                        raise TransientError(f"Run {run_id} was modified concurrently")
                    tx.state.run.version = tx.expected_version + 1
                    await self._write_state(conn, tx.state)
                    for child in tx.new_runs:
                        await self._write_state(conn, child)
            finally:
                await conn.close()

    async def next_rotation(self, definition_id: str, role: str) -> int:
        conn = await self._connect()
        try:
            position = await conn.fetchval(
                """
                INSERT INTO assignee_rotations (definition_id, role, position) VALUES ($1, $2, 1)
                ON CONFLICT (definition_id, role)
                DO UPDATE SET position = assignee_rotations.position + 1
                RETURNING position
                """,
                definition_id,
                role,
            )
        finally:
            await conn.close()
        return position - 1

    async def append_audit(self, record: AuditRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO audit_log (id, run_id, created_at, body) VALUES ($1, $2, $3, $4)",
                record.id,
                record.run_id,
                record.created_at,
                record.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_audit(self, run_id: str) -> List[AuditRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM audit_log WHERE run_id = $1 ORDER BY position", run_id
            )
        finally:
            await conn.close()
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]
