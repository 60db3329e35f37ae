"""Boundaries the engine reports to: scheduling, access tokens and audit.

None of these are read back by the engine. Deliveries happen after the run
state is committed and a failing collaborator never undoes a transition.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from .definitions import FlowDefinition
from .events import (
    ACCESS_ISSUE,
    ACCESS_REASSIGNED,
    RUN_CANCELLED,
    RUN_COMPLETED,
    STEP_ACTIVATED,
    STEP_COMPLETED,
    EngineEvent,
)
from .models import AuditRecord, FlowRun, Identity, StepExecution
from .persistence.repository import RunRepository
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    RUN_STARTED = "RUN_STARTED"
    STEP_ACTIVATED = "STEP_ACTIVATED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_PARTIALLY_COMPLETED = "STEP_PARTIALLY_COMPLETED"
    STEP_REVISION_REQUESTED = "STEP_REVISION_REQUESTED"
    STEP_REASSIGNED = "STEP_REASSIGNED"
    SUB_FLOW_STARTED = "SUB_FLOW_STARTED"
    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_CANCELLED = "RUN_CANCELLED"


class NotificationScheduler(Protocol):
    async def on_step_activated(
        self, execution: StepExecution, due_at: Optional[datetime], definition: FlowDefinition
    ) -> None:
        ...

    async def on_step_completed(self, execution: StepExecution, run: FlowRun) -> None:
        ...

    async def on_run_completed(self, run: FlowRun) -> None:
        ...

    async def on_run_cancelled(self, run: FlowRun, skipped_ids: List[str]) -> None:
        ...


class AccessTokenIssuer(Protocol):
    async def on_execution_activated(self, execution: StepExecution, identity: Identity) -> None:
        ...

    async def on_execution_reassigned(
        self, execution: StepExecution, previous: Optional[Identity], identity: Identity
    ) -> None:
        ...


class AuditLog(Protocol):
    async def record(self, record: AuditRecord) -> None:
        ...


class EventNotifier:
    """Turns collaborator callbacks into :class:`EngineEvent` messages.

    Implements both :class:`NotificationScheduler` and
    :class:`AccessTokenIssuer`; subclasses decide where events go.
    """

    async def emit(self, event: EngineEvent) -> None:
        raise NotImplementedError

    async def on_step_activated(
        self, execution: StepExecution, due_at: Optional[datetime], definition: FlowDefinition
    ) -> None:
        await self.emit(
            EngineEvent(
                topic=STEP_ACTIVATED,
                run_id=execution.run_id,
                execution_ids=[execution.id],
                due_at=due_at,
                data={
                    "stepId": execution.step_id,
                    "definitionId": definition.id,
                    "assignee": str(execution.assignee) if execution.assignee else None,
                },
            )
        )

    async def on_step_completed(self, execution: StepExecution, run: FlowRun) -> None:
        await self.emit(
            EngineEvent(
                topic=STEP_COMPLETED,
                run_id=run.id,
                execution_ids=[execution.id],
                data={"stepId": execution.step_id},
            )
        )

    async def on_run_completed(self, run: FlowRun) -> None:
        await self.emit(EngineEvent(topic=RUN_COMPLETED, run_id=run.id))

    async def on_run_cancelled(self, run: FlowRun, skipped_ids: List[str]) -> None:
        await self.emit(
            EngineEvent(topic=RUN_CANCELLED, run_id=run.id, execution_ids=list(skipped_ids))
        )

    async def on_execution_activated(self, execution: StepExecution, identity: Identity) -> None:
        await self.emit(
            EngineEvent(
                topic=ACCESS_ISSUE,
                run_id=execution.run_id,
                execution_ids=[execution.id],
                data={"identity": str(identity)},
            )
        )

    async def on_execution_reassigned(
        self, execution: StepExecution, previous: Optional[Identity], identity: Identity
    ) -> None:
        await self.emit(
            EngineEvent(
                topic=ACCESS_REASSIGNED,
                run_id=execution.run_id,
                execution_ids=[execution.id],
                data={
                    "identity": str(identity),
                    "previous": str(previous) if previous else None,
                },
            )
        )


class RecordingNotifier(EventNotifier):
    """Keep every event in memory."""

    def __init__(self) -> None:
        self.events: List[EngineEvent] = []

    async def emit(self, event: EngineEvent) -> None:
        self.events.append(event)

    def topics(self) -> List[str]:
        return [event.topic for event in self.events]

    def of(self, topic: str) -> List[EngineEvent]:
        return [event for event in self.events if event.topic == topic]


class TransportNotifier(EventNotifier):
    """Publish events on a transport, one topic per event kind."""

    def __init__(self, transport: BaseTransport) -> None:
        self.transport = transport

    async def emit(self, event: EngineEvent) -> None:
        await self.transport.publish(event.topic, event)


class RepositoryAuditLog:
    def __init__(self, repository: RunRepository) -> None:
        self.repository = repository

    async def record(self, record: AuditRecord) -> None:
        await self.repository.append_audit(record)


class LoggingAuditLog:
    async def record(self, record: AuditRecord) -> None:
        logger.info(
            f"audit run={record.run_id} action={record.action} "
            f"steps={','.join(record.step_ids)} actor={record.actor}"
        )
