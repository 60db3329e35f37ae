"""Event contracts published by the engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import new_id, utcnow

STEP_ACTIVATED = "step.activated"
STEP_COMPLETED = "step.completed"
RUN_COMPLETED = "run.completed"
RUN_CANCELLED = "run.cancelled"
ACCESS_ISSUE = "access.issue"
ACCESS_REASSIGNED = "access.reassigned"

TOPICS = (
    STEP_ACTIVATED,
    STEP_COMPLETED,
    RUN_COMPLETED,
    RUN_CANCELLED,
    ACCESS_ISSUE,
    ACCESS_REASSIGNED,
)


class EngineEvent(BaseModel):
    """One notification for the scheduler or the token issuer."""

    id: str = Field(default_factory=new_id)
    topic: str
    run_id: str
    execution_ids: List[str] = Field(default_factory=list)
    due_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()
