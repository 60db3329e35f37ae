"""AI review gate in front of step completion."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field
from pydantic_ai import Agent

from .definitions import StepDef
from .errors import TransientError
from .models import AI_DRAFT_KEY, AI_REVIEW_KEY, AWAITING_REVIEW_KEY, StepExecution, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_PROMPT = (
    "You review work submitted for one step of a business process. "
    "Answer APPROVED when the submission satisfies the criteria, otherwise "
    "REVISION_NEEDED with short, actionable feedback and a list of issues."
)


class ReviewStatus(str, Enum):
    APPROVED = "APPROVED"
    REVISION_NEEDED = "REVISION_NEEDED"
    # asynchronous review still running
    PENDING = "PENDING"


class ReviewVerdict(BaseModel):
    status: ReviewStatus
    feedback: str = ""
    issues: List[str] = Field(default_factory=list)


class AIReviewer(Protocol):
    """Black-box reviewer. Must tolerate repeated calls with the same key."""

    async def review(
        self,
        execution_id: str,
        step: StepDef,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> ReviewVerdict:
        ...


@dataclass
class GateDecision:
    verdict: Optional[ReviewVerdict] = None
    fingerprint: Optional[str] = None
    cached: bool = False

    @property
    def passed(self) -> bool:
        return self.verdict is None or self.verdict.status == ReviewStatus.APPROVED

    def result_data(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """What to store on the execution for this decision."""
        if self.verdict is None:
            return dict(payload)
        record = {
            "status": self.verdict.status.value,
            "feedback": self.verdict.feedback,
            "issues": list(self.verdict.issues),
            "fingerprint": self.fingerprint,
            "reviewedAt": utcnow().isoformat(),
        }
        if self.verdict.status == ReviewStatus.APPROVED:
            return {**payload, AI_REVIEW_KEY: record}
        data: Dict[str, Any] = {AI_DRAFT_KEY: dict(payload), AI_REVIEW_KEY: record}
        if self.verdict.status == ReviewStatus.PENDING:
            data[AWAITING_REVIEW_KEY] = True
        return data


def fingerprint(payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


class ReviewGate:
    """Decide whether a submission may complete its step.

    Steps without an enabled ``aiReview`` pass straight through, as does
    everything when no reviewer is configured.
    """

    def __init__(self, reviewer: Optional[AIReviewer] = None, timeout: float = 30.0) -> None:
        self.reviewer = reviewer
        self.timeout = timeout

    def applies_to(self, step: StepDef) -> bool:
        return bool(step.ai_review and step.ai_review.enabled)

    async def check(
        self, execution: StepExecution, step: StepDef, payload: Dict[str, Any]
    ) -> GateDecision:
        """Review ``payload`` for ``execution``.

        A payload identical to one already sent back for revision gets the
        stored verdict again without another reviewer call.

        Raises:
            TransientError: If the reviewer fails or times out.
        """
        if not self.applies_to(step):
            return GateDecision()
        if self.reviewer is None:
            logger.warning(f"Step {step.id} asks for AI review but no reviewer is configured")
            return GateDecision()

        fp = fingerprint(payload)
        previous = execution.result_data.get(AI_REVIEW_KEY) or {}
        if (
            previous.get("fingerprint") == fp
            and previous.get("status") == ReviewStatus.REVISION_NEEDED.value
        ):
            logger.info(f"Reusing revision verdict for unchanged submission on {execution.id}")
            verdict = ReviewVerdict(
                status=ReviewStatus.REVISION_NEEDED,
                feedback=previous.get("feedback", ""),
                issues=previous.get("issues", []),
            )
            return GateDecision(verdict=verdict, fingerprint=fp, cached=True)

        try:
            verdict = await asyncio.wait_for(
                self.reviewer.review(execution.id, step, payload, f"{execution.id}:{fp}"),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(f"AI review of step {step.id} timed out") from exc
        except Exception as exc:
            raise TransientError(f"AI review of step {step.id} failed: {exc}") from exc

        logger.info(f"AI review of {step.id} ({execution.id}): {verdict.status.value}")
        return GateDecision(verdict=verdict, fingerprint=fp)


class PydanticAIReviewer:
    """Reviewer backed by a pydantic-ai agent with a typed verdict."""

    def __init__(self, model: str = "openai:gpt-4o-mini", agent: Optional[Agent] = None) -> None:
        self.model = model
        self._agent = agent

    @property
    def agent(self) -> Agent:
        # built lazily so that constructing the engine needs no API key
        if self._agent is None:
            self._agent = Agent(
                self.model,
                output_type=ReviewVerdict,
                system_prompt=DEFAULT_REVIEW_PROMPT,
            )
        return self._agent

    async def review(
        self,
        execution_id: str,
        step: StepDef,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> ReviewVerdict:
        criteria = step.ai_review.criteria if step.ai_review else None
        prompt = (
            f"Step: {step.display_name} ({step.type.value})\n"
            f"Criteria: {criteria or 'Use good judgement for this kind of step.'}\n"
            f"Submission:\n{json.dumps(payload, indent=2, default=str)}"
        )
        logger.debug(f"Requesting AI review {idempotency_key}")
        result = await self.agent.run(prompt)
        return result.output
