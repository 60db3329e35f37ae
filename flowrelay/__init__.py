"""flowrelay: run-advancement engine for multi-step flow definitions."""

from .definitions import FlowDefinition, StepType
from .engine import CancelResult, CompletionResult, RunEngine, StartContext
from .errors import FlowRelayError, NotFoundError, StateError, TransientError, ValidationError
from .graph import FlowGraph
from .models import FlowRun, Identity, RunState, RunStatus, StepExecution, StepStatus
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "CancelResult",
    "CompletionResult",
    "FlowDefinition",
    "FlowGraph",
    "FlowRelayError",
    "FlowRun",
    "Identity",
    "NotFoundError",
    "RunEngine",
    "RunState",
    "RunStatus",
    "StartContext",
    "StateError",
    "StepExecution",
    "StepStatus",
    "StepType",
    "TransientError",
    "ValidationError",
    "get_repository",
    "get_transport",
]
