"""Error taxonomy for the run-advancement engine."""

from __future__ import annotations


class FlowRelayError(Exception):
    """Base class for every error raised by flowrelay."""


class ValidationError(FlowRelayError):
    """The definition or the request is malformed. Never retried."""


class StateError(FlowRelayError):
    """The operation is not valid for the current run or step status.

    Callers should refresh their view instead of retrying: usually someone
    else already performed the transition.
    """


class NotFoundError(FlowRelayError):
    """Unknown run, step or definition id."""


class TransientError(FlowRelayError):
    """A collaborator timed out or the store reported a conflict.

    Nothing was committed, so the whole operation may be retried.
    """
