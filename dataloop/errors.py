"""Error taxonomy for dataloop.

Every error is handled at round granularity by the controller, which turns
it into a user-visible notice and a stop reason.  Reaching the follow-up
depth cap is not an error and has no exception class here.
"""

from enum import Enum
from typing import Optional


class DataloopError(Exception):
    """Base class for all dataloop errors."""


class ValidationError(DataloopError):
    """Code was rejected before execution (malformed or truncated)."""

    def __init__(self, message: str, needs_completion: bool = False):
        super().__init__(message)
        self.needs_completion = needs_completion


class ExecutionError(DataloopError):
    """The sandbox reported or raised a failure while running a block."""


class ApprovalReason(Enum):
    """Why an approval request did not yield an approved decision."""

    NO_CHANNEL = "no_channel"
    REJECTED = "rejected"
    TOO_FAST = "too_fast"
    CHANNEL_ERROR = "channel_error"


class ApprovalError(DataloopError):
    """Execution refused for this round."""

    def __init__(self, message: str, reason: ApprovalReason):
        super().__init__(message)
        self.reason = reason


class LoopError(DataloopError):
    """The model keeps producing the same (or too many) follow-up responses."""

    def __init__(self, message: str, fingerprint: str = ""):
        super().__init__(message)
        self.fingerprint = fingerprint


class ModelError(DataloopError):
    """The model completion stream failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RoundCancelled(DataloopError):
    """A shared cancellation token fired."""
