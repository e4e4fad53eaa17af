"""Exception taxonomy for sandboxed execution."""

from __future__ import annotations

from . import constants


class RunnerError(Exception):
    """Base class for every failure raised by the execution core."""


class GuardFailure(RunnerError):
    """A runaway Program was stopped by an iteration or wall-clock guard."""

    def __init__(self, reason: str, limit: int | None = None):
        self.reason = reason
        self.limit = limit
        detail = f" (limit {limit})" if limit is not None else ""
        super().__init__(f"{constants.INFINITE_LOOP_MESSAGE}: {reason}{detail}")


class InfiniteLoopError(GuardFailure):
    """The loop trap counter went below zero."""

    def __init__(self, limit: int):
        super().__init__(constants.REASON_ITERATIONS, limit)


class SandboxError(RunnerError):
    """Any other failure inside generated code."""


class CapabilityBindingError(RunnerError):
    """A required capability is missing from the table handed to the engine."""


class ProgramAborted(RunnerError):
    """The Program was cancelled; not an error from the user's point of view."""


class RobotLinkError(RunnerError):
    """The robot WebSocket could not be opened."""
