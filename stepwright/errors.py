"""Exception taxonomy for the workflow engine."""

from __future__ import annotations

from typing import Optional


class StepwrightError(Exception):
    """Base class for all engine errors."""


class CancellationError(StepwrightError):
    """Raised when an in-flight call is cancelled by a signal.

    Never surfaced as a workflow failure. The ``reason`` names the signal
    that requested the cancellation (``pause``, ``skip``, ``stop`` or
    ``mode_change``).
    """

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(f"Call cancelled: {reason}")


class StepExecutionError(StepwrightError):
    """The agent executor failed for a reason other than cancellation."""

    def __init__(self, step_index: int, message: str) -> None:
        self.step_index = step_index
        self.message = message
        super().__init__(f"Step {step_index} failed: {message}")


class DirectiveError(StepwrightError):
    """The directive artifact could not be parsed."""


class PersistenceError(StepwrightError):
    """A step record store operation failed."""

    def __init__(self, message: str, step_index: Optional[int] = None) -> None:
        self.step_index = step_index
        super().__init__(message)


class ConfigurationError(StepwrightError):
    """Invalid engine configuration or template."""
