"""
Error taxonomy for the analytics, scheduling and alerting services.

Every error carries a ``context`` mapping (metric, pipeline id, configuration
id, ...) that is rendered into the message so failures can be diagnosed from
the log line or execution record alone.
"""

from typing import Any


class PipewatchError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def with_context(self, **context: Any) -> "PipewatchError":
        """Attach additional context and refresh the rendered message."""
        self.context.update({k: v for k, v in context.items() if v is not None})
        self.args = (self._render(),)
        return self


class InsufficientData(PipewatchError):
    """Statistics were requested on fewer points than the operation requires."""

    def __init__(self, operation: str, required: int, actual: int, **context: Any):
        self.operation = operation
        self.required = required
        self.actual = actual
        super().__init__(
            f"{operation} requires at least {required} data points, got {actual}",
            **context,
        )


class NotFound(PipewatchError):
    """Unknown pipeline, job, alert or configuration id."""

    def __init__(self, kind: str, identifier: str, **context: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found", **context)


class ConfigurationInvalid(PipewatchError):
    """A job definition or alert configuration was rejected at creation time."""


class DeliveryFailed(PipewatchError):
    """A channel send exhausted its retry policy."""


class ConcurrencyExceeded(PipewatchError):
    """A firing was dropped because the scheduler queue is full."""


class InvalidStateTransition(PipewatchError):
    """An operator action is not allowed in the alert's current state."""


class TransientError(PipewatchError):
    """Failure of an external dependency that may succeed on retry."""


class DataSourceUnavailable(TransientError):
    """The metrics backend could not be reached or answered with an error."""


class StoreUnavailable(TransientError):
    """The record store could not be reached."""
