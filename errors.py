"""Error taxonomy for the automation engine.

Structural errors are raised at validation/activation time and never during
execution. Execution errors are raised by step handlers and collaborators and
classified by the retry coordinator; they never escape a scheduler tick.
"""


class AutomationError(Exception):
    """Base class for every error raised by the engine."""


class StructuralError(AutomationError):
    """An automation definition cannot be run as configured."""


class GraphValidationError(StructuralError):
    """The step graph is invalid: bad start step, dangling reference, or zero-wait cycle."""

    def __init__(self, message: str, step_ids: list[str] | None = None):
        super().__init__(message)
        self.step_ids = step_ids or []


class StepConfigError(StructuralError):
    """A step's configuration does not fit its step kind."""


class TriggerConfigError(StructuralError):
    """An automation's trigger configuration does not fit its trigger type."""


class ExecutionError(AutomationError):
    """A step failed while running."""


class TransientError(ExecutionError):
    """A failure worth retrying (network error, timeout, non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentError(ExecutionError):
    """A failure that retrying cannot fix (deleted contact, invalid condition field)."""


class ConditionError(PermanentError):
    """A condition predicate cannot be evaluated against the contact."""


class LeaseError(AutomationError):
    """Another worker holds the enrollment's lease."""


class AutomationStateError(AutomationError):
    """The requested operation is not allowed in the automation's current status."""


class NotFoundError(AutomationError):
    """A referenced automation, step or enrollment does not exist."""
