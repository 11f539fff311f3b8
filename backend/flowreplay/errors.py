"""Exception types raised inside the replay engine.

Validation problems (missing DAG, cycles, binding mismatch) are never raised:
the orchestrator reports them as a failed ``RunResult``.  The types below cover
the conditions that travel as exceptions between runtime components.
"""

from __future__ import annotations


class FlowParseError(ValueError):
    """The raw flow document cannot be turned into an IRFlow."""


class StepExecutionError(RuntimeError):
    """A node executor reported a failure for a step."""

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(message)


class UnsupportedStepError(StepExecutionError):
    """No executor is registered for the step's type."""

    def __init__(self, step_id: str, step_type: str):
        self.step_type = step_type
        super().__init__(step_id, f"unsupported step type: {step_type}")


class StepValidationError(StepExecutionError):
    """The registered executor rejected the step's params."""


class StepTimeoutError(StepExecutionError):
    """A step exceeded its own timeout_ms."""


class GlobalTimeoutError(TimeoutError):
    """The run-level deadline (options.timeout_ms) was exceeded."""
