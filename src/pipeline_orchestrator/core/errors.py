"""Exception types raised by the orchestrator.

Only DefinitionError is fatal to a run. Job failures and timeouts are
recorded as JobResult states, and ExecutionError never leaves the executor:
it is converted into a failed JobResult carrying its reason code.
"""

from typing import Optional

from pipeline_orchestrator.core.contracts import FailureReason


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class DefinitionError(OrchestratorError):
    """A pipeline definition is malformed or violates a plan invariant."""

    def __init__(
        self,
        violation: str,
        *,
        stage: Optional[str] = None,
        job: Optional[str] = None,
        service: Optional[str] = None,
    ):
        self.violation = violation
        self.stage = stage
        self.job = job
        self.service = service
        super().__init__(self._format())

    @property
    def location(self) -> str:
        """Where in the plan the violation was found."""
        parts = []
        if self.stage:
            parts.append(f"stage '{self.stage}'")
        if self.job:
            parts.append(f"job '{self.job}'")
        if self.service:
            parts.append(f"service '{self.service}'")
        return ", ".join(parts)

    def _format(self) -> str:
        if self.location:
            return f"{self.location}: {self.violation}"
        return self.violation


class ExecutionError(OrchestratorError):
    """A job's process could not be launched."""

    def __init__(self, message: str, reason: FailureReason = FailureReason.LAUNCH_FAILED):
        self.reason = reason
        super().__init__(message)
