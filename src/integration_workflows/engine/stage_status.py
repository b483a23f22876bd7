"""Stage and workflow status enums."""

from enum import Enum


class StageStatus(str, Enum):
    """
    Stage lifecycle states recorded by the workflow runner.

    Represents what happened to a stage during one workflow invocation.
    """

    PENDING = "pending"
    """Not reached (yet)."""

    SKIPPED = "skipped"
    """runIf evaluated to false."""

    COMPLETED = "completed"
    """Plugin finished and the workflow continued sequentially."""

    JUMPED = "jumped"
    """Plugin finished and signaled a jump."""

    FAILED = "failed"
    """Plugin failed (fatal, or recorded for non-fatal kinds)."""

    def is_pending(self) -> bool:
        """Check if the stage was not reached."""
        return self == StageStatus.PENDING

    def is_skipped(self) -> bool:
        """Check if the stage was skipped."""
        return self == StageStatus.SKIPPED

    def is_completed(self) -> bool:
        """Check if the stage completed."""
        return self == StageStatus.COMPLETED

    def is_jumped(self) -> bool:
        """Check if the stage signaled a jump."""
        return self == StageStatus.JUMPED

    def is_failed(self) -> bool:
        """Check if the stage failed."""
        return self == StageStatus.FAILED


class WorkflowResultStatus(str, Enum):
    """
    Terminal status of a workflow invocation.

    Exposed to parent workflows as ``{{stage:name.workflow.result.status}}``.
    """

    OK = "Ok"
    ERROR = "Error"

    def is_ok(self) -> bool:
        """Check if the workflow succeeded."""
        return self == WorkflowResultStatus.OK

    def is_error(self) -> bool:
        """Check if the workflow failed."""
        return self == WorkflowResultStatus.ERROR


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


__all__ = ["CircuitState", "StageStatus", "WorkflowResultStatus"]
