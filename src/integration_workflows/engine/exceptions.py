"""Workflow execution exceptions."""

from __future__ import annotations

from datetime import datetime


class WorkflowError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(WorkflowError):
    """
    Invalid configuration detected before or while dispatching a stage.

    Covers missing or duplicate plugins, unresolved references, invalid
    retry/circuit-breaker combinations, malformed env/vars files and missing
    mock definitions. Always fatal.
    """


class WorkflowValidationError(ConfigurationError):
    """
    Static validation of a workflow document failed.

    Attributes:
        workflow_name: Name of the validated workflow
        errors: Every validation message collected
    """

    def __init__(self, workflow_name: str, errors: list[str]):
        self.workflow_name = workflow_name
        self.errors = list(errors)
        details = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"Workflow '{workflow_name}' failed validation:\n{details}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"WorkflowValidationError(workflow={self.workflow_name!r}, "
            f"errors={len(self.errors)})"
        )


class TemplateResolutionError(WorkflowError):
    """
    A template token could not be resolved.

    Attributes:
        token: Token body (text between the braces)
        reason: Human-readable cause
    """

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Cannot resolve '{{{{{token}}}}}': {reason}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"TemplateResolutionError(token={self.token!r}, reason={self.reason!r})"


class StageFailure(WorkflowError):
    """
    A stage finished without producing an acceptable result.

    Raised when the response status does not match ``expectedStatus`` and no
    ``jumpOnStatus`` entry matched.

    Attributes:
        workflow_name: Workflow owning the stage
        stage_name: Failing stage
        status: Last observed HTTP status (None when no response was received)
    """

    def __init__(
        self,
        workflow_name: str,
        stage_name: str,
        message: str,
        status: int | None = None,
    ):
        self.workflow_name = workflow_name
        self.stage_name = stage_name
        self.status = status
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"{type(self).__name__}(workflow={self.workflow_name!r}, "
            f"stage={self.stage_name!r}, status={self.status})"
        )


class RetryExhausted(StageFailure):
    """
    Every retry attempt ended with a status from the retry set.

    Attributes:
        attempts: Total attempts made (initial call plus retries)
    """

    def __init__(self, workflow_name: str, stage_name: str, attempts: int, status: int):
        self.attempts = attempts
        super().__init__(
            workflow_name,
            stage_name,
            f"Stage '{workflow_name}/{stage_name}' exhausted retries after "
            f"{attempts} attempt(s); last status {status}.",
            status=status,
        )


class CircuitOpenBlocked(StageFailure):
    """
    The stage's circuit breaker is open; no call was attempted.

    Attributes:
        breaker_name: Circuit breaker key
        open_until: Instant when the breaker becomes half-open
    """

    def __init__(
        self,
        workflow_name: str,
        stage_name: str,
        breaker_name: str,
        open_until: datetime | None,
    ):
        self.breaker_name = breaker_name
        self.open_until = open_until
        until = open_until.isoformat() if open_until else "unknown"
        super().__init__(
            workflow_name,
            stage_name,
            f"Circuit breaker '{breaker_name}' is open until {until}; "
            f"stage '{workflow_name}/{stage_name}' was blocked.",
        )


class TransportError(StageFailure):
    """
    Network failure or timeout while calling an endpoint.

    Raised by the HTTP invoker with empty workflow/stage names; the endpoint
    handler re-raises with the stage identity once retries are exhausted.
    """

    def __init__(self, message: str, workflow_name: str = "", stage_name: str = ""):
        super().__init__(workflow_name, stage_name, message)


class MockedSelfJumpError(ConfigurationError):
    """
    A mocked response made a stage jump to itself.

    Under mocked mode the mock always returns the same status, so the jump
    would repeat forever.

    Attributes:
        workflow_name: Workflow owning the stage
        stage_name: Stage that jumped
        target: Jump target (same stage)
    """

    def __init__(self, workflow_name: str, stage_name: str, target: str):
        self.workflow_name = workflow_name
        self.stage_name = stage_name
        self.target = target
        super().__init__(
            f"Stage '{workflow_name}/{stage_name}' mock caused a self-jump to "
            f"'{target}', which would loop indefinitely under --mocked."
        )


class RecursionDepthExceededError(WorkflowError):
    """
    Workflow recursion depth limit exceeded.

    Raised when nested Workflow stages go deeper than the configured limit,
    usually because a workflow references itself directly or indirectly.

    The limit is controlled by the INTEGRATION_WORKFLOWS_MAX_RECURSION_DEPTH
    environment variable (default: 50).

    Attributes:
        workflow_name: Name of the workflow that exceeded the limit
        current_depth: Nesting depth when limit was exceeded
        max_depth: Configured maximum depth
        workflow_stack: Call chain of workflow names
    """

    def __init__(
        self,
        workflow_name: str,
        current_depth: int,
        max_depth: int,
        workflow_stack: list[str],
    ):
        self.workflow_name = workflow_name
        self.current_depth = current_depth
        self.max_depth = max_depth
        self.workflow_stack = workflow_stack

        call_chain = " → ".join(workflow_stack + [workflow_name])
        super().__init__(
            f"Recursion depth limit exceeded for workflow '{workflow_name}' "
            f"(depth: {current_depth}, limit: {max_depth}). "
            f"Call chain: {call_chain}\n\n"
            f"This may indicate infinite recursion. To increase the limit, set the "
            f"INTEGRATION_WORKFLOWS_MAX_RECURSION_DEPTH environment variable."
        )

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"RecursionDepthExceededError(workflow={self.workflow_name!r}, "
            f"depth={self.current_depth}, limit={self.max_depth})"
        )


__all__ = [
    "CircuitOpenBlocked",
    "ConfigurationError",
    "MockedSelfJumpError",
    "RecursionDepthExceededError",
    "RetryExhausted",
    "StageFailure",
    "TemplateResolutionError",
    "TransportError",
    "WorkflowError",
    "WorkflowValidationError",
]
