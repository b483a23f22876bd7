"""
Resilience primitives for endpoint stages.

- RetryPolicy / CircuitBreakerPolicy: effective policies after merging a
  stage's inline fields over its referenced named policy (field by field)
- RetryExecutor: bounded retry with a fixed delay (optional multiplier)
- CircuitBreaker: Closed → Open → HalfOpen state machine over a
  CircuitBreakerState stored in the ExecutionContext

The circuit breaker wraps the whole retry loop: a blocked call makes no
attempt at all, and only the final status of the loop is recorded.
Cancellation (asyncio.CancelledError) propagates untouched and never
changes breaker state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Generic, TypeVar

from .exceptions import ConfigurationError, TransportError
from .execution_context import Clock, Sleeper, lookup_ci, utc_now
from .stage_status import CircuitState

if TYPE_CHECKING:
    from .schema import WorkflowResilienceDefinition, WorkflowStageDefinition

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Policies
# ============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """
    Effective retry policy of a stage.

    Attributes:
        max_retries: Retries after the first attempt
        delay_ms: Delay before each retry
        http_status: Response statuses that trigger a retry
        backoff_multiplier: Delay growth per retry (1.0 = fixed delay)
        on_exception_message: Message template emitted when a transport error ends the loop
    """

    max_retries: int
    delay_ms: int
    http_status: frozenset[int]
    backoff_multiplier: float = 1.0
    on_exception_message: str | None = None

    def delay_seconds(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        return self.delay_ms * (self.backoff_multiplier ** (retry_number - 1)) / 1000.0

    def should_retry(self, status: int) -> bool:
        return status in self.http_status


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    """
    Effective circuit breaker policy of a stage.

    Attributes:
        name: Breaker key (named policy ref, or the stage name)
        failure_threshold: Consecutive failures that open the breaker
        break_ms: Time the breaker stays open before allowing a trial
        close_on_success_attempts: Consecutive trial successes that close it
        failure_statuses: Statuses counted as failures (the retry status set)
    """

    name: str
    failure_threshold: int
    break_ms: int
    close_on_success_attempts: int = 1
    failure_statuses: frozenset[int] = frozenset()
    on_open_message: str | None = None
    on_blocked_message: str | None = None


def merge_retry_policy(
    stage: WorkflowStageDefinition,
    resilience: WorkflowResilienceDefinition | None,
) -> RetryPolicy | None:
    """
    Merge a stage's retry block over its named policy.

    Inline ``maxRetries``/``delayMs``/``backoffMultiplier`` override the named
    policy; ``httpStatus`` always comes from the stage.

    Returns:
        RetryPolicy, or None when the stage has no retry or a field is missing

    Raises:
        ConfigurationError: If the referenced policy does not exist
    """
    retry = stage.retry
    if retry is None:
        return None

    named = None
    if retry.ref:
        named = lookup_ci(resilience.retries if resilience else None, retry.ref)
        if named is None:
            raise ConfigurationError(
                f"Stage '{stage.name}' retry ref '{retry.ref}' was not found in resilience.retries."
            )

    max_retries = retry.max_retries if retry.max_retries is not None else (
        named.max_retries if named else None
    )
    delay_ms = retry.delay_ms if retry.delay_ms is not None else (
        named.delay_ms if named else None
    )
    multiplier = retry.backoff_multiplier if retry.backoff_multiplier is not None else (
        named.backoff_multiplier if named else None
    )
    if max_retries is None or delay_ms is None or not retry.http_status:
        return None

    return RetryPolicy(
        max_retries=max_retries,
        delay_ms=delay_ms,
        http_status=frozenset(retry.http_status),
        backoff_multiplier=multiplier if multiplier is not None else 1.0,
        on_exception_message=retry.messages.on_exception if retry.messages else None,
    )


def merge_circuit_breaker_policy(
    stage: WorkflowStageDefinition,
    retry_policy: RetryPolicy | None,
    resilience: WorkflowResilienceDefinition | None,
) -> CircuitBreakerPolicy | None:
    """
    Merge a stage's circuitBreaker block over its named policy.

    Returns:
        CircuitBreakerPolicy, or None when the stage has no breaker, no retry
        policy, or a required field is missing

    Raises:
        ConfigurationError: If the referenced policy does not exist
    """
    breaker = stage.circuit_breaker
    if breaker is None or retry_policy is None:
        return None

    named = None
    if breaker.ref:
        named = lookup_ci(resilience.circuit_breakers if resilience else None, breaker.ref)
        if named is None:
            raise ConfigurationError(
                f"Stage '{stage.name}' circuitBreaker ref '{breaker.ref}' was not found "
                f"in resilience.circuitBreakers."
            )

    def pick(inline: int | None, attr: str) -> int | None:
        if inline is not None:
            return inline
        return getattr(named, attr) if named else None

    threshold = pick(breaker.failure_threshold, "failure_threshold")
    break_ms = pick(breaker.break_ms, "break_ms")
    close_on = pick(breaker.close_on_success_attempts, "close_on_success_attempts")
    if threshold is None or break_ms is None:
        return None

    return CircuitBreakerPolicy(
        name=breaker.ref or stage.name,
        failure_threshold=threshold,
        break_ms=break_ms,
        close_on_success_attempts=close_on if close_on is not None else 1,
        failure_statuses=retry_policy.http_status,
        on_open_message=breaker.messages.on_open if breaker.messages else None,
        on_blocked_message=breaker.messages.on_blocked if breaker.messages else None,
    )


# ============================================================================
# Retry executor
# ============================================================================


@dataclass
class RetryOutcome(Generic[T]):
    """
    Result of a retry loop.

    Attributes:
        result: Last call result
        attempts: Calls made (first attempt included)
        exhausted: Last result still had a retry status and no retries remained
    """

    result: T
    attempts: int
    exhausted: bool = False

    @property
    def retries(self) -> int:
        return self.attempts - 1


class RetryExecutor:
    """
    Runs a call, retrying on retry statuses and transport errors.

    Without a policy the call runs exactly once.

    Usage:
        executor = RetryExecutor(policy, sleep=asyncio.sleep)
        outcome = await executor.run(send_request, status_of=lambda r: r.status)
    """

    def __init__(
        self,
        policy: RetryPolicy | None,
        sleep: Sleeper,
        on_retry: Callable[[int, int, str], None] | None = None,
    ) -> None:
        self._policy = policy
        self._sleep = sleep
        self._on_retry = on_retry

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        status_of: Callable[[T], int],
    ) -> RetryOutcome[T]:
        """
        Execute ``call`` with bounded retries.

        Raises:
            TransportError: Last attempt failed at the transport level
        """
        max_retries = self._policy.max_retries if self._policy else 0
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await call()
            except TransportError as e:
                if attempt <= max_retries:
                    await self._wait(attempt, max_retries, f"transport error: {e}")
                    continue
                raise

            status = status_of(result)
            if self._policy is None or not self._policy.should_retry(status):
                return RetryOutcome(result, attempt)
            if attempt > max_retries:
                return RetryOutcome(result, attempt, exhausted=True)
            await self._wait(attempt, max_retries, f"status {status}")

    async def _wait(self, retry_number: int, max_retries: int, reason: str) -> None:
        if self._policy is None:
            raise ConfigurationError("Retry wait requested without a retry policy.")
        if self._on_retry is not None:
            self._on_retry(retry_number, max_retries, reason)
        await self._sleep(self._policy.delay_seconds(retry_number))


# ============================================================================
# Circuit breaker
# ============================================================================


@dataclass
class CircuitBreakerState:
    """Mutable breaker state kept in the ExecutionContext, keyed by breaker name."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    open_until: datetime | None = None


@dataclass
class BreakerTransition:
    """What a recorded result did to the breaker."""

    opened: bool = False
    closed: bool = False


class CircuitBreaker:
    """
    Circuit breaker state machine.

    Closed: failures increment a counter; reaching the threshold opens.
    Open: calls are blocked until ``break_ms`` has elapsed, then the next
    call moves the breaker to HalfOpen.
    HalfOpen: trial successes close after ``close_on_success_attempts``;
    any trial failure reopens.
    """

    def __init__(
        self,
        policy: CircuitBreakerPolicy,
        state: CircuitBreakerState,
        clock: Clock = utc_now,
    ) -> None:
        self.policy = policy
        self.state = state
        self._clock = clock

    @classmethod
    def from_store(
        cls,
        policy: CircuitBreakerPolicy,
        store: dict[str, CircuitBreakerState],
        clock: Clock = utc_now,
    ) -> CircuitBreaker:
        """Attach to the shared state for ``policy.name`` (case-insensitive)."""
        key = policy.name.lower()
        state = store.get(key)
        if state is None:
            state = store[key] = CircuitBreakerState()
        return cls(policy, state, clock)

    def allow_request(self) -> bool:
        """
        Check whether a call may proceed, moving Open → HalfOpen once the break elapsed.

        Returns:
            False when the call must be blocked
        """
        if self.state.state is not CircuitState.OPEN:
            return True
        if self.state.open_until is not None and self._clock() >= self.state.open_until:
            self.state.state = CircuitState.HALF_OPEN
            self.state.consecutive_failures = 0
            self.state.consecutive_successes = 0
            logger.debug(f"Circuit breaker '{self.policy.name}' half-open")
            return True
        return False

    def record_status(self, status: int) -> BreakerTransition:
        """Record the final status of a call."""
        if status in self.policy.failure_statuses:
            return self.record_failure()
        return self.record_success()

    def record_failure(self) -> BreakerTransition:
        if self.state.state is CircuitState.HALF_OPEN:
            self._open()
            return BreakerTransition(opened=True)

        self.state.consecutive_failures += 1
        self.state.consecutive_successes = 0
        if self.state.consecutive_failures >= self.policy.failure_threshold:
            self._open()
            return BreakerTransition(opened=True)
        return BreakerTransition()

    def record_success(self) -> BreakerTransition:
        self.state.consecutive_failures = 0
        if self.state.state is not CircuitState.HALF_OPEN:
            return BreakerTransition()

        self.state.consecutive_successes += 1
        if self.state.consecutive_successes >= self.policy.close_on_success_attempts:
            self.state.state = CircuitState.CLOSED
            self.state.consecutive_successes = 0
            self.state.open_until = None
            return BreakerTransition(closed=True)
        return BreakerTransition()

    def _open(self) -> None:
        self.state.state = CircuitState.OPEN
        self.state.open_until = self._clock() + timedelta(milliseconds=self.policy.break_ms)
        self.state.consecutive_failures = 0
        self.state.consecutive_successes = 0


@dataclass
class ResilienceSettings:
    """Effective policies of one endpoint stage."""

    retry: RetryPolicy | None = None
    circuit_breaker: CircuitBreakerPolicy | None = None

    @classmethod
    def for_stage(
        cls,
        stage: WorkflowStageDefinition,
        resilience: WorkflowResilienceDefinition | None,
    ) -> ResilienceSettings:
        retry = merge_retry_policy(stage, resilience)
        breaker = merge_circuit_breaker_policy(stage, retry, resilience)
        return cls(retry=retry, circuit_breaker=breaker)


__all__ = [
    "BreakerTransition",
    "CircuitBreaker",
    "CircuitBreakerPolicy",
    "CircuitBreakerState",
    "ResilienceSettings",
    "RetryExecutor",
    "RetryOutcome",
    "RetryPolicy",
    "merge_circuit_breaker_policy",
    "merge_retry_policy",
]
