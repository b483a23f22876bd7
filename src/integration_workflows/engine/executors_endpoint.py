"""HTTP endpoint stage plugin (kinds ``Endpoint`` and ``Http``).

Execution order for one stage:

1. Resolve ``headers``, ``query``, ``endpoint`` and ``body`` templates
2. Resolve the base URL of ``apiRef`` (catalog version + environment)
3. Circuit breaker check (an open breaker blocks without any call)
4. Retry loop around the call: the stage mock under ``--mocked``, the
   HTTP invoker otherwise
5. Record the final status on the breaker
6. Capture ``output`` bindings with ``response.*`` available
   (``http_status`` is always added)
7. Emit the stage ``message``
8. Return the ``jumpOnStatus`` target for the status, if any; otherwise a
   status other than ``expectedStatus`` is a stage failure

``set`` and ``context`` bindings are applied by the runner after this
plugin returns, so they see the freshly captured outputs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

from .exceptions import (
    CircuitOpenBlocked,
    ConfigurationError,
    RetryExhausted,
    StageFailure,
    TemplateResolutionError,
    TransportError,
)
from .execution_context import contains_ci, lookup_ci
from .http_invoker import EndpointInvocationResult, HttpEndpointInvoker, build_url
from .log_format import indent, stage_line
from .mock_payload import MockPayloadService
from .resilience import CircuitBreaker, ResilienceSettings, RetryExecutor
from .stage_plugin import StagePlugin, StagePluginCapabilities
from .template_resolver import MissingValueError, TemplateResolver

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .http_invoker import ResponseContext
    from .schema import WorkflowResilienceDefinition, WorkflowStageDefinition
    from .stage_plugin import StageValidationContext

logger = logging.getLogger(__name__)

HTTP_STATUS_OUTPUT = "http_status"


class HttpStagePlugin(StagePlugin):
    """
    Executes HTTP calls with retry, circuit breaker and mock support.

    Example:
        - name: create_account
          kind: Endpoint
          apiRef: accounts
          endpoint: /api/accounts
          httpVerb: POST
          expectedStatus: 201
          retry:
            ref: transient
            httpStatus: [502, 503]
          circuitBreaker:
            ref: accounts
          output:
            id: "{{response.id}}"
          jumpOnStatus:
            409: endStage
    """

    id: ClassVar[str] = "http"
    stage_kinds: ClassVar[tuple[str, ...]] = ("Endpoint", "Http")
    capabilities: ClassVar[StagePluginCapabilities] = StagePluginCapabilities(
        allows_response_tokens=True,
        supports_jump_on_status=True,
        continue_on_error=False,
        output_kind="endpoint",
        mock_kind="endpoint",
    )

    async def execute(
        self, stage: WorkflowStageDefinition, context: ExecutionContext
    ) -> str | None:
        """
        Execute the endpoint stage.

        Returns:
            Jump target for the response status, or None

        Raises:
            ConfigurationError: Unresolvable apiRef/base URL or invalid mock
            TemplateResolutionError: A request template could not be resolved
            CircuitOpenBlocked: The stage's breaker is open
            TransportError: Network failure after the last retry
            RetryExhausted: Every attempt returned a retry status
            StageFailure: Status differs from expectedStatus and no jump matched
        """
        services = context.services
        resolver = TemplateResolver(services.clock)
        definition = context.document.definition
        mocked = context.options.mocked and stage.mock is not None

        headers = resolver.resolve_map(stage.headers, context)
        query = resolver.resolve_map(stage.query, context)
        endpoint = resolver.resolve(stage.endpoint, context)
        body = resolver.resolve(stage.body, context) if stage.body else None
        method = (stage.http_verb or "GET").upper()
        url = build_url(self._base_url(stage, context, required=not mocked), endpoint, query)

        settings = ResilienceSettings.for_stage(stage, definition.resilience)
        breaker: CircuitBreaker | None = None
        if settings.circuit_breaker is not None:
            breaker = CircuitBreaker.from_store(
                settings.circuit_breaker, context.circuit_breakers, services.clock
            )
            if not breaker.allow_request():
                self._emit(settings.circuit_breaker.on_blocked_message, context, resolver)
                logger.warning(
                    stage_line(
                        context,
                        stage.name,
                        f"circuit '{settings.circuit_breaker.name}' open; call blocked.",
                    )
                )
                raise CircuitOpenBlocked(
                    context.workflow_name,
                    stage.name,
                    settings.circuit_breaker.name,
                    breaker.state.open_until,
                )

        mock_payloads = services.mock_payloads or MockPayloadService(resolver)
        invoker = services.invoker or HttpEndpointInvoker()

        async def call() -> EndpointInvocationResult:
            if mocked:
                response = mock_payloads.build_response(stage, context)
                return EndpointInvocationResult(response, url, method, body)
            return await invoker.invoke(method, url, headers, body)

        def on_retry(retry_number: int, max_retries: int, reason: str) -> None:
            logger.info(
                stage_line(
                    context,
                    stage.name,
                    f"retry {retry_number}/{max_retries} after {reason}.",
                )
            )

        executor = RetryExecutor(settings.retry, services.sleep, on_retry)
        try:
            outcome = await executor.run(call, status_of=lambda r: r.response.status)
        except TransportError as e:
            if breaker is not None and breaker.record_failure().opened:
                self._log_open(stage, context, resolver, settings)
            if settings.retry is not None:
                self._emit(settings.retry.on_exception_message, context, resolver, logging.ERROR)
            raise TransportError(
                f"Stage '{stage.name}' failed with exception: {e}",
                workflow_name=context.workflow_name,
                stage_name=stage.name,
            ) from e

        invocation = outcome.result
        response = invocation.response
        status = response.status
        if not mocked:
            self._log_response(stage, context, invocation)

        if breaker is not None and breaker.record_status(status).opened:
            self._log_open(stage, context, resolver, settings)

        succeeded = stage.expected_status is None or status == stage.expected_status
        context.endpoint_outputs[stage.name] = self._capture_outputs(
            stage, context, resolver, response, strict=succeeded
        )
        self._emit_message(stage, context, resolver, response)

        jump_target = self._jump_target(stage, status)
        if jump_target is not None:
            return jump_target
        if outcome.exhausted:
            raise RetryExhausted(context.workflow_name, stage.name, outcome.attempts, status)
        if not succeeded:
            raise StageFailure(
                context.workflow_name,
                stage.name,
                f"Stage '{stage.name}' returned {status} but expected {stage.expected_status}.",
                status=status,
            )
        return None

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _base_url(stage: WorkflowStageDefinition, context: ExecutionContext, required: bool) -> str:
        resolver = context.services.base_url_resolver
        if resolver is None or not stage.api_ref:
            if required:
                raise ConfigurationError(
                    f"Stage '{stage.name}' apiRef '{stage.api_ref}' was not found in "
                    f"workflow references."
                )
            return ""
        return resolver.resolve(
            context.document.definition,
            stage.api_ref,
            context.options.catalog_version,
            context.options.environment,
        )

    @staticmethod
    def _jump_target(stage: WorkflowStageDefinition, status: int) -> str | None:
        if not stage.jump_on_status:
            return None
        return stage.jump_on_status.get(status)

    @staticmethod
    def _capture_outputs(
        stage: WorkflowStageDefinition,
        context: ExecutionContext,
        resolver: TemplateResolver,
        response: ResponseContext,
        strict: bool,
    ) -> dict[str, str]:
        """Resolve output bindings; missing values render empty unless ``strict``."""
        outputs: dict[str, str] = {}
        for key, template in (stage.output or {}).items():
            try:
                outputs[key] = resolver.resolve(template, context, response)
            except MissingValueError as e:
                if strict:
                    raise
                logger.debug(stage_line(context, stage.name, f"output '{key}' left empty: {e}"))
                outputs[key] = ""
        if not contains_ci(outputs, HTTP_STATUS_OUTPUT):
            outputs[HTTP_STATUS_OUTPUT] = str(response.status)
        return outputs

    @staticmethod
    def _log_response(
        stage: WorkflowStageDefinition,
        context: ExecutionContext,
        invocation: EndpointInvocationResult,
    ) -> None:
        response = invocation.response
        logger.debug(
            stage_line(
                context,
                stage.name,
                f"{invocation.request_method} {invocation.request_url} -> {response.status}",
            )
        )
        if response.status == 400:
            logger.error(
                stage_line(
                    context,
                    stage.name,
                    f"returned 400. Response body: {response.body or '<empty>'}",
                )
            )
            logger.debug(
                stage_line(
                    context, stage.name, f"request body: {invocation.request_body or '<empty>'}"
                )
            )
        elif response.status == 404:
            logger.error(
                stage_line(context, stage.name, f"returned 404 for url: {invocation.request_url}")
            )

    def _log_open(
        self,
        stage: WorkflowStageDefinition,
        context: ExecutionContext,
        resolver: TemplateResolver,
        settings: ResilienceSettings,
    ) -> None:
        policy = settings.circuit_breaker
        if policy is None:
            return
        logger.warning(stage_line(context, stage.name, f"circuit '{policy.name}' opened."))
        self._emit(policy.on_open_message, context, resolver)

    @staticmethod
    def _emit(
        template: str | None,
        context: ExecutionContext,
        resolver: TemplateResolver,
        level: int = logging.INFO,
    ) -> None:
        """Log a resilience message template (retry/breaker ``messages``)."""
        if not template or not template.strip():
            return
        try:
            resolved = resolver.resolve(template, context)
        except TemplateResolutionError as e:
            logger.warning(f"{indent(context.indent_level)}Message could not be resolved: {e}")
            return
        if resolved.strip():
            logger.log(level, f"{indent(context.indent_level)}{resolved}")

    @staticmethod
    def _emit_message(
        stage: WorkflowStageDefinition,
        context: ExecutionContext,
        resolver: TemplateResolver,
        response: ResponseContext,
    ) -> None:
        if not stage.message or not stage.message.strip():
            return
        try:
            resolved = resolver.resolve(stage.message, context, response)
        except TemplateResolutionError as e:
            logger.warning(stage_line(context, stage.name, f"message could not be resolved: {e}"))
            return
        if resolved.strip():
            logger.info(stage_line(context, stage.name, f"message: {resolved}"))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self, stage: WorkflowStageDefinition, validation_context: StageValidationContext
    ) -> list[str]:
        errors: list[str] = []
        definition = validation_context.definition

        if not stage.api_ref or not stage.api_ref.strip():
            errors.append(f"Stage '{stage.name}' apiRef is required for http stages.")
        elif definition.find_api_reference(stage.api_ref) is None:
            errors.append(
                f"Stage '{stage.name}' apiRef '{stage.api_ref}' is not declared in references.apis."
            )

        if not stage.endpoint or not stage.endpoint.strip():
            errors.append(f"Stage '{stage.name}' endpoint is required for http stages.")
        if not stage.http_verb or not stage.http_verb.strip():
            errors.append(f"Stage '{stage.name}' httpVerb is required for http stages.")
        if stage.expected_status is None or stage.expected_status <= 0:
            errors.append(f"Stage '{stage.name}' expectedStatus must be a positive integer.")

        for status in (stage.jump_on_status or {}):
            if status <= 0:
                errors.append(f"Stage '{stage.name}' jump status must be a positive integer.")

        if stage.circuit_breaker is not None and stage.retry is None:
            errors.append(f"Stage '{stage.name}' circuitBreaker requires retry.")

        errors.extend(self._validate_retry(stage, definition.resilience))
        errors.extend(self._validate_circuit_breaker(stage, definition.resilience))
        return errors

    @staticmethod
    def _validate_retry(
        stage: WorkflowStageDefinition, resilience: WorkflowResilienceDefinition | None
    ) -> list[str]:
        retry = stage.retry
        if retry is None:
            return []

        errors: list[str] = []
        if not retry.http_status:
            errors.append(f"Stage '{stage.name}' retry httpStatus is required.")
        elif any(status <= 0 for status in retry.http_status):
            errors.append(f"Stage '{stage.name}' retry httpStatus must contain positive integers.")

        named = None
        if retry.ref:
            named = lookup_ci(resilience.retries if resilience else None, retry.ref)
            if named is None:
                errors.append(
                    f"Stage '{stage.name}' retry ref '{retry.ref}' was not found in "
                    f"resilience.retries."
                )

        max_retries = retry.max_retries if retry.max_retries is not None else (
            named.max_retries if named else None
        )
        delay_ms = retry.delay_ms if retry.delay_ms is not None else (
            named.delay_ms if named else None
        )
        if max_retries is None or max_retries <= 0:
            errors.append(f"Stage '{stage.name}' retry maxRetries must be a positive integer.")
        if delay_ms is None or delay_ms <= 0:
            errors.append(f"Stage '{stage.name}' retry delayMs must be a positive integer.")
        if retry.backoff_multiplier is not None and retry.backoff_multiplier < 1:
            errors.append(f"Stage '{stage.name}' retry backoffMultiplier must be at least 1.")
        return errors

    @staticmethod
    def _validate_circuit_breaker(
        stage: WorkflowStageDefinition, resilience: WorkflowResilienceDefinition | None
    ) -> list[str]:
        breaker = stage.circuit_breaker
        if breaker is None:
            return []

        errors: list[str] = []
        named = None
        if breaker.ref:
            named = lookup_ci(resilience.circuit_breakers if resilience else None, breaker.ref)
            if named is None:
                errors.append(
                    f"Stage '{stage.name}' circuitBreaker ref '{breaker.ref}' was not found in "
                    f"resilience.circuitBreakers."
                )

        def pick(inline: int | None, attr: str) -> int | None:
            if inline is not None:
                return inline
            return getattr(named, attr) if named else None

        threshold = pick(breaker.failure_threshold, "failure_threshold")
        break_ms = pick(breaker.break_ms, "break_ms")
        close_on = pick(breaker.close_on_success_attempts, "close_on_success_attempts")
        if threshold is None or threshold <= 0:
            errors.append(
                f"Stage '{stage.name}' circuitBreaker failureThreshold must be a positive integer."
            )
        if break_ms is None or break_ms <= 0:
            errors.append(
                f"Stage '{stage.name}' circuitBreaker breakMs must be a positive integer."
            )
        if close_on is not None and close_on <= 0:
            errors.append(
                f"Stage '{stage.name}' circuitBreaker closeOnSuccessAttempts must be a "
                f"positive integer."
            )
        return errors


__all__ = ["HTTP_STATUS_OUTPUT", "HttpStagePlugin"]
