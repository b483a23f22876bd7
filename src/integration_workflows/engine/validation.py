"""Static validation of workflow documents.

Runs before any stage executes and collects every problem instead of
stopping at the first one. Checks cover:

- metadata: version/id/name, inputs and init-stage variables
- references: workflow and API aliases, environment file
- resilience: named retry and circuit breaker policies
- stages: names, kinds, delays, jumps, runIf syntax and the owning
  plugin's own ``validate``
- mocks: payload/output shape per stage kind
- template scope: every ``{{token}}`` refers to something that exists
  where it is used

Nested workflows are validated with ``validate_tree``; each child document
is checked once even when several stages reference it.

Example:
    validator = WorkflowValidator(registry, WorkflowLoader())
    errors = validator.validate_tree(document)
    if errors:
        raise WorkflowValidationError(document.definition.name, errors)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError, TemplateResolutionError
from .execution_context import contains_ci, lookup_ci
from .mock_payload import json_error, sanitize_json_for_validation
from .run_if import parse_run_if
from .schema import VariableType
from .stage_plugin import StageValidationContext
from .template_resolver import JSON_PROJECTION_PATTERN, ROOTS, extract_tokens, split_token

if TYPE_CHECKING:
    from .loader import WorkflowDocument, WorkflowLoader
    from .schema import WorkflowDefinition, WorkflowStageDefinition
    from .stage_plugin import StagePlugin, StagePluginRegistry

logger = logging.getLogger(__name__)

END_STAGE_TARGETS = frozenset({"endstage", "end"})
MAX_DELAY_SECONDS = 60
WORKFLOW_RESULT_KEYS = frozenset({"status", "message"})
SYSTEM_KINDS = frozenset({"datetime", "date", "time"})
SYSTEM_CLOCKS = frozenset({"now", "utcnow"})
HTTP_STATUS_OUTPUT = "http_status"


@dataclass
class TemplateScope:
    """
    Names a template may reference inside one document.

    Attributes:
        inputs: Declared input names (lower-cased)
        globals: Init-stage variable names (lower-cased)
        environment: Merged environment of the document
        stage_kinds: Stage name (lower-cased) to its plugin's output kind
        stage_outputs: Stage name (lower-cased) to its output keys (lower-cased),
            None when the keys cannot be known statically
    """

    inputs: set[str] = field(default_factory=set)
    globals: set[str] = field(default_factory=set)
    environment: dict[str, str] = field(default_factory=dict)
    stage_kinds: dict[str, str] = field(default_factory=dict)
    stage_outputs: dict[str, set[str] | None] = field(default_factory=dict)


class WorkflowValidator:
    """Collects validation errors for workflow documents."""

    def __init__(self, registry: StagePluginRegistry, loader: WorkflowLoader) -> None:
        self._registry = registry
        self._loader = loader

    def validate_tree(self, document: WorkflowDocument) -> list[str]:
        """
        Validate a document and every workflow it references, depth first.

        Child errors are prefixed with ``[<child name>]``.
        """
        errors: list[str] = []
        visited: set[Path] = set()
        self._validate_recursive(document, errors, visited, prefix="")
        return errors

    def _validate_recursive(
        self, document: WorkflowDocument, errors: list[str], visited: set[Path], prefix: str
    ) -> None:
        if document.file_path in visited:
            return
        visited.add(document.file_path)
        errors.extend(f"{prefix}{e}" for e in self.validate(document))

        references = document.definition.references
        for reference in references.workflows if references else []:
            if not reference.path:
                continue
            path = document.resolve_path(reference.path)
            if path in visited or not path.is_file():
                continue
            try:
                child = self._loader.load(path, document.environment_variables)
            except ConfigurationError:
                # Reported by the referencing stage
                continue
            self._validate_recursive(child, errors, visited, f"[{child.definition.name}] ")

    def validate(self, document: WorkflowDocument) -> list[str]:
        """
        Validate one document (referenced children are only inspected).

        Returns:
            Validation error messages (empty when valid)
        """
        definition = document.definition
        errors: list[str] = []
        errors.extend(validate_metadata(definition))
        errors.extend(validate_references(document))
        errors.extend(validate_resilience(definition))
        errors.extend(self._validate_stages(document))

        scope = self._build_scope(document, errors)
        errors.extend(self._validate_templates(document, scope))
        errors.extend(self._validate_mocks(document, scope))

        logger.debug(f"Validated workflow '{definition.name}': {len(errors)} error(s)")
        return errors

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _plugin_for(self, stage: WorkflowStageDefinition) -> StagePlugin | None:
        if not stage.kind or not self._registry.has_kind(stage.kind):
            return None
        return self._registry.get(stage.kind)

    def _validate_stages(self, document: WorkflowDocument) -> list[str]:
        definition = document.definition
        errors: list[str] = []
        if not definition.stages:
            errors.append("Workflow must define at least one stage.")
            return errors

        validation_context = StageValidationContext(
            definition=definition,
            file_path=document.file_path,
            loader=self._loader,
            environment_variables=document.environment_variables,
        )
        stage_names = {s.name.lower() for s in definition.stages if s.name}
        seen: set[str] = set()

        for stage in definition.stages:
            if not stage.name or not stage.name.strip():
                errors.append("Stage name is required.")
                continue
            if stage.name.lower() in seen:
                errors.append(f"Duplicate stage name '{stage.name}'.")
            seen.add(stage.name.lower())

            delay = stage.delay_seconds
            if delay is not None and not 0 <= delay <= MAX_DELAY_SECONDS:
                errors.append(
                    f"Stage '{stage.name}' delaySeconds must be between 0 and {MAX_DELAY_SECONDS}."
                )

            plugin = self._plugin_for(stage)
            if not stage.kind or not stage.kind.strip():
                errors.append(f"Stage '{stage.name}' kind is required.")
            elif plugin is None:
                errors.append(
                    f"Stage '{stage.name}' kind '{stage.kind}' is not registered. "
                    f"Available: {', '.join(self._registry.list_kinds())}."
                )
            else:
                errors.extend(plugin.validate(stage, validation_context))

            errors.extend(_validate_jumps(stage, plugin, stage_names))

            if stage.run_if and stage.run_if.strip():
                try:
                    parse_run_if(stage.run_if)
                except TemplateResolutionError:
                    errors.append(
                        f"Invalid runIf expression '{stage.run_if}' in stage '{stage.name}' runIf."
                    )
        return errors

    # ------------------------------------------------------------------
    # Template scope
    # ------------------------------------------------------------------

    def _build_scope(self, document: WorkflowDocument, errors: list[str]) -> TemplateScope:
        definition = document.definition
        scope = TemplateScope(
            inputs={i.name.lower() for i in definition.input if i.name},
            globals={
                v.name.lower()
                for v in (definition.init_stage.variables if definition.init_stage else [])
                if v.name
            },
            environment=dict(document.environment_variables),
        )
        for stage in definition.stages:
            if not stage.name:
                continue
            plugin = self._plugin_for(stage)
            kind = plugin.capabilities.output_kind if plugin else "none"
            key = stage.name.lower()
            scope.stage_kinds[key] = kind
            if kind == "endpoint":
                keys = {k.lower() for k in (stage.output or {})}
                keys.add(HTTP_STATUS_OUTPUT)
                scope.stage_outputs[key] = keys
            elif kind == "workflow":
                scope.stage_outputs[key] = self._child_output_keys(document, stage, errors)
            else:
                scope.stage_outputs[key] = None
        return scope

    def _child_output_keys(
        self, document: WorkflowDocument, stage: WorkflowStageDefinition, errors: list[str]
    ) -> set[str] | None:
        if not stage.workflow_ref:
            return None
        reference = document.definition.find_workflow_reference(stage.workflow_ref)
        if reference is None or not reference.path:
            return None
        path = document.resolve_path(reference.path)
        if not path.is_file():
            return None
        try:
            child = self._loader.load(path, document.environment_variables)
        except ConfigurationError as e:
            errors.append(f"Failed to inspect workflow '{stage.workflow_ref}': {e}")
            return None
        end_stage = child.definition.end_stage
        return {k.lower() for k in (end_stage.output if end_stage else {})}

    def _validate_templates(self, document: WorkflowDocument, scope: TemplateScope) -> list[str]:
        definition = document.definition
        errors: list[str] = []

        def check(template: str | None, location: str, allow_response: bool = False) -> None:
            errors.extend(validate_template(template, location, scope, allow_response))

        def check_map(
            templates: dict[str, str] | None, location: str, allow_response: bool = False
        ) -> None:
            for value in (templates or {}).values():
                check(value, location, allow_response)

        if definition.init_stage:
            for variable in definition.init_stage.variables:
                check(variable.value, "init-stage variable")
            check_map(definition.init_stage.context, "init-stage context")

        for stage in definition.stages:
            if not stage.name:
                continue
            plugin = self._plugin_for(stage)
            allows_response = bool(plugin and plugin.capabilities.allows_response_tokens)
            label = f"stage '{stage.name}'"

            check_map(stage.headers, f"{label} header")
            check_map(stage.query, f"{label} query")
            check(stage.endpoint, f"{label} endpoint")
            check(stage.body, f"{label} body")
            check_map(stage.inputs, f"{label} input")
            check_map(stage.debug, f"{label} debug")
            check(stage.message, f"{label} message", allows_response)
            check_map(stage.output, f"{label} output", allows_response)
            check_map(stage.set, f"{label} set")
            check_map(stage.context, f"{label} context")
            if stage.run_if:
                try:
                    parsed = parse_run_if(stage.run_if)
                except TemplateResolutionError:
                    pass
                else:
                    check(f"{{{{{parsed.token}}}}}", f"{label} runIf")
            if stage.retry and stage.retry.messages:
                check(stage.retry.messages.on_exception, f"{label} retry message")
            if stage.circuit_breaker and stage.circuit_breaker.messages:
                check(stage.circuit_breaker.messages.on_open, f"{label} circuit breaker message")
                check(
                    stage.circuit_breaker.messages.on_blocked, f"{label} circuit breaker message"
                )

        if definition.end_stage:
            check_map(definition.end_stage.output, "end-stage output")
            check_map(definition.end_stage.context, "end-stage context")
            if definition.end_stage.result:
                check(definition.end_stage.result.message, "end-stage result message")
        return errors

    # ------------------------------------------------------------------
    # Mocks
    # ------------------------------------------------------------------

    def _validate_mocks(self, document: WorkflowDocument, scope: TemplateScope) -> list[str]:
        errors: list[str] = []
        for stage in document.definition.stages:
            mock = stage.mock
            if mock is None or not stage.name:
                continue
            if mock.status is not None and mock.status <= 0:
                errors.append(f"Stage '{stage.name}' mock status must be a positive integer.")

            plugin = self._plugin_for(stage)
            mock_kind = plugin.capabilities.mock_kind if plugin else "none"
            if mock_kind == "endpoint":
                errors.extend(self._validate_endpoint_mock(document, stage, scope))
            elif mock_kind == "workflow":
                if mock.payload is not None or mock.payload_file is not None:
                    errors.append(
                        f"Stage '{stage.name}' mock payload is not supported for workflow stages."
                    )
                if not mock.output:
                    errors.append(
                        f"Stage '{stage.name}' mock output is required for workflow stages."
                    )
                for value in (mock.output or {}).values():
                    errors.extend(
                        validate_template(value, f"stage '{stage.name}' mock output", scope)
                    )
        return errors

    @staticmethod
    def _validate_endpoint_mock(
        document: WorkflowDocument, stage: WorkflowStageDefinition, scope: TemplateScope
    ) -> list[str]:
        mock = stage.mock
        if mock is None:
            return []
        errors: list[str] = []
        if mock.output:
            errors.append(f"Stage '{stage.name}' mock output is not supported for endpoint stages.")
        if mock.payload is not None and mock.payload_file is not None:
            errors.append(f"Stage '{stage.name}' mock cannot define both payload and payloadFile.")
            return errors
        if mock.payload is None and not mock.payload_file:
            errors.append(f"Stage '{stage.name}' mock payload is required for endpoint stages.")
            return errors

        if mock.payload is not None:
            payload = mock.payload
        else:
            path = document.resolve_path(mock.payload_file or "")
            try:
                payload = path.read_text(encoding="utf-8")
            except OSError as e:
                errors.append(f"Stage '{stage.name}' mock payload failed to load: {e}")
                return errors

        errors.extend(validate_template(payload, f"stage '{stage.name}' mock payload", scope))
        if payload.strip():
            error = json_error(sanitize_json_for_validation(payload))
            if error is not None:
                errors.append(f"Stage '{stage.name}' mock payload is not valid JSON: {error}")
        return errors


# ============================================================================
# Document-level checks
# ============================================================================


def validate_metadata(definition: WorkflowDefinition) -> list[str]:
    """Check workflow identity, inputs, init-stage variables and the output flag."""
    errors: list[str] = []
    if not definition.version or not definition.version.strip():
        errors.append("Workflow version is required.")
    if not definition.id or not definition.id.strip():
        errors.append("Workflow id is required.")
    if not definition.name or not definition.name.strip():
        errors.append("Workflow name is required.")

    input_names: set[str] = set()
    for item in definition.input:
        if not item.name or not item.name.strip():
            errors.append("Input name is required.")
            continue
        if item.name.lower() in input_names:
            errors.append(f"Duplicate input name '{item.name}'.")
        input_names.add(item.name.lower())

    variable_names: set[str] = set()
    for variable in definition.init_stage.variables if definition.init_stage else []:
        if not variable.name or not variable.name.strip():
            errors.append("Init-stage variable name is required.")
            continue
        if variable.name.lower() in variable_names:
            errors.append(f"Duplicate init-stage variable name '{variable.name}'.")
        variable_names.add(variable.name.lower())

        if variable.name.lower() in input_names:
            errors.append(
                f"Init-stage variable '{variable.name}' duplicates an input with the same name."
            )
        if variable.value is not None and variable.has_range_settings():
            errors.append(
                f"Init-stage variable '{variable.name}' cannot define value with range settings."
            )
        if variable.value is not None and variable.type.is_temporal():
            errors.append(
                f"Init-stage variable '{variable.name}' must use type 'Fixed' when value is "
                f"provided."
            )
        missing_value = variable.value is None or not variable.value.strip()
        if variable.type == VariableType.FIXED and missing_value:
            errors.append(f"Init-stage variable '{variable.name}' requires a value.")

    if definition.output and not (definition.end_stage and definition.end_stage.output):
        errors.append("End-stage output is required when workflow output is enabled.")
    return errors


def validate_references(document: WorkflowDocument) -> list[str]:
    """Check workflow/API aliases and the environment file."""
    references = document.definition.references
    if references is None:
        return []

    errors: list[str] = []
    names: set[str] = set()
    for reference in references.workflows:
        if not reference.name or not reference.name.strip():
            errors.append("Reference name is required.")
            continue
        if not reference.path or not reference.path.strip():
            errors.append(f"Reference '{reference.name}' path is required.")
        if reference.name.lower() in names:
            errors.append(f"Duplicate reference name '{reference.name}'.")
        names.add(reference.name.lower())

    api_names: set[str] = set()
    for api in references.apis:
        if not api.name or not api.name.strip():
            errors.append("API reference name is required.")
            continue
        if not api.definition or not api.definition.strip():
            errors.append(f"API reference '{api.name}' definition is required.")
        if api.name.lower() in api_names:
            errors.append(f"Duplicate API reference name '{api.name}'.")
        api_names.add(api.name.lower())

    if references.environment_file:
        path = document.resolve_path(references.environment_file)
        if not path.is_file():
            errors.append(f"Environment file '{references.environment_file}' was not found.")
    return errors


def validate_resilience(definition: WorkflowDefinition) -> list[str]:
    """Check named policies declare positive values."""
    resilience = definition.resilience
    if resilience is None:
        return []

    errors: list[str] = []
    for name, retry in resilience.retries.items():
        if retry.max_retries is not None and retry.max_retries <= 0:
            errors.append(f"Retry policy '{name}' maxRetries must be a positive integer.")
        if retry.delay_ms is not None and retry.delay_ms <= 0:
            errors.append(f"Retry policy '{name}' delayMs must be a positive integer.")
        if retry.backoff_multiplier is not None and retry.backoff_multiplier < 1:
            errors.append(f"Retry policy '{name}' backoffMultiplier must be at least 1.")
    for name, breaker in resilience.circuit_breakers.items():
        if breaker.failure_threshold is not None and breaker.failure_threshold <= 0:
            errors.append(f"Circuit breaker '{name}' failureThreshold must be a positive integer.")
        if breaker.break_ms is not None and breaker.break_ms <= 0:
            errors.append(f"Circuit breaker '{name}' breakMs must be a positive integer.")
    return errors


def _validate_jumps(
    stage: WorkflowStageDefinition, plugin: StagePlugin | None, stage_names: set[str]
) -> list[str]:
    if not stage.jump_on_status:
        return []
    if plugin is not None and not plugin.capabilities.supports_jump_on_status:
        return [f"Stage '{stage.name}' jumpOnStatus is only supported for endpoint stages."]

    errors: list[str] = []
    for target in stage.jump_on_status.values():
        if not target or not target.strip():
            errors.append(f"Stage '{stage.name}' has an empty jump target.")
        elif target.lower() not in END_STAGE_TARGETS and target.lower() not in stage_names:
            errors.append(f"Stage '{stage.name}' jump target '{target}' does not exist.")
    return errors


# ============================================================================
# Template tokens
# ============================================================================


def validate_template(
    template: str | None, location: str, scope: TemplateScope, allow_response: bool = False
) -> list[str]:
    """
    Check every token of a template against the document scope.

    Args:
        template: Template text (None and token-free strings are valid)
        location: Human-readable location appended to messages
        scope: Names reachable from the document
        allow_response: Whether ``response.*`` tokens are allowed here

    Examples:
        >>> validate_template("{{input.name}}", "end-stage output", TemplateScope())
        ["Unknown input 'input.name' in end-stage output."]
    """
    errors: list[str] = []
    for token in extract_tokens(template):
        error = _validate_token(token, scope, allow_response)
        if error is not None:
            errors.append(f"{error} in {location}.")
    return errors


def _validate_token(token: str, scope: TemplateScope, allow_response: bool) -> str | None:
    projection = JSON_PROJECTION_PATTERN.match(token)
    if projection:
        inner = projection.group("inner")
        inner_segments = split_token(inner)
        if not inner_segments:
            return f"Stage outputs were not found for '{token}'"
        if inner_segments[0].lower() not in ROOTS:
            inner_segments = ["stage", *inner_segments]
        return _validate_segments(token, inner_segments, scope, allow_response)
    return _validate_segments(token, split_token(token), scope, allow_response)


def _validate_segments(
    token: str, segments: list[str], scope: TemplateScope, allow_response: bool
) -> str | None:
    if not segments:
        return f"Unknown token '{token}'"

    root = segments[0].lower()
    match root:
        case "input":
            if len(segments) < 2 or segments[1].lower() not in scope.inputs:
                return f"Unknown input '{token}'"
        case "global":
            if len(segments) < 2 or segments[1].lower() not in scope.globals:
                return f"Unknown global '{token}'"
        case "context":
            if len(segments) < 2:
                return f"Invalid context token '{token}'"
        case "env":
            if len(segments) < 2:
                return f"Unknown token '{token}'"
            if not contains_ci(scope.environment, segments[1]) and segments[1] not in os.environ:
                return f"Environment variable '{segments[1]}' was not defined for token '{token}'"
        case "system":
            return _validate_system(token, segments)
        case "response":
            if not allow_response:
                return f"Response token '{token}' is not allowed"
        case "stage" | "stages":
            return _validate_stage_token(token, segments, scope, kind=None)
        case "endpoint":
            return _validate_stage_token(token, segments, scope, kind="endpoint")
        case "workflow":
            return _validate_stage_token(token, segments, scope, kind="workflow")
        case _:
            return f"Unknown token '{token}'"
    return None


def _validate_system(token: str, segments: list[str]) -> str | None:
    if len(segments) == 2 and segments[1].lower() in ("guid", "ulid"):
        return None
    if (
        len(segments) == 3
        and segments[1].lower() in SYSTEM_KINDS
        and segments[2].lower() in SYSTEM_CLOCKS
    ):
        return None
    return f"Invalid system token '{token}'"


def _validate_stage_token(
    token: str, segments: list[str], scope: TemplateScope, kind: str | None
) -> str | None:
    """Check ``<root>:<stage>.output.<key>`` and ``stage:<stage>.workflow.<section>.<key>``."""
    if len(segments) >= 3 and segments[2].lower() == "workflow" and kind is None:
        if len(segments) < 5:
            return f"Invalid stage token '{token}'. Expected 'stage:<name>.output.<key>'"
        stage_name, section, key = segments[1], segments[3].lower(), segments[4]
        if stage_name.lower() not in scope.stage_kinds:
            return f"Stage '{stage_name}' outputs were not found for '{token}'"
        if section == "result":
            if key.lower() not in WORKFLOW_RESULT_KEYS:
                return f"Invalid workflow result key '{key}' for '{token}'"
            return None
        if section == "output":
            return _check_output_key(token, stage_name, key, scope)
        return f"Invalid stage token '{token}'. Expected 'stage:<name>.output.<key>'"

    if len(segments) < 4 or segments[2].lower() != "output":
        return f"Invalid stage token '{token}'. Expected 'stage:<name>.output.<key>'"

    stage_name, key = segments[1], segments[3]
    stage_kind = lookup_ci(scope.stage_kinds, stage_name)
    if stage_kind is None or (kind is not None and stage_kind != kind):
        return f"Stage '{stage_name}' outputs were not found for '{token}'"
    return _check_output_key(token, stage_name, key, scope)


def _check_output_key(token: str, stage_name: str, key: str, scope: TemplateScope) -> str | None:
    keys = scope.stage_outputs.get(stage_name.lower())
    if keys is not None and key.lower() not in keys:
        return f"Stage '{stage_name}' output '{key}' was not found for '{token}'"
    return None


__all__ = [
    "TemplateScope",
    "WorkflowValidator",
    "validate_metadata",
    "validate_references",
    "validate_resilience",
    "validate_template",
]
