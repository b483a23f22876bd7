"""
Nested workflow stage plugin (kind ``Workflow``).

A Workflow stage loads the referenced child document, builds a child
ExecutionContext and runs it through the WorkflowRunner one indentation
level deeper. Child failures never abort the parent: the child's terminal
status and message are recorded under the stage name and reachable as
``{{stage:<name>.workflow.result.status}}`` / ``...result.message``; its
end-stage outputs as ``{{stage:<name>.output.<key>}}``.

Child inputs come from the stage's ``inputs`` map. Without inputs, a
sidecar ``<child>.wfvars`` next to the child file supplies them, unless
the root run was given a vars file (which overrides every sidecar).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

from .exceptions import ConfigurationError, TemplateResolutionError
from .execution_context import lookup_ci
from .log_format import indent, stage_line, stage_tag
from .stage_plugin import StagePlugin, StagePluginCapabilities
from .stage_status import WorkflowResultStatus
from .template_resolver import TemplateResolver
from .vars_file import VarsFileLoader, sidecar_vars_path

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .loader import WorkflowDocument
    from .schema import WorkflowStageDefinition
    from .stage_plugin import StageValidationContext

logger = logging.getLogger(__name__)


def record_workflow_result(
    context: ExecutionContext,
    stage_name: str,
    status: WorkflowResultStatus,
    message: str,
) -> None:
    """Store a nested workflow's terminal status/message under the stage name."""
    context.workflow_results[stage_name] = {"status": status.value, "message": message}


class WorkflowStagePlugin(StagePlugin):
    """
    Runs a referenced child workflow.

    Example:
        references:
          workflows:
            - name: create_user
              path: ./create-user.workflow
        stages:
          - name: user
            kind: Workflow
            workflowRef: create_user
            inputs:
              email: "{{input.email}}"
            context:
              userStatus: "{{stage:user.workflow.result.status}}"
    """

    id: ClassVar[str] = "workflow"
    stage_kinds: ClassVar[tuple[str, ...]] = ("Workflow",)
    capabilities: ClassVar[StagePluginCapabilities] = StagePluginCapabilities(
        allows_response_tokens=False,
        supports_jump_on_status=False,
        continue_on_error=True,
        output_kind="workflow",
        mock_kind="workflow",
    )

    def __init__(self, vars_loader: VarsFileLoader | None = None) -> None:
        self._vars_loader = vars_loader or VarsFileLoader()

    async def execute(
        self, stage: WorkflowStageDefinition, context: ExecutionContext
    ) -> str | None:
        """
        Execute the child workflow (or apply its mock).

        Raises:
            ConfigurationError: Missing reference, unloadable child or vars file,
                or a mocked stage without ``mock.output``
            RecursionDepthExceededError: Nesting limit reached
        """
        resolver = TemplateResolver(context.services.clock)

        if context.options.mocked and stage.mock is not None:
            if not stage.mock.output:
                raise ConfigurationError(
                    f"Stage '{stage.name}' mock.output is required for workflow stages "
                    f"under --mocked."
                )
            context.workflow_outputs[stage.name] = resolver.resolve_map(stage.mock.output, context)
            record_workflow_result(context, stage.name, WorkflowResultStatus.OK, "")
            self._emit_message(stage, context, resolver)
            return None

        child = self._load_child(stage, context)
        logger.info(
            f"{indent(context.indent_level)}Calling nested workflow [{child.definition.name}] "
            f"from stage {stage_tag(context.workflow_name, stage.name)}."
        )
        inputs = self._child_inputs(stage, child, context, resolver)
        child_context = context.create_child_context(child, inputs)

        from .workflow_runner import WorkflowRunner

        result = await WorkflowRunner().run_nested(child_context)
        context.workflow_outputs[stage.name] = dict(result.outputs)
        record_workflow_result(context, stage.name, result.status, result.message)
        self._emit_message(stage, context, resolver)
        return None

    def _load_child(
        self, stage: WorkflowStageDefinition, context: ExecutionContext
    ) -> WorkflowDocument:
        if not stage.workflow_ref:
            raise ConfigurationError(f"Stage '{stage.name}' workflowRef is required.")
        reference = context.document.definition.find_workflow_reference(stage.workflow_ref)
        if reference is None:
            raise ConfigurationError(f"Workflow reference '{stage.workflow_ref}' was not found.")
        path = context.document.resolve_path(reference.path)
        return context.services.loader.load(path, context.environment)

    def _child_inputs(
        self,
        stage: WorkflowStageDefinition,
        child: WorkflowDocument,
        context: ExecutionContext,
        resolver: TemplateResolver,
    ) -> dict[str, str]:
        if stage.inputs:
            inputs = resolver.resolve_map(stage.inputs, context)
        else:
            inputs = {}

        vars_path = sidecar_vars_path(child.file_path)
        if not vars_path.is_file():
            return inputs

        child_indent = indent(context.indent_level + 1)
        if context.options.vars_override_active:
            logger.info(f"{child_indent}Vars file: overrided by main workflow")
            return inputs
        if stage.inputs:
            return inputs

        try:
            resolution = self._vars_loader.load_with_details(
                vars_path, context.options.environment, child.definition.version
            )
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Failed to load vars file [{vars_path}] for workflow "
                f"'{child.definition.name}': {e}"
            ) from e
        logger.info(f"{child_indent}Vars file: {vars_path} (auto)")
        for key in sorted(resolution.sources, key=str.lower):
            source = resolution.sources[key]
            logger.debug(f"{child_indent}  {key}: {source.scope}")
        return dict(resolution.values)

    @staticmethod
    def _emit_message(
        stage: WorkflowStageDefinition, context: ExecutionContext, resolver: TemplateResolver
    ) -> None:
        if not stage.message or not stage.message.strip():
            return
        try:
            resolved = resolver.resolve(stage.message, context)
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
        if stage.retry is not None:
            errors.append(f"Stage '{stage.name}' retry is only supported for endpoint stages.")
        if stage.circuit_breaker is not None:
            errors.append(
                f"Stage '{stage.name}' circuitBreaker is only supported for endpoint stages."
            )

        if not stage.workflow_ref or not stage.workflow_ref.strip():
            errors.append(f"Stage '{stage.name}' workflowRef is required for workflow stages.")
            return errors

        definition = validation_context.definition
        reference = definition.find_workflow_reference(stage.workflow_ref)
        if reference is None:
            errors.append(
                f"Stage '{stage.name}' workflowRef '{stage.workflow_ref}' is not declared in "
                f"references."
            )
            return errors

        path = (validation_context.base_directory / reference.path).resolve()
        if not path.is_file():
            errors.append(f"Referenced workflow '{stage.workflow_ref}' was not found at '{path}'.")
            return errors

        try:
            child = validation_context.loader.load(path, validation_context.environment_variables)
        except ConfigurationError as e:
            errors.append(f"Referenced workflow '{stage.workflow_ref}' failed to load: {e}")
            return errors

        errors.extend(self._validate_inputs(stage, child))

        allowed = {definition.version.lower()}
        if stage.allow_version:
            allowed.add(stage.allow_version.lower())
        if child.definition.version.lower() not in allowed:
            errors.append(
                f"Stage '{stage.name}' references workflow version '{child.definition.version}' "
                f"which differs from parent version '{definition.version}'."
            )
        return errors

    @staticmethod
    def _validate_inputs(stage: WorkflowStageDefinition, child: WorkflowDocument) -> list[str]:
        # Without explicit inputs the sidecar vars file (if any) supplies them at run time
        if not stage.inputs:
            return []

        errors: list[str] = []
        declared = {item.name: item for item in child.definition.input}
        for item in declared.values():
            if item.required and lookup_ci(stage.inputs, item.name) is None:
                errors.append(
                    f"Stage '{stage.name}' is missing required input '{item.name}' for workflow "
                    f"'{child.definition.name}'."
                )
        for name in stage.inputs:
            if lookup_ci(declared, name) is None:
                errors.append(
                    f"Stage '{stage.name}' provides unknown input '{name}' for workflow "
                    f"'{child.definition.name}'."
                )
        return errors


__all__ = ["WorkflowStagePlugin", "record_workflow_result"]
