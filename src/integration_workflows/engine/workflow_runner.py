"""
Workflow runner: the stage-sequencing state machine.

    Init -> Running(stage_i) -> Running(stage_i+1) | JumpedTo(stage_j) | End
         -> Completed | Failed

One run:
1. Check required inputs (not under --mocked)
2. Init stage: generate globals, seed absent context keys
3. Stage loop: runIf skip, delaySeconds, debug map, plugin execute,
   ``set``/``context`` bindings, jump or continue
4. End stage: outputs, context writes, output file, result message

Failures of kinds whose plugin declares ``continue_on_error`` (nested
workflows) are recorded and the loop continues. Any other stage failure
stops the loop; the end-stage ``context`` writes still run and the workflow
finishes with an Error result.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .dynamic_values import DynamicValueService
from .exceptions import (
    ConfigurationError,
    MockedSelfJumpError,
    TemplateResolutionError,
    WorkflowError,
)
from .execution_context import ExecutionContext, contains_ci
from .executors_workflow import record_workflow_result
from .log_format import stage_line, workflow_line
from .run_if import RunIfEvaluator
from .schema import VariableType
from .stage_status import StageStatus, WorkflowResultStatus
from .template_resolver import MissingValueError, TemplateResolver

if TYPE_CHECKING:
    from .execution_context import EngineServices, RunOptions
    from .loader import WorkflowDocument
    from .schema import WorkflowStageDefinition

logger = logging.getLogger(__name__)

END_STAGE_TARGETS = frozenset({"endstage", "end"})


@dataclass
class WorkflowRunResult:
    """
    Terminal result of one workflow invocation (root or nested).

    The context snapshot is ALWAYS present so callers can inspect what ran
    before a failure.

    Example Usage:
        result = await WorkflowRunner().run(document, inputs, options, services)
        if result.status.is_ok():
            print(result.outputs)
        else:
            print(result.message)
    """

    status: WorkflowResultStatus
    message: str = ""
    outputs: dict[str, str] = field(default_factory=dict)
    context: dict[str, str] = field(default_factory=dict)
    stage_statuses: dict[str, StageStatus] = field(default_factory=dict)
    output_path: Path | None = None

    @staticmethod
    def ok(
        message: str,
        outputs: dict[str, str],
        context: ExecutionContext,
        stage_statuses: dict[str, StageStatus],
        output_path: Path | None = None,
    ) -> WorkflowRunResult:
        return WorkflowRunResult(
            status=WorkflowResultStatus.OK,
            message=message,
            outputs=dict(outputs),
            context=dict(context.context),
            stage_statuses=dict(stage_statuses),
            output_path=output_path,
        )

    @staticmethod
    def error(
        message: str,
        context: ExecutionContext | None = None,
        stage_statuses: dict[str, StageStatus] | None = None,
    ) -> WorkflowRunResult:
        """Create an Error result, keeping whatever context was built before the failure."""
        return WorkflowRunResult(
            status=WorkflowResultStatus.ERROR,
            message=message,
            context=dict(context.context) if context else {},
            stage_statuses=dict(stage_statuses or {}),
        )

    def to_response(self) -> dict[str, Any]:
        """JSON-serializable representation (CLI output)."""
        response: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "outputs": self.outputs,
            "context": self.context,
            "stages": {name: status.value for name, status in self.stage_statuses.items()},
        }
        if self.output_path is not None:
            response["outputFile"] = str(self.output_path)
        return response


class _StageAborted(Exception):
    """Internal signal: a fatal stage failure stops the stage loop."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WorkflowRunner:
    """
    Stateless workflow executor.

    All per-invocation state lives in the ExecutionContext; one runner
    instance can execute any number of workflows.

    Usage:
        runner = WorkflowRunner()
        result = await runner.run(document, {"email": "a@b.c"}, options, services)
    """

    async def run(
        self,
        document: WorkflowDocument,
        inputs: dict[str, str] | None,
        options: RunOptions,
        services: EngineServices,
        max_recursion_depth: int = 50,
    ) -> WorkflowRunResult:
        """
        Run a root workflow.

        Raises:
            ConfigurationError: Required input missing or init-stage variable invalid
            MockedSelfJumpError: A mocked stage jumped to itself
        """
        context = ExecutionContext(
            document=document,
            options=options,
            services=services,
            inputs=dict(inputs or {}),
            max_recursion_depth=max_recursion_depth,
        )
        return await self.execute(context)

    async def run_nested(self, context: ExecutionContext) -> WorkflowRunResult:
        """
        Run a child workflow; configuration errors become an Error result.

        The parent's Workflow stage records the result instead of aborting.
        """
        try:
            return await self.execute(context)
        except WorkflowError as e:
            logger.error(workflow_line(context, f"failed: {e}"))
            return WorkflowRunResult.error(str(e), context)

    async def execute(self, context: ExecutionContext) -> WorkflowRunResult:
        """Execute the workflow owning ``context`` (init stage, stage loop, end stage)."""
        definition = context.document.definition
        resolver = TemplateResolver(context.services.clock)
        statuses = {stage.name: StageStatus.PENDING for stage in definition.stages}

        logger.info(workflow_line(context, "started."))
        self._check_required_inputs(context)
        self._run_init_stage(context, resolver)

        try:
            await self._run_stages(context, resolver, statuses)
        except _StageAborted as e:
            self._apply_end_context(context, resolver)
            logger.error(workflow_line(context, f"failed: {e.message}"))
            return WorkflowRunResult.error(e.message, context, statuses)

        return self._run_end_stage(context, resolver, statuses)

    # ------------------------------------------------------------------
    # Init stage
    # ------------------------------------------------------------------

    @staticmethod
    def _check_required_inputs(context: ExecutionContext) -> None:
        if context.options.mocked:
            return
        for item in context.document.definition.input:
            if item.required and not contains_ci(context.inputs, item.name):
                raise ConfigurationError(f"Required input '{item.name}' was not provided.")

    @staticmethod
    def _run_init_stage(context: ExecutionContext, resolver: TemplateResolver) -> None:
        init_stage = context.document.definition.init_stage
        if init_stage is None:
            return

        generator = DynamicValueService(context.services.clock)
        for variable in init_stage.variables:
            if variable.type == VariableType.FIXED and variable.value:
                variable = variable.model_copy(
                    update={"value": resolver.resolve(variable.value, context)}
                )
            context.globals[variable.name] = generator.generate(variable)

        for key, template in (init_stage.context or {}).items():
            if contains_ci(context.context, key):
                continue
            context.context[key] = resolver.resolve(template, context)

        logger.info(stage_line(context, "initStage", "processed."))

    # ------------------------------------------------------------------
    # Stage loop
    # ------------------------------------------------------------------

    async def _run_stages(
        self,
        context: ExecutionContext,
        resolver: TemplateResolver,
        statuses: dict[str, StageStatus],
    ) -> None:
        stages = context.document.definition.stages
        index_by_name = {stage.name.lower(): i for i, stage in enumerate(stages)}
        run_if = RunIfEvaluator(resolver)
        registry = context.services.registry

        index = 0
        while index < len(stages):
            stage = stages[index]

            if not run_if.should_run(stage.run_if, context):
                statuses[stage.name] = StageStatus.SKIPPED
                logger.info(stage_line(context, stage.name, "skipped (runIf)."))
                index += 1
                continue

            if stage.delay_seconds:
                logger.info(stage_line(context, stage.name, f"waiting {stage.delay_seconds} s."))
                await context.services.sleep(stage.delay_seconds)

            if context.options.debug and stage.debug:
                self._print_debug(stage, context, resolver)

            plugin = registry.get(stage.kind)
            logger.info(stage_line(context, stage.name, "started."))
            started = time.perf_counter()
            try:
                target = await plugin.execute(stage, context)
            except Exception as e:
                elapsed = _elapsed_ms(started)
                logger.error(stage_line(context, stage.name, f"failed after {elapsed} ms: {e}"))
                statuses[stage.name] = StageStatus.FAILED
                if not plugin.capabilities.continue_on_error:
                    raise _StageAborted(str(e)) from e
                record_workflow_result(context, stage.name, WorkflowResultStatus.ERROR, str(e))
                self._apply_bindings_leniently(stage, context, resolver)
                index += 1
                continue

            try:
                self._apply_bindings(stage, context, resolver)
            except TemplateResolutionError as e:
                if not plugin.capabilities.continue_on_error:
                    statuses[stage.name] = StageStatus.FAILED
                    logger.error(stage_line(context, stage.name, f"failed: {e}"))
                    raise _StageAborted(str(e)) from e
                # The recorded workflow result stays the child's own
                self._apply_bindings_leniently(stage, context, resolver)

            logger.info(stage_line(context, stage.name, f"completed in {_elapsed_ms(started)} ms."))

            if not target:
                # A child that ended in Error still completes its Workflow stage;
                # its outcome is read through workflow.result.status/message
                statuses[stage.name] = StageStatus.COMPLETED
                index += 1
                continue

            statuses[stage.name] = StageStatus.JUMPED
            logger.info(stage_line(context, stage.name, f"jump to '{target}'."))
            if target.lower() in END_STAGE_TARGETS:
                return

            target_index = index_by_name.get(target.lower())
            if target_index is None:
                raise _StageAborted(
                    f"Stage '{stage.name}' jump target '{target}' does not exist."
                )
            if target_index == index and context.options.mocked:
                raise MockedSelfJumpError(context.workflow_name, stage.name, target)
            index = target_index

    @staticmethod
    def _apply_bindings(
        stage: WorkflowStageDefinition, context: ExecutionContext, resolver: TemplateResolver
    ) -> None:
        """Evaluate ``set`` into globals and ``context`` into the context map."""
        for key, template in (stage.set or {}).items():
            context.globals[key] = resolver.resolve(template, context)
        for key, template in (stage.context or {}).items():
            context.context[key] = resolver.resolve(template, context)

    @staticmethod
    def _apply_bindings_leniently(
        stage: WorkflowStageDefinition, context: ExecutionContext, resolver: TemplateResolver
    ) -> None:
        for target, bindings in ((context.globals, stage.set), (context.context, stage.context)):
            for key, template in (bindings or {}).items():
                try:
                    target[key] = resolver.resolve(template, context)
                except TemplateResolutionError as e:
                    logger.warning(stage_line(context, stage.name, f"'{key}' not set: {e}"))

    @staticmethod
    def _print_debug(
        stage: WorkflowStageDefinition, context: ExecutionContext, resolver: TemplateResolver
    ) -> None:
        for key, template in (stage.debug or {}).items():
            try:
                value = resolver.resolve(template, context)
            except TemplateResolutionError as e:
                value = f"<unresolved: {e.reason}>"
            logger.info(stage_line(context, stage.name, f"debug {key}: {value}"))

    # ------------------------------------------------------------------
    # End stage
    # ------------------------------------------------------------------

    def _run_end_stage(
        self,
        context: ExecutionContext,
        resolver: TemplateResolver,
        statuses: dict[str, StageStatus],
    ) -> WorkflowRunResult:
        end_stage = context.document.definition.end_stage
        outputs: dict[str, str] = {}
        message = ""
        output_path: Path | None = None

        if end_stage is not None:
            for key, template in end_stage.output.items():
                try:
                    outputs[key] = resolver.resolve(template, context)
                except MissingValueError as e:
                    # Stages skipped or jumped over leave their outputs unset
                    logger.debug(stage_line(context, "endStage", f"output '{key}' left empty: {e}"))
                    outputs[key] = ""
            self._apply_end_context(context, resolver)
            if end_stage.result and end_stage.result.message:
                message = resolver.resolve(end_stage.result.message, context)

        logger.info(stage_line(context, "endStage", "processed."))

        writer = context.services.output_writer
        if context.options.write_output and writer is not None:
            output_path = writer.write(context.document, outputs)

        logger.info(workflow_line(context, "completed."))
        return WorkflowRunResult.ok(message, outputs, context, statuses, output_path)

    @staticmethod
    def _apply_end_context(context: ExecutionContext, resolver: TemplateResolver) -> None:
        end_stage = context.document.definition.end_stage
        if end_stage is None:
            return
        for key, template in (end_stage.context or {}).items():
            try:
                context.context[key] = resolver.resolve(template, context)
            except TemplateResolutionError as e:
                logger.warning(stage_line(context, "endStage", f"context '{key}' not set: {e}"))


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = ["END_STAGE_TARGETS", "WorkflowRunResult", "WorkflowRunner"]
