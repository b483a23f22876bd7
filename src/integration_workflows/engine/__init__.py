"""Workflow engine core components using the stage plugin pattern.

Key Components:

- WorkflowRunner: Stateless stage-sequencing executor (returns WorkflowRunResult)
- WorkflowRunResult: Terminal status, message, outputs and stage statuses
- ExecutionContext: Variable scopes and collaborators of one workflow invocation
- StagePlugin / StagePluginRegistry: Stage kind dispatch (Endpoint, Workflow, ...)
- HttpStagePlugin: HTTP calls with retry, circuit breaker, mocks and jumps
- WorkflowStagePlugin: Nested workflow invocation
- TemplateResolver: ``{{scope.key}}`` / ``{{scope:key}}`` token resolution
- RetryExecutor / CircuitBreaker: Resilience primitives
- WorkflowValidator: Static document validation
- WorkflowLoader: YAML documents with merged environment
- LoadResult: Error monad for loader operations

Architecture:
- Plugins are stateless; all state lives in the ExecutionContext
- A nested workflow gets a fresh ExecutionContext; outputs are copied back
  into the parent under the stage name
- Stage failures are exceptions; the runner decides whether they are fatal
  from the plugin's capabilities
"""

from .api_catalog import ApiBaseUrlResolver, ApiCatalogReader
from .config import WorkflowConfigLoader, WorkflowsConfig, get_http_timeout, get_max_recursion_depth
from .dynamic_values import DynamicValueService
from .exceptions import (
    CircuitOpenBlocked,
    ConfigurationError,
    MockedSelfJumpError,
    RecursionDepthExceededError,
    RetryExhausted,
    StageFailure,
    TemplateResolutionError,
    TransportError,
    WorkflowError,
    WorkflowValidationError,
)
from .execution_context import EngineServices, ExecutionContext, RunOptions
from .executors_endpoint import HttpStagePlugin
from .executors_workflow import WorkflowStagePlugin
from .http_invoker import HttpEndpointInvoker, ResponseContext
from .load_result import LoadResult
from .loader import WorkflowDocument, WorkflowLoader
from .mock_payload import MockPayloadService
from .output_writer import WorkflowOutputWriter
from .resilience import CircuitBreaker, RetryExecutor, RetryOutcome
from .run_if import RunIfEvaluator
from .schema import WorkflowDefinition, WorkflowStageDefinition
from .stage_plugin import (
    StagePlugin,
    StagePluginCapabilities,
    StagePluginRegistry,
    StagePluginRegistryBuilder,
    StageValidationContext,
    create_default_registry,
)
from .stage_status import CircuitState, StageStatus, WorkflowResultStatus
from .template_resolver import TemplateResolver
from .validation import WorkflowValidator
from .vars_file import VarsFileLoader
from .workflow_runner import WorkflowRunner, WorkflowRunResult

__all__ = [
    # Runner
    "WorkflowRunner",
    "WorkflowRunResult",
    "ExecutionContext",
    "EngineServices",
    "RunOptions",
    # Plugins
    "StagePlugin",
    "StagePluginCapabilities",
    "StagePluginRegistry",
    "StagePluginRegistryBuilder",
    "StageValidationContext",
    "create_default_registry",
    "HttpStagePlugin",
    "WorkflowStagePlugin",
    # Templates and resilience
    "TemplateResolver",
    "RunIfEvaluator",
    "RetryExecutor",
    "RetryOutcome",
    "CircuitBreaker",
    "DynamicValueService",
    # Documents and collaborators
    "WorkflowDefinition",
    "WorkflowStageDefinition",
    "WorkflowDocument",
    "WorkflowLoader",
    "WorkflowValidator",
    "VarsFileLoader",
    "ApiCatalogReader",
    "ApiBaseUrlResolver",
    "HttpEndpointInvoker",
    "ResponseContext",
    "MockPayloadService",
    "WorkflowOutputWriter",
    "LoadResult",
    # Configuration
    "WorkflowConfigLoader",
    "WorkflowsConfig",
    "get_http_timeout",
    "get_max_recursion_depth",
    # Status
    "StageStatus",
    "WorkflowResultStatus",
    "CircuitState",
    # Exceptions
    "WorkflowError",
    "ConfigurationError",
    "WorkflowValidationError",
    "TemplateResolutionError",
    "StageFailure",
    "RetryExhausted",
    "CircuitOpenBlocked",
    "TransportError",
    "MockedSelfJumpError",
    "RecursionDepthExceededError",
]
