"""
Execution context for one workflow invocation.

Holds the variable scopes a template can reach:
- input values (immutable for the invocation)
- global values produced by the init stage
- the mutable ``context`` map persisted across stages
- per-stage endpoint outputs, nested workflow outputs and nested results
- the merged environment variable map

Plus the collaborators every stage handler needs (plugin registry, loader,
HTTP invoker, mock payload service, base URL resolver) and the run options
(environment, catalog version, mocked/debug flags).

A nested Workflow stage gets its own ExecutionContext via
create_child_context(); the parent copies outputs back explicitly.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import RecursionDepthExceededError

if TYPE_CHECKING:
    from .api_catalog import ApiBaseUrlResolver
    from .http_invoker import HttpEndpointInvoker
    from .loader import WorkflowDocument, WorkflowLoader
    from .mock_payload import MockPayloadService
    from .output_writer import WorkflowOutputWriter
    from .resilience import CircuitBreakerState
    from .stage_plugin import StagePluginRegistry

T = TypeVar("T")

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


def utc_now() -> datetime:
    """Default clock (timezone-aware UTC)."""
    return datetime.now(UTC)


def lookup_ci(mapping: Mapping[str, T] | None, key: str) -> T | None:
    """
    Look up a key case-insensitively.

    Exact matches win; otherwise the first key equal ignoring case.
    """
    if not mapping:
        return None
    if key in mapping:
        return mapping[key]
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return value
    return None


def contains_ci(mapping: Mapping[str, Any] | None, key: str) -> bool:
    if not mapping:
        return False
    lowered = key.lower()
    return any(candidate.lower() == lowered for candidate in mapping)


@dataclass
class RunOptions:
    """
    Options fixed for a whole workflow tree.

    Attributes:
        environment: Active environment name (selects base URLs and vars sections)
        catalog_version: API catalog version used to resolve apiRef base URLs
        mocked: Replace real calls with stage mocks
        debug: Print stage debug maps
        vars_override_active: Root vars file supplied; suppresses child sidecar files
        write_output: Write end-stage outputs for workflows with ``output: true``
    """

    environment: str
    catalog_version: str | None = None
    mocked: bool = False
    debug: bool = False
    vars_override_active: bool = False
    write_output: bool = True


@dataclass
class EngineServices:
    """Collaborators shared by every invocation of a workflow tree."""

    registry: StagePluginRegistry
    loader: WorkflowLoader
    invoker: HttpEndpointInvoker | None = None
    base_url_resolver: ApiBaseUrlResolver | None = None
    mock_payloads: MockPayloadService | None = None
    output_writer: WorkflowOutputWriter | None = None
    clock: Clock = utc_now
    sleep: Sleeper = asyncio.sleep


@dataclass
class ExecutionContext:
    """
    Variable scopes and dependencies for one workflow invocation.

    Owned by the WorkflowRunner that creates it and passed by reference into
    every stage plugin call. Stage maps are keyed by stage name and looked up
    case-insensitively.
    """

    document: WorkflowDocument
    options: RunOptions
    services: EngineServices
    inputs: dict[str, str] = field(default_factory=dict)
    globals: dict[str, str] = field(default_factory=dict)
    context: dict[str, str] = field(default_factory=dict)
    endpoint_outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    workflow_outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    workflow_results: dict[str, dict[str, str]] = field(default_factory=dict)
    circuit_breakers: dict[str, CircuitBreakerState] = field(default_factory=dict)
    indent_level: int = 0
    workflow_stack: list[str] = field(default_factory=list)
    max_recursion_depth: int = 50

    @property
    def environment(self) -> dict[str, str]:
        """Merged environment variables of the current document."""
        return self.document.environment_variables

    @property
    def workflow_name(self) -> str:
        return self.document.definition.name

    def stage_output(self, stage_name: str, key: str) -> str | None:
        """Find a captured stage output (endpoint outputs first, then workflow outputs)."""
        for outputs in (self.endpoint_outputs, self.workflow_outputs):
            stage_map = lookup_ci(outputs, stage_name)
            if stage_map is not None:
                value = lookup_ci(stage_map, key)
                if value is not None:
                    return value
        return None

    def create_child_context(
        self,
        document: WorkflowDocument,
        inputs: dict[str, str],
    ) -> ExecutionContext:
        """
        Create the context for a nested workflow invocation.

        The child starts with a copy of the parent's context map and circuit
        breaker state, its own inputs, and indentation increased by one.

        Raises:
            RecursionDepthExceededError: If nesting would exceed max_recursion_depth
        """
        self.check_recursion_depth(document.definition.name)
        return ExecutionContext(
            document=document,
            options=self.options,
            services=self.services,
            inputs=dict(inputs),
            context=dict(self.context),
            circuit_breakers=copy.deepcopy(self.circuit_breakers),
            indent_level=self.indent_level + 1,
            workflow_stack=self.workflow_stack + [self.workflow_name],
            max_recursion_depth=self.max_recursion_depth,
        )

    def check_recursion_depth(self, workflow_name: str) -> None:
        """
        Check if nesting one more workflow would exceed the depth limit.

        Recursive workflows (A→A, A→B→A) are allowed up to max_recursion_depth.

        Raises:
            RecursionDepthExceededError: If the limit would be exceeded
        """
        child_depth = len(self.workflow_stack) + 2
        if child_depth > self.max_recursion_depth:
            raise RecursionDepthExceededError(
                workflow_name=workflow_name,
                current_depth=child_depth,
                max_depth=self.max_recursion_depth,
                workflow_stack=self.workflow_stack + [self.workflow_name],
            )


__all__ = [
    "Clock",
    "EngineServices",
    "ExecutionContext",
    "RunOptions",
    "Sleeper",
    "contains_ci",
    "lookup_ci",
    "utc_now",
]
