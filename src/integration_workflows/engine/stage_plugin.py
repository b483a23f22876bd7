"""Stage plugin base class, registry and registry builder.

A stage plugin implements one or more stage kinds (``Endpoint``,
``Workflow``, ...). The runner looks plugins up by the stage's ``kind``
and calls:

- ``validate(stage, validation_context)`` before anything runs
- ``execute(stage, context)`` when the stage is reached

Built-in plugins: ``http`` (kinds Endpoint, Http) and ``workflow``
(kind Workflow). Additional plugins come from a factory table supplied by
the host application, or from the ``integration_workflows.stage_plugins``
entry point group:

    [project.entry-points."integration_workflows.stage_plugins"]
    graphql = "my_package.plugins:GraphQLStagePlugin"
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Literal

from pydantic import BaseModel, Field, PrivateAttr

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .loader import WorkflowLoader
    from .schema import WorkflowDefinition, WorkflowStageDefinition

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "integration_workflows.stage_plugins"
REQUIRED_PLUGIN_IDS = ("workflow",)

PluginFactory = Callable[[], "StagePlugin"]


class StagePluginCapabilities(BaseModel):
    """Capability flags consumed by the runner and the validator.

    Declares how stages of a plugin's kinds interact with the workflow.
    """

    allows_response_tokens: bool = False
    supports_jump_on_status: bool = False
    continue_on_error: bool = False
    output_kind: Literal["none", "endpoint", "workflow"] = Field(
        default="none", description="Which output map ``stage:<name>.output`` reads"
    )
    mock_kind: Literal["none", "endpoint", "workflow"] = Field(
        default="none", description="Mock shape accepted: payload/status or output map"
    )


@dataclass
class StageValidationContext:
    """
    Inputs available to a plugin while validating a stage.

    Attributes:
        definition: Workflow containing the stage
        file_path: Workflow file (relative references resolve against its directory)
        loader: Loader for referenced child workflows
        environment_variables: Merged environment of the workflow
    """

    definition: WorkflowDefinition
    file_path: Path
    loader: WorkflowLoader
    environment_variables: dict[str, str] = field(default_factory=dict)

    @property
    def base_directory(self) -> Path:
        return self.file_path.parent


class StagePlugin(ABC):
    """Base class for stage plugins.

    Plugins are stateless: one instance serves every stage of its kinds
    across the whole workflow tree. All per-invocation state lives in the
    ExecutionContext.

    Subclasses must:
    1. Set class attributes (id, stage_kinds, capabilities)
    2. Implement execute() and validate()

    Example:
        class GraphQLStagePlugin(StagePlugin):
            id = "graphql"
            stage_kinds = ("GraphQL",)
            capabilities = StagePluginCapabilities(allows_response_tokens=True)

            async def execute(self, stage, context):
                ...
                return None

            def validate(self, stage, validation_context):
                return [] if stage.endpoint else [f"Stage '{stage.name}' endpoint is required."]
    """

    id: ClassVar[str]
    stage_kinds: ClassVar[tuple[str, ...]]
    capabilities: ClassVar[StagePluginCapabilities] = StagePluginCapabilities()

    @abstractmethod
    async def execute(
        self, stage: WorkflowStageDefinition, context: ExecutionContext
    ) -> str | None:
        """Execute the stage.

        Args:
            stage: Stage definition
            context: Execution context of the owning workflow (mutated in place)

        Returns:
            Jump target stage name (or ``endStage``/``end``), None to continue

        Raises:
            Exception: Any exception is a stage failure
        """

    @abstractmethod
    def validate(
        self, stage: WorkflowStageDefinition, validation_context: StageValidationContext
    ) -> list[str]:
        """Validate a stage statically.

        Returns:
            Validation error messages (empty when valid)
        """


class StagePluginRegistry(BaseModel):
    """
    Registry of stage plugins.

    Maps plugin ids and stage kinds (both case-insensitive) to plugin instances.
    """

    model_config = {"arbitrary_types_allowed": True}

    _plugins: dict[str, StagePlugin] = PrivateAttr(default_factory=dict)
    _kinds: dict[str, StagePlugin] = PrivateAttr(default_factory=dict)

    def register(self, plugin: StagePlugin) -> None:
        """Register a plugin under its id and every stage kind it declares.

        Raises:
            ConfigurationError: Duplicate id, empty kind or kind already claimed
        """
        key = plugin.id.lower()
        if key in self._plugins:
            raise ConfigurationError(f"Plugin '{plugin.id}' is already registered.")

        kinds = [kind.strip() for kind in plugin.stage_kinds]
        for kind in kinds:
            if not kind:
                raise ConfigurationError(f"Plugin '{plugin.id}' declares an empty stage kind.")
            owner = self._kinds.get(kind.lower())
            if owner is not None:
                raise ConfigurationError(
                    f"Stage kind '{kind}' is already handled by plugin '{owner.id}'."
                )

        self._plugins[key] = plugin
        for kind in kinds:
            self._kinds[kind.lower()] = plugin

    def get(self, kind: str) -> StagePlugin:
        """Get the plugin handling a stage kind."""
        plugin = self._kinds.get(kind.lower())
        if plugin is None:
            raise ConfigurationError(
                f"Unknown stage kind: {kind}. Available: {self.list_kinds()}"
            )
        return plugin

    def has_kind(self, kind: str) -> bool:
        return kind.lower() in self._kinds

    def has_plugin(self, plugin_id: str) -> bool:
        return plugin_id.lower() in self._plugins

    def list_kinds(self) -> list[str]:
        """List registered stage kinds."""
        return [k for p in self._plugins.values() for k in p.stage_kinds]

    def list_plugins(self) -> list[str]:
        """List registered plugin ids."""
        return [p.id for p in self._plugins.values()]

    def capabilities_for(self, kind: str) -> StagePluginCapabilities:
        return self.get(kind).capabilities


@dataclass
class RegistryBuildResult:
    """
    Outcome of building a registry from configuration.

    Either a registry and no errors, or errors and no registry.

    Usage:
        result = StagePluginRegistryBuilder().build(config.plugins)
        if not result.is_success:
            for error in result.errors:
                print(error)
    """

    registry: StagePluginRegistry | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.registry is not None and not self.errors

    @classmethod
    def success(cls, registry: StagePluginRegistry) -> RegistryBuildResult:
        return cls(registry=registry)

    @classmethod
    def failure(cls, errors: list[str]) -> RegistryBuildResult:
        return cls(registry=None, errors=errors)

    def unwrap(self) -> StagePluginRegistry:
        """Return the registry or raise ConfigurationError with every error."""
        if self.registry is None or self.errors:
            raise ConfigurationError("; ".join(self.errors) or "Plugin registry was not built.")
        return self.registry


def builtin_plugin_factories() -> dict[str, PluginFactory]:
    """Factories of the built-in plugins keyed by plugin id."""
    from .executors_endpoint import HttpStagePlugin
    from .executors_workflow import WorkflowStagePlugin

    return {
        HttpStagePlugin.id: HttpStagePlugin,
        WorkflowStagePlugin.id: WorkflowStagePlugin,
    }


def find_entry_point_factory(
    plugin_id: str, group: str = ENTRY_POINT_GROUP
) -> PluginFactory | None:
    """Find an entry point named ``plugin_id`` (case-insensitive) in ``group``."""
    for entry_point in entry_points().select(group=group):
        if entry_point.name.lower() == plugin_id.lower():
            return entry_point.load()
    return None


class StagePluginRegistryBuilder:
    """
    Builds a StagePluginRegistry from an ordered list of plugin ids.

    Built-in ids resolve to built-in plugins; any other id is looked up in
    the factory table, then in the entry point group. Any error rejects the
    whole configuration (no registry is produced).
    """

    def __init__(
        self,
        factories: dict[str, PluginFactory] | None = None,
        entry_point_group: str | None = ENTRY_POINT_GROUP,
        required_ids: tuple[str, ...] = REQUIRED_PLUGIN_IDS,
    ) -> None:
        self._factories = {k.lower(): v for k, v in (factories or {}).items()}
        self._entry_point_group = entry_point_group
        self._required_ids = required_ids

    def build(self, plugin_ids: list[str] | None) -> RegistryBuildResult:
        errors: list[str] = []
        builtins = {k.lower(): v for k, v in builtin_plugin_factories().items()}
        registry = StagePluginRegistry()

        for required in self._required_ids:
            factory = builtins.get(required.lower())
            if factory is None:
                errors.append(f"Required plugin '{required}' is not available.")
                continue
            registry.register(factory())

        if not plugin_ids:
            errors.append("No plugins were configured in workflows.config.")
            return RegistryBuildResult.failure(errors)

        for raw_id in plugin_ids:
            plugin_id = (raw_id or "").strip()
            if not plugin_id:
                errors.append("Plugin id cannot be empty.")
                continue

            if plugin_id.lower() in builtins:
                if registry.has_plugin(plugin_id):
                    continue
                self._register(registry, builtins[plugin_id.lower()], plugin_id, errors)
                continue

            if registry.has_plugin(plugin_id):
                errors.append(f"Plugin '{plugin_id}' is already registered.")
                continue

            try:
                factory = self._find_external(plugin_id)
            except Exception as e:
                errors.append(f"Plugin '{plugin_id}' failed to load: {e}")
                continue
            if factory is None:
                errors.append(f"Plugin '{plugin_id}' was not found.")
                continue
            self._register(registry, factory, plugin_id, errors)

        required = {r.lower() for r in self._required_ids}
        if not errors and all(p.lower() in required for p in registry.list_plugins()):
            errors.append("No plugins were loaded besides the built-in workflow plugin.")

        if errors:
            for error in errors:
                logger.error(error)
            return RegistryBuildResult.failure(errors)

        logger.debug(f"Stage plugins loaded: {registry.list_plugins()}")
        return RegistryBuildResult.success(registry)

    def _find_external(self, plugin_id: str) -> PluginFactory | None:
        factory = self._factories.get(plugin_id.lower())
        if factory is None and self._entry_point_group:
            factory = find_entry_point_factory(plugin_id, self._entry_point_group)
        return factory

    @staticmethod
    def _register(
        registry: StagePluginRegistry,
        factory: PluginFactory,
        plugin_id: str,
        errors: list[str],
    ) -> None:
        try:
            plugin = factory()
        except Exception as e:
            errors.append(f"Plugin '{plugin_id}' failed to load: {e}")
            return
        if not isinstance(plugin, StagePlugin):
            errors.append(f"Plugin '{plugin_id}' failed to load: not a StagePlugin.")
            return
        try:
            registry.register(plugin)
        except ConfigurationError as e:
            errors.append(str(e))


def create_default_registry() -> StagePluginRegistry:
    """Create a StagePluginRegistry with the built-in plugins registered.

    Example:
        registry = create_default_registry()
        services = EngineServices(registry=registry, loader=WorkflowLoader())
    """
    return StagePluginRegistryBuilder(entry_point_group=None).build(
        list(builtin_plugin_factories())
    ).unwrap()


__all__ = [
    "ENTRY_POINT_GROUP",
    "PluginFactory",
    "REQUIRED_PLUGIN_IDS",
    "RegistryBuildResult",
    "StagePlugin",
    "StagePluginCapabilities",
    "StagePluginRegistry",
    "StagePluginRegistryBuilder",
    "StageValidationContext",
    "builtin_plugin_factories",
    "create_default_registry",
    "find_entry_point_factory",
]
