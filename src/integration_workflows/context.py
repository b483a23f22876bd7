"""Application context shared by the CLI and embedding hosts.

Wires the engine collaborators for one workflow tree: plugin registry
(from ``workflows.config``), loader, API catalog resolver, HTTP invoker,
output writer. Separated from the CLI so hosts can run workflows without
argparse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .engine.api_catalog import ApiBaseUrlResolver, ApiCatalogReader
from .engine.config import WorkflowConfigLoader, get_max_recursion_depth
from .engine.exceptions import WorkflowValidationError
from .engine.execution_context import Clock, EngineServices, RunOptions, Sleeper, utc_now
from .engine.http_invoker import HttpEndpointInvoker
from .engine.loader import WorkflowDocument, WorkflowLoader
from .engine.output_writer import WorkflowOutputWriter
from .engine.stage_plugin import PluginFactory, StagePluginRegistry, StagePluginRegistryBuilder
from .engine.validation import WorkflowValidator
from .engine.vars_file import VarsFileLoader
from .engine.workflow_runner import WorkflowRunner, WorkflowRunResult

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application context containing the shared collaborators of a workflow run.

    Usage:
        app = AppContext.create("workflows/onboarding.workflow", catalog_path="catalog.json")
        document = app.load("workflows/onboarding.workflow")
        app.validate(document)
        result = await app.run(document, {"email": "a@b.c"}, RunOptions(environment="dev"))
    """

    registry: StagePluginRegistry
    loader: WorkflowLoader = field(default_factory=WorkflowLoader)
    base_url_resolver: ApiBaseUrlResolver | None = None
    invoker: HttpEndpointInvoker | None = None
    output_writer: WorkflowOutputWriter | None = field(default_factory=WorkflowOutputWriter)
    max_recursion_depth: int = field(default_factory=get_max_recursion_depth)
    clock: Clock = utc_now
    sleep: Sleeper | None = None

    @classmethod
    def create(
        cls,
        workflow_path: str | Path,
        catalog_path: str | Path | None = None,
        config_path: str | Path | None = None,
        plugin_factories: dict[str, PluginFactory] | None = None,
    ) -> AppContext:
        """Build the registry from configuration and read the API catalog.

        Raises:
            ConfigurationError: Invalid config, plugin set or catalog
        """
        config = WorkflowConfigLoader(config_path).load(workflow_path)
        builder = StagePluginRegistryBuilder(factories=plugin_factories)
        registry = builder.build(config.plugins).unwrap()
        logger.debug(f"Stage plugins: {registry.list_plugins()}")

        resolver = None
        if catalog_path is not None:
            resolver = ApiBaseUrlResolver(ApiCatalogReader().load(catalog_path))
        return cls(registry=registry, base_url_resolver=resolver)

    def create_services(self) -> EngineServices:
        """Create the EngineServices handed to every ExecutionContext of a run."""
        services = EngineServices(
            registry=self.registry,
            loader=self.loader,
            invoker=self.invoker,
            base_url_resolver=self.base_url_resolver,
            output_writer=self.output_writer,
            clock=self.clock,
        )
        if self.sleep is not None:
            services.sleep = self.sleep
        return services

    def load(
        self, workflow_path: str | Path, environment_file: str | Path | None = None
    ) -> WorkflowDocument:
        return self.loader.load(workflow_path, environment_file_override=environment_file)

    def validate(self, document: WorkflowDocument) -> None:
        """Validate a document tree.

        Raises:
            WorkflowValidationError: With every collected error
        """
        errors = WorkflowValidator(self.registry, self.loader).validate_tree(document)
        if errors:
            raise WorkflowValidationError(document.definition.name, errors)

    def load_vars_file(
        self, vars_path: str | Path, options: RunOptions, document: WorkflowDocument
    ) -> dict[str, str]:
        """Load root inputs from a vars file; suppresses child sidecar files."""
        resolution = VarsFileLoader().load_with_details(
            vars_path, options.environment, document.definition.version
        )
        options.vars_override_active = True
        logger.info(f"Vars file: {vars_path}")
        for key in sorted(resolution.sources, key=str.lower):
            logger.debug(f"  {key}: {resolution.sources[key].scope}")
        return dict(resolution.values)

    async def run(
        self,
        document: WorkflowDocument,
        inputs: dict[str, str] | None,
        options: RunOptions,
    ) -> WorkflowRunResult:
        return await WorkflowRunner().run(
            document,
            inputs,
            options,
            self.create_services(),
            max_recursion_depth=self.max_recursion_depth,
        )


__all__ = ["AppContext"]
