"""Tests for the stage plugin registry and its builder."""

from __future__ import annotations

from typing import ClassVar

import pytest

from integration_workflows.engine.exceptions import ConfigurationError
from integration_workflows.engine.executors_endpoint import HttpStagePlugin
from integration_workflows.engine.executors_workflow import WorkflowStagePlugin
from integration_workflows.engine.stage_plugin import (
    StagePlugin,
    StagePluginCapabilities,
    StagePluginRegistry,
    StagePluginRegistryBuilder,
    create_default_registry,
)


class EchoStagePlugin(StagePlugin):
    """Test plugin that records a fixed output."""

    id: ClassVar[str] = "echo"
    stage_kinds: ClassVar[tuple[str, ...]] = ("Echo",)
    capabilities: ClassVar[StagePluginCapabilities] = StagePluginCapabilities()

    async def execute(self, stage, context):
        context.context[stage.name] = "echoed"
        return None

    def validate(self, stage, validation_context):
        return []


class ConflictingStagePlugin(StagePlugin):
    """Claims the Endpoint kind already owned by the http plugin."""

    id: ClassVar[str] = "rest"
    stage_kinds: ClassVar[tuple[str, ...]] = ("Endpoint",)

    async def execute(self, stage, context):
        return None

    def validate(self, stage, validation_context):
        return []


def broken_factory() -> StagePlugin:
    raise RuntimeError("missing credentials")


class TestStagePluginRegistry:
    """Tests for registry lookups."""

    def test_default_registry(self) -> None:
        registry = create_default_registry()
        assert registry.list_plugins() == ["workflow", "http"]
        assert set(registry.list_kinds()) == {"Workflow", "Endpoint", "Http"}

    def test_kind_lookup_is_case_insensitive(self) -> None:
        registry = create_default_registry()
        assert isinstance(registry.get("endpoint"), HttpStagePlugin)
        assert isinstance(registry.get("HTTP"), HttpStagePlugin)
        assert isinstance(registry.get("workflow"), WorkflowStagePlugin)

    def test_unknown_kind(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown stage kind: Soap"):
            create_default_registry().get("Soap")

    def test_duplicate_kind_rejected(self) -> None:
        registry = StagePluginRegistry()
        registry.register(HttpStagePlugin())
        with pytest.raises(ConfigurationError, match="already handled by plugin 'http'"):
            registry.register(ConflictingStagePlugin())
        assert not registry.has_plugin("rest")

    def test_capabilities(self) -> None:
        registry = create_default_registry()
        assert registry.capabilities_for("Endpoint").allows_response_tokens
        assert registry.capabilities_for("Workflow").continue_on_error
        assert registry.capabilities_for("Workflow").output_kind == "workflow"


class TestStagePluginRegistryBuilder:
    """Tests for building a registry from workflows.config plugin ids."""

    def test_builtins(self) -> None:
        result = StagePluginRegistryBuilder(entry_point_group=None).build(["http", "workflow"])
        assert result.is_success
        assert result.unwrap().has_kind("Endpoint")

    def test_factory_plugin(self) -> None:
        builder = StagePluginRegistryBuilder(factories={"echo": EchoStagePlugin})
        result = builder.build(["echo"])
        assert result.is_success
        assert result.registry.list_plugins() == ["workflow", "echo"]

    def test_conflicting_kind_rejects_whole_configuration(self) -> None:
        """A second plugin claiming a kind fails the build and yields no registry."""
        builder = StagePluginRegistryBuilder(
            factories={"rest": ConflictingStagePlugin}, entry_point_group=None
        )
        result = builder.build(["http", "rest"])
        assert not result.is_success
        assert result.registry is None
        assert result.errors == ["Stage kind 'Endpoint' is already handled by plugin 'http'."]

    def test_unknown_plugin(self) -> None:
        result = StagePluginRegistryBuilder(entry_point_group=None).build(["http", "soap"])
        assert result.errors == ["Plugin 'soap' was not found."]
        with pytest.raises(ConfigurationError, match="soap"):
            result.unwrap()

    def test_only_workflow_plugin(self) -> None:
        result = StagePluginRegistryBuilder(entry_point_group=None).build(["workflow"])
        assert result.errors == ["No plugins were loaded besides the built-in workflow plugin."]

    def test_empty_configuration(self) -> None:
        result = StagePluginRegistryBuilder(entry_point_group=None).build([])
        assert result.errors == ["No plugins were configured in workflows.config."]

    def test_failing_factory(self) -> None:
        builder = StagePluginRegistryBuilder(
            factories={"broken": broken_factory}, entry_point_group=None
        )
        result = builder.build(["http", "broken"])
        assert result.errors == ["Plugin 'broken' failed to load: missing credentials"]

    def test_duplicate_external_id(self) -> None:
        builder = StagePluginRegistryBuilder(
            factories={"echo": EchoStagePlugin}, entry_point_group=None
        )
        result = builder.build(["echo", "echo"])
        assert result.errors == ["Plugin 'echo' is already registered."]


class TestCustomPluginExecution:
    """A registered custom kind runs through the workflow runner."""

    @pytest.mark.asyncio
    async def test_custom_kind_runs(self, make_context, make_services) -> None:
        from integration_workflows.engine.workflow_runner import WorkflowRunner

        registry = StagePluginRegistryBuilder(factories={"echo": EchoStagePlugin}).build(
            ["echo"]
        ).unwrap()
        services = make_services(registry=registry)
        ctx = make_context(
            {
                "stages": [{"name": "say", "kind": "Echo", "context": {"seen": "{{context.say}}"}}],
                "endStage": {"output": {"said": "{{context.seen}}"}},
            },
            services=services,
        )

        result = await WorkflowRunner().execute(ctx)

        assert result.status.is_ok()
        assert result.outputs == {"said": "echoed"}
