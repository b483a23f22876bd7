"""Shared test configuration for integration-workflows tests.

Provides:
- Workflow file writer (YAML text into tmp_path)
- Fake clock and recording sleep for deterministic resilience tests
- EngineServices builder pointing API references at the local HTTP server
- ExecutionContext builder for resolver and plugin unit tests
"""

from __future__ import annotations

import textwrap
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from pytest_httpserver import HTTPServer

from integration_workflows.engine.api_catalog import ApiBaseUrlResolver
from integration_workflows.engine.execution_context import (
    EngineServices,
    ExecutionContext,
    RunOptions,
)
from integration_workflows.engine.loader import WorkflowDocument, WorkflowLoader
from integration_workflows.engine.schema import ApiCatalogVersion, WorkflowDefinition
from integration_workflows.engine.stage_plugin import create_default_registry


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 14, 9, 26, 53, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += timedelta(milliseconds=milliseconds)


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def write_workflow(tmp_path: Path) -> Callable[[str, str], Path]:
    """
    Write a workflow (or any sidecar file) into tmp_path.

    Usage:
        path = write_workflow("main.workflow", '''
            version: "1.0"
            ...
        ''')
    """

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
        return path

    return _write


def make_catalog(base_url: str, environment: str = "dev") -> list[ApiCatalogVersion]:
    """Single-version catalog with an ``accounts`` definition at ``base_url``."""
    return [
        ApiCatalogVersion.model_validate(
            {
                "version": "1.0",
                "baseUrl": {environment: base_url},
                "definitions": [{"name": "accounts"}],
            }
        )
    ]


@pytest.fixture
def make_services(
    fake_clock: FakeClock, recording_sleep: RecordingSleep
) -> Callable[..., EngineServices]:
    """
    Build EngineServices with the built-in plugins.

    Usage:
        services = make_services(httpserver.url_for("/"))
        services = make_services()  # no API catalog (mocked runs)
    """

    def _make(base_url: str | None = None, **overrides: Any) -> EngineServices:
        resolver = ApiBaseUrlResolver(make_catalog(base_url.rstrip("/"))) if base_url else None
        services = EngineServices(
            registry=create_default_registry(),
            loader=WorkflowLoader(),
            base_url_resolver=resolver,
            clock=fake_clock,
            sleep=recording_sleep,
        )
        for name, value in overrides.items():
            setattr(services, name, value)
        return services

    return _make


@pytest.fixture
def make_context(
    tmp_path: Path, make_services: Callable[..., EngineServices]
) -> Callable[..., ExecutionContext]:
    """
    Build an ExecutionContext around an in-memory workflow definition.

    Usage:
        ctx = make_context({"name": "wf", "stages": [...]}, inputs={"email": "a@b.c"})
    """

    def _make(
        definition: dict[str, Any] | None = None,
        inputs: dict[str, str] | None = None,
        environment: dict[str, str] | None = None,
        services: EngineServices | None = None,
        **options: Any,
    ) -> ExecutionContext:
        data = {"version": "1.0", "id": "wf", "name": "wf", **(definition or {})}
        document = WorkflowDocument(
            WorkflowDefinition.model_validate(data),
            tmp_path / "wf.workflow",
            dict(environment or {}),
        )
        return ExecutionContext(
            document=document,
            options=RunOptions(environment=options.pop("env", "dev"), **options),
            services=services or make_services(),
            inputs=dict(inputs or {}),
        )

    return _make


@pytest.fixture
def accounts_api(httpserver: HTTPServer) -> str:
    """Base URL of the local HTTP server (the ``accounts`` API in the test catalog)."""
    return httpserver.url_for("/").rstrip("/")
