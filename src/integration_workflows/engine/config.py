"""
Engine configuration.

Two sources:
- Environment variables for process-wide limits (recursion depth, HTTP timeout)
- ``workflows.config`` YAML file selecting the stage plugins to load

Config file location priority:
1. Explicit path passed to WorkflowConfigLoader
2. INTEGRATION_WORKFLOWS_CONFIG environment variable
3. ``workflows.config`` next to the root workflow file
4. ``workflows.config`` in the current working directory

Example workflows.config:
    plugins:
      - http
      - workflow
      - graphql   # external plugin (factory table or entry point)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "workflows.config"
DEFAULT_PLUGINS = ["http", "workflow"]


def _read_int_env(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
        return max(low, min(high, value))
    except ValueError:
        return default


def get_max_recursion_depth() -> int:
    """Get maximum nested workflow depth from environment.

    Reads INTEGRATION_WORKFLOWS_MAX_RECURSION_DEPTH environment variable.
    Default: 50, Valid range: 1-10000 (clamped automatically)

    Returns:
        Maximum recursion depth (1-10000)
    """
    return _read_int_env("INTEGRATION_WORKFLOWS_MAX_RECURSION_DEPTH", 50, 1, 10000)


def get_http_timeout() -> float:
    """Get HTTP request timeout in seconds from environment.

    Reads INTEGRATION_WORKFLOWS_HTTP_TIMEOUT environment variable.
    Default: 100, Valid range: 1-3600 (clamped automatically)
    """
    return float(_read_int_env("INTEGRATION_WORKFLOWS_HTTP_TIMEOUT", 100, 1, 3600))


class WorkflowsConfig(BaseModel):
    """Schema of the ``workflows.config`` file."""

    plugins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PLUGINS),
        description="Stage plugin ids to load, in registration order",
    )
    config_path: Path | None = Field(default=None, exclude=True)

    model_config = {"extra": "ignore"}


class WorkflowConfigLoader:
    """Loader for ``workflows.config`` with pydantic validation.

    Usage:
        loader = WorkflowConfigLoader()
        config = loader.load(workflow_path)
        registry = StagePluginRegistryBuilder().build(config.plugins)
    """

    def __init__(self, config_path: str | Path | None = None):
        self._explicit_path = Path(config_path) if config_path else None

    def get_config_path(self, workflow_path: str | Path | None = None) -> Path | None:
        """Determine config file path using priority order.

        Returns:
            Path to config file, or None if no file exists
        """
        # Priority 1: Explicit path
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            raise ConfigurationError(f"Config file does not exist: {self._explicit_path}")

        # Priority 2: Environment variable
        env_path_str = os.getenv("INTEGRATION_WORKFLOWS_CONFIG")
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"INTEGRATION_WORKFLOWS_CONFIG path does not exist: {env_path}")
            return None

        # Priority 3: Next to the workflow
        if workflow_path is not None:
            candidate = Path(workflow_path).resolve().parent / CONFIG_FILE_NAME
            if candidate.exists():
                return candidate

        # Priority 4: Working directory
        cwd_candidate = Path.cwd() / CONFIG_FILE_NAME
        if cwd_candidate.exists():
            return cwd_candidate

        return None

    def load(self, workflow_path: str | Path | None = None) -> WorkflowsConfig:
        """Load and validate the plugin configuration.

        Returns:
            WorkflowsConfig (default plugin list when no file exists)

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        config_path = self.get_config_path(workflow_path)
        if config_path is None:
            logger.debug(f"No {CONFIG_FILE_NAME} found; using default plugins {DEFAULT_PLUGINS}")
            return WorkflowsConfig()

        logger.info(f"Loading workflow config from: {config_path}")
        try:
            with open(config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if raw_config is None:
            return WorkflowsConfig(config_path=config_path)
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Config file must contain a YAML dictionary: {config_path}")

        try:
            config = WorkflowsConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

        config.config_path = config_path
        return config


__all__ = [
    "CONFIG_FILE_NAME",
    "DEFAULT_PLUGINS",
    "WorkflowConfigLoader",
    "WorkflowsConfig",
    "get_http_timeout",
    "get_max_recursion_depth",
]
