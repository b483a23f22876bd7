"""
Workflow variables files (``.wfvars``).

A vars file supplies input values for a workflow. Sections select values
per environment and API version; unsectioned and ``global`` values apply
everywhere:

    tenant: acme
    global:
    region: eu
    dev:
    apiKey: dev-key
    version: 3.10
    apiKey: dev-key-310
    version:
    prod:
    apiKey: prod-key

A bare ``key:`` line opens a section (``global`` or an environment name).
Inside an environment, ``version: X`` opens a version subsection and a
bare ``version:`` closes it. Resolution order: global → environment →
environment/version, later values overriding earlier ones.

A child workflow ``orders.workflow`` picks up ``orders.wfvars`` next to it
when its stage passes no explicit inputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError
from .loader import unquote

logger = logging.getLogger(__name__)

VARS_FILE_SUFFIX = ".wfvars"
GLOBAL_SECTION = "global"


@dataclass(frozen=True)
class VarsFileSource:
    """Where a resolved value came from."""

    scope: str
    environment: str | None = None
    version: str | None = None


@dataclass
class VarsFileResolution:
    values: dict[str, str] = field(default_factory=dict)
    sources: dict[str, VarsFileSource] = field(default_factory=dict)


@dataclass
class VarsFileContent:
    """Parsed sections of a vars file (keys compared case-insensitively)."""

    global_values: dict[str, str] = field(default_factory=dict)
    environment_values: dict[str, dict[str, str]] = field(default_factory=dict)
    version_values: dict[str, dict[str, dict[str, str]]] = field(default_factory=dict)
    environments: set[str] = field(default_factory=set)

    def target(self, environment: str | None, version: str | None) -> dict[str, str]:
        if environment is None or environment.lower() == GLOBAL_SECTION:
            return self.global_values
        env_key = environment.lower()
        self.environments.add(env_key)
        if version:
            versions = self.version_values.setdefault(env_key, {})
            return versions.setdefault(version.lower(), {})
        return self.environment_values.setdefault(env_key, {})

    def resolve(self, environment: str | None, version: str | None = None) -> VarsFileResolution:
        """
        Merge sections for an environment and version.

        Raises:
            ConfigurationError: The environment is not defined, other environments
                are, and there are no global values to fall back on
        """
        resolution = VarsFileResolution()
        for key, value in self.global_values.items():
            resolution.values[key] = value
            resolution.sources[key] = VarsFileSource(GLOBAL_SECTION)

        if not environment:
            return resolution

        env_key = environment.lower()
        if env_key not in self.environments:
            if self.environments and not self.global_values:
                raise ConfigurationError(
                    f"Vars file does not define environment '{environment}' "
                    f"and has no global variables."
                )
            return resolution

        for key, value in self.environment_values.get(env_key, {}).items():
            resolution.values[key] = value
            resolution.sources[key] = VarsFileSource("environment", environment)

        if version:
            versions = self.version_values.get(env_key, {})
            for key, value in versions.get(version.lower(), {}).items():
                resolution.values[key] = value
                resolution.sources[key] = VarsFileSource("version", environment, version)

        return resolution


def parse_vars_file(content: str) -> VarsFileContent:
    """
    Parse vars file text.

    Raises:
        ConfigurationError: A line has no ``:`` or an empty key
    """
    parsed = VarsFileContent()
    environment: str | None = None
    version: str | None = None

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        key, sep, value = line.partition(":")
        key, value = key.strip(), value.strip()
        if not sep or not key:
            raise ConfigurationError(f"Invalid vars file entry at line {line_number}.")

        in_environment = environment is not None and environment.lower() != GLOBAL_SECTION
        if not value:
            if in_environment and key.lower() == "version":
                version = None
                continue
            environment = key
            version = None
            if key.lower() != GLOBAL_SECTION:
                parsed.environments.add(key.lower())
            continue

        if in_environment and key.lower() == "version":
            version = unquote(value)
            continue

        parsed.target(environment, version)[key] = unquote(value)

    return parsed


class VarsFileLoader:
    """
    Loads and resolves vars files.

    Usage:
        resolution = VarsFileLoader().load_with_details("orders.wfvars", "dev", "3.10")
        inputs = resolution.values
    """

    def load(
        self, file_path: str | Path, environment: str | None = None, version: str | None = None
    ) -> dict[str, str]:
        return self.load_with_details(file_path, environment, version).values

    def load_with_details(
        self, file_path: str | Path, environment: str | None = None, version: str | None = None
    ) -> VarsFileResolution:
        """
        Raises:
            ConfigurationError: Missing file, malformed line or undefined environment
        """
        path = Path(file_path)
        if not path.is_file():
            raise ConfigurationError(f"Vars file was not found: {file_path}")
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Failed to read vars file '{file_path}': {e}") from e
        return parse_vars_file(content).resolve(environment, version)


def sidecar_vars_path(workflow_path: Path) -> Path:
    """``<dir>/<stem>.wfvars`` for a workflow file."""
    return workflow_path.with_suffix(VARS_FILE_SUFFIX)


__all__ = [
    "GLOBAL_SECTION",
    "VARS_FILE_SUFFIX",
    "VarsFileContent",
    "VarsFileLoader",
    "VarsFileResolution",
    "VarsFileSource",
    "parse_vars_file",
    "sidecar_vars_path",
]
