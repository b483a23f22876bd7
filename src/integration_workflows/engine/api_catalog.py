"""API catalog reader and base URL resolution.

The catalog is a JSON list of versions:

    [
      {
        "version": "3.10",
        "baseUrl": {"dev": "https://dev.example.com", "prod": "https://api.example.com"},
        "definitions": [
          {"name": "accounts", "swaggerUrl": "/swagger/accounts.json", "basePath": "/accounts"},
          {"name": "billing", "swaggerUrl": "...", "baseUrl": {"dev": "https://billing.dev"}}
        ]
      }
    ]

A workflow's ``references.apis`` maps a stage ``apiRef`` alias to a catalog
definition name. The base URL is the definition's URL for the environment,
else the version's, joined with the definition's ``basePath``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from .exceptions import ConfigurationError
from .execution_context import lookup_ci
from .schema import ApiCatalogVersion, ApiDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)

_CATALOG_ADAPTER = TypeAdapter(list[ApiCatalogVersion])


class ApiCatalogReader:
    """Reads the API catalog JSON file."""

    def load(self, catalog_path: str | Path) -> list[ApiCatalogVersion]:
        """
        Raises:
            ConfigurationError: Missing, empty or invalid catalog
        """
        path = Path(catalog_path)
        if not path.is_file():
            raise ConfigurationError(f"Catalog file was not found: {catalog_path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            catalog = _CATALOG_ADAPTER.validate_python(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise ConfigurationError(f"Catalog file is invalid: {catalog_path}: {e}") from e
        if not catalog:
            raise ConfigurationError(f"Catalog file is empty: {catalog_path}")
        return catalog


def combine_base_url(base_url: str, base_path: str | None) -> str:
    if not base_path or not base_path.strip():
        return base_url
    return f"{base_url.rstrip('/')}/{base_path.strip('/')}"


def resolve_definition_base_url(
    catalog_version: ApiCatalogVersion, definition: ApiDefinition, environment: str
) -> str | None:
    """Definition-level URL for the environment, falling back to the version's."""
    if definition.base_url:
        url = lookup_ci(definition.base_url, environment)
        if url is not None:
            return url
    return lookup_ci(catalog_version.base_url, environment)


class ApiBaseUrlResolver:
    """
    Resolves ``apiRef`` aliases to base URLs.

    Usage:
        resolver = ApiBaseUrlResolver(ApiCatalogReader().load("catalog.json"))
        base = resolver.resolve(definition, "accounts", "3.10", "dev")
    """

    def __init__(self, catalog: list[ApiCatalogVersion]) -> None:
        self._catalog = catalog

    def get_version(self, version: str | None) -> ApiCatalogVersion:
        """
        Find a catalog version; without a version the catalog must have exactly one.

        Raises:
            ConfigurationError: Unknown or ambiguous version
        """
        if version is None:
            if len(self._catalog) == 1:
                return self._catalog[0]
            raise ConfigurationError(
                f"Catalog version is required. Available: {[v.version for v in self._catalog]}"
            )
        for candidate in self._catalog:
            if candidate.version.lower() == version.lower():
                return candidate
        raise ConfigurationError(
            f"Catalog version '{version}' was not found. "
            f"Available: {[v.version for v in self._catalog]}"
        )

    def resolve(
        self,
        definition: WorkflowDefinition,
        api_ref: str,
        version: str | None,
        environment: str,
    ) -> str:
        """
        Resolve one ``apiRef`` of a workflow.

        Raises:
            ConfigurationError: Undeclared apiRef, unknown definition or environment
        """
        reference = definition.find_api_reference(api_ref)
        if reference is None:
            raise ConfigurationError(
                f"API reference '{api_ref}' is not declared in references.apis "
                f"of workflow '{definition.name}'."
            )
        return self._resolve_reference(reference.definition, version, environment)

    def _resolve_reference(
        self, definition_name: str, version: str | None, environment: str
    ) -> str:
        catalog_version = self.get_version(version)
        api_definition = next(
            (d for d in catalog_version.definitions if d.name.lower() == definition_name.lower()),
            None,
        )
        if api_definition is None:
            raise ConfigurationError(
                f"API definition '{definition_name}' was not found in catalog version "
                f"'{catalog_version.version}'."
            )
        base_url = resolve_definition_base_url(catalog_version, api_definition, environment)
        if base_url is None:
            raise ConfigurationError(
                f"Environment '{environment}' was not found for API definition "
                f"'{api_definition.name}' in catalog version '{catalog_version.version}'."
            )
        return combine_base_url(base_url, api_definition.base_path)


__all__ = [
    "ApiBaseUrlResolver",
    "ApiCatalogReader",
    "combine_base_url",
    "resolve_definition_base_url",
]
