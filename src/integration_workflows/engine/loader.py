"""
Workflow document loader.

Features:
- Load workflows from YAML files or strings into WorkflowDefinition
- Read the document's environment file (``references.environmentFile``)
- Merge parent-provided environment values over the file's values
- Return a WorkflowDocument (definition + absolute path + environment)

Environment file format (KEY=VALUE per line):
    # comment
    export API_TOKEN="abc"
    TENANT=acme
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from .load_result import LoadResult
from .schema import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass
class WorkflowDocument:
    """
    A loaded workflow.

    Attributes:
        definition: Parsed workflow definition
        file_path: Absolute path of the workflow file
        environment_variables: Env file values overlaid with parent values
    """

    definition: WorkflowDefinition
    file_path: Path
    environment_variables: dict[str, str] = field(default_factory=dict)

    @property
    def base_directory(self) -> Path:
        return self.file_path.parent

    def resolve_path(self, relative: str) -> Path:
        """Resolve a path relative to the workflow's directory."""
        path = Path(relative).expanduser()
        if path.is_absolute():
            return path
        return (self.base_directory / path).resolve()


def unquote(value: str) -> str:
    """Strip one pair of matching single or double quotes."""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_key_value_lines(
    content: str,
    separator: str = "=",
    allow_export_prefix: bool = True,
    source: str = "<string>",
) -> LoadResult[dict[str, str]]:
    """
    Parse ``KEY<sep>VALUE`` lines.

    Blank lines and ``#`` comments are skipped, an ``export`` prefix is
    accepted, values are unquoted. Later keys override earlier ones.
    """
    values: dict[str, str] = {}
    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if allow_export_prefix and line.lower().startswith("export "):
            line = line[7:].lstrip()

        key, sep, value = line.partition(separator)
        if not sep or not key.strip():
            return LoadResult.failure(
                f"Invalid env file entry at line {line_number}.", metadata={"source": source}
            )
        values[key.strip()] = unquote(value.strip())
    return LoadResult.success(values, metadata={"source": source})


def load_environment_file(file_path: str | Path) -> LoadResult[dict[str, str]]:
    """Load a KEY=VALUE environment file."""
    path = Path(file_path)
    if not path.is_file():
        return LoadResult.failure(f"Environment file was not found: {file_path}")
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read environment file '{file_path}': {e}")
    result = parse_key_value_lines(content, source=str(path))
    if not result.is_success:
        return LoadResult.failure(f"{result.error} ({path})")
    return result


def load_workflow_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[WorkflowDefinition]:
    """
    Load and validate a workflow from a YAML string.

    Returns:
        LoadResult.success(WorkflowDefinition) if valid
        LoadResult.failure(error_message) otherwise

    Example:
        yaml_str = '''
        version: "1.0"
        id: ping
        name: ping
        stages:
          - name: ping
            kind: Endpoint
            apiRef: status
            endpoint: /ping
            httpVerb: GET
            expectedStatus: 200
        '''
        result = load_workflow_from_yaml(yaml_str)
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Workflow {source} must be a YAML dictionary, got {type(data).__name__}"
        )

    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        return LoadResult.failure(f"Workflow validation failed in {source}:\n{e}")

    return LoadResult.success(definition)


def load_workflow_from_file(file_path: str | Path) -> LoadResult[WorkflowDefinition]:
    """Load and validate a workflow from a YAML file."""
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        yaml_content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    return load_workflow_from_yaml(yaml_content, source=str(file_path))


class WorkflowLoader:
    """
    Loads workflow documents with their merged environment.

    Usage:
        loader = WorkflowLoader()
        document = loader.load("workflows/onboarding.workflow")
        child = loader.load(document.resolve_path("child.workflow"), document.environment_variables)
    """

    def load(
        self,
        file_path: str | Path,
        parent_environment: dict[str, str] | None = None,
        environment_file_override: str | Path | None = None,
    ) -> WorkflowDocument:
        """
        Load a workflow document.

        Args:
            file_path: Workflow file
            parent_environment: Values overriding the document's env file
            environment_file_override: Env file used instead of the document's
                (relative to the current directory)

        Raises:
            ConfigurationError: Missing or invalid workflow or environment file
        """
        path = Path(file_path).expanduser().resolve()
        definition = load_workflow_from_file(path).unwrap()

        variables: dict[str, str] = {}
        env_file: Path | None = None
        if environment_file_override:
            env_file = Path(environment_file_override).expanduser().resolve()
        elif definition.references and definition.references.environment_file:
            env_file = Path(definition.references.environment_file).expanduser()
            if not env_file.is_absolute():
                env_file = (path.parent / env_file).resolve()

        if env_file is not None:
            variables.update(load_environment_file(env_file).unwrap())
            logger.debug(f"Loaded {len(variables)} environment value(s) from {env_file}")

        if parent_environment:
            variables.update(parent_environment)

        return WorkflowDocument(definition, path, variables)


__all__ = [
    "WorkflowDocument",
    "WorkflowLoader",
    "load_environment_file",
    "load_workflow_from_file",
    "load_workflow_from_yaml",
    "parse_key_value_lines",
    "unquote",
]
