"""
End-stage output writer.

Workflows declaring ``output: true`` persist their end-stage outputs to

    <workflow dir>/output/<name-with-dashes>.<id>.<ulid>.workflow.output

as indented JSON. With ``endStage.outputJson`` (default true), values that
look like JSON objects or arrays are embedded as parsed JSON instead of
strings.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import ulid

if TYPE_CHECKING:
    from .loader import WorkflowDocument

logger = logging.getLogger(__name__)

OUTPUT_DIRECTORY = "output"
OUTPUT_SUFFIX = ".workflow.output"


def parse_output_value(value: str) -> Any:
    """Parse JSON-looking values, leaving anything else as the raw string."""
    stripped = value.strip()
    if not stripped or stripped[0] not in "[{":
        return value
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return value


def output_file_name(name: str, workflow_id: str) -> str:
    safe_name = "-".join(name.split()) or "workflow"
    return f"{safe_name}.{workflow_id or 'workflow'}.{ulid.new()}{OUTPUT_SUFFIX}"


class WorkflowOutputWriter:
    """Writes end-stage outputs of workflows that opted in with ``output: true``."""

    def __init__(self, output_directory: str | Path | None = None) -> None:
        self._output_directory = Path(output_directory) if output_directory else None

    def write(self, document: WorkflowDocument, outputs: dict[str, str]) -> Path | None:
        """
        Write the outputs file.

        Returns:
            Written file path, or None when the workflow does not write outputs

        Raises:
            OSError: The output directory or file cannot be written
        """
        definition = document.definition
        if not definition.output:
            return None

        end_stage = definition.end_stage
        parse_json = end_stage.output_json if end_stage else True
        payload = {
            key: parse_output_value(value) if parse_json else value
            for key, value in outputs.items()
        }

        directory = self._output_directory or document.base_directory / OUTPUT_DIRECTORY
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / output_file_name(definition.name, definition.id)
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(f"Workflow output written to {path}")
        return path


__all__ = ["WorkflowOutputWriter", "output_file_name", "parse_output_value"]
