#!/usr/bin/env python3
"""Generate workflow.schema.json from the Pydantic document models.

The schema is meant for editor completion of ``.workflow`` files. Stage
``kind`` is restricted to the kinds of the built-in stage plugins.

Usage:
    python generate_schema.py
"""

import json
from pathlib import Path
from typing import Any

from integration_workflows.engine.schema import WorkflowDefinition
from integration_workflows.engine.stage_plugin import create_default_registry


def generate_workflow_schema() -> dict[str, Any]:
    """Build the document schema using camelCase aliases."""
    schema = WorkflowDefinition.model_json_schema(by_alias=True)
    registry = create_default_registry()

    stage_schema = schema.get("$defs", {}).get("WorkflowStageDefinition")
    if stage_schema is not None:
        stage_schema["properties"]["kind"] = {
            "type": "string",
            "enum": registry.list_kinds(),
            "description": "Stage plugin kind",
        }
        stage_schema["required"] = ["name", "kind"]

    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    schema["title"] = "Integration workflow"
    schema["required"] = ["version", "id", "name", "stages"]
    return schema


def main() -> None:
    """Generate and save the schema file."""
    print("Generating workflow schema...")

    schema = generate_workflow_schema()

    schema_path = Path(__file__).parent / "workflow.schema.json"
    with open(schema_path, "w") as f:
        json.dump(schema, f, indent=2)
        f.write("\n")

    print(f"✓ Workflow schema: {schema_path}")
    print(f"  Definitions: {len(schema.get('$defs', {}))}")
    print(f"  Size: {schema_path.stat().st_size:,} bytes")


if __name__ == "__main__":
    main()
