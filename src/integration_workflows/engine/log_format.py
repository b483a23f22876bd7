"""Stage transition log line formatting (tag and nesting indentation)."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .execution_context import ExecutionContext


def indent(level: int) -> str:
    return " " * max(level, 0)


def stage_tag(workflow_name: str, stage_name: str) -> str:
    """``[workflow]#stage``"""
    return f"[{workflow_name}]#{stage_name}"


def stage_line(context: ExecutionContext, stage_name: str, text: str) -> str:
    """Indented, tagged log line for a stage of the context's workflow."""
    return f"{indent(context.indent_level)}{stage_tag(context.workflow_name, stage_name)} {text}"


def workflow_line(context: ExecutionContext, text: str) -> str:
    return f"{indent(context.indent_level)}[{context.workflow_name}] {text}"


__all__ = ["indent", "stage_line", "stage_tag", "workflow_line"]
