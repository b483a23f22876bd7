"""Mock payloads for endpoint stages in mocked mode."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .http_invoker import ResponseContext
    from .schema import StageMockDefinition, WorkflowStageDefinition
    from .template_resolver import TemplateResolver

_QUOTED_TOKEN = re.compile(r'"\s*\{\{.+?\}\}\s*"')
_BARE_TOKEN = re.compile(r"\{\{.+?\}\}")


def sanitize_json_for_validation(text: str) -> str:
    """Replace template tokens with JSON-safe placeholders (static validation)."""
    sanitized = _QUOTED_TOKEN.sub('"__token__"', text)
    return _BARE_TOKEN.sub("0", sanitized)


def json_error(text: str) -> str | None:
    """Return the JSON parse error of ``text``, or None when it parses."""
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        return e.msg
    return None


class MockPayloadService:
    """
    Builds synthetic responses from a stage's ``mock`` block.

    ``payload`` (inline) and ``payloadFile`` (relative to the workflow file)
    are mutually exclusive. The payload is template-resolved and must be
    valid JSON. Status: ``mock.status``, else ``expectedStatus``, else 200.
    """

    def __init__(self, resolver: TemplateResolver) -> None:
        self._resolver = resolver

    def load_raw_payload(self, mock: StageMockDefinition, context: ExecutionContext) -> str | None:
        """
        Raises:
            ConfigurationError: Both payload sources, or a missing payload file
        """
        if mock.payload is not None and mock.payload_file is not None:
            raise ConfigurationError("mock.payload and mock.payloadFile are mutually exclusive.")
        if mock.payload is not None:
            return mock.payload
        if mock.payload_file:
            path = context.document.resolve_path(mock.payload_file)
            if not path.is_file():
                raise ConfigurationError(f"Mock payload file was not found: {path}")
            return path.read_text(encoding="utf-8")
        return None

    def build_response(
        self, stage: WorkflowStageDefinition, context: ExecutionContext
    ) -> ResponseContext:
        """
        Resolve the stage mock into a ResponseContext.

        Raises:
            ConfigurationError: Invalid payload source or payload is not valid JSON
        """
        from .http_invoker import ResponseContext

        mock = stage.mock
        if mock is None:
            raise ConfigurationError(f"Stage '{stage.name}' has no mock definition.")

        status = mock.status or stage.expected_status or 200
        raw = self.load_raw_payload(mock, context)
        if raw is None:
            return ResponseContext.from_text(status, "")

        body = self._resolver.resolve(raw, context)
        error = json_error(body)
        if error is not None:
            raise ConfigurationError(
                f"Stage '{stage.name}' mock payload is not valid JSON: {error}"
            )
        return ResponseContext.from_text(status, body)


__all__ = ["MockPayloadService", "json_error", "sanitize_json_for_validation"]
