"""
Template token resolution for workflow strings.

Tokens have the form ``{{ <root> <sep> <path> }}`` where ``<sep>`` is ``.`` or
``:`` (both accepted everywhere, e.g. ``{{global:appId}}`` == ``{{global.appId}}``).

Roots:
    input.<name>                       Declared workflow inputs
    global.<name>                      Init-stage variables
    context.<name>                     Mutable context map ("" when absent)
    env.<NAME>                         Document env map, then process environment
    stage.<name>.output.<key>          Captured stage outputs (``stages`` alias)
    stage.<name>.workflow.output.<key> Nested workflow end-stage outputs
    stage.<name>.workflow.result.status|message
    endpoint.<name>.output.<key>       Endpoint outputs only
    workflow.<name>.output.<key>       Nested workflow outputs only
    response.status|body|headers.<Name>|<json.path>
    system.datetime|date|time.now|utcnow, system.guid, system.ulid

Projection:
    stage:json(<name>.output.<key>).field.items[0].id
parses the captured output as JSON and walks the remaining path.

Scalars render as: strings raw, numbers as JSON text, booleans
``true``/``false``, null as an empty string, objects/arrays as compact JSON.
"""

from __future__ import annotations

import json
import os
import re
import uuid
from typing import TYPE_CHECKING, Any

import ulid

from .exceptions import TemplateResolutionError
from .execution_context import Clock, lookup_ci, utc_now

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .http_invoker import ResponseContext

TOKEN_PATTERN = re.compile(r"\{\{\s*(.+?)\s*\}\}")
JSON_PROJECTION_PATTERN = re.compile(
    r"^(?:(?:stage|stages)\s*[:.]\s*)?json\(\s*(?P<inner>[^()]+?)\s*\)(?P<rest>.*)$",
    re.IGNORECASE,
)
_INDEX_PATTERN = re.compile(r"^(?P<name>[^\[\]]*)(?P<indices>(?:\[\d+\])*)$")

ROOTS = frozenset(
    {
        "input",
        "global",
        "context",
        "env",
        "stage",
        "stages",
        "endpoint",
        "workflow",
        "response",
        "system",
    }
)

_MISSING = object()


class MissingValueError(TemplateResolutionError):
    """Token is well-formed but its value does not exist (yet)."""


def split_token(token: str) -> list[str]:
    """Split a token on ``.`` and ``:``, dropping empty segments."""
    return [s.strip() for s in token.replace(":", ".").split(".") if s.strip()]


def extract_tokens(template: str | None) -> list[str]:
    """Return the body of every ``{{...}}`` token in order of appearance."""
    if not template:
        return []
    return [m.group(1) for m in TOKEN_PATTERN.finditer(template)]


def token_root(token: str) -> str:
    """Lower-cased root of a token (``stage`` for json projections)."""
    if JSON_PROJECTION_PATTERN.match(token):
        return "stage"
    segments = split_token(token)
    return segments[0].lower() if segments else ""


def render_value(value: Any) -> str:
    """Render a JSON value the way templates embed it."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def walk_json(document: Any, path: list[str]) -> Any:
    """
    Walk a dotted path into a parsed JSON document.

    Segments select object properties (exact match first, then ignoring
    case) or list items by numeric segment; ``name[0][1]`` is also accepted.

    Returns:
        The value found, or the module-level missing sentinel
    """
    current = document
    for segment in path:
        match = _INDEX_PATTERN.match(segment)
        if not match:
            return _MISSING
        name = match.group("name")
        if name:
            current = _select(current, name)
            if current is _MISSING:
                return _MISSING
        for index in re.findall(r"\[(\d+)\]", match.group("indices")):
            current = _select(current, index)
            if current is _MISSING:
                return _MISSING
    return current


def _select(current: Any, key: str) -> Any:
    if isinstance(current, dict):
        if key in current:
            return current[key]
        lowered = key.lower()
        for candidate, value in current.items():
            if candidate.lower() == lowered:
                return value
        return _MISSING
    if isinstance(current, list) and key.isdigit():
        index = int(key)
        return current[index] if index < len(current) else _MISSING
    return _MISSING


class TemplateResolver:
    """
    Resolves template tokens against an ExecutionContext.

    ``response`` tokens need a ResponseContext and are only passed one while
    an endpoint stage evaluates its own ``output`` bindings and ``message``.

    Usage:
        resolver = TemplateResolver()
        url = resolver.resolve("/accounts/{{stage:create.output.id}}", context)
        outputs = resolver.resolve_map(stage.output, context, response)
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now

    def resolve(
        self,
        template: str | None,
        context: ExecutionContext,
        response: ResponseContext | None = None,
    ) -> str:
        """
        Replace every token in ``template``, left to right.

        Strings without tokens are returned unchanged.

        Raises:
            TemplateResolutionError: Unknown root, malformed token or missing value
        """
        if not template:
            return ""
        if "{{" not in template:
            return template
        return TOKEN_PATTERN.sub(
            lambda m: self.resolve_token(m.group(1), context, response), template
        )

    def resolve_map(
        self,
        templates: dict[str, str] | None,
        context: ExecutionContext,
        response: ResponseContext | None = None,
    ) -> dict[str, str]:
        """Resolve every value of a template map."""
        if not templates:
            return {}
        return {key: self.resolve(value, context, response) for key, value in templates.items()}

    def resolve_token(
        self,
        token: str,
        context: ExecutionContext,
        response: ResponseContext | None = None,
    ) -> str:
        """Resolve one token body (text between the braces)."""
        projection = JSON_PROJECTION_PATTERN.match(token)
        if projection:
            return self._resolve_json_projection(token, projection, context, response)

        segments = split_token(token)
        if not segments:
            raise TemplateResolutionError(token, "empty token")

        root = segments[0].lower()
        match root:
            case "input":
                return self._resolve_named(token, segments, context.inputs, "Input")
            case "global":
                return self._resolve_named(token, segments, context.globals, "Global")
            case "context":
                self._require_name(token, segments)
                value = lookup_ci(context.context, segments[1])
                return value if value is not None else ""
            case "env":
                return self._resolve_env(token, segments, context)
            case "system":
                return self._resolve_system(token, segments)
            case "stage" | "stages":
                return self._resolve_stage(token, segments, context)
            case "endpoint":
                return self._resolve_stage_map(token, segments, context.endpoint_outputs)
            case "workflow":
                return self._resolve_stage_map(token, segments, context.workflow_outputs)
            case "response":
                return self._resolve_response(token, segments, response)
        raise TemplateResolutionError(token, f"unknown token root '{segments[0]}'")

    def resolve_nullable(self, token: str, context: ExecutionContext) -> str | None:
        """
        Resolve a token, returning None when its value does not exist.

        Used by runIf where a missing value is the ``null`` sentinel and
        differs from an empty string.

        Raises:
            TemplateResolutionError: Malformed token or unknown root
        """
        segments = split_token(token)
        is_projection = JSON_PROJECTION_PATTERN.match(token) is not None
        if segments and segments[0].lower() == "context" and not is_projection:
            self._require_name(token, segments)
            return lookup_ci(context.context, segments[1])
        try:
            return self.resolve_token(token, context)
        except MissingValueError:
            return None

    # ------------------------------------------------------------------
    # Scope resolvers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_name(token: str, segments: list[str]) -> None:
        if len(segments) < 2:
            raise TemplateResolutionError(token, f"'{segments[0]}' token requires a name")

    def _resolve_named(
        self, token: str, segments: list[str], scope: dict[str, str], label: str
    ) -> str:
        self._require_name(token, segments)
        value = lookup_ci(scope, segments[1])
        if value is None:
            raise MissingValueError(token, f"{label} '{segments[1]}' was not provided")
        return value

    def _resolve_env(self, token: str, segments: list[str], context: ExecutionContext) -> str:
        self._require_name(token, segments)
        name = segments[1]
        value = lookup_ci(context.environment, name)
        if value is None:
            value = os.environ.get(name)
        if value is None:
            raise MissingValueError(token, f"Environment variable '{name}' was not found")
        return value

    def _resolve_system(self, token: str, segments: list[str]) -> str:
        if len(segments) == 2 and segments[1].lower() == "guid":
            return str(uuid.uuid4())
        if len(segments) == 2 and segments[1].lower() == "ulid":
            return str(ulid.new())
        if len(segments) < 3:
            raise TemplateResolutionError(token, "system token requires a kind and a clock")

        kind, clock = segments[1].lower(), segments[2].lower()
        if clock == "now":
            instant = self._clock().astimezone()
        elif clock == "utcnow":
            instant = self._clock()
        else:
            raise TemplateResolutionError(token, f"unknown system clock '{segments[2]}'")

        if kind == "datetime":
            return instant.isoformat()
        if kind == "date":
            return instant.strftime("%Y-%m-%d")
        if kind == "time":
            return instant.strftime("%H:%M:%S")
        raise TemplateResolutionError(token, f"unknown system value '{segments[1]}'")

    def _resolve_stage(self, token: str, segments: list[str], context: ExecutionContext) -> str:
        if len(segments) >= 5 and segments[2].lower() == "workflow":
            stage_name, section, key = segments[1], segments[3].lower(), segments[4]
            if section == "result":
                source = context.workflow_results
            elif section == "output":
                source = context.workflow_outputs
            else:
                raise TemplateResolutionError(token, f"unknown workflow section '{segments[3]}'")
            stage_map = lookup_ci(source, stage_name)
            value = lookup_ci(stage_map, key) if stage_map is not None else None
            if value is None:
                raise MissingValueError(
                    token, f"Workflow {section} '{key}' of stage '{stage_name}' was not found"
                )
            return value

        if len(segments) < 4 or segments[2].lower() != "output":
            raise TemplateResolutionError(
                token, "expected stage:<name>.output.<key> or stage:<name>.workflow.<section>.<key>"
            )
        stage_name, key = segments[1], segments[3]
        value = context.stage_output(stage_name, key)
        if value is None:
            raise MissingValueError(token, f"Stage '{stage_name}' output '{key}' was not found")
        return self._project(token, value, segments[4:])

    def _resolve_stage_map(
        self, token: str, segments: list[str], source: dict[str, dict[str, str]]
    ) -> str:
        if len(segments) < 4 or segments[2].lower() != "output":
            raise TemplateResolutionError(token, f"expected {segments[0]}:<name>.output.<key>")
        stage_map = lookup_ci(source, segments[1])
        value = lookup_ci(stage_map, segments[3]) if stage_map is not None else None
        if value is None:
            raise MissingValueError(
                token, f"Stage '{segments[1]}' output '{segments[3]}' was not found"
            )
        return self._project(token, value, segments[4:])

    def _resolve_response(
        self, token: str, segments: list[str], response: ResponseContext | None
    ) -> str:
        if response is None:
            raise TemplateResolutionError(
                token,
                "response tokens are only available in an endpoint stage's output and message",
            )
        if len(segments) < 2:
            raise TemplateResolutionError(token, "response token requires a field")

        field = segments[1].lower()
        if field == "status" and len(segments) == 2:
            return str(response.status)
        if field == "body" and len(segments) == 2:
            return response.body
        if field == "headers":
            if len(segments) < 3:
                raise TemplateResolutionError(token, "response header name is required")
            header = response.headers.get(segments[2])
            if header is None:
                raise MissingValueError(token, f"Response header '{segments[2]}' was not found")
            return header

        if not response.has_json:
            raise MissingValueError(token, "response body is not JSON")
        value = walk_json(response.json_body, segments[1:])
        if value is _MISSING:
            raise MissingValueError(
                token, f"path '{'.'.join(segments[1:])}' was not found in the response body"
            )
        return render_value(value)

    def _resolve_json_projection(
        self,
        token: str,
        projection: re.Match[str],
        context: ExecutionContext,
        response: ResponseContext | None,
    ) -> str:
        inner = projection.group("inner")
        inner_segments = split_token(inner)
        if not inner_segments:
            raise TemplateResolutionError(token, "json() requires a value reference")
        if inner_segments[0].lower() not in ROOTS:
            inner = f"stage:{inner}"
        raw = self.resolve_token(inner, context, response)
        return self._project(token, raw, split_token(projection.group("rest")))

    def _project(self, token: str, raw: str, path: list[str]) -> str:
        """Parse ``raw`` as JSON and render the value at ``path`` (no path: raw)."""
        if not path:
            return raw
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TemplateResolutionError(token, f"value is not valid JSON: {e.msg}") from e
        value = walk_json(document, path)
        if value is _MISSING:
            raise MissingValueError(token, f"path '{'.'.join(path)}' was not found in JSON value")
        return render_value(value)


__all__ = [
    "JSON_PROJECTION_PATTERN",
    "MissingValueError",
    "ROOTS",
    "TOKEN_PATTERN",
    "TemplateResolver",
    "extract_tokens",
    "render_value",
    "split_token",
    "token_root",
    "walk_json",
]
