"""runIf predicate evaluation.

Grammar (one comparison, no boolean operators):

    {{token}} == null
    {{token}} != "text"        (single or double quotes)
    {{token}} == 42
    {{token}} in [a, b, c]
    {{token}} not in ['x', "y"]

A token whose value does not exist resolves to null, which is different
from an empty string: ``{{input.tag}} != null`` holds for ``tag=""``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import TemplateResolutionError

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .template_resolver import TemplateResolver

logger = logging.getLogger(__name__)

RUN_IF_PATTERN = re.compile(
    r"""^\s*\{\{\s*(?P<token>.+?)\s*\}\}\s*
    (?P<op>==|!=|not\s+in|in)\s*
    (?P<value>null|"[^"]*"|'[^']*'|-?\d+(?:\.\d+)?|\[[^\]]*\])\s*$""",
    re.IGNORECASE | re.VERBOSE,
)


@dataclass(frozen=True)
class RunIfExpression:
    """Parsed runIf predicate."""

    token: str
    operator: str
    raw_value: str

    @property
    def expects_null(self) -> bool:
        return self.raw_value.lower() == "null"

    def expected_value(self) -> str:
        value = self.raw_value
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            return value[1:-1]
        return value

    def expected_list(self) -> set[str]:
        inner = self.raw_value.strip()[1:-1]
        return {_unquote(item.strip()) for item in inner.split(",") if item.strip()}


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_run_if(expression: str) -> RunIfExpression:
    """
    Parse a runIf expression.

    Raises:
        TemplateResolutionError: If the expression does not match the grammar
    """
    match = RUN_IF_PATTERN.match(expression)
    if not match:
        raise TemplateResolutionError(expression, "invalid runIf expression")
    operator = re.sub(r"\s+", " ", match.group("op").lower())
    value = match.group("value")
    if operator in ("in", "not in") and not value.startswith("["):
        raise TemplateResolutionError(expression, f"'{operator}' requires a [list] value")
    return RunIfExpression(match.group("token"), operator, value)


class RunIfEvaluator:
    """Decides whether a stage runs."""

    def __init__(self, resolver: TemplateResolver) -> None:
        self._resolver = resolver

    def evaluate(self, expression: str, context: ExecutionContext) -> bool:
        """
        Evaluate a runIf expression against the context.

        Raises:
            TemplateResolutionError: Malformed expression or token
        """
        parsed = parse_run_if(expression)
        actual = self._resolver.resolve_nullable(parsed.token, context)

        if parsed.operator == "in":
            return (actual or "") in parsed.expected_list()
        if parsed.operator == "not in":
            return (actual or "") not in parsed.expected_list()

        if parsed.expects_null:
            is_equal = actual is None
        else:
            is_equal = actual is not None and actual == parsed.expected_value()
        return is_equal if parsed.operator == "==" else not is_equal

    def should_run(self, expression: str | None, context: ExecutionContext) -> bool:
        """
        Evaluate a stage's runIf, treating resolution failures as "not satisfied".

        An empty expression always runs.
        """
        if not expression or not expression.strip():
            return True
        try:
            return self.evaluate(expression, context)
        except TemplateResolutionError as e:
            logger.warning(f"runIf '{expression}' could not be evaluated; skipping stage: {e}")
            return False


__all__ = ["RUN_IF_PATTERN", "RunIfEvaluator", "RunIfExpression", "parse_run_if"]
