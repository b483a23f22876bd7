"""Tests for runIf parsing and evaluation."""

from __future__ import annotations

import pytest

from integration_workflows.engine.exceptions import TemplateResolutionError
from integration_workflows.engine.run_if import RunIfEvaluator, parse_run_if
from integration_workflows.engine.template_resolver import TemplateResolver


@pytest.fixture
def evaluator(fake_clock) -> RunIfEvaluator:
    return RunIfEvaluator(TemplateResolver(fake_clock))


@pytest.fixture
def context(make_context):
    ctx = make_context(inputs={"tag": "", "region": "eu", "count": "3"})
    ctx.context["userStatus"] = "active"
    return ctx


class TestParseRunIf:
    """Tests for the runIf grammar."""

    def test_parse_comparison(self) -> None:
        parsed = parse_run_if("{{input.tag}} != null")
        assert parsed.token == "input.tag"
        assert parsed.operator == "!="
        assert parsed.expects_null

    def test_parse_list(self) -> None:
        parsed = parse_run_if("{{input.region}} not  in ['eu', \"us\"]")
        assert parsed.operator == "not in"
        assert parsed.expected_list() == {"eu", "us"}

    def test_invalid_expression(self) -> None:
        with pytest.raises(TemplateResolutionError, match="invalid runIf"):
            parse_run_if("input.tag == 1")

    def test_in_requires_list(self) -> None:
        with pytest.raises(TemplateResolutionError, match="requires a"):
            parse_run_if("{{input.tag}} in 'eu'")


class TestRunIfEvaluator:
    """Tests for evaluating predicates against a context."""

    def test_empty_string_is_not_null(self, evaluator, context) -> None:
        """An input set to "" satisfies != null."""
        assert evaluator.should_run("{{input.tag}} != null", context)
        assert not evaluator.should_run("{{input.tag}} == null", context)

    def test_missing_input_is_null(self, evaluator, context) -> None:
        assert evaluator.should_run("{{input.absent}} == null", context)
        assert not evaluator.should_run("{{input.absent}} != null", context)

    def test_missing_context_is_null(self, evaluator, context) -> None:
        assert evaluator.should_run("{{context.unknown}} == null", context)

    def test_string_comparison(self, evaluator, context) -> None:
        assert evaluator.should_run("{{context:userStatus}} == 'active'", context)
        assert evaluator.should_run('{{context.userStatus}} != "blocked"', context)

    def test_numeric_literal(self, evaluator, context) -> None:
        assert evaluator.should_run("{{input.count}} == 3", context)

    def test_in_and_not_in(self, evaluator, context) -> None:
        assert evaluator.should_run("{{input.region}} in [eu, us]", context)
        assert not evaluator.should_run("{{input.region}} not in [eu, us]", context)

    def test_empty_expression_runs(self, evaluator, context) -> None:
        assert evaluator.should_run(None, context)
        assert evaluator.should_run("  ", context)

    def test_invalid_expression_skips(self, evaluator, context) -> None:
        """Resolution failures make the predicate unsatisfied instead of raising."""
        assert not evaluator.should_run("{{input.region}} ~= 'eu'", context)
        assert not evaluator.should_run("{{secrets.key}} == null", context)

    def test_evaluate_raises(self, evaluator, context) -> None:
        with pytest.raises(TemplateResolutionError):
            evaluator.evaluate("not an expression", context)
