"""Tests for edge condition evaluation and path templating."""

from __future__ import annotations

import pytest

from procflow.templating.engine import render_template_str, render_value, resolve_path
from procflow.templating.expressions import evaluate_condition


@pytest.fixture
def ctx() -> dict:
    return {
        "context": {"age": 34, "country": "NL", "tags": ["priority"], "missing_documents": []},
        "outputs": {
            "verify": {"verified": True},
            "review": {"decision": "approve"},
        },
        "dependencies": {"identity_check": {"status": "satisfied"}},
    }


class TestResolvePath:
    def test_nested_lookup(self, ctx):
        assert resolve_path("outputs.verify.verified", ctx) is True

    def test_missing_returns_default(self, ctx):
        assert resolve_path("outputs.nope.value", ctx, default="x") == "x"

    def test_list_index_and_length(self, ctx):
        assert resolve_path("context.tags.0", ctx) == "priority"
        assert resolve_path("context.tags.length", ctx) == 1
        assert resolve_path("context.tags.5", ctx) is None


class TestRendering:
    def test_render_string(self, ctx):
        assert render_template_str("Applicant from {{context.country}}", ctx) == "Applicant from NL"

    def test_render_default(self, ctx):
        assert render_template_str("{{context.city | 'unknown'}}", ctx) == "unknown"

    def test_render_value_keeps_native_type(self, ctx):
        assert render_value({"age": "{{context.age}}", "items": ["{{context.country}}"]}, ctx) == {
            "age": 34,
            "items": ["NL"],
        }


class TestEvaluateCondition:
    @pytest.mark.parametrize(
        "expr,expected",
        [
            (None, True),
            ("", True),
            ("true", True),
            ("false", False),
            ("{{context.age}} >= 18", True),
            ("{{context.age}} < 18", False),
            ("{{context.country}} == 'NL'", True),
            ("{{context.country}} != 'NL'", False),
            ("{{outputs.verify.verified}} == true", True),
            ("{{outputs.review.decision}} in ['approve', 'request_more_info']", True),
            ("{{outputs.review.decision}} in ['reject']", False),
            ("{{context.tags}} contains 'priority'", True),
            ("{{context.tags}} not_contains 'priority'", False),
            ("{{context.country}} starts_with 'N'", True),
            ("is_empty {{context.missing_documents}}", True),
            ("is_not_empty {{context.tags}}", True),
            ("{{dependencies.identity_check.status}} == 'satisfied'", True),
            ("{{outputs.verify.verified}}", True),
            ("{{outputs.absent.flag}}", False),
        ],
    )
    def test_conditions(self, ctx, expr, expected):
        assert evaluate_condition(expr, ctx) is expected

    def test_incomparable_operands_are_false(self, ctx):
        assert evaluate_condition("{{context.unknown}} > 3", ctx) is False

    def test_code_is_treated_as_a_literal(self, ctx):
        # Not evaluated: a non-empty literal is simply truthy.
        assert evaluate_condition("__import__('os').getcwd()", ctx) is True
        assert evaluate_condition("__import__('os').getcwd() == 1", ctx) is False
