"""Unit tests for the condition expression evaluator

Tests cover:
- Comparisons, boolean logic and membership
- Path lookups into the context (missing paths resolve to None)
- Rejection of calls, arithmetic and other unsupported constructs
- Static validation messages
"""

import pytest

from graphflow.engine.errors import InvalidExpression
from graphflow.engine.safe_eval import (
    MAX_EXPRESSION_LENGTH,
    evaluate_condition,
    safe_eval,
    validate_condition_expression,
)


@pytest.fixture
def context():
    return {
        "prev": {"output": "x", "count": 12, "ok": True, "tags": ["a", "b"]},
        "input": {"dry_run": False, "items": [{"id": 1}, {"id": 2}]},
        "classify": {"branch": "true"},
    }


class TestComparisons:
    def test_equality_on_path(self, context):
        assert evaluate_condition("prev.output == 'x'", context) is True
        assert evaluate_condition("prev.output == 'y'", context) is False

    def test_ordering(self, context):
        assert evaluate_condition("prev.count > 10", context)
        assert not evaluate_condition("prev.count <= 10", context)

    def test_chained_comparison(self, context):
        assert evaluate_condition("1 < prev.count < 20", context)
        assert not evaluate_condition("1 < prev.count < 5", context)

    def test_membership(self, context):
        assert evaluate_condition("'a' in prev.tags", context)
        assert evaluate_condition("'z' not in prev.tags", context)
        assert evaluate_condition("prev.output in ['x', 'y']", context)

    def test_negative_number_literal(self, context):
        assert evaluate_condition("prev.count > -1", context)


class TestBooleanLogic:
    def test_and_or_not(self, context):
        assert evaluate_condition("prev.ok and not input.dry_run", context)
        assert evaluate_condition("input.dry_run or prev.ok", context)
        assert not evaluate_condition("input.dry_run and prev.ok", context)

    def test_json_style_literals(self, context):
        assert evaluate_condition("prev.ok == true", context)
        assert evaluate_condition("input.dry_run == false", context)
        assert evaluate_condition("prev.missing == null", context)


class TestLookups:
    def test_subscript_and_index(self, context):
        assert safe_eval("input.items[1]['id']", context) == 2
        assert safe_eval("input['items'][0].id", context) == 1

    def test_missing_paths_resolve_to_none(self, context):
        assert safe_eval("prev.nope", context) is None
        assert safe_eval("unknown_node.output", context) is None
        assert safe_eval("input.items[9]", context) is None

    def test_node_output_by_id(self, context):
        assert evaluate_condition("classify.branch == 'true'", context)

    def test_lookup_on_scalar_raises(self, context):
        with pytest.raises(InvalidExpression, match="Cannot look up"):
            safe_eval("prev.output.length", context)


class TestRejections:
    @pytest.mark.parametrize("expression", [
        "__import__('os')",
        "len(prev.tags)",
        "prev.count + 1 > 2",
        "[x for x in prev.tags]",
        "prev.tags[0:1]",
        "lambda: 1",
        "{'a': 1}",
    ])
    def test_unsupported_constructs(self, context, expression):
        with pytest.raises(InvalidExpression):
            safe_eval(expression, context)

    def test_empty_expression(self, context):
        with pytest.raises(InvalidExpression, match="empty"):
            safe_eval("   ", context)

    def test_too_long(self, context):
        with pytest.raises(InvalidExpression, match="too long"):
            safe_eval("1 == " + "1" * MAX_EXPRESSION_LENGTH, context)

    def test_syntax_error(self, context):
        with pytest.raises(InvalidExpression, match="syntax"):
            safe_eval("prev.output ==", context)

    def test_sign_on_string(self, context):
        with pytest.raises(InvalidExpression, match="numbers"):
            safe_eval("-prev.output", context)

    def test_type_error_is_wrapped(self, context):
        with pytest.raises(InvalidExpression, match="Evaluation error"):
            safe_eval("prev.output > 3", context)


class TestValidateConditionExpression:
    def test_valid(self):
        assert validate_condition_expression("prev.output == 'x' and input.n > 2") == []

    def test_function_call(self):
        errors = validate_condition_expression("len(prev) > 1")
        assert "Function calls are not allowed in conditions" in errors

    def test_arithmetic(self):
        errors = validate_condition_expression("prev.n * 2 > 1")
        assert "Arithmetic is not allowed in conditions" in errors

    def test_messages_are_deduplicated(self):
        errors = validate_condition_expression("f(1) and g(2)")
        assert errors.count("Function calls are not allowed in conditions") == 1

    def test_syntax_error_reported(self):
        errors = validate_condition_expression("a ==")
        assert len(errors) == 1
        assert "syntax" in errors[0]
