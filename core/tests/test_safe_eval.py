"""Tests for the sandboxed expression language."""

import pytest

from workflow_engine.errors import ConditionEvaluationError
from workflow_engine.graph.safe_eval import (
    MAX_EXPRESSION_LENGTH,
    MAX_SEQUENCE_LENGTH,
    evaluate_condition,
    normalize_expression,
    safe_eval,
)


class TestEvaluation:
    def test_arithmetic_and_comparison(self):
        assert safe_eval("a + 1 > 2", {"a": 2}) is True
        assert safe_eval("(a * 3) % 4", {"a": 3}) == 1

    def test_field_access_and_indexing(self):
        ctx = {"input": {"user": {"tags": ["x", "y"]}}}
        assert safe_eval("input.user.tags[1]", ctx) == "y"
        assert safe_eval("input['user']['tags'][0]", ctx) == "x"
        assert safe_eval("input.user.tags[5]", ctx) is None

    def test_missing_key_is_none(self):
        assert safe_eval("input.missing", {"input": {}}) is None

    def test_property_of_null_raises(self):
        with pytest.raises(ConditionEvaluationError, match="null"):
            safe_eval("input.a.b", {"input": {}})

    def test_unknown_variable_raises(self):
        with pytest.raises(ConditionEvaluationError, match="Unknown variable"):
            safe_eval("nope > 1", {})

    def test_length_property(self):
        assert safe_eval("items.length", {"items": [1, 2, 3]}) == 3
        assert safe_eval("name.length == 3", {"name": "bob"}) is True

    def test_whitelisted_functions_and_methods(self):
        ctx = {"name": "Bobby", "tags": ["a", "b"]}
        assert safe_eval("len(tags)", ctx) == 2
        assert safe_eval("name.toLowerCase().includes('bob')", ctx) is True
        assert safe_eval("tags.includes('c')", ctx) is False
        assert safe_eval("max(1, 5, 3)", ctx) == 5

    def test_string_concatenation(self):
        assert safe_eval("'n=' + n", {"n": 3}) == "n=3"
        assert safe_eval("'flag: ' + f", {"f": True}) == "flag: true"

    def test_conditional_expression(self):
        assert safe_eval("'big' if n > 5 else 'small'", {"n": 7}) == "big"


class TestJavaScriptSpellings:
    def test_strict_equality_and_logic(self):
        ctx = {"x": "a", "done": False}
        assert evaluate_condition("x === 'a' && !done", ctx) is True
        assert evaluate_condition("x !== 'a' || done", ctx) is False

    def test_literals(self):
        assert evaluate_condition("value == null", {"value": None}) is True
        assert evaluate_condition("flag === true", {"flag": True}) is True
        assert evaluate_condition("missing === undefined", {"missing": None}) is True

    def test_operators_inside_strings_are_untouched(self):
        assert safe_eval("'a && b || !c'", {}) == "a && b || !c"
        assert normalize_expression("s == 'true'") == "s == 'true'"

    def test_return_wrapper(self):
        assert safe_eval("return input.n * 2;", {"input": {"n": 4}}) == 8


class TestSandbox:
    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('echo hi')",
            "open('/etc/passwd')",
            "().__class__.__bases__",
            "(lambda: 1)()",
            "[x for x in items]",
            "items.pop()",
            "eval('1')",
        ],
    )
    def test_disallowed_constructs(self, expression):
        with pytest.raises(ConditionEvaluationError):
            safe_eval(expression, {"items": [1]})

    def test_private_attribute_on_mapping(self):
        with pytest.raises(ConditionEvaluationError):
            safe_eval("input._secret", {"input": {"_secret": 1}})

    def test_syntax_error(self):
        with pytest.raises(ConditionEvaluationError, match="Invalid expression"):
            safe_eval("a >", {"a": 1})

    def test_empty_and_oversized(self):
        with pytest.raises(ConditionEvaluationError):
            safe_eval("   ", {})
        with pytest.raises(ConditionEvaluationError, match="too long"):
            safe_eval("1 + " * MAX_EXPRESSION_LENGTH + "1", {})

    def test_type_errors_become_evaluation_errors(self):
        with pytest.raises(ConditionEvaluationError):
            safe_eval("a < b", {"a": 1, "b": "x"})

    @pytest.mark.parametrize(
        "expression",
        ["'a' * 100000000000", "100000000000 * 'a'", "[0] * 100000000000", "('ab' * 60000) * 1"],
    )
    def test_oversized_repetition_is_rejected(self, expression):
        with pytest.raises(ConditionEvaluationError, match="Repetition"):
            safe_eval(expression, {})

    def test_repetition_within_limit(self):
        assert len(safe_eval("'a' * n", {"n": MAX_SEQUENCE_LENGTH})) == MAX_SEQUENCE_LENGTH
        assert safe_eval("'ab' * 0", {}) == ""

    def test_overflow_becomes_evaluation_error(self):
        with pytest.raises(ConditionEvaluationError, match="OverflowError"):
            safe_eval("round(big * big)", {"big": 1e300})
