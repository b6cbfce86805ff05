"""Tests for the safe expression evaluator."""

import math
import time

import pytest

from shared.errors import ExpressionError
from services.parser_service.expression import (
    PREDEFINED_FUNCTIONS,
    describe_function,
    evaluate,
    is_pure_math,
    normalize_number,
)


class TestEvaluate:
    def test_operator_precedence(self):
        assert evaluate("12 + 4 * 2") == 20

    def test_caret_is_power(self):
        assert evaluate("2^10") == 1024

    def test_float_noise_is_rounded(self):
        assert evaluate("0.1 + 0.2") == 0.3

    def test_integral_float_becomes_int(self):
        result = evaluate("7.5 * 2")
        assert result == 15
        assert isinstance(result, int)

    def test_unary_and_modulo(self):
        assert evaluate("-(3 - 10) % 4") == 3

    def test_division_by_zero(self):
        with pytest.raises(ExpressionError):
            evaluate("1 / 0")

    def test_huge_exponent_is_refused(self):
        with pytest.raises(ExpressionError, match="Exponent"):
            evaluate("9 ** 99999")

    def test_nested_powers_past_result_bound_are_refused(self):
        started = time.perf_counter()

        with pytest.raises(ExpressionError, match="too large"):
            evaluate("((10^1000)^1000)^1000")
        assert time.perf_counter() - started < 1.0

    def test_large_but_bounded_power(self):
        assert evaluate("2^1000") == 2 ** 1000

    def test_syntax_error(self):
        with pytest.raises(ExpressionError):
            evaluate("3 +* 4")

    def test_attribute_access_is_refused(self):
        with pytest.raises(ExpressionError):
            evaluate("().__class__")

    def test_unknown_function(self):
        with pytest.raises(ExpressionError, match="Unknown function"):
            evaluate("open(1)")

    def test_names_are_resolved(self):
        assert evaluate("rate * 2", names={"rate": 1.5}) == 3

    def test_empty_expression(self):
        with pytest.raises(ExpressionError):
            evaluate("   ")


class TestPredefinedFunctions:
    @pytest.mark.parametrize("expression, expected", [
        ("sum(1, 2, 4, 5)", 12),
        ("avg(2, 4, 6)", 4),
        ("median(5, 1, 3)", 3),
        ("factorial(5)", 120),
        ("percentage(25, 200)", 12.5),
        ("roi(150, 100)", 50),
        ("pert(2, 4, 12)", 5),
        ("communication_channels(5)", 10),
        ("break_even(1000, 30, 10)", 50),
        ("variance(110, 100)", 10),
    ])
    def test_functions(self, expression, expected):
        assert evaluate(expression, PREDEFINED_FUNCTIONS) == pytest.approx(expected)

    def test_factorial_above_double_range_is_infinite(self):
        started = time.perf_counter()

        assert evaluate("factorial(10000000)", PREDEFINED_FUNCTIONS) == math.inf
        assert evaluate("factorial(171)", PREDEFINED_FUNCTIONS) == math.inf
        assert evaluate("factorial(170)", PREDEFINED_FUNCTIONS) == math.factorial(170)
        assert time.perf_counter() - started < 1.0

    def test_compound_interest_overflow_is_an_error(self):
        with pytest.raises(ExpressionError):
            evaluate("compound_interest(1, 1, 1000000000)", PREDEFINED_FUNCTIONS)

    def test_stddev_of_single_value_fails(self):
        with pytest.raises(ExpressionError):
            evaluate("stddev(4)", PREDEFINED_FUNCTIONS)

    def test_bare_function_name_returns_callable(self):
        assert callable(evaluate("pert", PREDEFINED_FUNCTIONS))

    def test_describe_function(self):
        description = describe_function("pert", PREDEFINED_FUNCTIONS["pert"])
        assert description == "pert(optimistic, most_likely, pessimistic)"


def test_is_pure_math():
    assert is_pure_math("(1 + 2) * 3")
    assert not is_pure_math("team * 2")
    assert not is_pure_math("10%")


def test_normalize_number_leaves_other_values():
    assert normalize_number("text") == "text"
    assert normalize_number(True) is True
    assert normalize_number(2.50) == 2.5
