"""
Safe arithmetic evaluation.

Expressions are parsed with :mod:`ast` and only numeric literals, arithmetic
operators, names bound by the caller and whitelisted functions are evaluated.
"""

import ast
import inspect
import math
import operator
import re
import statistics
from typing import Any, Callable, Dict, Mapping, Optional

from shared.errors import ExpressionError

PURE_MATH = re.compile(r"^[0-9+\-*/().\s]+$")

MAX_EXPONENT = 1000
MAX_RESULT_DIGITS = 1000
# Largest n whose factorial fits in a double
MAX_FACTORIAL = 170
RESULT_PRECISION = 12

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _factorial(n):
    if n > MAX_FACTORIAL:
        return math.inf
    if float(n).is_integer() and n >= 0:
        return math.factorial(int(n))
    return math.gamma(n + 1)


PREDEFINED_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "sum": lambda *args: sum(args),
    "avg": lambda *args: statistics.mean(args),
    "median": lambda *args: statistics.median(args),
    "stddev": lambda *args: statistics.stdev(args),
    "factorial": _factorial,
    "percentage": lambda value, total: (value / total) * 100,
    "roi": lambda gain, cost: ((gain - cost) / cost) * 100,
    "compound_interest": lambda principal, rate, time: principal * float(1 + rate) ** time,
    "break_even": lambda fixed_costs, price, variable_costs: fixed_costs / (price - variable_costs),
    "velocity": lambda distance, time: distance / time,
    "burn_rate": lambda start_balance, end_balance, months: (start_balance - end_balance) / months,
    "pert": lambda optimistic, most_likely, pessimistic: (optimistic + 4 * most_likely + pessimistic) / 6,
    "cycle_time": lambda completed_tasks, time_elapsed: time_elapsed / completed_tasks,
    "lead_time": lambda start, completion: completion - start,
    "communication_channels": lambda stakeholders: stakeholders * (stakeholders - 1) / 2,
    "resource_utilization": lambda actual_hours, planned_hours: (actual_hours / planned_hours) * 100,
    "resource_overallocation": lambda usage, capacity: usage - capacity,
    "variance": lambda actual, planned: ((actual - planned) / planned) * 100,
}


def normalize_number(value: Any) -> Any:
    """Round away float noise and collapse integral floats to int."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return value
        value = round(value, RESULT_PRECISION)
        if value.is_integer():
            return int(value)
    return value


def describe_function(name: str, func: Callable[..., Any]) -> str:
    """Render a function as ``name(param, ...)``."""
    try:
        params = ", ".join(inspect.signature(func).parameters)
    except (TypeError, ValueError):
        params = "..."
    return f"{name}({params})"


def is_pure_math(text: str) -> bool:
    return bool(PURE_MATH.match(text))


def evaluate(
    expression: str,
    functions: Optional[Mapping[str, Callable[..., Any]]] = None,
    names: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    Evaluate an arithmetic expression.

    Args:
        expression: Expression text; ``^`` is accepted as power
        functions: Callables the expression may invoke by name
        names: Extra values the expression may reference by name

    Returns:
        The numeric result, or a callable when the expression is a bare
        function name

    Raises:
        ExpressionError: If the expression is malformed, uses anything outside
            the whitelist, or fails arithmetically
    """
    source = expression.replace("^", "**").strip()
    if not source:
        raise ExpressionError("Empty expression")

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression: {expression}") from e

    evaluator = _Evaluator(functions or {}, names or {})
    try:
        return normalize_number(evaluator.visit(tree.body))
    except ExpressionError:
        raise
    except (ArithmeticError, ValueError, TypeError, statistics.StatisticsError) as e:
        raise ExpressionError(f"Cannot evaluate {expression}: {e}") from e


def _check_power(base, exponent) -> None:
    """Reject powers whose result would have more than MAX_RESULT_DIGITS digits."""
    if abs(exponent) > MAX_EXPONENT:
        raise ExpressionError("Exponent too large")
    if base in (0, 1, -1) or exponent <= 0:
        return
    if exponent * math.log10(abs(base)) > MAX_RESULT_DIGITS:
        raise ExpressionError("Result too large")


class _Evaluator:
    def __init__(self, functions: Mapping[str, Callable[..., Any]], names: Mapping[str, Any]):
        self.functions = functions
        self.names = names

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
                return node.value
            raise ExpressionError(f"Unsupported literal: {node.value!r}")

        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            left = self.visit(node.left)
            right = self.visit(node.right)
            if isinstance(node.op, ast.Pow):
                _check_power(left, right)
            return _BINARY_OPERATORS[type(node.op)](left, right)

        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](self.visit(node.operand))

        if isinstance(node, ast.Name):
            if node.id in self.names:
                return self.names[node.id]
            if node.id in self.functions:
                return self.functions[node.id]
            raise ExpressionError(f"Unknown name: {node.id}")

        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
            func = self.functions.get(node.func.id)
            if func is None:
                raise ExpressionError(f"Unknown function: {node.func.id}")
            return func(*(self.visit(arg) for arg in node.args))

        raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
