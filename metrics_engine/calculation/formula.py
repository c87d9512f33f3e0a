"""
Composite Formula Interpreter

A restricted arithmetic evaluator for composite metrics. Formulas reference
dependent metric codes as bare identifiers, e.g.::

    approved_count / total_count * 100

Only numeric literals, identifiers, parentheses, unary +/- and the four basic
operators are accepted. Anything else (calls, attributes, subscripts, power,
comparisons, boolean literals) is rejected at parse time.
"""

from __future__ import annotations

import ast
import math
import operator
from collections.abc import Callable, Mapping
from functools import lru_cache

MAX_FORMULA_LENGTH = 1000

_BINARY_OPERATORS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.Constant,
    ast.Name,
    ast.Load,
    *_BINARY_OPERATORS,
    *_UNARY_OPERATORS,
)


class FormulaError(ValueError):
    """Raised when a formula is malformed or cannot be evaluated."""


class Formula:
    """A parsed, validated arithmetic formula."""

    def __init__(self, expression: str):
        if not expression or not expression.strip():
            raise FormulaError("formula is empty")
        if len(expression) > MAX_FORMULA_LENGTH:
            raise FormulaError(f"formula exceeds {MAX_FORMULA_LENGTH} characters")

        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise FormulaError(f"invalid formula syntax: {e.msg}") from e

        variables: set[str] = set()
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise FormulaError(f"unsupported element in formula: {type(node).__name__}")
            if isinstance(node, ast.Constant) and (
                isinstance(node.value, bool) or not isinstance(node.value, (int, float))
            ):
                raise FormulaError(f"unsupported literal in formula: {node.value!r}")
            if isinstance(node, ast.Name):
                variables.add(node.id)

        self.expression = expression.strip()
        self.variables = frozenset(variables)
        self._tree = tree

    def evaluate(self, values: Mapping[str, float]) -> float:
        """
        Evaluate the formula with the given variable bindings.

        Raises:
            FormulaError: On unbound variables, division by zero or a
                non-finite result
        """
        result = self._eval(self._tree.body, values)
        if not math.isfinite(result):
            raise FormulaError(f"formula produced a non-finite result: {result}")
        return result

    def _eval(self, node: ast.AST, values: Mapping[str, float]) -> float:
        if isinstance(node, ast.Constant):
            return float(node.value)

        if isinstance(node, ast.Name):
            if node.id not in values:
                raise FormulaError(f"unbound variable in formula: {node.id}")
            return float(values[node.id])

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, values))

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, values)
            right = self._eval(node.right, values)
            if isinstance(node.op, ast.Div) and right == 0:
                raise FormulaError("division by zero in formula")
            return _BINARY_OPERATORS[type(node.op)](left, right)

        raise FormulaError(f"unsupported element in formula: {type(node).__name__}")

    def __repr__(self) -> str:
        return f"Formula({self.expression!r})"


@lru_cache(maxsize=256)
def parse_formula(expression: str) -> Formula:
    """Parse and validate a formula, caching the result by expression text."""
    return Formula(expression)


def validate_formula(expression: str, dependent_metrics: list[str]) -> Formula:
    """
    Check a formula is well formed and only references declared dependencies.

    Raises:
        FormulaError: If the formula is malformed or references an
            undeclared metric code
    """
    formula = parse_formula(expression)
    undeclared = sorted(formula.variables - set(dependent_metrics))
    if undeclared:
        raise FormulaError(f"formula references undeclared metrics: {', '.join(undeclared)}")
    return formula
