"""
Condition Expressions

A small boolean expression language over variable store values:
comparisons (==, !=, <, <=, >, >=, in, not in), and/or/not (also &&, ||, !),
parentheses, number and string literals, true/false/null, and variable names
(bare or as {{ name }}; dotted names read nested values).

Expressions are parsed with the ``ast`` module and checked against a node
whitelist; they are walked, never executed.
"""

import ast
import logging
import re
from typing import Any, Dict

from .errors import ExpressionError, TypeMismatch, UnresolvedVariable
from .runtime_data.variables import VariableStore, to_bool, to_number

logger = logging.getLogger(__name__)

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "none": None}

# Rewrites applied outside string literals before parsing
_REWRITES = (
    (re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}"), r"\1"),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)

_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")

_DOTTED_NAME = re.compile(r"(?<![\w.'\"])([A-Za-z_]\w*(?:\.\w+)+)")

_COMPARATORS = (
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
)


def _normalize(expression: str, dotted: Dict[str, str]) -> str:
    """Rewrite operator spellings and dotted names outside string literals."""
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        segment = parts[index]
        for pattern, replacement in _REWRITES:
            segment = pattern.sub(replacement, segment)

        def alias(match: "re.Match") -> str:
            name = match.group(1)
            placeholder = f"__var{len(dotted)}"
            dotted[placeholder] = name
            return placeholder

        parts[index] = _DOTTED_NAME.sub(alias, segment)
    return "".join(parts)


class ConditionExpression:
    """
    A parsed condition expression.

    Parse once, evaluate against any number of variable stores (loop ``while``
    conditions are re-evaluated every iteration).
    """

    def __init__(self, source: str):
        """
        Parse an expression.

        Args:
            source: Expression text

        Raises:
            ExpressionError: If the text is outside the grammar
        """
        if not isinstance(source, str) or not source.strip():
            raise ExpressionError("Condition expression must be a non-empty string", source)

        self.source = source
        self._dotted: Dict[str, str] = {}
        normalized = _normalize(source.strip(), self._dotted).strip()

        try:
            tree = ast.parse(normalized, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid expression {source!r}: {e.msg}", source)

        self._check(tree.body)
        self._tree = tree.body

    def _check(self, node: ast.AST) -> None:
        if isinstance(node, ast.BoolOp):
            for value in node.values:
                self._check(value)
        elif isinstance(node, ast.UnaryOp):
            if not isinstance(node.op, (ast.Not, ast.USub, ast.UAdd)):
                raise ExpressionError(f"Unsupported operator in {self.source!r}", self.source)
            self._check(node.operand)
        elif isinstance(node, ast.Compare):
            for op in node.ops:
                if not isinstance(op, _COMPARATORS):
                    raise ExpressionError(
                        f"Unsupported comparison in {self.source!r}", self.source
                    )
            self._check(node.left)
            for comparator in node.comparators:
                self._check(comparator)
        elif isinstance(node, ast.Constant):
            if not isinstance(node.value, (str, int, float, bool, type(None))):
                raise ExpressionError(f"Unsupported literal in {self.source!r}", self.source)
        elif isinstance(node, ast.Name):
            return
        else:
            raise ExpressionError(
                f"Unsupported syntax '{type(node).__name__}' in {self.source!r}", self.source
            )

    def evaluate(self, variables: VariableStore) -> bool:
        """
        Evaluate the expression to a boolean.

        Raises:
            UnresolvedVariable: If a referenced variable is not defined
            TypeMismatch: If operands cannot be compared
        """
        result = to_bool(self._eval(self._tree, variables))
        logger.debug(f"Condition {self.source!r} -> {result}")
        return result

    def _eval(self, node: ast.AST, variables: VariableStore) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                for value in node.values:
                    if not to_bool(self._eval(value, variables)):
                        return False
                return True
            for value in node.values:
                if to_bool(self._eval(value, variables)):
                    return True
            return False

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, variables)
            if isinstance(node.op, ast.Not):
                return not to_bool(operand)
            number = to_number(operand)
            return -number if isinstance(node.op, ast.USub) else number

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, variables)
                if not compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            name = self._dotted.get(node.id, node.id)
            if name.lower() in _LITERAL_NAMES and not variables.has(name):
                return _LITERAL_NAMES[name.lower()]
            if not variables.has(name):
                raise UnresolvedVariable(name)
            return variables.get(name)

        raise ExpressionError(f"Unsupported syntax in {self.source!r}", self.source)

    def __repr__(self) -> str:
        """String representation."""
        return f"ConditionExpression({self.source!r})"


def _equal(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, (bool, int, float)):
        left, right = right, left
    if isinstance(left, bool) and isinstance(right, str):
        try:
            return left == to_bool(right)
        except TypeMismatch:
            return False
    if isinstance(left, (int, float)) and isinstance(right, str):
        try:
            return left == to_number(right)
        except TypeMismatch:
            return False
    return left == right


def compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    """
    Compare two values with the engine's coercion rules.

    Ordering comparisons coerce both sides to numbers, text included.

    Raises:
        TypeMismatch: If an ordering comparison has a non-numeric operand
    """
    if isinstance(op, ast.Eq):
        return _equal(left, right)
    if isinstance(op, ast.NotEq):
        return not _equal(left, right)
    if isinstance(op, (ast.In, ast.NotIn)):
        if isinstance(right, str):
            found = str(left) in right
        elif isinstance(right, (list, tuple, dict)):
            found = any(_equal(left, item) for item in right)
        else:
            raise TypeMismatch(
                f"Right side of 'in' must be text or a list, got {type(right).__name__}",
                value=right,
                expected="text or list",
            )
        return found if isinstance(op, ast.In) else not found

    left, right = to_number(left), to_number(right)

    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    return left >= right


# Structured condition form used by stored automations:
# {variable, condition, value}
STRUCTURED_OPERATORS = {
    "equals": ast.Eq(),
    "not_equals": ast.NotEq(),
    "greater": ast.Gt(),
    "greater_equal": ast.GtE(),
    "less": ast.Lt(),
    "less_equal": ast.LtE(),
}


def evaluate_structured(
    variable: str, condition: str, value: Any, variables: VariableStore
) -> bool:
    """
    Evaluate the structured ``{variable, condition, value}`` form.

    ``exists`` checks only that the variable is defined; ``contains`` is a
    text/list membership test of ``value`` in the variable.

    Raises:
        ExpressionError: If the condition name is unknown
        UnresolvedVariable: If the variable is not defined
        TypeMismatch: If operands cannot be compared
    """
    if condition == "exists":
        return variables.has(variable)
    if not variables.has(variable):
        raise UnresolvedVariable(variable)
    actual = variables.get(variable)
    if condition == "contains":
        return compare(ast.In(), value, actual)
    op = STRUCTURED_OPERATORS.get(condition)
    if op is None:
        raise ExpressionError(f"Unknown condition '{condition}'")
    return compare(op, actual, value)
