"""Safe Expression Evaluator for condition nodes

Uses Python's ast module to parse and evaluate expressions in a restricted
sandbox. Only comparisons, boolean logic, membership tests, literals and
path lookups into the run context are allowed. No function calls,
arithmetic, assignment, imports, or arbitrary code.

Supported expressions:
- Comparisons: prev.count > 10, prev.output == "x", status != null
- Boolean logic: prev.ok and not input.dry_run
- Membership: prev.status in ["done", "skipped"], "err" not in prev.output
- Literals: "string", 42, 3.14, true/false/null (and Python spellings)
- Path lookups: prev.output, node_1["field"], input.items[0]

Lookups of missing keys resolve to None instead of raising, so
``prev.missing == null`` is true. Anything else that cannot be evaluated
raises InvalidExpression: the evaluator never silently picks a branch.
"""

from __future__ import annotations

import ast
import logging
import operator
from typing import Any, Dict

from .errors import InvalidExpression

logger = logging.getLogger(__name__)

# Maximum expression length to prevent abuse
MAX_EXPRESSION_LENGTH = 500

_SAFE_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

# Sign prefixes are accepted for numeric literals only
_SAFE_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_LITERAL_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Compare,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Subscript,
    ast.Attribute,
    ast.List,
    ast.Tuple,
    *_SAFE_COMPARE_OPS.keys(),
    *_SAFE_UNARY_OPS.keys(),
)


def safe_eval(expression: str, context: Dict[str, Any]) -> Any:
    """Safely evaluate an expression against a context dictionary.

    Args:
        expression: The expression string to evaluate
        context: Dictionary of variable names to values

    Returns:
        The result of evaluating the expression

    Raises:
        InvalidExpression: If expression is invalid or uses unsupported constructs
    """
    tree = _parse(expression)

    try:
        return _eval_node(tree.body, context)
    except InvalidExpression:
        raise
    except Exception as e:
        raise InvalidExpression(f"Evaluation error: {e}") from e


def evaluate_condition(expression: str, context: Dict[str, Any]) -> bool:
    """Evaluate a condition expression to a branch decision."""
    return bool(safe_eval(expression, context))


def _parse(expression: str) -> ast.Expression:
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidExpression("Expression cannot be empty")

    expression = expression.strip()

    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise InvalidExpression(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )

    try:
        return ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise InvalidExpression(f"Invalid expression syntax: {e.msg}") from e


def _lookup(value: Any, key: Any) -> Any:
    """Path segment lookup; missing keys and out-of-range indexes yield None."""
    if isinstance(value, dict):
        return value.get(key)
    if isinstance(value, (list, tuple)) and isinstance(key, int) and not isinstance(key, bool):
        if -len(value) <= key < len(value):
            return value[key]
        return None
    if value is None:
        return None
    raise InvalidExpression(
        f"Cannot look up {key!r} on a value of type {type(value).__name__}"
    )


def _eval_node(node: ast.AST, context: Dict[str, Any]) -> Any:
    """Recursively evaluate an AST node."""

    # Literal values: 42, "hello", True, None
    if isinstance(node, ast.Constant):
        return node.value

    # Variable names: prev, input, node ids, true/false/null
    if isinstance(node, ast.Name):
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        return context.get(node.id)

    # Comparisons: x > 10, a == b, x in [1,2,3]
    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            op_func = _SAFE_COMPARE_OPS.get(type(op))
            if op_func is None:
                raise InvalidExpression(f"Unsupported comparison: {type(op).__name__}")
            right = _eval_node(comparator, context)
            if not op_func(left, right):
                return False
            left = right
        return True

    # Boolean operators: x and y, a or b
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval_node(v, context) for v in node.values)
        if isinstance(node.op, ast.Or):
            return any(_eval_node(v, context) for v in node.values)
        raise InvalidExpression(f"Unsupported boolean op: {type(node.op).__name__}")

    # Unary operators: not x, -1
    if isinstance(node, ast.UnaryOp):
        op_func = _SAFE_UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise InvalidExpression(f"Unsupported unary op: {type(node.op).__name__}")
        operand = _eval_node(node.operand, context)
        if not isinstance(node.op, ast.Not) and (
            isinstance(operand, bool) or not isinstance(operand, (int, float))
        ):
            raise InvalidExpression("Sign prefix is only allowed on numbers")
        return op_func(operand)

    # Subscript access: data["key"], items[0]
    if isinstance(node, ast.Subscript):
        if isinstance(node.slice, ast.Slice):
            raise InvalidExpression("Slices are not allowed")
        value = _eval_node(node.value, context)
        key = _eval_node(node.slice, context)
        return _lookup(value, key)

    # Attribute access: prev.output (dict keys only)
    if isinstance(node, ast.Attribute):
        value = _eval_node(node.value, context)
        return _lookup(value, node.attr)

    # List literals: [1, 2, 3]
    if isinstance(node, ast.List):
        return [_eval_node(elt, context) for elt in node.elts]

    # Tuple literals: (1, 2)
    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, context) for elt in node.elts)

    raise InvalidExpression(f"Unsupported expression type: {type(node).__name__}")


def validate_condition_expression(expression: str) -> list[str]:
    """Validate a condition expression without evaluating it.

    Args:
        expression: The expression string to validate

    Returns:
        List of validation error strings. Empty if valid.
    """
    try:
        tree = _parse(expression)
    except InvalidExpression as e:
        return [e.message]

    errors = []
    for node in ast.walk(tree):
        if isinstance(node, _ALLOWED_NODES):
            continue
        if isinstance(node, ast.Call):
            errors.append("Function calls are not allowed in conditions")
        elif isinstance(node, ast.Lambda):
            errors.append("Lambda expressions are not allowed")
        elif isinstance(node, ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp):
            errors.append("Comprehensions are not allowed")
        elif isinstance(node, ast.BinOp):
            errors.append("Arithmetic is not allowed in conditions")
        elif isinstance(node, ast.NamedExpr):
            errors.append("Assignment is not allowed in conditions")
        else:
            errors.append(f"Unsupported construct: {type(node).__name__}")

    return list(dict.fromkeys(errors))
