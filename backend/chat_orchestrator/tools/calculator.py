"""
Arithmetic evaluation without eval().

The expression is parsed with `ast` and only numeric literals, + - * / // %
** and unary +/- are walked. Anything else is rejected before evaluation.
"""

import ast
import math
import operator
import re

_ALLOWED_CHARS = re.compile(r"^[0-9+\-*/().%\s]+$")
_MAX_EXPRESSION_LENGTH = 200
_MAX_EXPONENT = 100
# Every intermediate integer stays below this size
_MAX_RESULT_BITS = 4096

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class CalculationError(ValueError):
    pass


def evaluate_expression(expression: str) -> float | int:
    expression = expression.strip()
    if not expression:
        raise CalculationError("empty expression")
    if len(expression) > _MAX_EXPRESSION_LENGTH:
        raise CalculationError("expression too long")
    if not _ALLOWED_CHARS.match(expression):
        raise CalculationError("expression contains unsupported characters")

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise CalculationError(f"malformed expression: {exc.msg}") from exc

    result = _evaluate(tree.body)
    if isinstance(result, float) and not math.isfinite(result):
        raise CalculationError("result is not a finite number")
    return result


def _evaluate(node: ast.AST) -> float | int:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return _bounded(node.value)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        try:
            return _bounded(_BINARY_OPS[type(node.op)](left, right))
        except ZeroDivisionError as exc:
            raise CalculationError("division by zero") from exc
        except OverflowError as exc:
            raise CalculationError("result too large") from exc
    raise CalculationError(f"unsupported syntax: {type(node).__name__}")


def _check_power(base: float | int, exponent: float | int) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise CalculationError("exponent too large")
    # Integer powers are exact, so estimate the size before computing it
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if abs(base).bit_length() * exponent > _MAX_RESULT_BITS:
            raise CalculationError("result too large")


def _bounded(value: float | int) -> float | int:
    if isinstance(value, int) and value.bit_length() > _MAX_RESULT_BITS:
        raise CalculationError("result too large")
    return value
