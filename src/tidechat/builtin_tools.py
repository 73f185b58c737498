"""Example tools shipped with tidechat.

``calculator`` evaluates plain arithmetic and ``get_time`` reports the
current time. Both illustrate the tool interface; register your own
:class:`~tidechat.tools.Tool` objects next to them.
"""

import ast
import math
import operator
import re
from datetime import datetime, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tidechat.tools import Tool, ToolError, tool

SAFE_ARITH_RE = re.compile(r"^[0-9+\-*/().,\s]+$")

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Div) and right == 0:
            # x/0 is never finite
            raise ToolError("Result is not a finite number.")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Tuple) and node.elts:
        # "a, b" evaluates every operand and yields the last one.
        values = [_eval_node(elt) for elt in node.elts]
        return values[-1]
    raise ToolError("Unsupported expression.")


def safe_calc(expression) -> float:
    """Evaluate an arithmetic expression made only of numbers and operators.

    Raises:
        ToolError: If the expression is empty, contains anything besides
            digits, ``+ - * /``, parentheses, ``.``, ``,`` and whitespace,
            is not valid arithmetic, or evaluates to a non-finite number.
    """
    s = str(expression if expression is not None else "").strip()
    if not s:
        raise ToolError("Empty expression.")
    if not SAFE_ARITH_RE.match(s):
        raise ToolError("Expression contains disallowed characters.")
    try:
        tree = ast.parse(s, mode="eval")
    except SyntaxError as e:
        raise ToolError(f"Invalid expression: {e.msg}") from e
    except RecursionError as e:
        raise ToolError("Expression is nested too deeply.") from e
    try:
        value = _eval_node(tree)
        finite = math.isfinite(value)
    except OverflowError as e:
        raise ToolError("Result is not a finite number.") from e
    except RecursionError as e:
        raise ToolError("Expression is nested too deeply.") from e
    if not finite:
        raise ToolError("Result is not a finite number.")
    return value


@tool(strict=True)
def calculator(expression: str):
    """Evaluate a basic arithmetic expression (numbers + - * / ( ) .).

    Args:
        expression: Arithmetic expression, e.g. (2+3)*4/5
    """
    return {"value": safe_calc(expression)}


@tool(strict=True)
def get_time(timezone: str = ""):
    """Get the current local time in ISO format.

    Args:
        timezone: Optional IANA timezone (best-effort). Example: America/Denver
    """
    now = datetime.now(dt_timezone.utc)
    iso = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    tz = str(timezone or "").strip()
    if not tz:
        return {"iso": iso}
    try:
        formatted = now.astimezone(ZoneInfo(tz)).strftime("%m/%d/%Y, %H:%M:%S")
    except (ZoneInfoNotFoundError, ValueError, OSError):
        formatted = None
    return {"iso": iso, "timezone": tz, "formatted": formatted}


def default_tools() -> list[Tool]:
    return [calculator, get_time]
