"""Tree-walking evaluator for parsed formula templates.

The caller resolves every referenced cell first and passes the values in;
this module never touches storage.  Any failure while walking the tree is
reported as :class:`FormulaEvalError` with the original message.
"""

from __future__ import annotations

import math
import sys
from typing import Any, Mapping, Union

from lark import Token, Tree

from gridcalc.coords import Address
from gridcalc.formulas.errors import FormulaError, FormulaEvalError
from gridcalc.formulas.functions import get_function, is_aggregate, power
from gridcalc.formulas.parser import ParsedFormula, expand_range, parse_ref

Number = Union[int, float, bool]

_BINARY_OPS: dict[str, Any] = {
    "add": lambda a, b: a + b,
    "sub": lambda a, b: a - b,
    "mul": lambda a, b: a * b,
    "div": lambda a, b: _divide(a, b),
    "pow": power,
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
    "gte": lambda a, b: a >= b,
    "lte": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
}


def evaluate_template(
    formula: ParsedFormula | Tree,
    values: Mapping[Address, Number] | None = None,
) -> Number:
    """Evaluate a parsed formula with its references substituted.

    Args:
        formula: Result of ``parse_formula()`` (or its tree).
        values: Value of every referenced address.  Addresses missing from
            the mapping read as 0.

    Returns:
        The computed number (``bool`` for comparisons and logical functions).

    Raises:
        FormulaEvalError: On any evaluation failure.
    """
    tree = formula.tree if isinstance(formula, ParsedFormula) else formula
    try:
        result = _eval(tree, values or {})
    except FormulaEvalError:
        raise
    except FormulaError as exc:
        raise FormulaEvalError(exc.message) from exc
    except RecursionError as exc:
        raise FormulaEvalError("Formula is nested too deeply") from exc
    except Exception as exc:
        raise FormulaEvalError(f"Error in formula: {exc}") from exc
    return _check_result(result)


def _check_result(result: Any) -> Number:
    if isinstance(result, list):
        raise FormulaEvalError("A range cannot be used as a single value")
    if isinstance(result, complex):
        raise FormulaEvalError("Result is not a real number")
    if isinstance(result, float) and not math.isfinite(result):
        raise FormulaEvalError("Result is not a finite number")
    if isinstance(result, int) and abs(result) > sys.float_info.max:
        raise FormulaEvalError("Result is too large")
    return result


def _divide(left: Any, right: Any) -> Any:
    if right == 0:
        raise ZeroDivisionError("Division by zero in formula")
    return left / right


def _eval(node: Tree | Token, values: Mapping[Address, Number]) -> Any:
    if isinstance(node, Token):
        return _eval_token(node)

    rule = node.data

    if rule == "start":
        return _eval(node.children[0], values)

    op = _BINARY_OPS.get(rule)
    if op is not None:
        left = _scalar(_eval(node.children[0], values))
        right = _scalar(_eval(node.children[1], values))
        return op(left, right)

    if rule == "neg":
        return -_scalar(_eval(node.children[0], values))
    if rule == "pos":
        return _scalar(_eval(node.children[0], values))
    if rule == "percent":
        return _scalar(_eval(node.children[0], values)) / 100

    if rule == "number":
        return _parse_number(node.children[0])
    if rule == "boolean":
        return str(node.children[0]) == "TRUE"

    if rule == "cell_ref":
        return values.get(parse_ref(node.children[0]), 0)
    if rule == "range_ref":
        return [values.get(addr, 0) for addr in expand_range(node.children[0])]

    if rule == "func_call":
        return _eval_func(node, values)

    raise FormulaEvalError(f"Unknown node type: {rule}")


def _eval_token(token: Token) -> Any:
    """Evaluate a bare token (shouldn't normally happen at top level)."""
    if token.type == "NUMBER":
        return _parse_number(token)
    if token.type == "BOOL":
        return str(token) == "TRUE"
    raise FormulaEvalError(f"Unexpected token: {str(token)!r}")


def _parse_number(token: Token) -> int | float:
    s = str(token)
    if any(ch in s for ch in ".eE"):
        return float(s)
    return int(s)


def _scalar(value: Any) -> Any:
    if isinstance(value, list):
        raise FormulaEvalError("A range can only be used as a function argument")
    return value


def _flatten_args(args: list) -> list:
    """Flatten one level of lists (ranges) in an argument list."""
    result = []
    for a in args:
        if isinstance(a, list):
            result.extend(a)
        else:
            result.append(a)
    return result


def _eval_func(node: Tree, values: Mapping[Address, Number]) -> Any:
    func_name = str(node.children[0]).upper()
    args_node = node.children[1]
    raw_args = args_node.children if args_node.children else []

    if func_name == "IF":
        return _fn_if(raw_args, values)
    if func_name == "IFERROR":
        return _fn_iferror(raw_args, values)

    fn = get_function(func_name)
    evaluated = [_eval(arg, values) for arg in raw_args]
    if is_aggregate(func_name):
        evaluated = _flatten_args(evaluated)
    else:
        evaluated = [_scalar(a) for a in evaluated]
    return fn(evaluated)


def _fn_if(raw_args: list, values: Mapping[Address, Number]) -> Any:
    """IF(condition, then_value [, else_value]), evaluated lazily."""
    if len(raw_args) < 2 or len(raw_args) > 3:
        raise FormulaEvalError("IF requires 2-3 arguments")
    if _scalar(_eval(raw_args[0], values)):
        return _eval(raw_args[1], values)
    if len(raw_args) == 3:
        return _eval(raw_args[2], values)
    return False


def _fn_iferror(raw_args: list, values: Mapping[Address, Number]) -> Any:
    """IFERROR(value, fallback): fallback when the first argument fails."""
    if len(raw_args) != 2:
        raise FormulaEvalError("IFERROR requires exactly 2 arguments")
    try:
        return _check_result(_scalar(_eval(raw_args[0], values)))
    except (FormulaError, ArithmeticError, ValueError, TypeError):
        return _eval(raw_args[1], values)
