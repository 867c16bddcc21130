"""Registry of the eager formula functions.

Each function receives its already evaluated arguments as a list.  Aggregate
functions receive range arguments flattened into that list.  ``IF`` and
``IFERROR`` are lazy and live in the evaluator.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from gridcalc.formulas.errors import FormulaFunctionError

_FUNCTIONS: dict[str, Callable[[list], Any]] = {}
_AGGREGATES: set[str] = set()


def register(name: str, *, min_args: int = 1, max_args: int | None = None, aggregate: bool = False) -> Callable:
    """Decorator that registers a formula function under *name*.

    The wrapper enforces the arity before calling the function, so the
    implementations only deal with values.
    """

    def decorator(fn: Callable[[list], Any]) -> Callable[[list], Any]:
        def call(args: list) -> Any:
            if len(args) < min_args or (max_args is not None and len(args) > max_args):
                raise FormulaFunctionError(name, f"{name} {_arity_text(min_args, max_args)}")
            return fn(args)

        _FUNCTIONS[name] = call
        if aggregate:
            _AGGREGATES.add(name)
        return fn

    return decorator


def _arity_text(min_args: int, max_args: int | None) -> str:
    if max_args is None:
        return f"requires at least {min_args} argument{'s' if min_args != 1 else ''}"
    if min_args == max_args:
        return f"requires exactly {min_args} argument{'s' if min_args != 1 else ''}"
    return f"requires {min_args}-{max_args} arguments"


def get_function(name: str) -> Callable[[list], Any]:
    """Look up a function by (case-insensitive) name.

    Raises:
        FormulaFunctionError: If no function is registered under *name*.
    """
    try:
        return _FUNCTIONS[name.upper()]
    except KeyError:
        raise FormulaFunctionError(name.upper()) from None


def is_aggregate(name: str) -> bool:
    return name.upper() in _AGGREGATES


def function_names() -> list[str]:
    return sorted(_FUNCTIONS)


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------


@register("SUM", aggregate=True)
def _fn_sum(args: list) -> Any:
    return sum(args)


@register("AVERAGE", aggregate=True)
def _fn_average(args: list) -> float:
    return sum(args) / len(args)


@register("MIN", aggregate=True)
def _fn_min(args: list) -> Any:
    return min(args)


@register("MAX", aggregate=True)
def _fn_max(args: list) -> Any:
    return max(args)


@register("ABS", max_args=1)
def _fn_abs(args: list) -> Any:
    return abs(args[0])


@register("ROUND", max_args=2)
def _fn_round(args: list) -> float:
    """ROUND(number [, digits]): halves round away from zero (2.5 -> 3)."""
    digits = int(args[1]) if len(args) == 2 else 0
    exact = Decimal(repr(float(args[0])))
    if exact.as_tuple().exponent >= -digits:
        return float(exact)
    return float(exact.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP))


@register("SQRT", max_args=1)
def _fn_sqrt(args: list) -> float:
    return math.sqrt(args[0])


@register("MOD", min_args=2, max_args=2)
def _fn_mod(args: list) -> Any:
    """MOD(number, divisor): the result takes the sign of the divisor."""
    if args[1] == 0:
        raise ZeroDivisionError("Division by zero in MOD")
    return args[0] % args[1]


@register("POWER", min_args=2, max_args=2)
def _fn_power(args: list) -> float:
    return power(args[0], args[1])


def power(base: Any, exponent: Any) -> float:
    """``base ^ exponent`` in float arithmetic; overflow raises OverflowError."""
    return math.pow(base, exponent)


# ---------------------------------------------------------------------------
# Logical
# ---------------------------------------------------------------------------


@register("AND")
def _fn_and(args: list) -> bool:
    return all(bool(a) for a in args)


@register("OR")
def _fn_or(args: list) -> bool:
    return any(bool(a) for a in args)


@register("NOT", max_args=1)
def _fn_not(args: list) -> bool:
    return not bool(args[0])
