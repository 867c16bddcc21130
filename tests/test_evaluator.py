"""Tests for the tree-walking evaluator and the function registry."""

from __future__ import annotations

import pytest

from gridcalc.coords import Address
from gridcalc.formulas import (
    ErrorKind,
    FormulaEvalError,
    FormulaFunctionError,
    evaluate_template,
    parse_formula,
)
from gridcalc.formulas.functions import function_names, get_function, is_aggregate


def ev(formula: str, **cells: float) -> object:
    """Evaluate *formula* with cells given as keyword arguments (A1=5)."""
    values = {Address.parse(k): v for k, v in cells.items()}
    return evaluate_template(parse_formula(formula), values)


class TestArithmetic:
    def test_precedence(self) -> None:
        assert ev("=2+3*4") == 14

    def test_parentheses(self) -> None:
        assert ev("=(2+3)*4") == 20

    def test_exponent_right_associative(self) -> None:
        """2^3^2 = 2^(3^2) = 512."""
        assert ev("=2^3^2") == 512

    def test_unary_minus_binds_looser_than_exponent(self) -> None:
        assert ev("=-2^2") == -4

    def test_percent(self) -> None:
        assert ev("=50%") == 0.5
        assert ev("=200 * 10%") == 20

    def test_integer_and_float_literals(self) -> None:
        assert ev("=7") == 7
        assert isinstance(ev("=7"), int)
        assert ev("=1.5e2") == 150.0

    def test_division_returns_float(self) -> None:
        assert ev("=7/2") == 3.5

    def test_comparisons(self) -> None:
        assert ev("=1 < 2") is True
        assert ev("=1 >= 2") is False
        assert ev("=A1 = 5", A1=5) is True
        assert ev("=A1 <> 5", A1=5) is False

    def test_booleans_are_numeric(self) -> None:
        assert ev("=TRUE + 1") == 2


class TestReferences:
    def test_substitution(self) -> None:
        assert ev("=A1 + 10", A1=5) == 15

    def test_missing_value_reads_zero(self) -> None:
        assert ev("=A1 + 5") == 5

    def test_repeated_reference(self) -> None:
        assert ev("=A1 * A1 + A1", A1=3) == 12

    def test_range_sum(self) -> None:
        assert ev("=SUM(A1:A3)", A1=1, A2=2, A3=3) == 6

    def test_range_with_gaps(self) -> None:
        assert ev("=AVERAGE(A1:A4)", A1=4, A3=4) == 2

    def test_range_as_scalar_rejected(self) -> None:
        with pytest.raises(FormulaEvalError, match="range"):
            ev("=A1:A3 + 1")

    def test_bare_range_rejected(self) -> None:
        with pytest.raises(FormulaEvalError):
            ev("=A1:A3")


class TestFunctions:
    def test_aggregates(self) -> None:
        assert ev("=SUM(1, 2, 3)") == 6
        assert ev("=MIN(4, A1, 9)", A1=2) == 2
        assert ev("=MAX(A1:B1, 3)", A1=7, B1=1) == 7

    def test_case_insensitive_names(self) -> None:
        assert ev("=sum(1, 2)") == 3

    def test_math(self) -> None:
        assert ev("=ABS(-3)") == 3
        assert ev("=ROUND(2.567, 2)") == 2.57
        assert ev("=ROUND(2.4)") == 2
        assert ev("=SQRT(16)") == 4.0
        assert ev("=MOD(7, 3)") == 1
        assert ev("=POWER(2, 10)") == 1024

    def test_round_halves_away_from_zero(self) -> None:
        assert ev("=ROUND(2.5)") == 3
        assert ev("=ROUND(-2.5)") == -3
        assert ev("=ROUND(1.005, 2)") == 1.01
        assert ev("=ROUND(1250, -2)") == 1300
        assert ev("=ROUND(1e300, 2)") == 1e300

    def test_powers_are_floats(self) -> None:
        assert ev("=2^3") == 8
        assert isinstance(ev("=2^3"), float)
        assert ev("=A1^0.5", A1=9) == 3

    def test_logical(self) -> None:
        assert ev("=AND(TRUE, 1 > 0)") is True
        assert ev("=OR(FALSE, 0)") is False
        assert ev("=NOT(A1)", A1=0) is True

    def test_if_is_lazy(self) -> None:
        assert ev("=IF(A1 > 0, 10, 1/0)", A1=1) == 10
        assert ev("=IF(A1 > 0, 10, 20)", A1=0) == 20
        assert ev("=IF(FALSE, 1)") is False

    def test_iferror(self) -> None:
        assert ev("=IFERROR(1/0, 7)") == 7
        assert ev("=IFERROR(A1 * 2, 7)", A1=4) == 8
        assert ev("=IFERROR(NOPE(1), -1)") == -1

    def test_registry(self) -> None:
        assert "SUM" in function_names()
        assert is_aggregate("sum")
        assert not is_aggregate("ABS")
        assert get_function("abs")([-2]) == 2
        with pytest.raises(FormulaFunctionError):
            get_function("NOPE")


class TestEvaluationErrors:
    @pytest.mark.parametrize(
        "formula",
        [
            "=1/0",
            "=A1/A2",
            "=MOD(5, 0)",
            "=NOPE(1)",
            "=ABS(1, 2)",
            "=MOD(1)",
            "=IF(1)",
            "=IFERROR(1)",
            "=SQRT(-1)",
            "=AVERAGE()",
            "=(-8)^0.5",
            "=10^400.0",
            "=10^5000",
            "=POWER(10, 5000)",
            "=9^9^9",
            "=" + "9" * 200 + " * " + "9" * 200,
        ],
    )
    def test_failures_surface_as_evaluation_error(self, formula: str) -> None:
        with pytest.raises(FormulaEvalError) as excinfo:
            ev(formula)
        assert excinfo.value.kind == ErrorKind.EVALUATION_ERROR
        assert excinfo.value.message

    def test_original_message_is_kept(self) -> None:
        with pytest.raises(FormulaEvalError, match="Division by zero"):
            ev("=1/0")

    def test_unknown_function_names_it(self) -> None:
        with pytest.raises(FormulaFunctionError, match="NOPE") as excinfo:
            ev("=nope(1)")
        assert excinfo.value.func_name == "NOPE"

    def test_oversized_integer_result(self) -> None:
        big = "9" * 200
        with pytest.raises(FormulaEvalError, match="too large"):
            ev(f"={big} * {big}")
        assert ev(f"={big} - {big}") == 0
