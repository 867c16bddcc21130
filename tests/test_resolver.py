"""Tests for reference resolution and cycle detection."""

from __future__ import annotations

import pytest

from gridcalc.coords import Coordinate
from gridcalc.formulas import (
    CircularReferenceError,
    ErrorKind,
    FormulaEvalError,
    FormulaParseError,
    RecalcBudgetExceeded,
)
from gridcalc.resolver import EvaluationContext, Resolver, format_value, parse_numeric
from gridcalc.store import InMemoryCellStore

SHEET = "s1"


def at(addr: str) -> Coordinate:
    return Coordinate.from_a1(SHEET, addr)


def seed(store: InMemoryCellStore, **cells: str) -> None:
    for addr, raw in cells.items():
        if raw.startswith("="):
            store.save_cell(SHEET, at(addr), None, raw)
        else:
            store.save_cell(SHEET, at(addr), raw, None)


class CountingStore(InMemoryCellStore):
    def __init__(self) -> None:
        super().__init__()
        self.single = 0
        self.batched = 0

    def get_cell(self, sheet_id, coordinate):
        self.single += 1
        return super().get_cell(sheet_id, coordinate)

    def get_cells(self, sheet_id, coordinates):
        self.batched += 1
        return super().get_cells(sheet_id, coordinates)


# ────────────────────────────────────────────────────────────────
# Plain content
# ────────────────────────────────────────────────────────────────


class TestParseNumeric:
    @pytest.mark.parametrize(
        "content, expected",
        [
            (None, 0),
            ("", 0),
            ("  ", 0),
            ("5", 5),
            (" 2.5 ", 2.5),
            ("-3", -3),
            ("1e3", 1000.0),
            ("TRUE", 1),
            ("false", 0),
            ("hello", 0),
            ("nan", 0),
            ("inf", 0),
        ],
    )
    def test_values(self, content, expected) -> None:
        assert parse_numeric(content) == expected

    def test_int_stays_int(self) -> None:
        assert isinstance(parse_numeric("42"), int)


class TestFormatValue:
    def test_integral_float(self) -> None:
        assert format_value(15.0) == "15"

    def test_float_noise_trimmed(self) -> None:
        assert format_value(0.1 + 0.2) == "0.3"

    def test_bool(self) -> None:
        assert format_value(True) == "TRUE"
        assert format_value(False) == "FALSE"

    def test_large_float(self) -> None:
        assert format_value(1e20) == "1e+20"

    def test_int(self) -> None:
        assert format_value(-7) == "-7"


# ────────────────────────────────────────────────────────────────
# Resolution
# ────────────────────────────────────────────────────────────────


class TestResolver:
    def test_reference_free_formula(self, store) -> None:
        assert Resolver(store).evaluate_formula("2+3*4", SHEET) == 14

    def test_missing_cells_are_zero(self, store) -> None:
        assert Resolver(store).evaluate_formula("A1+5", SHEET) == 5

    def test_plain_reference(self, store) -> None:
        seed(store, A1="5", B1="=A1+10")
        resolver = Resolver(store)
        assert resolver.evaluate_cell(at("B1")) == 15
        assert resolver.evaluate_formula("=B1*2", SHEET) == 30

    def test_non_numeric_content_is_zero(self, store) -> None:
        seed(store, A1="hello")
        assert Resolver(store).evaluate_formula("A1+1", SHEET) == 1

    def test_plain_cell_value(self, store) -> None:
        seed(store, A1="2.5")
        assert Resolver(store).evaluate_cell(at("A1")) == 2.5

    def test_stale_content_ignored(self, store) -> None:
        store.save_cell(SHEET, at("A1"), "5", None)
        store.save_cell(SHEET, at("B1"), "999", "=A1+10")
        assert Resolver(store).evaluate_formula("B1", SHEET) == 15

    def test_chain_reflects_source_change(self, store) -> None:
        seed(store, A1="1", B1="=A1*2", C1="=B1+1")
        resolver = Resolver(store)
        assert resolver.evaluate_cell(at("C1")) == 3
        seed(store, A1="10")
        assert resolver.evaluate_cell(at("C1")) == 21

    def test_diamond_is_not_a_cycle(self, store) -> None:
        seed(store, A1="1", B1="=A1", C1="=A1", D1="=B1+C1")
        assert Resolver(store).evaluate_cell(at("D1")) == 2

    def test_sheets_are_isolated(self, store) -> None:
        seed(store, A1="5")
        assert Resolver(store).evaluate_formula("A1", "other") == 0

    def test_range_reads_formula_cells(self, store) -> None:
        seed(store, A1="1", A2="=A1*2", A3="=A2*2")
        assert Resolver(store).evaluate_formula("SUM(A1:A3)", SHEET) == 7

    def test_one_batched_fetch_per_formula(self) -> None:
        store = CountingStore()
        seed(store, A1="1", A2="2", A3="3")
        assert Resolver(store).evaluate_formula("A1+A2+A3+A1", SHEET) == 7
        assert store.batched == 1
        assert store.single == 0

    def test_evaluation_error_names_cell(self, store) -> None:
        seed(store, A1="0", B1="=1/A1", C1="=B1+1")
        with pytest.raises(FormulaEvalError) as excinfo:
            Resolver(store).evaluate_cell(at("C1"))
        assert excinfo.value.coordinate == at("B1")

    def test_parse_error_in_referenced_cell(self, store) -> None:
        seed(store, B1="=(", A1="=B1+1")
        with pytest.raises(FormulaParseError) as excinfo:
            Resolver(store).evaluate_cell(at("A1"))
        assert excinfo.value.coordinate == at("B1")


class TestCycles:
    def test_self_reference(self, store) -> None:
        seed(store, A1="=A1+1")
        with pytest.raises(CircularReferenceError) as excinfo:
            Resolver(store).evaluate_cell(at("A1"))
        err = excinfo.value
        assert err.kind == ErrorKind.CIRCULAR_REFERENCE
        assert err.coordinate == at("A1")
        assert "A1" in err.message

    def test_three_cycle(self, store) -> None:
        seed(store, A1="=B1", B1="=C1", C1="=A1")
        with pytest.raises(CircularReferenceError) as excinfo:
            Resolver(store).evaluate_cell(at("A1"))
        assert excinfo.value.cycle_path == [at("A1"), at("B1"), at("C1"), at("A1")]
        assert excinfo.value.message == "Circular reference at A1: A1 -> B1 -> C1 -> A1"

    def test_cycle_through_preview(self, store) -> None:
        seed(store, A1="=B1", B1="=A1")
        with pytest.raises(CircularReferenceError):
            Resolver(store).evaluate_formula("A1 + 1", SHEET)

    def test_cycle_inside_range(self, store) -> None:
        seed(store, A3="=SUM(A1:A3)")
        with pytest.raises(CircularReferenceError):
            Resolver(store).evaluate_cell(at("A3"))

    def test_context_is_discarded(self, store) -> None:
        """A failed pass leaves nothing behind for the next request."""
        seed(store, A1="=A1")
        resolver = Resolver(store)
        with pytest.raises(CircularReferenceError):
            resolver.evaluate_cell(at("A1"))
        seed(store, A1="4")
        assert resolver.evaluate_cell(at("A1")) == 4


class TestBudgets:
    def test_depth_limit(self, store) -> None:
        seed(store, A1="1")
        for row in range(2, 11):
            seed(store, **{f"A{row}": f"=A{row - 1}+1"})
        with pytest.raises(RecalcBudgetExceeded) as excinfo:
            Resolver(store, max_depth=5).evaluate_cell(at("A10"))
        assert excinfo.value.kind == ErrorKind.RECALC_BUDGET_EXCEEDED
        assert Resolver(store, max_depth=20).evaluate_cell(at("A10")) == 10

    def test_long_chain_within_default_depth(self, store) -> None:
        seed(store, A1="1")
        for row in range(2, 901):
            seed(store, **{f"A{row}": f"=A{row - 1}+1"})
        assert Resolver(store).evaluate_cell(at("A900")) == 900

    def test_failure_leaves_path_empty(self, store) -> None:
        seed(store, A1="=B1", B1="=C1", C1="=1/0")
        ctx = EvaluationContext()
        with pytest.raises(FormulaEvalError):
            Resolver(store).resolve(at("A1"), ctx)
        assert ctx.path == []
        assert not ctx.is_active(at("A1"))

    def test_exponent_blowup_fails_fast(self, store) -> None:
        with pytest.raises(FormulaEvalError):
            Resolver(store).evaluate_formula("=9^9^9", SHEET)

    def test_range_cell_limit(self, store) -> None:
        with pytest.raises(FormulaParseError):
            Resolver(store, max_range_cells=4).evaluate_formula("SUM(A1:C3)", SHEET)


class TestEvaluationContext:
    def test_path_tracking(self) -> None:
        ctx = EvaluationContext()
        ctx.enter(at("A1"))
        ctx.enter(at("B1"))
        assert ctx.is_active(at("A1"))
        assert ctx.cycle_to(at("A1")) == [at("A1"), at("B1"), at("A1")]
        ctx.leave(at("B1"))
        assert not ctx.is_active(at("B1"))
        assert ctx.path == [at("A1")]
