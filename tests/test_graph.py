"""Tests for the per-sheet dependency graph."""

from __future__ import annotations

import threading

import pytest

from gridcalc.coords import Coordinate
from gridcalc.formulas import CircularReferenceError, RecalcBudgetExceeded
from gridcalc.graph import DependencyGraph

SHEET = "s1"


def at(addr: str, sheet: str = SHEET) -> Coordinate:
    return Coordinate.from_a1(sheet, addr)


def cells(*addrs: str) -> list[Coordinate]:
    return [at(a) for a in addrs]


class TestEdges:
    def test_set_edges_both_directions(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("C1"), cells("A1", "B1"))
        assert g.sources_of(at("C1")) == {at("A1"), at("B1")}
        assert g.dependents_of(at("A1")) == {at("C1")}
        assert g.dependents_of(at("B1")) == {at("C1")}
        assert g.edge_count(SHEET) == 2

    def test_set_edges_replaces(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("C1"), cells("A1", "B1"))
        g.set_edges(at("C1"), cells("B1", "B2"))
        assert g.dependents_of(at("A1")) == set()
        assert g.dependents_of(at("B2")) == {at("C1")}
        assert g.edge_count(SHEET) == 2

    def test_clear_edges(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("C1"), cells("A1"))
        g.clear_edges(at("C1"))
        assert g.sources_of(at("C1")) == set()
        assert g.dependents_of(at("A1")) == set()
        assert g.edge_count(SHEET) == 0

    def test_self_loop_rejected_without_mutation(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("A1"), cells("B1"))
        with pytest.raises(CircularReferenceError) as excinfo:
            g.set_edges(at("A1"), cells("B2", "A1"))
        assert excinfo.value.cycle_path == [at("A1"), at("A1")]
        assert g.sources_of(at("A1")) == {at("B1")}

    def test_cross_sheet_rejected(self) -> None:
        g = DependencyGraph()
        with pytest.raises(ValueError, match="Cross-sheet"):
            g.set_edges(at("A1"), [at("B1", "other")])

    def test_sheets_are_separate(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("B1"), cells("A1"))
        assert g.dependents_of(at("A1", "other")) == set()


class TestTransitiveDependents:
    def test_breadth_first_order(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("B1"), cells("A1"))
        g.set_edges(at("D1"), cells("A1", "C1"))
        g.set_edges(at("C1"), cells("B1"))
        assert g.transitive_dependents(at("A1")) == cells("B1", "D1", "C1")

    def test_each_cell_once(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("B1"), cells("A1"))
        g.set_edges(at("C1"), cells("A1"))
        g.set_edges(at("D1"), cells("B1", "C1"))
        assert g.transitive_dependents(at("A1")) == cells("B1", "C1", "D1")

    def test_excludes_source_on_cycle(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("B1"), cells("A1"))
        g.set_edges(at("A1"), cells("B1"))
        assert g.transitive_dependents(at("A1")) == cells("B1")

    def test_no_dependents(self) -> None:
        assert DependencyGraph().transitive_dependents(at("Z9")) == []

    def test_closure_size_limit(self) -> None:
        g = DependencyGraph()
        for row in range(2, 8):
            g.set_edges(at(f"A{row}"), cells(f"A{row - 1}"))
        assert len(g.transitive_dependents(at("A1"), max_size=6)) == 6
        with pytest.raises(RecalcBudgetExceeded):
            g.transitive_dependents(at("A1"), max_size=5)


class TestLoading:
    def test_load_sheet(self) -> None:
        g = DependencyGraph()
        formulas = [
            (at("B1"), "=A1"),
            (at("C1"), "=("),
            (at("D1"), "=D1+A1"),
        ]
        assert g.load_sheet(SHEET, formulas) == 2
        assert g.is_loaded(SHEET)
        assert g.dependents_of(at("A1")) == {at("B1"), at("D1")}
        assert g.sources_of(at("D1")) == {at("A1")}

    def test_load_replaces_existing(self) -> None:
        g = DependencyGraph()
        g.set_edges(at("Z1"), cells("Y1"))
        g.load_sheet(SHEET, [(at("B1"), "=A1")])
        assert g.dependents_of(at("Y1")) == set()

    def test_ensure_loaded_reads_store_once(self, store) -> None:
        store.save_cell(SHEET, at("B1"), None, "=A1*2")
        g = DependencyGraph()
        g.ensure_loaded(SHEET, store)
        assert g.dependents_of(at("A1")) == {at("B1")}

        store.save_cell(SHEET, at("C1"), None, "=A1")
        g.ensure_loaded(SHEET, store)
        assert g.dependents_of(at("A1")) == {at("B1")}

    def test_rebuild(self, store) -> None:
        store.save_cell(SHEET, at("B1"), None, "=A1")
        store.save_cell("other", at("B1", "other"), None, "=SUM(A1:A2)")
        g = DependencyGraph()
        g.set_edges(at("Q1", "gone"), [at("P1", "gone")])

        assert g.rebuild(store) == 2
        assert g.dependents_of(at("A1")) == {at("B1")}
        assert g.dependents_of(at("A2", "other")) == {at("B1", "other")}
        assert g.dependents_of(at("P1", "gone")) == set()

    def test_drop_sheet(self) -> None:
        g = DependencyGraph()
        g.load_sheet(SHEET, [(at("B1"), "=A1")])
        g.drop_sheet(SHEET)
        assert not g.is_loaded(SHEET)
        assert g.dependents_of(at("A1")) == set()

    def test_drop_sheet_keeps_its_lock(self) -> None:
        g = DependencyGraph()
        held = g.lock(SHEET)
        with held:
            g.load_sheet(SHEET, [(at("B1"), "=A1")])
            g.drop_sheet(SHEET)
            assert g.lock(SHEET) is held
        assert not g.is_loaded(SHEET)

    def test_drop_sheet_waits_for_writer(self) -> None:
        g = DependencyGraph()
        g.load_sheet(SHEET, [(at("B1"), "=A1")])
        dropped = threading.Event()

        def drop() -> None:
            g.drop_sheet(SHEET)
            dropped.set()

        with g.lock(SHEET):
            worker = threading.Thread(target=drop)
            worker.start()
            assert not dropped.wait(0.1)
            g.set_edges(at("C1"), cells("B1"))
        worker.join()
        assert dropped.is_set()
        assert g.edge_count(SHEET) == 0


class TestConcurrency:
    def test_concurrent_writers_on_one_sheet(self) -> None:
        g = DependencyGraph()

        def writer(col: str) -> None:
            for row in range(2, 50):
                with g.lock(SHEET):
                    g.set_edges(at(f"{col}{row}"), cells(f"{col}{row - 1}"))

        threads = [threading.Thread(target=writer, args=(c,)) for c in "ABCD"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert g.edge_count(SHEET) == 4 * 48
        assert len(g.transitive_dependents(at("C1"))) == 48
