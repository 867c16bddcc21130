"""Recalculation after a cell write.

:meth:`Recalculator.on_cell_written` saves the cell, replaces its dependency
edges, evaluates it, then re-evaluates every cell that transitively depends
on it.  Per-cell failures are returned as values (:class:`CellResult.error`)
so one broken dependent never stops its siblings.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Union

from pydantic import BaseModel, Field

from gridcalc.coords import Coordinate
from gridcalc.formulas.errors import (
    CircularReferenceError,
    ErrorInfo,
    FormulaError,
    FormulaEvalError,
    RecalcBudgetExceeded,
)
from gridcalc.formulas.parser import DEFAULT_MAX_RANGE_CELLS, is_formula, parse_formula
from gridcalc.graph import DependencyGraph
from gridcalc.resolver import Resolver, format_value
from gridcalc.store import EMPTY, CellSnapshot, CellStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLOSURE_SIZE = 10_000
DEFAULT_MAX_RECALC_SECONDS = 5.0


class CellResult(BaseModel):
    """Outcome for one cell of a recalculation."""

    coordinate: Coordinate
    value: Union[bool, int, float, None] = None
    content: str | None = None
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def display(self) -> str:
        """What a viewer should see: the content, or the error token."""
        if self.error is not None:
            return self.error.token
        return self.content or ""


class RecalcResult(BaseModel):
    """Everything one write changed, edited cell first."""

    sheet_id: str
    results: list[CellResult] = Field(default_factory=list)
    error: ErrorInfo | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.results) and self.results[0].ok

    @property
    def edited(self) -> CellResult:
        return self.results[0]

    @property
    def dependents(self) -> list[CellResult]:
        return self.results[1:]

    @property
    def failures(self) -> list[CellResult]:
        return [r for r in self.results if r.error is not None]


class CellWrite(BaseModel):
    """One entry of a batched write."""

    coordinate: Coordinate
    formula: str | None = None
    content: str | None = None
    hyperlink: str | None = None


class Recalculator:
    """Applies cell writes and propagates them to dependent cells.

    Parameters
    ----------
    store : CellStore
        System of record; written inside one transaction per write.
    graph : DependencyGraph
        Shared edge state; the sheet lock is held for the whole write.
    resolver : Resolver
        Evaluates each affected cell with a fresh context.
    max_closure_size : int
        Most dependents one write may recompute.
    max_recalc_seconds : float
        Wall-clock budget for one write's cascade.
    """

    def __init__(
        self,
        store: CellStore,
        graph: DependencyGraph,
        resolver: Resolver,
        *,
        max_closure_size: int = DEFAULT_MAX_CLOSURE_SIZE,
        max_recalc_seconds: float = DEFAULT_MAX_RECALC_SECONDS,
        max_range_cells: int = DEFAULT_MAX_RANGE_CELLS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.graph = graph
        self.resolver = resolver
        self.max_closure_size = max_closure_size
        self.max_recalc_seconds = max_recalc_seconds
        self.max_range_cells = max_range_cells
        self._clock = clock

    def on_cell_written(
        self,
        sheet_id: str,
        coordinate: Coordinate,
        formula: str | None,
        *,
        content: str | None = None,
        hyperlink: str | None = None,
    ) -> RecalcResult:
        """Persist a write and recompute everything it affects.

        Args:
            sheet_id: Sheet being written.
            coordinate: The written cell.
            formula: New formula, or ``None``/blank for a plain value.
            content: Plain value (ignored when *formula* is given).
            hyperlink: New hyperlink; ``None`` keeps the stored one.

        Returns:
            A :class:`RecalcResult`: the edited cell first, then every
            transitive dependent in breadth-first discovery order.
        """
        if coordinate.sheet_id != sheet_id:
            coordinate = coordinate.address.on(sheet_id)
        if not is_formula(formula):
            formula = None

        started = self._clock()
        with self.graph.lock(sheet_id):
            self.graph.ensure_loaded(sheet_id, self.store)
            prior_sources = self.graph.sources_of(coordinate)
            try:
                with self.store.transaction():
                    result = self._write(sheet_id, coordinate, formula, content, hyperlink, started)
            except Exception:
                # Store and graph must not diverge: undo the edge change.
                self.graph.set_edges(coordinate, prior_sources - {coordinate})
                raise

        result.elapsed_ms = round((self._clock() - started) * 1000, 3)
        logger.debug(
            "recalculated %s on %s: %d cells in %.1f ms",
            coordinate.a1, sheet_id, len(result.results), result.elapsed_ms,
        )
        return result

    def on_cells_written(self, sheet_id: str, writes: Iterable[CellWrite]) -> list[RecalcResult]:
        """Apply several writes in order; one result per write."""
        return [
            self.on_cell_written(
                sheet_id,
                w.coordinate,
                w.formula,
                content=w.content,
                hyperlink=w.hyperlink,
            )
            for w in writes
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _write(
        self,
        sheet_id: str,
        coordinate: Coordinate,
        formula: str | None,
        content: str | None,
        hyperlink: str | None,
        started: float,
    ) -> RecalcResult:
        existing = self.store.get_cell(sheet_id, coordinate) or EMPTY
        link = hyperlink if hyperlink is not None else existing.hyperlink
        if formula is not None:
            # Content is filled in once the formula has been evaluated.
            self.store.save_cell(sheet_id, coordinate, None, formula, link)
        else:
            self.store.save_cell(sheet_id, coordinate, content, None, link)

        edge_error = self._update_edges(coordinate, formula)
        if edge_error is not None:
            return RecalcResult(
                sheet_id=sheet_id,
                results=[CellResult(coordinate=coordinate, error=edge_error.to_info())],
            )

        first = self._recompute(coordinate)
        if first.error is not None:
            # The formula stays saved so it can be fixed; dependents wait.
            return RecalcResult(sheet_id=sheet_id, results=[first])

        try:
            closure = self.graph.transitive_dependents(coordinate, max_size=self.max_closure_size)
        except RecalcBudgetExceeded as exc:
            return RecalcResult(sheet_id=sheet_id, results=[first], error=exc.to_info())

        results = [first]
        for done, dep in enumerate(closure):
            if self._clock() - started > self.max_recalc_seconds:
                exc = RecalcBudgetExceeded(
                    f"Recalculation of {coordinate.a1} ran past {self.max_recalc_seconds}s "
                    f"after {done} of {len(closure)} dependents",
                    coordinate,
                )
                return RecalcResult(sheet_id=sheet_id, results=results, error=exc.to_info())
            results.append(self._recompute(dep))

        return RecalcResult(sheet_id=sheet_id, results=results)

    def _update_edges(self, coordinate: Coordinate, formula: str | None) -> FormulaError | None:
        """Replace the cell's edges; return the error that fails the cell, if any."""
        self.graph.clear_edges(coordinate)
        if formula is None:
            return None

        try:
            refs = parse_formula(formula, max_range_cells=self.max_range_cells).refs
        except FormulaError as exc:
            exc.coordinate = coordinate
            return exc

        sources = [addr.on(coordinate.sheet_id) for addr in refs]
        try:
            self.graph.set_edges(coordinate, sources)
        except CircularReferenceError as exc:
            # Keep the other edges so fixing a referenced cell still reaches us.
            self.graph.set_edges(coordinate, [s for s in sources if s != coordinate])
            return exc
        return None

    def _recompute(self, coordinate: Coordinate) -> CellResult:
        """Evaluate one cell top-level and store its new content."""
        snapshot = self.store.get_cell(coordinate.sheet_id, coordinate) or EMPTY
        try:
            value = self.resolver.evaluate_cell(coordinate, snapshot)
            content = format_value(value) if snapshot.has_formula else snapshot.content
        except FormulaError as exc:
            return self._fail(coordinate, snapshot, exc)
        except (ArithmeticError, ValueError, TypeError) as exc:
            # Value errors outside the evaluator still fail only this cell.
            logger.debug("Unexpected evaluation failure at %s: %s", coordinate, exc)
            return self._fail(coordinate, snapshot, FormulaEvalError(f"Error in formula: {exc}", coordinate))

        if snapshot.has_formula:
            self.store.update_content(coordinate.sheet_id, coordinate, content)
        return CellResult(coordinate=coordinate, value=value, content=content)

    def _fail(self, coordinate: Coordinate, snapshot: CellSnapshot, exc: FormulaError) -> CellResult:
        info = exc.to_info()
        if info.coordinate is None:
            info.coordinate = coordinate
        if snapshot.has_formula:
            self.store.update_content(coordinate.sheet_id, coordinate, None)
        return CellResult(coordinate=coordinate, error=info)
