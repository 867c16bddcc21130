"""Per-sheet dependency graph for formula cells.

An edge ``source -> dependent`` means the dependent's formula reads the
source.  Both directions are kept so that replacing one cell's edges is
proportional to that cell's references, not to the sheet.

The graph is derived state: it is built from stored formulas (lazily per
sheet, or all at once via :meth:`DependencyGraph.rebuild`) and must be kept
in step with the store by the caller holding :meth:`DependencyGraph.lock`.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Iterable

from gridcalc.coords import Address, Coordinate
from gridcalc.formulas.errors import CircularReferenceError, FormulaError, RecalcBudgetExceeded
from gridcalc.formulas.parser import parse_formula

if TYPE_CHECKING:
    from gridcalc.store import CellStore

logger = logging.getLogger(__name__)


class _SheetEdges:
    __slots__ = ("sources", "dependents", "lock")

    def __init__(self) -> None:
        # dependent -> cells its formula reads
        self.sources: dict[Address, set[Address]] = {}
        # source -> cells whose formulas read it (reverse edges)
        self.dependents: dict[Address, set[Address]] = {}
        self.lock = threading.RLock()


class DependencyGraph:
    """Tracks formula dependencies for every loaded sheet."""

    def __init__(self) -> None:
        self._sheets: dict[str, _SheetEdges] = {}
        self._loaded: set[str] = set()
        self._guard = threading.Lock()

    def _sheet(self, sheet_id: str) -> _SheetEdges:
        with self._guard:
            edges = self._sheets.get(sheet_id)
            if edges is None:
                edges = self._sheets[sheet_id] = _SheetEdges()
            return edges

    def lock(self, sheet_id: str) -> threading.RLock:
        """The exclusive lock for one sheet's edges.

        Hold it across edge mutation and traversal of that sheet.
        """
        return self._sheet(sheet_id).lock

    # ------------------------------------------------------------------
    # Edge mutation
    # ------------------------------------------------------------------

    def set_edges(self, dependent: Coordinate, sources: Iterable[Coordinate]) -> None:
        """Replace every edge of *dependent* with edges from *sources*.

        Raises:
            CircularReferenceError: If *dependent* is among *sources*.  The
                prior edges are left untouched.
            ValueError: If a source lives on another sheet.
        """
        new_sources: set[Address] = set()
        for src in sources:
            if src.sheet_id != dependent.sheet_id:
                raise ValueError(f"Cross-sheet edge {src} -> {dependent} is not supported")
            if src == dependent:
                raise CircularReferenceError([dependent, dependent])
            new_sources.add(src.address)

        edges = self._sheet(dependent.sheet_id)
        with edges.lock:
            self._replace(edges, dependent.address, new_sources)

    def clear_edges(self, dependent: Coordinate) -> None:
        """Drop every edge of *dependent* (its formula was removed)."""
        edges = self._sheet(dependent.sheet_id)
        with edges.lock:
            self._replace(edges, dependent.address, set())

    @staticmethod
    def _replace(edges: _SheetEdges, dependent: Address, new_sources: set[Address]) -> None:
        for old in edges.sources.pop(dependent, set()):
            readers = edges.dependents.get(old)
            if readers is not None:
                readers.discard(dependent)
                if not readers:
                    del edges.dependents[old]
        if not new_sources:
            return
        edges.sources[dependent] = new_sources
        for src in new_sources:
            edges.dependents.setdefault(src, set()).add(dependent)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def dependents_of(self, source: Coordinate) -> set[Coordinate]:
        """Cells whose formulas read *source* directly."""
        edges = self._sheet(source.sheet_id)
        with edges.lock:
            readers = set(edges.dependents.get(source.address, ()))
        return {addr.on(source.sheet_id) for addr in readers}

    def sources_of(self, dependent: Coordinate) -> set[Coordinate]:
        """Cells the formula of *dependent* reads."""
        edges = self._sheet(dependent.sheet_id)
        with edges.lock:
            sources = set(edges.sources.get(dependent.address, ()))
        return {addr.on(dependent.sheet_id) for addr in sources}

    def transitive_dependents(self, source: Coordinate, *, max_size: int | None = None) -> list[Coordinate]:
        """Every cell reachable from *source*, breadth-first, each once.

        *source* itself is never part of the result, even when a cycle leads
        back to it.  Direct dependents are visited in row/column order so the
        discovery order is stable.

        Raises:
            RecalcBudgetExceeded: If more than *max_size* cells are reachable.
        """
        sheet_id = source.sheet_id
        edges = self._sheet(sheet_id)
        start = source.address
        order: list[Address] = []
        seen: set[Address] = {start}
        queue: deque[Address] = deque([start])

        with edges.lock:
            while queue:
                cell = queue.popleft()
                readers = edges.dependents.get(cell)
                if not readers:
                    continue
                for dep in sorted(readers, key=lambda a: (a.row, a.column)):
                    if dep in seen:
                        continue
                    seen.add(dep)
                    order.append(dep)
                    queue.append(dep)
                    if max_size is not None and len(order) > max_size:
                        raise RecalcBudgetExceeded(
                            f"More than {max_size} cells depend on {source.a1}",
                            source,
                        )

        return [addr.on(sheet_id) for addr in order]

    def edge_count(self, sheet_id: str) -> int:
        edges = self._sheet(sheet_id)
        with edges.lock:
            return sum(len(s) for s in edges.sources.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_loaded(self, sheet_id: str) -> bool:
        with self._guard:
            return sheet_id in self._loaded

    def load_sheet(self, sheet_id: str, formulas: Iterable[tuple[Coordinate, str]]) -> int:
        """(Re)build one sheet's edges from its stored formulas.

        Formulas that do not parse contribute no edges; self-references are
        dropped.  Returns the number of formula cells registered.
        """
        fresh = _SheetEdges()
        count = 0
        for coord, formula in formulas:
            try:
                refs = parse_formula(formula).refs
            except FormulaError as exc:
                logger.debug("skipping edges of %s: %s", coord, exc)
                continue
            sources = {addr for addr in refs if addr != coord.address}
            self._replace(fresh, coord.address, sources)
            count += 1

        # Swap contents rather than the object: other threads may be waiting
        # on its lock.  Lock order is always sheet lock, then guard.
        current = self._sheet(sheet_id)
        with current.lock:
            current.sources = fresh.sources
            current.dependents = fresh.dependents
            with self._guard:
                self._loaded.add(sheet_id)
        return count

    def ensure_loaded(self, sheet_id: str, store: CellStore) -> None:
        """Load *sheet_id* from *store* unless it already is."""
        with self.lock(sheet_id):
            if not self.is_loaded(sheet_id):
                self.load_sheet(sheet_id, store.iter_formulas(sheet_id))

    def rebuild(self, store: CellStore) -> int:
        """Rebuild every sheet from *store*.  Returns the formula cell count."""
        by_sheet: dict[str, list[tuple[Coordinate, str]]] = {}
        for coord, formula in store.iter_formulas():
            by_sheet.setdefault(coord.sheet_id, []).append((coord, formula))

        with self._guard:
            stale = set(self._sheets) - set(by_sheet)
        for sheet_id in stale:
            self.load_sheet(sheet_id, [])

        return sum(self.load_sheet(sheet_id, rows) for sheet_id, rows in by_sheet.items())

    def drop_sheet(self, sheet_id: str) -> None:
        """Forget a sheet's edges; they are reloaded from the store on next use.

        The sheet keeps its lock, so writers already waiting on it stay
        serialized with the ones that come after.
        """
        current = self._sheet(sheet_id)
        with current.lock:
            current.sources = {}
            current.dependents = {}
            with self._guard:
                self._loaded.discard(sheet_id)
