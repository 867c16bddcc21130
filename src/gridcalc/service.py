"""Service layer shared by the HTTP server and the CLI.

:class:`CalcService` owns one store, one dependency graph, one resolver and
one recalculator.  It is the single place that turns caller input
(addresses as strings, raw cell values) into engine calls and records
structured events about what happened.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Union

from gridcalc.coords import Address, Coordinate
from gridcalc.formulas.errors import ErrorKind, FormulaError
from gridcalc.formulas.parser import is_formula
from gridcalc.graph import DependencyGraph
from gridcalc.logging import EventLevel, EventType, emit, emit_info, emit_warning, make_sheet_event
from gridcalc.project import DEFAULT_CONFIG, database_path, load_project_config
from gridcalc.resolver import Number, Resolver
from gridcalc.scheduler import CellWrite, RecalcResult, Recalculator
from gridcalc.store import CellSnapshot, CellStore, InMemoryCellStore, SqliteCellStore

logger = logging.getLogger(__name__)

AddressLike = Union[str, Address, Coordinate, tuple[int, int]]


def _coordinate(sheet_id: str, address: AddressLike) -> Coordinate:
    """Normalize any accepted address form to a coordinate on *sheet_id*.

    Raises:
        ValueError: If the sheet id is blank or the address is invalid.
    """
    if not sheet_id or not str(sheet_id).strip():
        raise ValueError("sheet_id is required")
    if isinstance(address, Coordinate):
        return address.address.on(sheet_id)
    if isinstance(address, Address):
        return address.on(sheet_id)
    if isinstance(address, tuple):
        row, column = address
        return Coordinate(sheet_id=sheet_id, row=row, column=column)
    return Coordinate.from_a1(sheet_id, str(address))


class CalcService:
    """Formula evaluation and recalculation for one project.

    Parameters
    ----------
    project_dir : Path | None
        Project root holding ``gridcalc.yaml``.  When given and no *store*
        is passed, the project's SQLite database is opened.
    store : CellStore | None
        Explicit persistence collaborator; defaults to an in-memory store
        when there is no project directory.
    config : dict | None
        Overrides merged over the project (or default) configuration.
    """

    def __init__(
        self,
        project_dir: Path | None = None,
        *,
        store: CellStore | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve() if project_dir is not None else None
        if self.project_dir is not None:
            merged = load_project_config(self.project_dir)
        else:
            merged = dict(DEFAULT_CONFIG)
        if config:
            merged.update(config)
        self.config = merged

        self._owns_store = store is None
        if store is None:
            if self.project_dir is not None:
                store = SqliteCellStore(database_path(self.project_dir, self.config))
            else:
                store = InMemoryCellStore()
        self.store = store

        max_range_cells = int(self.config["max_range_cells"])
        self.graph = DependencyGraph()
        self.resolver = Resolver(
            store,
            max_depth=int(self.config["max_resolution_depth"]),
            max_range_cells=max_range_cells,
        )
        self.recalculator = Recalculator(
            store,
            self.graph,
            self.resolver,
            max_closure_size=int(self.config["max_closure_size"]),
            max_recalc_seconds=float(self.config["max_recalc_seconds"]),
            max_range_cells=max_range_cells,
        )

    def close(self) -> None:
        """Release the store if this service opened it."""
        if self._owns_store and isinstance(self.store, SqliteCellStore):
            self.store.close()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_formula(self, formula: str, sheet_id: str) -> Number:
        """Evaluate *formula* against *sheet_id* without persisting anything.

        Raises:
            FormulaError: Parse, evaluation, cycle or budget failure.
            ValueError: If *sheet_id* is blank.
        """
        if not sheet_id or not sheet_id.strip():
            raise ValueError("sheet_id is required")
        try:
            return self.resolver.evaluate_formula(formula, sheet_id)
        except FormulaError as exc:
            emit_warning(
                EventType.formula_preview_failed,
                exc.message,
                {"sheet_id": sheet_id, "formula": formula, "kind": exc.kind.value},
                error_code=exc.kind.value,
            )
            raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_cell(
        self,
        sheet_id: str,
        address: AddressLike,
        *,
        content: str | None = None,
        formula: str | None = None,
        hyperlink: str | None = None,
    ) -> RecalcResult:
        """Store one cell and recalculate its dependents.

        Content that starts with ``=`` is treated as a formula when no
        explicit *formula* is given.

        Raises:
            ValueError: If the sheet id or address is invalid.
        """
        coord = _coordinate(sheet_id, address)
        if formula is None and is_formula(content):
            formula, content = content, None

        result = self.recalculator.on_cell_written(
            sheet_id, coord, formula, content=content, hyperlink=hyperlink
        )
        self._record(result, formula)
        return result

    def write_cells(
        self,
        sheet_id: str,
        edits: Iterable[CellWrite | Mapping[str, Any]],
    ) -> list[RecalcResult]:
        """Apply *edits* in order.  Each edit is a :class:`CellWrite` or a
        mapping with ``addr`` (or ``row`` and ``column``) and optional
        ``content``, ``formula`` and ``hyperlink``.

        Raises:
            ValueError: If any edit has an invalid address; nothing is
                written in that case.
        """
        writes = [self._to_write(sheet_id, edit) for edit in edits]
        return [
            self.write_cell(
                sheet_id,
                w.coordinate,
                content=w.content,
                formula=w.formula,
                hyperlink=w.hyperlink,
            )
            for w in writes
        ]

    @staticmethod
    def _to_write(sheet_id: str, edit: CellWrite | Mapping[str, Any]) -> CellWrite:
        if isinstance(edit, CellWrite):
            return edit.model_copy(update={"coordinate": edit.coordinate.address.on(sheet_id)})
        if edit.get("addr"):
            coord = _coordinate(sheet_id, edit["addr"])
        elif edit.get("row") is not None and edit.get("column") is not None:
            coord = _coordinate(sheet_id, (int(edit["row"]), int(edit["column"])))
        else:
            raise ValueError(f"Edit needs 'addr' or 'row' and 'column': {dict(edit)!r}")
        return CellWrite(
            coordinate=coord,
            content=edit.get("content"),
            formula=edit.get("formula"),
            hyperlink=edit.get("hyperlink"),
        )

    def _record(self, result: RecalcResult, formula: str | None) -> None:
        """Emit events describing one write's outcome."""
        sheet_id = result.sheet_id
        edited = result.edited
        cell = edited.coordinate.a1

        if edited.error is not None:
            kind = edited.error.kind
            event_type = (
                EventType.circular_reference
                if kind == ErrorKind.CIRCULAR_REFERENCE
                else EventType.cell_write_failed
            )
            emit(make_sheet_event(
                event_type,
                EventLevel.warning,
                edited.error.message,
                sheet_id=sheet_id,
                cell=cell,
                error_code=kind.value,
                extra={"formula": formula},
            ))
            return

        emit_info(
            EventType.cell_written,
            f"{cell} = {edited.content!r}",
            {"sheet_id": sheet_id, "cell": cell, "formula": formula},
        )

        for dep in result.dependents:
            if dep.error is None:
                continue
            emit(make_sheet_event(
                EventType.recalc_cell_error,
                EventLevel.warning,
                dep.error.message,
                sheet_id=sheet_id,
                cell=dep.coordinate.a1,
                error_code=dep.error.kind.value,
                extra={"trigger": cell},
            ))

        if result.error is not None:
            emit(make_sheet_event(
                EventType.recalc_budget_exceeded,
                EventLevel.error,
                result.error.message,
                sheet_id=sheet_id,
                cell=cell,
                error_code=result.error.kind.value,
                extra={"recomputed": len(result.results)},
            ))
            return

        emit_info(
            EventType.recalc_completed,
            f"Recalculated {len(result.dependents)} dependents of {cell}",
            {
                "sheet_id": sheet_id,
                "cell": cell,
                "dependents": len(result.dependents),
                "failures": len(result.failures),
                "elapsed_ms": result.elapsed_ms,
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_cell(self, sheet_id: str, address: AddressLike) -> CellSnapshot | None:
        coord = _coordinate(sheet_id, address)
        return self.store.get_cell(sheet_id, coord)

    def list_cells(self, sheet_id: str) -> list[tuple[Coordinate, CellSnapshot]]:
        if not sheet_id or not sheet_id.strip():
            raise ValueError("sheet_id is required")
        return self.store.list_cells(sheet_id)

    def dependents(self, sheet_id: str, address: AddressLike, *, transitive: bool = False) -> list[Coordinate]:
        """Cells that read *address*: direct ones sorted by position, or the
        whole closure in recalculation order when *transitive* is set.
        """
        coord = _coordinate(sheet_id, address)
        with self.graph.lock(sheet_id):
            self.graph.ensure_loaded(sheet_id, self.store)
            if transitive:
                return self.graph.transitive_dependents(coord)
            return sorted(self.graph.dependents_of(coord), key=lambda c: c.sort_key())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def rebuild_graph(self) -> int:
        """Rebuild every sheet's edges from stored formulas."""
        count = self.graph.rebuild(self.store)
        logger.debug("dependency graph rebuilt from %d formulas", count)
        emit_info(
            EventType.graph_rebuilt,
            f"Dependency graph rebuilt from {count} formulas",
            {"formulas": count},
        )
        return count
