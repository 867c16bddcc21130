"""On-demand memoized resolver for cell formulas.

Evaluates formulas by resolving each referenced cell first: plain cells read
their stored content, formula cells are evaluated depth first (their stored
content is never trusted).  One :class:`EvaluationContext` lives for one
top-level request; it memoizes values, caches fetched snapshots, and keeps
the current recursion path for cycle detection.
"""

from __future__ import annotations

import math
from typing import Union

from gridcalc.coords import Address, Coordinate
from gridcalc.formulas.errors import (
    CircularReferenceError,
    FormulaError,
    RecalcBudgetExceeded,
)
from gridcalc.formulas.evaluator import evaluate_template
from gridcalc.formulas.parser import DEFAULT_MAX_RANGE_CELLS, ParsedFormula, parse_formula
from gridcalc.store import CellSnapshot, CellStore, CellStoreAdapter

Number = Union[int, float, bool]

DEFAULT_MAX_DEPTH = 1000


def parse_numeric(content: str | None) -> Number:
    """Numeric value of a plain cell's content; 0 when it is not a number."""
    if content is None:
        return 0
    text = content.strip()
    if not text:
        return 0
    upper = text.upper()
    if upper == "TRUE":
        return 1
    if upper == "FALSE":
        return 0
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = float(text)
    except ValueError:
        return 0
    return value if math.isfinite(value) else 0


def format_value(value: Number) -> str:
    """Display string stored as a formula cell's content."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value == int(value) and abs(value) < 1e15:
            return str(int(value))
        return f"{value:.15g}"
    return str(value)


class EvaluationContext:
    """Scratch state of one top-level evaluation.

    Attributes:
        path: Coordinates currently being resolved, outermost first.
        memo: Values computed during this pass.
        snapshots: Cell snapshots fetched during this pass.
        fetches: Number of store lookups issued (batched or single).
    """

    def __init__(self) -> None:
        self.path: list[Coordinate] = []
        self._on_path: set[Coordinate] = set()
        self.memo: dict[Coordinate, Number] = {}
        self.snapshots: dict[Coordinate, CellSnapshot] = {}
        self.fetches = 0

    def cycle_to(self, coordinate: Coordinate) -> list[Coordinate]:
        """The cycle closed by re-entering *coordinate*, repeated at the end."""
        start = self.path.index(coordinate)
        return self.path[start:] + [coordinate]

    def enter(self, coordinate: Coordinate) -> None:
        self.path.append(coordinate)
        self._on_path.add(coordinate)

    def leave(self, coordinate: Coordinate) -> None:
        if self.path and self.path[-1] == coordinate:
            self.path.pop()
        self._on_path.discard(coordinate)

    def is_active(self, coordinate: Coordinate) -> bool:
        return coordinate in self._on_path


class Resolver:
    """Resolves cell references to numbers and evaluates formulas.

    Usage::

        resolver = Resolver(store)
        value = resolver.evaluate_formula("=A1 + 10", "sheet-1")
        value = resolver.evaluate_cell(Coordinate.from_a1("sheet-1", "B2"))

    Parameters
    ----------
    store : CellStore
        Persistence collaborator; read through a :class:`CellStoreAdapter`.
    max_depth : int
        Longest chain of nested formula cells one evaluation may follow.
    max_range_cells : int
        Largest range a formula may reference.
    """

    def __init__(
        self,
        store: CellStore,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_range_cells: int = DEFAULT_MAX_RANGE_CELLS,
    ) -> None:
        self.adapter = CellStoreAdapter(store)
        self.max_depth = max_depth
        self.max_range_cells = max_range_cells

    # ------------------------------------------------------------------
    # Entry points (fresh context per call)
    # ------------------------------------------------------------------

    def evaluate_formula(self, formula: str, sheet_id: str) -> Number:
        """Evaluate a formula that is not stored anywhere (preview).

        Raises:
            FormulaError: Any parse, evaluation, cycle or depth failure.
        """
        ctx = EvaluationContext()
        return self._drive(self._prepare(formula, sheet_id, ctx, owner=None), ctx)

    def evaluate_cell(self, coordinate: Coordinate, snapshot: CellSnapshot | None = None) -> Number:
        """Evaluate a stored cell as a top-level request.

        Args:
            coordinate: The cell.
            snapshot: Its snapshot, when the caller already has it.
        """
        ctx = EvaluationContext()
        if snapshot is not None:
            ctx.snapshots[coordinate] = snapshot
        return self.resolve(coordinate, ctx)

    # ------------------------------------------------------------------
    # Core resolution
    # ------------------------------------------------------------------

    def resolve(self, coordinate: Coordinate, ctx: EvaluationContext) -> Number:
        """Value of *coordinate* within the pass described by *ctx*.

        Formula chains are walked with an explicit stack, so the chain length
        is bounded by ``max_depth`` only and not by the interpreter's
        recursion limit.

        Raises:
            CircularReferenceError: If *coordinate* is already being resolved
                further up the current path.
            RecalcBudgetExceeded: If the path grows past ``max_depth``.
        """
        depth = len(ctx.path)
        try:
            step = self._begin(coordinate, ctx)
            if not isinstance(step, _Pending):
                return step
            return self._drive(step, ctx)
        finally:
            # A failure abandons every cell this call entered.
            for coord in reversed(ctx.path[depth:]):
                ctx.leave(coord)

    def _drive(self, pending: _Pending, ctx: EvaluationContext) -> Number:
        stack = [pending]
        while True:
            while stack[-1].complete:
                value = self._finish(stack.pop(), ctx)
                if not stack:
                    return value
                stack[-1].accept(value)
            step = self._begin(stack[-1].upcoming, ctx)
            if isinstance(step, _Pending):
                stack.append(step)
            else:
                stack[-1].accept(step)

    def _begin(self, coordinate: Coordinate, ctx: EvaluationContext) -> Number | _Pending:
        """Value of a memoized or plain cell, or the pending formula to walk."""
        if ctx.is_active(coordinate):
            raise CircularReferenceError(ctx.cycle_to(coordinate))
        if coordinate in ctx.memo:
            return ctx.memo[coordinate]
        if len(ctx.path) >= self.max_depth:
            raise RecalcBudgetExceeded(
                f"Formula chain deeper than {self.max_depth} cells at {coordinate.a1}",
                coordinate,
            )

        snapshot = ctx.snapshots.get(coordinate)
        if snapshot is None:
            snapshot = self.adapter.fetch_one(coordinate.sheet_id, coordinate)
            ctx.snapshots[coordinate] = snapshot
            ctx.fetches += 1

        if not snapshot.has_formula:
            value = parse_numeric(snapshot.content)
            ctx.memo[coordinate] = value
            return value

        ctx.enter(coordinate)
        return self._prepare(snapshot.formula, coordinate.sheet_id, ctx, owner=coordinate)

    def _prepare(
        self,
        formula: str,
        sheet_id: str,
        ctx: EvaluationContext,
        owner: Coordinate | None,
    ) -> _Pending:
        try:
            parsed = parse_formula(formula, max_range_cells=self.max_range_cells)
        except FormulaError as exc:
            if exc.coordinate is None:
                exc.coordinate = owner
            raise
        coords = [addr.on(sheet_id) for addr in parsed.refs]

        # One batched lookup for everything this formula reads.
        unknown = [c for c in coords if c not in ctx.snapshots and c not in ctx.memo]
        if unknown:
            ctx.snapshots.update(self.adapter.fetch_many(sheet_id, unknown))
            ctx.fetches += 1
        return _Pending(owner, parsed, coords)

    def _finish(self, pending: _Pending, ctx: EvaluationContext) -> Number:
        try:
            value = evaluate_template(pending.parsed, pending.values)
        except FormulaError as exc:
            if exc.coordinate is None:
                exc.coordinate = pending.owner
            raise
        if pending.owner is not None:
            ctx.leave(pending.owner)
            ctx.memo[pending.owner] = value
        return value


class _Pending:
    """A formula whose references are still being resolved."""

    __slots__ = ("owner", "parsed", "coords", "values")

    def __init__(self, owner: Coordinate | None, parsed: ParsedFormula, coords: list[Coordinate]) -> None:
        self.owner = owner
        self.parsed = parsed
        self.coords = coords
        self.values: dict[Address, Number] = {}

    @property
    def complete(self) -> bool:
        return len(self.values) == len(self.coords)

    @property
    def upcoming(self) -> Coordinate:
        return self.coords[len(self.values)]

    def accept(self, value: Number) -> None:
        self.values[self.parsed.refs[len(self.values)]] = value
