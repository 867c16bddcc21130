"""Cell storage: the persistence protocol, two implementations, and the
batched lookup adapter used during formula resolution.

The store is the system of record for cell content and formulas.  The
dependency graph is derived from it and can be rebuilt from
:meth:`CellStore.iter_formulas` at any time.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Protocol

from pydantic import BaseModel, ConfigDict

from gridcalc.coords import Coordinate
from gridcalc.formulas.parser import is_formula


class CellSnapshot(BaseModel):
    """What the engine sees of a stored cell."""

    model_config = ConfigDict(frozen=True)

    content: str | None = None
    formula: str | None = None
    hyperlink: str | None = None

    @property
    def has_formula(self) -> bool:
        return is_formula(self.formula)


# Synthetic snapshot for coordinates with no stored cell.
EMPTY = CellSnapshot()


class CellStore(Protocol):
    """Persistence collaborator consumed by the engine."""

    def get_cell(self, sheet_id: str, coordinate: Coordinate) -> CellSnapshot | None:
        ...

    def get_cells(self, sheet_id: str, coordinates: Iterable[Coordinate]) -> dict[Coordinate, CellSnapshot]:
        """Batched lookup.  Absent coordinates are simply not in the result."""
        ...

    def save_cell(
        self,
        sheet_id: str,
        coordinate: Coordinate,
        content: str | None,
        formula: str | None,
        hyperlink: str | None = None,
    ) -> None:
        ...

    def update_content(self, sheet_id: str, coordinate: Coordinate, content: str | None) -> None:
        """Overwrite only the computed content of an existing cell."""
        ...

    def iter_formulas(self, sheet_id: str | None = None) -> list[tuple[Coordinate, str]]:
        """All stored formulas, optionally restricted to one sheet."""
        ...

    def list_cells(self, sheet_id: str) -> list[tuple[Coordinate, CellSnapshot]]:
        ...

    def transaction(self) -> AbstractContextManager[None]:
        """Context manager; nested use joins the outer transaction."""
        ...


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CellStoreAdapter:
    """Batched, never-missing view of a :class:`CellStore`."""

    def __init__(self, store: CellStore) -> None:
        self.store = store

    def fetch_many(self, sheet_id: str, coordinates: Iterable[Coordinate]) -> dict[Coordinate, CellSnapshot]:
        """Fetch all *coordinates* with a single store lookup.

        Coordinates with no stored cell map to :data:`EMPTY`.
        """
        wanted = list(dict.fromkeys(coordinates))
        if not wanted:
            return {}
        found = self.store.get_cells(sheet_id, wanted)
        return {coord: found.get(coord, EMPTY) for coord in wanted}

    def fetch_one(self, sheet_id: str, coordinate: Coordinate) -> CellSnapshot:
        return self.store.get_cell(sheet_id, coordinate) or EMPTY


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryCellStore:
    """Dict-backed store for tests and previews."""

    def __init__(self) -> None:
        self._cells: dict[Coordinate, CellSnapshot] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def get_cell(self, sheet_id: str, coordinate: Coordinate) -> CellSnapshot | None:
        with self._lock:
            return self._cells.get(_on_sheet(sheet_id, coordinate))

    def get_cells(self, sheet_id: str, coordinates: Iterable[Coordinate]) -> dict[Coordinate, CellSnapshot]:
        with self._lock:
            out: dict[Coordinate, CellSnapshot] = {}
            for coord in coordinates:
                snap = self._cells.get(_on_sheet(sheet_id, coord))
                if snap is not None:
                    out[coord] = snap
            return out

    def save_cell(
        self,
        sheet_id: str,
        coordinate: Coordinate,
        content: str | None,
        formula: str | None,
        hyperlink: str | None = None,
    ) -> None:
        with self._lock:
            self._cells[_on_sheet(sheet_id, coordinate)] = CellSnapshot(
                content=content, formula=formula, hyperlink=hyperlink
            )

    def update_content(self, sheet_id: str, coordinate: Coordinate, content: str | None) -> None:
        with self._lock:
            key = _on_sheet(sheet_id, coordinate)
            current = self._cells.get(key, EMPTY)
            self._cells[key] = current.model_copy(update={"content": content})

    def iter_formulas(self, sheet_id: str | None = None) -> list[tuple[Coordinate, str]]:
        with self._lock:
            rows = [
                (coord, snap.formula)
                for coord, snap in self._cells.items()
                if snap.has_formula and (sheet_id is None or coord.sheet_id == sheet_id)
            ]
        return sorted(rows, key=lambda item: item[0].sort_key())

    def list_cells(self, sheet_id: str) -> list[tuple[Coordinate, CellSnapshot]]:
        with self._lock:
            rows = [(c, s) for c, s in self._cells.items() if c.sheet_id == sheet_id]
        return sorted(rows, key=lambda item: item[0].sort_key())

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            backup = dict(self._cells) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if backup is not None:
                    self._cells = backup
                raise
            finally:
                self._depth -= 1


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cells (
    sheet_id   TEXT    NOT NULL,
    row        INTEGER NOT NULL,
    col        INTEGER NOT NULL,
    content    TEXT,
    formula    TEXT,
    hyperlink  TEXT,
    updated_at TEXT    NOT NULL,
    PRIMARY KEY (sheet_id, row, col)
)
"""

# Two bound parameters per coordinate; stays well under SQLite's limit.
_FETCH_CHUNK = 250


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SqliteCellStore:
    """Relational store backed by a single SQLite database file.

    One connection is shared between threads; a re-entrant lock serializes
    its use, and a transaction holds the lock until it commits.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._lock = threading.RLock()
        self._depth = 0
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> SqliteCellStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- reads ----------------------------------------------------------

    def get_cell(self, sheet_id: str, coordinate: Coordinate) -> CellSnapshot | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT content, formula, hyperlink FROM cells WHERE sheet_id = ? AND row = ? AND col = ?",
                (sheet_id, coordinate.row, coordinate.column),
            ).fetchone()
        if row is None:
            return None
        return CellSnapshot(content=row[0], formula=row[1], hyperlink=row[2])

    def get_cells(self, sheet_id: str, coordinates: Iterable[Coordinate]) -> dict[Coordinate, CellSnapshot]:
        coords = list(coordinates)
        by_pos = {(c.row, c.column): c for c in coords}
        out: dict[Coordinate, CellSnapshot] = {}
        with self._lock:
            for start in range(0, len(coords), _FETCH_CHUNK):
                chunk = coords[start:start + _FETCH_CHUNK]
                where = " OR ".join(["(row = ? AND col = ?)"] * len(chunk))
                params: list[object] = [sheet_id]
                for c in chunk:
                    params.extend((c.row, c.column))
                rows = self._conn.execute(
                    f"SELECT row, col, content, formula, hyperlink FROM cells "
                    f"WHERE sheet_id = ? AND ({where})",
                    params,
                ).fetchall()
                for r, c, content, formula, hyperlink in rows:
                    out[by_pos[(r, c)]] = CellSnapshot(content=content, formula=formula, hyperlink=hyperlink)
        return out

    def iter_formulas(self, sheet_id: str | None = None) -> list[tuple[Coordinate, str]]:
        sql = "SELECT sheet_id, row, col, formula FROM cells WHERE formula IS NOT NULL AND TRIM(formula) != ''"
        params: tuple[object, ...] = ()
        if sheet_id is not None:
            sql += " AND sheet_id = ?"
            params = (sheet_id,)
        sql += " ORDER BY sheet_id, row, col"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            (Coordinate(sheet_id=s, row=r, column=c), f)
            for s, r, c, f in rows
            if is_formula(f)
        ]

    def list_cells(self, sheet_id: str) -> list[tuple[Coordinate, CellSnapshot]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT row, col, content, formula, hyperlink FROM cells "
                "WHERE sheet_id = ? ORDER BY row, col",
                (sheet_id,),
            ).fetchall()
        return [
            (
                Coordinate(sheet_id=sheet_id, row=r, column=c),
                CellSnapshot(content=content, formula=formula, hyperlink=hyperlink),
            )
            for r, c, content, formula, hyperlink in rows
        ]

    # -- writes ---------------------------------------------------------

    def save_cell(
        self,
        sheet_id: str,
        coordinate: Coordinate,
        content: str | None,
        formula: str | None,
        hyperlink: str | None = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO cells (sheet_id, row, col, content, formula, hyperlink, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (sheet_id, row, col) DO UPDATE SET "
                "content = excluded.content, formula = excluded.formula, "
                "hyperlink = excluded.hyperlink, updated_at = excluded.updated_at",
                (sheet_id, coordinate.row, coordinate.column, content, formula, hyperlink, _utc_now()),
            )

    def update_content(self, sheet_id: str, coordinate: Coordinate, content: str | None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE cells SET content = ?, updated_at = ? WHERE sheet_id = ? AND row = ? AND col = ?",
                (content, _utc_now(), sheet_id, coordinate.row, coordinate.column),
            )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")


def _on_sheet(sheet_id: str, coordinate: Coordinate) -> Coordinate:
    if coordinate.sheet_id == sheet_id:
        return coordinate
    return Coordinate(sheet_id=sheet_id, row=coordinate.row, column=coordinate.column)
