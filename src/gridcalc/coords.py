"""Cell addressing: A1 notation, in-sheet addresses and sheet coordinates.

Rows and columns are 1-based.  ``A1`` is row 1, column 1; ``XFD1048576``
is the last addressable cell.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

MAX_ROW = 1_048_576
MAX_COLUMN = 16_384  # XFD

_ADDR_RE = re.compile(r"^\$?([A-Z]{1,3})\$?(\d+)$")


def col_letter_to_index(letters: str) -> int:
    """Convert column letter(s) to a 1-based index.  A=1, Z=26, AA=27."""
    idx = 0
    for ch in letters.upper():
        idx = idx * 26 + (ord(ch) - ord("A") + 1)
    return idx


def index_to_col_letter(idx: int) -> str:
    """Convert a 1-based column index to letter(s).  1=A, 26=Z, 27=AA."""
    if idx < 1:
        raise ValueError(f"Column index must be >= 1, got {idx}")
    result = ""
    n = idx
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(65 + rem) + result
    return result


def parse_addr(addr: str) -> tuple[int, int]:
    """Parse ``'B3'`` (or ``'$B$3'``) -> ``(row, column)``, both 1-based.

    Raises ValueError on a malformed or out-of-range address.
    """
    m = _ADDR_RE.match(addr.strip().upper())
    if not m:
        raise ValueError(f"Invalid cell address: {addr!r}")
    col = col_letter_to_index(m.group(1))
    row = int(m.group(2))
    if row < 1 or row > MAX_ROW:
        raise ValueError(f"Row out of range in {addr!r}")
    if col > MAX_COLUMN:
        raise ValueError(f"Column out of range in {addr!r}")
    return row, col


def make_addr(row: int, col: int) -> str:
    """Build an A1 address from 1-based row/column."""
    return f"{index_to_col_letter(col)}{row}"


class Address(BaseModel):
    """An in-sheet cell position, as written in a formula."""

    model_config = ConfigDict(frozen=True)

    row: int = Field(ge=1, le=MAX_ROW)
    column: int = Field(ge=1, le=MAX_COLUMN)

    @classmethod
    def parse(cls, addr: str) -> Address:
        row, col = parse_addr(addr)
        return cls(row=row, column=col)

    @property
    def a1(self) -> str:
        return make_addr(self.row, self.column)

    def on(self, sheet_id: str) -> Coordinate:
        """Place this address on a sheet."""
        return Coordinate(sheet_id=sheet_id, row=self.row, column=self.column)

    def __str__(self) -> str:
        return self.a1


class Coordinate(BaseModel):
    """Unique cell identity: ``(sheet_id, row, column)``."""

    model_config = ConfigDict(frozen=True)

    sheet_id: str = Field(min_length=1)
    row: int = Field(ge=1, le=MAX_ROW)
    column: int = Field(ge=1, le=MAX_COLUMN)

    @classmethod
    def from_a1(cls, sheet_id: str, addr: str) -> Coordinate:
        row, col = parse_addr(addr)
        return cls(sheet_id=sheet_id, row=row, column=col)

    @property
    def address(self) -> Address:
        return Address(row=self.row, column=self.column)

    @property
    def a1(self) -> str:
        return make_addr(self.row, self.column)

    def sort_key(self) -> tuple[str, int, int]:
        return (self.sheet_id, self.row, self.column)

    def __str__(self) -> str:
        return f"{self.sheet_id}!{self.a1}"
