"""Lark-based parser for spreadsheet cell formulas.

Supports:
- Cell references in A1 notation: ``B2``, ``aa10``, ``$C$3`` (``$`` markers
  are accepted and ignored)
- Rectangular ranges ``A1:B3`` as function arguments
- Standard arithmetic, comparisons, functions, postfix percent (%)

The numeric ``row,column`` reference style is not accepted: the comma
separates function arguments.
"""

from __future__ import annotations

from functools import lru_cache
from typing import NamedTuple

from lark import Lark, Token, Tree
from lark.exceptions import LarkError

from gridcalc.coords import Address, parse_addr
from gridcalc.formulas.errors import FormulaParseError

DEFAULT_MAX_RANGE_CELLS = 10_000

# LALR(1) grammar for cell formulas.
# Operator precedence (lowest to highest):
#   1. Comparison: > < >= <= = <>
#   2. Addition/subtraction: + -
#   3. Multiplication/division: * /
#   4. Unary plus/minus: + -
#   5. Exponentiation: ^ (right-associative)
#   6. Postfix percent: %  (3% = 0.03)
#   7. Atoms: number, bool, function call, range, reference, parenthesized expr
GRAMMAR = r"""
start: expr

?expr: comparison

?comparison: addition
    | comparison ">" addition   -> gt
    | comparison "<" addition   -> lt
    | comparison ">=" addition  -> gte
    | comparison "<=" addition  -> lte
    | comparison "=" addition   -> eq
    | comparison "<>" addition  -> neq

?addition: multiplication
    | addition "+" multiplication  -> add
    | addition "-" multiplication  -> sub

?multiplication: unary
    | multiplication "*" unary  -> mul
    | multiplication "/" unary  -> div

?unary: exponentiation
    | "-" unary  -> neg
    | "+" unary  -> pos

?exponentiation: postfix
    | postfix "^" unary  -> pow

?postfix: atom
    | postfix "%"  -> percent

?atom: NUMBER                   -> number
    | BOOL                      -> boolean
    | NAME "(" args ")"         -> func_call
    | RANGE_REF                 -> range_ref
    | CELL_REF                  -> cell_ref
    | "(" expr ")"

args: expr ("," expr)*
    |

BOOL.2: "TRUE" | "FALSE"

// Rectangular range: A1:B3
RANGE_REF.3: /\$?[A-Za-z]{1,3}\$?[0-9]+:\$?[A-Za-z]{1,3}\$?[0-9]+/

// Single cell: A1, $B$2, aa10
CELL_REF.2: /\$?[A-Za-z]{1,3}\$?[0-9]+/

NAME.1: /[A-Za-z_][A-Za-z0-9_]*/

%import common.NUMBER
%import common.WS
%ignore WS
"""

_parser = Lark(GRAMMAR, parser="lalr", start="start")


class ParsedFormula(NamedTuple):
    """A formula template and the cells it reads.

    ``tree`` is the template: cell references stay as ``cell_ref`` /
    ``range_ref`` nodes and are substituted at evaluation time.  ``refs`` is
    de-duplicated and ordered by first appearance.
    """

    text: str
    tree: Tree
    refs: tuple[Address, ...]


def strip_marker(formula: str) -> str:
    """Strip surrounding whitespace and one leading ``=`` marker."""
    text = formula.strip()
    if text.startswith("="):
        text = text[1:].strip()
    return text


def is_formula(raw: str | None) -> bool:
    """True when *raw* is a non-blank formula string."""
    return isinstance(raw, str) and strip_marker(raw) != ""


def parse_formula(formula: str, *, max_range_cells: int = DEFAULT_MAX_RANGE_CELLS) -> ParsedFormula:
    """Parse a formula (with or without its leading ``=``).

    Args:
        formula: The formula text, e.g. ``"=A1 * (1 - B2)"``.
        max_range_cells: Largest range a formula may reference.

    Returns:
        A :class:`ParsedFormula`.

    Raises:
        FormulaParseError: If the formula has invalid syntax or references an
            address outside the sheet.
    """
    return _parse_cached(strip_marker(formula), max_range_cells)


@lru_cache(maxsize=4096)
def _parse_cached(text: str, max_range_cells: int) -> ParsedFormula:
    if not text:
        raise FormulaParseError("Formula is empty", position=0)
    try:
        tree = _parser.parse(text)
    except LarkError as exc:
        # Extract position info from Lark exception if available
        pos = getattr(exc, "column", None)
        if isinstance(pos, int) and pos < 0:
            pos = None
        raise FormulaParseError(str(exc).strip().splitlines()[0], position=pos) from exc
    return ParsedFormula(text, tree, _collect_refs(tree, max_range_cells))


def parse_ref(token: str | Token) -> Address:
    """Parse a CELL_REF token into an :class:`Address`."""
    try:
        return Address.parse(str(token))
    except ValueError as exc:
        raise FormulaParseError(str(exc), position=_token_column(token)) from exc


def expand_range(token: str | Token) -> list[Address]:
    """Expand a RANGE_REF token (``A1:C3``) row-major into addresses."""
    start, _, end = str(token).partition(":")
    try:
        r0, c0 = parse_addr(start)
        r1, c1 = parse_addr(end)
    except ValueError as exc:
        raise FormulaParseError(str(exc), position=_token_column(token)) from exc
    # Normalise so r0 <= r1, c0 <= c1
    if r0 > r1:
        r0, r1 = r1, r0
    if c0 > c1:
        c0, c1 = c1, c0
    return [
        Address(row=r, column=c)
        for r in range(r0, r1 + 1)
        for c in range(c0, c1 + 1)
    ]


def range_size(token: str | Token) -> int:
    start, _, end = str(token).partition(":")
    try:
        r0, c0 = parse_addr(start)
        r1, c1 = parse_addr(end)
    except ValueError as exc:
        raise FormulaParseError(str(exc), position=_token_column(token)) from exc
    return (abs(r1 - r0) + 1) * (abs(c1 - c0) + 1)


def _token_column(token: str | Token) -> int | None:
    return getattr(token, "column", None)


def _collect_refs(tree: Tree, max_range_cells: int) -> tuple[Address, ...]:
    seen: dict[Address, None] = {}
    for node in tree.iter_subtrees_topdown():
        if node.data == "cell_ref":
            seen.setdefault(parse_ref(node.children[0]), None)
        elif node.data == "range_ref":
            token = node.children[0]
            size = range_size(token)
            if size > max_range_cells:
                raise FormulaParseError(
                    f"Range {str(token)!r} covers {size} cells (limit {max_range_cells})",
                    position=_token_column(token),
                )
            for addr in expand_range(token):
                seen.setdefault(addr, None)
    return tuple(seen)


def extract_refs(formula: str) -> tuple[Address, ...]:
    """Return the addresses *formula* reads, in order of first appearance."""
    return parse_formula(formula).refs
