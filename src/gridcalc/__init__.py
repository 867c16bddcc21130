"""gridcalc -- formula evaluation and dependency recalculation for shared spreadsheets."""

__version__ = "0.3.0"

from gridcalc.coords import Address, Coordinate
from gridcalc.formulas.errors import (
    CircularReferenceError,
    ErrorKind,
    FormulaError,
    FormulaEvalError,
    FormulaParseError,
    RecalcBudgetExceeded,
)

__all__ = [
    "Address",
    "CircularReferenceError",
    "Coordinate",
    "ErrorKind",
    "FormulaError",
    "FormulaEvalError",
    "FormulaParseError",
    "RecalcBudgetExceeded",
    "__version__",
]
