"""Spreadsheet formula parsing and evaluation.

Public API::

    from gridcalc.formulas import parse_formula, evaluate_template
"""

from gridcalc.formulas.errors import (
    ERROR_TOKENS,
    CircularReferenceError,
    ErrorInfo,
    ErrorKind,
    FormulaError,
    FormulaEvalError,
    FormulaFunctionError,
    FormulaParseError,
    RecalcBudgetExceeded,
)
from gridcalc.formulas.evaluator import evaluate_template
from gridcalc.formulas.parser import (
    ParsedFormula,
    expand_range,
    extract_refs,
    is_formula,
    parse_formula,
    strip_marker,
)

__all__ = [
    "ERROR_TOKENS",
    "CircularReferenceError",
    "ErrorInfo",
    "ErrorKind",
    "FormulaError",
    "FormulaEvalError",
    "FormulaFunctionError",
    "FormulaParseError",
    "ParsedFormula",
    "RecalcBudgetExceeded",
    "evaluate_template",
    "expand_range",
    "extract_refs",
    "is_formula",
    "parse_formula",
    "strip_marker",
]
