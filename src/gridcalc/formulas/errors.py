"""Error types for formula parsing, evaluation and recalculation."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from pydantic import BaseModel

from gridcalc.coords import Coordinate


class ErrorKind(str, Enum):
    PARSE_ERROR = "parse_error"
    EVALUATION_ERROR = "evaluation_error"
    CIRCULAR_REFERENCE = "circular_reference"
    RECALC_BUDGET_EXCEEDED = "recalculation_budget_exceeded"


# Display tokens shown in place of a value, spreadsheet style.
ERROR_TOKENS: dict[ErrorKind, str] = {
    ErrorKind.PARSE_ERROR: "#PARSE!",
    ErrorKind.EVALUATION_ERROR: "#VALUE!",
    ErrorKind.CIRCULAR_REFERENCE: "#CIRC!",
    ErrorKind.RECALC_BUDGET_EXCEEDED: "#BUDGET!",
}


class ErrorInfo(BaseModel):
    """Structured, caller-visible description of a failure."""

    kind: ErrorKind
    message: str
    coordinate: Coordinate | None = None

    @property
    def token(self) -> str:
        return ERROR_TOKENS[self.kind]


class FormulaError(Exception):
    """Base class for all formula-related errors.

    Attributes:
        kind: The :class:`ErrorKind` this error reports as.
        message: Human-readable description.
        coordinate: The offending cell, when known.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.EVALUATION_ERROR

    def __init__(self, message: str, coordinate: Coordinate | None = None) -> None:
        self.message = message
        self.coordinate = coordinate
        super().__init__(message)

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message, coordinate=self.coordinate)


class FormulaParseError(FormulaError):
    """Syntax error in a formula expression.

    Attributes:
        position: Character position where the error was detected.
    """

    kind = ErrorKind.PARSE_ERROR

    def __init__(
        self,
        message: str,
        position: int | None = None,
        coordinate: Coordinate | None = None,
    ) -> None:
        self.position = position
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full, coordinate)


class FormulaEvalError(FormulaError):
    """Arithmetic or evaluator failure (division by zero, bad operand, ...)."""

    kind = ErrorKind.EVALUATION_ERROR


class FormulaFunctionError(FormulaEvalError):
    """Unknown function or wrong number of arguments.

    Attributes:
        func_name: The function that caused the error.
    """

    def __init__(self, func_name: str, message: str | None = None) -> None:
        self.func_name = func_name
        super().__init__(message or f"Unknown function: {func_name!r}")


class CircularReferenceError(FormulaError):
    """A cell depends on itself, directly or through other cells.

    Attributes:
        cycle_path: Coordinates along the cycle; the first one is where the
            cycle was entered and it is repeated at the end.
    """

    kind = ErrorKind.CIRCULAR_REFERENCE

    def __init__(self, cycle_path: list[Coordinate]) -> None:
        self.cycle_path = cycle_path
        parts = " -> ".join(c.a1 for c in cycle_path)
        origin = cycle_path[0] if cycle_path else None
        super().__init__(
            f"Circular reference at {origin.a1 if origin else '?'}: {parts}",
            origin,
        )


class RecalcBudgetExceeded(FormulaError):
    """A recalculation grew past its size, depth or time limit."""

    kind = ErrorKind.RECALC_BUDGET_EXCEEDED
