"""Unified event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context: failures are
reported on stderr (rate-limited) and never reach the caller.
"""

from __future__ import annotations

import re
import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Cell writes
    cell_written = "cell_written"
    cell_write_failed = "cell_write_failed"

    # Recalculation
    recalc_completed = "recalc_completed"
    recalc_cell_error = "recalc_cell_error"
    recalc_budget_exceeded = "recalc_budget_exceeded"
    circular_reference = "circular_reference"

    # Previews
    formula_preview_failed = "formula_preview_failed"

    # Lifecycle
    graph_rebuilt = "graph_rebuilt"
    server_started = "server_started"


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|secret|token|api_key|apikey|authorization|cookie"
    r"|session|bearer|dsn|connection_string)",
    re.IGNORECASE,
)

_MAX_VALUE_LEN = 256


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with sensitive values redacted.

    Keys matching sensitive patterns have their values replaced with
    ``"[REDACTED]"``; long strings (cell content, formulas) are truncated.
    """
    out: dict[str, Any] = {}
    for key, value in context.items():
        if _SENSITIVE_KEY_RE.search(key):
            out[key] = "[REDACTED]"
        else:
            out[key] = _redact_value(value)
    return out


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return redact_context(value)
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_VALUE_LEN:
        return value[:_MAX_VALUE_LEN] + "...[truncated]"
    return value


# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------

_SHEET_REQUIRED = {"sheet_id"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.cell_written.value: {"sheet_id", "cell"},
    EventType.cell_write_failed.value: {"sheet_id", "cell"},
    EventType.recalc_completed.value: _SHEET_REQUIRED,
    EventType.recalc_cell_error.value: _SHEET_REQUIRED,
    EventType.recalc_budget_exceeded.value: _SHEET_REQUIRED,
    EventType.circular_reference.value: _SHEET_REQUIRED,
    EventType.formula_preview_failed.value: _SHEET_REQUIRED,
}


def _validate_attribution(event: GridcalcEvent) -> GridcalcEvent:
    """Check required context keys; downgrade to warning if missing."""
    required = _EVENT_REQUIRED_KEYS.get(EventType(event.event_type).value, set())
    missing = required - set(event.context)
    if not missing:
        return event
    ctx = dict(event.context)
    ctx["_missing_attribution"] = sorted(missing)
    return event.model_copy(update={"level": EventLevel.warning, "context": ctx})


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class GridcalcEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


def make_sheet_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    sheet_id: str,
    cell: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> GridcalcEvent:
    """Build an event with guaranteed sheet attribution context."""
    ctx: dict[str, Any] = {"sheet_id": sheet_id}
    if cell is not None:
        ctx["cell"] = cell
    if extra:
        ctx.update(extra)
    return GridcalcEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Set by ``set_project_dir``; None means events are discarded.
_sink: Any = None  # EventSink | None
_project_dir: Path | None = None


def set_project_dir(project_dir: Path | str | None) -> None:
    """Configure the module-level event sink for a project directory.

    This should be called early in a CLI command or server startup.  If
    it is never called, ``emit()`` silently discards events.  Passing
    ``None`` detaches the sink.

    Reads ``logging_fsync`` and ``logging_tail_bytes`` from the project
    config (``gridcalc.yaml``) to configure the sink.
    """
    global _sink, _project_dir
    import yaml

    from gridcalc.logging.sink import EventSink
    from gridcalc.project import load_project_config

    if project_dir is None:
        _sink = None
        _project_dir = None
        return

    _project_dir = Path(project_dir)

    fsync = False
    tail_bytes = None
    try:
        cfg = load_project_config(_project_dir)
        fsync = bool(cfg.get("logging_fsync", False))
        tb = cfg.get("logging_tail_bytes")
        if tb is not None:
            tail_bytes = int(tb)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        _stderr_warning(f"could not read logging config: {exc}")

    _sink = EventSink(_project_dir, fsync=fsync, tail_bytes=tail_bytes)


def get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float | None = None
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if _last_stderr_ts is not None and now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[gridcalc] {msg}", file=sys.stderr)
    except OSError:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: GridcalcEvent, *, sheet_id: str | None = None) -> None:
    """Write an event to the global log and optionally to a per-sheet log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.

    Applies secret redaction and attribution validation before writing.
    """
    try:
        sink = get_sink()
        if sink is None:
            return
        event = event.model_copy(update={"context": redact_context(event.context)})
        event = _validate_attribution(event)
        sink.write(event, sheet_id=sheet_id or event.context.get("sheet_id"))
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def _emit_level(
    level: EventLevel,
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None,
    error_code: str | None,
    sheet_id: str | None,
) -> None:
    emit(
        GridcalcEvent(
            level=level,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        sheet_id=sheet_id,
    )


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    sheet_id: str | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    _emit_level(EventLevel.info, event_type, message, context, None, sheet_id)


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    sheet_id: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    _emit_level(EventLevel.warning, event_type, message, context, error_code, sheet_id)


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    sheet_id: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    _emit_level(EventLevel.error, event_type, message, context, error_code, sheet_id)
