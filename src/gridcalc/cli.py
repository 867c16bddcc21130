"""Command-line interface for gridcalc."""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import click

from gridcalc import __version__

if TYPE_CHECKING:
    from gridcalc.service import CalcService


@click.group()
@click.version_option(version=__version__, prog_name="gridcalc")
def main() -> None:
    """gridcalc -- spreadsheet formula evaluation and recalculation engine."""


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

_project_option = click.option(
    "--project",
    "directory",
    default=".",
    type=click.Path(exists=True, file_okay=False),
    help="Project directory.",
)


@contextmanager
def _open_service(directory: str) -> Iterator[CalcService]:
    from gridcalc.logging import set_project_dir
    from gridcalc.service import CalcService

    project_dir = Path(directory)
    set_project_dir(project_dir)
    service = CalcService(project_dir=project_dir)
    try:
        yield service
    finally:
        service.close()


def _echo_event(evt: dict) -> None:
    ts = evt.get("ts", "")
    lvl = evt.get("level", "").upper()
    etype = evt.get("event_type", "")
    msg = evt.get("message", "")
    err = evt.get("error_code")
    line = f"[{ts}] {lvl:7s} {etype}: {msg}"
    if err:
        line += f"  ({err})"
    click.echo(line)


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Scaffold a new project at DIRECTORY."""
    from gridcalc.project import scaffold_project

    try:
        target = scaffold_project(Path(directory))
    except FileExistsError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"Created project at {target}")


# ---------------------------------------------------------------------------
# Formulas and cells
# ---------------------------------------------------------------------------


@main.command("eval")
@click.argument("formula")
@click.option("--sheet", "sheet_id", default="Sheet1", help="Sheet the formula reads from.")
@_project_option
def eval_cmd(formula: str, sheet_id: str, directory: str) -> None:
    """Evaluate FORMULA without storing it."""
    from gridcalc.formulas.errors import FormulaError
    from gridcalc.resolver import format_value

    with _open_service(directory) as svc:
        try:
            value = svc.evaluate_formula(formula, sheet_id)
        except FormulaError as exc:
            click.echo(f"{exc.to_info().token} {exc.message}", err=True)
            raise SystemExit(2)
    click.echo(format_value(value))


@main.command("set")
@click.argument("sheet_id")
@click.argument("addr")
@click.argument("value")
@click.option("--hyperlink", default=None, help="Hyperlink to store with the cell.")
@_project_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def set_cmd(sheet_id: str, addr: str, value: str, hyperlink: str | None, directory: str, as_json: bool) -> None:
    """Write VALUE to ADDR on SHEET_ID.  Values starting with '=' are formulas."""
    with _open_service(directory) as svc:
        try:
            result = svc.write_cell(sheet_id, addr, content=value, hyperlink=hyperlink)
        except ValueError as exc:
            raise click.ClickException(str(exc))

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        for r in result.results:
            line = f"{r.coordinate.a1}\t{r.display}"
            if r.error is not None:
                line += f"\t{r.error.message}"
            click.echo(line)
        if result.error is not None:
            click.echo(f"{result.error.token} {result.error.message}", err=True)

    if not result.ok:
        raise SystemExit(2)


@main.command()
@click.argument("sheet_id")
@click.argument("addr")
@_project_option
def get(sheet_id: str, addr: str, directory: str) -> None:
    """Show the stored cell at ADDR on SHEET_ID."""
    with _open_service(directory) as svc:
        try:
            snap = svc.get_cell(sheet_id, addr)
        except ValueError as exc:
            raise click.ClickException(str(exc))
    if snap is None:
        raise click.ClickException(f"No cell at {addr.upper()} on sheet {sheet_id!r}")
    click.echo(json.dumps(snap.model_dump(), indent=2))


@main.command()
@click.argument("sheet_id")
@_project_option
def cells(sheet_id: str, directory: str) -> None:
    """List every stored cell on SHEET_ID."""
    with _open_service(directory) as svc:
        rows = svc.list_cells(sheet_id)

    if not rows:
        click.echo("No cells.")
        return
    for coord, snap in rows:
        line = f"{coord.a1}\t{snap.content if snap.content is not None else ''}"
        if snap.formula:
            line += f"\t{snap.formula}"
        click.echo(line)


@main.command()
@click.argument("sheet_id")
@click.argument("addr")
@click.option("--transitive", is_flag=True, help="Include indirect dependents, in recalculation order.")
@_project_option
def dependents(sheet_id: str, addr: str, transitive: bool, directory: str) -> None:
    """List the cells whose formulas read ADDR."""
    with _open_service(directory) as svc:
        try:
            coords = svc.dependents(sheet_id, addr, transitive=transitive)
        except ValueError as exc:
            raise click.ClickException(str(exc))
    if not coords:
        click.echo("No dependents.")
        return
    for coord in coords:
        click.echo(coord.a1)


@main.command()
@_project_option
def rebuild(directory: str) -> None:
    """Rebuild the dependency graph from stored formulas."""
    with _open_service(directory) as svc:
        count = svc.rebuild_graph()
    click.echo(f"Rebuilt dependency graph from {count} formulas.")


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@main.command()
@_project_option
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--port", type=int, default=8000, help="Port to listen on.")
def serve(directory: str, host: str, port: int) -> None:
    """Serve the HTTP and WebSocket API for a project."""
    import uvicorn

    from gridcalc.server import create_app

    app = create_app(Path(directory))
    click.echo(f"Serving gridcalc at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        click.echo("\nStopped.")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@_project_option
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--sheet", "sheet_id", default=None, help="Filter by sheet id.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    sheet_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log, newest first."""
    from gridcalc.logging.sink import EventSink

    sink = EventSink(Path(directory))
    events = sink.read_global(level=level, event_type=event_type, sheet_id=sheet_id, limit=limit)

    if not events:
        click.echo("No events found.")
        return
    for evt in events:
        _echo_event(evt)


@main.command("sheet-log")
@_project_option
@click.argument("sheet_id")
def sheet_log_cmd(directory: str, sheet_id: str) -> None:
    """Show the event log for one sheet, oldest first."""
    from gridcalc.logging.sink import EventSink

    events = EventSink(Path(directory)).read_sheet_log(sheet_id)
    if not events:
        click.echo(f"No events found for sheet {sheet_id}.")
        return
    for evt in events:
        _echo_event(evt)
