"""FastAPI server exposing formula previews, cell writes and live updates.

Routes are thin wrappers over the shared :class:`CalcService`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gridcalc.broadcast import SheetHub, change_events
from gridcalc.coords import Address
from gridcalc.formulas.errors import FormulaError
from gridcalc.logging import EventType, emit_info, set_project_dir
from gridcalc.scheduler import RecalcResult
from gridcalc.service import CalcService
from gridcalc.store import CellSnapshot

# The singleton service and hub are set at startup by ``create_app()``.
_service: CalcService | None = None
_hub: SheetHub | None = None


def create_app(project_dir: Path | None = None, *, service: CalcService | None = None) -> FastAPI:
    """Create the FastAPI application for a given project.

    Args:
        project_dir: Root of the gridcalc project.  Events are logged under
            its ``logs/`` directory.
        service: Pre-built service (tests); built from *project_dir* otherwise.

    Returns:
        Configured FastAPI instance.
    """
    global _service, _hub
    if project_dir is not None:
        set_project_dir(project_dir)
    _service = service or CalcService(project_dir=project_dir)
    _hub = SheetHub()

    from gridcalc import __version__

    app = FastAPI(title="gridcalc", version=__version__)
    app.include_router(_api_router())

    @app.websocket("/ws/sheets/{sheet_id}")
    async def sheet_updates(websocket: WebSocket, sheet_id: str) -> None:
        hub = _get_hub()
        await websocket.accept()
        await hub.join(sheet_id, websocket)
        await websocket.send_json({"type": "subscribed", "sheet_id": sheet_id})
        try:
            while True:
                # Clients only listen; anything they send is ignored.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await hub.leave(sheet_id, websocket)

    emit_info(
        EventType.server_started,
        "gridcalc server started",
        {"project_dir": str(project_dir) if project_dir else None, "version": __version__},
    )
    return app


def _svc() -> CalcService:
    """Get the singleton service, raising if not initialised."""
    if _service is None:
        raise HTTPException(500, "Service not initialised")
    return _service


def _get_hub() -> SheetHub:
    if _hub is None:
        raise HTTPException(500, "Service not initialised")
    return _hub


# ---------------------------------------------------------------------------
# Request/response models
# ---------------------------------------------------------------------------


class EvaluateRequest(BaseModel):
    sheet_id: str
    formula: str


class CellEdit(BaseModel):
    addr: str | None = None
    row: int | None = None
    column: int | None = None
    content: str | None = None
    formula: str | None = None
    hyperlink: str | None = None


class BulkEditRequest(BaseModel):
    cells: list[CellEdit]


def _error_response(exc: FormulaError) -> JSONResponse:
    return JSONResponse(status_code=400, content=exc.to_info().model_dump(mode="json"))


def _recalc_payload(result: RecalcResult) -> dict[str, Any]:
    return {
        "ok": result.ok,
        "sheet_id": result.sheet_id,
        "cells": [e.model_dump(mode="json") for e in change_events(result)],
        "error": result.error.model_dump(mode="json") if result.error else None,
        "elapsed_ms": result.elapsed_ms,
    }


def _cell_payload(sheet_id: str, addr: str, snap: CellSnapshot) -> dict[str, Any]:
    return {
        "sheet_id": sheet_id,
        "addr": addr,
        "content": snap.content,
        "formula": snap.formula,
        "hyperlink": snap.hyperlink,
    }


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _api_router():
    from fastapi import APIRouter

    router = APIRouter(prefix="/api")

    @router.get("/health")
    async def health() -> dict[str, Any]:
        from gridcalc import __version__

        return {"status": "ok", "version": __version__}

    # -- Formula preview --

    @router.post("/formula/evaluate")
    async def evaluate(req: EvaluateRequest) -> Any:
        try:
            result = _svc().evaluate_formula(req.formula, req.sheet_id)
        except FormulaError as exc:
            return _error_response(exc)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return {"result": result}

    # -- Cell writes --

    @router.put("/sheets/{sheet_id}/cells")
    async def write_cell(sheet_id: str, edit: CellEdit) -> dict[str, Any]:
        try:
            (result,) = _svc().write_cells(sheet_id, [edit.model_dump()])
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        await _get_hub().publish(result)
        return _recalc_payload(result)

    @router.post("/sheets/{sheet_id}/cells/bulk")
    async def write_cells(sheet_id: str, req: BulkEditRequest) -> dict[str, Any]:
        try:
            results = _svc().write_cells(sheet_id, [e.model_dump() for e in req.cells])
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        hub = _get_hub()
        for result in results:
            await hub.publish(result)
        return {
            "ok": all(r.ok for r in results),
            "results": [_recalc_payload(r) for r in results],
        }

    # -- Cell reads --

    @router.get("/sheets/{sheet_id}/cells")
    async def list_cells(sheet_id: str) -> list[dict[str, Any]]:
        try:
            rows = _svc().list_cells(sheet_id)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return [_cell_payload(sheet_id, coord.a1, snap) for coord, snap in rows]

    @router.get("/sheets/{sheet_id}/cells/{addr}")
    async def get_cell(sheet_id: str, addr: str) -> dict[str, Any]:
        try:
            snap = _svc().get_cell(sheet_id, addr)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        if snap is None:
            raise HTTPException(404, f"No cell at {Address.parse(addr).a1} on sheet {sheet_id!r}")
        return _cell_payload(sheet_id, Address.parse(addr).a1, snap)

    @router.get("/sheets/{sheet_id}/cells/{addr}/dependents")
    async def dependents(
        sheet_id: str,
        addr: str,
        transitive: bool = Query(False),
    ) -> dict[str, Any]:
        try:
            coords = _svc().dependents(sheet_id, addr, transitive=transitive)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return {"addr": Address.parse(addr).a1, "dependents": [c.a1 for c in coords]}

    return router
