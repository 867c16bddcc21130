"""Fan-out of recalculation results to a sheet's live subscribers.

Each sheet is a room.  A WebSocket joins the room of the sheet it opened and
receives one ``cells_updated`` message per write, listing the edited cell
and every recomputed dependent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel

from gridcalc.formulas.errors import ErrorInfo
from gridcalc.scheduler import RecalcResult

if TYPE_CHECKING:
    from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ChangeEvent(BaseModel):
    """One changed cell as subscribers see it."""

    sheet_id: str
    row: int
    column: int
    address: str
    value: Union[bool, int, float, None] = None
    content: str | None = None
    error: ErrorInfo | None = None


def change_events(result: RecalcResult) -> list[ChangeEvent]:
    """Change events for every cell in *result*, edited cell first."""
    return [
        ChangeEvent(
            sheet_id=result.sheet_id,
            row=r.coordinate.row,
            column=r.coordinate.column,
            address=r.coordinate.a1,
            value=r.value,
            content=r.content,
            error=r.error,
        )
        for r in result.results
    ]


def cells_updated_message(result: RecalcResult) -> dict[str, Any]:
    return {
        "type": "cells_updated",
        "sheet_id": result.sheet_id,
        "cells": [e.model_dump(mode="json") for e in change_events(result)],
        "error": result.error.model_dump(mode="json") if result.error else None,
    }


class SheetHub:
    """Tracks which sockets watch which sheet."""

    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    def subscriber_count(self, sheet_id: str) -> int:
        return len(self._rooms.get(sheet_id, ()))

    async def join(self, sheet_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._rooms.setdefault(sheet_id, set()).add(websocket)
        logger.debug("socket joined sheet %s (%d watching)", sheet_id, self.subscriber_count(sheet_id))

    async def leave(self, sheet_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            room = self._rooms.get(sheet_id)
            if room is None:
                return
            room.discard(websocket)
            if not room:
                del self._rooms[sheet_id]

    async def publish(self, result: RecalcResult) -> int:
        """Send *result* to every subscriber of its sheet.

        Sockets that fail to receive are dropped from the room.  Returns
        the number of sockets the message reached.
        """
        async with self._lock:
            targets = list(self._rooms.get(result.sheet_id, ()))
        if not targets:
            return 0

        message = cells_updated_message(result)
        delivered = 0
        for ws in targets:
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.warning("dropping subscriber of %s: %s", result.sheet_id, exc)
                await self.leave(result.sheet_id, ws)
        return delivered
