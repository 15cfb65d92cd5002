"""JSON control endpoints: symbol override, cycle trigger, status."""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

log = structlog.get_logger(__name__)

router = APIRouter()


def _symbol_view(request: Request) -> dict:
    selection = request.app.state.selection
    return {"override": selection.override, "configured": selection.configured or None}


@router.get("/symbol")
async def get_symbol(request: Request) -> JSONResponse:
    """Current symbol override and configured symbol."""
    return JSONResponse(content=_symbol_view(request))


@router.put("/symbol")
async def set_symbol(request: Request) -> JSONResponse:
    """Override the symbol for subsequent cycles. Body: {"symbol": "BTCUSDT"}."""
    try:
        body = await request.json()
    except Exception:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)

    symbol = body.get("symbol") if isinstance(body, dict) else None
    if not isinstance(symbol, str) or not symbol.strip():
        return JSONResponse(content={"error": "Missing required field: symbol"}, status_code=400)

    request.app.state.selection.set_override(symbol)
    log.info("symbol_override_via_api", symbol=symbol)
    return JSONResponse(content=_symbol_view(request))


@router.delete("/symbol")
async def clear_symbol(request: Request) -> JSONResponse:
    request.app.state.selection.clear_override()
    return JSONResponse(content=_symbol_view(request))


@router.post("/cycle")
async def trigger_cycle(request: Request) -> JSONResponse:
    """Start a cycle in the background.

    Optional JSON body {"symbol": "..."} trades that symbol for this cycle
    only. Returns 409 while another cycle is running.
    """
    executor = request.app.state.executor
    if executor.is_busy:
        return JSONResponse(content={"error": "Cycle already running"}, status_code=409)

    symbol = None
    raw = await request.body()
    if raw:
        try:
            body = await request.json()
        except Exception:
            return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)
        if isinstance(body, dict) and body.get("symbol"):
            symbol = str(body["symbol"]).strip().upper()

    task = asyncio.create_task(executor.run_cycle(symbol))
    request.app.state.cycle_task = task
    log.info("cycle_triggered_via_api", symbol=symbol)
    return JSONResponse(content={"status": "started", "symbol": symbol}, status_code=202)


@router.get("/cycle/last")
async def get_last_cycle(request: Request) -> JSONResponse:
    outcome = request.app.state.executor.last_outcome
    if outcome is None:
        return JSONResponse(content={"error": "No cycle has run"}, status_code=404)
    return JSONResponse(content=outcome.to_dict())


@router.post("/position/close")
async def close_position(request: Request) -> JSONResponse:
    """Ask the force-close listener to close the armed position."""
    order = await request.app.state.force_close.request_close(reason="api")
    if order is None:
        return JSONResponse(content={"status": "no_action"})
    return JSONResponse(
        content={
            "status": "closed",
            "order_id": order.order_id,
            "filled_qty": str(order.filled_qty),
        }
    )


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Executor, feed, scheduler and force-close state."""
    state = request.app.state
    status = state.executor.get_status()
    status["symbol"] = _symbol_view(request)
    status["force_close_armed"] = state.force_close.armed
    scheduler = getattr(state, "scheduler", None)
    status["scheduled_jobs"] = scheduler.next_runs() if scheduler is not None else {}
    return JSONResponse(content=status)
