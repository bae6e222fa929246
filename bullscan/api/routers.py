"""API routers — /resolution, /signals, /status, /history and the signal push channel.

No business logic. Handlers delegate to the ``AppContext`` stored on
``app.state.context`` by ``create_app``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bullscan.context import AppContext
from bullscan.errors import BadResolution
from bullscan.market.resolution import DAILY
from bullscan.signals.bus import SUBSCRIBER_DROPPED

logger = logging.getLogger("bullscan")
router = APIRouter()

TRY_AGAIN_LATER = 1013


def get_context(request: Request) -> AppContext:
    return request.app.state.context


class ResolutionBody(BaseModel):
    resolution: str


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": message})


def _format_symbol(symbol: str) -> str:
    """Bare NSE symbols get the ``-EQ`` series suffix."""
    if symbol.startswith("NSE:") and "-EQ" not in symbol:
        return f"{symbol}-EQ"
    return symbol


# ── Resolution control ───────────────────────────────────────────────────


@router.get("/resolution")
async def get_resolution(ctx: AppContext = Depends(get_context)):
    return {"resolution": ctx.engine.resolution}


@router.post("/resolution")
async def post_resolution(body: ResolutionBody, ctx: AppContext = Depends(get_context)):
    """Switch the SMA resolution and re-analyze every known symbol."""
    try:
        resolution = ctx.engine.set_resolution(body.resolution)
    except BadResolution as exc:
        return _bad_request(str(exc))

    await ctx.engine.analyze_current_data()
    return {
        "success": True,
        "resolution": resolution,
        "bullishSignals": ctx.engine.bullish_signals(),
    }


# ── Signals ──────────────────────────────────────────────────────────────


@router.get("/signals")
async def get_signals(ctx: AppContext = Depends(get_context)):
    signals = ctx.engine.bullish_signals()
    return {"count": len(signals), "signals": signals}


async def relay_signals(
    queue: asyncio.Queue,
    send: Callable[[dict], Awaitable[None]],
    close: Callable[[int], Awaitable[None]],
) -> None:
    """Forward bus events to *send* until the bus drops the subscriber.

    A dropped subscriber is closed with ``TRY_AGAIN_LATER`` so the client
    reconnects and starts over from a fresh snapshot.
    """
    while True:
        event = await queue.get()
        if event is SUBSCRIBER_DROPPED:
            logger.warning("Closing lagging signal subscriber")
            await close(TRY_AGAIN_LATER)
            return
        await send(event)


async def _await_disconnect(websocket: WebSocket) -> None:
    # Inbound frames are ignored; receiving only detects the disconnect.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Signal subscriber disconnected")


@router.websocket("/ws/signals")
async def signals_socket(websocket: WebSocket):
    """Push channel: a ``signal-snapshot`` frame, then open/clear transitions."""
    ctx: AppContext = websocket.app.state.context
    await websocket.accept()
    queue = ctx.bus.subscribe()

    pump = asyncio.create_task(
        relay_signals(queue, websocket.send_json, lambda code: websocket.close(code=code))
    )
    listen = asyncio.create_task(_await_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                logger.debug("Signal socket ended: %s", task.exception())
    finally:
        pump.cancel()
        listen.cancel()
        ctx.bus.unsubscribe(queue)


# ── Status / history ─────────────────────────────────────────────────────


@router.get("/status")
async def get_status(ctx: AppContext = Depends(get_context)):
    """Per-symbol phase and last verdict."""
    symbols = {}
    for symbol in ctx.engine.symbols:
        state = ctx.engine.get_state(symbol)
        symbols[symbol] = {
            "phase": state.phase.value,
            "lastPrice": state.last_price,
            "dailyCandles": len(state.daily_window),
            "verdict": state.last_verdict.to_dict() if state.last_verdict else None,
        }
    return {
        "resolution": ctx.engine.resolution,
        "subscribers": ctx.bus.subscriber_count,
        "feedConnected": ctx.feed is not None and ctx.feed.connected,
        "failedSymbols": sorted(ctx.fetcher.failed_symbols),
        "symbols": symbols,
    }


@router.get("/history")
async def get_history(
    symbol: str = Query(...),
    resolution: str = Query(DAILY),
    lookback: Optional[float] = Query(None, gt=0),
    ctx: AppContext = Depends(get_context),
):
    """Historical candles as ``[ts, o, h, l, c, v]`` rows."""
    formatted = _format_symbol(symbol)
    try:
        result = await ctx.fetcher.get_historical_data(formatted, resolution, lookback)
    except BadResolution as exc:
        return _bad_request(str(exc))

    if not result.success:
        return JSONResponse(
            status_code=502,
            content={"success": False, "message": f"History unavailable for {formatted}"},
        )
    return {
        "success": True,
        "symbol": formatted,
        "count": len(result.candles),
        "candles": [
            [c.timestamp, c.open, c.high, c.low, c.close, c.volume]
            for c in result.candles
        ],
    }
