"""BullScan — application entry point.

Builds the FastAPI app around an ``AppContext`` and provides the CLI entry
point for the ``serve`` and ``backfill`` modes.
"""

import logging

from fastapi import FastAPI

from bullscan.api.routers import router
from bullscan.context import AppContext

logger = logging.getLogger("bullscan")


def create_app(context: AppContext) -> FastAPI:
    """Return a FastAPI app whose handlers read *context* from ``app.state``."""
    app = FastAPI(title="BullScan API", version="0.1.0")
    app.state.context = context
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the selected mode."""
    import argparse
    import asyncio

    from bullscan.config import load_config
    from bullscan.context import build_context
    from bullscan.market.resolution import normalize

    parser = argparse.ArgumentParser(description="BullScan bullish-signal scanner")
    parser.add_argument(
        "--mode",
        choices=["serve", "backfill"],
        default="serve",
        help="Run the live service or a one-shot backfill (default: serve)",
    )
    parser.add_argument("--resolution", help="Resolution override (e.g. D, 5, 1h)")
    parser.add_argument("--port", type=int, help="HTTP port override")
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    context = build_context(config)
    resolution = normalize(args.resolution) if args.resolution else None
    if resolution and args.mode == "serve":
        context.engine.set_resolution(resolution)

    if args.mode == "backfill":
        summary = asyncio.run(context.backfill_once(resolution))
        ok = sum(1 for count in summary.values() if count)
        logger.info("Backfill complete: %d/%d symbol(s)", ok, len(summary))
        return

    asyncio.run(_serve(context, args.port or config.http_port))


async def _serve(context: AppContext, port: int) -> None:
    """Run the API server, the tick feed and the backfill loop concurrently."""
    import asyncio
    import signal

    import uvicorn

    uvi_config = uvicorn.Config(
        create_app(context),
        host="0.0.0.0",
        port=port,
        log_level=context.config.log_level.lower(),
    )
    server = uvicorn.Server(uvi_config)

    def handle_shutdown() -> None:
        logger.info("Shutdown signal received — stopping gracefully.")
        server.should_exit = True
        asyncio.ensure_future(context.stop())

    asyncio.get_running_loop().add_signal_handler(signal.SIGINT, handle_shutdown)

    logger.info(
        "Starting BullScan on port %d: %d symbol(s) at resolution %s",
        port, len(context.config.symbols), context.engine.resolution,
    )
    async def _run_server() -> None:
        try:
            await server.serve()
        finally:
            await context.stop()

    results = await asyncio.gather(
        _run_server(),
        context.run_feed(),
        context.run_backfill_loop(),
        return_exceptions=True,
    )
    logger.info("BullScan stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
