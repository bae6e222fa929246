"""AppContext — owns and wires every long-lived component.

Built once at startup from ``Config``; the API and CLI receive it
explicitly instead of reaching for module-level singletons.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from bullscan.broker.fyers_client import FyersClient
from bullscan.broker.rate_limiter import RateLimiter
from bullscan.config import Config
from bullscan.errors import StorageError
from bullscan.feed.data_socket import DataSocket, MarketDataFeed
from bullscan.feed.tick_router import TickRouter
from bullscan.market.fetcher import HistoricalFetcher, freshness_hours
from bullscan.market.resolution import DAILY, DERIVED, normalize
from bullscan.repos.candle_store import CandleStore
from bullscan.repos.db import init_db
from bullscan.repos.hydration_repo import HydrationRepo
from bullscan.signals.bus import SignalBus
from bullscan.strategy.engine import StrategyEngine

logger = logging.getLogger("bullscan")


@dataclass
class AppContext:
    config: Config
    store: CandleStore
    fetcher: HistoricalFetcher
    bus: SignalBus
    engine: StrategyEngine
    router: TickRouter
    feed: Optional[MarketDataFeed] = None
    _stopping: asyncio.Event = field(default_factory=asyncio.Event)

    # ── Background loops ─────────────────────────────────────────────────

    async def backfill_once(self, resolution: Optional[str] = None) -> dict:
        """Bulk-refresh the configured symbols whose stored candles are stale.

        Returns:
            ``{symbol: candle count}`` for every symbol refreshed; failed
            symbols map to ``0``.
        """
        self.fetcher.reset_failures()
        res = normalize(resolution or self.engine.resolution)
        # Weekly and monthly candles are rolled up from the daily partition.
        stored = DAILY if res in DERIVED else res
        try:
            stale = self.store.symbols_needing_update(
                list(self.config.symbols), stored, freshness_hours(stored)
            )
        except StorageError as exc:
            logger.error("Freshness check failed, refreshing every symbol: %s", exc)
            stale = list(self.config.symbols)
        if not stale:
            logger.info("Backfill %s: every symbol is fresh", res)
            return {}

        results = await self.fetcher.fetch_many(
            stale, res, concurrency=self.config.fetch_concurrency,
        )
        summary = {s: len(r.candles) if r.success else 0 for s, r in results.items()}
        for symbol, count in summary.items():
            if count:
                logger.info("Backfill %s@%s: %d candle(s)", symbol, res, count)
            else:
                logger.warning("Backfill %s@%s: failed", symbol, res)
        return summary

    async def run_backfill_loop(self) -> None:
        """Periodically backfill until ``stop()``."""
        interval = self.config.backfill_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.backfill_once()
            except Exception as exc:
                logger.error("Backfill cycle error: %s", exc)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run_feed(self) -> None:
        if self.feed is None:
            logger.warning("No market-data feed configured")
            return
        await self.router.run(self.feed)

    async def stop(self) -> None:
        self._stopping.set()
        if self.feed is not None:
            await self.feed.disconnect()
        await self.router.stop()


def build_context(config: Config, broker=None, feed: Optional[MarketDataFeed] = None) -> AppContext:
    """Create the database and all components for *config*.

    Args:
        config: Loaded configuration.
        broker: Override for the REST adapter (tests pass a mock).
        feed: Override for the market-data feed; defaults to ``DataSocket``.
    """
    init_db(config.db_path)
    tz = config.tz
    store = CandleStore(config.db_path, tz=tz)
    fetcher = HistoricalFetcher(
        broker or FyersClient(config),
        store=store,
        limiter=RateLimiter(max_per_minute=config.rate_limit_per_minute),
        tz=tz,
    )
    bus = SignalBus(tz=tz)
    engine = StrategyEngine(
        store,
        fetcher,
        bus,
        hydration=HydrationRepo(config.db_path),
        resolution=config.default_resolution,
        tz=tz,
        short_tf_confirm=config.short_tf_confirm,
        concurrency=config.fetch_concurrency,
    )
    engine.register(config.symbols)
    if feed is None:
        feed = DataSocket(config.data_ws_url, config.socket_token, config.symbols)
    return AppContext(
        config=config,
        store=store,
        fetcher=fetcher,
        bus=bus,
        engine=engine,
        router=TickRouter(engine),
        feed=feed,
    )
