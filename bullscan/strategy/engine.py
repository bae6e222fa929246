"""BullScan — strategy engine (tick-to-verdict orchestration).

Keeps one ``SymbolState`` record per symbol, hydrates daily candles and
SMA snapshots on demand, folds live ticks into today's candle and hands
every verdict to the ``SignalBus`` for transition detection.
"""

import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, Optional

from bullscan.errors import FetchExhausted, StorageError
from bullscan.market.fetcher import HistoricalFetcher
from bullscan.market.indicators import calculate_sma
from bullscan.market.models import SMA_PERIODS, Candle, SMASnapshot
from bullscan.market.resolution import DAILY, DERIVED, normalize
from bullscan.repos.candle_store import CandleStore
from bullscan.repos.hydration_repo import DAILY_SCOPE, HydrationRepo
from bullscan.signals.bus import SignalBus
from bullscan.strategy import state as st
from bullscan.strategy.analysis import apply_tick, evaluate
from bullscan.strategy.state import SymbolState, Verdict

logger = logging.getLogger("bullscan.engine")

DAILY_LOOKBACK_DAYS = 300
SHORT_TF_RESOLUTIONS = ("1", "5")
_DAY = 86_400
# One cache write recomputes every SMA column of the partition.
_SHORTEST_SMA = min(SMA_PERIODS)


def _snapshot_from(candles: list[Candle], resolution: str) -> SMASnapshot:
    values = {p: calculate_sma(candles, p) for p in SMA_PERIODS}
    return SMASnapshot(
        resolution=resolution,
        sma20=values[20],
        sma50=values[50],
        sma200=values[200],
        timestamp=candles[-1].timestamp if candles else None,
    )


class StrategyEngine:
    """Per-symbol bullish-signal evaluator.

    Args:
        store: Durable candle cache; source of truth on miss or staleness.
        fetcher: Historical fetcher used when the store cannot answer.
        bus: Receives every verdict for transition detection.
        hydration: Optional persisted hydration marks (one network
            hydration per symbol per exchange day, across restarts).
        resolution: Initial SMA resolution (any ``normalize`` input).
        tz: Exchange timezone; "today" is decided in this zone.
        short_tf_confirm: Also require a bullish 1m/5m SMA stack when
            that data is available.
        concurrency: Symbols refreshed at once by ``analyze_current_data``.
        now: Returns the current aware ``datetime``; injectable for tests.
    """

    def __init__(
        self,
        store: CandleStore,
        fetcher: HistoricalFetcher,
        bus: SignalBus,
        hydration: Optional[HydrationRepo] = None,
        resolution: str = DAILY,
        tz: tzinfo = timezone.utc,
        short_tf_confirm: bool = False,
        concurrency: int = 2,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._bus = bus
        self._hydration = hydration
        self._resolution = normalize(resolution)
        self._tz = tz
        self._short_tf_confirm = short_tf_confirm
        self._concurrency = max(1, concurrency)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._states: dict[str, SymbolState] = {}
        self._inflight: dict[tuple, asyncio.Task] = {}

    # ── Read side ────────────────────────────────────────────────────────

    @property
    def resolution(self) -> str:
        return self._resolution

    @property
    def symbols(self) -> list[str]:
        return list(self._states)

    def get_state(self, symbol: str) -> Optional[SymbolState]:
        return self._states.get(symbol)

    def bullish_signals(self) -> list[dict]:
        return self._bus.signals()

    def register(self, symbols) -> None:
        """Make *symbols* known without hydrating them."""
        for symbol in symbols:
            self._states.setdefault(symbol, SymbolState(symbol=symbol))

    # ── Helpers ──────────────────────────────────────────────────────────

    def today(self) -> str:
        return self._now().astimezone(self._tz).date().isoformat()

    def _now_ts(self) -> int:
        return int(self._now().timestamp())

    def _state(self, symbol: str) -> SymbolState:
        return self._states.setdefault(symbol, SymbolState(symbol=symbol))

    def _is_today(self, ts: int) -> bool:
        return datetime.fromtimestamp(ts, self._tz).date().isoformat() == self.today()

    def _get_mark(self, symbol: str, scope: str) -> Optional[str]:
        if self._hydration is None:
            return None
        return self._hydration.get_mark(symbol, scope)

    def _set_mark(self, symbol: str, scope: str) -> None:
        if self._hydration is not None:
            self._hydration.set_mark(symbol, scope, self.today())

    async def _shared(self, key: tuple, factory: Callable[[], Awaitable]):
        """Run *factory* once per *key*; concurrent callers await the same task."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            logger.debug("Joining in-flight hydration %s", key)
        return await asyncio.shield(task)

    # ── Hydration ────────────────────────────────────────────────────────

    async def ensure_daily(self, symbol: str) -> None:
        """Load the daily window for *symbol* once per exchange day.

        Raises:
            FetchExhausted: when neither the store nor the broker has data.
        """
        current = self._state(symbol)
        if current.daily_hydrated_on == self.today() and current.daily_window:
            return
        await self._shared((symbol, "daily", DAILY), lambda: self._hydrate_daily(symbol))

    def _stored_daily(self, symbol: str, start: int, end: int) -> list[Candle]:
        try:
            return self._store.get_candles(symbol, DAILY, start, end)
        except StorageError as exc:
            logger.error("Daily read failed for %s: %s", symbol, exc)
            return []

    async def _hydrate_daily(self, symbol: str) -> None:
        end = self._now_ts()
        start = end - DAILY_LOOKBACK_DAYS * _DAY
        window = self._stored_daily(symbol, start, end)
        current_day = bool(window) and self._is_today(window[-1].timestamp)
        marked = self._get_mark(symbol, DAILY_SCOPE) == self.today()

        if not current_day and not (marked and window):
            result = await self._fetcher.get_historical_data(
                symbol, DAILY, DAILY_LOOKBACK_DAYS
            )
            if result.success and result.candles:
                try:
                    self._store.cache_sma(symbol, DAILY, _SHORTEST_SMA, result.candles)
                except StorageError as exc:
                    logger.error("Daily SMA cache failed for %s: %s", symbol, exc)
                window = self._stored_daily(symbol, start, end) or result.candles
                self._set_mark(symbol, DAILY_SCOPE)
            elif not window:
                raise FetchExhausted(symbol, DAILY, result.attempts)
            else:
                logger.warning(
                    "Daily refresh failed for %s; using %d stored candle(s)",
                    symbol, len(window),
                )

        self._states[symbol] = st.with_daily(self._state(symbol), window, self.today())
        logger.debug("Daily window for %s: %d candle(s)", symbol, len(window))

    async def _snapshot_for(self, symbol: str, resolution: str) -> SMASnapshot:
        """SMA snapshot from the store, hydrating from the broker when incomplete.

        Raises:
            FetchExhausted: when a required fetch yields nothing.
        """
        if resolution not in DERIVED:
            try:
                snapshot = self._store.get_sma_snapshot(symbol, resolution)
            except StorageError as exc:
                logger.error("SMA read failed for %s@%s: %s", symbol, resolution, exc)
                snapshot = None
            if snapshot is not None and snapshot.complete:
                return snapshot
            if snapshot is not None and self._get_mark(symbol, resolution) == self.today():
                # Already hydrated today; more history will not appear.
                return snapshot

        result = await self._fetcher.get_historical_data(symbol, resolution)
        if not result.success:
            raise FetchExhausted(symbol, resolution, result.attempts)
        if resolution in DERIVED:
            return _snapshot_from(result.candles, resolution)

        try:
            self._store.cache_sma(symbol, resolution, _SHORTEST_SMA, result.candles)
            snapshot = self._store.get_sma_snapshot(symbol, resolution)
        except StorageError as exc:
            logger.error("SMA cache failed for %s@%s: %s", symbol, resolution, exc)
            snapshot = _snapshot_from(result.candles, resolution)
        self._set_mark(symbol, resolution)
        return snapshot

    async def ensure_sma(self, symbol: str) -> None:
        """Load the SMA snapshot for *symbol* at the engine's resolution.

        A snapshot that lands after the resolution changed is discarded.
        """
        resolution = self._resolution
        current = self._state(symbol)
        snap = current.sma_snapshot
        if (
            snap is not None
            and snap.resolution == resolution
            and current.sma_hydrated_on == self.today()
        ):
            return

        snapshot = await self._shared(
            (symbol, "sma", resolution),
            lambda: self._snapshot_for(symbol, resolution),
        )
        if resolution != self._resolution:
            logger.debug(
                "Discarding %s SMA for %s: resolution is now %s",
                resolution, symbol, self._resolution,
            )
            return
        self._states[symbol] = st.with_sma(self._state(symbol), snapshot, self.today())

    async def ensure_short_tf(self, symbol: str) -> None:
        """Load 1m/5m SMA snapshots; missing data is left out, never fatal."""
        if self._state(symbol).short_tf_hydrated_on == self.today():
            return
        snapshots = {}
        for res in SHORT_TF_RESOLUTIONS:
            try:
                snapshots[res] = await self._shared(
                    (symbol, "sma", res), lambda r=res: self._snapshot_for(symbol, r)
                )
            except FetchExhausted as exc:
                logger.warning("Short timeframe data unavailable: %s", exc)
        self._states[symbol] = st.with_short_tf(self._state(symbol), snapshots, self.today())

    # ── Ticks and analysis ───────────────────────────────────────────────

    async def _hydrate(self, symbol: str) -> bool:
        try:
            await self.ensure_daily(symbol)
            await self.ensure_sma(symbol)
            if self._short_tf_confirm:
                await self.ensure_short_tf(symbol)
        except FetchExhausted as exc:
            logger.error("Hydration failed, %s stays degraded: %s", symbol, exc)
            self._fetcher.failed_symbols.add(symbol)
            return False
        return True

    async def tick(
        self,
        symbol: str,
        price: float,
        *,
        open_price: Optional[float] = None,
        high_price: Optional[float] = None,
        low_price: Optional[float] = None,
        volume: Optional[float] = None,
    ) -> Optional[Verdict]:
        """Fold a live price into today's candle and re-analyze *symbol*."""
        if not await self._hydrate(symbol):
            return None

        current = self._state(symbol)
        day_start = self._store.bucket(self._now_ts(), DAILY)
        window = apply_tick(
            current.daily_window, price, day_start,
            open_price=open_price, high_price=high_price,
            low_price=low_price, volume=volume,
        )
        self._states[symbol] = st.with_window(current, window, price, self.today())

        try:
            self._store.store_candles(symbol, DAILY, [window[-1]])
            if self._resolution == DAILY:
                snapshot = self._store.get_sma_snapshot(symbol, DAILY)
                self._states[symbol] = st.with_sma(
                    self._state(symbol), snapshot, self.today()
                )
        except StorageError as exc:
            logger.error("Persisting tick for %s failed: %s", symbol, exc)

        return self.analyze(symbol)

    def analyze(self, symbol: str) -> Optional[Verdict]:
        """Evaluate *symbol* and publish the verdict; ``None`` on insufficient data."""
        current = self._states.get(symbol)
        if current is None:
            return None
        snapshot = current.sma_snapshot
        if snapshot is not None and snapshot.resolution != self._resolution:
            snapshot = None

        verdict = evaluate(
            symbol,
            current.daily_window,
            snapshot,
            tz=self._tz,
            evaluated_at=self._now_ts(),
            short_tf=current.short_tf,
            require_short_tf=self._short_tf_confirm,
        )
        if verdict is None:
            logger.debug("Insufficient data to analyze %s", symbol)
            return None

        previous = current.last_verdict
        self._states[symbol] = st.with_verdict(current, verdict)
        self._bus.publish(symbol, previous, verdict)
        return verdict

    # ── Resolution control ───────────────────────────────────────────────

    def set_resolution(self, value) -> str:
        """Switch the SMA resolution; clears every cached snapshot on change.

        Raises:
            BadResolution: when *value* cannot be normalized.
        """
        resolution = normalize(value)
        if resolution == self._resolution:
            return resolution
        logger.info("Resolution %s -> %s", self._resolution, resolution)
        self._resolution = resolution
        for symbol, current in list(self._states.items()):
            self._states[symbol] = st.without_sma(current)
        return resolution

    async def analyze_current_data(self) -> list[Verdict]:
        """Reload SMAs under the current resolution and re-analyze every known symbol.

        Symbols that ticked today are re-ticked with their last price; the
        others are hydrated and analyzed against their stored daily window.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _refresh(symbol: str) -> Optional[Verdict]:
            async with semaphore:
                self._states[symbol] = st.without_sma(self._state(symbol))
                current = self._state(symbol)
                if current.last_price is not None and current.last_tick_on == self.today():
                    return await self.tick(symbol, current.last_price)
                if not await self._hydrate(symbol):
                    return None
                return self.analyze(symbol)

        results = await asyncio.gather(*(_refresh(s) for s in self.symbols))
        return [v for v in results if v is not None]
