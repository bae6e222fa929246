"""Historical fetcher — rate-limited, retrying acquisition of candle history.

Lookup order for a request is: in-memory memo (5 minute TTL), then the
candle store, then the broker. Broker calls pass through the token-bucket
limiter, back off exponentially on failure, and widen the window backward
when an intraday response comes back short.
"""

import asyncio
import logging
import math
import time
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, Optional

from bullscan.broker.models import HistoryRequest
from bullscan.broker.rate_limiter import RateLimiter
from bullscan.errors import BrokerError, StorageError
from bullscan.market.models import Candle, FetchResult
from bullscan.market.resolution import (
    DAILY,
    MONTHLY,
    WEEKLY,
    is_intraday,
    max_lookback_days,
    normalize,
    resolution_minutes,
)
from bullscan.market.rollup import rollup
from bullscan.repos.candle_store import CandleStore

logger = logging.getLogger("bullscan.fetcher")

WANT = 200
_MAX_RETRY = 3  # retry indices 0..3, four attempts in total
_SESSION_MINUTES = 6.5 * 60
_WINDOW_SLACK = 1.3
_DAY = 86_400
_CACHE_TTL = 5 * 60
_DEFAULT_ROLLUP_LOOKBACK = {WEEKLY: 52, MONTHLY: 12}


def freshness_hours(resolution: str) -> float:
    """Age after which a stored partition counts as stale: a day for daily,
    two bars for intraday."""
    if is_intraday(resolution):
        return 2 * resolution_minutes(resolution) / 60
    return 24.0


def _parse_rows(rows: list) -> list[Candle]:
    """Convert broker rows to candles, dropping malformed rows and duplicates."""
    seen: set[int] = set()
    out: list[Candle] = []
    for row in rows:
        try:
            candle = Candle.from_row(row)
        except (TypeError, ValueError):
            logger.debug("Skipping malformed candle row %r", row)
            continue
        if candle.timestamp in seen:
            continue
        seen.add(candle.timestamp)
        out.append(candle)
    out.sort(key=lambda c: c.timestamp)
    return out


def _merge(first: list[Candle], second: list[Candle]) -> list[Candle]:
    """Union by timestamp (first wins), ascending."""
    known = {c.timestamp for c in first}
    merged = list(first) + [c for c in second if c.timestamp not in known]
    merged.sort(key=lambda c: c.timestamp)
    return merged


class HistoricalFetcher:
    """Acquire historical candles for (symbol, resolution).

    Args:
        broker: A ``FyersClient`` (or compatible duck-type / mock) exposing
            ``async get_history(HistoryRequest) -> HistoryResponse``.
        store: Candle store consulted before the network and written after.
        limiter: Shared ``RateLimiter``; a default 8/min limiter if omitted.
        tz: Exchange timezone for memo keys and rollups.
        cache_ttl: Memo lifetime in seconds.
        clock: Returns epoch seconds; injectable for tests.
        sleep: Coroutine used for backoff; injectable for tests.
    """

    def __init__(
        self,
        broker,
        store: Optional[CandleStore] = None,
        limiter: Optional[RateLimiter] = None,
        tz: tzinfo = timezone.utc,
        cache_ttl: float = _CACHE_TTL,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._store = store
        self._limiter = limiter or RateLimiter()
        self._tz = tz
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._sleep = sleep
        self._memo: dict[str, tuple[float, FetchResult]] = {}
        self.failed_symbols: set[str] = set()

    # ── Broker fetch with retry / window expansion ──────────────────────

    async def fetch(
        self, request: HistoryRequest, want: int, retry: int = 0
    ) -> FetchResult:
        """Fetch *request*, retrying failures and widening short windows.

        Never raises for broker failures; after four attempts the result
        carries whatever was accumulated (``success=False`` if nothing).
        """
        tag = f"{request.symbol}@{request.resolution}"
        await self._limiter.wait()
        try:
            resp = await self._broker.get_history(request)
            failure = None if resp.ok else (resp.message or resp.status)
        except BrokerError as exc:
            resp, failure = None, str(exc)

        if failure is not None:
            if retry >= _MAX_RETRY:
                logger.warning("Max retries reached for %s: %s", tag, failure)
                return FetchResult(success=False, candles=[], attempts=retry + 1)
            delay = 2 ** retry
            logger.warning(
                "History %s failed (%s) — retry %d/%d in %.1fs",
                tag, failure, retry + 1, _MAX_RETRY + 1, delay,
            )
            await self._sleep(delay)
            return await self.fetch(request, want, retry + 1)

        candles = _parse_rows(resp.candles)
        attempts = retry + 1
        if len(candles) >= want or not is_intraday(request.resolution):
            return FetchResult(success=True, candles=candles, attempts=attempts)

        # Short intraday response: widen backward, never past the look-back cap.
        earliest = int(self._clock()) - max_lookback_days(request.resolution) * _DAY
        span = request.range_to - request.range_from
        next_from = max(request.range_from - span * (retry + 1), earliest)
        if next_from >= request.range_from or retry >= _MAX_RETRY:
            logger.debug(
                "%s: %d/%d candles, look-back cap reached", tag, len(candles), want
            )
            return FetchResult(success=True, candles=candles, attempts=attempts)

        logger.debug(
            "%s: %d/%d candles, widening window to %d", tag, len(candles), want, next_from
        )
        more = await self.fetch(replace(request, range_from=next_from), want, retry + 1)
        if more.success and more.candles:
            candles = _merge(candles, more.candles)
        return FetchResult(
            success=True, candles=candles, attempts=max(attempts, more.attempts)
        )

    # ── Public API ───────────────────────────────────────────────────────

    def _window(self, resolution: str, lookback: Optional[float]) -> tuple[int, int]:
        if lookback is None:
            minutes = resolution_minutes(resolution)
            back_days = math.ceil(WANT * minutes / _SESSION_MINUTES) * _WINDOW_SLACK
        else:
            back_days = lookback
        back_days = min(back_days, max_lookback_days(resolution))
        end = int(self._clock())
        return end - int(back_days * _DAY), end

    def _memo_key(self, symbol: str, resolution: str, start: int, end: int) -> str:
        day = lambda ts: datetime.fromtimestamp(ts, self._tz).date().isoformat()
        return f"{symbol}|{resolution}|{day(start)}|{day(end)}"

    def _remember(self, key: str, result: FetchResult) -> None:
        now = self._clock()
        for stale in [k for k, (at, _) in self._memo.items() if now - at >= self._cache_ttl]:
            del self._memo[stale]
        self._memo[key] = (now, result)

    def _is_fresh(self, symbol: str, resolution: str) -> bool:
        return not self._store.needs_update(symbol, resolution, freshness_hours(resolution))

    def _from_store(
        self, symbol: str, resolution: str, start: int, end: int
    ) -> Optional[list[Candle]]:
        """Stored candles when they are fresh and cover the window, else ``None``."""
        if self._store is None:
            return None
        try:
            if not self._is_fresh(symbol, resolution):
                return None
            count = self._store.count_candles(symbol, resolution, start, end)
            # A week of slack absorbs weekends and holidays at the window start.
            covered = count >= WANT or (
                count > 0
                and self._store.count_candles(symbol, resolution, start, start + 7 * _DAY) > 0
            )
            if not covered:
                return None
            return self._store.get_candles(symbol, resolution, start, end)
        except StorageError as exc:
            logger.error("Candle store read failed for %s@%s: %s", symbol, resolution, exc)
            return None

    async def get_historical_data(
        self,
        symbol: str,
        resolution: str = DAILY,
        lookback: Optional[float] = None,
    ) -> FetchResult:
        """Return history for *symbol* at *resolution*.

        Args:
            symbol: e.g. ``"NSE:SBIN-EQ"``
            resolution: any input ``normalize`` accepts.
            lookback: calendar days for daily/intraday (capped by the
                look-back policy); periods for ``W``/``M``.

        Raises:
            BadResolution: if *resolution* cannot be normalized.
        """
        res = normalize(resolution)

        if res in (WEEKLY, MONTHLY):
            periods = lookback or _DEFAULT_ROLLUP_LOOKBACK[res]
            days = periods * 7 if res == WEEKLY else periods * 31
            daily = await self.get_historical_data(symbol, DAILY, days)
            return FetchResult(
                success=daily.success,
                candles=rollup(daily.candles, res, self._tz),
                attempts=daily.attempts,
            )

        start, end = self._window(res, lookback)
        key = self._memo_key(symbol, res, start, end)
        hit = self._memo.get(key)
        if hit and self._clock() - hit[0] < self._cache_ttl:
            logger.debug("Memo hit %s", key)
            return hit[1]

        stored = self._from_store(symbol, res, start, end)
        if stored is not None:
            logger.debug("Serving %s@%s from candle store", symbol, res)
            result = FetchResult(success=True, candles=stored)
            self._remember(key, result)
            return result

        logger.info(
            "Fetching %s@%s %s → %s", symbol, res,
            datetime.fromtimestamp(start, self._tz).date(),
            datetime.fromtimestamp(end, self._tz).date(),
        )
        result = await self.fetch(HistoryRequest(symbol, res, start, end), WANT)
        if not result.success:
            self.failed_symbols.add(symbol)
            logger.error(
                "History for %s@%s exhausted after %d attempt(s)",
                symbol, res, result.attempts,
            )
            return result

        self.failed_symbols.discard(symbol)
        self._remember(key, result)
        if self._store is not None and result.candles:
            try:
                self._store.store_candles(symbol, res, result.candles)
            except StorageError as exc:
                logger.error("Failed to persist %s@%s: %s", symbol, res, exc)
        return result

    async def fetch_many(
        self,
        symbols: list[str],
        resolution: str = DAILY,
        lookback: Optional[float] = None,
        concurrency: int = 2,
    ) -> dict[str, FetchResult]:
        """Backfill several symbols with at most *concurrency* in flight.

        Symbols that already failed in this cycle are skipped.

        Returns:
            ``{symbol: FetchResult}`` for every symbol attempted.
        """
        res = normalize(resolution)
        semaphore = asyncio.Semaphore(max(1, concurrency))
        pending = [s for s in symbols if s not in self.failed_symbols]
        skipped = len(symbols) - len(pending)
        if skipped:
            logger.info("Skipping %d previously failed symbol(s)", skipped)

        async def _one(sym: str) -> tuple[str, FetchResult]:
            async with semaphore:
                try:
                    return sym, await self.get_historical_data(sym, res, lookback)
                except StorageError as exc:
                    logger.error("Backfill %s@%s failed: %s", sym, res, exc)
                    return sym, FetchResult(success=False)

        results = await asyncio.gather(*(_one(s) for s in pending))
        return dict(results)

    def reset_failures(self) -> None:
        """Start a new cycle: previously failed symbols are retried."""
        self.failed_symbols.clear()

    def clear_cache(self) -> None:
        self._memo.clear()
