"""Candle store — durable OHLCV partitions with derived SMA columns.

Every (symbol, resolution) pair is one partition of the ``candles`` table.
Writes upsert by timestamp bucket and then recompute the SMA(20/50/200)
columns for the whole partition in the same transaction, because a late or
out-of-order candle shifts every SMA after it.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterator, Optional

from bullscan.errors import StorageError
from bullscan.market.indicators import sma_series
from bullscan.market.models import SMA_PERIODS, Candle, SMASnapshot, SMAValue
from bullscan.market.resolution import DERIVED, is_intraday, resolution_minutes
from bullscan.repos.db import get_connection

logger = logging.getLogger("bullscan.store")

_SMA_COLUMNS = {20: "sma20", 50: "sma50", 200: "sma200"}


class CandleStore:
    """Data access layer for candle partitions.

    Args:
        db_path: Path to the SQLite database file.
        tz: Exchange timezone; daily candles bucket to local midnight.
        lock_timeout: Seconds to wait for a partition's writer lock.
        clock: Returns epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        tz: tzinfo = timezone.utc,
        lock_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._tz = tz
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _check_resolution(resolution: str) -> None:
        if resolution in DERIVED:
            raise ValueError(
                f"Resolution {resolution!r} is derived by rollup and never stored"
            )

    def bucket(self, timestamp: int, resolution: str) -> int:
        """Return the start of the bucket *timestamp* falls into."""
        if is_intraday(resolution):
            width = resolution_minutes(resolution) * 60
            return int(timestamp) - int(timestamp) % width
        local = datetime.fromtimestamp(int(timestamp), self._tz)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return int(midnight.timestamp())

    @contextmanager
    def _partition_lock(self, symbol: str, resolution: str) -> Iterator[None]:
        key = (symbol, resolution)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=self._lock_timeout):
            raise StorageError(
                f"Timed out waiting for partition lock {symbol}@{resolution}"
            )
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self._db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open candle store: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    # ── Write ────────────────────────────────────────────────────────────

    def store_candles(
        self, symbol: str, resolution: str, candles: list[Candle]
    ) -> None:
        """Upsert *candles* into the partition and recompute its SMA columns.

        Replaying the same candles leaves the partition unchanged.
        """
        self._check_resolution(resolution)
        if not candles:
            return

        rows = [
            (
                symbol, resolution, self.bucket(c.timestamp, resolution),
                c.open, c.high, c.low, c.close, c.volume,
            )
            for c in candles
        ]
        with self._partition_lock(symbol, resolution), self._connection() as conn:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO candles
                        (symbol, resolution, ts, open, high, low, close, volume)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (symbol, resolution, ts) DO UPDATE SET
                        open = excluded.open,
                        high = excluded.high,
                        low = excluded.low,
                        close = excluded.close,
                        volume = excluded.volume
                    """,
                    rows,
                )
                self._recompute_sma(conn, symbol, resolution)
        logger.debug("Stored %d candle(s) for %s@%s", len(rows), symbol, resolution)

    def _recompute_sma(
        self, conn: sqlite3.Connection, symbol: str, resolution: str
    ) -> None:
        """Single sweep over the partition with 20/50/200 sliding windows."""
        rows = conn.execute(
            "SELECT ts, close FROM candles "
            "WHERE symbol = ? AND resolution = ? ORDER BY ts ASC",
            (symbol, resolution),
        ).fetchall()
        closes = [row["close"] for row in rows]
        series = {p: sma_series(closes, p) for p in SMA_PERIODS}
        conn.executemany(
            """
            UPDATE candles SET sma20 = ?, sma50 = ?, sma200 = ?
            WHERE symbol = ? AND resolution = ? AND ts = ?
            """,
            [
                (series[20][i], series[50][i], series[200][i],
                 symbol, resolution, row["ts"])
                for i, row in enumerate(rows)
            ],
        )

    def cache_sma(
        self, symbol: str, resolution: str, period: int, candles: list[Candle]
    ) -> None:
        """Store *candles* and refresh SMA columns.

        Silently does nothing when fewer than *period* candles are given.
        """
        self._column_for(period)
        if len(candles) < period:
            logger.debug(
                "Skipping SMA(%d) cache for %s@%s: only %d candle(s)",
                period, symbol, resolution, len(candles),
            )
            return
        self.store_candles(symbol, resolution, candles)

    # ── Read ─────────────────────────────────────────────────────────────

    def get_candles(
        self, symbol: str, resolution: str, from_ts: int, to_ts: int
    ) -> list[Candle]:
        """Return candles with ``from_ts <= ts <= to_ts``, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT ts, open, high, low, close, volume FROM candles
                WHERE symbol = ? AND resolution = ? AND ts >= ? AND ts <= ?
                ORDER BY ts ASC
                """,
                (symbol, resolution, from_ts, to_ts),
            ).fetchall()
        return [
            Candle(row["ts"], row["open"], row["high"], row["low"],
                   row["close"], row["volume"])
            for row in rows
        ]

    def count_candles(
        self, symbol: str, resolution: str, from_ts: int, to_ts: int
    ) -> int:
        """Return how many candles fall inside the closed interval."""
        with self._connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM candles
                WHERE symbol = ? AND resolution = ? AND ts >= ? AND ts <= ?
                """,
                (symbol, resolution, from_ts, to_ts),
            ).fetchone()[0]

    def latest_candle_ts(self, symbol: str, resolution: str) -> Optional[int]:
        """Return the newest stored timestamp, or ``None``."""
        with self._connection() as conn:
            return conn.execute(
                "SELECT MAX(ts) FROM candles WHERE symbol = ? AND resolution = ?",
                (symbol, resolution),
            ).fetchone()[0]

    def needs_update(
        self, symbol: str, resolution: str, max_age_hours: float = 24
    ) -> bool:
        """True when the partition is empty or its newest candle is too old."""
        latest = self.latest_candle_ts(symbol, resolution)
        if latest is None:
            return True
        return latest < self._clock() - max_age_hours * 3600

    def symbols_needing_update(
        self, symbols: list[str], resolution: str, max_age_hours: float = 24
    ) -> list[str]:
        return [
            s for s in symbols if self.needs_update(s, resolution, max_age_hours)
        ]

    @staticmethod
    def _column_for(period: int) -> str:
        try:
            return _SMA_COLUMNS[period]
        except KeyError:
            raise ValueError(
                f"Unsupported SMA period {period}; expected one of {SMA_PERIODS}"
            ) from None

    def get_cached_sma(
        self, symbol: str, resolution: str, period: int
    ) -> Optional[SMAValue]:
        """Return the most recent non-null SMA for *period*, or ``None``."""
        column = self._column_for(period)
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT {column} AS value, ts FROM candles
                WHERE symbol = ? AND resolution = ? AND {column} IS NOT NULL
                ORDER BY ts DESC LIMIT 1
                """,
                (symbol, resolution),
            ).fetchone()
        if row is None:
            return None
        return SMAValue(value=row["value"], timestamp=row["ts"])

    def get_sma_snapshot(self, symbol: str, resolution: str) -> SMASnapshot:
        """Return SMA(20/50/200) for the partition; missing periods are ``None``."""
        values = {p: self.get_cached_sma(symbol, resolution, p) for p in SMA_PERIODS}
        stamps = [v.timestamp for v in values.values() if v is not None]
        return SMASnapshot(
            resolution=resolution,
            sma20=values[20].value if values[20] else None,
            sma50=values[50].value if values[50] else None,
            sma200=values[200].value if values[200] else None,
            timestamp=max(stamps) if stamps else None,
        )
