"""Bullish-verdict analysis — pure functions, no I/O.

A symbol is bullish when all seven conditions hold:

- **range_ok**: today's high-low range beats each of the 7 prior sessions.
- **close_gt_open**: today's close > today's open.
- **close_gt_yest**: today's close > yesterday's close.
- **vol_yest_ok**: yesterday's volume > 10,000.
- **weekly_bullish**: last *completed* weekly rollup closed above its open.
- **monthly_bullish**: last *completed* monthly rollup closed above its open.
- **sma_ok**: ``sma20 > sma50 > sma200`` at the engine's resolution.

With ``require_short_tf`` the verdict additionally needs at least one of
the short-timeframe SMA stacks to be bullish, when any of that data exists.
"""

from datetime import timezone, tzinfo
from typing import Optional

from bullscan.market.models import Candle, SMASnapshot
from bullscan.market.resolution import MONTHLY, WEEKLY, is_intraday
from bullscan.market.rollup import period_key, rollup
from bullscan.strategy.state import Verdict

MIN_DAILY_CANDLES = 10
RANGE_LOOKBACK = 7
MIN_PREV_VOLUME = 10_000


def range_expansion(window: list[Candle], lookback: int = RANGE_LOOKBACK) -> bool:
    """True when the last candle's range strictly exceeds each of the *lookback* before it."""
    if len(window) < lookback + 1:
        return False
    today = window[-1]
    return all(today.range > c.range for c in window[-(lookback + 1):-1])


def last_completed_period(
    window: list[Candle], mode: str, tz: tzinfo = timezone.utc
) -> Optional[Candle]:
    """Most recent rollup candle whose period ended before the last candle's period."""
    if not window:
        return None
    rolled = rollup(list(window), mode, tz)
    current = period_key(window[-1].timestamp, mode, tz)
    completed = [c for c in rolled if period_key(c.timestamp, mode, tz) != current]
    return completed[-1] if completed else None


def _period_bullish(window, mode, tz) -> bool:
    candle = last_completed_period(window, mode, tz)
    return candle is not None and candle.close > candle.open


def short_tf_confirmation(snapshots: dict[str, SMASnapshot]) -> Optional[bool]:
    """Any complete short-timeframe SMA stack bullish; ``None`` without data."""
    available = [s for s in snapshots.values() if s is not None and s.complete]
    if not available:
        return None
    return any(s.stacked_bullish for s in available)


def evaluate(
    symbol: str,
    window,
    snapshot: Optional[SMASnapshot],
    tz: tzinfo = timezone.utc,
    evaluated_at: Optional[int] = None,
    short_tf: Optional[dict[str, SMASnapshot]] = None,
    require_short_tf: bool = False,
) -> Optional[Verdict]:
    """Compute the verdict for *symbol*.

    Returns ``None`` (no verdict) with fewer than ``MIN_DAILY_CANDLES``
    daily candles or without a complete SMA snapshot.
    """
    window = list(window)
    if len(window) < MIN_DAILY_CANDLES:
        return None
    if snapshot is None or not snapshot.complete:
        return None

    today, yest = window[-1], window[-2]
    flags = {
        "range_ok": range_expansion(window),
        "close_gt_open": today.close > today.open,
        "close_gt_yest": today.close > yest.close,
        "vol_yest_ok": yest.volume > MIN_PREV_VOLUME,
        "weekly_bullish": _period_bullish(window, WEEKLY, tz),
        "monthly_bullish": _period_bullish(window, MONTHLY, tz),
        "sma_ok": snapshot.stacked_bullish,
    }
    bullish = all(flags.values())

    short_tf_ok = None
    if require_short_tf:
        short_tf_ok = short_tf_confirmation(short_tf or {})
        if short_tf_ok is False:
            bullish = False

    # Intraday entries are timed off the newest bar of the SMA resolution.
    candle_ts = today.timestamp
    if is_intraday(snapshot.resolution) and snapshot.timestamp is not None:
        candle_ts = snapshot.timestamp

    return Verdict(
        symbol=symbol,
        bullish=bullish,
        sma20=snapshot.sma20,
        sma50=snapshot.sma50,
        sma200=snapshot.sma200,
        close=today.close,
        prev_close=yest.close,
        resolution=snapshot.resolution,
        timestamp=evaluated_at if evaluated_at is not None else today.timestamp,
        short_tf_ok=short_tf_ok,
        candle_ts=candle_ts,
        **flags,
    )


def apply_tick(
    window,
    price: float,
    day_start: int,
    open_price: Optional[float] = None,
    high_price: Optional[float] = None,
    low_price: Optional[float] = None,
    volume: Optional[float] = None,
) -> tuple[Candle, ...]:
    """Return *window* with today's candle updated by a live price.

    An existing candle at *day_start* gets ``close = price`` and its
    high/low widened to include *price*. Without one, a new candle is
    opened from the tick's session fields (falling back to *price*).
    """
    window = tuple(window)
    last = window[-1] if window else None

    if last is not None and last.timestamp == day_start:
        updated = Candle(
            timestamp=last.timestamp,
            open=last.open,
            high=max(last.high, price),
            low=min(last.low, price),
            close=price,
            volume=volume if volume is not None else last.volume,
        )
        return window[:-1] + (updated,)

    opened = Candle(
        timestamp=day_start,
        open=open_price if open_price is not None else price,
        high=max(high_price if high_price is not None else price, price),
        low=min(low_price if low_price is not None else price, price),
        close=price,
        volume=volume if volume is not None else 0.0,
    )
    return window + (opened,)
