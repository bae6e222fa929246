"""Moving-average indicators over candle closes."""

import numpy as np

from bullscan.market.models import Candle


def sma_series(closes, period: int) -> list[float | None]:
    """Simple moving average at every index using one sliding window pass.

    Entry ``i`` is the mean of ``closes[i - period + 1 : i + 1]``. Indices
    before the window fills are ``None``.

    Raises ``ValueError`` if *period* is not positive.
    """
    if period <= 0:
        raise ValueError(f"SMA period must be positive, got {period}")

    values = np.asarray(closes, dtype=float)
    out: list[float | None] = [None] * len(values)
    if len(values) < period:
        return out

    # Running sum: add the newest close, drop the one leaving the window.
    csum = np.cumsum(np.insert(values, 0, 0.0))
    window = (csum[period:] - csum[:-period]) / period
    for i, v in enumerate(window, start=period - 1):
        out[i] = float(v)
    return out


def calculate_sma(candles: list[Candle], period: int) -> float | None:
    """SMA of the last *period* closes, or ``None`` with fewer candles."""
    if len(candles) < period:
        return None
    return sum(c.close for c in candles[-period:]) / period
