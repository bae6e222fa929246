"""Market data models — typed representations of candles and SMA values."""

from dataclasses import dataclass, field
from typing import Optional


SMA_PERIODS: tuple[int, ...] = (20, 50, 200)


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar keyed by its bucket start (epoch seconds)."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_row(cls, row) -> "Candle":
        """Build from a broker array ``[ts, o, h, l, c, v]``."""
        ts, o, h, l, c, v = row[:6]
        return cls(int(ts), float(o), float(h), float(l), float(c), float(v))

    @property
    def range(self) -> float:
        return self.high - self.low


@dataclass(frozen=True)
class SMAValue:
    """A cached moving-average value and the candle it was computed through."""

    value: float
    timestamp: int


@dataclass(frozen=True)
class SMASnapshot:
    """SMA(20/50/200) for one (symbol, resolution).

    A period with fewer than N candles behind it is ``None``, never zero.
    """

    resolution: str
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    sma200: Optional[float] = None
    timestamp: Optional[int] = None

    @property
    def complete(self) -> bool:
        return None not in (self.sma20, self.sma50, self.sma200)

    @property
    def stacked_bullish(self) -> bool:
        """``sma20 > sma50 > sma200``; False while any value is absent."""
        if not self.complete:
            return False
        return self.sma20 > self.sma50 > self.sma200


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a historical-data request."""

    success: bool
    candles: list[Candle] = field(default_factory=list)
    attempts: int = 0
