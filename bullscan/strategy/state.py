"""Per-symbol strategy state records and their transitions.

Records are immutable; every transition returns a new ``SymbolState``.
The engine keeps them in a table keyed by symbol.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from bullscan.market.models import Candle, SMASnapshot


class Phase(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


@dataclass(frozen=True)
class Verdict:
    """Result of one analysis pass. Replaced, never merged."""

    symbol: str
    bullish: bool
    range_ok: bool
    close_gt_open: bool
    close_gt_yest: bool
    vol_yest_ok: bool
    weekly_bullish: bool
    monthly_bullish: bool
    sma_ok: bool
    sma20: float
    sma50: float
    sma200: float
    close: float
    prev_close: float
    resolution: str
    timestamp: int
    short_tf_ok: Optional[bool] = None
    candle_ts: Optional[int] = None

    def to_dict(self) -> dict:
        """JSON form using the wire (camelCase) flag names."""
        return {
            "symbol": self.symbol,
            "bullish": self.bullish,
            "rangeOK": self.range_ok,
            "closeGTopen": self.close_gt_open,
            "closeGTyest": self.close_gt_yest,
            "volYestOK": self.vol_yest_ok,
            "weeklyBullish": self.weekly_bullish,
            "monthlyBullish": self.monthly_bullish,
            "smaOK": self.sma_ok,
            "shortTfOK": self.short_tf_ok,
            "sma20": self.sma20,
            "sma50": self.sma50,
            "sma200": self.sma200,
            "close": self.close,
            "resolution": self.resolution,
            "timestamp": self.timestamp,
            "candleTs": self.candle_ts,
        }


@dataclass(frozen=True)
class SymbolState:
    symbol: str
    phase: Phase = Phase.UNINITIALIZED
    daily_window: tuple[Candle, ...] = ()
    sma_snapshot: Optional[SMASnapshot] = None
    short_tf: dict[str, SMASnapshot] = field(default_factory=dict)
    last_verdict: Optional[Verdict] = None
    last_price: Optional[float] = None
    last_tick_on: Optional[str] = None
    daily_hydrated_on: Optional[str] = None
    sma_hydrated_on: Optional[str] = None
    short_tf_hydrated_on: Optional[str] = None


def _settle(state: SymbolState) -> SymbolState:
    ready = bool(state.daily_window) and state.sma_snapshot is not None
    return replace(state, phase=Phase.READY if ready else Phase.UNINITIALIZED)


def with_daily(state: SymbolState, window, hydrated_on: str) -> SymbolState:
    return _settle(
        replace(state, daily_window=tuple(window), daily_hydrated_on=hydrated_on)
    )


def with_window(
    state: SymbolState, window, price: float, ticked_on: str
) -> SymbolState:
    """Window mutated by a live tick."""
    return replace(
        state, daily_window=tuple(window), last_price=price, last_tick_on=ticked_on
    )


def with_sma(
    state: SymbolState, snapshot: SMASnapshot, hydrated_on: Optional[str]
) -> SymbolState:
    return _settle(
        replace(state, sma_snapshot=snapshot, sma_hydrated_on=hydrated_on)
    )


def without_sma(state: SymbolState) -> SymbolState:
    return _settle(replace(state, sma_snapshot=None, sma_hydrated_on=None))


def with_short_tf(
    state: SymbolState, snapshots: dict[str, SMASnapshot], hydrated_on: str
) -> SymbolState:
    return replace(state, short_tf=dict(snapshots), short_tf_hydrated_on=hydrated_on)


def with_verdict(state: SymbolState, verdict: Verdict) -> SymbolState:
    return replace(state, last_verdict=verdict)
