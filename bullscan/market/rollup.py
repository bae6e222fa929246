"""Weekly / monthly rollup of daily candles. Pure functions, no I/O."""

from datetime import datetime, timezone, tzinfo

from bullscan.market.models import Candle
from bullscan.market.resolution import MONTHLY, WEEKLY


def period_key(timestamp: int, mode: str, tz: tzinfo = timezone.utc) -> tuple[int, int]:
    """Return the grouping key for *timestamp*.

    ``W`` groups by ISO year and ISO week, ``M`` by calendar year and month.
    Dates are taken in *tz* so exchange-midnight stamps land on their
    trading day.
    """
    d = datetime.fromtimestamp(timestamp, tz)
    if mode == WEEKLY:
        iso_year, iso_week, _ = d.isocalendar()
        return (iso_year, iso_week)
    if mode == MONTHLY:
        return (d.year, d.month)
    raise ValueError(f"Rollup mode must be 'W' or 'M', got {mode!r}")


def rollup(daily: list[Candle], mode: str, tz: tzinfo = timezone.utc) -> list[Candle]:
    """Aggregate daily candles into weekly or monthly candles.

    Open is the first member's open in arrival order (groups are not
    re-sorted), high/low are the envelope, close is the last member's close
    and volume is summed. Each output candle carries its first member's
    timestamp; output is ascending by that timestamp.
    """
    if not daily:
        return []

    groups: dict[tuple[int, int], list[Candle]] = {}
    for candle in daily:
        groups.setdefault(period_key(candle.timestamp, mode, tz), []).append(candle)

    out = [
        Candle(
            timestamp=members[0].timestamp,
            open=members[0].open,
            high=max(c.high for c in members),
            low=min(c.low for c in members),
            close=members[-1].close,
            volume=sum(c.volume for c in members),
        )
        for members in groups.values()
    ]
    out.sort(key=lambda c: c.timestamp)
    return out
