"""Exchange session hours and trade entry timing."""

from datetime import date, datetime, time, timedelta, timezone, tzinfo

from bullscan.market.resolution import is_intraday, resolution_minutes

MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 15)


def next_session_day(day: date) -> date:
    """The first weekday after *day*."""
    day += timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def session_open(day: date, tz: tzinfo = timezone.utc) -> datetime:
    return datetime.combine(day, MARKET_OPEN, tzinfo=tz)


def next_entry_time(
    last_candle_ts: int, resolution: str, tz: tzinfo = timezone.utc
) -> datetime:
    """When a signal raised on the candle at *last_candle_ts* can be acted on.

    Daily and coarser signals enter at the next session's open. Intraday
    signals enter at the start of the following bar, clamped into market
    hours: past the close rolls to the next session's open, before the
    open waits for it.
    """
    candle = datetime.fromtimestamp(last_candle_ts, tz)
    if not is_intraday(resolution):
        return session_open(next_session_day(candle.date()), tz)

    entry = candle + timedelta(minutes=resolution_minutes(resolution))
    day = entry.date()
    if entry.time() > MARKET_CLOSE:
        day = next_session_day(day)
    elif entry.time() >= MARKET_OPEN and day.weekday() < 5:
        return entry
    if day.weekday() >= 5:
        day = next_session_day(day)
    return session_open(day, tz)
