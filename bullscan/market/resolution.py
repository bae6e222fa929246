"""Resolution normalization — pure mapping from user input to canonical tokens.

Canonical tokens are minute counts (``"1"``, ``"5"``, ``"15"``, ``"30"``,
``"60"``, ``"120"``), ``"D"`` for daily, and the derived ``"W"``/``"M"``
which are rolled up from daily candles and never persisted.
"""

import re

from bullscan.errors import BadResolution


DAILY = "D"
WEEKLY = "W"
MONTHLY = "M"
DERIVED = (WEEKLY, MONTHLY)

# No native 4-hour bucket exists; 240 collapses onto 120.
# Policy decision, pending confirmation from the desk.
_FALLBACKS = {"240": "120"}

_MINUTES_RE = re.compile(r"^\d+M$", re.IGNORECASE)
_HOURS_RE = re.compile(r"^\d+H$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d+$")


def normalize(value) -> str:
    """Map raw resolution input onto a canonical token.

    Examples: ``"15M" -> "15"``, ``"2H" -> "120"``, ``"1D" -> "D"``,
    ``"240" -> "120"``.

    Raises ``BadResolution`` for anything that is not a known token or a
    positive whole number of minutes.
    """
    res = str(value).strip().upper()

    if _MINUTES_RE.match(res):
        res = res[:-1]
    elif _HOURS_RE.match(res):
        res = str(int(res[:-1]) * 60)
    elif res == "1D":
        res = DAILY

    if _DIGITS_RE.match(res):
        res = str(int(res))
        if res == "0":
            raise BadResolution(value)
        res = _FALLBACKS.get(res, res)
    elif res not in (DAILY, WEEKLY, MONTHLY):
        raise BadResolution(value)

    return res


def is_intraday(resolution: str) -> bool:
    """True for minute-count tokens."""
    return _DIGITS_RE.match(resolution) is not None


def resolution_minutes(resolution: str) -> int:
    """Bucket width in minutes; daily and coarser count as 1440."""
    if is_intraday(resolution):
        return int(resolution)
    return 1440


def max_lookback_days(resolution: str) -> int:
    """Broker look-back cap in calendar days for *resolution*."""
    minutes = resolution_minutes(resolution)
    if minutes <= 15:
        return 30
    if minutes <= 60:
        return 180
    if minutes <= 120:
        return 180
    return 365
