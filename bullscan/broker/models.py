"""Broker data models — typed representations of Fyers API v3 objects."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class HistoryRequest:
    """Parameters of one history call; ``range_from``/``range_to`` are epoch seconds."""

    symbol: str
    resolution: str
    range_from: int
    range_to: int
    cont_flag: str = "1"

    def to_params(self) -> dict:
        return {
            "symbol": self.symbol,
            "resolution": self.resolution,
            "date_format": "0",
            "range_from": str(self.range_from),
            "range_to": str(self.range_to),
            "cont_flag": self.cont_flag,
        }


@dataclass(frozen=True)
class HistoryResponse:
    """Raw history payload: ``candles`` rows are ``[ts, o, h, l, c, v]``."""

    status: str
    candles: list[list[float]] = field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok" and isinstance(self.candles, list)
