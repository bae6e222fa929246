"""BullScan — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from bullscan.market.resolution import normalize


_REQUIRED_VARS = [
    "FYERS_APP_ID",
    "FYERS_ACCESS_TOKEN",
]

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    fyers_app_id: str
    fyers_access_token: str
    api_base_url: str
    data_ws_url: str
    symbols: tuple[str, ...]
    default_resolution: str
    rate_limit_per_minute: int
    fetch_concurrency: int
    backfill_interval_seconds: int
    short_tf_confirm: bool
    market_tz: str
    db_path: str
    log_level: str
    http_port: int

    @property
    def socket_token(self) -> str:
        """Return the ``app_id:token`` pair the market-data socket expects."""
        return f"{self.fyers_app_id}:{self.fyers_access_token}"

    @property
    def tz(self) -> ZoneInfo:
        """Return the exchange timezone used for calendar-date decisions."""
        return ZoneInfo(self.market_tz)


def _parse_symbols(raw: str) -> tuple[str, ...]:
    return tuple(s.strip() for s in raw.split(",") if s.strip())


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, and ``BadResolution`` when
    ``DEFAULT_RESOLUTION`` cannot be normalized.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    concurrency = int(os.environ.get("FETCH_CONCURRENCY", "2"))
    if not 1 <= concurrency <= 5:
        raise ValueError("FETCH_CONCURRENCY must be 1-5")

    return Config(
        fyers_app_id=os.environ["FYERS_APP_ID"],
        fyers_access_token=os.environ["FYERS_ACCESS_TOKEN"],
        api_base_url=os.environ.get(
            "FYERS_API_BASE_URL", "https://api-t1.fyers.in/data"
        ),
        data_ws_url=os.environ.get(
            "FYERS_DATA_WS_URL", "wss://socket.fyers.in/hsm/v1-5/prod"
        ),
        symbols=_parse_symbols(
            os.environ.get("SYMBOLS", "NSE:SBIN-EQ,NSE:TCS-EQ")
        ),
        default_resolution=normalize(os.environ.get("DEFAULT_RESOLUTION", "D")),
        rate_limit_per_minute=int(os.environ.get("RATE_LIMIT_PER_MINUTE", "8")),
        fetch_concurrency=concurrency,
        backfill_interval_seconds=int(
            os.environ.get("BACKFILL_INTERVAL_SECONDS", "900")
        ),
        short_tf_confirm=(
            os.environ.get("SHORT_TF_CONFIRM", "false").strip().lower() in _TRUTHY
        ),
        market_tz=os.environ.get("MARKET_TZ", "Asia/Kolkata"),
        db_path=os.environ.get("DB_PATH", "data/candles.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        http_port=int(os.environ.get("HTTP_PORT", "4000")),
    )
