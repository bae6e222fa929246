"""Market-data feed: the feed interface plus a websocket implementation.

``DataSocket`` speaks the broker's JSON data socket: it authenticates
with the ``app_id:token`` pair, subscribes in lite mode and yields one
dict per message. Lost connections are re-established with exponential
backoff and the subscription set is replayed.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, Optional, Protocol

import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger("bullscan.feed")

TICK_TYPE = "sf"
DEFAULT_SYMBOLS = ("NSE:SBIN-EQ", "NSE:TCS-EQ")


class MarketDataFeed(Protocol):
    """Anything the tick router can consume."""

    @property
    def connected(self) -> bool: ...

    def connect(self) -> AsyncIterator[dict]: ...

    async def subscribe(self, symbols: Iterable[str]) -> None: ...

    async def disconnect(self) -> None: ...


def _number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TickMessage:
    """A symbol-feed (``sf``) update."""

    symbol: str
    ltp: float
    open_price: Optional[float] = None
    high_price: Optional[float] = None
    low_price: Optional[float] = None
    volume: Optional[float] = None

    @classmethod
    def parse(cls, message: dict) -> Optional["TickMessage"]:
        """Return a tick for ``sf`` messages carrying a symbol and price, else ``None``."""
        if not isinstance(message, dict) or message.get("type") != TICK_TYPE:
            return None
        symbol = message.get("symbol")
        ltp = _number(message.get("ltp"))
        if not symbol or ltp is None:
            return None
        volume = message.get("vol_traded_today", message.get("volume"))
        return cls(
            symbol=str(symbol),
            ltp=ltp,
            open_price=_number(message.get("open_price")),
            high_price=_number(message.get("high_price")),
            low_price=_number(message.get("low_price")),
            volume=_number(volume),
        )


class DataSocket:
    """Websocket market-data feed.

    Args:
        url: Data socket endpoint.
        token: ``app_id:access_token`` pair.
        symbols: Initial subscription.
        max_retries: Consecutive failed (re)connects tolerated before
            ``connect()`` gives up.
        connector: Coroutine function opening the socket; defaults to
            ``websockets.connect``.
        sleep: Coroutine used for backoff; injectable for tests.
    """

    def __init__(
        self,
        url: str,
        token: str,
        symbols: Iterable[str] = DEFAULT_SYMBOLS,
        max_retries: int = 6,
        connector: Optional[Callable] = None,
        sleep: Callable = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token = token
        self._symbols: list[str] = list(dict.fromkeys(symbols))
        self._max_retries = max_retries
        self._connector = connector or websockets.connect
        self._sleep = sleep
        self._ws = None
        self._closing = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    async def _open(self):
        logger.info("Connecting to data socket: %s", self._url)
        ws = await self._connector(self._url, ping_interval=20, ping_timeout=20)
        await ws.send(json.dumps({"type": "auth", "token": self._token}))
        if self._symbols:
            await self._send_subscribe(ws, self._symbols)
        return ws

    @staticmethod
    async def _send_subscribe(ws, symbols: list[str]) -> None:
        await ws.send(json.dumps({"type": "subscribe", "symbols": symbols, "mode": "lite"}))

    async def subscribe(self, symbols: Iterable[str]) -> None:
        """Add *symbols*; sent immediately when connected, replayed on reconnect."""
        new = [s for s in symbols if s not in self._symbols]
        if not new:
            return
        self._symbols.extend(new)
        logger.info("Subscribing to symbols: %s", ", ".join(new))
        if self._ws is not None:
            await self._send_subscribe(self._ws, new)

    async def connect(self) -> AsyncIterator[dict]:
        """Yield decoded messages until ``disconnect()`` or retries run out."""
        failures = 0
        while not self._closing.is_set():
            try:
                self._ws = await self._open()
                failures = 0
                async for raw in self._ws:
                    if self._closing.is_set():
                        break
                    try:
                        message = json.loads(raw)
                    except (TypeError, ValueError):
                        logger.warning("Skipping non-JSON data socket message: %r", raw)
                        continue
                    for item in message if isinstance(message, list) else [message]:
                        if isinstance(item, dict):
                            yield item
            except (WebSocketException, OSError) as exc:
                failures += 1
                logger.warning("Data socket connection lost: %s", exc)
            finally:
                ws, self._ws = self._ws, None
                if ws is not None:
                    await ws.close()

            if self._closing.is_set():
                break
            if failures > self._max_retries:
                logger.error("Data socket gave up after %d attempt(s)", failures)
                break
            delay = min(2 ** failures, 60)
            logger.info("Reconnecting data socket in %ds", delay)
            await self._sleep(delay)

    async def disconnect(self) -> None:
        self._closing.set()
        if self._ws is not None:
            await self._ws.close()
            logger.info("Data socket disconnected")
