"""SignalBus — edge-triggered fan-out of bullish transitions.

Only transitions emit: ``not bullish -> bullish`` opens a signal,
``bullish -> not bullish`` clears it. Subscribers receive events through
bounded asyncio queues, the first item always being a snapshot of the
currently open signals.
"""

import asyncio
import logging
from datetime import timezone, tzinfo
from typing import Optional

from bullscan.market.session import next_entry_time
from bullscan.strategy.state import Verdict

logger = logging.getLogger("bullscan.signals")

STOP_LOSS_FACTOR = 0.95
TARGET_FACTOR = 1.10
_QUEUE_SIZE = 256

SIGNAL_OPEN = "signal-open"
SIGNAL_CLEAR = "signal-clear"
SIGNAL_SNAPSHOT = "signal-snapshot"

# Terminal queue item: the bus dropped this subscriber.
SUBSCRIBER_DROPPED = None


def _exchange(symbol: str) -> str:
    return symbol.split(":", 1)[0] if ":" in symbol else ""


class SignalBus:
    """Tracks open signals and broadcasts their transitions.

    Args:
        tz: Timezone used for the trade record's entry date and time.
        queue_size: Per-subscriber queue bound; a subscriber that falls
            this far behind is dropped.
    """

    def __init__(self, tz: tzinfo = timezone.utc, queue_size: int = _QUEUE_SIZE) -> None:
        self._tz = tz
        self._queue_size = queue_size
        self._open: dict[str, dict] = {}
        self._subscribers: list[asyncio.Queue] = []

    def _trade(self, verdict: Verdict) -> dict:
        change = verdict.close - verdict.prev_close
        pct = (change / verdict.prev_close * 100) if verdict.prev_close else 0.0
        candle_ts = verdict.candle_ts if verdict.candle_ts is not None else verdict.timestamp
        entered = next_entry_time(candle_ts, verdict.resolution, self._tz)
        return {
            "symbol": verdict.symbol,
            "exchange": _exchange(verdict.symbol),
            "type": "BUY",
            "price": verdict.close,
            "change": round(change, 2),
            "changePercentage": round(pct, 2),
            "entryPrice": verdict.close,
            "stopLoss": round(verdict.close * STOP_LOSS_FACTOR, 2),
            "target": round(verdict.close * TARGET_FACTOR, 2),
            "entryTime": entered.strftime("%H:%M:%S"),
            "entryDate": entered.date().isoformat(),
            "isProfit": change > 0,
        }

    # ── Publish ──────────────────────────────────────────────────────────

    def publish(
        self, symbol: str, previous: Optional[Verdict], current: Verdict
    ) -> Optional[dict]:
        """Diff two verdicts and broadcast on a bullish transition.

        Returns:
            The emitted event, or ``None`` when nothing changed.
        """
        was = bool(previous and previous.bullish)
        if was == current.bullish:
            return None

        if current.bullish:
            trade = self._trade(current)
            self._open[symbol] = trade
            event = {
                "type": SIGNAL_OPEN,
                "symbol": symbol,
                "entryPrice": current.close,
                "stopLoss": current.close * STOP_LOSS_FACTOR,
                "target": current.close * TARGET_FACTOR,
                "timestamp": current.timestamp,
                "trade": trade,
            }
            logger.info(
                "Bullish signal OPEN %s @ %.2f (SL %.2f, TP %.2f)",
                symbol, current.close, event["stopLoss"], event["target"],
            )
        else:
            self._open.pop(symbol, None)
            event = {"type": SIGNAL_CLEAR, "symbol": symbol}
            logger.info("Bullish signal CLEAR %s", symbol)

        self._broadcast(event)
        return event

    def _broadcast(self, event: dict) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping slow signal subscriber")
                self._drop(queue)

    def _drop(self, queue: asyncio.Queue) -> None:
        """Unsubscribe *queue* and leave ``SUBSCRIBER_DROPPED`` as its only item."""
        self.unsubscribe(queue)
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(SUBSCRIBER_DROPPED)

    # ── Subscribe / read ─────────────────────────────────────────────────

    def snapshot(self) -> dict:
        return {"type": SIGNAL_SNAPSHOT, "signals": self.signals()}

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber; its queue starts with a snapshot event.

        A subscriber that falls behind is dropped: its backlog is discarded
        and ``SUBSCRIBER_DROPPED`` is the last item it receives.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        queue.put_nowait(self.snapshot())
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def signals(self) -> list[dict]:
        """Currently open signals as ``{"trade": {...}}`` records."""
        return [{"trade": dict(trade)} for trade in self._open.values()]

    def is_open(self, symbol: str) -> bool:
        return symbol in self._open
