"""Per-symbol tick dispatch.

Every symbol gets its own FIFO queue and worker task, so ticks for one
symbol are applied in arrival order while a slow hydration for one symbol
never delays another.
"""

import asyncio
import logging

from bullscan.feed.data_socket import MarketDataFeed, TickMessage

logger = logging.getLogger("bullscan.feed")


class TickRouter:
    """Route ``sf`` feed messages to ``engine.tick``.

    Args:
        engine: A ``StrategyEngine`` (or compatible duck-type / mock).
        queue_size: Per-symbol backlog bound; the oldest tick is dropped
            when a symbol's queue is full.
    """

    def __init__(self, engine, queue_size: int = 1000) -> None:
        self._engine = engine
        self._queue_size = queue_size
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self.processed = 0

    def dispatch(self, message: dict) -> bool:
        """Queue a feed message. Returns False when it is not a tick."""
        tick = TickMessage.parse(message)
        if tick is None:
            return False
        queue = self._queues.get(tick.symbol)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._queue_size)
            self._queues[tick.symbol] = queue
            self._workers[tick.symbol] = asyncio.create_task(
                self._worker(tick.symbol, queue)
            )
        if queue.full():
            queue.get_nowait()
            queue.task_done()
            logger.warning("Tick backlog full for %s; dropping oldest", tick.symbol)
        queue.put_nowait(tick)
        return True

    async def _worker(self, symbol: str, queue: asyncio.Queue) -> None:
        while True:
            tick = await queue.get()
            try:
                await self._engine.tick(
                    tick.symbol,
                    tick.ltp,
                    open_price=tick.open_price,
                    high_price=tick.high_price,
                    low_price=tick.low_price,
                    volume=tick.volume,
                )
                self.processed += 1
            except Exception as exc:
                logger.error("Tick for %s failed: %s", symbol, exc)
            finally:
                queue.task_done()

    async def run(self, feed: MarketDataFeed) -> None:
        """Consume *feed* until it ends, then stop the workers."""
        try:
            async for message in feed.connect():
                self.dispatch(message)
        finally:
            await self.stop()

    async def drain(self) -> None:
        """Wait until every queued tick has been processed."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))

    async def stop(self) -> None:
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
