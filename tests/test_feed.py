"""Tests for bullscan.feed — tick parsing, per-symbol routing, websocket feed."""

import asyncio
import json

import pytest

from bullscan.feed.data_socket import DataSocket, TickMessage
from bullscan.feed.tick_router import TickRouter

SBIN = "NSE:SBIN-EQ"
TCS = "NSE:TCS-EQ"


def _sf(symbol: str, ltp: float, **extra) -> dict:
    return {"type": "sf", "symbol": symbol, "ltp": ltp, **extra}


# ── Tick parsing ─────────────────────────────────────────────────────────


class TestTickMessage:
    def test_parse_full(self):
        tick = TickMessage.parse(
            _sf(SBIN, 612.5, open_price=600, high_price=615, low_price=598,
                vol_traded_today=123456)
        )
        assert tick == TickMessage(SBIN, 612.5, 600.0, 615.0, 598.0, 123456.0)

    def test_volume_fallback(self):
        assert TickMessage.parse(_sf(SBIN, 1, volume=10)).volume == 10.0

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "dp", "symbol": SBIN, "ltp": 1},
            {"type": "sf", "ltp": 1},
            {"type": "sf", "symbol": SBIN},
            {"type": "sf", "symbol": SBIN, "ltp": "n/a"},
            "not-a-dict",
        ],
    )
    def test_ignored(self, message):
        assert TickMessage.parse(message) is None


# ── Tick router ──────────────────────────────────────────────────────────


class FakeEngine:
    """Records ticks; a symbol with a gate blocks until the gate is set."""

    def __init__(self, gates=None) -> None:
        self.ticks: list[tuple] = []
        self.gates = gates or {}

    async def tick(self, symbol, price, **kwargs):
        gate = self.gates.get(symbol)
        if gate is not None:
            await gate.wait()
        self.ticks.append((symbol, price, kwargs))


class TestTickRouter:
    @pytest.mark.asyncio
    async def test_per_symbol_order(self):
        engine = FakeEngine()
        router = TickRouter(engine)
        for price in (1.0, 2.0, 3.0):
            router.dispatch(_sf(SBIN, price))
        router.dispatch(_sf(TCS, 9.0))
        await router.drain()

        assert [p for s, p, _ in engine.ticks if s == SBIN] == [1.0, 2.0, 3.0]
        assert router.processed == 4
        await router.stop()

    @pytest.mark.asyncio
    async def test_non_ticks_ignored(self):
        router = TickRouter(FakeEngine())
        assert router.dispatch({"type": "dp", "symbol": SBIN}) is False
        assert router.dispatch(_sf(SBIN, 1.0)) is True
        await router.drain()
        await router.stop()

    @pytest.mark.asyncio
    async def test_slow_symbol_does_not_block_others(self):
        gate = asyncio.Event()
        engine = FakeEngine(gates={SBIN: gate})
        router = TickRouter(engine)
        router.dispatch(_sf(SBIN, 1.0))
        router.dispatch(_sf(TCS, 2.0))

        for _ in range(20):
            await asyncio.sleep(0)
        assert [s for s, _, _ in engine.ticks] == [TCS]

        gate.set()
        await router.drain()
        assert {s for s, _, _ in engine.ticks} == {SBIN, TCS}
        await router.stop()

    @pytest.mark.asyncio
    async def test_tick_fields_forwarded(self):
        engine = FakeEngine()
        router = TickRouter(engine)
        router.dispatch(_sf(SBIN, 5.0, open_price=4, high_price=6, low_price=3, volume=100))
        await router.drain()
        assert engine.ticks[0][2] == {
            "open_price": 4.0, "high_price": 6.0, "low_price": 3.0, "volume": 100.0,
        }
        await router.stop()

    @pytest.mark.asyncio
    async def test_engine_errors_are_contained(self):
        class BrokenEngine:
            calls = 0

            async def tick(self, symbol, price, **kwargs):
                BrokenEngine.calls += 1
                raise RuntimeError("boom")

        router = TickRouter(BrokenEngine())
        router.dispatch(_sf(SBIN, 1.0))
        router.dispatch(_sf(SBIN, 2.0))
        await router.drain()
        assert BrokenEngine.calls == 2
        await router.stop()

    @pytest.mark.asyncio
    async def test_run_consumes_feed(self):
        engine = FakeEngine()
        router = TickRouter(engine)

        class ListFeed:
            async def connect(self):
                yield {"type": "cn", "message": "connected"}
                yield _sf(SBIN, 1.0)
                yield _sf(TCS, 2.0)
                await router.drain()

        await router.run(ListFeed())
        assert len(engine.ticks) == 2


# ── Websocket feed ───────────────────────────────────────────────────────


class FakeWebSocket:
    def __init__(self, frames, error: Exception | None = None) -> None:
        self.frames = list(frames)
        self.error = error
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
        if self.error is not None:
            raise self.error
        # Stay open until closed.
        while not self.closed:
            await asyncio.sleep(0)

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url, **kwargs):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class TestDataSocket:
    @pytest.mark.asyncio
    async def test_reconnects_and_resubscribes(self):
        first = FakeWebSocket([json.dumps(_sf(SBIN, 1.0)), "garbage"], error=OSError("reset"))
        second = FakeWebSocket([json.dumps([_sf(SBIN, 2.0), _sf(TCS, 3.0)])])
        connector = FakeConnector([first, second])
        sleep = FakeSleep()
        feed = DataSocket("wss://feed.test", "app:tok", [SBIN, TCS],
                          connector=connector, sleep=sleep)

        received = []
        async for message in feed.connect():
            received.append(message)
            if len(received) == 3:
                await feed.disconnect()

        assert [m["ltp"] for m in received] == [1.0, 2.0, 3.0]
        assert connector.calls == 2
        assert sleep.delays == [2]
        assert first.closed and second.closed
        for ws in (first, second):
            assert ws.sent[0] == {"type": "auth", "token": "app:tok"}
            assert ws.sent[1] == {"type": "subscribe", "symbols": [SBIN, TCS], "mode": "lite"}

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        connector = FakeConnector([OSError("refused")] * 5)
        sleep = FakeSleep()
        feed = DataSocket("wss://feed.test", "app:tok", connector=connector,
                          sleep=sleep, max_retries=2)
        received = [m async for m in feed.connect()]
        assert received == []
        assert connector.calls == 3
        assert sleep.delays == [2, 4]

    @pytest.mark.asyncio
    async def test_subscribe_while_connected(self):
        ws = FakeWebSocket([json.dumps(_sf(SBIN, 1.0))])
        feed = DataSocket("wss://feed.test", "app:tok", [SBIN], connector=FakeConnector([ws]))

        async for _message in feed.connect():
            await feed.subscribe([SBIN, TCS])
            await feed.disconnect()

        assert ws.sent[-1] == {"type": "subscribe", "symbols": [TCS], "mode": "lite"}
        assert feed.symbols == [SBIN, TCS]
        assert not feed.connected
