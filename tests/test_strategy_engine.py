"""Tests for bullscan.strategy.engine — hydration, ticks, resolution changes."""

import asyncio
from datetime import datetime, timezone

import pytest

from bullscan.broker.models import HistoryResponse
from bullscan.broker.rate_limiter import RateLimiter
from bullscan.errors import BrokerError
from bullscan.market.fetcher import HistoricalFetcher
from bullscan.market.models import Candle
from bullscan.repos.candle_store import CandleStore
from bullscan.repos.db import init_db
from bullscan.repos.hydration_repo import DAILY_SCOPE, HydrationRepo
from bullscan.signals.bus import SIGNAL_CLEAR, SIGNAL_OPEN, SignalBus
from bullscan.strategy.engine import StrategyEngine
from bullscan.strategy.state import Phase

DAY = 86_400
NOW_DT = datetime(2024, 3, 6, 10, 0, tzinfo=timezone.utc)
NOW = int(NOW_DT.timestamp())
YESTERDAY = int(datetime(2024, 3, 5, tzinfo=timezone.utc).timestamp())
SYM = "NSE:SBIN-EQ"


def _daily_rows(n: int = 260) -> list[list[float]]:
    """Calendar-daily history ending yesterday: rising, 0.8 wide, 20k volume."""
    rows = []
    for i in range(n):
        o = 100 + 0.1 * i
        rows.append([YESTERDAY - (n - 1 - i) * DAY, o, o + 0.6, o - 0.2, o + 0.3, 20_000])
    return rows


def _intraday_rows(step: int, rising: bool = True, n: int = 250) -> list[list[float]]:
    rows = []
    for i in range(n):
        c = 100 + (0.05 * i if rising else -0.05 * i)
        rows.append([NOW - (n - 1 - i) * step, c, c + 0.1, c - 0.1, c, 1_000])
    return rows


class MockBroker:
    """Duck-typed broker serving canned rows per resolution, clipped to the request window."""

    def __init__(self, rows_by_res=None, gates=None, fail: bool = False) -> None:
        self.rows_by_res = rows_by_res or {}
        self.gates = gates or {}
        self.fail = fail
        self.requests = []

    async def get_history(self, request):
        self.requests.append(request)
        gate = self.gates.get(request.resolution)
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise BrokerError("broker down")
        rows = [
            r for r in self.rows_by_res.get(request.resolution, [])
            if request.range_from <= r[0] <= request.range_to
        ]
        return HistoryResponse(status="ok", candles=rows)

    def count(self, resolution: str) -> int:
        return sum(1 for r in self.requests if r.resolution == resolution)


async def _no_sleep(_seconds) -> None:
    return None


def _build(tmp_path, broker, now=None, **kwargs):
    db_path = str(tmp_path / "candles.db")
    init_db(db_path)
    clock = lambda: NOW  # noqa: E731
    store = CandleStore(db_path, clock=clock)
    limiter = RateLimiter(max_per_minute=1000, min_interval=0.0, clock=clock, sleep=_no_sleep)
    fetcher = HistoricalFetcher(broker, store=store, limiter=limiter, clock=clock, sleep=_no_sleep)
    bus = SignalBus()
    engine = StrategyEngine(
        store, fetcher, bus,
        hydration=HydrationRepo(db_path),
        now=now or (lambda: NOW_DT),
        **kwargs,
    )
    return engine, bus, store, fetcher


def _tick_fields():
    return dict(open_price=126.5, high_price=126.6, low_price=125.9)


class TestHydration:
    @pytest.mark.asyncio
    async def test_first_tick_hydrates(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, store, _ = _build(tmp_path, broker)

        await engine.tick(SYM, 126.0, **_tick_fields())

        state = engine.get_state(SYM)
        assert state.phase is Phase.READY
        assert len(state.daily_window) == 261
        assert state.daily_window[-1].timestamp == YESTERDAY + DAY
        assert state.sma_snapshot.complete
        assert state.daily_hydrated_on == "2024-03-06"
        assert broker.count("D") == 1
        assert store.get_cached_sma(SYM, "D", 200) is not None

    @pytest.mark.asyncio
    async def test_hydration_writes_partition_twice(self, tmp_path, monkeypatch):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, store, _ = _build(tmp_path, broker)
        writes = []
        original = store.store_candles

        def counting(symbol, resolution, candles):
            writes.append(resolution)
            return original(symbol, resolution, candles)

        monkeypatch.setattr(store, "store_candles", counting)
        await engine.ensure_daily(SYM)
        await engine.ensure_sma(SYM)

        # One write from the fetcher, one SMA cache write.
        assert writes == ["D", "D"]
        assert engine.get_state(SYM).sma_snapshot.complete

    @pytest.mark.asyncio
    async def test_later_ticks_do_not_refetch(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, _, _ = _build(tmp_path, broker)
        for price in (126.0, 126.2, 126.4):
            await engine.tick(SYM, price, **_tick_fields())
        assert len(broker.requests) == 1
        assert engine.get_state(SYM).daily_window[-1].close == 126.4

    @pytest.mark.asyncio
    async def test_concurrent_ensures_share_one_fetch(self, tmp_path):
        gate = asyncio.Event()
        broker = MockBroker({"D": _daily_rows()}, gates={"D": gate})
        engine, _, _, _ = _build(tmp_path, broker)

        tasks = [asyncio.create_task(engine.ensure_daily(SYM)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(*tasks)
        assert broker.count("D") == 1

    @pytest.mark.asyncio
    async def test_hydration_mark_uses_store(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, store, _ = _build(tmp_path, broker)
        store.store_candles(SYM, "D", [Candle.from_row(r) for r in _daily_rows()])
        HydrationRepo(str(tmp_path / "candles.db")).set_mark(SYM, DAILY_SCOPE, "2024-03-06")

        await engine.ensure_daily(SYM)
        await engine.ensure_sma(SYM)
        assert broker.requests == []
        assert engine.get_state(SYM).phase is Phase.READY

    @pytest.mark.asyncio
    async def test_fetch_exhaustion_degrades(self, tmp_path):
        broker = MockBroker(fail=True)
        engine, bus, _, fetcher = _build(tmp_path, broker)

        assert await engine.tick(SYM, 126.0) is None
        assert engine.get_state(SYM).phase is Phase.UNINITIALIZED
        assert SYM in fetcher.failed_symbols
        assert bus.signals() == []

    @pytest.mark.asyncio
    async def test_insufficient_history_is_noop(self, tmp_path):
        broker = MockBroker({"D": _daily_rows(5)})
        engine, bus, _, _ = _build(tmp_path, broker)
        queue = bus.subscribe()
        queue.get_nowait()  # snapshot

        assert await engine.tick(SYM, 130.0, **_tick_fields()) is None
        assert engine.get_state(SYM).last_verdict is None
        assert queue.empty()


class TestSignals:
    @pytest.mark.asyncio
    async def test_edge_sequence(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, bus, _, _ = _build(tmp_path, broker)
        queue = bus.subscribe()
        queue.get_nowait()  # snapshot

        flags = []
        for price in (126.0, 126.1, 128.0, 128.5, 126.3):
            verdict = await engine.tick(SYM, price, **_tick_fields())
            flags.append(verdict.bullish)
        assert flags == [False, False, True, True, False]

        events = []
        while not queue.empty():
            events.append(queue.get_nowait()["type"])
        assert events == [SIGNAL_OPEN, SIGNAL_CLEAR]
        assert engine.bullish_signals() == []

    @pytest.mark.asyncio
    async def test_open_signal_visible(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, _, _ = _build(tmp_path, broker)
        await engine.tick(SYM, 128.0, **_tick_fields())
        [record] = engine.bullish_signals()
        assert record["trade"]["entryPrice"] == 128.0
        assert record["trade"]["stopLoss"] == pytest.approx(121.6)

    @pytest.mark.asyncio
    async def test_short_timeframe_veto(self, tmp_path):
        broker = MockBroker({
            "D": _daily_rows(),
            "1": _intraday_rows(60, rising=False),
            "5": _intraday_rows(300, rising=False),
        })
        engine, _, _, _ = _build(tmp_path, broker, short_tf_confirm=True)
        verdict = await engine.tick(SYM, 128.0, **_tick_fields())
        assert verdict.short_tf_ok is False
        assert verdict.bullish is False
        assert verdict.range_ok and verdict.sma_ok


class TestResolution:
    @pytest.mark.asyncio
    async def test_set_resolution_clears_snapshots(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, _, _ = _build(tmp_path, broker)
        await engine.tick(SYM, 126.0, **_tick_fields())

        assert engine.set_resolution("D") == "D"
        assert engine.get_state(SYM).sma_snapshot is not None

        assert engine.set_resolution("15m") == "15"
        assert engine.resolution == "15"
        state = engine.get_state(SYM)
        assert state.sma_snapshot is None
        assert state.phase is Phase.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_analyze_current_data_uses_new_resolution(self, tmp_path):
        broker = MockBroker({"D": _daily_rows(), "15": _intraday_rows(900)})
        engine, _, _, _ = _build(tmp_path, broker)
        await engine.tick(SYM, 128.0, **_tick_fields())

        engine.set_resolution("15")
        verdicts = await engine.analyze_current_data()

        assert len(verdicts) == 1
        assert verdicts[0].resolution == "15"
        assert engine.get_state(SYM).sma_snapshot.resolution == "15"
        assert broker.count("15") == 1

    @pytest.mark.asyncio
    async def test_analyze_current_data_hydrates_registered_symbols(self, tmp_path):
        broker = MockBroker({"D": _daily_rows()})
        engine, _, _, _ = _build(tmp_path, broker)
        engine.register([SYM])

        verdicts = await engine.analyze_current_data()
        assert len(verdicts) == 1
        assert engine.get_state(SYM).phase is Phase.READY
        # No live price yet: the stored window is analyzed as-is.
        assert engine.get_state(SYM).last_price is None

    @pytest.mark.asyncio
    async def test_analyze_current_data_after_midnight_does_not_retick(self, tmp_path):
        clock = {"now": NOW_DT}
        broker = MockBroker({"D": _daily_rows()})
        engine, _, store, _ = _build(tmp_path, broker, now=lambda: clock["now"])
        await engine.tick(SYM, 128.0, **_tick_fields())

        clock["now"] = datetime(2024, 3, 7, 10, 0, tzinfo=timezone.utc)
        next_day = int(datetime(2024, 3, 7, tzinfo=timezone.utc).timestamp())
        await engine.analyze_current_data()

        assert store.count_candles(SYM, "D", next_day, next_day + DAY) == 0
        assert engine.get_state(SYM).daily_window[-1].timestamp == YESTERDAY + DAY

    @pytest.mark.asyncio
    async def test_stale_snapshot_discarded(self, tmp_path):
        gate = asyncio.Event()
        broker = MockBroker(
            {"D": _daily_rows(), "15": _intraday_rows(900)}, gates={"15": gate}
        )
        engine, _, _, _ = _build(tmp_path, broker)
        await engine.tick(SYM, 126.0, **_tick_fields())

        engine.set_resolution("15")
        pending = asyncio.create_task(engine.ensure_sma(SYM))
        while broker.count("15") == 0:
            await asyncio.sleep(0)
        engine.set_resolution("5")
        gate.set()
        await pending

        assert engine.get_state(SYM).sma_snapshot is None
