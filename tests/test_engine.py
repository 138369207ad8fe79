import asyncio

import pytest

from conftest import HOUR_MS, SYMBOL, T0, FakeGateway, consensus, make_book, make_candles

from libs.common.config import AppConfig, EngineConfig
from libs.common.errors import TransientNetworkError
from libs.common.models import Candle, Signal
from services.api.engine import SymbolActor, TradeEngine
from services.api.lifecycle import NoAction, OrderLifecycleController, PlaceOrder
from services.market_data.state import StateMirror


class FixedStrategy:
    def __init__(self, signal=Signal.HOLD, timeframes=("1h", "4h")):
        self.signal = signal
        self.timeframes = list(timeframes)
        self.calls = 0

    def compute(self, candles_by_tf):
        self.calls += 1
        return consensus(self.signal)


class BrokenStrategy(FixedStrategy):
    def compute(self, candles_by_tf):
        raise RuntimeError("boom")


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    async def maybe_alert(self, symbol, result, price):
        self.alerts.append((symbol, result.consensus_signal, price))
        return "log"


def _engine(config, gateway, strategy, notifier=None):
    mirror = StateMirror(config)
    controller = OrderLifecycleController(gateway, mirror)
    return TradeEngine(config, gateway, mirror, controller, strategy, notifier=notifier,
                       clock=lambda: T0 / 1000)


def _market_gateway():
    candles = make_candles(30)
    return FakeGateway(candles={"1h": candles, "4h": candles}, book=make_book(mid=candles[-1].close))


class TestSymbolActor:
    def test_overflow_drops_oldest_depth_first(self):
        a = SymbolActor(SYMBOL, maxsize=3)
        assert a.post("depth", "d1")
        assert a.post("kline", "k1")
        assert a.post("execution", "e1")
        assert a.post("kline", "k2")
        assert [e.payload for e in a.inbox] == ["k1", "e1", "k2"]
        assert a.dropped == 1

    def test_incoming_low_priority_event_is_the_victim(self):
        a = SymbolActor(SYMBOL, maxsize=2)
        a.post("execution", "e1")
        a.post("kline", "k1")
        assert a.post("depth", "d1") is False
        assert a.post("execution", "e2") is True
        assert [e.payload for e in a.drain()] == ["e1", "e2"]
        assert len(a) == 0

    def test_execution_reports_never_dropped_for_market_data(self):
        a = SymbolActor(SYMBOL, maxsize=5)
        for i in range(5):
            a.post("execution", f"e{i}")
        for i in range(20):
            a.post("depth", f"d{i}")
            a.post("kline", f"k{i}")
        assert all(e.kind == "execution" for e in a.inbox)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            SymbolActor(SYMBOL).post("ticker", {})


class TestTradeEngine:
    def test_unknown_symbol_ignored(self, config, gateway):
        engine = _engine(config, gateway, FixedStrategy())
        assert engine.post("DOGEUSDT", "depth", make_book()) is False
        assert engine.symbols == [SYMBOL]

    def test_evaluate_places_entry_then_waits(self, config):
        gateway = _market_gateway()
        engine = _engine(config, gateway, FixedStrategy(Signal.BUY))
        action = asyncio.run(engine.evaluate(SYMBOL))
        assert isinstance(action, PlaceOrder) and action.side == "BUY"
        assert [c[2] for c in gateway.calls if c[0] == "klines"] == ["1h", "4h"]
        assert engine.mirror.state(SYMBOL).micro_signal == "neutral"

        again = asyncio.run(engine.evaluate(SYMBOL))
        assert again == NoAction("waiting for buy fill")
        assert sum(1 for c in gateway.calls if c[0] == "klines") == 2

    def test_execution_report_opens_trade(self, config):
        gateway = _market_gateway()
        engine = _engine(config, gateway, FixedStrategy(Signal.BUY))
        action = asyncio.run(engine.evaluate(SYMBOL))
        order = gateway.orders[max(gateway.orders)]
        report = {"e": "executionReport", "s": SYMBOL, "i": order.order_id, "c": order.client_order_id,
                  "S": "BUY", "o": "LIMIT", "X": "FILLED", "p": str(order.price), "q": str(order.orig_qty),
                  "z": str(order.orig_qty), "Z": str(order.orig_qty * order.price), "T": T0 + 1}
        assert engine.post(SYMBOL, "execution", report)
        out = asyncio.run(engine.evaluate(SYMBOL))
        assert out == NoAction("holding")
        trade = engine.mirror.trade(SYMBOL)
        assert trade.entry_price == pytest.approx(action.price)

    def test_klines_coalesced_per_candle(self, config, gateway):
        engine = _engine(config, gateway, FixedStrategy())
        candles = make_candles(20)
        engine.mirror.set_candles(SYMBOL, "1h", candles)
        engine.mirror.set_candles(SYMBOL, "4h", candles)
        engine.mirror.apply_depth(SYMBOL, make_book())
        nxt = candles[-1].open_time + HOUR_MS
        for close in (200.0, 201.0):
            bar = Candle(open_time=nxt, open=199.0, high=202.0, low=198.0, close=close, volume=1.0)
            engine.post(SYMBOL, "kline", ("1h", bar))
        engine.post(SYMBOL, "depth", make_book(mid=201.0))
        asyncio.run(engine.evaluate(SYMBOL))
        series = engine.mirror.candles(SYMBOL, "1h")
        assert len(series) == 20
        assert series[-1].close == 201.0
        assert engine.mirror.state(SYMBOL).book.best_bid == pytest.approx(200.99)
        assert not any(c[0] in ("klines", "depth") for c in gateway.calls)

    def test_busy_symbol_skipped(self, config, gateway):
        engine = _engine(config, gateway, FixedStrategy(Signal.BUY))
        engine.actor(SYMBOL).busy = True
        assert asyncio.run(engine.evaluate(SYMBOL)) is None
        assert gateway.calls == []

    def test_market_refresh_failure(self, config, gateway):
        gateway.fail = TransientNetworkError("timeout")
        engine = _engine(config, gateway, FixedStrategy(Signal.BUY))
        assert asyncio.run(engine.evaluate(SYMBOL)) is None
        assert engine.actor(SYMBOL).busy is False

    def test_depth_failure_blocks_entry_with_candles_cached(self, config, gateway):
        engine = _engine(config, gateway, FixedStrategy(Signal.STRONG_BUY))
        candles = make_candles(20)
        engine.mirror.set_candles(SYMBOL, "1h", candles)
        engine.mirror.set_candles(SYMBOL, "4h", candles)
        gateway.fail = TransientNetworkError("depth timeout")
        assert asyncio.run(engine.evaluate(SYMBOL)) is None
        assert [c[0] for c in gateway.calls] == ["depth"]
        assert engine.mirror.open_order(SYMBOL) is None

    def test_disabled_engine_does_not_enter(self, config):
        engine = _engine(config, _market_gateway(), FixedStrategy(Signal.STRONG_BUY))
        engine.disable()
        assert asyncio.run(engine.evaluate(SYMBOL)) == NoAction("bot disabled")
        engine.enable()
        assert isinstance(asyncio.run(engine.evaluate(SYMBOL)), PlaceOrder)

    def test_notifier_called_with_consensus(self, config):
        notifier = RecordingNotifier()
        engine = _engine(config, _market_gateway(), FixedStrategy(Signal.SELL), notifier=notifier)
        asyncio.run(engine.evaluate(SYMBOL))
        assert notifier.alerts == [(SYMBOL, Signal.SELL, make_candles(30)[-1].close)]

    @pytest.mark.parametrize("mode", ["parallel", "sequential"])
    def test_run_tick_isolates_errors(self, pair, mode):
        config = AppConfig(pairs=[pair], engine=EngineConfig(mode=mode, candle_window=20))
        engine = _engine(config, _market_gateway(), BrokenStrategy())
        out = asyncio.run(engine.run_tick())
        assert out == {SYMBOL: None}
        assert engine.ticks == 1

    def test_run_until_stopped(self, pair):
        config = AppConfig(pairs=[pair], engine=EngineConfig(candle_window=20, tick_interval_s=0.01))
        engine = _engine(config, FakeGateway(), FixedStrategy())

        async def go():
            stop = asyncio.Event()
            asyncio.get_running_loop().call_later(0.1, stop.set)
            await engine.run(stop)

        asyncio.run(go())
        assert engine.ticks >= 1

    def test_status_views(self, config, gateway):
        engine = _engine(config, gateway, FixedStrategy())
        status = engine.status()
        assert status["enabled"] is True
        assert status["symbols"][SYMBOL]["inbox"] == 0
        assert status["rate_limits"][0]["used"] == 0
        assert engine.pair_status("DOGEUSDT") is None
        assert engine.pair_status(SYMBOL)["open_orders"] == []
