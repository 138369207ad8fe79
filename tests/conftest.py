from __future__ import annotations
from typing import Dict, List, Optional

import pytest

from libs.common.config import AppConfig, EngineConfig, PairConfig
from libs.common.models import Candle, ConsensusResult, Order, OrderBookSnapshot, OrderStatus, Signal
from services.api.lifecycle import OrderLifecycleController
from services.api.ratelimit import RateLimitedQueue
from services.api.risk_engine import RiskManager
from services.api.trailing import TrailingManager
from services.market_data.state import StateMirror

SYMBOL = "BTCUSDT"
T0 = 1_700_000_000_000
HOUR_MS = 3_600_000


def make_candles(n: int, start: float = 100.0, step: float = 0.2, volume: float = 100.0,
                 vstep: float = 5.0, t0: int = T0, interval_ms: int = HOUR_MS) -> List[Candle]:
    """Bougies vertes régulières : open = close - 2×step, mèches de step/2."""
    out = []
    for i in range(n):
        close = start + step * i
        open_ = close - 2 * step
        out.append(Candle(
            open_time=t0 + i * interval_ms,
            open=open_,
            high=max(open_, close) + abs(step) / 2,
            low=min(open_, close) - abs(step) / 2,
            close=close,
            volume=volume + vstep * i,
        ))
    return out


def make_book(mid: float = 100.0, levels: int = 5, bid_qty: float = 1.0, ask_qty: float = 1.0,
              tick: float = 0.01) -> OrderBookSnapshot:
    return OrderBookSnapshot(
        bids=[(round(mid - tick * (i + 1), 8), bid_qty) for i in range(levels)],
        asks=[(round(mid + tick * (i + 1), 8), ask_qty) for i in range(levels)],
        timestamp=T0,
    )


def consensus(signal: Signal = Signal.HOLD) -> ConsensusResult:
    return ConsensusResult(consensus_signal=signal)


def make_order(order_id: int, cid: str, side: str = "BUY", status: str = "NEW", price: float = 100.0,
               qty: float = 0.1, executed: Optional[float] = None, order_type: str = "LIMIT",
               update_time: int = T0, symbol: str = SYMBOL) -> Order:
    if executed is None:
        executed = qty if status == "FILLED" else 0.0
    return Order(
        symbol=symbol,
        order_id=order_id,
        client_order_id=cid,
        side=side,
        type=order_type,
        status=status,
        price=price,
        orig_qty=qty,
        executed_qty=executed,
        cumulative_quote_qty=executed * price,
        update_time=update_time,
    )


class FakeGateway:
    """
    Gateway en mémoire : enregistre les appels, renvoie les statuts programmés
    dans `statuses` (NEW par défaut), lève `fail` si positionné.
    """

    def __init__(self, candles: Optional[Dict[str, List[Candle]]] = None,
                 book: Optional[OrderBookSnapshot] = None):
        self.queue = RateLimitedQueue()
        self.calls: List[tuple] = []
        self.statuses: List[str] = []
        self.fail: Optional[Exception] = None
        self.now = T0
        self.next_id = 1000
        self.orders: Dict[int, Order] = {}
        self.history: Dict[str, List[Order]] = {}
        self.candles = candles or {}
        self.book = book or make_book()
        self.listen_keys = 0

    def _check(self) -> None:
        if self.fail is not None:
            raise self.fail

    def _new(self, symbol, side, order_type, quantity, price, cid) -> Order:
        status = self.statuses.pop(0) if self.statuses else "NEW"
        executed = {"FILLED": quantity, "PARTIALLY_FILLED": quantity / 2}.get(status, 0.0)
        self.next_id += 1
        order = make_order(self.next_id, cid, side=side, status=status, price=price, qty=quantity,
                           executed=executed, order_type=order_type, update_time=self.now, symbol=symbol)
        self.orders[order.order_id] = order
        return order

    async def submit_order(self, symbol, side, order_type, quantity, price, client_order_id) -> Order:
        self.calls.append(("submit", side, order_type, quantity, price, client_order_id))
        self._check()
        return self._new(symbol, side, order_type, quantity, price, client_order_id)

    async def cancel_order(self, symbol, order_id) -> Order:
        self.calls.append(("cancel", order_id))
        self._check()
        old = self.orders[order_id]
        order = old.model_copy(update={"status": OrderStatus.CANCELED, "update_time": self.now})
        self.orders[order_id] = order
        return order

    async def cancel_and_replace(self, symbol, side, order_type, cancel_order_id, quantity, price,
                                 client_order_id) -> Order:
        self.calls.append(("cancel_replace", cancel_order_id, side, order_type, quantity, client_order_id))
        self._check()
        old = self.orders.get(cancel_order_id)
        if old is not None:
            self.orders[cancel_order_id] = old.model_copy(update={"status": OrderStatus.CANCELED})
        return self._new(symbol, side, order_type, quantity, price, client_order_id)

    async def fetch_candles(self, symbol, interval, limit=100) -> List[Candle]:
        self.calls.append(("klines", symbol, interval))
        self._check()
        return list(self.candles.get(interval, []))[-limit:]

    async def fetch_depth(self, symbol, limit=20) -> OrderBookSnapshot:
        self.calls.append(("depth", symbol))
        self._check()
        return self.book

    async def fetch_orders(self, symbol, limit=500) -> List[Order]:
        self.calls.append(("orders", symbol))
        self._check()
        return list(self.history.get(symbol, []))

    async def new_listen_key(self) -> str:
        self._check()
        self.listen_keys += 1
        return f"lk{self.listen_keys}"

    async def renew_listen_key(self, key: str) -> None:
        self._check()

    async def close_listen_key(self, key: str) -> None:
        self.calls.append(("close_listen_key", key))

    async def close(self, timeout: float = 10.0) -> bool:
        return await self.queue.drain(timeout)


@pytest.fixture
def pair() -> PairConfig:
    return PairConfig(symbol=SYMBOL, reentry_delay_h=1.0)


@pytest.fixture
def config(pair) -> AppConfig:
    return AppConfig(pairs=[pair], timeframes=["1h", "4h"], engine=EngineConfig(candle_window=20))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mirror(config) -> StateMirror:
    return StateMirror(config, RiskManager())


@pytest.fixture
def controller(gateway, mirror) -> OrderLifecycleController:
    return OrderLifecycleController(gateway, mirror, RiskManager(), TrailingManager())
