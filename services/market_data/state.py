# services/market_data/state.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from libs.common.config import AppConfig, PairConfig
from libs.common.errors import ReconciliationConflict
from libs.common.logs import get_logger
from libs.common.models import (
    Candle,
    ConsensusResult,
    Order,
    OrderBookSnapshot,
    OrderStatus,
    Side,
    Trade,
    parse_client_order_id,
)
from services.api.risk_engine import RiskManager

log = get_logger("recon")


@dataclass
class SymbolState:
    symbol: str
    candles: Dict[str, List[Candle]] = field(default_factory=dict)
    book: Optional[OrderBookSnapshot] = None
    prev_book: Optional[OrderBookSnapshot] = None
    orders: Dict[int, Order] = field(default_factory=dict)
    trades: Dict[str, Trade] = field(default_factory=dict)
    consensus: Optional[ConsensusResult] = None
    micro_signal: Optional[str] = None


class StateMirror:
    """
    Miroir local par symbole : bougies, carnet (courant + précédent), ordres, trades ouverts.
    Seuls les flux et la boucle d'évaluation écrivent dedans.
    """

    def __init__(self, config: AppConfig, risk: Optional[RiskManager] = None):
        self.config = config
        self.prefix = config.engine.prefix
        self.window = config.engine.candle_window
        self.primary_tf = config.engine.primary_timeframe
        self.risk = risk or RiskManager()
        self.states: Dict[str, SymbolState] = {p.symbol: SymbolState(p.symbol) for p in config.pairs}

    def state(self, symbol: str) -> SymbolState:
        st = self.states.get(symbol)
        if st is None:
            st = self.states[symbol] = SymbolState(symbol)
        return st

    def _pair(self, symbol: str) -> PairConfig:
        return self.config.pair(symbol) or PairConfig(symbol=symbol)

    # ---------- marché ----------
    def set_candles(self, symbol: str, tf: str, candles: Iterable[Candle]) -> None:
        self.state(symbol).candles[tf] = list(candles)[-self.window:]

    def apply_kline(self, symbol: str, tf: str, candle: Candle) -> None:
        """Bougie en cours remplacée sur place, nouvelle bougie ajoutée, fenêtre plafonnée."""
        series = self.state(symbol).candles.setdefault(tf, [])
        if series and series[-1].open_time == candle.open_time:
            series[-1] = candle
        elif not series or candle.open_time > series[-1].open_time:
            series.append(candle)
            if len(series) > self.window:
                del series[: len(series) - self.window]

    def apply_depth(self, symbol: str, book: OrderBookSnapshot) -> None:
        st = self.state(symbol)
        st.prev_book = st.book
        st.book = book

    def candles(self, symbol: str, tf: str) -> List[Candle]:
        return self.state(symbol).candles.get(tf, [])

    def last_price(self, symbol: str) -> Optional[float]:
        series = self.candles(symbol, self.primary_tf)
        if series:
            return series[-1].close
        for series in self.state(symbol).candles.values():
            if series:
                return series[-1].close
        return None

    # ---------- ordres / trades ----------
    def owned(self, order: Order):
        return parse_client_order_id(order.client_order_id, self.prefix)

    def _new_trade(self, order: Order, token: str) -> Trade:
        pair = self._pair(order.symbol)
        entry = order.fill_price
        stop = self.risk.initial_levels(entry, pair)
        return Trade(
            symbol=order.symbol,
            token=token,
            buy_order_id=order.order_id,
            entry_price=entry,
            quantity=order.orig_qty,
            executed_qty=order.executed_qty,
            highest_price_seen=entry,
            stop_loss_price=stop.price,
            take_profit_price=entry * (1 + pair.profit_margin / 100),
            opened_at=order.update_time,
        )

    def apply_order(self, order: Order) -> None:
        st = self.state(order.symbol)
        prev = st.orders.get(order.order_id)
        # un état plus ancien ne remplace jamais un état plus récent
        if prev is not None and self._stale(prev, order):
            log.debug("[uds] %s #%d stale %s ignored (have %s)", order.symbol, order.order_id,
                      order.status.value, prev.status.value)
            return
        st.orders[order.order_id] = order

        owned = self.owned(order)
        if owned is None:
            return
        letter, token = owned
        if letter == "B" and order.executed_qty > 0:
            trade = st.trades.get(token)
            if trade is None:
                st.trades[token] = self._new_trade(order, token)
                log.info("[uds] %s trade %s opened @ %.8f qty=%s", order.symbol, token,
                         order.fill_price, order.executed_qty)
            else:
                trade.executed_qty = order.executed_qty
                trade.entry_price = order.fill_price
        elif letter == "S" and order.executed_qty > 0:
            trade = st.trades.get(token)
            if trade is None:
                return
            trade.sold_qty = self._sold_qty(st.orders.values(), token)
            if order.status == OrderStatus.FILLED or trade.remaining_qty <= trade.executed_qty * 1e-9:
                st.trades.pop(token)
                log.info("[uds] %s trade %s closed @ %.8f", order.symbol, token, order.fill_price)
            else:
                log.info("[uds] %s trade %s partly sold, %s left", order.symbol, token, trade.remaining_qty)

    @staticmethod
    def _stale(prev: Order, order: Order) -> bool:
        if prev.is_terminal and not order.is_terminal:
            return True
        if order.executed_qty < prev.executed_qty:
            return True
        # horodatage absent (0) : on ne compare pas
        return 0 < order.update_time < prev.update_time

    def _sold_qty(self, orders: Iterable[Order], token: str) -> float:
        sold = 0.0
        for o in orders:
            owned = self.owned(o)
            if owned is not None and owned == ("S", token):
                sold += o.executed_qty
        return sold

    def apply_execution_report(self, ev: dict) -> Order:
        order = Order.from_execution_report(ev)
        self.apply_order(order)
        return order

    def rebuild_trades(self, symbol: str, orders: Iterable[Order]) -> Dict[str, Trade]:
        """
        Reconstruit les trades depuis l'historique venue : BUY possédés exécutés
        sans SELL FILLED sur le même token. Les trades locaux sans BUY venue sont abandonnés.
        """
        st = self.state(symbol)
        st.orders = {}
        buys: Dict[str, Order] = {}
        closed = set()
        for o in sorted(orders, key=lambda o: o.update_time):
            st.orders[o.order_id] = o
            owned = self.owned(o)
            if owned is None:
                continue
            letter, token = owned
            if letter == "B" and o.executed_qty > 0:
                buys[token] = o
            elif letter == "S" and o.status == OrderStatus.FILLED:
                closed.add(token)

        rebuilt: Dict[str, Trade] = {}
        for token, buy in buys.items():
            if token in closed:
                continue
            current = st.trades.get(token)
            if current is not None:
                current.executed_qty = buy.executed_qty
                trade = current
            else:
                trade = self._new_trade(buy, token)
            trade.sold_qty = self._sold_qty(st.orders.values(), token)
            if trade.remaining_qty <= trade.executed_qty * 1e-9:
                continue
            rebuilt[token] = trade

        for token in st.trades:
            if token not in buys:
                conflict = ReconciliationConflict(symbol, token, "no matching venue BUY order")
                log.warning("[recon] dropped: %s", conflict)
        st.trades = rebuilt
        log.info("[recon] %s %d order(s), %d open trade(s)", symbol, len(st.orders), len(rebuilt))
        return rebuilt

    def open_order(self, symbol: str, side: Optional[Side] = None) -> Optional[Order]:
        """Dernier ordre possédé non terminal (optionnellement d'un côté)."""
        live = [
            o for o in self.state(symbol).orders.values()
            if not o.is_terminal and self.owned(o) is not None and (side is None or o.side == side)
        ]
        return max(live, key=lambda o: o.update_time) if live else None

    def open_orders(self, symbol: str, side: Side) -> List[Order]:
        return [
            o for o in self.state(symbol).orders.values()
            if not o.is_terminal and o.side == side and self.owned(o) is not None
        ]

    def last_order(self, symbol: str) -> Optional[Order]:
        owned = [o for o in self.state(symbol).orders.values() if self.owned(o) is not None]
        return max(owned, key=lambda o: (o.update_time, o.order_id)) if owned else None

    def trade(self, symbol: str) -> Optional[Trade]:
        trades = self.state(symbol).trades
        if not trades:
            return None
        return min(trades.values(), key=lambda t: t.opened_at)
