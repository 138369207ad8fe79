# services/api/lifecycle.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Union

from libs.common.config import PairConfig
from libs.common.errors import ExchangeRejection, PrecisionError, TransientNetworkError
from libs.common.logs import get_logger
from libs.common.models import (
    BUY_APPROVED,
    Candle,
    ConsensusResult,
    Order,
    OrderBookSnapshot,
    OrderStatus,
    OrderType,
    Side,
    Signal,
    Trade,
    client_order_id,
    new_token,
    parse_client_order_id,
)
from services.api.risk_engine import RiskManager, pnl_pct, strong_bearish_reversal
from services.api.trailing import TrailingManager
from services.market_data.state import StateMirror

log = get_logger("lifecycle")

MICRO_BLOCKING = ("sell", "strong_sell")


@dataclass
class TickContext:
    """Vue figée d'un symbole pour une décision."""
    symbol: str
    pair: PairConfig
    price: float
    now_ms: int
    consensus: ConsensusResult
    candles: List[Candle] = field(default_factory=list)
    book: Optional[OrderBookSnapshot] = None
    micro_signal: Optional[str] = None
    open_buy: Optional[Order] = None
    open_sell: Optional[Order] = None
    last_order: Optional[Order] = None
    trade: Optional[Trade] = None
    confidence: Optional[str] = None
    enabled: bool = True

    @property
    def buy_approved(self) -> bool:
        return self.consensus.consensus_signal in BUY_APPROVED


# ---------- actions ----------

@dataclass(frozen=True)
class PlaceOrder:
    side: Side
    order_type: OrderType
    quantity: float
    price: float
    client_order_id: str
    reason: str


@dataclass(frozen=True)
class CancelOrder:
    order_id: int
    reason: str


@dataclass(frozen=True)
class CancelReplace:
    cancel_order_id: int
    side: Side
    order_type: OrderType
    quantity: float
    price: float
    client_order_id: str
    reason: str


@dataclass(frozen=True)
class NoAction:
    reason: str


Action = Union[PlaceOrder, CancelOrder, CancelReplace, NoAction]


def _token_of(order: Order, prefix: str) -> str:
    owned = parse_client_order_id(order.client_order_id, prefix)
    return owned[1] if owned else new_token()


def decide(ctx: TickContext, risk: RiskManager, trailing: TrailingManager, prefix: str = "BOT_") -> Action:
    """
    Une décision par (symbole, tick). Les sorties sont toujours évaluées
    avant toute nouvelle entrée.
    """
    pair, price, trade = ctx.pair, ctx.price, ctx.trade

    if trade is not None:
        stop = risk.dynamic_stop(trade.entry_price, price, ctx.candles, ctx.confidence, pair)
        target = risk.profit_target(ctx.candles, pair)
        trade.stop_loss_price = stop.price
        trade.take_profit_price = trade.entry_price * (1 + target / 100)
        trailing.update(trade, price, pair)

    # --- SELL en attente ---
    if ctx.open_sell is not None:
        sell = ctx.open_sell
        if sell.type == "MARKET":
            return NoAction("market sell pending")
        if trade is not None and price <= trade.stop_loss_price:
            remaining = sell.orig_qty - sell.executed_qty
            return CancelReplace(
                cancel_order_id=sell.order_id, side="SELL", order_type="MARKET",
                quantity=remaining, price=price,
                client_order_id=client_order_id(prefix, "SELL", _token_of(sell, prefix)),
                reason=f"stop hit {price:.8f} <= {trade.stop_loss_price:.8f}",
            )
        return NoAction("waiting for sell fill")

    # --- BUY en attente ---
    if ctx.open_buy is not None:
        buy = ctx.open_buy
        if buy.status == OrderStatus.PARTIALLY_FILLED:
            if not ctx.buy_approved:
                return CancelOrder(buy.order_id, "partial buy, signal gone")
            stop = risk.dynamic_stop(buy.price, price, ctx.candles, ctx.confidence, pair)
            if price <= stop.price:
                return CancelOrder(buy.order_id, "partial buy, stop breached")
            return NoAction("partial buy filling")
        drift = pnl_pct(price, buy.price)
        if not ctx.buy_approved:
            return CancelOrder(buy.order_id, f"signal {ctx.consensus.consensus_signal.value} no longer favorable")
        if drift >= pair.ok_diff:
            return CancelOrder(buy.order_id, f"price drifted {drift:.2f}% >= {pair.ok_diff}%")
        return NoAction("waiting for buy fill")

    # --- position ouverte ---
    if trade is not None:
        sell_cid = client_order_id(prefix, "SELL", trade.token)
        qty = trade.remaining_qty
        loss = pnl_pct(price, trade.entry_price)
        floor = max(trade.stop_loss_price, trade.trailing_stop_price or 0.0)
        if price <= floor:
            kind = "trailing" if trade.trailing_active and floor == trade.trailing_stop_price else "stop"
            return PlaceOrder("SELL", "MARKET", qty, price, sell_cid, f"{kind} hit @ {price:.8f}")
        if loss <= pair.max_stop_loss:
            return PlaceOrder("SELL", "MARKET", qty, price, sell_cid, f"max loss {loss:.2f}%")
        if price >= trade.take_profit_price:
            return PlaceOrder("SELL", "LIMIT", qty, price, sell_cid, f"take profit {loss:.2f}%")
        if strong_bearish_reversal(ctx.candles) or ctx.consensus.consensus_signal == Signal.STRONG_SELL:
            return PlaceOrder("SELL", "LIMIT", qty, price, sell_cid, "strong reversal")
        return NoAction("holding")

    # --- nouvelle entrée ---
    if not ctx.enabled:
        return NoAction("bot disabled")
    if not pair.tradeable:
        return NoAction("pair not tradeable")
    last = ctx.last_order
    if last is not None:
        cooling = (last.side == "SELL" and last.status == OrderStatus.FILLED) or \
            last.status in (OrderStatus.CANCELED, OrderStatus.EXPIRED)
        elapsed_h = (ctx.now_ms - last.update_time) / 3_600_000
        if cooling and elapsed_h < pair.reentry_delay_h:
            return NoAction(f"re-entry delay {elapsed_h:.2f}h < {pair.reentry_delay_h}h")
    if not ctx.buy_approved:
        return NoAction(f"signal {ctx.consensus.consensus_signal.value}")
    if ctx.micro_signal in MICRO_BLOCKING:
        return NoAction(f"order book {ctx.micro_signal}")
    if strong_bearish_reversal(ctx.candles):
        return NoAction("bearish candle")
    entry = risk.entry_price(ctx.book, price, pair)
    if entry <= 0:
        return NoAction("no entry price")
    return PlaceOrder(
        "BUY", "LIMIT", pair.order_size / entry, entry,
        client_order_id(prefix, "BUY", new_token()),
        f"{ctx.consensus.consensus_signal.value} entry {risk.precision_entry_distance(ctx.book, price, pair)}% below",
    )


class OrderLifecycleController:
    """
    Exécute la décision du tick via la gateway et met à jour le miroir
    depuis les réponses. Toute erreur venue = aucune action ce tick.
    """

    def __init__(self, gateway, mirror: StateMirror, risk: Optional[RiskManager] = None,
                 trailing: Optional[TrailingManager] = None):
        self.gateway = gateway
        self.mirror = mirror
        self.prefix = mirror.prefix
        self.risk = risk or RiskManager()
        self.trailing = trailing or TrailingManager()

    def context(self, symbol: str, pair: PairConfig, price: float, now_ms: int,
                consensus: ConsensusResult, enabled: bool = True) -> TickContext:
        st = self.mirror.state(symbol)
        primary = consensus.for_timeframe(self.mirror.primary_tf)
        return TickContext(
            symbol=symbol,
            pair=pair,
            price=price,
            now_ms=now_ms,
            consensus=consensus,
            candles=self.mirror.candles(symbol, self.mirror.primary_tf),
            book=st.book,
            micro_signal=st.micro_signal,
            open_buy=self.mirror.open_order(symbol, "BUY"),
            open_sell=self.mirror.open_order(symbol, "SELL"),
            last_order=self.mirror.last_order(symbol),
            trade=self.mirror.trade(symbol),
            confidence=primary.confidence if primary is not None else None,
            enabled=enabled,
        )

    def _allowed(self, symbol: str, side: Side, replacing: Optional[int] = None) -> bool:
        live = [o for o in self.mirror.open_orders(symbol, side) if o.order_id != replacing]
        if live:
            log.warning("[exec] %s refuse %s: order #%d still open", symbol, side, live[0].order_id)
            return False
        return True

    async def tick(self, ctx: TickContext) -> Action:
        action = decide(ctx, self.risk, self.trailing, self.prefix)
        if isinstance(action, NoAction):
            log.debug("[exec] %s %s", ctx.symbol, action.reason)
            return action
        log.info("[exec] %s %s: %s", ctx.symbol, type(action).__name__, action.reason)
        try:
            return await self._execute(ctx, action)
        except (ExchangeRejection, TransientNetworkError, PrecisionError) as e:
            log.warning("[exec] %s %s failed, no action this tick: %s", ctx.symbol, type(action).__name__, e)
            return NoAction(f"gateway error: {e}")

    async def _execute(self, ctx: TickContext, action: Action) -> Action:
        symbol = ctx.symbol
        if isinstance(action, PlaceOrder):
            if not self._allowed(symbol, action.side):
                return NoAction("duplicate side")
            order = await self.gateway.submit_order(
                symbol, action.side, action.order_type, action.quantity, action.price, action.client_order_id
            )
            self.mirror.apply_order(order)
        elif isinstance(action, CancelOrder):
            order = await self.gateway.cancel_order(symbol, action.order_id)
            self.mirror.apply_order(order)
        elif isinstance(action, CancelReplace):
            if not self._allowed(symbol, action.side, replacing=action.cancel_order_id):
                return NoAction("duplicate side")
            order = await self.gateway.cancel_and_replace(
                symbol, action.side, action.order_type, action.cancel_order_id,
                action.quantity, action.price, action.client_order_id,
            )
            old = self.mirror.state(symbol).orders.get(action.cancel_order_id)
            if old is not None:
                self.mirror.apply_order(old.model_copy(update={"status": OrderStatus.CANCELED,
                                                               "update_time": order.update_time}))
            self.mirror.apply_order(order)
        return action
