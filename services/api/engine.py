# services/api/engine.py
from __future__ import annotations
import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from libs.common.config import AppConfig, PairConfig
from libs.common.errors import ExchangeRejection, TransientNetworkError
from libs.common.indicators import MIN_CANDLES
from libs.common.logs import get_logger
from services.api.lifecycle import Action, OrderLifecycleController
from services.api.notify import Notifier
from services.market_data.orderbook import OrderBookAnalyzer
from services.market_data.state import StateMirror
from services.market_data.strategy import ConsensusStrategy

log = get_logger("engine")

PRIORITY = {"execution": 2, "kline": 1, "depth": 0}


@dataclass(frozen=True)
class Event:
    kind: str
    payload: Any
    seq: int


class SymbolActor:
    """
    Boîte de réception bornée d'un symbole.
    Saturée : on jette l'événement le moins prioritaire, le plus ancien d'abord.
    `busy` bloque une réévaluation tant qu'un appel d'ordre est en cours.
    """

    _seq = itertools.count()

    def __init__(self, symbol: str, maxsize: int = 100):
        self.symbol = symbol
        self.maxsize = maxsize
        self.inbox: Deque[Event] = deque()
        self.busy = False
        self.dropped = 0

    def post(self, kind: str, payload: Any) -> bool:
        if kind not in PRIORITY:
            raise ValueError(f"unknown event kind {kind!r}")
        ev = Event(kind, payload, next(self._seq))
        if len(self.inbox) < self.maxsize:
            self.inbox.append(ev)
            return True
        victim = min(itertools.chain(self.inbox, (ev,)), key=lambda e: (PRIORITY[e.kind], e.seq))
        self.dropped += 1
        if victim is ev:
            return False
        self.inbox.remove(victim)
        self.inbox.append(ev)
        return True

    def drain(self) -> List[Event]:
        events = list(self.inbox)
        self.inbox.clear()
        return events

    def __len__(self) -> int:
        return len(self.inbox)


class TradeEngine:
    """Boucle d'évaluation : inbox -> miroir -> consensus + carnet -> contrôleur."""

    def __init__(self, config: AppConfig, gateway, mirror: StateMirror, controller: OrderLifecycleController,
                 strategy: ConsensusStrategy, analyzer: Optional[OrderBookAnalyzer] = None,
                 notifier: Optional[Notifier] = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.gateway = gateway
        self.mirror = mirror
        self.controller = controller
        self.strategy = strategy
        self.analyzer = analyzer or OrderBookAnalyzer()
        self.notifier = notifier
        self.clock = clock
        self.enabled = True
        self.ticks = 0
        self.actors: Dict[str, SymbolActor] = {
            p.symbol: SymbolActor(p.symbol, config.engine.inbox_size) for p in config.pairs
        }

    @property
    def symbols(self) -> List[str]:
        return list(self.actors)

    def actor(self, symbol: str) -> SymbolActor:
        return self.actors[symbol]

    def post(self, symbol: str, kind: str, payload: Any) -> bool:
        a = self.actors.get(symbol)
        if a is None:
            log.debug("[engine] %s not configured, %s event ignored", symbol, kind)
            return False
        return a.post(kind, payload)

    def enable(self) -> None:
        self.enabled = True
        log.info("[engine] enabled")

    def disable(self) -> None:
        self.enabled = False
        log.info("[engine] disabled, exits still managed")

    def _apply_events(self, symbol: str) -> None:
        """Tous les executionReports, la dernière kline par bougie, le dernier carnet."""
        klines: Dict[tuple, Any] = {}
        depth = None
        for ev in self.actor(symbol).drain():
            if ev.kind == "execution":
                self.mirror.apply_execution_report(ev.payload)
            elif ev.kind == "kline":
                tf, candle = ev.payload
                klines[(tf, candle.open_time)] = (tf, candle)
            else:
                depth = ev.payload
        for tf, candle in klines.values():
            self.mirror.apply_kline(symbol, tf, candle)
        if depth is not None:
            self.mirror.apply_depth(symbol, depth)

    async def _refresh_market(self, symbol: str) -> None:
        st = self.mirror.state(symbol)
        for tf in self.strategy.timeframes:
            if len(st.candles.get(tf, [])) < MIN_CANDLES:
                rows = await self.gateway.fetch_candles(symbol, tf, limit=self.config.engine.candle_window)
                self.mirror.set_candles(symbol, tf, rows)
        if st.book is None:
            self.mirror.apply_depth(symbol, await self.gateway.fetch_depth(symbol))

    async def evaluate(self, symbol: str) -> Optional[Action]:
        actor = self.actor(symbol)
        if actor.busy:
            log.debug("[engine] %s busy, skipped", symbol)
            return None
        actor.busy = True
        try:
            self._apply_events(symbol)
            try:
                await self._refresh_market(symbol)
            except (ExchangeRejection, TransientNetworkError) as e:
                # venue en échec : aucune décision ce tick
                log.warning("[engine] %s market refresh failed, skipping tick: %s", symbol, e)
                return None

            price = self.mirror.last_price(symbol)
            if price is None:
                log.debug("[engine] %s no price yet", symbol)
                return None
            st = self.mirror.state(symbol)
            st.consensus = self.strategy.compute(st.candles)
            if st.book is not None:
                primary = self.mirror.candles(symbol, self.mirror.primary_tf)
                st.micro_signal = self.analyzer.analyze(st.book, st.prev_book, primary).composite
            if self.notifier is not None:
                await self.notifier.maybe_alert(symbol, st.consensus, price)

            pair = self.config.pair(symbol) or PairConfig(symbol=symbol, tradeable=False)
            ctx = self.controller.context(symbol, pair, price, int(self.clock() * 1000),
                                          st.consensus, enabled=self.enabled)
            return await self.controller.tick(ctx)
        finally:
            actor.busy = False

    async def run_tick(self) -> Dict[str, Optional[Action]]:
        self.ticks += 1
        out: Dict[str, Optional[Action]] = {}
        if self.config.engine.mode == "parallel":
            syms = self.symbols
            results = await asyncio.gather(*(self.evaluate(s) for s in syms), return_exceptions=True)
            for sym, res in zip(syms, results):
                if isinstance(res, Exception):
                    log.error("[engine] %s evaluation error: %r", sym, res)
                    res = None
                out[sym] = res
            return out
        for sym in self.symbols:
            try:
                out[sym] = await self.evaluate(sym)
            except Exception:
                log.exception("[engine] %s evaluation error", sym)
                out[sym] = None
            if self.config.engine.pair_delay_s:
                await asyncio.sleep(self.config.engine.pair_delay_s)
        return out

    async def run(self, stop: asyncio.Event) -> None:
        log.info("[engine] loop started (%s, %d symbols)", self.config.engine.mode, len(self.actors))
        while not stop.is_set():
            await self.run_tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.engine.tick_interval_s)
            except asyncio.TimeoutError:
                pass
        log.info("[engine] loop stopped after %d ticks", self.ticks)

    # ---------- vues pour l'API ----------
    def status(self) -> Dict[str, Any]:
        symbols = {}
        for sym, actor in self.actors.items():
            st = self.mirror.state(sym)
            symbols[sym] = {
                "busy": actor.busy,
                "inbox": len(actor),
                "dropped": actor.dropped,
                "price": self.mirror.last_price(sym),
                "consensus": st.consensus.consensus_signal.value if st.consensus else None,
                "micro": st.micro_signal,
                "open_trades": len(st.trades),
            }
        return {
            "enabled": self.enabled,
            "mode": self.config.engine.mode,
            "venue": self.config.mode,
            "ticks": self.ticks,
            "rate_limits": self.gateway.queue.usage(),
            "symbols": symbols,
        }

    def pair_status(self, symbol: str) -> Optional[Dict[str, Any]]:
        if symbol not in self.actors:
            return None
        st = self.mirror.state(symbol)
        return {
            "symbol": symbol,
            "price": self.mirror.last_price(symbol),
            "candles": {tf: len(c) for tf, c in st.candles.items()},
            "best_bid": st.book.best_bid if st.book else None,
            "best_ask": st.book.best_ask if st.book else None,
            "micro": st.micro_signal,
            "open_orders": [o.model_dump(mode="json") for o in st.orders.values() if not o.is_terminal],
            "trades": [t.model_dump(mode="json") for t in st.trades.values()],
            "consensus": st.consensus.model_dump(mode="json") if st.consensus else None,
        }
