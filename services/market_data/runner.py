# services/market_data/runner.py
from __future__ import annotations
import asyncio
import json
import sys
import time
from typing import Any, Dict, List, Optional

import uvicorn
import websockets

from libs.common.config import AppConfig, load_config
from libs.common.errors import ExchangeRejection, InitializationError, TransientNetworkError
from libs.common.logs import get_logger
from libs.common.models import OrderBookSnapshot
from services.api.app import create_app
from services.api.engine import TradeEngine
from services.api.execution import ExchangeGateway, build_spot_client
from services.api.lifecycle import OrderLifecycleController
from services.api.notify import Notifier
from services.api.ratelimit import RateLimitedQueue
from services.api.risk_engine import RiskManager
from services.api.trailing import TrailingManager
from services.market_data.state import StateMirror
from services.market_data.strategy import ConsensusStrategy, parse_kline_message

log = get_logger("md")

WS_ERRORS = (websockets.WebSocketException, OSError, asyncio.TimeoutError)


def now_ms() -> int:
    return int(time.time() * 1000)


async def _pause(stop: asyncio.Event, delay: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


# ---------- MARKET STREAMS ----------
def market_streams(config: AppConfig) -> List[str]:
    out = []
    for p in config.pairs:
        s = p.symbol.lower()
        out.extend(f"{s}@kline_{tf}" for tf in config.timeframes)
        out.append(f"{s}@depth20@100ms")
    return out


def handle_market_message(engine: TradeEngine, msg: Dict[str, Any]) -> bool:
    """Route un message du flux combiné vers l'inbox du symbole."""
    stream = msg.get("stream") or ""
    if "@depth" in stream:
        symbol = stream.split("@", 1)[0].upper()
        return engine.post(symbol, "depth", OrderBookSnapshot.from_depth(msg.get("data") or {}, timestamp=now_ms()))
    parsed = parse_kline_message(msg)
    if parsed is None:
        return False
    symbol, tf, candle, _closed = parsed
    return engine.post(symbol, "kline", (tf, candle))


async def market_loop(config: AppConfig, engine: TradeEngine, stop: asyncio.Event) -> None:
    url = f"{config.ws_base}/stream?streams={'/'.join(market_streams(config))}"
    while not stop.is_set():
        log.info("[md] market ws -> %s (%d syms)", url, len(config.pairs))
        try:
            async with websockets.connect(url, ping_interval=config.streams.ping_interval,
                                          ping_timeout=config.streams.ping_interval) as ws:
                async for raw in ws:
                    try:
                        handle_market_message(engine, json.loads(raw))
                    except (ValueError, KeyError) as e:
                        log.warning("[md] bad message skipped: %s", e)
        except WS_ERRORS as e:
            log.warning("[md] market ws error: %s", e)
        await _pause(stop, config.streams.reconnect_delay_s)


# ---------- RECONCILIATION ----------
async def reconcile(gateway: ExchangeGateway, mirror: StateMirror, symbols: List[str]) -> None:
    """Historique d'ordres venue -> trades ouverts ; un symbole en échec garde son état local."""
    for sym in symbols:
        try:
            orders = await gateway.fetch_orders(sym)
        except (ExchangeRejection, TransientNetworkError) as e:
            log.warning("[recon] %s skipped: %s", sym, e)
            continue
        mirror.rebuild_trades(sym, orders)


# ---------- USER DATA STREAM ----------
class UserStream:
    """listenKey + keepalive toutes les 30 min ; reconnexion = réconciliation."""

    def __init__(self, config: AppConfig, gateway: ExchangeGateway, engine: TradeEngine):
        self.config = config
        self.gateway = gateway
        self.engine = engine
        self.listen_key: Optional[str] = None
        self.reconnects = 0

    async def open(self) -> str:
        try:
            self.listen_key = await self.gateway.new_listen_key()
        except (ExchangeRejection, TransientNetworkError) as e:
            raise InitializationError(f"cannot open user data stream: {e}") from e
        return self.listen_key

    async def keepalive(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await _pause(stop, self.config.streams.keepalive_s)
            if stop.is_set():
                return
            try:
                await self.gateway.renew_listen_key(self.listen_key)
                log.debug("[uds] keepalive ok")
            except (ExchangeRejection, TransientNetworkError) as e:
                log.warning("[uds] keepalive failed, recreating: %s", e)
                try:
                    self.listen_key = await self.gateway.new_listen_key()
                except (ExchangeRejection, TransientNetworkError) as e2:
                    log.error("[uds] new_listen_key error: %s", e2)

    def handle(self, ev: Dict[str, Any]) -> bool:
        if ev.get("e") != "executionReport" or not ev.get("s"):
            return False
        return self.engine.post(ev["s"], "execution", ev)

    async def consume(self, stop: asyncio.Event) -> None:
        first = True
        while not stop.is_set():
            url = f"{self.config.ws_base}/ws/{self.listen_key}"
            try:
                async with websockets.connect(url, ping_interval=self.config.streams.ping_interval,
                                              ping_timeout=self.config.streams.ping_interval) as ws:
                    log.info("[uds] connected")
                    if not first:
                        await reconcile(self.gateway, self.engine.mirror, self.engine.symbols)
                    first = False
                    async for raw in ws:
                        try:
                            self.handle(json.loads(raw))
                        except (ValueError, KeyError) as e:
                            log.warning("[uds] bad event skipped: %s", e)
            except WS_ERRORS as e:
                self.reconnects += 1
                first = False
                log.warning("[uds] ws error: %s", e)
            await _pause(stop, self.config.streams.reconnect_delay_s)

    async def close(self) -> None:
        if not self.listen_key:
            return
        try:
            await self.gateway.close_listen_key(self.listen_key)
            log.info("[uds] listen key closed")
        except (ExchangeRejection, TransientNetworkError) as e:
            log.warning("[uds] close_listen_key failed: %s", e)
        self.listen_key = None


# ---------- MAIN ----------
async def main(config_path: Optional[str] = None) -> None:
    config = load_config(config_path)
    symbols = [p.symbol for p in config.pairs]
    if not symbols:
        raise InitializationError("no pairs configured")
    if not (config.api_key and config.api_secret):
        raise InitializationError("BINANCE_API_KEY / BINANCE_API_SECRET required")

    queue = RateLimitedQueue(config.rate_limits)
    gateway = ExchangeGateway(build_spot_client(config.rest_base, config.api_key, config.api_secret), queue)
    offset = await asyncio.to_thread(gateway.check_clock)
    log.info("[exec] client ready (mode=%s, clock offset %dms)", config.mode, offset)
    await gateway.load_filters(symbols)

    risk = RiskManager()
    mirror = StateMirror(config, risk)
    controller = OrderLifecycleController(gateway, mirror, risk, TrailingManager())
    notifier = Notifier(config.alerts)
    engine = TradeEngine(config, gateway, mirror, controller, ConsensusStrategy(config), notifier=notifier)

    await reconcile(gateway, mirror, symbols)
    user = UserStream(config, gateway, engine)
    await user.open()

    stop = asyncio.Event()
    tasks = [
        asyncio.create_task(engine.run(stop)),
        asyncio.create_task(market_loop(config, engine, stop)),
        asyncio.create_task(user.consume(stop)),
        asyncio.create_task(user.keepalive(stop)),
    ]
    server = uvicorn.Server(uvicorn.Config(create_app(engine), host=config.api.host,
                                           port=config.api.port, log_level="info"))
    log.info("[md] runner started; %d symbols, timeframes %s", len(symbols), ",".join(config.timeframes))
    try:
        await server.serve()
    finally:
        log.info("[md] shutting down")
        stop.set()
        for t in tasks[1:]:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await user.close()
        drained = await gateway.close()
        if not drained:
            log.warning("[rl] queue not drained before timeout")
        await notifier.aclose()


def run() -> None:
    try:
        asyncio.run(main())
    except InitializationError as e:
        log.error("[md] startup failed: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
