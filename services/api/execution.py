from __future__ import annotations
import time
from typing import Any, Dict, List, Optional

import requests
from binance.error import ClientError, ServerError
from binance.spot import Spot

from libs.common.binance_filters import SymbolFilters, fmt, guard_order
from libs.common.errors import (
    ExchangeRejection,
    InitializationError,
    TransientNetworkError,
)
from libs.common.logs import get_logger
from libs.common.models import Candle, Order, OrderBookSnapshot, OrderType, Side
from services.api.ratelimit import RateLimitedQueue

log = get_logger("exec")

RECV_WINDOW = 10000

# poids REST Binance par endpoint
WEIGHTS = {
    "klines": 2,
    "get_orders": 20,
    "depth": 1,
    "new_order": 1,
    "cancel_order": 1,
    "cancel_and_replace": 1,
    "account": 20,
    "exchange_info": 20,
    "new_listen_key": 2,
    "renew_listen_key": 2,
    "close_listen_key": 2,
}


def build_spot_client(base_url: str, key: str | None, secret: str | None) -> Spot:
    return Spot(api_key=key or "", api_secret=secret or "", base_url=base_url)


class ExchangeGateway:
    """
    Tous les appels venue passent par la RateLimitedQueue.
    Prix/qty tronqués au tick/step et contrôlés (minQty, minNotional) avant tout envoi.
    Aucune relance : les erreurs remontent typées au contrôleur.
    """

    def __init__(self, client: Spot, queue: RateLimitedQueue):
        self.client = client
        self.queue = queue
        self._filters: Dict[str, SymbolFilters] = {}
        self._time_offset_ms: int = 0

    # ---------- horloge ----------
    # binance-connector signe avec l'heure locale (sign_request écrase `timestamp`) :
    # on mesure l'écart serveur au lieu de le corriger.
    def measure_clock_offset(self) -> int:
        try:
            st = self.client.time()
            self._time_offset_ms = int(st["serverTime"]) - int(time.time() * 1000)
        except (ClientError, ServerError, requests.RequestException) as e:
            log.warning("[exec] server time unavailable, last offset %dms: %s", self._time_offset_ms, e)
        return self._time_offset_ms

    def check_clock(self) -> int:
        """Au démarrage : une horloge locale hors recvWindow ferait rejeter chaque requête signée."""
        offset = self.measure_clock_offset()
        if abs(offset) >= RECV_WINDOW:
            raise InitializationError(f"local clock off by {offset}ms (recvWindow {RECV_WINDOW}ms)")
        return offset

    @staticmethod
    def _signed(**params: Any) -> Dict[str, Any]:
        params["recvWindow"] = RECV_WINDOW
        return params

    async def _call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        fn = getattr(self.client, name)
        try:
            return await self.queue.submit(fn, *args, weight=WEIGHTS.get(name, 1), **kwargs)
        except ClientError as e:
            if e.error_code == -1021:  # timestamp hors recvWindow
                log.error("[exec] timestamp rejected, clock offset now %dms", self.measure_clock_offset())
            raise ExchangeRejection(e.status_code, e.error_code, e.error_message) from e
        except ServerError as e:
            raise TransientNetworkError(f"{name}: HTTP {e.status_code} {e.message}") from e
        except requests.RequestException as e:
            raise TransientNetworkError(f"{name}: {e}") from e

    # ---------- métadonnées ----------
    async def load_filters(self, symbols: List[str]) -> Dict[str, SymbolFilters]:
        """exchangeInfo au démarrage ; un échec est fatal."""
        try:
            data = await self._call("exchange_info", symbols=symbols)
        except (ExchangeRejection, TransientNetworkError) as e:
            raise InitializationError(f"cannot load exchange info: {e}") from e
        for info in data.get("symbols", []):
            f = SymbolFilters.from_symbol_info(info)
            self._filters[f.symbol] = f
        missing = [s for s in symbols if s not in self._filters]
        if missing:
            raise InitializationError(f"unknown symbols on venue: {missing}")
        return dict(self._filters)

    def filters(self, symbol: str) -> SymbolFilters:
        f = self._filters.get(symbol)
        if f is None:
            raise InitializationError(f"no exchange info loaded for {symbol}")
        return f

    # ---------- lecture ----------
    async def fetch_candles(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        rows = await self._call("klines", symbol, interval, limit=limit)
        return [Candle.from_row(r) for r in rows]

    async def fetch_orders(self, symbol: str, limit: int = 500) -> List[Order]:
        rows = await self._call("get_orders", symbol, **self._signed(limit=limit))
        return [Order.from_rest(r) for r in rows]

    async def fetch_depth(self, symbol: str, limit: int = 20) -> OrderBookSnapshot:
        data = await self._call("depth", symbol, limit=limit)
        return OrderBookSnapshot.from_depth(data, timestamp=int(time.time() * 1000))

    async def fetch_balances(self, asset: Optional[str] = None) -> Dict[str, float]:
        acct = await self._call("account", **self._signed())
        out = {b["asset"]: float(b["free"]) for b in acct.get("balances", [])}
        if asset is not None:
            return {asset: out.get(asset, 0.0)}
        return out

    # ---------- ordres ----------
    def prepare(self, symbol: str, order_type: OrderType, price: float, quantity: float) -> Dict[str, str]:
        """Troncature + garde-fous locaux. `price` sert de référence de notional pour un MARKET."""
        p, q = guard_order(price, quantity, self.filters(symbol))
        if order_type == "LIMIT":
            return {"price": fmt(p), "quantity": fmt(q)}
        return {"quantity": fmt(q)}

    async def submit_order(self, symbol: str, side: Side, order_type: OrderType, quantity: float,
                           price: float, client_order_id: str) -> Order:
        params = self.prepare(symbol, order_type, price, quantity)
        if order_type == "LIMIT":
            params["timeInForce"] = "GTC"
        resp = await self._call(
            "new_order", symbol, side, order_type,
            **self._signed(newClientOrderId=client_order_id, newOrderRespType="RESULT", **params),
        )
        order = Order.from_rest(resp)
        log.info("[exec] %s %s %s qty=%s px=%s -> %s #%d", symbol, side, order_type,
                 params["quantity"], params.get("price", "mkt"), order.status.value, order.order_id)
        return order

    async def cancel_order(self, symbol: str, order_id: int) -> Order:
        resp = await self._call("cancel_order", symbol, **self._signed(orderId=order_id))
        order = Order.from_rest(resp)
        log.info("[exec] %s cancel #%d -> %s", symbol, order_id, order.status.value)
        return order

    async def cancel_and_replace(self, symbol: str, side: Side, order_type: OrderType, cancel_order_id: int,
                                 quantity: float, price: float, client_order_id: str) -> Order:
        params = self.prepare(symbol, order_type, price, quantity)
        if order_type == "LIMIT":
            params["timeInForce"] = "GTC"
        resp = await self._call(
            "cancel_and_replace", symbol, side, order_type, "STOP_ON_FAILURE",
            **self._signed(cancelOrderId=cancel_order_id, newClientOrderId=client_order_id,
                           newOrderRespType="RESULT", **params),
        )
        order = Order.from_rest(resp["newOrderResponse"])
        log.info("[exec] %s cancel #%d + %s %s -> #%d", symbol, cancel_order_id, side, order_type, order.order_id)
        return order

    # ---------- user data stream ----------
    async def new_listen_key(self) -> str:
        return (await self._call("new_listen_key"))["listenKey"]

    async def renew_listen_key(self, key: str) -> None:
        await self._call("renew_listen_key", key)

    async def close_listen_key(self, key: str) -> None:
        await self._call("close_listen_key", key)

    async def close(self, timeout: float = 10.0) -> bool:
        return await self.queue.drain(timeout)


__all__ = ["ExchangeGateway", "build_spot_client", "WEIGHTS"]
