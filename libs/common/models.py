from __future__ import annotations
import secrets
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

Side = Literal["BUY", "SELL"]
OrderType = Literal["LIMIT", "MARKET"]


class Signal(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    WEAK_BUY = "WEAK_BUY"
    EARLY_BUY = "EARLY_BUY"
    HOLD = "HOLD"
    WEAK_SELL = "WEAK_SELL"
    SELL = "SELL"
    EARLY_SELL = "EARLY_SELL"
    STRONG_SELL = "STRONG_SELL"
    CONFLICT = "CONFLICT"

    @property
    def is_buy(self) -> bool:
        return self.value.endswith("BUY")

    @property
    def is_sell(self) -> bool:
        return self.value.endswith("SELL")


BUY_APPROVED = frozenset({Signal.BUY, Signal.STRONG_BUY, Signal.EARLY_BUY})
ALERTABLE = frozenset({Signal.BUY, Signal.SELL, Signal.STRONG_BUY, Signal.STRONG_SELL})


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.EXPIRED})

# statuts Binance hors cycle de vie -> équivalent local
_STATUS_ALIASES = {
    "PENDING_NEW": "NEW",
    "PENDING_CANCEL": "CANCELED",
    "REJECTED": "EXPIRED",
    "EXPIRED_IN_MATCH": "EXPIRED",
}


def _ms(d: Dict[str, Any], *keys: str) -> int:
    for k in keys:
        v = d.get(k)
        if v:
            return int(v)
    return 0


class Candle(BaseModel):
    model_config = ConfigDict(frozen=True)

    open_time: int  # ms epoch
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_row(cls, row: List[Any]) -> "Candle":
        """Binance kline: [openTime, open, high, low, close, volume, closeTime, ...]"""
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )

    @classmethod
    def from_kline_event(cls, k: Dict[str, Any]) -> "Candle":
        return cls(
            open_time=int(k["t"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
        )


class MacdSeries(BaseModel):
    model_config = ConfigDict(frozen=True)

    line: List[float] = Field(default_factory=list)
    signal: List[float] = Field(default_factory=list)
    histogram: List[float] = Field(default_factory=list)


class StochPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    k: float
    d: float


class AdxPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    adx: float
    pdi: float
    mdi: float


class IndicatorSnapshot(BaseModel):
    """
    Series per indicator for one timeframe, oldest first.
    `available=False` is the explicit "not enough candles" variant.
    """
    model_config = ConfigDict(frozen=True)

    available: bool = True
    reason: Optional[str] = None
    rsi: List[float] = Field(default_factory=list)
    macd: MacdSeries = Field(default_factory=MacdSeries)
    stoch_rsi: List[StochPoint] = Field(default_factory=list)
    adx: List[AdxPoint] = Field(default_factory=list)
    ao: List[float] = Field(default_factory=list)
    atr: List[float] = Field(default_factory=list)
    ema: List[float] = Field(default_factory=list)

    @classmethod
    def unavailable(cls, reason: str) -> "IndicatorSnapshot":
        return cls(available=False, reason=reason)

    def last(self) -> Dict[str, Optional[float]]:
        def _l(xs):
            return xs[-1] if xs else None
        return {
            "rsi": _l(self.rsi),
            "macd": _l(self.macd.line),
            "macd_signal": _l(self.macd.signal),
            "macd_histogram": _l(self.macd.histogram),
            "stoch_k": self.stoch_rsi[-1].k if self.stoch_rsi else None,
            "stoch_d": self.stoch_rsi[-1].d if self.stoch_rsi else None,
            "adx": self.adx[-1].adx if self.adx else None,
            "pdi": self.adx[-1].pdi if self.adx else None,
            "mdi": self.adx[-1].mdi if self.adx else None,
            "ao": _l(self.ao),
            "atr": _l(self.atr),
            "ema": _l(self.ema),
        }


class SignalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    timeframe: str
    signal: Signal = Signal.HOLD
    buy_score: float = 0.0
    sell_score: float = 0.0
    trend_class: Literal["BULLISH", "BEARISH", "SIDEWAYS"] = "SIDEWAYS"
    confidence: Literal["HIGH", "MEDIUM", "LOW"] = "LOW"
    potential_move: str = "NONE"
    patterns: Dict[str, bool] = Field(default_factory=dict)
    volume_change: float = 0.0
    suggested_buy_in: Optional[float] = None
    validation_errors: List[str] = Field(default_factory=list)
    insufficient_data: bool = False

    @classmethod
    def insufficient(cls, timeframe: str, reason: str) -> "SignalResult":
        return cls(timeframe=timeframe, insufficient_data=True, validation_errors=[reason])


class Agreement(BaseModel):
    model_config = ConfigDict(frozen=True)

    buy: int = 0
    sell: int = 0
    required: int = 2


class ConsensusResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    consensus_signal: Signal = Signal.HOLD
    normalized_buy_score: float = 0.0
    normalized_sell_score: float = 0.0
    signals: List[SignalResult] = Field(default_factory=list)
    agreement: Agreement = Field(default_factory=Agreement)
    insufficient_data: bool = False

    def for_timeframe(self, timeframe: str) -> Optional[SignalResult]:
        for s in self.signals:
            if s.timeframe == timeframe:
                return s
        return None


class Order(BaseModel):
    """Local mirror of a venue order. Replaced (never mutated) on each status change."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    order_id: int
    client_order_id: str
    side: Side
    type: OrderType = "LIMIT"
    status: OrderStatus
    price: float = 0.0
    orig_qty: float = 0.0
    executed_qty: float = 0.0
    cumulative_quote_qty: float = 0.0
    update_time: int = 0  # ms epoch

    @field_validator("status", mode="before")
    @classmethod
    def _alias_status(cls, v):
        if isinstance(v, str):
            return _STATUS_ALIASES.get(v, v)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fill_price(self) -> float:
        """Average fill price, falls back to the limit price (MARKET orders carry price=0)."""
        if self.executed_qty > 0 and self.cumulative_quote_qty > 0:
            return self.cumulative_quote_qty / self.executed_qty
        return self.price

    @classmethod
    def from_rest(cls, d: Dict[str, Any]) -> "Order":
        return cls(
            symbol=d["symbol"],
            order_id=int(d["orderId"]),
            client_order_id=d.get("origClientOrderId") or d.get("clientOrderId") or "",
            side=d["side"],
            type="MARKET" if d.get("type") == "MARKET" else "LIMIT",
            status=d["status"],
            price=float(d.get("price") or 0.0),
            orig_qty=float(d.get("origQty") or 0.0),
            executed_qty=float(d.get("executedQty") or 0.0),
            cumulative_quote_qty=float(d.get("cummulativeQuoteQty") or 0.0),
            update_time=_ms(d, "updateTime", "transactTime", "time"),
        )

    @classmethod
    def from_execution_report(cls, ev: Dict[str, Any]) -> "Order":
        """
        executionReport du user data stream.
        Sur annulation Binance met l'id de la requête d'annulation dans `c`
        et l'id d'origine dans `C`.
        """
        cid = ev.get("c") or ""
        if ev.get("X") == "CANCELED" and ev.get("C"):
            cid = ev["C"]
        return cls(
            symbol=ev["s"],
            order_id=int(ev["i"]),
            client_order_id=cid,
            side=ev["S"],
            type="MARKET" if ev.get("o") == "MARKET" else "LIMIT",
            status=ev["X"],
            price=float(ev.get("p") or 0.0),
            orig_qty=float(ev.get("q") or 0.0),
            executed_qty=float(ev.get("z") or 0.0),
            cumulative_quote_qty=float(ev.get("Z") or 0.0),
            update_time=_ms(ev, "T", "E"),
        )


class Trade(BaseModel):
    """Open position derived from an owned BUY. Risk levels are refreshed every tick."""
    model_config = ConfigDict(validate_assignment=True)

    symbol: str
    token: str
    buy_order_id: int
    entry_price: float = Field(gt=0)
    quantity: float
    executed_qty: float
    sold_qty: float = 0.0  # SELL partiels déjà exécutés sur ce token
    highest_price_seen: float
    stop_loss_price: float
    take_profit_price: float
    trailing_stop_price: Optional[float] = None
    opened_at: int = 0

    @property
    def trailing_active(self) -> bool:
        return self.trailing_stop_price is not None

    @property
    def remaining_qty(self) -> float:
        return max(self.executed_qty - self.sold_qty, 0.0)


BookLevel = Tuple[float, float]


class OrderBookSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    bids: List[BookLevel] = Field(default_factory=list)
    asks: List[BookLevel] = Field(default_factory=list)
    timestamp: int = 0
    last_update_id: Optional[int] = None

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @classmethod
    def from_depth(cls, data: Dict[str, Any], timestamp: int = 0) -> "OrderBookSnapshot":
        """REST /depth and @depth20 partial stream share this shape."""
        return cls(
            bids=[(float(p), float(q)) for p, q in data.get("bids", [])],
            asks=[(float(p), float(q)) for p, q in data.get("asks", [])],
            timestamp=timestamp,
            last_update_id=data.get("lastUpdateId"),
        )


# ---------- idempotency keys ----------

def new_token() -> str:
    return secrets.token_hex(12)


def client_order_id(prefix: str, side: Side, token: str) -> str:
    """BOT_B_<24 hex> / BOT_S_<même token> : le SELL de sortie réutilise le token du BUY."""
    return f"{prefix}{side[0]}_{token}"


def parse_client_order_id(cid: str, prefix: str) -> Optional[Tuple[str, str]]:
    """Returns (side letter, token) for ids we own, None otherwise."""
    if not cid or not cid.startswith(prefix):
        return None
    rest = cid[len(prefix):]
    if len(rest) < 3 or rest[1] != "_" or rest[0] not in ("B", "S"):
        return None
    return rest[0], rest[2:]
