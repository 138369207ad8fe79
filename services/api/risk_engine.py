# services/api/risk_engine.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence

from libs.common.config import PairConfig
from libs.common.logs import get_logger
from libs.common.models import Candle, OrderBookSnapshot

log = get_logger("risk")

# plancher absolu du stop (%)
MIN_STOP_PCT = -0.3
STRONG_REVERSAL = -0.5


def pnl_pct(price: float, entry: float) -> float:
    if entry <= 0:
        return 0.0
    return (price - entry) / entry * 100.0


def volatility(candles: Sequence[Candle], period: int = 20) -> float:
    """Moyenne des |Δclose| relatifs sur `period` bougies, en %."""
    if len(candles) < period:
        return 0.0
    window = list(candles)[-period:]
    changes = [0.0] + [
        abs(c.close - p.close) / p.close for p, c in zip(window, window[1:]) if p.close > 0
    ]
    return round(sum(changes) / len(changes) * 100.0, 2)


def candle_pattern_score(candles: Sequence[Candle]) -> float:
    """+0.8 grosse bougie verte, -0.8 grosse bougie rouge, 0 sinon."""
    if len(candles) < 3:
        return 0.0
    c = candles[-1]
    body = abs(c.close - c.open)
    ratio = body / ((c.high - c.low) or 0.0001)
    if ratio > 0.7:
        if c.close > c.open:
            return 0.8
        if c.close < c.open:
            return -0.8
    return 0.0


def strong_bearish_reversal(candles: Sequence[Candle]) -> bool:
    return candle_pattern_score(candles) < STRONG_REVERSAL


@dataclass(frozen=True)
class StopLevel:
    percentage: float
    price: float


class RiskManager:
    """Stop dynamique, objectif de profit, distance d'entrée. Sans état."""

    def __init__(self, volatility_period: int = 20):
        self.volatility_period = volatility_period

    def dynamic_stop(self, entry: float, price: float, candles: Sequence[Candle],
                     confidence: Optional[str], pair: PairConfig) -> StopLevel:
        vol = volatility(candles, self.volatility_period)
        vol_factor = 1 + vol / 50
        trend_factor = {"HIGH": 0.7, "LOW": 1.3}.get(confidence or "MEDIUM", 1.0)
        pl_factor = 1.2 if pnl_pct(price, entry) < -1 else 1.0

        stop = pair.stop_loss_base * vol_factor * trend_factor * pl_factor
        stop = max(stop, pair.max_stop_loss)
        stop = min(stop, MIN_STOP_PCT)
        level = StopLevel(percentage=round(stop, 2), price=entry * (1 + stop / 100))
        log.debug("[risk] %s stop %.2f%% (vol=%.2f conf=%s) -> %.8f",
                  pair.symbol, level.percentage, vol, confidence, level.price)
        return level

    def profit_target(self, candles: Sequence[Candle], pair: PairConfig) -> float:
        """Objectif en % : marge × (1 + vol/100), borné à [0.8×, 2×] de la marge."""
        margin = pair.profit_margin
        target = margin * (1 + volatility(candles, self.volatility_period) / 100)
        target = min(target, margin * 2)
        return max(target, margin * 0.8)

    def precision_entry_distance(self, book: Optional[OrderBookSnapshot], price: float, pair: PairConfig) -> float:
        """Distance (%) sous le prix courant pour un BUY limite, dérivée du spread."""
        floor = max(pair.entry_distance, 0.1)
        if book is None or book.best_bid is None or book.best_ask is None or price <= 0:
            return round(floor, 2)
        spread_pct = (book.best_ask - book.best_bid) / price * 100
        dist = max(0.05, spread_pct * 1.5)
        dist = min(dist, 1.0)
        return round(max(dist, floor), 2)

    def entry_price(self, book: Optional[OrderBookSnapshot], price: float, pair: PairConfig) -> float:
        return price * (1 - self.precision_entry_distance(book, price, pair) / 100)

    def initial_levels(self, entry: float, pair: PairConfig) -> StopLevel:
        """Stop de base avant toute donnée de marché (reconstruction au démarrage)."""
        stop = min(max(pair.stop_loss_base, pair.max_stop_loss), MIN_STOP_PCT)
        return StopLevel(percentage=stop, price=entry * (1 + stop / 100))
