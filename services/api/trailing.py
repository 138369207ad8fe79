# services/api/trailing.py
from __future__ import annotations
from typing import Optional

from libs.common.config import PairConfig
from libs.common.logs import get_logger
from libs.common.models import Trade

log = get_logger("trail")


class TrailingManager:
    """
    Trailing stop par trade, en mémoire.
    - activation quand prix > entrée × (1 + activation%)
    - candidat = prix × (1 - distance%), on garde le max : le stop ne descend jamais
    """

    def candidate(self, price: float, pair: PairConfig) -> float:
        return price * (1 - pair.trailing_distance / 100)

    def activation_price(self, trade: Trade, pair: PairConfig) -> float:
        return trade.entry_price * (1 + pair.trailing_activation / 100)

    def update(self, trade: Trade, price: float, pair: PairConfig) -> Optional[float]:
        if price > trade.highest_price_seen:
            trade.highest_price_seen = price
        if not pair.trailing_enabled:
            return trade.trailing_stop_price

        if not trade.trailing_active:
            if price <= self.activation_price(trade, pair):
                return None
            trade.trailing_stop_price = self.candidate(price, pair)
            log.info("[trail] %s %s activated @ %.8f stop=%.8f",
                     trade.symbol, trade.token, price, trade.trailing_stop_price)
            return trade.trailing_stop_price

        cand = self.candidate(price, pair)
        if cand > trade.trailing_stop_price:
            log.debug("[trail] %s %s raise %.8f -> %.8f", trade.symbol, trade.token, trade.trailing_stop_price, cand)
            trade.trailing_stop_price = cand
        return trade.trailing_stop_price

    def hit(self, trade: Trade, price: float) -> bool:
        return trade.trailing_active and price <= trade.trailing_stop_price
