# libs/common/errors.py
from __future__ import annotations
from typing import Optional


class TradingError(Exception):
    """Base class for every error raised by the trading pipeline."""


class InputValidationError(TradingError):
    """Candle / indicator input too short or malformed."""


class PrecisionError(TradingError):
    """Price/qty does not survive tickSize/stepSize truncation or minNotional."""

    def __init__(self, symbol: str, reason: str, price: float | None = None, qty: float | None = None):
        self.symbol = symbol
        self.reason = reason
        self.price = price
        self.qty = qty
        super().__init__(f"{symbol}: {reason} (price={price}, qty={qty})")


class RateBudgetExceeded(TradingError):
    """Internal to the rate limited queue: no headroom yet, retry after `retry_after` seconds."""

    def __init__(self, window: str, retry_after: float):
        self.window = window
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(f"budget '{window}' exhausted, retry in {self.retry_after:.3f}s")


class ExchangeRejection(TradingError):
    """Venue answered 4xx: the order/cancel was not accepted."""

    def __init__(self, status: Optional[int], code: Optional[int], message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"HTTP {status} code={code}: {message}")


class TransientNetworkError(TradingError):
    """Timeout, connection reset or 5xx. The gateway never retries."""


class ReconciliationConflict(TradingError):
    """Local trade without a matching venue order."""

    def __init__(self, symbol: str, token: str, reason: str):
        self.symbol = symbol
        self.token = token
        super().__init__(f"{symbol} trade {token}: {reason}")


class InitializationError(TradingError):
    """Venue metadata or streams unavailable at startup (fatal)."""
