from __future__ import annotations
from enum import Enum
from math import fabs
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from libs.common.models import AdxPoint, Candle, IndicatorSnapshot, MacdSeries, StochPoint

MIN_CANDLES = 20


class IndicatorKind(str, Enum):
    RSI = "rsi"
    MACD = "macd"
    STOCH_RSI = "stoch_rsi"
    ADX = "adx"
    AO = "ao"
    ATR = "atr"
    EMA = "ema"


class IndicatorProvider(Protocol):
    def compute(self, candles: Sequence[Candle]) -> IndicatorSnapshot: ...


# --- petites utils ---

def _defined(xs: List[Optional[float]]) -> List[float]:
    return [x for x in xs if x is not None]


def sma(values: List[float], period: int) -> List[Optional[float]]:
    out: List[Optional[float]] = [None] * len(values)
    if period < 1:
        return out
    # somme recalculée par fenêtre : pas de dérive flottante cumulée
    for i in range(period - 1, len(values)):
        out[i] = sum(values[i - period + 1:i + 1]) / period
    return out


def ema(values: List[float], period: int) -> List[Optional[float]]:
    if period <= 1 or len(values) == 0:
        return [None] * len(values)
    k = 2.0 / (period + 1.0)
    out: List[Optional[float]] = [None] * len(values)
    # seed: SMA
    if len(values) >= period:
        prev = sum(values[:period]) / period
        out[period - 1] = prev
        for i in range(period, len(values)):
            prev = values[i] * k + prev * (1.0 - k)
            out[i] = prev
    return out


def _wilder(values: List[float], period: int) -> List[Optional[float]]:
    out: List[Optional[float]] = [None] * len(values)
    if len(values) < period:
        return out
    prev = sum(values[:period]) / period
    out[period - 1] = prev
    for i in range(period, len(values)):
        prev = (prev * (period - 1) + values[i]) / period
        out[i] = prev
    return out


def true_range(high: List[float], low: List[float], close: List[float]) -> List[float]:
    trs: List[float] = []
    for i in range(len(close)):
        if i == 0:
            trs.append(high[i] - low[i])
        else:
            trs.append(max(high[i] - low[i], fabs(high[i] - close[i - 1]), fabs(low[i] - close[i - 1])))
    return trs


def atr(high: List[float], low: List[float], close: List[float], period: int = 14) -> List[Optional[float]]:
    return _wilder(true_range(high, low, close), period)


def rsi(close: List[float], period: int = 14) -> List[Optional[float]]:
    n = len(close)
    out: List[Optional[float]] = [None] * n
    if n <= period:
        return out
    gains = [max(close[i] - close[i - 1], 0.0) for i in range(1, n)]
    losses = [max(close[i - 1] - close[i], 0.0) for i in range(1, n)]
    avg_g = sum(gains[:period]) / period
    avg_l = sum(losses[:period]) / period

    def _val(g, l):
        if l == 0:
            return 100.0 if g > 0 else 50.0
        return 100.0 - 100.0 / (1.0 + g / l)

    out[period] = _val(avg_g, avg_l)
    for i in range(period + 1, n):
        avg_g = (avg_g * (period - 1) + gains[i - 1]) / period
        avg_l = (avg_l * (period - 1) + losses[i - 1]) / period
        out[i] = _val(avg_g, avg_l)
    return out


def stoch_rsi(close: List[float], rsi_period=14, stoch_period=14, k_period=3, d_period=3) -> List[StochPoint]:
    r = _defined(rsi(close, rsi_period))
    raw: List[float] = []
    for i in range(stoch_period - 1, len(r)):
        win = r[i - stoch_period + 1:i + 1]
        lo, hi = min(win), max(win)
        raw.append(0.0 if hi == lo else (r[i] - lo) / (hi - lo) * 100.0)
    k = _defined(sma(raw, k_period))
    d = sma(k, d_period)
    return [StochPoint(k=kv, d=dv) for kv, dv in zip(k, d) if dv is not None]


def macd(close: List[float], fast=12, slow=26, signal=9) -> MacdSeries:
    ef, es = ema(close, fast), ema(close, slow)
    line = [f - s for f, s in zip(ef, es) if f is not None and s is not None]
    sig = _defined(ema(line, signal))
    if not sig:
        return MacdSeries()
    line = line[-len(sig):]
    return MacdSeries(line=line, signal=sig, histogram=[m - s for m, s in zip(line, sig)])


def adx(high: List[float], low: List[float], close: List[float], period: int = 14) -> List[AdxPoint]:
    n = len(close)
    if n <= period * 2:
        return []
    pdm, mdm = [], []
    for i in range(1, n):
        up = high[i] - high[i - 1]
        down = low[i - 1] - low[i]
        pdm.append(up if up > down and up > 0 else 0.0)
        mdm.append(down if down > up and down > 0 else 0.0)
    tr = true_range(high, low, close)[1:]
    # lissage de Wilder en somme (pas en moyenne)
    s_tr, s_p, s_m = sum(tr[:period]), sum(pdm[:period]), sum(mdm[:period])
    dis = []
    for i in range(period, len(tr) + 1):
        if i > period:
            s_tr = s_tr - s_tr / period + tr[i - 1]
            s_p = s_p - s_p / period + pdm[i - 1]
            s_m = s_m - s_m / period + mdm[i - 1]
        pdi = 100.0 * s_p / s_tr if s_tr else 0.0
        mdi = 100.0 * s_m / s_tr if s_tr else 0.0
        dx = 100.0 * fabs(pdi - mdi) / (pdi + mdi) if (pdi + mdi) else 0.0
        dis.append((pdi, mdi, dx))
    adx_vals = _wilder([d[2] for d in dis], period)
    return [AdxPoint(adx=a, pdi=p, mdi=m) for a, (p, m, _) in zip(adx_vals, dis) if a is not None]


def awesome_oscillator(high: List[float], low: List[float], fast=5, slow=34) -> List[float]:
    median = [(h + l) / 2.0 for h, l in zip(high, low)]
    f, s = sma(median, fast), sma(median, slow)
    return [a - b for a, b in zip(f, s) if a is not None and b is not None]


class DefaultIndicatorProvider:
    """RSI14, StochRSI 14/14/3/3, MACD 12/26/9, ADX14, AO 5/34, ATR14, EMA8."""

    def __init__(self, min_candles: int = MIN_CANDLES, ema_period: int = 8):
        self.min_candles = min_candles
        self.ema_period = ema_period
        self._dispatch: Dict[IndicatorKind, Callable[[Dict[str, List[float]]], dict]] = {
            IndicatorKind.RSI: lambda s: {"rsi": _defined(rsi(s["close"]))},
            IndicatorKind.MACD: lambda s: {"macd": macd(s["close"])},
            IndicatorKind.STOCH_RSI: lambda s: {"stoch_rsi": stoch_rsi(s["close"])},
            IndicatorKind.ADX: lambda s: {"adx": adx(s["high"], s["low"], s["close"])},
            IndicatorKind.AO: lambda s: {"ao": awesome_oscillator(s["high"], s["low"])},
            IndicatorKind.ATR: lambda s: {"atr": _defined(atr(s["high"], s["low"], s["close"]))},
            IndicatorKind.EMA: lambda s: {"ema": _defined(ema(s["close"], self.ema_period))},
        }
        missing = set(IndicatorKind) - set(self._dispatch)
        if missing:
            raise RuntimeError(f"no implementation for {sorted(k.value for k in missing)}")

    def compute(self, candles: Sequence[Candle]) -> IndicatorSnapshot:
        if len(candles) < self.min_candles:
            return IndicatorSnapshot.unavailable(f"need {self.min_candles} candles, got {len(candles)}")
        series = {
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
        }
        fields: dict = {}
        for kind in IndicatorKind:
            fields.update(self._dispatch[kind](series))
        return IndicatorSnapshot(**fields)
