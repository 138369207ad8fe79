"""
Analyseurs purs : bougies, volume, figures et indicateurs.

Chaque fonction prend une série chronologique (le dernier élément est la
valeur courante) et renvoie un résultat figé. Données absentes ou trop
courtes -> résultat neutre, jamais d'exception.
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from libs.common.analysis_config import DEFAULT_THRESHOLDS, ThresholdSet
from libs.common.indicators import IndicatorKind
from libs.common.models import AdxPoint, Candle, IndicatorSnapshot, MacdSeries, StochPoint

MIN_VOLUME = 0.0001


# --- petites utils ---

def pct_change(current: float, previous: float) -> float:
    if previous == 0 or math.isnan(previous) or math.isnan(current):
        return 0.0
    return round((current - previous) / abs(previous) * 100.0, 4)


def slope(values: Sequence[float]) -> float:
    """Pente des moindres carrés, x = 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    sx = sum(range(n))
    sy = sum(values)
    sxy = sum(i * v for i, v in enumerate(values))
    sxx = sum(i * i for i in range(n))
    den = n * sxx - sx * sx
    if den == 0:
        return 0.0
    return round((n * sxy - sx * sy) / den, 4)


def is_increasing(values: Sequence[float], lookback: int = 4) -> bool:
    if len(values) < lookback:
        return False
    s = values[-lookback:]
    return all(s[i] > s[i - 1] for i in range(1, len(s)))


def is_decreasing(values: Sequence[float], lookback: int = 4) -> bool:
    if len(values) < lookback:
        return False
    s = values[-lookback:]
    return all(s[i] < s[i - 1] for i in range(1, len(s)))


def _mean(xs: Sequence[float]) -> float:
    return sum(xs) / len(xs) if xs else 0.0


# --- prix ---

def price_volatility_class(candles: Sequence[Candle]) -> str:
    """Range (max high - min low) rapporté au close moyen."""
    if not candles:
        return "DEFAULT"
    rng = max(c.high for c in candles) - min(c.low for c in candles)
    avg = _mean([c.close for c in candles])
    if avg <= 0:
        return "DEFAULT"
    v = rng / avg
    if v > 0.1:
        return "HIGH"
    if v < 0.03:
        return "LOW"
    return "DEFAULT"


def classify_trend(avg_change: float, acceleration: float, vol_class: str,
                   ts: ThresholdSet = DEFAULT_THRESHOLDS) -> str:
    if abs(avg_change) <= ts.significant_change:
        return "NEUTRAL"
    if avg_change > 0:
        return "STRONG_UP" if acceleration > ts.by_vol(ts.acceleration, vol_class) else "UP"
    return "STRONG_DOWN" if acceleration < ts.by_vol(ts.deceleration, vol_class) else "DOWN"


@dataclass(frozen=True)
class PriceTrend:
    price_changes: List[float] = field(default_factory=list)
    acceleration: float = 0.0
    avg_price_change: float = 0.0
    trend_strength: str = "NO_DATA"
    volatility_type: str = "DEFAULT"
    is_strong_acceleration: bool = False
    is_strong_deceleration: bool = False
    potential_reversal: bool = False


def analyze_price_trend(candles: Sequence[Candle], window: int,
                        ts: ThresholdSet = DEFAULT_THRESHOLDS) -> PriceTrend:
    pattern_size = ts.min_points_early
    if len(candles) < max(ts.min_points_default, min(window, pattern_size)):
        return PriceTrend()

    main = list(candles[-window:])
    pattern = list(candles[-pattern_size:])
    vol = price_volatility_class(main)
    accel_thr = ts.by_vol(ts.acceleration, vol)
    decel_thr = ts.by_vol(ts.deceleration, vol)

    changes: List[float] = []
    pattern_changes: List[float] = []
    for i in range(1, len(main)):
        if main[i - 1].close == 0:
            continue
        changes.append(pct_change(main[i].close, main[i - 1].close))
        if i < len(pattern) and pattern[i - 1].close != 0:
            pattern_changes.append(pct_change(pattern[i].close, pattern[i - 1].close))

    accel = [pattern_changes[i] - pattern_changes[i - 1] for i in range(1, len(pattern_changes))]
    avg_acc = _mean(accel)
    avg_chg = _mean(changes)

    trend = classify_trend(avg_chg, avg_acc, vol, ts)
    last3 = [c.close for c in candles[-3:]]
    reversal = (
        ("UP" in trend and last3[0] > last3[1] > last3[2])
        or ("DOWN" in trend and last3[0] < last3[1] < last3[2])
    ) and abs(avg_acc) > accel_thr * 0.7

    return PriceTrend(
        price_changes=changes,
        acceleration=round(avg_acc, 4),
        avg_price_change=round(avg_chg, 2),
        trend_strength=trend,
        volatility_type=vol,
        is_strong_acceleration=avg_acc > accel_thr,
        is_strong_deceleration=avg_acc < decel_thr,
        potential_reversal=reversal,
    )


@dataclass(frozen=True)
class EarlyTrend:
    early_momentum: bool = False
    early_weakness: bool = False
    good_pullback: bool = False
    accelerating: bool = False
    decelerating: bool = False
    roc_strength: float = 0.0

    @property
    def active(self) -> bool:
        return self.early_momentum or self.early_weakness or self.good_pullback


def _early_momentum(prices: List[float], volumes: List[float], ts: ThresholdSet, lookback: int = 5) -> bool:
    if len(prices) < lookback:
        return False
    ps, vs = prices[-lookback:], volumes[-lookback:]
    price, volume = prices[-1], volumes[-1]
    return (
        price > _mean(ps) * ts.early_price_above
        and volume > _mean(vs) * ts.early_volume_above
        and is_increasing(vs, ts.min_points_pattern)
        and price > max(ps[:-1])
    )


def _early_weakness(prices: List[float], volumes: List[float], ts: ThresholdSet, lookback: int = 5) -> bool:
    if len(prices) < lookback:
        return False
    ps, vs = prices[-lookback:], volumes[-lookback:]
    price, volume = prices[-1], volumes[-1]
    return (
        price < _mean(ps) * ts.early_price_below
        and volume < _mean(vs) * ts.early_volume_below
        and is_decreasing(ps, ts.min_points_pattern)
        and price < min(ps[:-1])
    )


def _good_pullback(candles: Sequence[Candle], ts: ThresholdSet) -> bool:
    if len(candles) < ts.min_points_early:
        return False
    p3, p2, p1, cur = candles[-4:]
    closes = [c.close for c in candles]
    uptrend = closes[-6] < closes[-5] < closes[-4] < closes[-3]
    pullback = (
        p3.close > p2.close > p1.close
        and cur.close > p1.close
        and cur.low < p1.close
        and (p1.close - cur.low) / p1.close < ts.pullback_max_dip
    )
    vol_shape = p3.volume > p2.volume > p1.volume and cur.volume > p1.volume
    return uptrend and pullback and vol_shape


def detect_early_trend(candles: Sequence[Candle], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Optional[EarlyTrend]:
    if len(candles) < ts.min_points_early:
        return None
    prices = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    # ROC des deux dernières bougies
    roc1 = (prices[-2] - prices[-3]) / prices[-3] if prices[-3] else 0.0
    roc2 = (prices[-1] - prices[-2]) / prices[-2] if prices[-2] else 0.0
    return EarlyTrend(
        early_momentum=_early_momentum(prices, volumes, ts),
        early_weakness=_early_weakness(prices, volumes, ts),
        good_pullback=_good_pullback(candles, ts),
        accelerating=roc2 > roc1 > 0,
        decelerating=roc2 < roc1 < 0,
        roc_strength=(roc1 + roc2) / 2.0,
    )


def peak_potential(candles: Sequence[Candle], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> float:
    if len(candles) < ts.min_points_trend:
        return 0.0
    avg_high = _mean([c.high for c in candles[-5:]])
    cur = candles[-1].close
    return (avg_high - cur) / cur if cur else 0.0


def bottom_potential(candles: Sequence[Candle], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> float:
    if len(candles) < ts.min_points_trend:
        return 0.0
    avg_low = _mean([c.low for c in candles[-5:]])
    return (candles[-1].close - avg_low) / avg_low if avg_low else 0.0


def suggested_buy_in(candles: Sequence[Candle], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Optional[float]:
    """Moyenne pondérée (1..5) de min(low, close) sur les 5 dernières bougies, +0.2%."""
    if len(candles) < ts.min_points_default:
        return None
    recent = candles[-5:]
    num = sum(min(c.low, c.close) * (i + 1) for i, c in enumerate(recent))
    den = sum(range(1, len(recent) + 1))
    return num / den * 1.002


# --- volume ---

@dataclass(frozen=True)
class VolumeAnalysis:
    changes: List[float] = field(default_factory=list)
    is_increasing: bool = False
    is_decreasing: bool = False
    avg_change: float = 0.0
    trend: str = "NO_DATA"
    volume_spike: bool = False
    volume_crash: bool = False
    volatility_type: str = "DEFAULT"
    current_volume: float = 0.0
    avg_volume: float = 0.0


def volume_volatility_class(candles: Sequence[Candle]) -> str:
    if len(candles) < 3:
        return "DEFAULT"
    recent = candles[-min(10, len(candles)):]
    moves = [
        abs(recent[i].close - recent[i - 1].close) / max(recent[i - 1].close, MIN_VOLUME)
        for i in range(1, len(recent))
    ]
    moves = [m for m in moves if m > 0]
    if not moves:
        return "DEFAULT"
    avg = _mean(moves)
    std = math.sqrt(_mean([(m - avg) ** 2 for m in moves]))
    if avg > 0.02 or std > 0.015:
        return "HIGH"
    if avg < 0.005 and std < 0.003:
        return "LOW"
    return "DEFAULT"


def analyze_volume(candles: Sequence[Candle], window: int,
                   ts: ThresholdSet = DEFAULT_THRESHOLDS) -> VolumeAnalysis:
    if not candles:
        return VolumeAnalysis()
    vol_class = volume_volatility_class(candles)
    spike_mult = ts.by_vol(ts.volume_spike, vol_class)
    crash_mult = ts.by_vol(ts.volume_crash, vol_class)

    sliced = candles[-min(window, ts.volume_avg_window):]
    volumes = [max(c.volume, MIN_VOLUME) for c in sliced]
    avg_volume = _mean(volumes)
    current = max(candles[-1].volume, MIN_VOLUME)

    changes = [pct_change(volumes[i], volumes[i - 1]) for i in range(1, len(volumes))]
    inc = is_increasing(volumes, ts.min_points_pattern)
    dec = is_decreasing(volumes, ts.min_points_pattern)
    avg_change = _mean(changes)

    if avg_change > ts.trend_volume_change:
        trend = "STRONG_INCREASING" if inc else "INCREASING"
    elif avg_change < -ts.trend_volume_change:
        trend = "STRONG_DECREASING" if dec else "DECREASING"
    else:
        trend = "STABLE"

    long_avg = _mean(volumes[-10:]) if len(volumes) > 10 else avg_volume
    return VolumeAnalysis(
        changes=changes,
        is_increasing=inc,
        is_decreasing=dec,
        avg_change=round(avg_change, 2),
        trend=trend,
        volume_spike=current > long_avg * spike_mult,
        volume_crash=current < avg_volume * crash_mult,
        volatility_type=vol_class,
        current_volume=current,
        avg_volume=avg_volume,
    )


# --- figures de chandeliers ---

def _body(c: Candle) -> float:
    return abs(c.close - c.open)


@dataclass(frozen=True)
class CandlePatterns:
    three_white_soldiers: bool = False
    three_black_crows: bool = False
    evening_star: bool = False
    morning_star: bool = False
    bullish_engulfing: bool = False
    bearish_engulfing: bool = False
    gap_up: bool = False
    gap_down: bool = False
    volume_divergence: bool = False
    support_break: bool = False
    resistance_break: bool = False


def detect_candlestick(candles: Sequence[Candle], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Dict[str, bool]:
    out = {"three_white_soldiers": False, "three_black_crows": False,
           "evening_star": False, "morning_star": False}
    if len(candles) < ts.min_points_pattern:
        return out
    p2, p1, cur = candles[-3:]
    avg_body = (_body(p2) + _body(p1) + _body(cur)) / 3.0
    small = _body(p1) < avg_body * ts.small_body_ratio
    out["three_white_soldiers"] = (
        p2.close > p2.open and p1.close > p1.open and cur.close > cur.open
        and _body(cur) > avg_body * ts.body_size_ratio
    )
    out["three_black_crows"] = (
        p2.close < p2.open and p1.close < p1.open and cur.close < cur.open
        and _body(cur) > avg_body * ts.body_size_ratio
    )
    out["evening_star"] = (
        p2.close > p2.open and small and cur.close < cur.open
        and cur.close < p2.close * (1 - ts.star_price_change)
    )
    out["morning_star"] = (
        p2.close < p2.open and small and cur.close > cur.open
        and cur.close > p2.close * (1 + ts.star_price_change)
    )
    return out


def detect_engulfing(last: Candle, prev: Candle, volume_increase: float,
                     ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Dict[str, bool]:
    big = _body(last) > _body(prev) * ts.body_size_ratio
    vol_ok = volume_increase > ts.engulfing_volume_increase
    return {
        "bullish": (last.close > last.open and prev.close < prev.open and big
                    and last.close > prev.open and last.open < prev.close and vol_ok),
        "bearish": (last.close < last.open and prev.close > prev.open and big
                    and last.close < prev.open and last.open > prev.close and vol_ok),
    }


def detect_gaps(last: Candle, prev: Candle, ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Dict[str, bool]:
    return {
        "gap_up": last.open > prev.close * (1 + ts.gap_percentage),
        "gap_down": last.open < prev.close * (1 - ts.gap_percentage),
    }


def detect_volume_divergence(prices: Sequence[float], volumes: Sequence[float],
                             ts: ThresholdSet = DEFAULT_THRESHOLDS, lookback: int = 5) -> bool:
    if len(prices) < lookback or len(volumes) < lookback:
        return False
    ps = slope(prices[-lookback:])
    vs = slope(volumes[-lookback:])
    return (ps > 0 and vs < -ts.volume_divergence) or (ps < 0 and vs > ts.volume_divergence)


def detect_support_break(candles: Sequence[Candle], support: Optional[float],
                         ts: ThresholdSet = DEFAULT_THRESHOLDS) -> bool:
    if not support or len(candles) < ts.min_points_pattern:
        return False
    p1, cur = candles[-2], candles[-1]
    return p1.low > support and cur.close < support


def detect_resistance_break(candles: Sequence[Candle], resistance: Optional[float],
                            ts: ThresholdSet = DEFAULT_THRESHOLDS) -> bool:
    if not resistance or len(candles) < ts.min_points_pattern:
        return False
    p1, cur = candles[-2], candles[-1]
    return p1.high < resistance and cur.close > resistance


# --- indicateurs ---

@dataclass(frozen=True)
class MacdAnalysis:
    is_above_zero: bool = False
    is_below_zero: bool = False
    line_above_signal: bool = False
    line_below_signal: bool = False
    zero_cross: str = "NONE"
    signal_cross: str = "NONE"
    strength: str = "NEUTRAL"
    divergence: str = "NONE"
    histogram_momentum: float = 0.0
    normalized_histogram: float = 0.0
    histogram_trend: str = "FLAT"
    histogram_strong_rise: bool = False
    histogram_strong_fall: bool = False

    @property
    def histogram_rising(self) -> bool:
        return self.histogram_trend == "RISING"

    @property
    def histogram_falling(self) -> bool:
        return self.histogram_trend == "FALLING"


def analyze_macd(macd: MacdSeries, price: float, tf: str,
                 ts: ThresholdSet = DEFAULT_THRESHOLDS) -> MacdAnalysis:
    if not macd.histogram or not macd.line or not macd.signal:
        return MacdAnalysis()
    hist, line, sig = macd.histogram, macd.line, macd.signal

    def dynamic(base: float) -> float:
        v = base * 0.1 if price < 1 else price * base
        return min(v, price * ts.macd_extreme)

    significant = dynamic(ts.by_tf(ts.macd_significant, tf))
    strong = dynamic(ts.by_tf(ts.macd_strong, tf))

    def normalize(v: float) -> float:
        return v / price * 100.0 if price > 0 else 0.0

    last_h, last_m, last_s = hist[-1], line[-1], sig[-1]
    prev_h = hist[-2] if len(hist) > 1 else last_h
    prev_m = line[-2] if len(line) > 1 else last_m
    prev_s = sig[-2] if len(sig) > 1 else last_s

    if prev_m <= 0 < last_m:
        zero = "BULLISH"
    elif prev_m >= 0 > last_m:
        zero = "BEARISH"
    else:
        zero = "NONE"
    if not (prev_m > prev_s) and last_m > last_s:
        cross = "BULLISH"
    elif not (prev_m < prev_s) and last_m < last_s:
        cross = "BEARISH"
    else:
        cross = "NONE"

    norm_h = normalize(last_h)
    if abs(norm_h) > normalize(strong):
        strength = "STRONG"
    elif abs(norm_h) > normalize(significant):
        strength = "MODERATE"
    else:
        strength = "NEUTRAL"

    # le prix est comparé à la ligne MACD précédente, pas au prix précédent
    price_trend = "UP" if price > prev_m else "DOWN"
    macd_trend = "UP" if last_m > prev_m else "DOWN"
    if price_trend == "DOWN" and macd_trend == "UP":
        div = "BULLISH_REGULAR"
    elif price_trend == "UP" and macd_trend == "DOWN":
        div = "BEARISH_REGULAR"
    elif price_trend == "UP" and macd_trend == "UP" and last_h < prev_h:
        div = "BEARISH_HIDDEN"
    elif price_trend == "DOWN" and macd_trend == "DOWN" and last_h > prev_h:
        div = "BULLISH_HIDDEN"
    else:
        div = "NONE"

    delta = last_h - prev_h
    h_trend = "RISING" if delta > 0 else "FALLING" if delta < 0 else "FLAT"
    return MacdAnalysis(
        is_above_zero=last_h > 0,
        is_below_zero=last_h < 0,
        line_above_signal=last_m > last_s,
        line_below_signal=last_m < last_s,
        zero_cross=zero,
        signal_cross=cross,
        strength=strength,
        divergence=div,
        histogram_momentum=delta,
        normalized_histogram=norm_h,
        histogram_trend=h_trend,
        histogram_strong_rise=h_trend == "RISING" and abs(delta) > significant * 0.7,
        histogram_strong_fall=h_trend == "FALLING" and abs(delta) > significant * 0.7,
    )


@dataclass(frozen=True)
class StochAnalysis:
    turning_up: bool = False
    turning_down: bool = False
    overbought: bool = False
    oversold: bool = False
    bullish_divergence: bool = False
    bearish_divergence: bool = False


def analyze_stoch_rsi(points: Sequence[StochPoint], tf: str,
                      ts: ThresholdSet = DEFAULT_THRESHOLDS) -> StochAnalysis:
    if not points:
        return StochAnalysis()
    k = points[-1].k
    prev_k = points[-2].k if len(points) > 1 else 0.0
    lo = ts.by_tf(ts.stoch_oversold, tf)
    hi = ts.by_tf(ts.stoch_overbought, tf)
    recent = points[-5:]
    return StochAnalysis(
        turning_up=k > prev_k,
        turning_down=k < prev_k,
        overbought=k > hi,
        oversold=k < lo,
        bullish_divergence=len(points) > 5 and k > prev_k and any(p.k < lo for p in recent),
        bearish_divergence=len(points) > 5 and k < prev_k and any(p.k > hi for p in recent),
    )


@dataclass(frozen=True)
class AoAnalysis:
    building: bool = False
    strong_building: bool = False
    falling: bool = False
    strong_falling: bool = False
    above_zero: bool = False
    below_zero: bool = False
    strength: str = "NEUTRAL"


def analyze_ao(ao: Sequence[float], tf: str, ts: ThresholdSet = DEFAULT_THRESHOLDS) -> AoAnalysis:
    if not ao:
        return AoAnalysis()
    n = len(ao)
    last = ao[-1]
    p1 = ao[-2] if n > 1 else last
    p2 = ao[-3] if n > 2 else p1
    p3 = ao[-4] if n > 3 else p2
    sig = ts.by_tf(ts.ao_significant, tf)
    strength = "STRONG" if abs(last) > sig * 1.5 else "MODERATE" if abs(last) > sig else "NEUTRAL"
    return AoAnalysis(
        building=n > 2 and last > p1 > p2,
        strong_building=n > 3 and last > p1 > p2 > p3,
        falling=n > 2 and last < p1 < p2,
        strong_falling=n > 3 and last < p1 < p2 < p3,
        above_zero=last > 0,
        below_zero=last < 0,
        strength=strength,
    )


@dataclass(frozen=True)
class RsiAnalysis:
    oversold: bool = False
    overbought: bool = False
    rising: bool = False
    strong_rising: bool = False
    falling: bool = False
    strong_falling: bool = False
    bullish_divergence: bool = False
    bearish_divergence: bool = False
    zone: str = "NEUTRAL"


def analyze_rsi(rsi: Sequence[float], tf: str, ts: ThresholdSet = DEFAULT_THRESHOLDS,
                oversold: Optional[float] = None, overbought: Optional[float] = None) -> RsiAnalysis:
    if not rsi:
        return RsiAnalysis()
    last = rsi[-1]
    p1 = rsi[-2] if len(rsi) > 1 else last
    p2 = rsi[-3] if len(rsi) > 2 else p1
    lo = oversold if oversold is not None else ts.by_tf(ts.rsi_oversold, tf)
    hi = overbought if overbought is not None else ts.by_tf(ts.rsi_overbought, tf)
    strong_lo = ts.by_tf(ts.rsi_strong_oversold, tf)
    strong_hi = ts.by_tf(ts.rsi_strong_overbought, tf)

    if last < strong_lo:
        zone = "STRONG_OVERSOLD"
    elif last < lo:
        zone = "OVERSOLD"
    elif last > strong_hi:
        zone = "STRONG_OVERBOUGHT"
    elif last > hi:
        zone = "OVERBOUGHT"
    else:
        zone = "NEUTRAL"

    rising, falling = last > p1, last < p1
    k = ts.rsi_strength
    recent = rsi[-5:]
    return RsiAnalysis(
        oversold=last < lo,
        overbought=last > hi,
        rising=rising,
        strong_rising=rising and (last - p1) > k and (p1 - p2) > k,
        falling=falling,
        strong_falling=falling and (p1 - last) > k and (p2 - p1) > k,
        bullish_divergence=len(rsi) > 5 and rising and any(v < lo for v in recent),
        bearish_divergence=len(rsi) > 5 and falling and any(v > hi for v in recent),
        zone=zone,
    )


@dataclass(frozen=True)
class AdxAnalysis:
    trend_strength: str = "NO_TREND"
    bullish_strength: bool = False
    bearish_strength: bool = False
    pdi_above_mdi: bool = False
    mdi_above_pdi: bool = False
    increasing: bool = False
    decreasing: bool = False


def analyze_adx(points: Sequence[AdxPoint], tf: str, ts: ThresholdSet = DEFAULT_THRESHOLDS) -> AdxAnalysis:
    if not points:
        return AdxAnalysis()
    last = points[-1]
    prev = points[-2] if len(points) > 1 else last
    if last.adx > ts.by_tf(ts.adx_very_strong, tf):
        strength = "VERY_STRONG"
    elif last.adx > ts.by_tf(ts.adx_strong, tf):
        strength = "STRONG"
    elif last.adx > ts.by_tf(ts.adx_moderate, tf):
        strength = "MODERATE"
    else:
        strength = "WEAK"
    d = ts.by_tf(ts.adx_directional, tf)
    return AdxAnalysis(
        trend_strength=strength,
        bullish_strength=last.pdi > d and last.pdi > last.mdi,
        bearish_strength=last.mdi > d and last.mdi > last.pdi,
        pdi_above_mdi=last.pdi > last.mdi,
        mdi_above_pdi=last.mdi > last.pdi,
        increasing=last.adx > prev.adx,
        decreasing=last.adx < prev.adx,
    )


@dataclass(frozen=True)
class AtrAnalysis:
    current: float = 0.0
    increasing: bool = False
    decreasing: bool = False
    volatility_level: str = "LOW"


def analyze_atr(atr: Sequence[float], ts: ThresholdSet = DEFAULT_THRESHOLDS) -> AtrAnalysis:
    if not atr:
        return AtrAnalysis()
    last = atr[-1]
    p1 = atr[-2] if len(atr) > 1 else last
    p2 = atr[-3] if len(atr) > 2 else p1
    if last > p1 * ts.atr_high:
        level = "HIGH"
    elif last > p1 * ts.atr_medium:
        level = "MEDIUM"
    else:
        level = "LOW"
    return AtrAnalysis(current=last, increasing=last > p1 > p2, decreasing=last < p1 < p2, volatility_level=level)


@dataclass(frozen=True)
class EmaAnalysis:
    price_above: bool = False
    price_below: bool = False
    slope: float = 0.0
    trend: str = "NEUTRAL"
    distance_pct: float = 0.0
    significant_above: bool = False
    significant_below: bool = False
    significance: str = "NONE"


def analyze_ema(ema: Sequence[float], price: float, tf: str,
                ts: ThresholdSet = DEFAULT_THRESHOLDS) -> EmaAnalysis:
    if not ema or price is None or price <= 0 or ema[-1] == 0:
        return EmaAnalysis()
    last = ema[-1]
    p1 = ema[-2] if len(ema) > 1 else last
    p2 = ema[-3] if len(ema) > 2 else p1
    dist = (price - last) / last * 100.0
    s, prev_s = last - p1, p1 - p2
    if s > 0:
        trend = "STRONG_UP" if prev_s > 0 else "UP"
    elif s < 0:
        trend = "STRONG_DOWN" if prev_s < 0 else "DOWN"
    else:
        trend = "NEUTRAL"
    thr = ts.by_tf(ts.ema_distance, tf)
    sig = ts.by_tf(ts.ema_significant_distance, tf)
    significance = "STRONG" if abs(dist) > sig * 1.5 else "MODERATE" if abs(dist) > sig else "NONE"
    return EmaAnalysis(
        price_above=price > last,
        price_below=price < last,
        slope=round(s, 6),
        trend=trend,
        distance_pct=round(dist, 2),
        significant_above=dist > thr,
        significant_below=dist < -thr,
        significance=significance,
    )


@dataclass(frozen=True)
class IndicatorReadings:
    macd: MacdAnalysis = field(default_factory=MacdAnalysis)
    stoch_rsi: StochAnalysis = field(default_factory=StochAnalysis)
    rsi: RsiAnalysis = field(default_factory=RsiAnalysis)
    ao: AoAnalysis = field(default_factory=AoAnalysis)
    adx: AdxAnalysis = field(default_factory=AdxAnalysis)
    atr: AtrAnalysis = field(default_factory=AtrAnalysis)
    ema: EmaAnalysis = field(default_factory=EmaAnalysis)


def analyze_indicators(snap: IndicatorSnapshot, price: float, tf: str,
                       ts: ThresholdSet = DEFAULT_THRESHOLDS,
                       rsi_bounds: Optional[tuple] = None) -> IndicatorReadings:
    """Un analyseur par IndicatorKind ; snapshot indisponible -> lectures neutres."""
    if not snap.available:
        return IndicatorReadings()
    lo, hi = rsi_bounds if rsi_bounds else (None, None)
    table: Dict[IndicatorKind, Callable[[], object]] = {
        IndicatorKind.MACD: lambda: analyze_macd(snap.macd, price, tf, ts),
        IndicatorKind.STOCH_RSI: lambda: analyze_stoch_rsi(snap.stoch_rsi, tf, ts),
        IndicatorKind.RSI: lambda: analyze_rsi(snap.rsi, tf, ts, lo, hi),
        IndicatorKind.AO: lambda: analyze_ao(snap.ao, tf, ts),
        IndicatorKind.ADX: lambda: analyze_adx(snap.adx, tf, ts),
        IndicatorKind.ATR: lambda: analyze_atr(snap.atr, ts),
        IndicatorKind.EMA: lambda: analyze_ema(snap.ema, price, tf, ts),
    }
    return IndicatorReadings(**{kind.value: table[kind]() for kind in IndicatorKind})
