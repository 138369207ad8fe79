from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from libs.common.analysis_config import DEFAULT_THRESHOLDS, ThresholdSet, timeframe_window
from libs.common.analyzers import (
    CandlePatterns,
    EarlyTrend,
    IndicatorReadings,
    VolumeAnalysis,
    analyze_indicators,
    analyze_price_trend,
    analyze_volume,
    bottom_potential,
    detect_candlestick,
    detect_early_trend,
    detect_engulfing,
    detect_gaps,
    detect_resistance_break,
    detect_support_break,
    detect_volume_divergence,
    pct_change,
    peak_potential,
    suggested_buy_in,
)
from libs.common.errors import InputValidationError
from libs.common.indicators import IndicatorProvider
from libs.common.logs import get_logger
from libs.common.models import (
    Agreement,
    Candle,
    ConsensusResult,
    IndicatorSnapshot,
    Signal,
    SignalResult,
)

log = get_logger("signals")


# --- analyse des bougies ---

@dataclass(frozen=True)
class CandleAnalysis:
    price_trend: str = "SIDEWAYS"           # BULLISH | BEARISH | SIDEWAYS
    potential_move: str = "CONSOLIDATION"
    confidence: str = "LOW"
    volume_trend: str = "NO_DATA"
    early: Optional[EarlyTrend] = None
    acceleration: float = 0.0
    avg_price_change: float = 0.0
    avg_volume_change: float = 0.0
    overall_change: float = 0.0
    volume_pattern: str = "MIXED"
    volatility_type: str = "DEFAULT"
    peak_potential: float = 0.0
    bottom_potential: float = 0.0
    suggested_buy_in: Optional[float] = None

    @property
    def is_early(self) -> bool:
        return self.early is not None and self.early.active


def _check_candles(candles: Sequence[Candle], minimum: int) -> None:
    if len(candles) < minimum:
        raise InputValidationError(f"need at least {minimum} candles, got {len(candles)}")
    for c in candles:
        if c.close <= 0 or c.high < c.low or c.volume < 0:
            raise InputValidationError(f"malformed candle at {c.open_time}")


def analyze_candles(candles: Sequence[Candle], window: int,
                    ts: ThresholdSet = DEFAULT_THRESHOLDS) -> CandleAnalysis:
    """Tendance globale d'une fenêtre de bougies. Lève InputValidationError si trop courte."""
    if window <= 0:
        raise InputValidationError("window must be positive")
    _check_candles(candles, ts.min_points_default)

    price = analyze_price_trend(candles, window, ts)
    volume = analyze_volume(candles, window, ts)
    early = detect_early_trend(candles, ts)
    peak = peak_potential(candles, ts)
    bottom = bottom_potential(candles, ts)
    acc = price.acceleration
    avg = price.avg_price_change
    accel_thr = ts.by_vol(ts.acceleration, price.volatility_type)
    decel_thr = ts.by_vol(ts.deceleration, price.volatility_type)
    big = ts.trend_price_change

    if early and early.early_momentum and early.roc_strength > ts.roc_strength:
        trend, move = "BULLISH", "EARLY_MOMENTUM"
        conf = "HIGH" if peak > ts.strong_change else "MEDIUM"
    elif early and early.early_weakness and early.roc_strength < -ts.roc_strength:
        trend, move = "BEARISH", "EARLY_WEAKNESS"
        conf = "HIGH" if bottom > ts.strong_change else "MEDIUM"
    elif acc > accel_thr:
        trend, move = "BULLISH", "STRONG_ACCELERATION"
        conf = "HIGH" if peak > ts.significant_change else "MEDIUM"
    elif acc < decel_thr:
        trend, move = "BEARISH", "STRONG_DECELERATION"
        conf = "HIGH" if bottom > ts.significant_change else "MEDIUM"
    elif acc > ts.moderate_acceleration:
        trend, move, conf = "BULLISH", "ACCELERATION", "MEDIUM"
    elif acc < ts.moderate_deceleration:
        trend, move, conf = "BEARISH", "DECELERATION", "MEDIUM"
    elif avg > big and volume.trend == "STRONG_INCREASING":
        trend, move, conf = "BULLISH", "STRONG_VOLUME_SUPPORT", "HIGH"
    elif avg < -big and volume.trend == "STRONG_DECREASING":
        trend, move, conf = "BEARISH", "STRONG_REVERSAL", "HIGH"
    elif avg > big and volume.is_increasing:
        trend, move, conf = "BULLISH", "VOLUME_SUPPORTED", "MEDIUM"
    elif avg < -big and volume.is_decreasing:
        trend, move, conf = "BEARISH", "VOLUME_DECREASING", "MEDIUM"
    elif avg < -big:
        trend, move, conf = "BEARISH", "REVERSAL_POSSIBLE", "LOW"
    else:
        trend, move, conf = "SIDEWAYS", "CONSOLIDATION", "LOW"

    win = candles[-window:]
    return CandleAnalysis(
        price_trend=trend,
        potential_move=move,
        confidence=conf,
        volume_trend=volume.trend,
        early=early,
        acceleration=acc,
        avg_price_change=avg,
        avg_volume_change=volume.avg_change,
        overall_change=pct_change(win[-1].close, win[0].close) if len(win) > 1 else 0.0,
        volume_pattern="INCREASING" if volume.is_increasing else "DECREASING" if volume.is_decreasing else "MIXED",
        volatility_type=price.volatility_type,
        peak_potential=peak,
        bottom_potential=bottom,
        suggested_buy_in=suggested_buy_in(candles, ts),
    )


# --- scoring ---

@dataclass(frozen=True)
class ScoringInputs:
    candle: CandleAnalysis
    ind: IndicatorReadings
    patterns: CandlePatterns
    volume: VolumeAnalysis
    volume_increase: float = 0.0


def calculate_scores(x: ScoringInputs, ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Tuple[float, float]:
    """(buy_score, sell_score) arrondis à 0.1, multiplicateur de tendance appliqué."""
    w = ts.w
    buy = sell = 0.0
    early = x.candle.early
    vol_inc = x.volume_increase > ts.engulfing_volume_increase

    if early:
        if early.early_momentum:
            buy += w("early_momentum") * (1.5 if vol_inc else 1.0)
        if early.early_weakness:
            sell += w("early_weakness") * (1.5 if vol_inc else 1.0)
        if early.good_pullback:
            buy += w("good_pullback")
        if early.accelerating:
            buy += w("accelerating_roc")
            if early.roc_strength > ts.roc_strength:
                buy += w("accelerating_roc") * 0.5
        if early.decelerating:
            sell += w("decelerating_roc")
            if early.roc_strength < -ts.roc_strength:
                sell += w("decelerating_roc") * 0.5

    m = x.ind.macd
    if m.zero_cross == "BULLISH":
        buy += w("macd_zero_bullish")
        if m.histogram_rising:
            buy += w("macd_hist_rising") * 0.5
    elif m.zero_cross == "BEARISH":
        sell += w("macd_zero_bearish")
        if m.histogram_falling:
            sell += w("macd_hist_falling") * 0.5

    if m.zero_cross == "NONE":
        if m.signal_cross == "BULLISH":
            buy += w("macd_signal_bullish")
        elif m.signal_cross == "BEARISH":
            sell += w("macd_signal_bearish")
        elif m.histogram_rising:
            buy += w("macd_hist_strong_rise") if m.histogram_strong_rise else w("macd_hist_rising")
        elif m.histogram_falling:
            sell += w("macd_hist_strong_fall") if m.histogram_strong_fall else w("macd_hist_falling")

    if m.strength == "STRONG":
        if m.is_above_zero:
            buy += w("macd_extreme_bullish")
            if m.histogram_rising:
                buy += w("macd_hist_rising") * 0.3
        elif m.is_below_zero:
            sell += w("macd_extreme_bearish")
            if m.histogram_falling:
                sell += w("macd_hist_falling") * 0.3

    # croisement zéro confirmé par l'histogramme
    if m.zero_cross == "BULLISH" and m.histogram_rising:
        buy += w("macd_zero_bullish") * 0.3
    if m.zero_cross == "BEARISH" and m.histogram_falling:
        sell += w("macd_zero_bearish") * 0.3

    st = x.ind.stoch_rsi
    if st.turning_up:
        buy += w("stoch_turning_up")
    if st.bullish_divergence:
        buy += w("stoch_bullish_div")
    if st.turning_down:
        sell += w("stoch_turning_down")
    if st.bearish_divergence:
        sell += w("stoch_bearish_div")
    if st.overbought:
        sell += w("stoch_overbought")
    if st.oversold:
        buy += w("rsi_oversold")

    r = x.ind.rsi
    if r.oversold:
        buy += w("rsi_oversold")
    if r.rising:
        buy += w("rsi_rising")
    if r.strong_rising:
        buy += w("rsi_strong_rising")
    if r.overbought:
        sell += w("rsi_overbought")
    if r.falling:
        sell += w("rsi_falling")
    if r.strong_falling:
        sell += w("rsi_strong_falling")

    ao = x.ind.ao
    if ao.building:
        buy += w("ao_building")
    if ao.strong_building:
        buy += w("ao_strong_building")
    if ao.above_zero:
        buy += w("ao_above_zero")
    if ao.below_zero:
        sell += w("ao_below_zero")
    if ao.falling:
        sell += w("ao_falling")
    if ao.strong_falling:
        sell += w("ao_strong_falling")

    adx = x.ind.adx
    level = {"VERY_STRONG": "adx_very_strong", "STRONG": "adx_strong", "MODERATE": "adx_moderate"}.get(adx.trend_strength)
    if level:
        if adx.pdi_above_mdi:
            buy += w(level)
        if adx.mdi_above_pdi:
            sell += w(level)
    if adx.bullish_strength:
        buy += w("adx_bullish")
    if adx.bearish_strength:
        sell += w("adx_bearish")
    if adx.increasing and adx.pdi_above_mdi:
        buy += w("adx_increasing")
    if adx.increasing and adx.mdi_above_pdi:
        sell += w("adx_increasing")

    atr = x.ind.atr
    if atr.increasing:
        if x.candle.price_trend == "BULLISH":
            buy += w("atr_increasing")
        elif x.candle.price_trend == "BEARISH":
            sell += w("atr_increasing")
    if atr.volatility_level == "HIGH":
        buy += w("atr_high_volatility") * 0.5
        sell += w("atr_high_volatility") * 0.5

    e = x.ind.ema
    if e.price_above:
        buy += w("price_above_ema")
    if e.price_below:
        sell += w("price_below_ema")
    buy += {"STRONG_UP": w("ema_strong_up"), "UP": w("ema_up")}.get(e.trend, 0.0)
    sell += {"STRONG_DOWN": w("ema_strong_down"), "DOWN": w("ema_down")}.get(e.trend, 0.0)
    if e.significant_above:
        buy += w("ema_distance")
    if e.significant_below:
        sell += w("ema_distance")

    c = x.candle
    if c.potential_move == "STRONG_ACCELERATION":
        buy += w("price_acceleration") * 1.5
    elif c.potential_move == "ACCELERATION":
        buy += w("price_acceleration")
    if c.acceleration < ts.by_vol(ts.deceleration, c.volatility_type):
        sell += w("price_deceleration")

    if c.volume_pattern == "INCREASING":
        buy += w("volume_pattern")
    if x.volume.volume_spike:
        buy += w("volume_spike")
    if x.volume.volume_crash:
        sell += w("volume_crash")

    p = x.patterns
    if p.volume_divergence:
        sell += w("volume_divergence")
    if p.gap_up and vol_inc:
        buy += w("gap_up")
    if p.gap_down:
        sell += w("gap_down")
    if p.bullish_engulfing:
        buy += w("bullish_engulfing")
    if p.bearish_engulfing:
        sell += w("bearish_engulfing")
    if p.three_white_soldiers:
        buy += w("three_white_soldiers")
    if p.three_black_crows:
        sell += w("three_black_crows")
    if p.morning_star:
        buy += w("morning_star")
    if p.evening_star:
        sell += w("evening_star")
    if p.support_break:
        sell += w("support_break")
    if p.resistance_break:
        buy += w("resistance_break")

    mult = ts.trend_multipliers.get(c.price_trend)
    if mult:
        buy *= mult.buy
        sell *= mult.sell
    return round(buy, 1), round(sell, 1)


# --- décision ---

def generate_signal(buy: float, sell: float, price_trend: str, early: bool,
                    ts: ThresholdSet = DEFAULT_THRESHOLDS) -> Signal:
    table = ts.early_thresholds if early else ts.base_thresholds
    th = table.get(price_trend) or table["SIDEWAYS"]
    diff = abs(buy - sell)
    total = buy + sell
    buy_ratio = buy / total if total > 0 else 0.0
    sell_ratio = sell / total if total > 0 else 0.0

    if buy >= th.strong_buy and sell >= th.strong_sell:
        return Signal.CONFLICT
    if (buy >= th.strong_buy and sell < ts.opposing_strong
            and diff >= (ts.strong_diff_bullish if price_trend == "BULLISH" else ts.strong_diff_other)
            and buy_ratio >= ts.strong_dominance):
        return Signal.STRONG_BUY
    if (sell >= th.strong_sell and buy < ts.opposing_strong
            and diff >= (ts.strong_sell_diff_bearish if price_trend == "BEARISH" else ts.strong_sell_diff_other)
            and sell_ratio >= ts.strong_dominance):
        return Signal.STRONG_SELL
    if buy >= th.buy and sell < ts.opposing_weak and diff >= ts.regular_diff:
        return Signal.EARLY_BUY if early else Signal.BUY
    if sell >= th.sell and buy < ts.opposing_weak and diff >= ts.regular_diff:
        return Signal.EARLY_SELL if early else Signal.SELL
    if buy >= th.buy * ts.weak_multiplier and buy_ratio > ts.weak_dominance:
        return Signal.WEAK_BUY
    if sell >= th.sell * ts.weak_multiplier and sell_ratio > ts.weak_dominance:
        return Signal.WEAK_SELL
    return Signal.HOLD


def validate_signal(signal: Signal, ind: IndicatorReadings, volume: VolumeAnalysis, tf: str) -> List[str]:
    """Règles contredites par les indicateurs ; chaque entrée coûte un cran au signal."""
    errors: List[str] = []
    short_term = tf == "1h"
    allow_weaker = short_term or tf == "2h"
    m = ind.macd

    if signal.is_buy and m.divergence == "BEARISH_REGULAR":
        errors.append("bearish MACD divergence during buy signal")
    if signal.is_sell and m.divergence == "BULLISH_REGULAR":
        errors.append("bullish MACD divergence during sell signal")

    if signal.is_buy:
        if m.line_below_signal and not allow_weaker:
            errors.append("MACD below signal line")
        if m.is_below_zero and m.zero_cross != "BULLISH":
            errors.append("MACD below zero without bullish crossover")
        if m.histogram_falling and not allow_weaker:
            errors.append("falling MACD histogram")
        if ind.adx.mdi_above_pdi and ind.adx.trend_strength != "WEAK":
            errors.append("bearish ADX trend")
        if ind.ema.price_below and not short_term:
            errors.append("price below EMA")
        if not short_term and not volume.volume_spike:
            errors.append("no volume spike confirmation")

    if signal.is_sell:
        if m.line_above_signal and not allow_weaker:
            errors.append("MACD above signal line")
        if m.is_above_zero and m.zero_cross != "BEARISH":
            errors.append("MACD above zero without bearish crossover")
        if m.histogram_rising and not allow_weaker:
            errors.append("rising MACD histogram")

    if signal in (Signal.STRONG_BUY, Signal.STRONG_SELL):
        if m.strength != "STRONG":
            errors.append("no strong MACD momentum for a STRONG signal")
        if signal is Signal.STRONG_BUY and not m.histogram_rising:
            errors.append("no rising histogram for STRONG_BUY")
        if signal is Signal.STRONG_SELL and not m.histogram_falling:
            errors.append("no falling histogram for STRONG_SELL")
    return errors


_DOWNGRADE = {
    Signal.STRONG_BUY: Signal.BUY,
    Signal.BUY: Signal.WEAK_BUY,
    Signal.EARLY_BUY: Signal.WEAK_BUY,
    Signal.STRONG_SELL: Signal.SELL,
    Signal.SELL: Signal.WEAK_SELL,
    Signal.EARLY_SELL: Signal.WEAK_SELL,
}


def downgrade_signal(signal: Signal, steps: int = 1) -> Signal:
    for _ in range(max(0, steps)):
        signal = _DOWNGRADE.get(signal, signal)
    return signal


def should_buy_or_sell(indicators: IndicatorSnapshot, candles: Sequence[Candle], window: int, tf: str,
                       ts: ThresholdSet = DEFAULT_THRESHOLDS) -> SignalResult:
    """Signal d'un timeframe. Fenêtre trop courte -> SignalResult.insufficient, jamais d'exception."""
    try:
        candle = analyze_candles(candles, window, ts)
    except InputValidationError as e:
        return SignalResult.insufficient(tf, str(e))

    last, prev = candles[-1], candles[-2]
    price = last.close
    volume_increase = pct_change(last.volume, prev.volume)

    # seuils RSI élargis quand la dernière bougie est très volatile
    volatility = (last.high - last.low) / max(last.open, 0.0001)
    if volatility > ts.significant_change:
        bounds = (ts.by_tf(ts.rsi_volatile_oversold, tf), ts.by_tf(ts.rsi_volatile_overbought, tf))
    else:
        bounds = (ts.by_tf(ts.rsi_oversold, tf), ts.by_tf(ts.rsi_overbought, tf))
    ind = analyze_indicators(indicators, price, tf, ts, bounds)

    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    support = min(closes[-10:])
    resistance = max(closes[-10:])
    eng = detect_engulfing(last, prev, volume_increase, ts)
    patterns = CandlePatterns(
        **detect_candlestick(candles, ts),
        **detect_gaps(last, prev, ts),
        bullish_engulfing=eng["bullish"],
        bearish_engulfing=eng["bearish"],
        volume_divergence=detect_volume_divergence(closes, volumes, ts),
        support_break=detect_support_break(candles, support, ts),
        resistance_break=detect_resistance_break(candles, resistance, ts),
    )
    volume = analyze_volume(candles, window, ts)

    buy, sell = calculate_scores(ScoringInputs(candle, ind, patterns, volume, volume_increase), ts)
    raw = generate_signal(buy, sell, candle.price_trend, candle.is_early, ts)
    errors = validate_signal(raw, ind, volume, tf)
    final = downgrade_signal(raw, len(errors))
    if errors:
        log.debug("[sig] %s %s -> %s (%s)", tf, raw.value, final.value, "; ".join(errors))

    return SignalResult(
        timeframe=tf,
        signal=final,
        buy_score=buy,
        sell_score=sell,
        trend_class=candle.price_trend,
        confidence=candle.confidence,
        potential_move=candle.potential_move,
        patterns=asdict(patterns),
        volume_change=round(volume_increase, 2),
        suggested_buy_in=candle.suggested_buy_in,
        validation_errors=errors,
    )


# --- consensus multi-timeframe ---

def _signal_multiplier(signal: Signal, ts: ThresholdSet) -> float:
    name = signal.value
    if name.startswith("STRONG_"):
        return ts.signal_multipliers["STRONG"]
    if name.startswith("EARLY_"):
        return ts.signal_multipliers["EARLY"]
    if name.startswith("WEAK_") or signal is Signal.HOLD:
        return ts.signal_multipliers["WEAK"]
    return 1.0


def analyze_multiple_timeframes(
    candles_by_tf: Mapping[str, Sequence[Candle]],
    indicators_by_tf: Optional[Mapping[str, IndicatorSnapshot]] = None,
    provider: Optional[IndicatorProvider] = None,
    analysis_window: int = 24,
    ts: ThresholdSet = DEFAULT_THRESHOLDS,
    weights: Optional[Mapping[str, float]] = None,
) -> ConsensusResult:
    """
    Agrège les signaux de chaque timeframe en un signal de consensus.
    Un timeframe cassé donne un HOLD 'insufficient' et n'arrête pas les autres.
    """
    if not candles_by_tf:
        return ConsensusResult(insufficient_data=True)
    weights = weights if weights is not None else ts.timeframe_weights
    indicators_by_tf = indicators_by_tf or {}
    min_agreement = max(2, int(len(candles_by_tf) * ts.min_agreement_ratio))

    results: List[SignalResult] = []
    w_buy = w_sell = total = 0.0
    for tf, candles in candles_by_tf.items():
        candles = list(candles or [])
        try:
            window = timeframe_window(analysis_window, tf, ts.min_points_default)
            snap = indicators_by_tf.get(tf)
            if snap is None:
                snap = provider.compute(candles) if provider else IndicatorSnapshot.unavailable("no provider")
            res = should_buy_or_sell(snap, candles, window, tf, ts)
        except InputValidationError as e:
            log.warning("[sig] %s skipped: %s", tf, e)
            res = SignalResult.insufficient(tf, str(e))
        results.append(res)

        weight = weights.get(tf, 1.0)
        sig_mult = _signal_multiplier(res.signal, ts)
        vol_mult = ts.volume_multiplier if res.volume_change > ts.engulfing_volume_increase else 1.0
        w_buy += res.buy_score * weight * sig_mult * vol_mult
        w_sell += res.sell_score * weight * sig_mult
        total += weight

    nbuy = w_buy / total if total > 0 else 0.0
    nsell = w_sell / total if total > 0 else 0.0
    buys = sum(1 for r in results if r.signal.is_buy)
    sells = sum(1 for r in results if r.signal.is_sell)
    early_needed = max(ts.early_min_agreement, min_agreement - 1)
    th = ts.consensus

    if sum(1 for r in results if r.signal is Signal.EARLY_BUY) >= early_needed and nbuy > ts.early_score_threshold:
        consensus = Signal.EARLY_BUY
    elif sum(1 for r in results if r.signal is Signal.EARLY_SELL) >= early_needed and nsell > ts.early_score_threshold:
        consensus = Signal.EARLY_SELL
    elif nbuy > th["STRONG_BUY"] and buys >= min_agreement:
        consensus = Signal.STRONG_BUY
    elif nbuy > th["BUY"] and buys >= min_agreement:
        consensus = Signal.BUY
    elif nsell > th["STRONG_SELL"] and sells >= min_agreement:
        consensus = Signal.STRONG_SELL
    elif nsell > th["SELL"] and sells >= min_agreement:
        consensus = Signal.SELL
    else:
        consensus = Signal.HOLD

    return ConsensusResult(
        consensus_signal=consensus,
        normalized_buy_score=round(nbuy, 4),
        normalized_sell_score=round(nsell, 4),
        signals=results,
        agreement=Agreement(buy=buys, sell=sells, required=min_agreement),
        insufficient_data=all(r.insufficient_data for r in results),
    )
