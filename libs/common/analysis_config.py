"""
Versioned analysis thresholds.

Every constant used by the candle/indicator analyzers and the scoring
tables lives here as data: alternative threshold sets are new values of
`ThresholdSet`, never copies of the analyzers. Tables keyed by timeframe
class fall back to DEFAULT; tables keyed by volatility class use
HIGH / LOW / DEFAULT.
"""
from __future__ import annotations
import math
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from libs.common.errors import InputValidationError

SHORT_TERM = ("1m", "5m", "15m", "30m")
MEDIUM_TERM = ("1h", "2h", "4h", "6h", "12h")
LONG_TERM = ("1d", "1w", "1M")

_UNIT_HOURS = {"m": 1 / 60, "h": 1.0, "d": 24.0, "w": 168.0, "M": 720.0}


def parse_timeframe_hours(tf: str) -> float:
    """'15m' -> 0.25, '4h' -> 4, '1d' -> 24, '1M' -> 720."""
    if not tf or len(tf) < 2 or tf[-1] not in _UNIT_HOURS:
        raise InputValidationError(f"bad timeframe: {tf!r}")
    try:
        n = int(tf[:-1])
    except ValueError:
        raise InputValidationError(f"bad timeframe: {tf!r}") from None
    if n <= 0:
        raise InputValidationError(f"bad timeframe: {tf!r}")
    return n * _UNIT_HOURS[tf[-1]]


def timeframe_class(tf: str) -> str:
    if tf in SHORT_TERM:
        return "SHORT_TERM"
    if tf in MEDIUM_TERM:
        return "MEDIUM_TERM"
    if tf in LONG_TERM:
        return "LONG_TERM"
    return "DEFAULT"


def timeframe_window(analysis_window: int, tf: str, min_points: int = 5) -> int:
    return max(min_points, math.ceil(analysis_window / parse_timeframe_hours(tf)))


class ScoreThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    buy: float
    strong_buy: float
    sell: float
    strong_sell: float


class BuySell(BaseModel):
    model_config = ConfigDict(frozen=True)

    buy: float
    sell: float


def _tf(default, short, medium, long) -> Dict[str, float]:
    return {"DEFAULT": default, "SHORT_TERM": short, "MEDIUM_TERM": medium, "LONG_TERM": long}


def _vol(default, high, low) -> Dict[str, float]:
    return {"DEFAULT": default, "HIGH": high, "LOW": low}


INDICATOR_WEIGHTS: Dict[str, float] = {
    # croisements MACD
    "macd_zero_bullish": 3.0,
    "macd_zero_bearish": 2.5,
    "macd_signal_bullish": 2.0,
    "macd_signal_bearish": 2.0,
    # histogramme
    "macd_hist_rising": 0.8,
    "macd_hist_falling": 0.8,
    "macd_hist_strong_rise": 1.2,
    "macd_hist_strong_fall": 1.2,
    "macd_extreme_bullish": 1.5,
    "macd_extreme_bearish": 1.5,
    "stoch_turning_up": 0.8,
    "stoch_turning_down": 0.8,
    "stoch_bullish_div": 2.0,
    "stoch_bearish_div": 1.8,
    "stoch_overbought": 2.0,
    "rsi_oversold": 1.2,
    "rsi_rising": 1.0,
    "rsi_strong_rising": 1.3,
    "rsi_overbought": 2.0,
    "rsi_falling": 1.0,
    "rsi_strong_falling": 1.3,
    "ao_building": 1.5,
    "ao_strong_building": 2.0,
    "ao_above_zero": 1.2,
    "ao_below_zero": 1.5,
    "ao_falling": 1.2,
    "ao_strong_falling": 1.5,
    "gap_up": 1.2,
    "gap_down": 1.5,
    "bullish_engulfing": 1.3,
    "bearish_engulfing": 1.5,
    "three_white_soldiers": 1.8,
    "three_black_crows": 1.8,
    "morning_star": 1.8,
    "evening_star": 1.5,
    "price_acceleration": 1.8,
    "price_deceleration": 1.8,
    "volume_pattern": 1.1,
    "volume_spike": 1.5,
    "volume_crash": 1.2,
    "volume_divergence": 1.8,
    "early_momentum": 2.5,
    "early_weakness": 2.0,
    "good_pullback": 2.0,
    "accelerating_roc": 1.8,
    "decelerating_roc": 1.5,
    "support_break": 1.5,
    "resistance_break": 2.0,
    "adx_very_strong": 2.5,
    "adx_strong": 2.0,
    "adx_moderate": 1.5,
    "adx_bullish": 1.5,
    "adx_bearish": 1.8,
    "adx_increasing": 1.1,
    "atr_increasing": 1.0,
    "atr_high_volatility": 1.2,
    "price_above_ema": 1.2,
    "price_below_ema": 1.0,
    "ema_strong_up": 1.8,
    "ema_up": 1.3,
    "ema_strong_down": 1.5,
    "ema_down": 1.1,
    "ema_distance": 1.0,
}


class ThresholdSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "trends-v1"

    # minimum de points
    min_points_default: int = 5
    min_points_early: int = 6
    min_points_trend: int = 8
    min_points_pattern: int = 4
    min_indicator_candles: int = 20

    # prix (% pour les variations)
    significant_change: float = 0.035
    strong_change: float = 0.12
    acceleration: Dict[str, float] = Field(default_factory=lambda: _vol(0.035, 0.06, 0.02))
    deceleration: Dict[str, float] = Field(default_factory=lambda: _vol(-0.05, -0.08, -0.025))
    moderate_acceleration: float = 0.025
    moderate_deceleration: float = -0.025
    gap_percentage: float = 0.015
    pullback_max_dip: float = 0.015

    # volume
    volume_spike: Dict[str, float] = Field(default_factory=lambda: _vol(2.0, 2.5, 1.8))
    volume_crash: Dict[str, float] = Field(default_factory=lambda: _vol(0.45, 0.25, 0.55))
    volume_divergence: float = 0.25
    engulfing_volume_increase: float = 20.0
    volume_avg_window: int = 24

    # indicateurs, par classe de timeframe
    macd_significant: Dict[str, float] = Field(default_factory=lambda: _tf(0.0008, 0.001, 0.0009, 0.0006))
    macd_strong: Dict[str, float] = Field(default_factory=lambda: _tf(0.0012, 0.0015, 0.0013, 0.001))
    macd_extreme: float = 0.001
    rsi_oversold: Dict[str, float] = Field(default_factory=lambda: _tf(32, 28, 32, 35))
    rsi_overbought: Dict[str, float] = Field(default_factory=lambda: _tf(68, 72, 68, 65))
    rsi_strong_oversold: Dict[str, float] = Field(default_factory=lambda: _tf(25, 20, 25, 28))
    rsi_strong_overbought: Dict[str, float] = Field(default_factory=lambda: _tf(75, 80, 75, 70))
    rsi_volatile_oversold: Dict[str, float] = Field(default_factory=lambda: _tf(22, 18, 22, 27))
    rsi_volatile_overbought: Dict[str, float] = Field(default_factory=lambda: _tf(82, 87, 82, 77))
    rsi_strength: float = 1.5
    stoch_oversold: Dict[str, float] = Field(default_factory=lambda: _tf(18, 13, 18, 23))
    stoch_overbought: Dict[str, float] = Field(default_factory=lambda: _tf(82, 87, 82, 77))
    ao_significant: Dict[str, float] = Field(default_factory=lambda: _tf(0.4, 0.5, 0.4, 0.3))
    adx_very_strong: Dict[str, float] = Field(default_factory=lambda: _tf(40, 35, 40, 45))
    adx_strong: Dict[str, float] = Field(default_factory=lambda: _tf(30, 25, 30, 35))
    adx_moderate: Dict[str, float] = Field(default_factory=lambda: _tf(20, 15, 20, 25))
    adx_directional: Dict[str, float] = Field(default_factory=lambda: _tf(20, 25, 20, 15))
    ema_significant_distance: Dict[str, float] = Field(default_factory=lambda: _tf(0.015, 0.025, 0.015, 0.01))
    ema_distance: Dict[str, float] = Field(default_factory=lambda: _tf(1.2, 1.7, 1.2, 0.8))
    atr_high: float = 1.3
    atr_medium: float = 1.1

    # chandeliers
    body_size_ratio: float = 0.20
    small_body_ratio: float = 0.10
    star_price_change: float = 0.015

    # détection précoce
    early_price_above: float = 1.005
    early_volume_above: float = 1.3
    early_price_below: float = 0.995
    early_volume_below: float = 0.5
    roc_strength: float = 0.02

    # tendance globale
    trend_price_change: float = 0.08
    trend_volume_change: float = 2.5

    # scoring
    weights: Dict[str, float] = Field(default_factory=lambda: dict(INDICATOR_WEIGHTS))
    base_thresholds: Dict[str, ScoreThresholds] = Field(default_factory=lambda: {
        "BULLISH": ScoreThresholds(buy=3.5, strong_buy=6.5, sell=4.0, strong_sell=7.5),
        "BEARISH": ScoreThresholds(buy=5.0, strong_buy=8.0, sell=3.5, strong_sell=7.0),
        "SIDEWAYS": ScoreThresholds(buy=3.5, strong_buy=6.5, sell=4.0, strong_sell=7.5),
    })
    early_thresholds: Dict[str, ScoreThresholds] = Field(default_factory=lambda: {
        "BULLISH": ScoreThresholds(buy=2.5, strong_buy=5.5, sell=3.5, strong_sell=6.5),
        "BEARISH": ScoreThresholds(buy=3.5, strong_buy=6.0, sell=4.5, strong_sell=7.0),
        "SIDEWAYS": ScoreThresholds(buy=3.0, strong_buy=5.5, sell=4.0, strong_sell=6.5),
    })
    trend_multipliers: Dict[str, BuySell] = Field(default_factory=lambda: {
        "BULLISH": BuySell(buy=1.1, sell=0.9),
        "BEARISH": BuySell(buy=0.9, sell=1.1),
        "SIDEWAYS": BuySell(buy=1.0, sell=1.0),
    })
    opposing_weak: float = 3.0
    opposing_strong: float = 4.0
    regular_diff: float = 1.5
    strong_diff_bullish: float = 2.2
    strong_diff_other: float = 2.7
    strong_sell_diff_bearish: float = 3.0
    strong_sell_diff_other: float = 2.5
    strong_dominance: float = 0.68
    weak_multiplier: float = 0.75
    weak_dominance: float = 0.55

    # consensus multi-timeframe
    volume_multiplier: float = 1.2
    signal_multipliers: Dict[str, float] = Field(default_factory=lambda: {"STRONG": 1.4, "EARLY": 1.2, "WEAK": 0.9})
    consensus: Dict[str, float] = Field(default_factory=lambda: {
        "STRONG_BUY": 6.0, "BUY": 3.5, "STRONG_SELL": 6.0, "SELL": 3.5,
    })
    early_min_agreement: int = 1
    early_score_threshold: float = 6.0
    min_agreement_ratio: float = 0.6
    timeframe_weights: Dict[str, float] = Field(default_factory=lambda: {
        "1m": 0.3, "5m": 0.5, "15m": 0.7, "1h": 1.0, "2h": 1.5, "4h": 2.5, "1d": 1.0, "1w": 0.5,
    })

    @field_validator("weights", mode="before")
    @classmethod
    def _merge_weights(cls, v):
        # une surcharge partielle garde les autres poids
        merged = dict(INDICATOR_WEIGHTS)
        merged.update(v or {})
        return merged

    def by_tf(self, table: Dict[str, float], tf: str) -> float:
        return table.get(timeframe_class(tf), table["DEFAULT"])

    def by_vol(self, table: Dict[str, float], vol_class: str) -> float:
        return table.get(vol_class, table["DEFAULT"])

    def w(self, name: str) -> float:
        return self.weights[name]


DEFAULT_THRESHOLDS = ThresholdSet()
