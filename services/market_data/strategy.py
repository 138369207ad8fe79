# services/market_data/strategy.py
from __future__ import annotations
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from libs.common.config import AppConfig
from libs.common.indicators import DefaultIndicatorProvider, IndicatorProvider
from libs.common.models import Candle, ConsensusResult
from libs.common.signals import analyze_multiple_timeframes


def parse_kline_message(msg: Mapping[str, Any]) -> Optional[Tuple[str, str, Candle, bool]]:
    """
    Flux combiné {stream, data:{e:'kline', s, k:{...}}} ou flux brut {e:'kline', ...}.
    -> (symbol, interval, candle, closed)
    """
    d = msg.get("data") or msg
    k = d.get("k")
    sym = d.get("s")
    if d.get("e") != "kline" or not k or not sym:
        return None
    return sym, k["i"], Candle.from_kline_event(k), bool(k.get("x", False))


class ConsensusStrategy:
    """Consensus multi-timeframes paramétré par le ThresholdSet de la config."""

    def __init__(self, config: AppConfig, provider: Optional[IndicatorProvider] = None):
        self.config = config
        self.timeframes = list(config.timeframes)
        self.provider = provider or DefaultIndicatorProvider()
        self.weights: Dict[str, float] = config.weights()

    def compute(self, candles_by_tf: Mapping[str, Sequence[Candle]]) -> ConsensusResult:
        candles = {tf: list(candles_by_tf.get(tf) or []) for tf in self.timeframes}
        return analyze_multiple_timeframes(
            candles,
            provider=self.provider,
            analysis_window=self.config.engine.analysis_window,
            ts=self.config.analysis,
            weights=self.weights,
        )
