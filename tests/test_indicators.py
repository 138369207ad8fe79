import random

from conftest import make_candles

from libs.common.indicators import (
    MIN_CANDLES,
    DefaultIndicatorProvider,
    IndicatorKind,
    ema,
    rsi,
    sma,
)
from libs.common.models import Candle


def _walk(n, seed=3):
    rng = random.Random(seed)
    price, out = 100.0, []
    for i in range(n):
        nxt = max(1.0, price * (1 + rng.uniform(-0.02, 0.02)))
        out.append(Candle(open_time=i, open=price, high=max(price, nxt) * 1.002,
                          low=min(price, nxt) * 0.998, close=nxt, volume=rng.uniform(10, 100)))
        price = nxt
    return out


class TestSeries:
    def test_sma(self):
        assert sma([1, 2, 3, 4], 2) == [None, 1.5, 2.5, 3.5]

    def test_sma_has_no_cumulative_drift(self):
        values = [0.1, 100.0, 33.3] * 400 + [0.0] * 3 + [100.0] * 3
        out = sma(values, 3)
        assert out[-4] == 0.0
        assert out[-1] == 100.0

    def test_ema_seeded_with_sma(self):
        out = ema([2.0, 4.0, 6.0, 8.0], 3)
        assert out[:2] == [None, None]
        assert out[2] == 4.0
        assert out[3] == 8.0 * 0.5 + 4.0 * 0.5

    def test_rsi_flat_and_monotonic(self):
        assert rsi([1.0] * 20)[-1] == 50.0
        assert rsi([float(i) for i in range(1, 21)])[-1] == 100.0
        assert rsi([1.0] * 10) == [None] * 10


class TestProvider:
    def test_unavailable_below_min_candles(self):
        snap = DefaultIndicatorProvider().compute(make_candles(MIN_CANDLES - 1))
        assert snap.available is False
        assert "need" in snap.reason
        assert snap.rsi == []

    def test_every_kind_computed(self):
        snap = DefaultIndicatorProvider().compute(_walk(120))
        assert snap.available
        for kind in IndicatorKind:
            value = getattr(snap, kind.value)
            assert value, kind
        assert len(snap.macd.line) == len(snap.macd.signal) == len(snap.macd.histogram)

    def test_oscillator_bounds(self):
        snap = DefaultIndicatorProvider().compute(_walk(150, seed=11))
        assert all(0.0 <= v <= 100.0 for v in snap.rsi)
        assert all(0.0 <= p.k <= 100.0 for p in snap.stoch_rsi)
        assert all(p.adx >= 0 and p.pdi >= 0 and p.mdi >= 0 for p in snap.adx)
        assert all(v > 0 for v in snap.atr)

    def test_last_values(self):
        snap = DefaultIndicatorProvider().compute(_walk(120))
        last = snap.last()
        assert last["rsi"] == snap.rsi[-1]
        assert last["stoch_k"] == snap.stoch_rsi[-1].k
        assert last["ema"] == snap.ema[-1]
