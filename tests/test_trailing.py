import random

import pytest

from libs.common.config import PairConfig
from libs.common.models import Trade
from services.api.trailing import TrailingManager


def _trade(entry=100.0):
    return Trade(symbol="BTCUSDT", token="t", buy_order_id=1, entry_price=entry, quantity=1.0,
                 executed_qty=1.0, highest_price_seen=entry, stop_loss_price=entry * 0.98,
                 take_profit_price=entry * 1.01)


class TestTrailingManager:
    def test_not_active_below_activation(self):
        tm, pair, trade = TrailingManager(), PairConfig(symbol="BTCUSDT"), _trade()
        assert tm.activation_price(trade, pair) == pytest.approx(100.2)
        assert tm.update(trade, 100.1, pair) is None
        assert tm.update(trade, tm.activation_price(trade, pair), pair) is None
        assert not trade.trailing_active
        assert not tm.hit(trade, 50.0)

    def test_activates_and_ratchets(self):
        tm, pair, trade = TrailingManager(), PairConfig(symbol="BTCUSDT"), _trade()
        assert tm.update(trade, 100.5, pair) == pytest.approx(100.299)
        assert tm.update(trade, 100.3, pair) == pytest.approx(100.299)
        assert tm.update(trade, 101.0, pair) == pytest.approx(100.798)
        assert trade.highest_price_seen == 101.0
        assert tm.hit(trade, 100.7)
        assert not tm.hit(trade, 100.9)

    def test_never_decreases(self):
        rng = random.Random(42)
        tm, pair, trade = TrailingManager(), PairConfig(symbol="BTCUSDT"), _trade()
        price, last = 100.0, None
        for _ in range(500):
            price *= 1 + rng.uniform(-0.01, 0.011)
            stop = tm.update(trade, price, pair)
            if last is not None:
                assert stop is not None and stop >= last
            last = stop if stop is not None else last

    def test_disabled(self):
        tm, trade = TrailingManager(), _trade()
        pair = PairConfig(symbol="BTCUSDT", trailing_enabled=False)
        assert tm.update(trade, 150.0, pair) is None
        assert trade.highest_price_seen == 150.0
