import math

import pytest

from conftest import make_book, make_candles

from libs.common.models import OrderBookSnapshot
from services.market_data.orderbook import (
    BookConfig,
    OrderBookAnalyzer,
    imbalance,
    total_volume,
    weighted_price,
)


def _book(bid_qty, ask_qty, ts=0):
    # bids serrés à 0.01 % d'écart sur les 5 premiers niveaux
    return OrderBookSnapshot(
        bids=[(100.0 - 0.01 * i, bid_qty) for i in range(5)],
        asks=[(100.01 + 0.01 * i, ask_qty) for i in range(5)],
        timestamp=ts,
    )


class TestHelpers:
    def test_volume_and_imbalance(self):
        bids, asks = [(1.0, 2.0), (0.9, 3.0)], [(1.1, 5.0)]
        assert total_volume(bids) == 5.0
        assert imbalance(bids, asks) == 1.0
        assert imbalance(bids, []) == math.inf
        assert imbalance([], asks) == 0.0

    def test_weighted_price(self):
        assert weighted_price([(10.0, 1.0), (20.0, 3.0)]) == 17.5
        assert weighted_price([]) == 0.0


class TestAnalyzer:
    def test_bid_heavy_book_is_strong_buy(self):
        an = OrderBookAnalyzer()
        prev, cur = _book(10.0, 1.0, ts=1), _book(10.0, 1.0, ts=2)
        out = an.analyze(cur, prev)
        assert out.metrics.imbalance == 10.0
        assert out.signals.strong_bid_imbalance
        assert out.metrics.support[0].levels == 5
        assert out.composite == "strong_buy"

    def test_ask_heavy_book_is_strong_sell(self):
        out = OrderBookAnalyzer().analyze(_book(1.0, 10.0), _book(1.0, 10.0))
        assert out.composite == "strong_sell"

    def test_balanced_book_is_neutral(self):
        out = OrderBookAnalyzer().analyze(make_book(), None, make_candles(3))
        assert out.metrics.volume_changes is None
        assert out.metrics.spread == pytest.approx(0.02)
        assert out.composite == "neutral"

    def test_clusters_split_on_gap(self):
        an = OrderBookAnalyzer(BookConfig(cluster_threshold=0.001, volume_threshold=0.2))
        levels = [(100.0, 1.0), (99.95, 1.0), (98.0, 0.1), (90.0, 5.0)]
        clusters = an.clusters(levels)
        assert [c.levels for c in clusters] == [1, 2]
        assert clusters[0].total_volume == 5.0
        assert clusters[1].price_start == 100.0 and clusters[1].price_end == 99.95

    def test_walls(self):
        levels = [(100.0 - i, 1.0) for i in range(9)] + [(90.0, 20.0)]
        walls = OrderBookAnalyzer().walls(levels, "bid")
        assert len(walls) == 1
        assert walls[0].price == 90.0 and walls[0].side == "bid"

    def test_volume_delta_between_snapshots(self):
        an = OrderBookAnalyzer()
        prev = _book(1.0, 1.0)
        cur = _book(3.0, 1.0)
        vc = an.volume_changes(cur, prev)
        assert vc.bid_change == 10.0
        assert vc.ask_change == 0.0
        assert vc.bid_levels_changed == 5
        assert an.analyze(cur, prev).signals.price_pressure == "up"
