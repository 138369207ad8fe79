# services/market_data/orderbook.py
from __future__ import annotations
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from libs.common.models import BookLevel, Candle, OrderBookSnapshot


@dataclass(frozen=True)
class BookConfig:
    depth_levels: int = 20
    volume_threshold: float = 0.2
    imbalance_threshold: float = 1.5
    cluster_threshold: float = 0.001
    spike_threshold: float = 2.5
    price_change_threshold: float = 0.0001
    wall_multiplier: float = 3.0


@dataclass(frozen=True)
class Cluster:
    price_start: float
    price_end: float
    total_volume: float
    levels: int


@dataclass(frozen=True)
class Wall:
    price: float
    volume: float
    side: str
    strength: float


@dataclass(frozen=True)
class VolumeChanges:
    bid_change: float = 0.0
    ask_change: float = 0.0
    net_change: float = 0.0
    bid_levels_changed: int = 0
    ask_levels_changed: int = 0


@dataclass(frozen=True)
class PriceChanges:
    bid_change: float = 0.0
    ask_change: float = 0.0
    spread_change: float = 0.0


@dataclass(frozen=True)
class BookMetrics:
    spread: float
    mid_price: float
    total_bid_volume: float
    total_ask_volume: float
    imbalance: float
    support: List[Cluster]
    resistance: List[Cluster]
    volume_changes: Optional[VolumeChanges] = None
    price_changes: Optional[PriceChanges] = None


@dataclass(frozen=True)
class BookSignals:
    strong_bid_imbalance: bool
    strong_ask_imbalance: bool
    support_detected: bool
    resistance_detected: bool
    bid_walls: List[Wall] = field(default_factory=list)
    ask_walls: List[Wall] = field(default_factory=list)
    volume_spike: bool = False
    price_pressure: str = "neutral"
    in_uptrend: bool = False
    in_downtrend: bool = False
    composite: str = "neutral"


@dataclass(frozen=True)
class BookAnalysis:
    metrics: BookMetrics
    signals: BookSignals

    @property
    def composite(self) -> str:
        return self.signals.composite


def total_volume(levels: Sequence[BookLevel]) -> float:
    return sum(q for _, q in levels)


def imbalance(bids: Sequence[BookLevel], asks: Sequence[BookLevel]) -> float:
    bid_vol, ask_vol = total_volume(bids), total_volume(asks)
    if ask_vol == 0:
        return math.inf
    if bid_vol == 0:
        return 0.0
    return bid_vol / ask_vol


def weighted_price(levels: Sequence[BookLevel]) -> float:
    if not levels:
        return 0.0
    vol = total_volume(levels)
    if vol == 0:
        return levels[0][0]
    return sum(p * q for p, q in levels) / vol


class OrderBookAnalyzer:
    """Imbalance, murs, clusters et deltas entre deux snapshots -> signal composite."""

    def __init__(self, config: Optional[BookConfig] = None):
        self.config = config or BookConfig()

    def clusters(self, levels: Sequence[BookLevel]) -> List[Cluster]:
        """Niveaux adjacents à moins de cluster_threshold (relatif) fusionnés en une zone."""
        if not levels:
            return []
        out: List[Cluster] = []
        start = end = levels[0][0]
        vol, n = levels[0][1], 1
        for price, qty in levels[1:]:
            if end > 0 and abs(price - end) / end <= self.config.cluster_threshold:
                end, vol, n = price, vol + qty, n + 1
                continue
            if vol >= self.config.volume_threshold:
                out.append(Cluster(start, end, vol, n))
            start = end = price
            vol, n = qty, 1
        if vol >= self.config.volume_threshold:
            out.append(Cluster(start, end, vol, n))
        return sorted(out, key=lambda c: c.total_volume, reverse=True)

    def walls(self, levels: Sequence[BookLevel], side: str) -> List[Wall]:
        if not levels:
            return []
        avg = total_volume(levels) / len(levels)
        if avg <= 0:
            return []
        threshold = avg * self.config.wall_multiplier
        return [Wall(p, q, side, q / avg) for p, q in levels if q >= threshold]

    def volume_changes(self, cur: OrderBookSnapshot, prev: OrderBookSnapshot) -> VolumeChanges:
        depth = self.config.depth_levels

        def compare(now: Sequence[BookLevel], before: Sequence[BookLevel]) -> List[float]:
            prev_map: Dict[str, float] = {f"{p:.8f}": q for p, q in before[:depth]}
            return [q - prev_map.get(f"{p:.8f}", 0.0) for p, q in now[:depth]]

        bid = compare(cur.bids, prev.bids)
        ask = compare(cur.asks, prev.asks)
        return VolumeChanges(
            bid_change=sum(bid),
            ask_change=sum(ask),
            net_change=sum(bid) + sum(ask),
            bid_levels_changed=sum(1 for d in bid if d != 0),
            ask_levels_changed=sum(1 for d in ask if d != 0),
        )

    def price_changes(self, cur: OrderBookSnapshot, prev: OrderBookSnapshot) -> PriceChanges:
        depth, eps = self.config.depth_levels, self.config.price_change_threshold
        cb, ca = weighted_price(cur.bids[:depth]), weighted_price(cur.asks[:depth])
        pb, pa = weighted_price(prev.bids[:depth]), weighted_price(prev.asks[:depth])
        return PriceChanges(
            bid_change=cb - pb if abs(cb - pb) > eps else 0.0,
            ask_change=ca - pa if abs(ca - pa) > eps else 0.0,
            spread_change=(ca - cb) - (pa - pb),
        )

    def analyze(self, book: OrderBookSnapshot, previous: Optional[OrderBookSnapshot] = None,
                candles: Sequence[Candle] = ()) -> BookAnalysis:
        depth = self.config.depth_levels
        bids, asks = book.bids[:depth], book.asks[:depth]
        metrics = BookMetrics(
            spread=asks[0][0] - bids[0][0] if bids and asks else 0.0,
            mid_price=(asks[0][0] + bids[0][0]) / 2 if bids and asks else 0.0,
            total_bid_volume=total_volume(bids),
            total_ask_volume=total_volume(asks),
            imbalance=imbalance(bids, asks),
            support=self.clusters(bids),
            resistance=self.clusters(asks),
            volume_changes=self.volume_changes(book, previous) if previous is not None else None,
            price_changes=self.price_changes(book, previous) if previous is not None else None,
        )
        return BookAnalysis(metrics, self.signals(metrics, bids, asks, candles))

    def signals(self, m: BookMetrics, bids: Sequence[BookLevel], asks: Sequence[BookLevel],
                candles: Sequence[Candle]) -> BookSignals:
        closes = [c.close for c in candles[-3:]]
        spike, pressure = False, "neutral"
        if m.volume_changes is not None:
            vc = m.volume_changes
            avg = (abs(vc.bid_change) + abs(vc.ask_change)) / 2
            total = m.total_bid_volume + m.total_ask_volume
            ratio = abs(vc.net_change) / (total if total > 0 else 1)
            spike = abs(vc.net_change) > avg * self.config.spike_threshold or ratio > 0.1
            if vc.net_change > avg * 2:
                pressure = "strong_up"
            elif vc.net_change > avg:
                pressure = "up"
            elif vc.net_change < -avg * 2:
                pressure = "strong_down"
            elif vc.net_change < -avg:
                pressure = "down"

        partial = BookSignals(
            strong_bid_imbalance=m.imbalance >= self.config.imbalance_threshold,
            strong_ask_imbalance=m.imbalance <= 1 / self.config.imbalance_threshold,
            support_detected=bool(m.support),
            resistance_detected=bool(m.resistance),
            bid_walls=self.walls(bids, "bid"),
            ask_walls=self.walls(asks, "ask"),
            volume_spike=spike,
            price_pressure=pressure,
            in_uptrend=len(closes) == 3 and closes[2] > closes[1] > closes[0],
            in_downtrend=len(closes) == 3 and closes[2] < closes[1] < closes[0],
        )
        return replace(partial, composite=composite_signal(partial, m))


def composite_signal(s: BookSignals, m: BookMetrics) -> str:
    if s.strong_bid_imbalance and s.support_detected:
        return "strong_buy"
    if s.strong_ask_imbalance and s.resistance_detected:
        return "strong_sell"

    if s.price_pressure == "strong_up" and s.support_detected:
        return "buy"
    if s.price_pressure == "strong_down" and s.resistance_detected:
        return "sell"

    if s.strong_bid_imbalance and m.imbalance > 2.0:
        return "weak_buy"
    if s.strong_ask_imbalance and m.imbalance < 0.5:
        return "weak_sell"

    if s.volume_spike:
        if s.price_pressure == "strong_up":
            return "buy"
        if s.price_pressure == "strong_down":
            return "sell"
        if s.price_pressure == "up":
            return "weak_buy"
        if s.price_pressure == "down":
            return "weak_sell"

    # murs
    nb, na = len(s.bid_walls), len(s.ask_walls)
    if nb > na * 2:
        return "weak_buy"
    if na > nb * 2:
        return "weak_sell"

    if m.imbalance > 1.3 and s.price_pressure == "up":
        return "weak_buy"
    if m.imbalance < 0.7 and s.price_pressure == "down":
        return "weak_sell"

    if s.in_uptrend and s.support_detected and s.price_pressure == "up":
        return "weak_buy"
    if s.in_downtrend and s.resistance_detected and s.price_pressure == "down":
        return "weak_sell"
    return "neutral"
