"""
Order-book depth analysis for the signal engine.

Liquidity at the top of the book tells us where resting interest sits and
which side is being replenished faster.  This module turns a pair of depth
snapshots (current and previous) into metrics (spread, imbalance, support
and resistance clusters, walls, volume and price changes) and into a single
composite depth signal consumed by the fusion stage.

Snapshots are :class:`market_state.OrderBookSnapshot` instances: bids sorted
descending, asks ascending, ``(price, quantity)`` pairs.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import DepthSettings
from log_utils import setup_logger
from market_state import Candle, OrderBookSnapshot, PriceLevel
from rule_cascade import Rule, evaluate

logger = setup_logger(__name__)


class PricePressure(str, Enum):
    STRONG_UP = "strong_up"
    UP = "up"
    NEUTRAL = "neutral"
    DOWN = "down"
    STRONG_DOWN = "strong_down"


class DepthSignal(str, Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    WEAK_BUY = "weak_buy"
    NEUTRAL = "neutral"
    WEAK_SELL = "weak_sell"
    SELL = "sell"
    STRONG_SELL = "strong_sell"

    @property
    def is_bullish(self) -> bool:
        return self in (DepthSignal.STRONG_BUY, DepthSignal.BUY, DepthSignal.WEAK_BUY)

    @property
    def is_bearish(self) -> bool:
        return self in (DepthSignal.STRONG_SELL, DepthSignal.SELL, DepthSignal.WEAK_SELL)


@dataclass(frozen=True)
class VolumeCluster:
    """Run of adjacent levels treated as one liquidity zone."""

    price_start: float
    price_end: float
    total_volume: float
    levels: Tuple[PriceLevel, ...]


@dataclass(frozen=True)
class Wall:
    price: float
    volume: float
    side: str
    strength: float


@dataclass(frozen=True)
class VolumeChanges:
    bid_volume_change: float
    ask_volume_change: float
    net_volume_change: float
    bid_levels_changed: int
    ask_levels_changed: int


@dataclass(frozen=True)
class PriceChanges:
    bid_price_change: float
    ask_price_change: float
    spread_change: float


@dataclass(frozen=True)
class DepthMetrics:
    spread: Optional[float]
    mid_price: Optional[float]
    total_bid_volume: float
    total_ask_volume: float
    imbalance: float
    support_levels: Tuple[VolumeCluster, ...] = ()
    resistance_levels: Tuple[VolumeCluster, ...] = ()
    price_changes: Optional[PriceChanges] = None
    volume_changes: Optional[VolumeChanges] = None


@dataclass(frozen=True)
class DepthSignals:
    strong_bid_imbalance: bool = False
    strong_ask_imbalance: bool = False
    support_detected: bool = False
    resistance_detected: bool = False
    bid_walls: Tuple[Wall, ...] = ()
    ask_walls: Tuple[Wall, ...] = ()
    price_pressure: PricePressure = PricePressure.NEUTRAL
    volume_spike: bool = False
    in_uptrend: bool = False
    in_downtrend: bool = False
    composite: DepthSignal = DepthSignal.NEUTRAL
    composite_rule: Optional[str] = None


@dataclass(frozen=True)
class OrderBookAnalysis:
    metrics: DepthMetrics
    signals: DepthSignals

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Metric primitives
# ---------------------------------------------------------------------------


def total_volume(levels: Sequence[PriceLevel]) -> float:
    return float(sum(qty for _, qty in levels))


def compute_spread(bids: Sequence[PriceLevel], asks: Sequence[PriceLevel]) -> Optional[float]:
    """Best ask minus best bid, or ``None`` when either side is empty."""

    if not bids or not asks:
        return None
    return float(asks[0][0] - bids[0][0])


def compute_mid_price(bids: Sequence[PriceLevel], asks: Sequence[PriceLevel]) -> Optional[float]:
    if not bids or not asks:
        return None
    return float((bids[0][0] + asks[0][0]) / 2)


def compute_imbalance(bids: Sequence[PriceLevel], asks: Sequence[PriceLevel]) -> float:
    """
    Bid volume divided by ask volume over the given levels.

    Returns ``math.inf`` when only bids carry volume and ``0.0`` when
    neither side does.
    """
    bid_vol = total_volume(bids)
    ask_vol = total_volume(asks)
    if ask_vol > 0:
        return bid_vol / ask_vol
    if bid_vol > 0:
        return math.inf
    return 0.0


def find_volume_clusters(
    levels: Sequence[PriceLevel],
    cluster_threshold: float,
    volume_threshold: float,
) -> List[VolumeCluster]:
    """
    Merge adjacent levels into clusters and rank them by volume.

    Parameters
    ----------
    levels : sequence of (price, quantity)
        One side of the book in best-to-worst order.
    cluster_threshold : float
        Maximum relative gap between a level and the previous level of the
        running cluster for the two to merge.
    volume_threshold : float
        Minimum aggregate quantity for a cluster to be kept.

    Returns
    -------
    list of VolumeCluster
        Retained clusters, largest aggregate volume first.
    """
    clusters: List[VolumeCluster] = []
    if not levels:
        return clusters

    start, end = levels[0][0], levels[0][0]
    volume = levels[0][1]
    members: List[PriceLevel] = [levels[0]]

    def _flush() -> None:
        if volume >= volume_threshold:
            clusters.append(VolumeCluster(start, end, volume, tuple(members)))

    for price, qty in levels[1:]:
        if end > 0 and abs(price - end) / end <= cluster_threshold:
            end = price
            volume += qty
            members.append((price, qty))
            continue
        _flush()
        start, end, volume, members = price, price, qty, [(price, qty)]
    _flush()

    clusters.sort(key=lambda c: c.total_volume, reverse=True)
    return clusters


def detect_walls(levels: Sequence[PriceLevel], side: str, multiplier: float) -> List[Wall]:
    """Levels whose quantity is at least ``multiplier`` times the side average."""

    if not levels:
        return []
    average = total_volume(levels) / len(levels)
    if average <= 0:
        return []
    threshold = average * multiplier
    return [
        Wall(price=price, volume=qty, side=side, strength=qty / average)
        for price, qty in levels
        if qty >= threshold
    ]


def prices_match(p1: float, p2: float, tolerance: float) -> bool:
    """Relative price equality used when pairing levels across snapshots."""

    if p1 == p2:
        return True
    base = min(p1, p2)
    if base <= 0:
        return False
    return abs(p1 - p2) / base < tolerance


def _side_volume_change(
    current: Sequence[PriceLevel],
    previous: Sequence[PriceLevel],
    tolerance: float,
) -> Tuple[float, int]:
    change = 0.0
    changed = 0
    for price, qty in current:
        prev_qty = next((pq for pp, pq in previous if prices_match(price, pp, tolerance)), 0.0)
        delta = qty - prev_qty
        change += delta
        if delta != 0:
            changed += 1
    return change, changed


def compute_volume_changes(
    current: OrderBookSnapshot,
    previous: OrderBookSnapshot,
    depth: int,
    tolerance: float,
) -> VolumeChanges:
    """
    Per-side volume deltas over the current top ``depth`` levels.

    A current level with no matching previous level counts its full quantity
    as added volume.
    """
    bid_change, bid_levels = _side_volume_change(current.bids[:depth], previous.bids, tolerance)
    ask_change, ask_levels = _side_volume_change(current.asks[:depth], previous.asks, tolerance)
    return VolumeChanges(
        bid_volume_change=bid_change,
        ask_volume_change=ask_change,
        net_volume_change=bid_change - ask_change,
        bid_levels_changed=bid_levels,
        ask_levels_changed=ask_levels,
    )


def _weighted_price(levels: Sequence[PriceLevel], depth: int) -> float:
    top = levels[:depth]
    if not top:
        return 0.0
    volume = total_volume(top)
    if volume <= 0:
        return float(top[0][0])
    return sum(price * qty for price, qty in top) / volume


def compute_price_changes(
    current: OrderBookSnapshot,
    previous: OrderBookSnapshot,
    depth: int,
    threshold: float,
) -> PriceChanges:
    """Shift of the volume-weighted bid and ask prices; moves under ``threshold`` read as zero."""

    cur_bid = _weighted_price(current.bids, depth)
    cur_ask = _weighted_price(current.asks, depth)
    prev_bid = _weighted_price(previous.bids, depth)
    prev_ask = _weighted_price(previous.asks, depth)

    def _significant(now: float, before: float) -> float:
        delta = now - before
        return delta if abs(delta) > threshold else 0.0

    return PriceChanges(
        bid_price_change=_significant(cur_bid, prev_bid),
        ask_price_change=_significant(cur_ask, prev_ask),
        spread_change=(cur_ask - cur_bid) - (prev_ask - prev_bid),
    )


def classify_pressure(changes: Optional[VolumeChanges]) -> PricePressure:
    """
    Direction of the net volume change relative to the mean side change.

    ``abs(net)`` can never exceed twice the mean, so the strong classes mean
    both sides moved in the same direction (bids added while asks were
    pulled, or the reverse).
    """
    if changes is None:
        return PricePressure.NEUTRAL
    avg_change = (abs(changes.bid_volume_change) + abs(changes.ask_volume_change)) / 2
    if avg_change <= 0:
        return PricePressure.NEUTRAL
    net = changes.net_volume_change
    if net >= avg_change * 2:
        return PricePressure.STRONG_UP
    if net > avg_change:
        return PricePressure.UP
    if net <= -avg_change * 2:
        return PricePressure.STRONG_DOWN
    if net < -avg_change:
        return PricePressure.DOWN
    return PricePressure.NEUTRAL


def is_volume_spike(
    changes: Optional[VolumeChanges],
    total_book_volume: float,
    spike_threshold: float,
) -> bool:
    if changes is None:
        return False
    avg_change = (abs(changes.bid_volume_change) + abs(changes.ask_volume_change)) / 2
    net = abs(changes.net_volume_change)
    ratio = net / (total_book_volume if total_book_volume > 0 else 1.0)
    return net > avg_change * spike_threshold or ratio > 0.1


def short_trend(candles: Sequence[Candle]) -> Tuple[bool, bool]:
    """``(in_uptrend, in_downtrend)`` from the last three closes."""

    if len(candles) < 3:
        return False, False
    a, b, c = (candle.close for candle in candles[-3:])
    return c > b > a, c < b < a


# ---------------------------------------------------------------------------
# Composite signal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _CompositeContext:
    imbalance: float
    signals: DepthSignals

    @property
    def pressure(self) -> PricePressure:
        return self.signals.price_pressure


def _walls(ctx: _CompositeContext) -> Tuple[int, int]:
    return len(ctx.signals.bid_walls), len(ctx.signals.ask_walls)


COMPOSITE_RULES: Tuple[Rule, ...] = (
    Rule(
        "bid_imbalance_with_support",
        lambda c: c.signals.strong_bid_imbalance and c.signals.support_detected,
        DepthSignal.STRONG_BUY,
    ),
    Rule(
        "ask_imbalance_with_resistance",
        lambda c: c.signals.strong_ask_imbalance and c.signals.resistance_detected,
        DepthSignal.STRONG_SELL,
    ),
    Rule(
        "strong_up_pressure_with_support",
        lambda c: c.pressure is PricePressure.STRONG_UP and c.signals.support_detected,
        DepthSignal.BUY,
    ),
    Rule(
        "strong_down_pressure_with_resistance",
        lambda c: c.pressure is PricePressure.STRONG_DOWN and c.signals.resistance_detected,
        DepthSignal.SELL,
    ),
    Rule(
        "extreme_bid_imbalance",
        lambda c: c.signals.strong_bid_imbalance and c.imbalance > 2.0,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "extreme_ask_imbalance",
        lambda c: c.signals.strong_ask_imbalance and c.imbalance < 0.5,
        DepthSignal.WEAK_SELL,
    ),
    Rule(
        "volume_spike_strong_up",
        lambda c: c.signals.volume_spike and c.pressure is PricePressure.STRONG_UP,
        DepthSignal.BUY,
    ),
    Rule(
        "volume_spike_strong_down",
        lambda c: c.signals.volume_spike and c.pressure is PricePressure.STRONG_DOWN,
        DepthSignal.SELL,
    ),
    Rule(
        "volume_spike_up",
        lambda c: c.signals.volume_spike and c.pressure is PricePressure.UP,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "volume_spike_down",
        lambda c: c.signals.volume_spike and c.pressure is PricePressure.DOWN,
        DepthSignal.WEAK_SELL,
    ),
    Rule(
        "bid_wall_dominance",
        lambda c: _walls(c)[0] > _walls(c)[1] * 2,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "ask_wall_dominance",
        lambda c: _walls(c)[1] > _walls(c)[0] * 2,
        DepthSignal.WEAK_SELL,
    ),
    Rule(
        "bid_walls_only",
        lambda c: _walls(c)[0] > 0 and _walls(c)[1] == 0,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "ask_walls_only",
        lambda c: _walls(c)[1] > 0 and _walls(c)[0] == 0,
        DepthSignal.WEAK_SELL,
    ),
    Rule(
        "moderate_bid_imbalance_up",
        lambda c: c.imbalance > 1.3 and c.pressure is PricePressure.UP,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "moderate_ask_imbalance_down",
        lambda c: c.imbalance < 0.7 and c.pressure is PricePressure.DOWN,
        DepthSignal.WEAK_SELL,
    ),
    Rule(
        "uptrend_support_up",
        lambda c: c.signals.in_uptrend and c.signals.support_detected and c.pressure is PricePressure.UP,
        DepthSignal.WEAK_BUY,
    ),
    Rule(
        "downtrend_resistance_down",
        lambda c: c.signals.in_downtrend
        and c.signals.resistance_detected
        and c.pressure is PricePressure.DOWN,
        DepthSignal.WEAK_SELL,
    ),
)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


@dataclass
class OrderBookAnalyzer:
    """Compute :class:`OrderBookAnalysis` from depth snapshots."""

    settings: DepthSettings = field(default_factory=DepthSettings)

    def analyze(
        self,
        book: OrderBookSnapshot,
        previous: Optional[OrderBookSnapshot] = None,
        candles: Sequence[Candle] = (),
    ) -> OrderBookAnalysis:
        s = self.settings
        bids = book.bids[: s.depth_levels]
        asks = book.asks[: s.depth_levels]

        bid_volume = total_volume(bids)
        ask_volume = total_volume(asks)
        imbalance = compute_imbalance(bids, asks)
        support = find_volume_clusters(bids, s.cluster_threshold, s.volume_threshold)
        resistance = find_volume_clusters(asks, s.cluster_threshold, s.volume_threshold)

        price_changes = volume_changes = None
        if previous is not None:
            price_changes = compute_price_changes(book, previous, s.depth_levels, s.price_change_threshold)
            volume_changes = compute_volume_changes(
                book, previous, s.depth_levels, s.price_match_tolerance
            )

        metrics = DepthMetrics(
            spread=compute_spread(bids, asks),
            mid_price=compute_mid_price(bids, asks),
            total_bid_volume=bid_volume,
            total_ask_volume=ask_volume,
            imbalance=imbalance,
            support_levels=tuple(support),
            resistance_levels=tuple(resistance),
            price_changes=price_changes,
            volume_changes=volume_changes,
        )

        in_uptrend, in_downtrend = short_trend(candles)
        has_volume = bid_volume + ask_volume > 0
        signals = DepthSignals(
            strong_bid_imbalance=imbalance >= s.imbalance_threshold,
            # An empty book has imbalance 0 but no ask-side dominance.
            strong_ask_imbalance=has_volume and imbalance <= 1 / s.imbalance_threshold,
            support_detected=bool(support),
            resistance_detected=bool(resistance),
            bid_walls=tuple(detect_walls(bids, "bid", s.wall_multiplier)),
            ask_walls=tuple(detect_walls(asks, "ask", s.wall_multiplier)),
            price_pressure=classify_pressure(volume_changes),
            volume_spike=is_volume_spike(volume_changes, bid_volume + ask_volume, s.spike_threshold),
            in_uptrend=in_uptrend,
            in_downtrend=in_downtrend,
        )
        match = evaluate(COMPOSITE_RULES, _CompositeContext(imbalance, signals), DepthSignal.NEUTRAL)
        signals = replace(signals, composite=match.outcome, composite_rule=match.rule)
        logger.debug("Depth composite %s via %s", match.outcome.value, match.rule or "default")
        return OrderBookAnalysis(metrics=metrics, signals=signals)


__all__ = [
    "COMPOSITE_RULES",
    "DepthMetrics",
    "DepthSignal",
    "DepthSignals",
    "OrderBookAnalysis",
    "OrderBookAnalyzer",
    "PriceChanges",
    "PricePressure",
    "VolumeChanges",
    "VolumeCluster",
    "Wall",
    "classify_pressure",
    "compute_imbalance",
    "compute_mid_price",
    "compute_price_changes",
    "compute_spread",
    "compute_volume_changes",
    "detect_walls",
    "find_volume_clusters",
    "is_volume_spike",
    "prices_match",
    "short_trend",
]
