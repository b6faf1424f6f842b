"""Entry, stop, target and optimal-limit prices for a directive."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from statistics import median_high
from typing import Any, Dict, Optional, Sequence

from candle_analyzer import CandleAnalysis
from config import RiskSettings
from log_utils import setup_logger
from market_state import Candle, OrderBookSnapshot
from signal_fusion import Directive

logger = setup_logger(__name__)

# Minimum candles needed for an optimal entry estimate.
_MIN_OPTIMAL_CANDLES = 5


def price_tick(price: float) -> float:
    """Rounding increment scaled to the magnitude of ``price``."""

    if price >= 1000:
        return 1.0
    if price >= 100:
        return 0.1
    if price >= 10:
        return 0.01
    if price >= 1:
        return 0.001
    if price >= 0.1:
        return 0.0001
    if price >= 0.01:
        return 0.00001
    if price >= 0.001:
        return 0.000001
    return 0.0000001


def round_to_tick(price: float, tick: float) -> float:
    decimals = max(0, -Decimal(str(tick)).normalize().as_tuple().exponent)
    return round(round(price / tick) * tick, decimals)


@dataclass(frozen=True)
class PricePlan:
    entry_price: Optional[float] = None
    optimal_entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @classmethod
    def empty(cls) -> "PricePlan":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.entry_price is None

    @property
    def risk_pct(self) -> Optional[float]:
        if self.is_empty or self.stop_loss is None:
            return None
        return abs(self.entry_price - self.stop_loss) / self.entry_price * 100

    @property
    def reward_pct(self) -> Optional[float]:
        if self.is_empty or self.take_profit is None:
            return None
        return abs(self.take_profit - self.entry_price) / self.entry_price * 100

    @property
    def risk_reward(self) -> Optional[float]:
        risk, reward = self.risk_pct, self.reward_pct
        if not risk or reward is None:
            return None
        return reward / risk

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PricePlanner:
    """Derive a :class:`PricePlan` from the directive and current market state."""

    risk: RiskSettings = field(default_factory=RiskSettings)

    def plan(
        self,
        directive: Directive,
        book: Optional[OrderBookSnapshot],
        candles: Sequence[Candle],
        candle_analysis: Optional[CandleAnalysis] = None,
        tick_size: Optional[float] = None,
    ) -> PricePlan:
        if directive is Directive.NEUTRAL or not candles:
            return PricePlan.empty()

        r = self.risk
        current = candles[-1].close
        best_bid = book.best_bid if book is not None and book.best_bid else current
        best_ask = book.best_ask if book is not None and book.best_ask else current

        if directive is Directive.LONG:
            entry = best_ask * (1 - r.long_entry_discount)
        else:
            entry = best_bid * (1 + r.short_entry_premium)

        stop, target = self._band_levels(directive, entry, candle_analysis)
        if stop is None or target is None:
            stop, target = self._fixed_levels(directive, entry)

        optimal = None
        if directive is Directive.LONG:
            optimal = self.optimal_entry_price(candles, book, tick_size)
        return PricePlan(entry_price=entry, optimal_entry_price=optimal, stop_loss=stop, take_profit=target)

    def _fixed_levels(self, directive: Directive, entry: float):
        r = self.risk
        if directive is Directive.LONG:
            stop = entry * (1 - r.stop_loss_pct)
            return stop, entry + (entry - stop) * r.risk_reward_ratio
        stop = entry * (1 + r.stop_loss_pct)
        return stop, entry - (stop - entry) * r.risk_reward_ratio

    def _band_levels(self, directive: Directive, entry: float, analysis: Optional[CandleAnalysis]):
        r = self.risk
        if not r.use_bollinger_bands or analysis is None or analysis.bollinger is None:
            return None, None
        band = analysis.bollinger
        adj = r.bollinger_band_adjustment
        if directive is Directive.LONG:
            stop, target = band.lower * (1 - adj), band.upper * (1 + adj)
            valid = stop < entry < target
        else:
            stop, target = band.upper * (1 + adj), band.lower * (1 - adj)
            valid = target < entry < stop
        if not valid:
            # Entry already outside the band; the fixed-risk plan keeps the sides right.
            logger.debug("Band levels straddle entry %.8f; using fixed risk", entry)
            return None, None
        return stop, target

    def optimal_entry_price(
        self,
        candles: Sequence[Candle],
        book: Optional[OrderBookSnapshot],
        tick_size: Optional[float] = None,
    ) -> Optional[float]:
        """Blend of recent support, VWAP and bid liquidity, clamped under current price.

        Returns ``None`` when there is too little history or when the clamped
        and rounded price is not strictly below the current price.
        """

        r = self.risk
        recent = list(candles[-r.optimal_entry_lookback:])
        if len(recent) < _MIN_OPTIMAL_CANDLES:
            return None
        current = recent[-1].close

        support = median_high(c.low for c in recent)
        volume = sum(c.volume for c in recent)
        vwap = (
            sum((c.high + c.low + c.close) / 3 * c.volume for c in recent) / volume
            if volume > 0
            else current
        )
        book_support = current
        bids = [level for level in (book.bids if book is not None else ()) if level[1] > 0]
        bids = bids[: r.significant_bids_count]
        bid_volume = sum(qty for _, qty in bids)
        if bid_volume > 0:
            book_support = sum(price * qty for price, qty in bids) / bid_volume

        weight_total = r.support_weight + r.vwap_weight + r.order_book_weight
        if weight_total <= 0:
            return None
        blended = (
            r.support_weight * support + r.vwap_weight * vwap + r.order_book_weight * book_support
        ) / weight_total

        ceiling = current * (1 - r.min_optimal_discount)
        floor = current * (1 - r.max_optimal_discount)
        optimal = max(min(blended, ceiling), floor, support)
        optimal = min(optimal, current * (1 - r.min_optimal_discount_pct))

        tick = tick_size or price_tick(current)
        optimal = round_to_tick(optimal, tick)
        if not math.isfinite(optimal) or optimal <= 0 or optimal >= current:
            return None
        return optimal


__all__ = ["PricePlan", "PricePlanner", "price_tick", "round_to_tick"]
