"""Fuse candle and depth analysis into a single trade directive.

The cascade is an ordered tuple of :class:`rule_cascade.Rule` objects; the
first rule whose predicate holds decides the directive.  Every rule combines
at least two independent conditions so a single noisy input cannot produce a
non-neutral directive on its own.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple

from candle_analyzer import CandleAnalysis
from config import RiskSettings
from log_utils import setup_logger
from market_state import Candle
from microstructure import DepthSignals, PricePressure
from rule_cascade import Rule, evaluate

logger = setup_logger(__name__)


class Directive(str, Enum):
    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"


class PriceTrend(str, Enum):
    STRONG_UP = "strong_up"
    UP = "up"
    NEUTRAL = "neutral"
    DOWN = "down"


def price_trend(candles: Sequence[Candle], lookback: int) -> PriceTrend:
    """Classify the last ``lookback`` closes by how many of them rose.

    The oldest close in the window counts as a rise, so ``strong_up`` means
    every subsequent close was higher than the one before it.
    """

    recent = list(candles[-lookback:]) if lookback > 0 else []
    if not recent:
        return PriceTrend.NEUTRAL
    ups = 1 + sum(1 for prev, cur in zip(recent, recent[1:]) if cur.close > prev.close)
    if ups == lookback:
        return PriceTrend.STRONG_UP
    if ups >= lookback * 0.7:
        return PriceTrend.UP
    if ups <= lookback * 0.3:
        return PriceTrend.DOWN
    return PriceTrend.NEUTRAL


@dataclass(frozen=True)
class FusionContext:
    candle: CandleAnalysis
    depth: DepthSignals
    high_volume: bool
    trend: PriceTrend

    @property
    def ema_uptrend(self) -> bool:
        c = self.candle
        return c.ema_fast > c.ema_medium > c.ema_slow

    @property
    def ema_downtrend(self) -> bool:
        c = self.candle
        return c.ema_fast < c.ema_medium < c.ema_slow

    @property
    def depth_bullish(self) -> bool:
        return self.depth.composite.is_bullish or self.depth.price_pressure in (
            PricePressure.UP,
            PricePressure.STRONG_UP,
        )

    @property
    def depth_bearish(self) -> bool:
        return self.depth.composite.is_bearish or self.depth.price_pressure in (
            PricePressure.DOWN,
            PricePressure.STRONG_DOWN,
        )


FUSION_RULES: Tuple[Rule, ...] = (
    Rule(
        "cross_pressure_depth_long",
        lambda c: c.candle.ema_bullish_cross and c.candle.buying_pressure and c.depth_bullish,
        Directive.LONG,
    ),
    Rule(
        "cross_pressure_depth_short",
        lambda c: c.candle.ema_bearish_cross and c.candle.selling_pressure and c.depth_bearish,
        Directive.SHORT,
    ),
    Rule(
        "pressure_high_volume_long",
        lambda c: c.candle.buying_pressure and c.high_volume and not c.candle.is_overbought,
        Directive.LONG,
    ),
    Rule(
        "pressure_high_volume_short",
        lambda c: c.candle.selling_pressure and c.high_volume and not c.candle.is_oversold,
        Directive.SHORT,
    ),
    Rule(
        "trend_stack_pressure_long",
        lambda c: c.ema_uptrend and c.candle.buying_pressure and not c.candle.is_overbought,
        Directive.LONG,
    ),
    Rule(
        "trend_stack_pressure_short",
        lambda c: c.ema_downtrend and c.candle.selling_pressure and not c.candle.is_oversold,
        Directive.SHORT,
    ),
    Rule(
        "overbought_in_downtrend",
        lambda c: c.candle.is_overbought and c.ema_downtrend,
        Directive.SHORT,
    ),
    Rule(
        "oversold_in_uptrend",
        lambda c: c.candle.is_oversold and c.ema_uptrend,
        Directive.LONG,
    ),
    Rule(
        "upper_band_exhaustion",
        lambda c: c.candle.near_upper_band and c.trend is PriceTrend.STRONG_UP,
        Directive.SHORT,
    ),
    Rule(
        "lower_band_bounce",
        lambda c: c.candle.near_lower_band and c.trend is PriceTrend.DOWN,
        Directive.LONG,
    ),
)


@dataclass(frozen=True)
class FusionDecision:
    directive: Directive
    rule: Optional[str] = None


@dataclass
class SignalFusion:
    """Evaluate :data:`FUSION_RULES` for one instrument."""

    risk: RiskSettings = field(default_factory=RiskSettings)
    rules: Tuple[Rule, ...] = FUSION_RULES

    def is_high_volume(self, candle: CandleAnalysis, candles: Sequence[Candle]) -> bool:
        if candle.volume_spike:
            return True
        if not candles or candle.volume_ema is None:
            return False
        return candles[-1].volume > candle.volume_ema * self.risk.high_volume_multiplier

    def determine(
        self,
        candle: CandleAnalysis,
        depth: DepthSignals,
        candles: Sequence[Candle],
    ) -> FusionDecision:
        if candle.insufficient_data:
            return FusionDecision(Directive.NEUTRAL)
        context = FusionContext(
            candle=candle,
            depth=depth,
            high_volume=self.is_high_volume(candle, candles),
            trend=price_trend(candles, self.risk.price_trend_lookback),
        )
        match = evaluate(self.rules, context, Directive.NEUTRAL)
        return FusionDecision(match.outcome, match.rule)


__all__ = [
    "Directive",
    "FUSION_RULES",
    "FusionContext",
    "FusionDecision",
    "PriceTrend",
    "SignalFusion",
    "price_trend",
]
