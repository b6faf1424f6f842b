"""Technical indicators and derived candle signals.

The analyzer is stateless between cycles: every call recomputes the full
indicator set from the candle buffer it is given.  Indicator series come from
the ``ta`` library on a ``pandas`` frame; the boolean signals are plain
functions over the resulting sequences so they can be exercised directly.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from ta.momentum import RSIIndicator
from ta.trend import EMAIndicator
from ta.volatility import BollingerBands

from config import IndicatorParams, indicator_params_for
from log_utils import setup_logger
from market_state import Candle

logger = setup_logger(__name__)

__all__ = [
    "BollingerSnapshot",
    "CandleAnalysis",
    "CandleAnalyzer",
    "IndicatorComputationError",
    "candles_to_frame",
    "has_bearish_cross",
    "has_bullish_cross",
    "has_buying_pressure",
    "has_price_movement",
    "has_selling_pressure",
    "has_volume_spike",
    "is_downtrend_confirmed",
    "is_near_band",
    "is_trend_confirmed",
]


class IndicatorComputationError(ValueError):
    """Raised when the candle buffer yields undefined indicator values."""


@dataclass(frozen=True)
class BollingerSnapshot:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class CandleAnalysis:
    """Latest indicator values and derived booleans for one instrument.

    ``insufficient_data`` is set when the buffer is shorter than the longest
    indicator window; every numeric field is then ``None`` and every flag
    ``False``.
    """

    timeframe: str
    candle_count: int
    insufficient_data: bool = False
    ema_fast: Optional[float] = None
    ema_medium: Optional[float] = None
    ema_slow: Optional[float] = None
    volume_ema: Optional[float] = None
    rsi: Optional[float] = None
    bollinger: Optional[BollingerSnapshot] = None
    ema_bullish_cross: bool = False
    ema_bearish_cross: bool = False
    buying_pressure: bool = False
    selling_pressure: bool = False
    volume_spike: bool = False
    trend_confirmed: bool = False
    downtrend_confirmed: bool = False
    is_overbought: bool = False
    is_oversold: bool = False
    near_upper_band: bool = False
    near_lower_band: bool = False
    is_bullish: bool = False
    is_bearish: bool = False

    @classmethod
    def insufficient(cls, timeframe: str, candle_count: int) -> "CandleAnalysis":
        return cls(timeframe=timeframe, candle_count=candle_count, insufficient_data=True)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Shape a candle buffer into an OHLCV frame indexed by open time."""

    df = pd.DataFrame(
        [(c.open_time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=["open_time", "open", "high", "low", "close", "volume"],
    )
    return df.set_index("open_time")


# ---------------------------------------------------------------------------
# Signal primitives
# ---------------------------------------------------------------------------


def has_bullish_cross(fast: Sequence[float], medium: Sequence[float]) -> bool:
    """Fast above medium now, and at or below it on each of the two prior points."""

    if len(fast) < 3 or len(medium) < 3:
        return False
    return fast[-1] > medium[-1] and fast[-2] <= medium[-2] and fast[-3] <= medium[-3]


def has_bearish_cross(fast: Sequence[float], medium: Sequence[float]) -> bool:
    if len(fast) < 3 or len(medium) < 3:
        return False
    return fast[-1] < medium[-1] and fast[-2] >= medium[-2] and fast[-3] >= medium[-3]


def _pressure(candles: Sequence[Candle], params: IndicatorParams, bullish: bool) -> bool:
    lookback = params.pressure_lookback
    if lookback <= 0 or len(candles) < lookback:
        return False
    recent = candles[-lookback:]

    def _directional(c: Candle) -> bool:
        return c.close > c.open if bullish else c.close < c.open

    strong = sum(
        1
        for c in recent
        if _directional(c) and c.open > 0 and abs(c.close - c.open) / c.open > params.min_body_pct
    )
    total_volume = sum(c.volume for c in recent)
    directional_volume = sum(c.volume for c in recent if _directional(c))
    ratio = directional_volume / total_volume if total_volume > 0 else 0.0
    required = math.ceil(lookback * params.pressure_candle_ratio)
    return strong >= required and ratio > params.pressure_volume_ratio


def has_buying_pressure(candles: Sequence[Candle], params: IndicatorParams) -> bool:
    """Enough strong-bodied bullish candles carrying most of the recent volume."""

    return _pressure(candles, params, bullish=True)


def has_selling_pressure(candles: Sequence[Candle], params: IndicatorParams) -> bool:
    return _pressure(candles, params, bullish=False)


def has_volume_spike(candles: Sequence[Candle], volume_ema: float, params: IndicatorParams) -> bool:
    """Latest volume exceeds both its EMA and the short simple average by their multipliers."""

    if not candles:
        return False
    current = candles[-1].volume
    window = candles[-params.volume_lookback:]
    average = sum(c.volume for c in window) / len(window)
    return (
        current > volume_ema * params.volume_spike_multiplier
        and current > average * params.volume_average_multiplier
    )


def is_trend_confirmed(candles: Sequence[Candle], slow_ema: float, params: IndicatorParams) -> bool:
    recent = candles[-params.trend_confirm_window:]
    return sum(1 for c in recent if c.close > slow_ema) >= params.trend_confirm_count


def is_downtrend_confirmed(candles: Sequence[Candle], slow_ema: float, params: IndicatorParams) -> bool:
    recent = candles[-params.trend_confirm_window:]
    return sum(1 for c in recent if c.close < slow_ema) >= params.trend_confirm_count


def is_near_band(close: float, band: float, tolerance: float, width: Optional[float] = None) -> bool:
    """Close lies within ``tolerance`` (relative) of ``band``.

    Collapsed bands (no measurable ``width``) put every close on both bands,
    so they never count as near.
    """
    if band == 0 or (width is not None and width <= abs(band) * 1e-9):
        return False
    return abs(close - band) / abs(band) < tolerance


def has_price_movement(closes: Sequence[float], window: int) -> bool:
    """Any close changed over the last ``window`` steps."""

    recent = list(closes[-(window + 1):])
    return any(cur != prev for prev, cur in zip(recent, recent[1:]))


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class CandleAnalyzer:
    """Compute indicators and derived signals for a candle buffer."""

    def __init__(self, params: Optional[IndicatorParams] = None, timeframe: str = "1h") -> None:
        self.timeframe = timeframe
        self.params = params or indicator_params_for(timeframe)

    def analyze(self, candles: Sequence[Candle]) -> CandleAnalysis:
        """Return a :class:`CandleAnalysis` for ``candles`` (oldest first).

        Raises
        ------
        IndicatorComputationError
            If the candles contain non-finite values or an indicator has no
            defined trailing value despite enough history.
        """

        p = self.params
        candles = list(candles)
        if len(candles) < p.required_candles:
            logger.debug(
                "Insufficient candles for %s analysis: %d < %d",
                self.timeframe,
                len(candles),
                p.required_candles,
            )
            return CandleAnalysis.insufficient(self.timeframe, len(candles))

        df = candles_to_frame(candles)
        if not np.isfinite(df.to_numpy(dtype=float)).all():
            raise IndicatorComputationError("candle buffer contains non-finite values")

        close = df["close"]
        fast = EMAIndicator(close, window=p.fast_ema).ema_indicator()
        medium = EMAIndicator(close, window=p.medium_ema).ema_indicator()
        slow = EMAIndicator(close, window=p.slow_ema).ema_indicator()
        volume_ema = EMAIndicator(df["volume"], window=p.volume_ema_period).ema_indicator()
        rsi = RSIIndicator(close, window=p.rsi_period).rsi()
        bb = BollingerBands(close, window=p.bb_period, window_dev=p.bb_std_dev)
        upper = bb.bollinger_hband()
        middle = bb.bollinger_mavg()
        lower = bb.bollinger_lband()

        latest = {
            "ema_fast": fast.iloc[-1],
            "ema_medium": medium.iloc[-1],
            "ema_slow": slow.iloc[-1],
            "volume_ema": volume_ema.iloc[-1],
            "rsi": rsi.iloc[-1],
            "bb_upper": upper.iloc[-1],
            "bb_middle": middle.iloc[-1],
            "bb_lower": lower.iloc[-1],
        }
        undefined = [name for name, value in latest.items() if not np.isfinite(value)]
        if undefined:
            raise IndicatorComputationError(
                f"undefined trailing values for {', '.join(sorted(undefined))}"
            )

        fast_tail = fast.iloc[-3:].tolist()
        medium_tail = medium.iloc[-3:].tolist()
        last_close = candles[-1].close
        bollinger = BollingerSnapshot(
            upper=float(latest["bb_upper"]),
            middle=float(latest["bb_middle"]),
            lower=float(latest["bb_lower"]),
        )
        slow_last = float(latest["ema_slow"])
        rsi_last = float(latest["rsi"])
        band_width = bollinger.upper - bollinger.lower

        bullish_cross = has_bullish_cross(fast_tail, medium_tail)
        bearish_cross = has_bearish_cross(fast_tail, medium_tail)
        trend = is_trend_confirmed(candles, slow_last, p)
        downtrend = is_downtrend_confirmed(candles, slow_last, p)
        # ta reports RSI 100 when nothing moved; a flat window is neither extreme.
        moving = has_price_movement([c.close for c in candles], p.rsi_period)
        overbought = moving and rsi_last > p.overbought
        oversold = moving and rsi_last < p.oversold

        return CandleAnalysis(
            timeframe=self.timeframe,
            candle_count=len(candles),
            ema_fast=float(latest["ema_fast"]),
            ema_medium=float(latest["ema_medium"]),
            ema_slow=slow_last,
            volume_ema=float(latest["volume_ema"]),
            rsi=rsi_last,
            bollinger=bollinger,
            ema_bullish_cross=bullish_cross,
            ema_bearish_cross=bearish_cross,
            buying_pressure=has_buying_pressure(candles, p),
            selling_pressure=has_selling_pressure(candles, p),
            volume_spike=has_volume_spike(candles, float(latest["volume_ema"]), p),
            trend_confirmed=trend,
            downtrend_confirmed=downtrend,
            is_overbought=overbought,
            is_oversold=oversold,
            near_upper_band=is_near_band(last_close, bollinger.upper, p.near_band_pct, band_width),
            near_lower_band=is_near_band(last_close, bollinger.lower, p.near_band_pct, band_width),
            is_bullish=bullish_cross and trend and not overbought,
            is_bearish=bearish_cross and downtrend and not oversold,
        )
