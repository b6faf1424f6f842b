"""Central configuration loader for environment variables."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def get(key: str, default: str | None = None) -> str | None:
    """Retrieve an environment variable with an optional default."""
    return os.getenv(key, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    items = tuple(item.strip().upper() for item in raw.split(",") if item.strip())
    return items or default


# ---------------------------------------------------------------------------
# Indicator presets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IndicatorParams:
    """Window sizes and thresholds used by the candle analyzer."""

    fast_ema: int = 8
    medium_ema: int = 21
    slow_ema: int = 50
    rsi_period: int = 14
    bb_period: int = 20
    bb_std_dev: float = 2.0
    volume_ema_period: int = 20
    volume_spike_multiplier: float = 2.5
    volume_average_multiplier: float = 1.5
    volume_lookback: int = 5
    pressure_lookback: int = 4
    pressure_candle_ratio: float = 0.8
    pressure_volume_ratio: float = 0.7
    min_body_pct: float = 0.001
    min_candles: int = 50
    overbought: float = 72.0
    oversold: float = 28.0
    near_band_pct: float = 0.008
    trend_confirm_window: int = 5
    trend_confirm_count: int = 4

    @property
    def required_candles(self) -> int:
        """Smallest buffer for which every indicator has a trailing value."""

        return max(
            self.min_candles,
            self.slow_ema,
            self.medium_ema + 2,
            self.rsi_period + 1,
            self.bb_period,
            self.volume_ema_period,
            self.volume_lookback,
            self.pressure_lookback,
            self.trend_confirm_window,
        )


TIMEFRAME_PRESETS: Dict[str, IndicatorParams] = {
    "15m": IndicatorParams(
        fast_ema=5,
        medium_ema=13,
        slow_ema=34,
        volume_spike_multiplier=3.0,
        pressure_lookback=8,
        pressure_volume_ratio=0.75,
        min_candles=34,
    ),
    "1h": IndicatorParams(),
    "4h": IndicatorParams(
        fast_ema=13,
        medium_ema=34,
        slow_ema=89,
        volume_spike_multiplier=2.0,
        pressure_lookback=3,
        pressure_volume_ratio=0.65,
        min_candles=89,
    ),
    "1d": IndicatorParams(
        fast_ema=21,
        medium_ema=50,
        slow_ema=200,
        volume_spike_multiplier=1.8,
        pressure_lookback=2,
        min_candles=200,
    ),
}

DEFAULT_TIMEFRAME = "1h"


def _parse_indicator_overrides() -> Dict[str, Dict[str, float]]:
    """Read ``INDICATOR_OVERRIDES`` as ``{"1h": {"fast_ema": 9}}`` JSON."""

    raw = os.getenv("INDICATOR_OVERRIDES")
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, Mapping):
        return {}
    overrides: Dict[str, Dict[str, float]] = {}
    known = set(IndicatorParams.__dataclass_fields__)
    for timeframe, values in data.items():
        if not isinstance(values, Mapping):
            continue
        overrides[str(timeframe)] = {
            key: value
            for key, value in values.items()
            if key in known and isinstance(value, (int, float)) and not isinstance(value, bool)
        }
    return overrides


def indicator_params_for(timeframe: str) -> IndicatorParams:
    """Return the preset for ``timeframe`` with any environment overrides applied."""

    params = TIMEFRAME_PRESETS.get(timeframe, TIMEFRAME_PRESETS[DEFAULT_TIMEFRAME])
    override = _parse_indicator_overrides().get(timeframe)
    if override:
        params = replace(params, **override)
    return params


# ---------------------------------------------------------------------------
# Depth, risk and queue settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DepthSettings:
    """Thresholds used by the order-book analyzer."""

    depth_levels: int = 20
    volume_threshold: float = 0.2
    imbalance_threshold: float = 1.5
    cluster_threshold: float = 0.001
    spike_threshold: float = 2.5
    price_change_threshold: float = 0.0001
    wall_multiplier: float = 3.0
    price_match_tolerance: float = 0.0001


@dataclass(frozen=True)
class RiskSettings:
    """Knobs for the price planner and the fusion cascade."""

    stop_loss_pct: float = 0.02
    risk_reward_ratio: float = 2.0
    use_bollinger_bands: bool = False
    bollinger_band_adjustment: float = 0.002
    long_entry_discount: float = 0.002
    short_entry_premium: float = 0.001
    optimal_entry_lookback: int = 10
    support_weight: float = 0.4
    vwap_weight: float = 0.3
    order_book_weight: float = 0.2
    max_optimal_discount: float = 0.08
    min_optimal_discount: float = 0.01
    min_optimal_discount_pct: float = 0.005
    significant_bids_count: int = 3
    price_trend_lookback: int = 8
    high_volume_multiplier: float = 1.8


@dataclass(frozen=True)
class QueueSettings:
    """Exchange request budget enforced by the admission queue."""

    interval_ms: int = 1100
    max_weight: int = 1800
    max_concurrent: int = 20


DEFAULT_SYMBOLS: Tuple[str, ...] = (
    "BTCUSDT",
    "ETHUSDT",
    "BNBUSDT",
    "SOLUSDT",
    "XRPUSDT",
)


@dataclass(frozen=True)
class EngineSettings:
    """Runtime configuration for the signal engine."""

    symbols: Tuple[str, ...] = DEFAULT_SYMBOLS
    timeframe: str = DEFAULT_TIMEFRAME
    max_candles: int = 120
    analysis_interval: float = 1.0
    reconnect_delay: float = 5.0
    ws_base_url: str = "wss://stream.binance.com:9443"
    use_user_stream: bool = False
    alert_cooldown: float = 3600.0
    alert_signals: Tuple[str, ...] = ("long", "short")
    indicators: IndicatorParams = field(default_factory=IndicatorParams)
    depth: DepthSettings = field(default_factory=DepthSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)


def load_engine_settings() -> EngineSettings:
    """Build :class:`EngineSettings` from the environment."""

    timeframe = os.getenv("SIGNAL_TIMEFRAME", DEFAULT_TIMEFRAME).strip() or DEFAULT_TIMEFRAME
    indicators = indicator_params_for(timeframe)
    depth = DepthSettings(
        depth_levels=max(1, _env_int("DEPTH_LEVELS", 20)),
        volume_threshold=max(0.0, _env_float("DEPTH_VOLUME_THRESHOLD", 0.2)),
        imbalance_threshold=max(1.0, _env_float("DEPTH_IMBALANCE_THRESHOLD", 1.5)),
        cluster_threshold=max(0.0, _env_float("DEPTH_CLUSTER_THRESHOLD", 0.001)),
        spike_threshold=max(0.0, _env_float("DEPTH_SPIKE_THRESHOLD", 2.5)),
        price_change_threshold=max(0.0, _env_float("DEPTH_PRICE_CHANGE_THRESHOLD", 0.0001)),
        wall_multiplier=max(1.0, _env_float("DEPTH_WALL_MULTIPLIER", 3.0)),
        price_match_tolerance=max(0.0, _env_float("DEPTH_PRICE_MATCH_TOLERANCE", 0.0001)),
    )
    risk = RiskSettings(
        stop_loss_pct=max(0.0001, _env_float("STOP_LOSS_PCT", 0.02)),
        risk_reward_ratio=max(0.1, _env_float("RISK_REWARD_RATIO", 2.0)),
        use_bollinger_bands=_env_bool("USE_BOLLINGER_BANDS", False),
        optimal_entry_lookback=max(5, _env_int("OPTIMAL_ENTRY_LOOKBACK", 10)),
        price_trend_lookback=max(2, _env_int("PRICE_TREND_LOOKBACK", 8)),
    )
    queue = QueueSettings(
        interval_ms=max(1, _env_int("RATE_LIMIT_INTERVAL_MS", 1100)),
        max_weight=max(1, _env_int("RATE_LIMIT_MAX_WEIGHT", 1800)),
        max_concurrent=max(1, _env_int("RATE_LIMIT_MAX_CONCURRENT", 20)),
    )
    # The buffer must be able to hold enough candles for the slowest indicator.
    max_candles = max(indicators.required_candles, _env_int("MAX_CANDLES", 120))
    return EngineSettings(
        symbols=_env_list("SIGNAL_SYMBOLS", DEFAULT_SYMBOLS),
        timeframe=timeframe,
        max_candles=max_candles,
        analysis_interval=max(0.1, _env_float("ANALYSIS_INTERVAL", 1.0)),
        reconnect_delay=max(0.1, _env_float("RECONNECT_DELAY", 5.0)),
        ws_base_url=os.getenv("BINANCE_WS_BASE", "wss://stream.binance.com:9443").rstrip("/"),
        use_user_stream=_env_bool("USE_USER_STREAM", False),
        alert_cooldown=max(0.0, _env_float("ALERT_COOLDOWN", 3600.0)),
        alert_signals=tuple(s.lower() for s in _env_list("ALERT_SIGNALS", ("LONG", "SHORT"))),
        indicators=indicators,
        depth=depth,
        risk=risk,
        queue=queue,
    )


__all__ = [
    "DEFAULT_SYMBOLS",
    "DEFAULT_TIMEFRAME",
    "DepthSettings",
    "EngineSettings",
    "IndicatorParams",
    "QueueSettings",
    "RiskSettings",
    "TIMEFRAME_PRESETS",
    "indicator_params_for",
    "load_engine_settings",
]
