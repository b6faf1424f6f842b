from candle_analyzer import CandleAnalysis
from config import RiskSettings
from market_state import Candle
from microstructure import DepthSignal, DepthSignals, PricePressure
from signal_fusion import FUSION_RULES, Directive, PriceTrend, SignalFusion, price_trend


def _candles(closes, volume=100.0):
    return [Candle(i, c, c + 1, c - 1, c, volume) for i, c in enumerate(closes)]


def _analysis(**overrides):
    values = dict(
        timeframe="1h",
        candle_count=60,
        ema_fast=100.0,
        ema_medium=100.0,
        ema_slow=100.0,
        volume_ema=100.0,
        rsi=50.0,
    )
    values.update(overrides)
    return CandleAnalysis(**values)


FLAT = _candles([100.0] * 10)
BUY_DEPTH = DepthSignals(composite=DepthSignal.STRONG_BUY)
SELL_DEPTH = DepthSignals(price_pressure=PricePressure.DOWN)


def test_price_trend_classes() -> None:
    assert price_trend(_candles(range(100, 108)), 8) is PriceTrend.STRONG_UP
    assert price_trend(_candles([1, 2, 3, 4, 5, 6, 5, 6]), 8) is PriceTrend.UP
    assert price_trend(_candles(range(108, 100, -1)), 8) is PriceTrend.DOWN
    assert price_trend(_candles([1, 2, 1, 2, 1, 2, 1, 2]), 8) is PriceTrend.NEUTRAL
    assert price_trend([], 8) is PriceTrend.NEUTRAL


def test_insufficient_data_is_neutral() -> None:
    decision = SignalFusion().determine(CandleAnalysis.insufficient("1h", 10), BUY_DEPTH, FLAT)
    assert decision.directive is Directive.NEUTRAL
    assert decision.rule is None


def test_cross_with_pressure_and_bullish_depth_is_long() -> None:
    candle = _analysis(ema_bullish_cross=True, buying_pressure=True, is_overbought=True)
    decision = SignalFusion().determine(candle, BUY_DEPTH, FLAT)

    assert decision.directive is Directive.LONG
    assert decision.rule == "cross_pressure_depth_long"


def test_cross_with_pressure_and_bearish_depth_is_short() -> None:
    candle = _analysis(ema_bearish_cross=True, selling_pressure=True)
    decision = SignalFusion().determine(candle, SELL_DEPTH, FLAT)

    assert decision.directive is Directive.SHORT
    assert decision.rule == "cross_pressure_depth_short"


def test_single_signal_is_not_enough() -> None:
    fusion = SignalFusion()
    assert fusion.determine(_analysis(ema_bullish_cross=True), BUY_DEPTH, FLAT).directive is Directive.NEUTRAL
    assert fusion.determine(_analysis(buying_pressure=True), DepthSignals(), FLAT).directive is Directive.NEUTRAL
    assert fusion.determine(_analysis(), BUY_DEPTH, FLAT).directive is Directive.NEUTRAL


def test_pressure_with_high_volume() -> None:
    loud = _candles([100.0] * 9 + [100.0], volume=100.0)
    loud[-1] = Candle(9, 100.0, 101.0, 99.0, 100.0, 200.0)
    candle = _analysis(buying_pressure=True)

    decision = SignalFusion().determine(candle, DepthSignals(), loud)
    assert decision.rule == "pressure_high_volume_long"

    blocked = SignalFusion().determine(_analysis(buying_pressure=True, is_overbought=True), DepthSignals(), loud)
    assert blocked.directive is Directive.NEUTRAL


def test_volume_spike_counts_as_high_volume() -> None:
    fusion = SignalFusion()
    assert fusion.is_high_volume(_analysis(volume_spike=True), FLAT) is True
    assert fusion.is_high_volume(_analysis(), FLAT) is False


def test_ema_stack_with_selling_pressure_is_short() -> None:
    candle = _analysis(ema_fast=98.0, ema_medium=99.0, ema_slow=100.0, selling_pressure=True)
    decision = SignalFusion().determine(candle, DepthSignals(), FLAT)
    assert decision.rule == "trend_stack_pressure_short"


def test_oscillator_extremes_against_trend() -> None:
    fusion = SignalFusion()
    short = fusion.determine(
        _analysis(ema_fast=98.0, ema_medium=99.0, ema_slow=100.0, is_overbought=True), DepthSignals(), FLAT
    )
    assert short.rule == "overbought_in_downtrend"
    assert short.directive is Directive.SHORT

    long = fusion.determine(
        _analysis(ema_fast=102.0, ema_medium=101.0, ema_slow=100.0, is_oversold=True), DepthSignals(), FLAT
    )
    assert long.rule == "oversold_in_uptrend"
    assert long.directive is Directive.LONG


def test_band_rules_use_recent_price_trend() -> None:
    fusion = SignalFusion(RiskSettings(price_trend_lookback=8))
    rising = _candles(range(100, 110))
    falling = _candles(range(110, 100, -1))

    exhaustion = fusion.determine(_analysis(near_upper_band=True), DepthSignals(), rising)
    assert exhaustion.directive is Directive.SHORT
    assert exhaustion.rule == "upper_band_exhaustion"

    bounce = fusion.determine(_analysis(near_lower_band=True), DepthSignals(), falling)
    assert bounce.directive is Directive.LONG
    assert bounce.rule == "lower_band_bounce"


def test_earlier_rule_wins_when_several_match() -> None:
    candle = _analysis(
        ema_fast=102.0,
        ema_medium=101.0,
        ema_slow=100.0,
        ema_bullish_cross=True,
        buying_pressure=True,
    )
    decision = SignalFusion().determine(candle, BUY_DEPTH, FLAT)
    assert decision.rule == "cross_pressure_depth_long"


def test_every_rule_combines_conditions() -> None:
    assert len(FUSION_RULES) == 10
    assert {rule.outcome for rule in FUSION_RULES} == {Directive.LONG, Directive.SHORT}
