import pytest

from candle_analyzer import BollingerSnapshot, CandleAnalysis
from config import RiskSettings
from market_state import Candle, OrderBookSnapshot
from price_planner import PricePlan, PricePlanner, price_tick, round_to_tick
from signal_fusion import Directive


def _candles(n=10, close=100.0, low=99.0, high=101.0, volume=10.0):
    return [Candle(i, close, high, low, close, volume) for i in range(n)]


BOOK = OrderBookSnapshot.from_levels(
    bids=[(109.9, 10.0), (109.85, 8.0), (109.8, 6.0)],
    asks=[(110.0, 2.0), (110.05, 2.0), (110.1, 2.0)],
    captured_at=0,
)


def _analysis(lower, upper):
    return CandleAnalysis(
        timeframe="1h",
        candle_count=60,
        bollinger=BollingerSnapshot(upper=upper, middle=(upper + lower) / 2, lower=lower),
    )


def test_neutral_directive_has_empty_plan() -> None:
    plan = PricePlanner().plan(Directive.NEUTRAL, BOOK, _candles())
    assert plan == PricePlan.empty()
    assert plan.is_empty
    assert plan.risk_reward is None
    assert plan.to_dict() == {
        "entry_price": None,
        "optimal_entry_price": None,
        "stop_loss": None,
        "take_profit": None,
    }


def test_long_plan_uses_discounted_best_ask_and_fixed_risk() -> None:
    plan = PricePlanner().plan(Directive.LONG, BOOK, _candles(close=110.0, low=109.0, high=111.0))

    assert plan.entry_price == pytest.approx(110.0 * 0.998)
    assert plan.stop_loss == pytest.approx(plan.entry_price * 0.98)
    assert plan.stop_loss < plan.entry_price < plan.take_profit
    assert plan.take_profit - plan.entry_price == pytest.approx(2 * (plan.entry_price - plan.stop_loss))
    assert plan.risk_pct == pytest.approx(2.0)
    assert plan.risk_reward == pytest.approx(2.0)


def test_short_plan_uses_marked_up_best_bid() -> None:
    plan = PricePlanner().plan(Directive.SHORT, BOOK, _candles(close=110.0))

    assert plan.entry_price == pytest.approx(109.9 * 1.001)
    assert plan.take_profit < plan.entry_price < plan.stop_loss
    assert plan.optimal_entry_price is None


def test_missing_book_falls_back_to_current_price() -> None:
    plan = PricePlanner().plan(Directive.LONG, None, _candles(close=100.0))
    assert plan.entry_price == pytest.approx(100.0 * 0.998)


def test_band_levels_when_enabled_and_valid() -> None:
    planner = PricePlanner(RiskSettings(use_bollinger_bands=True))
    plan = planner.plan(Directive.LONG, BOOK, _candles(close=110.0), _analysis(100.0, 120.0))

    assert plan.stop_loss == pytest.approx(100.0 * 0.998)
    assert plan.take_profit == pytest.approx(120.0 * 1.002)


def test_band_levels_fall_back_when_entry_is_outside_band() -> None:
    planner = PricePlanner(RiskSettings(use_bollinger_bands=True))
    plan = planner.plan(Directive.LONG, BOOK, _candles(close=110.0), _analysis(90.0, 105.0))

    assert plan.stop_loss == pytest.approx(plan.entry_price * 0.98)
    assert plan.stop_loss < plan.entry_price < plan.take_profit


def test_optimal_entry_blends_support_vwap_and_bids() -> None:
    book = OrderBookSnapshot.from_levels(
        bids=[(99.9, 1.0), (99.8, 1.0), (99.7, 1.0), (90.0, 100.0)],
        asks=[(100.1, 1.0)],
        captured_at=0,
    )
    optimal = PricePlanner().optimal_entry_price(_candles(), book)

    # Blend is ~99.51, capped at 1% under the current price.
    assert optimal == pytest.approx(99.0)


def test_optimal_entry_needs_history() -> None:
    assert PricePlanner().optimal_entry_price(_candles(n=4), BOOK) is None


def test_optimal_entry_is_strictly_below_current_price() -> None:
    # Support above the current price is clamped under it.
    candles = _candles(close=100.0, low=100.0, high=100.0)
    optimal = PricePlanner().optimal_entry_price(candles, None)
    assert optimal is not None
    assert optimal < 100.0


def test_optimal_entry_respects_exchange_tick() -> None:
    optimal = PricePlanner().optimal_entry_price(_candles(), None, tick_size=0.5)
    assert optimal == pytest.approx(99.0)
    assert optimal % 0.5 == pytest.approx(0.0)


def test_price_tick_scales_with_magnitude() -> None:
    assert price_tick(25_000) == 1.0
    assert price_tick(250) == 0.1
    assert price_tick(25) == 0.01
    assert price_tick(2.5) == 0.001
    assert price_tick(0.5) == 0.0001
    assert price_tick(0.0005) == 0.0000001


def test_round_to_tick() -> None:
    assert round_to_tick(109.4567, 0.1) == 109.5
    assert round_to_tick(0.123456, 0.0001) == 0.1235
    assert round_to_tick(101.3, 0.5) == 101.5
