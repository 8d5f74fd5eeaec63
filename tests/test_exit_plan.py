import math
import sys

sys.path.insert(0, '.')

from config.settings import TickerConfig
from orchestration.overrides import OverrideRecord
from strategy.exit_plan import (
    CONFIG,
    OVERRIDES_ABSOLUTE,
    OVERRIDES_PERCENT,
    compute_exit_plan,
    trailing_stop,
)


def test_percent_override_replaces_config_bracket():
    ticker = TickerConfig('BTC-USD', qty=1, target=60000.0, stop=40000.0)
    override = OverrideRecord(mode='percent', target_pct=2.0, stop_pct=1.0)
    plan = compute_exit_plan(ticker, override, avg_cost=50000.0, high_water=50000.0)
    assert math.isclose(plan.target, 51000.0)
    assert math.isclose(plan.stop, 49500.0)
    assert plan.effective_stop == plan.stop
    assert plan.source == OVERRIDES_PERCENT


def test_absolute_override_replaces_only_given_fields():
    ticker = TickerConfig('AAPL', qty=10, target=245.0, stop=220.0)
    plan = compute_exit_plan(ticker, OverrideRecord(mode='absolute', target=250.0), 230.0, 230.0)
    assert plan.target == 250.0
    assert plan.stop == 220.0
    assert plan.source == OVERRIDES_ABSOLUTE


def test_no_override_uses_config():
    ticker = TickerConfig('AAPL', qty=10, target=245.0, stop=220.0)
    plan = compute_exit_plan(ticker, OverrideRecord(), 230.0, 240.0)
    assert (plan.target, plan.stop, plan.source) == (245.0, 220.0, CONFIG)


def test_percent_override_without_avg_cost_falls_back_to_config():
    ticker = TickerConfig('BTC-USD', target=60000.0, stop=40000.0)
    plan = compute_exit_plan(ticker, OverrideRecord(mode='percent', target_pct=2.0, stop_pct=1.0), None, None)
    assert plan.source == CONFIG
    assert plan.target == 60000.0


def test_trailing_stop_applies_after_override():
    ticker = TickerConfig('BTC-USD', target=math.inf, stop=0.0)
    override = OverrideRecord(mode='percent', target_pct=10.0, stop_pct=2.0, trail_pct=3.0)
    plan = compute_exit_plan(ticker, override, avg_cost=100.0, high_water=105.0)
    assert math.isclose(plan.stop, 98.0)
    assert math.isclose(plan.effective_stop, 105.0 * 0.97)


def test_trailing_stop_never_lowers_stop():
    assert trailing_stop(98.0, 99.0, 5.0) == 98.0
    assert trailing_stop(98.0, None, 5.0) == 98.0
    assert trailing_stop(98.0, 200.0, 0.0) == 98.0


def test_trailing_stop_is_monotonic_in_high_water():
    previous = -math.inf
    for high in (100.0, 101.0, 101.0, 104.5, 110.0, 130.0):
        stop = trailing_stop(95.0, high, 2.5)
        assert stop >= previous
        previous = stop


def test_ticker_trail_used_when_override_has_none():
    ticker = TickerConfig('AAPL', target=300.0, stop=200.0, trail_pct=10.0)
    plan = compute_exit_plan(ticker, OverrideRecord(), 220.0, 250.0)
    assert math.isclose(plan.effective_stop, 225.0)
