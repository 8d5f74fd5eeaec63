import sys

sys.path.insert(0, '.')

from config.settings import MomentumRule
from strategy.momentum import (
    BELOW_THRESHOLD,
    COOLING_DOWN,
    FIRED,
    INSUFFICIENT_DATA,
    OUT_OF_ORDER,
    MomentumDetector,
    PriceSample,
)

T0 = 1_700_000_000.0


def _detector(threshold=5.0, lookback=60, cooldown=180):
    rule = MomentumRule('BTC-USD', threshold, lookback_minutes=lookback, cooldown_minutes=cooldown)
    return MomentumDetector([rule])


def _at(minutes, price):
    return PriceSample(T0 + minutes * 60, price)


def test_scenario_fires_on_six_percent_move():
    detector = _detector()
    assert detector.observe('BTC-USD', _at(0, 100.0)).reason == INSUFFICIENT_DATA
    assert detector.observe('BTC-USD', _at(10, 100.0)).reason == INSUFFICIENT_DATA
    decision = detector.observe('BTC-USD', _at(61, 106.0))
    assert decision.reason == FIRED
    assert abs(decision.pct_change - 6.0) < 1e-9
    assert detector.window('BTC-USD').last_buy_ts == T0 + 61 * 60


def test_single_sample_never_fires():
    detector = _detector(threshold=0.0)
    decision = detector.observe('BTC-USD', _at(0, 100.0))
    assert decision.insufficient
    assert not decision.fired


def test_no_sample_older_than_lookback_is_insufficient():
    detector = _detector()
    for minute, price in ((0, 100.0), (20, 120.0), (40, 150.0)):
        decision = detector.observe('BTC-USD', _at(minute, price))
    assert decision.reason == INSUFFICIENT_DATA


def test_flat_and_falling_prices_stay_below_threshold():
    detector = _detector()
    detector.observe('BTC-USD', _at(0, 100.0))
    assert detector.observe('BTC-USD', _at(61, 100.0)).reason == BELOW_THRESHOLD
    assert detector.observe('BTC-USD', _at(62, 95.0)).reason == BELOW_THRESHOLD


def test_zero_threshold_fires_on_non_negative_change():
    detector = _detector(threshold=0.0)
    detector.observe('BTC-USD', _at(0, 100.0))
    assert detector.observe('BTC-USD', _at(61, 100.0)).fired


def test_cooldown_limits_to_one_fire_per_window():
    detector = _detector(threshold=5.0, lookback=60, cooldown=180)
    fired = []
    # Price compounds 10% per hour, so every sample past the first hour qualifies
    for minute in range(0, 600, 5):
        price = 100.0 * (1.10 ** (minute / 60.0))
        decision = detector.observe('BTC-USD', _at(minute, price))
        if decision.fired:
            fired.append(minute)
        elif decision.pct_change is not None and decision.pct_change >= 5.0:
            assert decision.reason == COOLING_DOWN
    assert fired
    for first, second in zip(fired, fired[1:]):
        assert second - first >= 180


def test_window_keeps_one_stale_base_sample():
    detector = _detector(lookback=60)
    for minute in range(0, 200, 5):
        detector.observe('BTC-USD', _at(minute, 100.0))
    window = detector.window('BTC-USD')
    boundary = T0 + 195 * 60 - 3600
    stale = [s for s in window.samples if s.timestamp <= boundary]
    assert len(stale) == 1
    timestamps = [s.timestamp for s in window.samples]
    assert timestamps == sorted(timestamps)


def test_out_of_order_sample_is_ignored():
    detector = _detector()
    detector.observe('BTC-USD', _at(10, 100.0))
    detector.observe('BTC-USD', _at(5, 500.0))
    assert [s.price for s in detector.window('BTC-USD').samples] == [100.0]


def test_out_of_order_sample_never_fires():
    detector = _detector(threshold=0.0, cooldown=0)
    detector.observe('BTC-USD', _at(0, 100.0))
    detector.observe('BTC-USD', _at(70, 106.0))
    decision = detector.observe('BTC-USD', _at(65, 500.0))
    assert decision.reason == OUT_OF_ORDER
    assert not decision.fired
    assert decision.price is None
    assert detector.window('BTC-USD').last_buy_ts == T0 + 70 * 60


def test_rewind_restores_previous_buy_timestamp():
    detector = _detector()
    detector.observe('BTC-USD', _at(0, 100.0))
    decision = detector.observe('BTC-USD', _at(61, 106.0))
    assert decision.fired
    detector.rewind(decision)
    assert detector.window('BTC-USD').last_buy_ts == 0.0
    assert detector.observe('BTC-USD', _at(62, 106.0)).fired


def test_non_positive_base_is_insufficient():
    detector = _detector(threshold=0.0)
    detector.observe('BTC-USD', _at(0, 0.0))
    assert detector.observe('BTC-USD', _at(61, 10.0)).insufficient
