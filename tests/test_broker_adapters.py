import sys

sys.path.insert(0, '.')

from ingest.broker import PositionReading, aggregate_positions, is_crypto, normalize_position


def test_normalize_accepts_either_field_spelling():
    assert normalize_position({'quantity': '2', 'average_cost': '10.5'}).qty == 2.0
    snap = normalize_position({'qty': 3, 'avg_cost': 7})
    assert (snap.qty, snap.avg_cost) == (3.0, 7.0)
    assert normalize_position({'quantity': 'n/a'}).qty == 0.0
    assert normalize_position(None).avg_cost == 0.0


def test_aggregate_weights_lots_by_quantity():
    snap = aggregate_positions('BTC-USD', [
        {'symbol': 'btc-usd', 'quantity': 1, 'average_cost': 100},
        {'symbol': 'BTC-USD', 'qty': 3, 'avg_cost': 120},
        {'symbol': 'ETH-USD', 'qty': 9, 'avg_cost': 1},
        {'symbol': 'BTC-USD', 'qty': 0, 'avg_cost': 999},
    ])
    assert snap.qty == 4.0
    assert snap.avg_cost == 115.0


def test_reading_distinguishes_unknown_from_flat():
    flat = PositionReading.confirmed(0.0, 0.0)
    failed = PositionReading.unknown('timeout')
    assert flat.known and not flat.holding
    assert not failed.known and not failed.holding
    assert failed.error == 'timeout'
    assert PositionReading.confirmed(1.0, 0.0).has_avg_cost is False


def test_crypto_symbols_contain_a_dash():
    assert is_crypto('BTC-USD')
    assert not is_crypto('AAPL')
