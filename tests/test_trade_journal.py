import csv
import sys

sys.path.insert(0, '.')

from monitoring.trade_journal import MARK_COLUMNS, TRADE_COLUMNS, TradeJournal
from strategy.execution_types import ExitFill


def _fill(pnl, reason='target_hit'):
    return ExitFill('BTC-USD', 1.0, 104.0, 100.0, reason, 'DRY_RUN', pnl, fee=0.1, slippage_bps=5)


def test_exit_rows_carry_cumulative_pnl(tmp_path):
    journal = TradeJournal(str(tmp_path / 'trades.csv'), str(tmp_path / 'mtm.csv'), session='s1')
    assert journal.record_exit(_fill(4.0)) == 4.0
    assert journal.record_exit(_fill(-1.5, 'stop_hit')) == 2.5

    with open(tmp_path / 'trades.csv', newline='') as handle:
        rows = list(csv.reader(handle))
    assert rows[0] == TRADE_COLUMNS
    assert rows[1][1:5] == ['s1', 'BTC-USD', 'sell', '1.000000']
    assert rows[2][-1] == '2.500000'
    assert journal.totals() == {'BTC-USD': {'cum_pnl': 2.5, 'trades': 2}}


def test_marks_record_unrealized_pnl(tmp_path):
    journal = TradeJournal(str(tmp_path / 'trades.csv'), str(tmp_path / 'var' / 'mtm.csv'))
    journal.record_mark('ETH-USD', 110.0, 2.0, 100.0)
    marks = journal.read_marks()
    assert list(marks[0]) == MARK_COLUMNS
    assert marks[0]['unreal_pnl'] == '20.000000'
    assert journal.read_trades() == []


def test_reset_truncates_to_headers(tmp_path):
    journal = TradeJournal(str(tmp_path / 'trades.csv'), str(tmp_path / 'mtm.csv'))
    journal.record_exit(_fill(4.0))
    journal.record_mark('BTC-USD', 101.0, 1.0, 100.0)
    journal.reset()
    assert journal.read_trades() == []
    assert journal.read_marks() == []
    assert journal.totals() == {}
    assert (tmp_path / 'trades.csv').read_text().strip() == ','.join(TRADE_COLUMNS)


def test_read_limit_returns_newest(tmp_path):
    journal = TradeJournal(str(tmp_path / 'trades.csv'), str(tmp_path / 'mtm.csv'))
    for price in (100.0, 101.0, 102.0):
        journal.record_mark('BTC-USD', price, 1.0, 100.0)
    assert [row['price'] for row in journal.read_marks(limit=2)] == ['101.000000', '102.000000']
