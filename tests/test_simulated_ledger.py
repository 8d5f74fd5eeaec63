import asyncio
import json
import math
import sys

sys.path.insert(0, '.')

import pytest

from strategy.errors import InvalidOrder, NoPosition
from strategy.simulators.paper import SimulatedLedger


def test_open_computes_weighted_average_cost(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'))
        await ledger.open('btc-usd', 1.0, 100.0)
        position = await ledger.open('BTC-USD', 3.0, 120.0)
        assert position.qty == 4.0
        assert math.isclose(position.avg_cost, 115.0)
        positions = await ledger.list_positions()
        assert list(positions) == ['BTC-USD']

    asyncio.run(_run())


@pytest.mark.parametrize('qty,price', [(0, 100.0), (-1, 100.0), (1, 0), (float('nan'), 100.0), (1, float('inf'))])
def test_open_rejects_invalid_orders(tmp_path, qty, price):
    ledger = SimulatedLedger(str(tmp_path / 'sim.json'))
    with pytest.raises(InvalidOrder):
        asyncio.run(ledger.open('AAPL', qty, price))


def test_close_without_position_raises(tmp_path):
    ledger = SimulatedLedger(str(tmp_path / 'sim.json'))
    with pytest.raises(NoPosition):
        asyncio.run(ledger.close('AAPL', 1, 100.0))


def test_close_caps_at_held_quantity_and_removes_record(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'), fee=1.0)
        await ledger.open('AAPL', 2, 100.0)
        result = await ledger.close('AAPL', 5, 110.0)
        assert result.closed_qty == 2
        assert result.remaining_qty == 0
        assert math.isclose(result.realized_pnl, 2 * 10.0 - 1.0)
        assert await ledger.position('AAPL') is None
        state = json.loads((tmp_path / 'sim.json').read_text())
        assert 'AAPL' not in state['positions']

    asyncio.run(_run())


def test_partial_close_keeps_average_cost(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'))
        await ledger.open('AAPL', 10, 50.0)
        result = await ledger.close('AAPL', 4, 55.0)
        assert result.remaining_qty == 6
        position = await ledger.position('AAPL')
        assert position.qty == 6
        assert position.avg_cost == 50.0

    asyncio.run(_run())


def test_slippage_applies_before_pnl(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'), slippage_bps=50)
        await ledger.open('AAPL', 1, 100.0)
        result = await ledger.close('AAPL', 1, 110.0)
        assert math.isclose(result.fill_price, 110.0 * (1 - 50 / 10000))
        assert math.isclose(result.realized_pnl, result.fill_price - 100.0)

    asyncio.run(_run())


def test_realized_pnl_reconciles_across_sequence(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'), fee=0.5)
        expected = 0.0
        realized = 0.0
        await ledger.open('ETH-USD', 2, 100.0)
        await ledger.open('ETH-USD', 2, 110.0)  # avg 105
        for qty, price in ((1, 120.0), (2, 90.0), (5, 100.0)):
            pos = await ledger.position('ETH-USD')
            closed = min(qty, pos.qty)
            expected += (price - pos.avg_cost) * closed - 0.5
            realized += (await ledger.close('ETH-USD', qty, price)).realized_pnl
        assert math.isclose(realized, expected)
        assert await ledger.position('ETH-USD') is None
        journal = await ledger.journal()
        assert [t['side'] for t in journal['trades']] == ['BUY', 'BUY', 'SELL', 'SELL', 'SELL']
        assert all(t['qty'] > 0 for t in journal['trades'])

    asyncio.run(_run())


def test_concurrent_opens_do_not_lose_updates(tmp_path):
    async def _run():
        ledger = SimulatedLedger(str(tmp_path / 'sim.json'))
        await asyncio.gather(*(ledger.open('AAPL', 1, 100.0 + i) for i in range(10)))
        position = await ledger.position('AAPL')
        assert position.qty == 10
        assert math.isclose(position.avg_cost, 104.5)

    asyncio.run(_run())
