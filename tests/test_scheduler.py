import asyncio
import sys

sys.path.insert(0, '.')

from orchestration.scheduler import PollingScheduler


def test_instruments_sharing_interval_share_a_loop():
    async def tick(instrument):
        return None

    scheduler = PollingScheduler(tick, {'BTC-USD': 30.0, 'ETH-USD': 30.0, 'AAPL': 60.0})
    assert scheduler.groups() == {30.0: ['BTC-USD', 'ETH-USD'], 60.0: ['AAPL']}


def test_slow_tick_is_never_overlapped():
    async def _run():
        release = asyncio.Event()
        started = []

        async def tick(instrument):
            started.append(instrument)
            await release.wait()

        scheduler = PollingScheduler(tick, {'BTC-USD': 1.0, 'ETH-USD': 1.0})
        first = scheduler.dispatch()
        await asyncio.sleep(0)
        assert scheduler.in_flight('BTC-USD')
        second = scheduler.dispatch(['BTC-USD'])
        assert second == []
        release.set()
        await asyncio.gather(*first)
        assert started == ['BTC-USD', 'ETH-USD']
        assert len(scheduler.dispatch(['BTC-USD'])) == 1
        await scheduler.stop()

    asyncio.run(_run())


def test_failing_tick_does_not_affect_other_instruments():
    async def _run():
        done = []

        async def tick(instrument):
            if instrument == 'BAD':
                raise RuntimeError('boom')
            done.append(instrument)

        scheduler = PollingScheduler(tick, {'BAD': 1.0, 'GOOD': 1.0})
        await scheduler.run_once()
        assert done == ['GOOD']

    asyncio.run(_run())


def test_start_and_stop_loops():
    async def _run():
        counts = {}

        async def tick(instrument):
            counts[instrument] = counts.get(instrument, 0) + 1

        scheduler = PollingScheduler(tick, {'BTC-USD': 0.01})
        loops = scheduler.start()
        assert scheduler.start() is loops
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert counts['BTC-USD'] >= 2
        assert scheduler.running is False

    asyncio.run(_run())
