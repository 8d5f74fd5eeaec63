import asyncio
import sys

sys.path.insert(0, '.')

from ingest.broker import PositionReading
from risk.admission import AdmissionController


class PositionTable:
    def __init__(self, held=None, failing=()):
        self.held = dict(held or {})
        self.failing = set(failing)
        self.calls = 0

    async def __call__(self, symbol):
        self.calls += 1
        await asyncio.sleep(0)
        if symbol in self.failing:
            return PositionReading.unknown('timeout')
        return PositionReading.confirmed(self.held.get(symbol, 0.0), 0.0)


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_denies_when_cap_reached():
    async def _run():
        table = PositionTable(held={'A': 1.0, 'B': 2.0})
        admission = AdmissionController(['A', 'B', 'C'], table, max_concurrent=2)
        assert await admission.count_active() == 2
        assert await admission.can_open('C') is False

    asyncio.run(_run())


def test_concurrent_admissions_never_exceed_cap():
    async def _run():
        symbols = [f"S{i}" for i in range(6)]
        admission = AdmissionController(symbols, PositionTable(), max_concurrent=2)
        granted = await asyncio.gather(*(admission.can_open(s) for s in symbols))
        assert sum(granted) == 2
        assert await admission.count_active() == 2

    asyncio.run(_run())


def test_pending_flag_survives_failed_query():
    async def _run():
        table = PositionTable(failing={'A'})
        clock = ManualClock()
        admission = AdmissionController(['A', 'B'], table, max_concurrent=1, confirm_grace_s=10, clock=clock)
        assert await admission.can_open('A')
        clock.now += 60
        assert await admission.is_active('A') is True
        assert 'A' in admission.pending
        assert await admission.can_open('B') is False

    asyncio.run(_run())


def test_flat_reading_clears_flag_only_after_grace():
    async def _run():
        clock = ManualClock()
        admission = AdmissionController(['A'], PositionTable(), max_concurrent=1, confirm_grace_s=30, clock=clock)
        assert await admission.can_open('A')
        # A fresh fill the position source has not booked yet still counts
        assert await admission.is_active('A') is True
        clock.now += 31
        assert await admission.is_active('A') is False
        assert admission.pending == set()

    asyncio.run(_run())


def test_release_and_confirm_flat_free_the_slot():
    async def _run():
        admission = AdmissionController(['A', 'B'], PositionTable(), max_concurrent=1)
        assert await admission.can_open('A')
        admission.release('A')
        assert await admission.can_open('B')
        admission.confirm_flat('B')
        assert await admission.count_active() == 0

    asyncio.run(_run())


def test_unlisted_instrument_is_tracked_on_admission():
    async def _run():
        admission = AdmissionController([], PositionTable(held={'X': 1.0}), max_concurrent=5)
        assert await admission.can_open('X')
        assert admission.instruments == ['X']

    asyncio.run(_run())
