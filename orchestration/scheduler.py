import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)

TickFn = Callable[[str], Awaitable[None]]


class PollingScheduler:
    """Fixed-interval driver with one evaluation task per instrument per interval.

    A tick for an instrument is skipped while its previous tick is still in
    flight, so ticks for the same instrument never overlap. Instruments sharing
    an interval share one timer loop.
    """

    def __init__(self, tick: TickFn, intervals_s: Mapping[str, float]):
        self.tick = tick
        self.intervals_s = dict(intervals_s)
        self.running = False
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._loops: List[asyncio.Task] = []

    def groups(self) -> Dict[float, List[str]]:
        grouped: Dict[float, List[str]] = {}
        for instrument, interval in self.intervals_s.items():
            grouped.setdefault(float(interval), []).append(instrument)
        return grouped

    def in_flight(self, instrument: str) -> bool:
        task = self._in_flight.get(instrument)
        return task is not None and not task.done()

    def dispatch(self, instruments: Optional[Iterable[str]] = None) -> List[asyncio.Task]:
        """Start a tick for each idle instrument; returns the tasks started."""
        started: List[asyncio.Task] = []
        for instrument in instruments if instruments is not None else self.intervals_s:
            if self.in_flight(instrument):
                logger.debug("Tick for %s still running; skipping", instrument)
                metrics.record_tick_skipped(instrument)
                continue
            task = asyncio.create_task(self.tick(instrument), name=f"tick:{instrument}")
            task.add_done_callback(self._log_crash)
            self._in_flight[instrument] = task
            started.append(task)
        return started

    async def run_once(self, instruments: Optional[Iterable[str]] = None) -> None:
        tasks = self.dispatch(instruments)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self, interval_s: float, instruments: List[str]) -> None:
        logger.info("Polling %s every %.1fs", ", ".join(instruments), interval_s)
        while self.running:
            self.dispatch(instruments)
            try:
                await asyncio.sleep(interval_s)
            except asyncio.CancelledError:
                break

    def start(self) -> List[asyncio.Task]:
        if self.running:
            return self._loops
        self.running = True
        self._loops = [
            asyncio.create_task(self._loop(interval, instruments), name=f"poll:{interval}")
            for interval, instruments in self.groups().items()
        ]
        return self._loops

    async def stop(self) -> None:
        self.running = False
        for task in self._loops:
            task.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        pending = [task for task in self._in_flight.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight.clear()

    @staticmethod
    def _log_crash(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s crashed: %s", task.get_name(), exc)
