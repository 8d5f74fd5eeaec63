import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Set

from ingest.broker import PositionReading


logger = logging.getLogger(__name__)

PositionSource = Callable[[str], Awaitable[PositionReading]]


class AdmissionController:
    """Global cap on the number of instruments holding an open position.

    An instrument counts as active when an authoritative read shows quantity
    above zero, or when it was recently opened and no read has yet confirmed a
    flat position. Failed reads leave the flag in place, so availability is
    undercounted rather than the cap exceeded. A flat reading only clears a
    flag older than ``confirm_grace_s``; a broker that has not yet booked a
    fresh fill reports zero too.
    """

    def __init__(
        self,
        instruments: Iterable[str],
        position_source: PositionSource,
        max_concurrent: int,
        confirm_grace_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.instruments: List[str] = list(dict.fromkeys(instruments))
        self.position_source = position_source
        self.max_concurrent = max_concurrent
        self.confirm_grace_s = confirm_grace_s
        self.clock = clock
        self._pending: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> Set[str]:
        return set(self._pending)

    def track(self, instrument: str) -> None:
        if instrument not in self.instruments:
            self.instruments.append(instrument)

    async def is_active(self, instrument: str) -> bool:
        reading = await self.position_source(instrument)
        if reading.holding:
            return True
        flagged_at = self._pending.get(instrument)
        if flagged_at is None:
            return False
        if reading.known:
            if self.clock() - flagged_at >= self.confirm_grace_s:
                self._pending.pop(instrument, None)
                return False
            return True
        logger.warning(
            "Position query for %s failed (%s); counting it as active",
            instrument,
            reading.error,
        )
        return True

    async def count_active(self) -> int:
        results = await asyncio.gather(*(self.is_active(symbol) for symbol in self.instruments))
        return sum(1 for active in results if active)

    async def can_open(self, instrument: str) -> bool:
        """Admit and reserve a slot for ``instrument`` if the cap allows it."""
        async with self._lock:
            self.track(instrument)
            active = await self.count_active()
            if active >= self.max_concurrent:
                logger.info(
                    "Max concurrent positions reached (%s/%s); denying entry for %s",
                    active,
                    self.max_concurrent,
                    instrument,
                )
                return False
            self._pending[instrument] = self.clock()
            return True

    def release(self, instrument: str) -> None:
        """Drop a reservation whose entry order never happened."""
        self._pending.pop(instrument, None)

    def confirm_flat(self, instrument: str) -> None:
        """Clear the flag after this process itself closed the whole position."""
        self._pending.pop(instrument, None)

    async def refresh(self) -> int:
        async with self._lock:
            return await self.count_active()
