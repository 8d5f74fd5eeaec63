import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

from config.settings import MomentumRule


logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = 'insufficient_data'
BELOW_THRESHOLD = 'below_threshold'
COOLING_DOWN = 'cooldown'
OUT_OF_ORDER = 'out_of_order'
FIRED = 'fired'


@dataclass(frozen=True)
class PriceSample:
    timestamp: float  # epoch seconds
    price: float


@dataclass(frozen=True)
class SignalDecision:
    instrument: str
    reason: str
    pct_change: Optional[float] = None
    price: Optional[float] = None
    timestamp: Optional[float] = None
    previous_buy_ts: float = 0.0

    @property
    def fired(self) -> bool:
        return self.reason == FIRED

    @property
    def insufficient(self) -> bool:
        return self.reason == INSUFFICIENT_DATA


@dataclass
class MomentumWindow:
    """Newest-last price samples for one instrument."""

    samples: Deque[PriceSample] = field(default_factory=deque)
    last_buy_ts: float = 0.0

    def append(self, sample: PriceSample, lookback_s: float, retention_s: float) -> bool:
        if self.samples and sample.timestamp <= self.samples[-1].timestamp:
            return False
        self.samples.append(sample)
        now = sample.timestamp
        cutoff = now - retention_s
        while self.samples and self.samples[0].timestamp < cutoff:
            self.samples.popleft()
        # Only the newest sample at or before the lookback boundary can ever be the baseline
        boundary = now - lookback_s
        while len(self.samples) >= 2 and self.samples[1].timestamp <= boundary:
            self.samples.popleft()
        return True

    def baseline(self, lookback_s: float, now: float) -> Optional[PriceSample]:
        boundary = now - lookback_s
        base = None
        for sample in self.samples:
            if sample.timestamp <= boundary:
                base = sample
            else:
                break
        return base

    def __len__(self) -> int:
        return len(self.samples)


def pct_change(window: MomentumWindow, lookback_s: float, now: float) -> Optional[float]:
    if len(window) < 2:
        return None
    base = window.baseline(lookback_s, now)
    if base is None:
        return None
    last = window.samples[-1].price
    if not math.isfinite(base.price) or not math.isfinite(last) or base.price <= 0:
        return None
    return (last - base.price) / base.price * 100.0


class MomentumDetector:
    """Turns per-instrument price streams into buy decisions gated by threshold and cooldown.

    ``observe`` contains no suspension point, so the cooldown check and the
    ``last_buy_ts`` update happen atomically with respect to other tasks on the
    event loop.
    """

    def __init__(self, rules: Iterable[MomentumRule], slack_minutes: float = 30.0):
        self.rules: Dict[str, MomentumRule] = {rule.instrument: rule for rule in rules}
        self.slack_s = slack_minutes * 60.0
        self.windows: Dict[str, MomentumWindow] = {}

    def window(self, instrument: str) -> MomentumWindow:
        return self.windows.setdefault(instrument, MomentumWindow())

    def observe(self, instrument: str, sample: PriceSample) -> SignalDecision:
        rule = self.rules.get(instrument)
        if rule is None:
            raise KeyError(f"No momentum rule for {instrument}")

        lookback_s = rule.lookback_minutes * 60.0
        window = self.window(instrument)
        if not window.append(sample, lookback_s, lookback_s + self.slack_s):
            logger.debug("Ignoring out-of-order sample for %s at %s", instrument, sample.timestamp)
            return SignalDecision(instrument, OUT_OF_ORDER, None, None, sample.timestamp, window.last_buy_ts)

        now = sample.timestamp
        change = pct_change(window, lookback_s, now)
        previous = window.last_buy_ts
        if change is None:
            return SignalDecision(instrument, INSUFFICIENT_DATA, None, sample.price, now, previous)
        if change < rule.threshold_pct:
            return SignalDecision(instrument, BELOW_THRESHOLD, change, sample.price, now, previous)
        if now - previous < rule.cooldown_minutes * 60.0:
            return SignalDecision(instrument, COOLING_DOWN, change, sample.price, now, previous)

        window.last_buy_ts = now
        logger.info(
            "Momentum signal for %s: %.2f%% over %.0f min (threshold %.2f%%)",
            instrument,
            change,
            rule.lookback_minutes,
            rule.threshold_pct,
        )
        return SignalDecision(instrument, FIRED, change, sample.price, now, previous)

    def rewind(self, decision: SignalDecision) -> None:
        """Undo the cooldown consumed by a fired decision whose entry did not happen."""
        if not decision.fired:
            return
        window = self.windows.get(decision.instrument)
        if window is not None and window.last_buy_ts == decision.timestamp:
            window.last_buy_ts = decision.previous_buy_ts

    def snapshot(self) -> List[Dict]:
        return [
            {
                'instrument': symbol,
                'samples': len(window),
                'last_price': window.samples[-1].price if window.samples else None,
                'last_buy_ts': window.last_buy_ts,
            }
            for symbol, window in self.windows.items()
        ]
