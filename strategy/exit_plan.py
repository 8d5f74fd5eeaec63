import math
from dataclasses import dataclass
from typing import Optional

from config.settings import TickerConfig
from orchestration.overrides import OverrideRecord


CONFIG = 'config'
OVERRIDES_ABSOLUTE = 'overrides:absolute'
OVERRIDES_PERCENT = 'overrides:percent'


@dataclass(frozen=True)
class ExitPlan:
    target: float
    stop: float
    effective_stop: float
    trail_pct: float
    source: str

    def to_dict(self):
        return {
            'target': self.target,
            'stop': self.stop,
            'effective_stop': self.effective_stop,
            'trail_pct': self.trail_pct,
            'source': self.source,
        }


def trailing_stop(stop: float, high_water: Optional[float], trail_pct: float) -> float:
    """Ratchet ``stop`` up to ``high_water * (1 - trail_pct/100)``; never lowers it."""
    if not trail_pct or trail_pct <= 0 or high_water is None or not math.isfinite(high_water):
        return stop
    return max(stop, high_water * (1 - trail_pct / 100.0))


def compute_exit_plan(
    ticker: TickerConfig,
    override: OverrideRecord,
    avg_cost: Optional[float],
    high_water: Optional[float],
) -> ExitPlan:
    target, stop, source = ticker.target, ticker.stop, CONFIG

    if override.mode == 'absolute':
        if override.target is not None:
            target = override.target
        if override.stop is not None:
            stop = override.stop
        source = OVERRIDES_ABSOLUTE
    elif override.mode == 'percent' and avg_cost is not None and avg_cost > 0:
        if override.target_pct is not None:
            target = avg_cost * (1 + override.target_pct / 100.0)
        if override.stop_pct is not None:
            stop = avg_cost * (1 - override.stop_pct / 100.0)
        source = OVERRIDES_PERCENT

    trail_pct = override.trail_pct if override.trail_pct is not None else ticker.trail_pct
    return ExitPlan(
        target=target,
        stop=stop,
        effective_stop=trailing_stop(stop, high_water, trail_pct or 0.0),
        trail_pct=trail_pct or 0.0,
        source=source,
    )
