import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from api.metrics import metrics
from config.settings import RuntimeSettings, TickerConfig
from ingest.broker import PositionReading, is_crypto
from monitoring.logging_utils import for_instrument
from monitoring.trade_journal import TradeJournal
from orchestration.overrides import OverrideRecord, OverrideStore
from strategy.execution import ExecutionManager
from strategy.execution_types import EntryFill, ExitFill
from strategy.exit_plan import ExitPlan, compute_exit_plan
from strategy.market_hours import ExchangeCalendar


logger = logging.getLogger(__name__)

EOD_CLOSEOUT = 'eod_closeout'
TARGET_HIT = 'target_hit'
STOP_HIT = 'stop_hit'


class PositionState(Enum):
    NO_POSITION = "no_position"
    OPEN = "open"
    CLOSING_REQUESTED = "closing_requested"
    CLOSED = "closed"


@dataclass
class ClosureState:
    closed: bool
    reason: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {'closed': self.closed, 'reason': self.reason, 'ts': self.timestamp}


@dataclass
class TrackedPosition:
    instrument: str
    quantity: float = 0.0
    avg_cost: float = 0.0
    opened_at: Optional[float] = None
    high_water_price: Optional[float] = None
    state: PositionState = PositionState.NO_POSITION
    closure: Optional[ClosureState] = None
    pending_confirmation: bool = False
    eod_done_on: Optional[date] = None

    def to_dict(self) -> Dict:
        return {
            'instrument': self.instrument,
            'state': self.state.value,
            'quantity': self.quantity,
            'avg_cost': self.avg_cost,
            'opened_at': self.opened_at,
            'high_water_price': self.high_water_price,
            'pending_confirmation': self.pending_confirmation,
            'closure': self.closure.to_dict() if self.closure else None,
        }


@dataclass
class Transition:
    instrument: str
    from_state: str
    to_state: str
    action: str
    fill: Optional[ExitFill] = None


class BracketManager:
    """Per-instrument exit state machine: NoPosition -> Open -> ClosingRequested -> Closed.

    Closed is terminal until :meth:`reset`. Quantity and average cost are read
    through the execution layer every tick; the tracked copy only drives
    state decisions and the trailing high-water mark.
    """

    def __init__(
        self,
        tickers: Mapping[str, TickerConfig],
        runtime: RuntimeSettings,
        overrides: OverrideStore,
        execution: ExecutionManager,
        calendar: ExchangeCalendar,
        journal: Optional[TradeJournal] = None,
        admission=None,
        confirm_grace_s: float = 60.0,
    ):
        self.tickers = dict(tickers)
        self.runtime = runtime
        self.overrides = overrides
        self.execution = execution
        self.calendar = calendar
        self.journal = journal
        self.admission = admission
        self.confirm_grace_s = confirm_grace_s
        self.positions: Dict[str, TrackedPosition] = {}

    def position(self, instrument: str) -> TrackedPosition:
        return self.positions.setdefault(instrument, TrackedPosition(instrument))

    def ticker_for(self, instrument: str) -> TickerConfig:
        ticker = self.tickers.get(instrument)
        if ticker is None:
            # Momentum-only instruments are exited through overrides alone
            ticker = TickerConfig.open_bracket(instrument)
            self.tickers[instrument] = ticker
        return ticker

    def is_closed(self, instrument: str) -> bool:
        pos = self.positions.get(instrument)
        return pos is not None and pos.state is PositionState.CLOSED

    def is_gated(self, instrument: str, now: Optional[datetime] = None) -> bool:
        if is_crypto(instrument) or not self.runtime.market_hours_only:
            return False
        return not self.calendar.is_open(now)

    def closures(self) -> Dict[str, Dict]:
        return {
            symbol: pos.closure.to_dict()
            for symbol, pos in self.positions.items()
            if pos.closure is not None
        }

    def snapshot(self) -> List[Dict]:
        return [pos.to_dict() for pos in self.positions.values()]

    def reset(self, instrument: str) -> bool:
        """Clear a closure so the instrument is evaluated again."""
        pos = self.positions.get(instrument)
        if pos is None or pos.state is not PositionState.CLOSED:
            return False
        self.positions[instrument] = TrackedPosition(instrument)
        logger.info("Closure for %s reset (was %s)", instrument, pos.closure.reason if pos.closure else None)
        return True

    async def on_entry(self, entry: EntryFill, now: Optional[datetime] = None) -> TrackedPosition:
        log = for_instrument(logger, entry.symbol)
        now = now or datetime.now(timezone.utc)
        pos = self.position(entry.symbol)
        previous = pos.state
        pos.state = PositionState.OPEN
        pos.quantity = entry.qty
        pos.avg_cost = entry.price
        pos.opened_at = now.timestamp()
        pos.high_water_price = entry.price
        pos.pending_confirmation = True
        pos.eod_done_on = None

        reading = await self.execution.position(entry.symbol)
        if reading.has_avg_cost:
            pos.avg_cost = reading.avg_cost
        else:
            await self.overrides.upsert(entry.symbol, {'avg_cost': entry.price})
            log.info("Seeded avgCost %.6f from entry price", entry.price)
        log.info("%s -> open qty=%s avg=%.6f", previous.value, pos.quantity, pos.avg_cost)
        return pos

    async def evaluate(self, instrument: str, price: float, now: Optional[datetime] = None) -> List[Transition]:
        """Run one exit evaluation for ``instrument`` at ``price``."""
        log = for_instrument(logger, instrument)
        now = now or datetime.now(timezone.utc)
        pos = self.position(instrument)
        if pos.state in (PositionState.CLOSED, PositionState.CLOSING_REQUESTED):
            return []

        reading = await self.execution.position(instrument)
        if not reading.known:
            log.warning("Position unknown (%s); skipping exit evaluation", reading.error)
            return []

        transitions: List[Transition] = []
        if not self._sync_position(pos, reading, price, now, transitions):
            return transitions

        held = reading.qty
        pos.high_water_price = max(pos.high_water_price or price, price)
        override = await self.overrides.get(instrument)
        avg_cost = await self._resolve_avg_cost(pos, reading, override, price)
        ticker = self.ticker_for(instrument)
        plan = compute_exit_plan(ticker, override, avg_cost, pos.high_water_price)

        if self.journal is not None:
            await asyncio.to_thread(self.journal.record_mark, instrument, price, held, avg_cost)

        eod = await self._eod_closeout(pos, ticker, override, price, avg_cost, held, now)
        if eod is not None:
            return transitions + eod

        exit_qty = min(ticker.qty or held, held)
        if price >= plan.target:
            log.info("Target hit: price %.6f >= %.6f (%s)", price, plan.target, plan.source)
            transitions += await self._exit(pos, ticker, exit_qty, held, plan.target, avg_cost, TARGET_HIT, limit=True)
        elif price <= plan.effective_stop:
            log.info(
                "Stop hit: price %.6f <= %.6f (stop %.6f, trail %.2f%%, %s)",
                price,
                plan.effective_stop,
                plan.stop,
                plan.trail_pct,
                plan.source,
            )
            transitions += await self._exit(pos, ticker, exit_qty, held, price, avg_cost, STOP_HIT, limit=False)
        else:
            log.debug(
                "Holding: price=%.6f target=%.6f stop=%.6f hw=%.6f",
                price,
                plan.target,
                plan.effective_stop,
                pos.high_water_price,
            )
        return transitions

    def exit_plan(self, instrument: str, avg_cost: Optional[float] = None) -> ExitPlan:
        """Plan from cached overrides, for display."""
        pos = self.position(instrument)
        return compute_exit_plan(
            self.ticker_for(instrument),
            self.overrides.get_cached(instrument),
            avg_cost if avg_cost is not None else pos.avg_cost,
            pos.high_water_price,
        )

    def _sync_position(
        self,
        pos: TrackedPosition,
        reading: PositionReading,
        price: float,
        now: datetime,
        transitions: List[Transition],
    ) -> bool:
        """Reconcile tracked state with the authoritative reading; False means nothing to evaluate."""
        log = for_instrument(logger, pos.instrument)
        if pos.state is PositionState.NO_POSITION:
            if not reading.holding:
                return False
            pos.state = PositionState.OPEN
            pos.quantity = reading.qty
            pos.avg_cost = reading.avg_cost
            pos.opened_at = now.timestamp()
            pos.high_water_price = price
            transitions.append(Transition(pos.instrument, 'no_position', 'open', 'adopt_position'))
            log.info("Adopted existing position qty=%s avg=%.6f", reading.qty, reading.avg_cost)
            return True

        if reading.holding:
            pos.pending_confirmation = False
            pos.quantity = reading.qty
            if reading.has_avg_cost:
                pos.avg_cost = reading.avg_cost
            return True

        if pos.pending_confirmation and pos.opened_at is not None:
            if now.timestamp() - pos.opened_at < self.confirm_grace_s:
                log.info("Entry not yet reflected by the position source; waiting")
                return False
            log.warning("Entry never confirmed after %.0fs; dropping tracked position", self.confirm_grace_s)
            action = 'entry_unconfirmed'
        else:
            log.warning("Position closed outside this process")
            action = 'externally_closed'
        self.positions[pos.instrument] = TrackedPosition(pos.instrument)
        if self.admission is not None:
            self.admission.confirm_flat(pos.instrument)
        transitions.append(Transition(pos.instrument, 'open', 'no_position', action))
        return False

    async def _resolve_avg_cost(
        self,
        pos: TrackedPosition,
        reading: PositionReading,
        override: OverrideRecord,
        price: float,
    ) -> float:
        if reading.has_avg_cost:
            return reading.avg_cost
        if override.avg_cost is not None and override.avg_cost > 0:
            return override.avg_cost
        if pos.avg_cost > 0:
            seed = pos.avg_cost
        else:
            seed = price
        await self.overrides.upsert(pos.instrument, {'avg_cost': seed})
        for_instrument(logger, pos.instrument).info("Seeded avgCost %.6f", seed)
        pos.avg_cost = seed
        return seed

    def _eod_policy(self, instrument: str, override: OverrideRecord) -> Tuple[bool, float, float]:
        if is_crypto(instrument):
            enabled = override.eod_close_for_crypto
            if enabled is None:
                enabled = self.runtime.eod_close_for_crypto
        else:
            enabled = override.eod_close
            if enabled is None:
                enabled = self.runtime.eod_close_enabled
        cutoff = override.eod_cutoff_min if override.eod_cutoff_min is not None else self.runtime.eod_cutoff_minutes
        pct = override.eod_close_pct if override.eod_close_pct is not None else self.runtime.eod_close_partial_pct
        return bool(enabled), cutoff, pct

    async def _eod_closeout(
        self,
        pos: TrackedPosition,
        ticker: TickerConfig,
        override: OverrideRecord,
        price: float,
        avg_cost: float,
        held: float,
        now: datetime,
    ) -> Optional[List[Transition]]:
        enabled, cutoff, pct = self._eod_policy(pos.instrument, override)
        if not enabled or held <= 0 or not self.calendar.is_trading_day(now):
            return None
        session_day = self.calendar.local(now).date()
        if pos.eod_done_on == session_day:
            return None
        to_close = self.calendar.minutes_to_close(now)
        if not (0 <= to_close <= cutoff):
            return None
        close_qty = math.floor(held * pct / 100.0)
        if close_qty <= 0:
            return None
        for_instrument(logger, pos.instrument).info(
            "EOD closeout: %.1f min to close, selling %s of %s (%.0f%%)", to_close, close_qty, held, pct
        )
        transitions = await self._exit(pos, ticker, close_qty, held, price, avg_cost, EOD_CLOSEOUT, limit=False)
        if pos.state is PositionState.OPEN:
            pos.eod_done_on = session_day
        return transitions

    async def _exit(
        self,
        pos: TrackedPosition,
        ticker: TickerConfig,
        qty: float,
        held: float,
        price: float,
        avg_cost: float,
        reason: str,
        limit: bool,
    ) -> List[Transition]:
        log = for_instrument(logger, pos.instrument)
        pos.state = PositionState.CLOSING_REQUESTED
        try:
            await self.execution.cancel_stale_exits(pos.instrument)
            if limit:
                fill = await self.execution.exit_limit(
                    pos.instrument, qty, price, avg_cost, reason, ticker.time_in_force
                )
            else:
                fill = await self.execution.exit_market(
                    pos.instrument, qty, price, avg_cost, reason, ticker.time_in_force
                )
        except Exception:
            pos.state = PositionState.OPEN
            log.error("%s exit failed; position stays open", reason)
            raise

        metrics.record_exit(reason, fill.mode)
        metrics.record_pnl(fill.realized_pnl)
        if self.journal is not None:
            await asyncio.to_thread(self.journal.record_exit, fill)

        # Target and stop exits are final; an EOD closeout only when it sold everything
        if reason != EOD_CLOSEOUT or qty >= held:
            pos.state = PositionState.CLOSED
            pos.quantity = max(0.0, held - qty)
            pos.closure = ClosureState(True, reason)
            if self.admission is not None:
                self.admission.confirm_flat(pos.instrument)
            to_state = 'closed'
        else:
            pos.state = PositionState.OPEN
            pos.quantity = held - qty
            to_state = 'open'
        log.info("Exit %s qty=%s fill=%.6f -> %s", reason, fill.qty, fill.fill_price, to_state)
        return [Transition(pos.instrument, 'open', to_state, reason, fill)]
