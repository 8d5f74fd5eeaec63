import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from api.alerts import AlertWebhook
from api.metrics import metrics, start_metrics_server
from config import ConfigError, MomentumRule, Settings, load_config
from ingest.broker import BrokerClient
from ingest.broker_rest import RESTBrokerClient
from monitoring.async_utils import RetryPolicy, run_tasks_with_cleanup
from monitoring.logging_utils import for_instrument, setup_logging
from monitoring.trade_journal import TradeJournal
from orchestration.overrides import OverrideStore
from orchestration.scheduler import PollingScheduler
from risk.admission import AdmissionController
from risk.position_sizer import OrderSizer
from strategy.bracket import BracketManager, PositionState
from strategy.errors import InstrumentGated, InvalidOrder
from strategy.execution import ExecutionManager
from strategy.market_hours import ExchangeCalendar
from strategy.momentum import MomentumDetector, PriceSample, SignalDecision
from strategy.simulators.paper import SimulatedLedger


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradingSystem:
    """Own every per-instrument state map and drive one tick per instrument per interval."""

    def __init__(
        self,
        settings: Settings,
        broker: Optional[BrokerClient] = None,
        calendar: Optional[ExchangeCalendar] = None,
        alerts: Optional[AlertWebhook] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        runtime = settings.runtime
        files = settings.files

        self.clock = clock
        self.running = False
        self.retry = RetryPolicy.from_settings(settings.retry)
        self.broker = broker if broker is not None else RESTBrokerClient(
            settings.broker.base_url,
            settings.broker.api_token,
            settings.broker.timeout_s,
        )
        self.ledger = SimulatedLedger(files.ledger, runtime.dry_run_slippage_bps, runtime.dry_run_fee)
        self.execution = ExecutionManager(self.broker, self.ledger, runtime.dry_run, self.retry)
        self.overrides = OverrideStore(files.overrides, settings.monitoring.overrides_watch_s)
        self.calendar = calendar or ExchangeCalendar.from_settings(settings.calendar)
        self.journal = TradeJournal(files.trades_csv, files.mtm_csv)
        self.alerts = alerts or AlertWebhook(settings.monitoring.alert_webhook)

        self.instruments = settings.instruments()
        self.detector = MomentumDetector(settings.momentum, runtime.momentum_slack_minutes)
        self.sizer = OrderSizer()
        self.admission = AdmissionController(
            [rule.instrument for rule in settings.momentum] or self.instruments,
            self.execution.position,
            runtime.max_concurrent,
        )
        self.bracket = BracketManager(
            {ticker.symbol: ticker for ticker in settings.tickers},
            runtime,
            self.overrides,
            self.execution,
            self.calendar,
            journal=self.journal,
            admission=self.admission,
        )
        self.scheduler = PollingScheduler(
            self._safe_tick,
            {symbol: settings.poll_ms_for(symbol) / 1000.0 for symbol in self.instruments},
        )

    @property
    def mode(self) -> str:
        return self.execution.mode

    async def tick(self, instrument: str) -> None:
        """Quote, observe momentum, maybe enter, then evaluate the bracket."""
        log = for_instrument(logger, instrument)
        if self.bracket.is_closed(instrument):
            log.debug("Closed for this session; skipping")
            return
        now = self.clock()
        if self.bracket.is_gated(instrument, now):
            log.debug("Outside trading hours; skipping")
            return

        price = await self.execution.get_quote(instrument)
        metrics.update_price(instrument, price)

        rule = self.settings.rule_for(instrument)
        if rule is not None:
            decision = self.detector.observe(instrument, PriceSample(now.timestamp(), price))
            log.debug("Momentum check: %s (%s)", decision.reason, decision.pct_change)
            if decision.fired:
                metrics.record_signal(instrument)
                if self.bracket.position(instrument).state is PositionState.NO_POSITION:
                    if await self._enter(rule, decision, now):
                        # Exits are evaluated from the next tick on
                        return
                else:
                    log.info("Momentum signal ignored; position already open")
                    self.detector.rewind(decision)

        transitions = await self.bracket.evaluate(instrument, price, now)
        for transition in transitions:
            if transition.fill is not None:
                await self.alerts.exit_alert(transition.fill)
        if any(t.to_state in ('closed', 'no_position') for t in transitions):
            metrics.update_active_positions(await self.admission.refresh())

    async def _enter(self, rule: MomentumRule, decision: SignalDecision, now: datetime) -> bool:
        instrument = rule.instrument
        log = for_instrument(logger, instrument)
        if not await self.admission.can_open(instrument):
            metrics.record_entry_denied()
            self.detector.rewind(decision)
            return False
        try:
            qty = self.sizer.quantity(instrument, rule.order, decision.price)
            entry = await self.execution.place_entry(instrument, qty, decision.price, rule.order.time_in_force)
        except InvalidOrder:
            # Would be rejected again on the next tick; the signal keeps its cooldown
            self.admission.release(instrument)
            raise
        except Exception:
            self.admission.release(instrument)
            self.detector.rewind(decision)
            raise

        await self.bracket.on_entry(entry, now)
        bracket = rule.post_buy_bracket
        if bracket is not None and bracket.is_set:
            await self.overrides.set_percent(instrument, bracket.target_pct, bracket.stop_pct, bracket.trail_pct)
            log.info(
                "Post-buy bracket set: target %s%% stop %s%% trail %s%%",
                bracket.target_pct,
                bracket.stop_pct,
                bracket.trail_pct,
            )
        metrics.update_active_positions(len(self.admission.pending))
        await self.alerts.entry_alert(instrument, entry.qty, entry.price, decision.pct_change, entry.mode)
        return True

    async def _safe_tick(self, instrument: str) -> None:
        started = time.perf_counter()
        try:
            await self.tick(instrument)
        except asyncio.CancelledError:
            raise
        except InstrumentGated:
            return
        except Exception as exc:
            for_instrument(logger, instrument).error("Tick failed: %s: %s", type(exc).__name__, exc)
            metrics.record_tick_failure(instrument, type(exc).__name__)
            await self.alerts.tick_failure_alert(instrument, exc)
        else:
            metrics.record_tick(instrument, time.perf_counter() - started)

    async def run_once(self) -> None:
        await self.scheduler.run_once()

    def reset_instrument(self, instrument: str) -> bool:
        return self.bracket.reset(instrument.upper())

    def status(self) -> Dict:
        return {
            'running': self.running,
            'mode': self.mode,
            'instruments': self.instruments,
            'positions': self.bracket.snapshot(),
            'pending_entries': sorted(self.admission.pending),
            'momentum': self.detector.snapshot(),
            'session': self.journal.session,
        }

    async def initialize(self) -> None:
        self.overrides.watch()
        port = self.settings.monitoring.prometheus_port
        if port:
            start_metrics_server(port)
        logger.info(
            "Trading system ready (%s): %s",
            self.mode,
            ", ".join(self.instruments) or "no instruments",
        )

    async def start(self):
        self.running = True
        await self.initialize()
        tasks = self.scheduler.start()

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.scheduler.stop()
        await self.overrides.stop()
        await self.execution.close()
        logger.info("Trading system stopped")


async def main():
    settings = Settings.from_config(load_config())
    setup_logging(log_file=settings.files.log_file)
    system = TradingSystem(settings)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except ConfigError as exc:
        setup_logging()
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)
