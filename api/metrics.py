import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.ticks = Counter('ticks_total', 'Instrument ticks evaluated', ['instrument'])
        self.tick_failures = Counter('tick_failures_total', 'Instrument ticks aborted by an error', ['instrument', 'error'])
        self.ticks_skipped = Counter('ticks_skipped_total', 'Ticks skipped because the previous one was in flight', ['instrument'])
        self.tick_latency = Histogram('tick_latency_seconds', 'Wall time of one instrument tick')

        self.momentum_signals = Counter('momentum_signals_total', 'Momentum buy signals fired', ['instrument'])
        self.entries = Counter('entries_total', 'Entry orders placed or simulated', ['mode'])
        self.entries_denied = Counter('entries_denied_total', 'Entries denied by admission control')

        self.exits = Counter('exits_total', 'Exit orders placed or simulated', ['reason', 'mode'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Stale exit orders cancelled')
        self.retries = Counter('external_call_retries_total', 'Retried external calls', ['operation'])

        self.current_price = Gauge('current_price', 'Last observed price', ['instrument'])
        self.active_positions = Gauge('active_positions', 'Instruments currently counted as active')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

    def record_tick(self, instrument: str, latency_seconds: Optional[float] = None):
        self.ticks.labels(instrument=instrument).inc()
        if latency_seconds is not None:
            self.tick_latency.observe(latency_seconds)

    def record_tick_failure(self, instrument: str, error: str):
        self.tick_failures.labels(instrument=instrument, error=error).inc()

    def record_tick_skipped(self, instrument: str):
        self.ticks_skipped.labels(instrument=instrument).inc()

    def update_price(self, instrument: str, price: float):
        self.current_price.labels(instrument=instrument).set(price)

    def record_signal(self, instrument: str):
        self.momentum_signals.labels(instrument=instrument).inc()

    def record_entry(self, mode: str):
        self.entries.labels(mode=mode).inc()

    def record_entry_denied(self):
        self.entries_denied.inc()

    def record_exit(self, reason: str, mode: str):
        self.exits.labels(reason=reason, mode=mode).inc()

    def record_order_cancelled(self, count: int = 1):
        if count > 0:
            self.orders_cancelled.inc(count)

    def record_retry(self, operation: str, attempt: int = 0, error: Optional[BaseException] = None):
        # Label by operation family so per-instrument names do not explode cardinality
        self.retries.labels(operation=operation.split(':', 1)[0]).inc()

    def update_active_positions(self, count: int):
        self.active_positions.set(count)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))


def start_metrics_server(port: int = 9108, port_scan_limit: int = 0) -> Optional[int]:
    """Serve /metrics on the first free port in ``port..port+port_scan_limit``; idempotent."""
    global _METRICS_PORT
    if _METRICS_PORT is not None:
        return _METRICS_PORT
    candidates = range(port, port + max(0, port_scan_limit) + 1)
    for candidate in candidates:
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s in use", candidate)
            continue
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"Unable to bind Prometheus metrics server on ports {candidates.start}-{candidates.stop - 1}")


metrics = MetricsCollector()
