import logging
import math
import uuid
from typing import Optional

from api.metrics import metrics
from ingest.broker import BrokerClient, PositionReading
from monitoring.async_utils import RetryPolicy, with_backoff
from strategy.errors import InvalidOrder, NoQuote
from strategy.execution_types import EntryFill, ExitFill
from strategy.simulators.paper import SimulatedLedger


logger = logging.getLogger(__name__)

DRY_RUN = 'DRY_RUN'
LIVE = 'LIVE'


class ExecutionManager:
    """Route quotes, position reads and orders to the live broker or the simulated ledger.

    Every call to the external collaborator goes through ``with_backoff``.
    """

    def __init__(
        self,
        broker: Optional[BrokerClient],
        ledger: SimulatedLedger,
        dry_run: bool = True,
        retry: Optional[RetryPolicy] = None,
    ):
        self.broker = broker
        self.ledger = ledger
        self.paper_mode = dry_run
        self.retry = retry or RetryPolicy()

    @property
    def mode(self) -> str:
        return DRY_RUN if self.paper_mode else LIVE

    async def _call(self, fn, name: str):
        return await with_backoff(fn, name, policy=self.retry, on_retry=metrics.record_retry)

    @staticmethod
    def _client_order_id() -> str:
        # One id per logical order, reused by every retry attempt
        return str(uuid.uuid4())

    def _require_broker(self) -> BrokerClient:
        if self.broker is None:
            raise RuntimeError("No broker client configured for live execution")
        return self.broker

    async def get_quote(self, symbol: str) -> float:
        if self.broker is None:
            raise NoQuote(f"No quote source configured for {symbol}", symbol)
        price = await self._call(lambda: self.broker.get_quote(symbol), f"quote:{symbol}")
        if price is None or not math.isfinite(price) or price <= 0:
            raise NoQuote(f"Invalid quote {price!r} for {symbol}", symbol)
        return float(price)

    async def position(self, symbol: str) -> PositionReading:
        """Authoritative quantity and average cost, or an explicit ``unknown``."""
        try:
            if self.paper_mode:
                snap = await self.ledger.get_quantity_and_avg_cost(symbol)
            else:
                broker = self._require_broker()
                snap = await self._call(lambda: broker.get_quantity_and_avg_cost(symbol), f"position:{symbol}")
        except Exception as exc:
            logger.warning("Position query for %s failed: %s", symbol, exc)
            return PositionReading.unknown(str(exc))
        return PositionReading.confirmed(snap.qty, snap.avg_cost)

    async def place_entry(self, symbol: str, qty: float, price: float, time_in_force: str = 'gtc') -> EntryFill:
        if qty is None or qty <= 0 or not math.isfinite(qty):
            raise InvalidOrder(f"Invalid entry quantity {qty}", symbol)
        if self.paper_mode:
            position = await self.ledger.open(symbol, qty, price, note='momentum-entry')
            metrics.record_entry(DRY_RUN)
            logger.info("[DRY RUN] Momentum BUY %s qty=%s at %s (avg %.6f)", symbol, qty, price, position.avg_cost)
            return EntryFill(symbol, qty, price, DRY_RUN)

        broker = self._require_broker()
        client_order_id = self._client_order_id()
        order = await self._call(
            lambda: broker.place_market_buy(symbol, qty, time_in_force, client_order_id),
            f"buy:{symbol}",
        )
        metrics.record_entry(LIVE)
        logger.info("Momentum BUY placed %s qty=%s orderId=%s price=%s", symbol, qty, order.id, price)
        return EntryFill(symbol, qty, price, LIVE, order.id)

    async def cancel_stale_exits(self, symbol: str) -> int:
        """Best-effort cancel of resting sell orders for ``symbol``; failures are logged, not raised."""
        if self.paper_mode:
            return 0
        broker = self._require_broker()
        try:
            orders = await self._call(broker.list_open_sell_orders, 'openOrders')
        except Exception as exc:
            logger.warning("Listing open sell orders for %s failed: %s", symbol, exc)
            return 0
        cancelled = 0
        for order in orders:
            if order.symbol and order.symbol != symbol:
                continue
            try:
                if await self._call(lambda: broker.cancel_order(order), f"cancel:{order.id}"):
                    cancelled += 1
            except Exception as exc:
                logger.warning("Cancel of order %s for %s failed: %s", order.id, symbol, exc)
        metrics.record_order_cancelled(cancelled)
        if cancelled:
            logger.info("Cancelled %s stale sell orders for %s", cancelled, symbol)
        return cancelled

    async def exit_limit(
        self,
        symbol: str,
        qty: float,
        limit_price: float,
        avg_cost: float,
        reason: str,
        time_in_force: str = 'gfd',
    ) -> ExitFill:
        if self.paper_mode:
            return await self._simulate_exit(symbol, qty, limit_price, reason)
        broker = self._require_broker()
        client_order_id = self._client_order_id()
        order = await self._call(
            lambda: broker.place_limit_exit(symbol, qty, limit_price, time_in_force, client_order_id),
            f"limitSell:{symbol}",
        )
        logger.info("Placed LIMIT sell %s qty=%s target=%s orderId=%s", symbol, qty, limit_price, order.id)
        return self._live_fill(symbol, qty, limit_price, avg_cost, reason, order.id)

    async def exit_market(
        self,
        symbol: str,
        qty: float,
        mark_price: float,
        avg_cost: float,
        reason: str,
        time_in_force: str = 'gfd',
    ) -> ExitFill:
        if self.paper_mode:
            return await self._simulate_exit(symbol, qty, mark_price, reason)
        broker = self._require_broker()
        client_order_id = self._client_order_id()
        order = await self._call(
            lambda: broker.place_market_exit(symbol, qty, time_in_force, client_order_id),
            f"marketSell:{symbol}",
        )
        logger.info("Placed MARKET sell %s qty=%s mark=%s orderId=%s", symbol, qty, mark_price, order.id)
        return self._live_fill(symbol, qty, mark_price, avg_cost, reason, order.id)

    async def _simulate_exit(self, symbol: str, qty: float, raw_price: float, reason: str) -> ExitFill:
        result = await self.ledger.close(symbol, qty, raw_price, note=reason)
        return ExitFill(
            symbol=symbol,
            qty=result.closed_qty,
            fill_price=result.fill_price,
            avg_cost=result.avg_cost,
            reason=reason,
            mode=DRY_RUN,
            realized_pnl=result.realized_pnl,
            fee=result.fee,
            slippage_bps=result.slippage_bps,
            order_id=result.order_id,
        )

    @staticmethod
    def _live_fill(symbol: str, qty: float, price: float, avg_cost: float, reason: str, order_id: str) -> ExitFill:
        # The actual fill arrives asynchronously; journal the intended price
        return ExitFill(
            symbol=symbol,
            qty=qty,
            fill_price=price,
            avg_cost=avg_cost,
            reason=reason,
            mode=LIVE,
            realized_pnl=(price - avg_cost) * qty,
            order_id=order_id,
        )

    async def close(self) -> None:
        if self.broker is not None:
            await self.broker.close()
