from datetime import datetime, timezone
from typing import Dict, List, Optional

from config.settings import Settings
from ingest.broker import BrokerClient, PositionSnapshot
from strategy.errors import BrokerAPIError, NoQuote
from strategy.execution_types import OrderRef


class FakeBroker(BrokerClient):
    """In-memory quote/position/order service with scriptable failures."""

    def __init__(self, quotes: Optional[Dict[str, float]] = None, report_avg_cost: bool = True):
        self.quotes: Dict[str, float] = dict(quotes or {})
        self.positions: Dict[str, PositionSnapshot] = {}
        self.report_avg_cost = report_avg_cost
        self.book_fills = True
        self.orders: List[OrderRef] = []
        self.open_sells: List[OrderRef] = []
        self.cancelled: List[str] = []
        self.client_order_ids: List[Optional[str]] = []
        self.cancel_failures = 0
        self.quote_failures = 0
        self.position_failures = 0
        self.quote_calls = 0

    async def get_quote(self, symbol: str) -> float:
        self.quote_calls += 1
        if self.quote_failures > 0:
            self.quote_failures -= 1
            raise BrokerAPIError(503, 'unavailable', symbol)
        if symbol not in self.quotes:
            raise NoQuote(f"No quote for {symbol}", symbol)
        return self.quotes[symbol]

    async def get_quantity_and_avg_cost(self, symbol: str) -> PositionSnapshot:
        if self.position_failures > 0:
            self.position_failures -= 1
            raise BrokerAPIError(500, 'positions down', symbol)
        snap = self.positions.get(symbol, PositionSnapshot(0.0, 0.0))
        if not self.report_avg_cost:
            return PositionSnapshot(snap.qty, 0.0)
        return snap

    def _order(self, symbol, side, order_type, qty, price, tif, client_order_id=None) -> OrderRef:
        self.client_order_ids.append(client_order_id)
        order = OrderRef(
            symbol=symbol,
            side=side,
            type=order_type,
            quantity=qty,
            status='confirmed',
            price=price,
            time_in_force=tif,
            order_id=f"ord-{len(self.orders) + 1}",
        )
        self.orders.append(order)
        return order

    async def place_market_buy(self, symbol: str, qty: float, time_in_force: str = 'gtc', client_order_id=None) -> OrderRef:
        price = self.quotes.get(symbol, 0.0)
        if self.book_fills:
            cur = self.positions.get(symbol, PositionSnapshot(0.0, 0.0))
            new_qty = cur.qty + qty
            self.positions[symbol] = PositionSnapshot(new_qty, (cur.qty * cur.avg_cost + qty * price) / new_qty)
        return self._order(symbol, 'BUY', 'market', qty, None, time_in_force, client_order_id)

    def _book_sell(self, symbol: str, qty: float) -> None:
        cur = self.positions.get(symbol)
        if cur is None:
            return
        remaining = cur.qty - qty
        if remaining <= 0:
            del self.positions[symbol]
        else:
            self.positions[symbol] = PositionSnapshot(remaining, cur.avg_cost)

    async def place_limit_exit(self, symbol: str, qty: float, price: float, time_in_force: str = 'gfd',
                               client_order_id=None) -> OrderRef:
        self._book_sell(symbol, qty)
        return self._order(symbol, 'SELL', 'limit', qty, price, time_in_force, client_order_id)

    async def place_market_exit(self, symbol: str, qty: float, time_in_force: str = 'gfd', client_order_id=None) -> OrderRef:
        self._book_sell(symbol, qty)
        return self._order(symbol, 'SELL', 'market', qty, None, time_in_force, client_order_id)

    async def cancel_order(self, order: OrderRef) -> bool:
        if self.cancel_failures > 0:
            self.cancel_failures -= 1
            raise BrokerAPIError(502, 'cancel failed', order.symbol)
        self.cancelled.append(order.id)
        self.open_sells = [o for o in self.open_sells if o.id != order.id]
        return True

    async def list_open_sell_orders(self) -> List[OrderRef]:
        return list(self.open_sells)

    async def close(self) -> None:
        return None


class FakeAlerts:
    def __init__(self):
        self.exits = []
        self.entries = []
        self.failures = []

    async def exit_alert(self, fill):
        self.exits.append(fill)

    async def entry_alert(self, symbol, qty, price, pct_change, mode):
        self.entries.append((symbol, qty, price, pct_change, mode))

    async def tick_failure_alert(self, symbol, error):
        self.failures.append((symbol, error))


class Clock:
    """Settable wall clock for driving ticks at chosen instants."""

    def __init__(self, start: datetime):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at_minutes(self, minutes: float) -> datetime:
        self.now = datetime.fromtimestamp(self.start.timestamp() + minutes * 60, tz=timezone.utc)
        return self.now


def make_settings(tmp_path, runtime=None, momentum=None, tickers=None) -> Settings:
    raw = {
        'runtime': {
            'poll_ms': 30000,
            'max_concurrent': 3,
            'market_hours_only': False,
            'dry_run': True,
            **(runtime or {}),
        },
        'files': {
            'overrides': str(tmp_path / 'overrides.json'),
            'ledger': str(tmp_path / 'sim_state.json'),
            'trades_csv': str(tmp_path / 'trades.csv'),
            'mtm_csv': str(tmp_path / 'mtm.csv'),
            'log_file': None,
        },
        'retry': {'attempts': 3, 'base_delay_s': 0.0, 'max_delay_s': 0.0},
        'momentum': momentum if momentum is not None else [{
            'instrument': 'BTC-USD',
            'threshold_pct': 5.0,
            'lookback_minutes': 60,
            'cooldown_minutes': 180,
            'order': {'size_usd': 100},
            'post_buy_bracket': {'target_pct': 4.0, 'stop_pct': 2.0, 'trail_pct': 0},
        }],
        'tickers': tickers or [],
    }
    return Settings.from_config(raw)
