"""Collaborator interfaces for the quote, position and order services.

The core only talks to these abstractions; payload shape differences between
brokers are absorbed here by :func:`normalize_position` so the rest of the code
sees a single typed result.
"""
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from strategy.execution_types import OrderRef

CONFIRMED = 'confirmed'
UNKNOWN = 'unknown'


def is_crypto(symbol: str) -> bool:
    return '-' in symbol


@dataclass(frozen=True)
class PositionSnapshot:
    qty: float
    avg_cost: float


@dataclass(frozen=True)
class PositionReading:
    """Outcome of an authoritative position query: ``confirmed`` or ``unknown``."""

    status: str
    qty: float = 0.0
    avg_cost: float = 0.0
    error: Optional[str] = None

    @classmethod
    def confirmed(cls, qty: float, avg_cost: float) -> 'PositionReading':
        return cls(CONFIRMED, qty, avg_cost)

    @classmethod
    def unknown(cls, error: str) -> 'PositionReading':
        return cls(UNKNOWN, 0.0, 0.0, error)

    @property
    def known(self) -> bool:
        return self.status == CONFIRMED

    @property
    def holding(self) -> bool:
        return self.known and self.qty > 0

    @property
    def has_avg_cost(self) -> bool:
        return math.isfinite(self.avg_cost) and self.avg_cost > 0


def _number(payload: Dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = payload.get(key)
        if value is None or value == '':
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return 0.0


def normalize_position(payload: Optional[Dict[str, Any]]) -> PositionSnapshot:
    if not payload:
        return PositionSnapshot(0.0, 0.0)
    qty = _number(payload, 'quantity', 'qty')
    avg_cost = _number(payload, 'average_cost', 'avg_cost', 'average_buy_price', 'avgCost')
    return PositionSnapshot(qty, avg_cost)


def aggregate_positions(symbol: str, payloads: Iterable[Dict[str, Any]]) -> PositionSnapshot:
    """Combine every lot reported for ``symbol`` into one quantity-weighted snapshot."""
    qty = 0.0
    cost = 0.0
    for payload in payloads:
        if (payload.get('symbol') or payload.get('pair') or '').upper() != symbol:
            continue
        snap = normalize_position(payload)
        if snap.qty > 0:
            qty += snap.qty
            cost += snap.qty * snap.avg_cost
    return PositionSnapshot(qty, cost / qty if qty > 0 else 0.0)


class BrokerClient(ABC):
    """Quote, position and order collaborator used in live mode.

    Order placement takes the caller's ``client_order_id`` so a retried
    request is recognised by the broker as the same order.
    """

    @abstractmethod
    async def get_quote(self, symbol: str) -> float:
        """Return a finite positive price or raise ``NoQuote``."""

    @abstractmethod
    async def get_quantity_and_avg_cost(self, symbol: str) -> PositionSnapshot:
        ...

    @abstractmethod
    async def place_market_buy(
        self, symbol: str, qty: float, time_in_force: str = 'gtc', client_order_id: Optional[str] = None
    ) -> OrderRef:
        ...

    @abstractmethod
    async def place_limit_exit(
        self,
        symbol: str,
        qty: float,
        price: float,
        time_in_force: str = 'gfd',
        client_order_id: Optional[str] = None,
    ) -> OrderRef:
        ...

    @abstractmethod
    async def place_market_exit(
        self, symbol: str, qty: float, time_in_force: str = 'gfd', client_order_id: Optional[str] = None
    ) -> OrderRef:
        ...

    @abstractmethod
    async def cancel_order(self, order: OrderRef) -> bool:
        ...

    @abstractmethod
    async def list_open_sell_orders(self) -> List[OrderRef]:
        ...

    async def close(self) -> None:
        return None
