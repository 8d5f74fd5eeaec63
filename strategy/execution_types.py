from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class OrderRef:
    """Normalized view of an order acknowledgement across live and dry-run flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    time_in_force: Optional[str] = None
    order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.order_id:
            return self.order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "time_in_force": self.time_in_force,
        }


@dataclass(frozen=True)
class ExitFill:
    """Outcome of one executed (or simulated) exit, as written to the trade journal."""

    symbol: str
    qty: float
    fill_price: float
    avg_cost: float
    reason: str
    mode: str
    realized_pnl: float
    fee: float = 0.0
    slippage_bps: float = 0.0
    order_id: Optional[str] = None


@dataclass(frozen=True)
class EntryFill:
    symbol: str
    qty: float
    price: float
    mode: str
    order_id: Optional[str] = None
