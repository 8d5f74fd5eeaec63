import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ingest.broker import PositionSnapshot
from orchestration.persistence import JsonDocument
from strategy.errors import InvalidOrder, NoPosition


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_state() -> Dict[str, Any]:
    return {"positions": {}, "orders": [], "trades": []}


@dataclass(frozen=True)
class LedgerPosition:
    symbol: str
    qty: float
    avg_cost: float
    opened_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"qty": self.qty, "avg_cost": self.avg_cost, "opened_at": self.opened_at}


@dataclass(frozen=True)
class CloseResult:
    symbol: str
    closed_qty: float
    raw_price: float
    fill_price: float
    avg_cost: float
    fee: float
    slippage_bps: float
    realized_pnl: float
    remaining_qty: float
    order_id: str


class SimulatedLedger:
    """Dry-run broker: keeps positions, orders and trades in a persisted JSON document."""

    def __init__(self, path: str, slippage_bps: float = 0.0, fee: float = 0.0) -> None:
        self.document = JsonDocument(path, default_factory=default_state)
        self.slippage_bps = float(slippage_bps or 0.0)
        self.fee = float(fee or 0.0)

    def apply_slippage(self, price: float) -> float:
        if not math.isfinite(self.slippage_bps) or self.slippage_bps <= 0:
            return price
        return price * (1 - self.slippage_bps / 10000.0)

    async def open(self, symbol: str, qty: float, price: float, note: str = "api-open") -> LedgerPosition:
        symbol = str(symbol or "").upper()
        qty = self._coerce(qty)
        price = self._coerce(price)
        if not symbol or qty is None or price is None or qty <= 0 or price <= 0:
            raise InvalidOrder(f"Invalid symbol/qty/price: {symbol!r} {qty} {price}", symbol or None)

        order_id = f"dry-{uuid.uuid4().hex[:8]}"

        def _mutate(state: Dict[str, Any]) -> LedgerPosition:
            _ensure_shape(state)
            cur = state["positions"].get(symbol) or {"qty": 0.0, "avg_cost": 0.0}
            cur_qty = float(cur.get("qty", 0.0))
            cur_avg = float(cur.get("avg_cost", 0.0))
            new_qty = cur_qty + qty
            new_avg = (cur_qty * cur_avg + qty * price) / new_qty
            opened_at = cur.get("opened_at") or _now_iso()
            state["positions"][symbol] = {"qty": new_qty, "avg_cost": new_avg, "opened_at": opened_at}
            ts = _now_iso()
            state["trades"].append({
                "t": ts, "symbol": symbol, "side": "BUY", "qty": qty, "price": price, "realized": 0.0,
            })
            state["orders"].append({
                "t": ts, "id": order_id, "kind": "market", "side": "BUY",
                "symbol": symbol, "qty": qty, "price": price, "note": note,
            })
            return LedgerPosition(symbol, new_qty, new_avg, opened_at)

        _, position = await self.document.update(_mutate)
        logger.info("[DRY] open %s qty=%s price=%s avg=%.6f", symbol, qty, price, position.avg_cost)
        return position

    async def close(self, symbol: str, qty: float, price: float, note: str = "api-close") -> CloseResult:
        symbol = str(symbol or "").upper()
        qty = self._coerce(qty)
        price = self._coerce(price)
        if qty is None or price is None or qty <= 0 or price <= 0:
            raise InvalidOrder(f"Invalid qty/price: {qty} {price}", symbol or None)

        fill = self.apply_slippage(price)
        order_id = f"dry-{uuid.uuid4().hex[:8]}"

        def _mutate(state: Dict[str, Any]) -> CloseResult:
            _ensure_shape(state)
            cur = state["positions"].get(symbol)
            if not cur or float(cur.get("qty", 0.0)) <= 0:
                raise NoPosition(f"No position for {symbol}", symbol)
            held = float(cur["qty"])
            avg_cost = float(cur.get("avg_cost", 0.0))
            sell_qty = min(qty, held)
            realized = sell_qty * (fill - avg_cost) - self.fee
            remaining = held - sell_qty
            if remaining <= 0:
                del state["positions"][symbol]
                remaining = 0.0
            else:
                state["positions"][symbol] = {**cur, "qty": remaining}
            ts = _now_iso()
            state["trades"].append({
                "t": ts, "symbol": symbol, "side": "SELL", "qty": sell_qty,
                "price": fill, "fee": self.fee, "realized": realized,
            })
            state["orders"].append({
                "t": ts, "id": order_id, "kind": "market", "side": "SELL",
                "symbol": symbol, "qty": sell_qty, "price": fill, "note": note,
            })
            return CloseResult(
                symbol=symbol,
                closed_qty=sell_qty,
                raw_price=price,
                fill_price=fill,
                avg_cost=avg_cost,
                fee=self.fee,
                slippage_bps=self.slippage_bps,
                realized_pnl=realized,
                remaining_qty=remaining,
                order_id=order_id,
            )

        _, result = await self.document.update(_mutate)
        logger.info(
            "[DRY] close %s qty=%s fill=%.6f realized=%.4f",
            symbol,
            result.closed_qty,
            result.fill_price,
            result.realized_pnl,
        )
        return result

    async def list_positions(self) -> Dict[str, LedgerPosition]:
        state = await self.document.read()
        positions = state.get("positions") or {}
        return {
            symbol: LedgerPosition(symbol, float(p.get("qty", 0.0)), float(p.get("avg_cost", 0.0)), p.get("opened_at"))
            for symbol, p in positions.items()
        }

    async def position(self, symbol: str) -> Optional[LedgerPosition]:
        return (await self.list_positions()).get(symbol.upper())

    async def get_quantity_and_avg_cost(self, symbol: str) -> PositionSnapshot:
        pos = await self.position(symbol)
        if pos is None:
            return PositionSnapshot(0.0, 0.0)
        return PositionSnapshot(pos.qty, pos.avg_cost)

    async def journal(self) -> Dict[str, List[Dict[str, Any]]]:
        state = await self.document.read()
        return {"orders": list(state.get("orders") or []), "trades": list(state.get("trades") or [])}

    async def unrealized(self, symbol: str, mark: float) -> float:
        pos = await self.position(symbol)
        if pos is None:
            return 0.0
        return (mark - pos.avg_cost) * pos.qty

    @staticmethod
    def _coerce(value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None


def _ensure_shape(state: Dict[str, Any]) -> None:
    for key, empty in default_state().items():
        if not isinstance(state.get(key), type(empty)):
            state[key] = empty
