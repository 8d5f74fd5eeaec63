import asyncio
import json
import logging
import math
import uuid
from typing import Any, Dict, List, Optional

import aiohttp

from ingest.broker import BrokerClient, PositionSnapshot, aggregate_positions
from strategy.errors import BrokerAPIError, InvalidOrder, NoQuote
from strategy.execution_types import OrderRef


logger = logging.getLogger(__name__)

OPEN_STATES = {"queued", "unconfirmed", "confirmed", "partially_filled", "open", "new"}


class RESTBrokerClient(BrokerClient):
    """JSON-over-HTTP broker adapter.

    Endpoints: ``GET /quotes/{symbol}``, ``GET /positions``, ``GET /orders``,
    ``POST /orders`` and ``POST /orders/{id}/cancel``. Authentication is a
    bearer token.
    """

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout_s: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token or None
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        async with session.request(
            method.upper(),
            f"{self.base_url}{path}",
            params=params,
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise BrokerAPIError(resp.status, text)
            if not text:
                return None
            try:
                return json.loads(text)
            except ValueError:
                return text

    async def get_quote(self, symbol: str) -> float:
        data = await self._request("GET", f"/quotes/{symbol}")
        if isinstance(data, dict) and isinstance(data.get("results"), list) and data["results"]:
            data = data["results"][0]
        price = None
        if isinstance(data, dict):
            for key in ("price", "last_trade_price", "mark_price"):
                value = data.get(key)
                if value is None:
                    continue
                try:
                    price = float(value)
                except (TypeError, ValueError):
                    continue
                break
        if price is None or not math.isfinite(price) or price <= 0:
            logger.warning("No quote for %s", symbol)
            raise NoQuote(f"No quote for {symbol}", symbol)
        logger.debug("Quote %s=%s", symbol, price)
        return price

    async def get_quantity_and_avg_cost(self, symbol: str) -> PositionSnapshot:
        data = await self._request("GET", "/positions")
        if isinstance(data, dict):
            data = data.get("results") or []
        if not isinstance(data, list):
            data = []
        snapshot = aggregate_positions(symbol, data)
        logger.debug("Position %s qty=%s avg=%s", symbol, snapshot.qty, snapshot.avg_cost)
        return snapshot

    async def place_market_buy(
        self, symbol: str, qty: float, time_in_force: str = "gtc", client_order_id: Optional[str] = None
    ) -> OrderRef:
        return await self._place(symbol, "buy", "market", qty, None, time_in_force, client_order_id)

    async def place_limit_exit(
        self,
        symbol: str,
        qty: float,
        price: float,
        time_in_force: str = "gfd",
        client_order_id: Optional[str] = None,
    ) -> OrderRef:
        if not price or price <= 0 or not math.isfinite(price):
            raise InvalidOrder(f"Invalid limit price {price}", symbol)
        return await self._place(symbol, "sell", "limit", qty, price, time_in_force, client_order_id)

    async def place_market_exit(
        self, symbol: str, qty: float, time_in_force: str = "gfd", client_order_id: Optional[str] = None
    ) -> OrderRef:
        return await self._place(symbol, "sell", "market", qty, None, time_in_force, client_order_id)

    async def _place(
        self,
        symbol: str,
        side: str,
        order_type: str,
        qty: float,
        price: Optional[float],
        time_in_force: str,
        client_order_id: Optional[str] = None,
    ) -> OrderRef:
        if not qty or qty <= 0 or not math.isfinite(qty):
            raise InvalidOrder(f"Invalid quantity {qty}", symbol)
        body: Dict[str, Any] = {
            "client_order_id": client_order_id or str(uuid.uuid4()),
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": str(qty),
            "time_in_force": time_in_force,
        }
        if price is not None:
            body["price"] = str(price)
        logger.info("Placing %s %s %s qty=%s price=%s", order_type, side, symbol, qty, price)
        data = await self._request("POST", "/orders", body=body)
        ticket = self._parse_order(data) if isinstance(data, dict) else None
        if ticket is None:
            ticket = OrderRef(
                symbol=symbol,
                side=side.upper(),
                type=order_type,
                quantity=qty,
                price=price,
                time_in_force=time_in_force,
                order_id=body["client_order_id"],
            )
        return ticket

    async def cancel_order(self, order: OrderRef) -> bool:
        if not order.order_id:
            return False
        await self._request("POST", f"/orders/{order.order_id}/cancel")
        logger.info("Cancelled order %s (%s)", order.order_id, order.symbol)
        return True

    async def list_open_sell_orders(self) -> List[OrderRef]:
        data = await self._request("GET", "/orders")
        if isinstance(data, dict):
            data = data.get("results") or []
        if not isinstance(data, list):
            return []
        orders: List[OrderRef] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            if (item.get("side") or "").lower() != "sell":
                continue
            if (item.get("state") or item.get("status") or "").lower() not in OPEN_STATES:
                continue
            ticket = self._parse_order(item)
            if ticket:
                orders.append(ticket)
        return orders

    @staticmethod
    def _parse_order(payload: Dict[str, Any]) -> Optional[OrderRef]:
        order_id = payload.get("id") or payload.get("client_order_id")
        if order_id is None:
            return None
        try:
            quantity = float(payload.get("quantity") or 0.0)
        except (TypeError, ValueError):
            quantity = 0.0
        price = payload.get("price")
        try:
            price = float(price) if price is not None else None
        except (TypeError, ValueError):
            price = None
        return OrderRef(
            symbol=(payload.get("symbol") or "").upper(),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "market",
            quantity=quantity,
            status=payload.get("state") or payload.get("status"),
            price=price,
            time_in_force=payload.get("time_in_force"),
            order_id=str(order_id),
            raw=payload,
        )
