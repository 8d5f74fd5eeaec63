import asyncio
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from strategy.execution_types import ExitFill


logger = logging.getLogger(__name__)

PLACEHOLDER_MARKER = 'your-webhook-url'


class AlertWebhook:
    """Posts entry, exit and tick-failure notices to a JSON webhook.

    Without a usable URL every alert is only logged.
    """

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        usable = bool(url) and PLACEHOLDER_MARKER not in str(url)
        self.webhook_url = url if usable else None
        self.enabled = usable
        self.timeout_s = timeout_s

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict[str, Any]] = None) -> bool:
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook %s returned status %s", alert_type, response.status)
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("[Alert] Webhook %s failed: %s", alert_type, exc)
            return False
        return True

    async def exit_alert(self, fill: ExitFill) -> bool:
        return await self.send_alert(
            'exit',
            f'{fill.symbol} {fill.reason}: sold {fill.qty} at {fill.fill_price:.6f} (pnl {fill.realized_pnl:.4f})',
            'info',
            {
                'symbol': fill.symbol,
                'reason': fill.reason,
                'qty': fill.qty,
                'fill_price': fill.fill_price,
                'realized_pnl': fill.realized_pnl,
                'mode': fill.mode,
            },
        )

    async def entry_alert(self, symbol: str, qty: float, price: float, pct_change: Optional[float], mode: str) -> bool:
        change = f"{pct_change:.2f}%" if pct_change is not None else "n/a"
        return await self.send_alert(
            'entry',
            f'{symbol} momentum buy {qty} at {price} ({change})',
            'info',
            {'symbol': symbol, 'qty': qty, 'price': price, 'pct_change': pct_change, 'mode': mode},
        )

    async def tick_failure_alert(self, symbol: str, error: BaseException) -> bool:
        return await self.send_alert(
            'tick_failure',
            f'{symbol} tick failed: {type(error).__name__}: {error}',
            'warning',
            {'symbol': symbol, 'error': type(error).__name__},
        )
