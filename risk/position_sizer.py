import logging
import math

from config.settings import OrderSizing
from ingest.broker import is_crypto
from strategy.errors import InvalidOrder


logger = logging.getLogger(__name__)


class OrderSizer:
    """Turn a momentum rule's order sizing into an entry quantity.

    Notional sizing buys fractional units: 8 decimals for crypto pairs and
    ``equity_decimals`` for equities, unless the rule asks for whole shares.
    """

    def __init__(self, crypto_decimals: int = 8, equity_decimals: int = 6):
        self.crypto_decimals = crypto_decimals
        self.equity_decimals = equity_decimals

    def quantity(self, symbol: str, sizing: OrderSizing, price: float) -> float:
        if sizing.qty is not None and sizing.qty > 0:
            qty = float(sizing.qty)
        else:
            if not sizing.size_usd or price is None or not math.isfinite(price) or price <= 0:
                raise InvalidOrder(f"Cannot size order from size_usd={sizing.size_usd} price={price}", symbol)
            qty = sizing.size_usd / price

        if sizing.whole_shares and not is_crypto(symbol):
            qty = float(math.floor(qty))
        else:
            decimals = self.crypto_decimals if is_crypto(symbol) else self.equity_decimals
            factor = 10 ** decimals
            qty = math.floor(qty * factor) / factor

        if qty <= 0:
            raise InvalidOrder(f"Order size rounds to zero for {symbol} at {price}", symbol)
        logger.debug("Sized %s entry: qty=%s at %s", symbol, qty, price)
        return qty
