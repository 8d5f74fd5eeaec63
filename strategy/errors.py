from typing import Optional


class TradingError(Exception):
    """Base class for failures raised by the trading core."""

    def __init__(self, message: str, instrument: Optional[str] = None):
        self.instrument = instrument
        super().__init__(message)


class NoQuote(TradingError):
    """The quote service could not provide a finite positive price."""


class InvalidOrder(TradingError):
    """Quantity or price is malformed; never retried."""


class NoPosition(TradingError):
    """A close was requested for an instrument with no holdings."""


class OverridesLocked(TradingError):
    """A persisted document is held by another writer; transient."""


class InstrumentGated(TradingError):
    """The instrument is outside trading hours or closed for this process."""


class BrokerAPIError(TradingError):
    def __init__(self, status: int, body: str, instrument: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(f"Broker API error (status={status}, body={body[:200]})", instrument)


NON_RETRYABLE = (InvalidOrder, NoPosition, InstrumentGated)
