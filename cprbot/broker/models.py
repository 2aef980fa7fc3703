"""Broker data models — typed representations of Kite Connect API objects."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    oi: Optional[int] = None  # open interest, futures/options only


@dataclass(frozen=True)
class Quote:
    """Latest market snapshot for one instrument.

    Replaced wholesale on every update; no history is kept.
    """

    instrument_id: str
    last_price: float
    open: float
    high: float
    low: float
    close: float
    volume: int
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Instrument:
    """Tradable instrument metadata from the exchange catalog."""

    instrument_id: str  # Kite instrument token
    symbol: str  # tradingsymbol, e.g. "NIFTY25OCT24500CE"
    exchange: str
    tick_size: float
    lot_size: int
    active: bool = True
    name: str = ""  # underlying, e.g. "NIFTY"
    instrument_type: str = ""  # "CE", "PE", "FUT", "EQ", ...
    strike: float = 0.0
    expiry: Optional[date] = None


@dataclass(frozen=True)
class OrderRequest:
    """A market order request payload."""

    instrument_id: str
    symbol: str
    exchange: str
    transaction_type: str  # "BUY" or "SELL"
    quantity: int
    order_type: str = "MARKET"
    product: str = "MIS"  # intraday


@dataclass(frozen=True)
class OrderResponse:
    """Response from placing an order."""

    order_id: str
    instrument_id: str
    transaction_type: str
    quantity: int
