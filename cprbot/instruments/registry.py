"""Instrument and quote registry.

Holds the instrument catalog (loaded once per day) and the latest quote
per instrument.  Also answers the option-chain questions the strategy
needs: which strikes exist for an underlying, and which is closest to a
price.
"""

import logging
import math
from datetime import date
from typing import Iterable, Optional

import pandas as pd

from cprbot.broker.models import Instrument, Quote
from cprbot.errors import InstrumentNotFoundError

logger = logging.getLogger("cprbot")

_OPTION_TYPES = ("CE", "PE")


def _expiry_of(value) -> Optional[date]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return pd.Timestamp(value).date()


class InstrumentRegistry:
    """Instrument metadata keyed by token, plus the latest quote for each."""

    def __init__(self, instruments: Iterable[Instrument] = ()) -> None:
        self._by_id: dict[str, Instrument] = {}
        self._by_symbol: dict[str, Instrument] = {}
        self._quotes: dict[str, Quote] = {}
        for instrument in instruments:
            self.add(instrument)

    def __len__(self) -> int:
        return len(self._by_id)

    def add(self, instrument: Instrument) -> None:
        self._by_id[instrument.instrument_id] = instrument
        self._by_symbol[instrument.symbol] = instrument
        self._by_symbol[f"{instrument.exchange}:{instrument.symbol}"] = instrument

    def load_catalog(self, frame: pd.DataFrame) -> int:
        """Add every row of a Kite instrument dump; return rows loaded."""
        count = 0
        for row in frame.to_dict("records"):
            lot = row.get("lot_size")
            lot_size = int(lot) if lot and not pd.isna(lot) else 1
            strike = row.get("strike")
            self.add(
                Instrument(
                    instrument_id=str(row["instrument_token"]),
                    symbol=str(row["tradingsymbol"]),
                    exchange=str(row.get("exchange", "")),
                    tick_size=float(row.get("tick_size") or 0.05),
                    lot_size=max(1, lot_size),
                    name=str(row.get("name") or "") if not pd.isna(row.get("name")) else "",
                    instrument_type=str(row.get("instrument_type") or ""),
                    strike=float(strike) if strike and not pd.isna(strike) else 0.0,
                    expiry=_expiry_of(row.get("expiry")),
                )
            )
            count += 1
        logger.info("Loaded %d instruments (%d total)", count, len(self._by_id))
        return count

    # ── Lookup ───────────────────────────────────────────────────────────

    def lookup(self, symbol_or_token: str) -> Instrument:
        """Find an instrument by token, ``SYMBOL`` or ``EXCHANGE:SYMBOL``.

        Raises:
            InstrumentNotFoundError: If nothing matches.
        """
        key = str(symbol_or_token)
        instrument = self._by_id.get(key) or self._by_symbol.get(key)
        if instrument is None:
            raise InstrumentNotFoundError(f"unknown instrument: {symbol_or_token}")
        return instrument

    def lot_size_of(self, instrument_id: str) -> int:
        return self.lookup(instrument_id).lot_size

    # ── Quotes ───────────────────────────────────────────────────────────

    def update_quote(self, quote: Quote) -> None:
        """Replace the stored quote for the instrument (last write wins)."""
        self._quotes[quote.instrument_id] = quote

    def latest_quote(self, instrument_id: str) -> Optional[Quote]:
        return self._quotes.get(instrument_id)

    def current_price(self, instrument_id: str) -> Optional[float]:
        quote = self._quotes.get(instrument_id)
        return quote.last_price if quote else None

    # ── Option chain ─────────────────────────────────────────────────────

    def _options(self, name: str, expiry: Optional[date]) -> list[Instrument]:
        return [
            i for i in self._by_id.values()
            if i.name == name
            and i.instrument_type in _OPTION_TYPES
            and (expiry is None or i.expiry == expiry)
        ]

    def available_strikes(self, name: str, expiry: Optional[date] = None) -> list[float]:
        """Sorted distinct strikes listed for *name*."""
        return sorted({i.strike for i in self._options(name, expiry)})

    def find_closest_strike(
        self, name: str, price: float, expiry: Optional[date] = None,
    ) -> float:
        """Return the listed strike nearest to *price*.

        Raises:
            InstrumentNotFoundError: If no strikes are listed.
        """
        strikes = self.available_strikes(name, expiry)
        if not strikes:
            raise InstrumentNotFoundError(f"no strikes available for {name}")
        return min(strikes, key=lambda s: abs(s - price))

    def nearest_expiry(self, name: str, today: date) -> date:
        """Earliest listed option expiry for *name* on or after *today*.

        Raises:
            InstrumentNotFoundError: If no live expiry is listed.
        """
        expiries = [
            i.expiry for i in self._options(name, None)
            if i.expiry is not None and i.expiry >= today
        ]
        if not expiries:
            raise InstrumentNotFoundError(f"no live option expiry for {name}")
        return min(expiries)

    def option_for(
        self,
        name: str,
        strike: float,
        option_type: str,
        expiry: Optional[date] = None,
    ) -> Instrument:
        """Return the CE/PE contract for *name* at *strike*.

        Raises:
            InstrumentNotFoundError: If the contract is not listed.
        """
        for instrument in self._options(name, expiry):
            if instrument.strike == strike and instrument.instrument_type == option_type:
                return instrument
        raise InstrumentNotFoundError(
            f"no {option_type} contract for {name} at strike {strike:g}"
        )
