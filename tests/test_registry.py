"""Tests for cprbot.instruments.registry — catalog, quotes and strike selection."""

from datetime import date

import pandas as pd
import pytest

from cprbot.broker.models import Instrument, Quote
from cprbot.errors import InstrumentNotFoundError
from cprbot.instruments.registry import InstrumentRegistry


def _catalog() -> pd.DataFrame:
    """A small slice of a Kite instruments dump."""
    rows = [
        # token, symbol, name, expiry, strike, tick, lot, type, exchange
        (256265, "NIFTY 50", "NIFTY 50", None, 0.0, 0.0, 0, "EQ", "NSE"),
        (10001, "NIFTY25JAN23400CE", "NIFTY", "2025-01-09", 23400.0, 0.05, 75, "CE", "NFO"),
        (10002, "NIFTY25JAN23400PE", "NIFTY", "2025-01-09", 23400.0, 0.05, 75, "PE", "NFO"),
        (10003, "NIFTY25JAN23450CE", "NIFTY", "2025-01-09", 23450.0, 0.05, 75, "CE", "NFO"),
        (10004, "NIFTY25JAN23500CE", "NIFTY", "2025-01-09", 23500.0, 0.05, 75, "CE", "NFO"),
        (10005, "NIFTY25JAN2323600CE", "NIFTY", "2025-01-16", 23600.0, 0.05, 75, "CE", "NFO"),
    ]
    return pd.DataFrame(rows, columns=[
        "instrument_token", "tradingsymbol", "name", "expiry", "strike",
        "tick_size", "lot_size", "instrument_type", "exchange",
    ])


@pytest.fixture
def registry() -> InstrumentRegistry:
    reg = InstrumentRegistry()
    reg.load_catalog(_catalog())
    return reg


class TestCatalog:
    def test_load_count(self, registry):
        assert len(registry) == 6

    def test_lookup_by_token_symbol_and_exchange(self, registry):
        by_token = registry.lookup("10001")
        assert by_token.symbol == "NIFTY25JAN23400CE"
        assert registry.lookup("NIFTY25JAN23400CE") is by_token
        assert registry.lookup("NFO:NIFTY25JAN23400CE") is by_token
        assert by_token.lot_size == 75
        assert by_token.expiry == date(2025, 1, 9)

    def test_index_defaults(self, registry):
        index = registry.lookup("256265")
        assert index.lot_size == 1
        assert index.expiry is None

    def test_unknown_raises(self, registry):
        with pytest.raises(InstrumentNotFoundError):
            registry.lookup("NOPE")

    def test_not_found_is_key_error(self, registry):
        with pytest.raises(KeyError):
            registry.lot_size_of("NOPE")


class TestQuotes:
    def test_last_write_wins(self):
        reg = InstrumentRegistry([Instrument("1", "ABC", "NSE", 0.05, 1)])
        reg.update_quote(Quote("1", 100.0, 99, 101, 98, 99.5, 10))
        reg.update_quote(Quote("1", 102.0, 99, 103, 98, 99.5, 20))
        assert reg.current_price("1") == 102.0
        assert reg.latest_quote("1").volume == 20

    def test_missing_quote_is_none(self):
        assert InstrumentRegistry().current_price("1") is None


class TestStrikes:
    def test_available_strikes(self, registry):
        assert registry.available_strikes("NIFTY") == [23400.0, 23450.0, 23500.0, 23600.0]
        assert registry.available_strikes("NIFTY", date(2025, 1, 9)) == [
            23400.0, 23450.0, 23500.0,
        ]

    def test_find_closest_strike(self, registry):
        assert registry.find_closest_strike("NIFTY", 23440.0) == 23450.0
        assert registry.find_closest_strike("NIFTY", 23000.0) == 23400.0

    def test_closest_strike_none_listed(self, registry):
        with pytest.raises(InstrumentNotFoundError):
            registry.find_closest_strike("BANKNIFTY", 50000.0)

    def test_option_for(self, registry):
        pe = registry.option_for("NIFTY", 23400.0, "PE")
        assert pe.instrument_id == "10002"
        with pytest.raises(InstrumentNotFoundError):
            registry.option_for("NIFTY", 23450.0, "PE")


class TestNearestExpiry:
    @pytest.mark.parametrize("today,expected", [
        (date(2025, 1, 6), date(2025, 1, 9)),
        (date(2025, 1, 9), date(2025, 1, 9)),   # expiry day itself
        (date(2025, 1, 10), date(2025, 1, 16)),
    ])
    def test_earliest_live_expiry(self, registry, today, expected):
        assert registry.nearest_expiry("NIFTY", today) == expected

    def test_all_expired_raises(self, registry):
        with pytest.raises(InstrumentNotFoundError, match="expiry"):
            registry.nearest_expiry("NIFTY", date(2025, 1, 17))
