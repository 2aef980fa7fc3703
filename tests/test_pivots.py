"""Tests for cprbot.strategy.pivots — CPR level math."""

import random
from datetime import date, datetime

import pytest

from cprbot.broker.models import Candle
from cprbot.errors import InvalidInputError
from cprbot.strategy.pivots import (
    PivotLevels,
    calculate_pivot_levels,
    in_trading_range,
    levels_from_candles,
    market_sentiment,
)


def _levels(tc: float, bc: float, r1: float = 0.0, s1: float = 0.0) -> PivotLevels:
    """Hand-built levels with an arbitrary central range."""
    pivot = (tc + bc) / 2
    return PivotLevels(
        pivot=pivot,
        r1=r1 or tc, r2=tc + 50, r3=tc + 100,
        s1=s1 or bc, s2=bc - 50, s3=bc - 100,
        top_central=tc, bottom_central=bc,
        prev_high=tc + 5, prev_low=bc - 5,
    )


# ── calculate_pivot_levels ───────────────────────────────────────────────


class TestCalculatePivotLevels:
    def test_nifty_example(self):
        """H=20100, L=19900, C=20000 → P=20000, R1=20100, S1=19900."""
        lv = calculate_pivot_levels(20100, 19900, 20000)
        assert lv.pivot == pytest.approx(20000.0)
        assert lv.r1 == pytest.approx(20100.0)
        assert lv.s1 == pytest.approx(19900.0)
        assert lv.r2 == pytest.approx(20200.0)
        assert lv.s2 == pytest.approx(19800.0)
        assert lv.r3 == pytest.approx(20300.0)
        assert lv.s3 == pytest.approx(19700.0)
        assert lv.top_central == pytest.approx(lv.r1)
        assert lv.bottom_central == pytest.approx(lv.s1)
        assert lv.width == pytest.approx(200.0)
        assert lv.is_wide
        assert lv.width_class == "wide"

    def test_small_range_is_narrow(self):
        # width = r1 - s1 = high - low = 10
        lv = calculate_pivot_levels(105.0, 95.0, 100.0)
        assert lv.width == pytest.approx(10.0)
        assert lv.is_narrow
        assert not lv.is_wide
        assert lv.width_class == "narrow"

    def test_prev_day_range(self):
        lv = calculate_pivot_levels(120.0, 100.0, 110.0)
        assert lv.prev_high == 120.0
        assert lv.prev_low == 100.0
        assert lv.prev_day_range == pytest.approx(20.0)

    @pytest.mark.parametrize("high,low,close", [
        (0, 100, 100),
        (100, 0, 100),
        (100, 90, -1),
    ])
    def test_rejects_non_positive(self, high, low, close):
        with pytest.raises(InvalidInputError):
            calculate_pivot_levels(high, low, close)

    def test_invalid_input_is_value_error(self):
        with pytest.raises(ValueError):
            calculate_pivot_levels(-5, 1, 1)

    @pytest.mark.parametrize("seed", range(20))
    def test_ordering_holds_for_consistent_ohlc(self, seed):
        """s3 <= s2 <= s1 <= pivot <= r1 <= r2 <= r3 whenever low <= close <= high."""
        rng = random.Random(seed)
        low = rng.uniform(50, 30000)
        high = low + rng.uniform(0, 500)
        close = rng.uniform(low, high)
        lv = calculate_pivot_levels(high, low, close)
        eps = 1e-6
        assert lv.s3 <= lv.s2 + eps
        assert lv.s2 <= lv.s1 + eps
        assert lv.s1 <= lv.pivot + eps
        assert lv.pivot <= lv.r1 + eps
        assert lv.r1 <= lv.r2 + eps
        assert lv.r2 <= lv.r3 + eps
        assert lv.top_central >= lv.bottom_central


# ── Width thresholds ─────────────────────────────────────────────────────


class TestWidthClass:
    @pytest.mark.parametrize("width,expected", [
        (11.99, "narrow"),
        (12.0, "normal"),
        (25.0, "normal"),
        (25.01, "wide"),
    ])
    def test_boundaries(self, width, expected):
        lv = _levels(tc=1000.0 + width, bc=1000.0)
        assert lv.width_class == expected


# ── levels_from_candles ──────────────────────────────────────────────────


class TestLevelsFromCandles:
    def _candle(self, day: int, high: float, low: float, close: float) -> Candle:
        return Candle(datetime(2025, 1, day, 0, 0), close, high, low, close, 1000)

    def test_uses_last_candle_before_session(self):
        candles = [
            self._candle(6, 200, 180, 190),
            self._candle(7, 120, 100, 110),
            self._candle(8, 999, 900, 950),  # today's partial bar
        ]
        lv = levels_from_candles(candles, date(2025, 1, 8))
        assert lv.prev_high == 120
        assert lv.prev_low == 100

    def test_unordered_input(self):
        candles = [self._candle(7, 120, 100, 110), self._candle(3, 200, 180, 190)]
        lv = levels_from_candles(candles, date(2025, 1, 8))
        assert lv.prev_high == 120

    def test_no_prior_candle_raises(self):
        with pytest.raises(InvalidInputError, match="no daily candle"):
            levels_from_candles([self._candle(8, 120, 100, 110)], date(2025, 1, 8))


# ── Sentiment / trading range ────────────────────────────────────────────


class TestSentiment:
    def test_above_r1_is_bullish(self):
        lv = _levels(tc=105, bc=100, r1=130, s1=75)
        assert market_sentiment(131, lv) == "BULLISH"

    def test_below_s1_is_bearish(self):
        lv = _levels(tc=105, bc=100, r1=130, s1=75)
        assert market_sentiment(70, lv) == "BEARISH"

    def test_inside_range_is_sideways(self):
        lv = _levels(tc=105, bc=100, r1=130, s1=75)
        assert market_sentiment(102, lv) == "SIDEWAYS"

    def test_between_tc_and_r1_is_bias(self):
        lv = _levels(tc=105, bc=100, r1=130, s1=75)
        assert market_sentiment(110, lv) == "BULLISH_BIAS"
        assert market_sentiment(90, lv) == "BEARISH_BIAS"

    def test_trading_range_zones(self):
        lv = calculate_pivot_levels(20100, 19900, 20000)
        # prev_high == r1 here, so the zone is the single point 20100
        assert in_trading_range(20100, lv) == "PDH_R1"
        assert in_trading_range(19900, lv) == "S1_PDL"
        assert in_trading_range(20000, lv) is None


class TestIdentities:
    @pytest.mark.parametrize("seed", range(20))
    def test_pivot_and_r1_s1_identity(self, seed):
        rng = random.Random(1000 + seed)
        low = rng.uniform(1, 50000)
        high = low + rng.uniform(0, 1000)
        close = rng.uniform(low, high)
        lv = calculate_pivot_levels(high, low, close)
        assert lv.pivot == pytest.approx((high + low + close) / 3)
        assert lv.r1 + lv.s1 == pytest.approx(4 * lv.pivot - (low + high))
