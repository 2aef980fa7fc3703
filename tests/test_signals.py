"""Tests for cprbot.strategy.signals — breakout evaluation and the execution gate."""

import random
from datetime import datetime, timezone

import pytest

from cprbot.errors import InvalidInputError
from cprbot.strategy.models import (
    Direction,
    SignalStrength,
    TradingSignal,
    TriggerReason,
)
from cprbot.strategy.pivots import PivotLevels, calculate_pivot_levels
from cprbot.strategy.signals import (
    classify_strength,
    evaluate_signal,
    is_executable,
    risk_reward,
)


def _levels(tc: float, bc: float, r1: float, s1: float) -> PivotLevels:
    """Levels with a central range narrower than R1/S1, so breakouts pay."""
    return PivotLevels(
        pivot=(tc + bc) / 2,
        r1=r1, r2=r1 + 20, r3=r1 + 40,
        s1=s1, s2=s1 - 20, s3=s1 - 40,
        top_central=tc, bottom_central=bc,
        prev_high=tc + 2, prev_low=bc - 2,
    )


NARROW = _levels(tc=105.0, bc=100.0, r1=130.0, s1=75.0)
NOW = datetime(2025, 1, 8, 4, 30, tzinfo=timezone.utc)


# ── Direction rules ──────────────────────────────────────────────────────


class TestEvaluateSignal:
    def test_buy_above_top_central(self):
        sig = evaluate_signal("256265", 106.0, NARROW, False, now=NOW)
        assert sig is not None
        assert sig.direction == Direction.BUY
        assert sig.reason == TriggerReason.PRICE_ABOVE_CPR
        assert sig.stop_loss_price == 100.0
        assert sig.target_price == 130.0
        assert sig.trigger_price == 106.0
        assert sig.quantity == 0
        assert sig.timestamp == NOW
        assert sig.risk_reward_ratio == pytest.approx(4.0)

    def test_sell_below_bottom_central(self):
        sig = evaluate_signal("256265", 99.0, NARROW, False, now=NOW)
        assert sig is not None
        assert sig.direction == Direction.SELL
        assert sig.reason == TriggerReason.PRICE_BELOW_CPR
        assert sig.stop_loss_price == 105.0
        assert sig.target_price == 75.0

    @pytest.mark.parametrize("price", [100.0, 102.5, 105.0])
    def test_inside_range_no_signal(self, price):
        assert evaluate_signal("256265", price, NARROW, False) is None

    def test_open_position_suppresses_signal(self):
        assert evaluate_signal("256265", 106.0, NARROW, True) is None

    @pytest.mark.parametrize("seed", range(25))
    def test_open_position_never_signals(self, seed):
        rng = random.Random(seed)
        price = rng.uniform(1.0, 300.0)
        assert evaluate_signal("X", price, NARROW, True) is None

    @pytest.mark.parametrize("price", [0.0, -10.0])
    def test_non_positive_price_raises(self, price):
        with pytest.raises(InvalidInputError):
            evaluate_signal("256265", price, NARROW, False)


# ── Risk-reward gate ─────────────────────────────────────────────────────


class TestRiskRewardGate:
    def test_exactly_one_point_five_passes(self):
        # risk = 112 - 100 = 12, reward = 130 - 112 = 18 → 1.5
        lv = _levels(tc=110.0, bc=100.0, r1=130.0, s1=80.0)
        sig = evaluate_signal("X", 112.0, lv, False)
        assert sig is not None
        assert sig.risk_reward_ratio == pytest.approx(1.5)

    def test_just_below_one_point_five_rejected(self):
        lv = _levels(tc=110.0, bc=100.0, r1=129.99, s1=80.0)
        assert evaluate_signal("X", 112.0, lv, False) is None

    @pytest.mark.parametrize("seed", range(25))
    def test_levels_from_ohlc_never_clear_the_gate(self, seed):
        """With TC = R1 the target sits behind the entry, so RR < 1."""
        rng = random.Random(seed)
        low = rng.uniform(100, 20000)
        high = low + rng.uniform(1, 400)
        close = rng.uniform(low, high)
        lv = calculate_pivot_levels(high, low, close)
        price = rng.uniform(low * 0.9, high * 1.1)
        assert evaluate_signal("X", price, lv, False) is None

    def test_risk_reward_zero_risk(self):
        assert risk_reward(100.0, 120.0, 100.0) == 0.0


# ── Strength / confidence ────────────────────────────────────────────────


class TestStrengthAndConfidence:
    @pytest.mark.parametrize("width,expected", [
        (11.99, SignalStrength.STRONG),
        (12.0, SignalStrength.MODERATE),
        (25.0, SignalStrength.MODERATE),
        (25.01, SignalStrength.WEAK),
    ])
    def test_classify_strength(self, width, expected):
        lv = _levels(tc=1000.0 + width, bc=1000.0, r1=1200.0, s1=800.0)
        assert classify_strength(lv) == expected

    def test_narrow_with_extension(self):
        # narrow +0.2, 1/105 > 0.5% beyond TC +0.15
        sig = evaluate_signal("X", 106.0, NARROW, False)
        assert sig.strength == SignalStrength.STRONG
        assert sig.confidence == pytest.approx(0.85)

    def test_normal_width_barely_through(self):
        lv = _levels(tc=120.0, bc=100.0, r1=200.0, s1=20.0)
        sig = evaluate_signal("X", 120.1, lv, False)
        assert sig.strength == SignalStrength.MODERATE
        assert sig.confidence == pytest.approx(0.5)
        assert not is_executable(sig)

    def test_normal_width_extended_is_executable(self):
        lv = _levels(tc=120.0, bc=100.0, r1=200.0, s1=20.0)
        sig = evaluate_signal("X", 121.0, lv, False)
        assert sig.confidence == pytest.approx(0.65)
        assert is_executable(sig)

    def test_wide_range_is_weak_and_not_executable(self):
        lv = _levels(tc=130.0, bc=100.0, r1=200.0, s1=30.0)
        sig = evaluate_signal("X", 131.0, lv, False)
        assert sig.strength == SignalStrength.WEAK
        assert not is_executable(sig)


# ── Execution gate ───────────────────────────────────────────────────────


def _signal(confidence: float, strength: SignalStrength) -> TradingSignal:
    return TradingSignal(
        instrument_id="X",
        direction=Direction.BUY,
        strength=strength,
        reason=TriggerReason.PRICE_ABOVE_CPR,
        trigger_price=106.0,
        target_price=130.0,
        stop_loss_price=100.0,
        confidence=confidence,
    )


class TestIsExecutable:
    def test_confidence_must_exceed_threshold(self):
        assert not is_executable(_signal(0.6, SignalStrength.STRONG))
        assert is_executable(_signal(0.61, SignalStrength.STRONG))

    def test_strength_floor_is_moderate(self):
        assert is_executable(_signal(0.9, SignalStrength.MODERATE))
        assert not is_executable(_signal(0.9, SignalStrength.WEAK))


class TestTradingSignal:
    def test_confidence_clamped(self):
        assert _signal(1.7, SignalStrength.STRONG).confidence == 1.0
        assert _signal(-0.2, SignalStrength.STRONG).confidence == 0.0

    def test_rejects_non_positive_prices(self):
        with pytest.raises(InvalidInputError):
            TradingSignal("X", Direction.BUY, SignalStrength.STRONG,
                          TriggerReason.PRICE_ABOVE_CPR, 0.0, 130.0, 100.0)

    def test_unsized_signal_not_valid(self):
        sig = _signal(0.9, SignalStrength.STRONG)
        assert not sig.is_valid
