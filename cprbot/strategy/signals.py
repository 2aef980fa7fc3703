"""Entry signal evaluation — pure functions, no I/O.

Given the current price and the session's pivot levels, decides whether
price has broken out of the central range far enough, with enough
reward for the risk taken, to propose a trade.

A breakout above top central proposes a **buy** (stop at bottom central,
target R1); a breakdown below bottom central proposes a **sell** (stop at
top central, target S1).  Inside the range there is no edge.

The generator returns near-miss signals too: whether a signal is strong
enough to trade is decided by :func:`is_executable` at the call site.
"""

from datetime import datetime, timezone
from typing import Optional

from cprbot.errors import InvalidInputError
from cprbot.strategy.models import (
    Direction,
    SignalStrength,
    TradingSignal,
    TriggerReason,
)
from cprbot.strategy.pivots import PivotLevels


MIN_RISK_REWARD = 1.5

BASE_CONFIDENCE = 0.5
NARROW_RANGE_BONUS = 0.2
EXTENSION_BONUS = 0.15
# Price must be this far (fraction) beyond the boundary for the extension bonus.
EXTENSION_PCT = 0.005

MIN_EXECUTABLE_CONFIDENCE = 0.6
MIN_EXECUTABLE_STRENGTH = SignalStrength.MODERATE


def classify_strength(levels: PivotLevels) -> SignalStrength:
    """Narrow range → STRONG, wide range → WEAK, otherwise MODERATE."""
    if levels.is_narrow:
        return SignalStrength.STRONG
    if levels.is_wide:
        return SignalStrength.WEAK
    return SignalStrength.MODERATE


def risk_reward(price: float, target: float, stop: float) -> float:
    """Return ``|target − price| / |price − stop|`` (0 when risk is zero)."""
    risk = abs(price - stop)
    if risk == 0:
        return 0.0
    return abs(target - price) / risk


def _confidence(price: float, boundary: float, levels: PivotLevels) -> float:
    confidence = BASE_CONFIDENCE
    if levels.is_narrow:
        confidence += NARROW_RANGE_BONUS
    if abs(price - boundary) / boundary > EXTENSION_PCT:
        confidence += EXTENSION_BONUS
    return min(confidence, 1.0)


def evaluate_signal(
    instrument_id: str,
    current_price: float,
    levels: PivotLevels,
    has_open_position: bool,
    now: Optional[datetime] = None,
) -> Optional[TradingSignal]:
    """Evaluate *current_price* against *levels* for an entry signal.

    Rules, first match wins:

    1. An open position on the instrument → no signal.
    2. Price above top central → **buy**, stop = bottom central,
       target = R1.
    3. Price below bottom central → **sell**, stop = top central,
       target = S1.
    4. Otherwise → no signal.

    Buy and sell candidates are dropped when the risk-reward ratio is
    below ``MIN_RISK_REWARD`` (the boundary itself passes).

    Returns:
        ``TradingSignal`` with ``quantity=0`` if a setup is found, else ``None``.

    Raises:
        InvalidInputError: If *current_price* is non-positive.
    """
    if current_price <= 0:
        raise InvalidInputError(f"current_price must be positive, got {current_price}")

    if has_open_position:
        return None

    if current_price > levels.top_central:
        direction = Direction.BUY
        reason = TriggerReason.PRICE_ABOVE_CPR
        stop = levels.bottom_central
        target = levels.r1
        boundary = levels.top_central
    elif current_price < levels.bottom_central:
        direction = Direction.SELL
        reason = TriggerReason.PRICE_BELOW_CPR
        stop = levels.top_central
        target = levels.s1
        boundary = levels.bottom_central
    else:
        return None

    if risk_reward(current_price, target, stop) < MIN_RISK_REWARD:
        return None

    return TradingSignal(
        instrument_id=instrument_id,
        direction=direction,
        strength=classify_strength(levels),
        reason=reason,
        trigger_price=current_price,
        target_price=target,
        stop_loss_price=stop,
        confidence=_confidence(current_price, boundary, levels),
        timestamp=now or datetime.now(timezone.utc),
    )


def is_executable(signal: TradingSignal) -> bool:
    """Return True if *signal* clears both the confidence and strength gates."""
    return (
        signal.confidence > MIN_EXECUTABLE_CONFIDENCE
        and signal.strength >= MIN_EXECUTABLE_STRENGTH
    )
