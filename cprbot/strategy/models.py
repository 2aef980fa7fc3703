"""Strategy data models — typed representations for signal outputs."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from cprbot.errors import InvalidInputError


class Direction(str, Enum):
    """Trade direction."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY


class SignalStrength(int, Enum):
    """Ordered signal strength; compare with ``>=``."""

    WEAK = 1
    MODERATE = 2
    STRONG = 3
    VERY_STRONG = 4


class TriggerReason(str, Enum):
    """Why a signal fired."""

    PRICE_ABOVE_CPR = "PRICE_ABOVE_CPR"
    PRICE_BELOW_CPR = "PRICE_BELOW_CPR"
    CPR_RETEST_SUCCESS = "CPR_RETEST_SUCCESS"
    CPR_RETEST_FAIL = "CPR_RETEST_FAIL"
    RESISTANCE_BREAK = "RESISTANCE_BREAK"
    SUPPORT_BREAK = "SUPPORT_BREAK"
    CONFLUENCE_BULLISH = "CONFLUENCE_BULLISH"
    CONFLUENCE_BEARISH = "CONFLUENCE_BEARISH"


class CloseReason(str, Enum):
    """Why a position was closed."""

    STOP_LOSS_HIT = "STOP_LOSS_HIT"
    TARGET_ACHIEVED = "TARGET_ACHIEVED"
    MARKET_CLOSE = "MARKET_CLOSE"
    SHUTDOWN = "SHUTDOWN"


@dataclass(frozen=True)
class TradingSignal:
    """A candidate trade produced by the signal generator.

    ``quantity`` stays 0 until the ledger sizes the trade.  ``confidence``
    is clamped to [0, 1] at construction.
    """

    instrument_id: str
    direction: Direction
    strength: SignalStrength
    reason: TriggerReason
    trigger_price: float
    target_price: float
    stop_loss_price: float
    quantity: int = 0
    confidence: float = 0.5
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.instrument_id:
            raise InvalidInputError("instrument_id is required")
        for name in ("trigger_price", "target_price", "stop_loss_price"):
            value = getattr(self, name)
            if value <= 0:
                raise InvalidInputError(f"{name} must be positive, got {value}")
        if self.quantity < 0:
            raise InvalidInputError(f"quantity must be >= 0, got {self.quantity}")
        object.__setattr__(self, "confidence", max(0.0, min(1.0, self.confidence)))

    @property
    def risk_reward_ratio(self) -> float:
        """Reward distance over risk distance (0 when risk is zero)."""
        risk = abs(self.trigger_price - self.stop_loss_price)
        reward = abs(self.target_price - self.trigger_price)
        return reward / risk if risk > 0 else 0.0

    @property
    def is_valid(self) -> bool:
        """A signal is tradable only once it has been sized."""
        return self.quantity > 0

    def as_dict(self) -> dict:
        return {
            "instrument_id": self.instrument_id,
            "direction": self.direction.value,
            "strength": self.strength.name,
            "reason": self.reason.value,
            "trigger_price": round(self.trigger_price, 2),
            "target_price": round(self.target_price, 2),
            "stop_loss_price": round(self.stop_loss_price, 2),
            "quantity": self.quantity,
            "confidence": round(self.confidence, 3),
            "risk_reward": round(self.risk_reward_ratio, 2),
            "timestamp": self.timestamp.isoformat(),
        }
