"""Central Pivot Range levels — pure math, no I/O.

All levels are derived once per session from the previous session's
high, low and close.  The central range is bounded by R1 (top) and
S1 (bottom); its width decides how strong a breakout is considered.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional

from cprbot.broker.models import Candle
from cprbot.errors import InvalidInputError


# Width thresholds in index points (calibrated for NIFTY).
NARROW_WIDTH = 12.0
WIDE_WIDTH = 25.0


@dataclass(frozen=True)
class PivotLevels:
    """Support / resistance levels for one trading session."""

    pivot: float
    r1: float
    r2: float
    r3: float
    s1: float
    s2: float
    s3: float
    top_central: float
    bottom_central: float
    prev_high: float
    prev_low: float

    @property
    def width(self) -> float:
        """Distance between top and bottom central."""
        return self.top_central - self.bottom_central

    @property
    def is_narrow(self) -> bool:
        return self.width < NARROW_WIDTH

    @property
    def is_wide(self) -> bool:
        return self.width > WIDE_WIDTH

    @property
    def width_class(self) -> str:
        """``"narrow"``, ``"wide"`` or ``"normal"``."""
        if self.is_narrow:
            return "narrow"
        if self.is_wide:
            return "wide"
        return "normal"

    @property
    def prev_day_range(self) -> float:
        return self.prev_high - self.prev_low

    def as_dict(self) -> dict:
        return {
            "pivot": round(self.pivot, 2),
            "r1": round(self.r1, 2),
            "r2": round(self.r2, 2),
            "r3": round(self.r3, 2),
            "s1": round(self.s1, 2),
            "s2": round(self.s2, 2),
            "s3": round(self.s3, 2),
            "top_central": round(self.top_central, 2),
            "bottom_central": round(self.bottom_central, 2),
            "prev_high": round(self.prev_high, 2),
            "prev_low": round(self.prev_low, 2),
            "width": round(self.width, 2),
            "width_class": self.width_class,
        }


def calculate_pivot_levels(high: float, low: float, close: float) -> PivotLevels:
    """Calculate CPR levels from the previous session's high, low and close.

    Formula::

        pivot = (high + low + close) / 3
        r1 = 2 × pivot − low          s1 = 2 × pivot − high
        r2 = pivot + (high − low)     s2 = pivot − (high − low)
        r3 = high + 2 × (pivot − low) s3 = low − 2 × (high − pivot)
        top central = r1              bottom central = s1

    Raises:
        InvalidInputError: If any input is non-positive.
    """
    for name, value in (("high", high), ("low", low), ("close", close)):
        if value <= 0:
            raise InvalidInputError(f"{name} must be positive, got {value}")

    pivot = (high + low + close) / 3.0
    r1 = 2 * pivot - low
    s1 = 2 * pivot - high
    return PivotLevels(
        pivot=pivot,
        r1=r1,
        r2=pivot + (high - low),
        r3=high + 2 * (pivot - low),
        s1=s1,
        s2=pivot - (high - low),
        s3=low - 2 * (high - pivot),
        top_central=r1,
        bottom_central=s1,
        prev_high=high,
        prev_low=low,
    )


def levels_from_candles(candles: list[Candle], session_date: date) -> PivotLevels:
    """Compute levels from the last daily candle strictly before *session_date*.

    Raises:
        InvalidInputError: If no earlier candle exists.
    """
    prior = [c for c in candles if c.time.date() < session_date]
    if not prior:
        raise InvalidInputError(f"no daily candle before {session_date.isoformat()}")
    last = max(prior, key=lambda c: c.time)
    return calculate_pivot_levels(last.high, last.low, last.close)


def market_sentiment(price: float, levels: PivotLevels) -> str:
    """Classify where *price* sits relative to the pivot levels."""
    if price > levels.r1:
        return "BULLISH"
    if price < levels.s1:
        return "BEARISH"
    if levels.bottom_central <= price <= levels.top_central:
        return "SIDEWAYS"
    if price > levels.top_central:
        return "BULLISH_BIAS"
    if price < levels.bottom_central:
        return "BEARISH_BIAS"
    return "NEUTRAL"


def in_trading_range(price: float, levels: PivotLevels) -> Optional[str]:
    """Return the option-selling zone *price* is in, if any.

    ``"PDH_R1"`` between previous-day high and R1, ``"S1_PDL"`` between
    S1 and previous-day low.
    """
    if levels.prev_high <= price <= levels.r1:
        return "PDH_R1"
    if levels.s1 <= price <= levels.prev_low:
        return "S1_PDL"
    return None
