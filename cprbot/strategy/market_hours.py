"""Market-hours filter — pure functions over exchange-local time.

NSE cash and F&O trade on weekdays, 09:15–15:30 IST (open inclusive,
close exclusive).  Exchange holidays are not modelled.
"""

from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

EXCHANGE_TZ = ZoneInfo("Asia/Kolkata")
MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 30)


def to_exchange_time(now: datetime) -> datetime:
    """Convert *now* to exchange-local time (naive values are taken as IST)."""
    if now.tzinfo is None:
        return now.replace(tzinfo=EXCHANGE_TZ)
    return now.astimezone(EXCHANGE_TZ)


def is_market_open(now: datetime) -> bool:
    """Return True if *now* falls inside the weekday trading window."""
    local = to_exchange_time(now)
    if local.weekday() >= 5:
        return False
    return MARKET_OPEN <= local.time() < MARKET_CLOSE


def next_market_open(now: datetime) -> datetime:
    """Return the next session open strictly after *now* (exchange-local)."""
    local = to_exchange_time(now)
    candidate = local.replace(
        hour=MARKET_OPEN.hour, minute=MARKET_OPEN.minute, second=0, microsecond=0,
    )
    if candidate <= local:
        candidate += timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def seconds_until(target: datetime, now: datetime) -> float:
    """Seconds from *now* to *target*, never negative."""
    return max(0.0, (target - to_exchange_time(now)).total_seconds())
