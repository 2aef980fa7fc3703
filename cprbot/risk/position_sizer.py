"""Position sizing — pure math, no I/O.

Calculates the number of units to trade based on capital, risk
percentage, stop-loss distance, a position-value cap and lot size.
"""

import math


def calculate_quantity(
    capital: float,
    risk_pct: float,
    max_position_pct: float,
    entry_price: float,
    stop_loss: float,
    lot_size: int = 1,
) -> int:
    """Calculate position size in units.

    Formula::

        risk_amount   = capital × (risk_pct / 100)
        risk_per_unit = |entry_price − stop_loss|
        raw_qty       = floor(risk_amount / risk_per_unit)
        max_qty       = floor(capital × (max_position_pct / 100) / entry_price)
        quantity      = min(raw_qty, max_qty) rounded down to a lot multiple

    Args:
        capital: Current trading capital (e.g. 500_000.0).
        risk_pct: Percentage of capital to risk per trade (e.g. 1.0 for 1 %).
        max_position_pct: Cap on position value as a percentage of capital.
        entry_price: Expected entry price.
        stop_loss: Stop-loss price.
        lot_size: Exchange lot size; the result is a multiple of it.

    Returns:
        Quantity in units.  ``0`` means "do not trade" (too little capital
        for one lot, or zero stop distance).

    Raises:
        ValueError: If capital, entry price or lot size is non-positive.
    """
    if capital <= 0:
        raise ValueError(f"capital must be positive, got {capital}")
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    if lot_size <= 0:
        raise ValueError(f"lot_size must be positive, got {lot_size}")

    risk_per_unit = abs(entry_price - stop_loss)
    if risk_per_unit == 0 or risk_pct <= 0 or max_position_pct <= 0:
        return 0

    risk_amount = capital * (risk_pct / 100.0)
    raw_qty = math.floor(risk_amount / risk_per_unit)
    max_position_value = capital * (max_position_pct / 100.0)
    max_qty = math.floor(max_position_value / entry_price)

    quantity = min(raw_qty, max_qty)
    return (quantity // lot_size) * lot_size
