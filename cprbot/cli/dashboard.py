"""CLI dashboard — formats bot status for the console."""


def format_status(status: dict) -> str:
    """Format the engine snapshot as a fixed-width block.

    Args:
        status: Dict as returned by ``TradingEngine.snapshot()``.
    """
    capital = status.get("capital")
    daily_pnl = status.get("daily_pnl")
    unrealized = status.get("unrealized_pnl")
    exposure_pct = status.get("exposure_pct")
    fatal = status.get("fatal_reason")

    capital_str = f"₹{capital:,.2f}" if capital is not None else "N/A"
    pnl_str = f"₹{daily_pnl:,.2f}" if daily_pnl is not None else "N/A"
    upnl_str = f"₹{unrealized:,.2f}" if unrealized is not None else "N/A"
    exp_str = f"{exposure_pct:.2f}%" if exposure_pct is not None else "N/A"

    lines = [
        "──────────────── CPR Bot Status ────────────────",
        f"  State:           {status.get('state', 'unknown')}",
        f"  Market Open:     {status.get('market_open', False)}",
        f"  Logged In:       {status.get('logged_in', False)}",
        f"  Session:         {status.get('session_date') or 'N/A'}",
        f"  Instruments:     {status.get('instruments', 0)}",
        f"  Capital:         {capital_str}",
        f"  Daily P&L:       {pnl_str}",
        f"  Unrealized P&L:  {upnl_str}",
        f"  Open Positions:  {status.get('open_positions', 0)}",
        f"  Exposure:        {exp_str}",
    ]
    if fatal:
        lines.append(f"  HALTED:          {fatal}")
    lines.append("────────────────────────────────────────────────")
    return "\n".join(lines)


def print_status(status: dict) -> str:
    """Format and print the status block; returns the formatted string."""
    output = format_status(status)
    print(output)
    return output
