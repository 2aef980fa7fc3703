"""Internal API routers — /status, /positions, /levels, /signals endpoints.

Read-only views over the running engine. No business logic.
"""

import logging

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("cprbot")
router = APIRouter()

_engine = None  # Set via configure_routers()


def configure_routers(engine) -> None:
    """Inject the running engine.

    Args:
        engine: A ``TradingEngine`` instance (or duck-type for tests).
    """
    global _engine  # noqa: PLW0603
    _engine = engine


def _require_engine():
    if _engine is None:
        raise HTTPException(status_code=503, detail="engine not configured")
    return _engine


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return the engine snapshot (state, P&L, exposure, market status)."""
    return _require_engine().snapshot()


@router.get("/positions")
async def get_positions(
    include_closed: bool = Query(default=False),
):
    """Return open positions, optionally followed by today's closed ones."""
    engine = _require_engine()
    ledger = engine.ledger
    result = {
        "positions": [
            {**p.as_dict(), "symbol": engine.lookup_symbol(p.instrument_id)}
            for p in ledger.open_positions.values()
        ],
    }
    if include_closed:
        result["closed"] = [
            {**p.as_dict(), "symbol": engine.lookup_symbol(p.instrument_id)}
            for p in ledger.closed_positions
        ]
    return result


@router.get("/levels")
async def get_levels():
    """Return today's pivot levels, sentiment per instrument and the excluded list."""
    return _require_engine().level_report()


@router.get("/signals/history")
async def get_signal_history(
    limit: int = Query(default=20, ge=1, le=50),
):
    """Return recent signals, newest first."""
    recent = list(_require_engine().context.signal_history[-limit:])
    recent.reverse()
    return {"signals": recent}
