"""CPR Bot — application entry point.

Boots the FastAPI status server and provides the CLI entry point for
paper and live modes.
"""

import logging

from fastapi import FastAPI

from cprbot.api.routers import router

app = FastAPI(title="CPR Bot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("cprbot")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning(
            "LIVE TRADING MODE — Real orders will be placed! Starting in 5 seconds..."
        )
        return True
    return False


def build_engine(config, mode: str):
    """Wire session, broker, registry and ledger into a ``TradingEngine``."""
    from cprbot.auth.session import (
        ChainedTokenProvider,
        FileTokenProvider,
        StaticTokenProvider,
    )
    from cprbot.broker.kite_client import KiteClient
    from cprbot.engine import TradingEngine
    from cprbot.instruments.registry import InstrumentRegistry
    from cprbot.risk.ledger import PositionLedger

    session = ChainedTokenProvider(
        StaticTokenProvider(config.kite_access_token),
        FileTokenProvider(config.access_token_path),
    )
    broker = KiteClient(
        api_key=config.kite_api_key,
        session=session,
        base_url=config.kite_base_url,
        dry_run=(mode == "paper"),
    )
    ledger = PositionLedger(capital=config.capital, risk=config.risk_parameters)
    return TradingEngine(
        config=config,
        broker=broker,
        registry=InstrumentRegistry(),
        ledger=ledger,
        session=session,
    )


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and start the bot."""
    import argparse
    import asyncio
    import time

    from cprbot.config import load_config

    parser = argparse.ArgumentParser(description="CPR intraday trading bot")
    parser.add_argument(
        "--mode",
        choices=["paper", "live"],
        default="paper",
        help="Trading mode (default: paper)",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if warn_if_live(args.mode):
        time.sleep(5)

    engine = build_engine(config, args.mode)

    from cprbot.api.routers import configure_routers

    configure_routers(engine)

    if args.engine_only:
        asyncio.run(_run_engine_only(engine, args.mode))
    else:
        asyncio.run(_run_with_api(engine, args.mode, config.status_port))


def _install_signal_handlers(engine) -> None:
    import asyncio
    import signal

    def handle_shutdown():
        logger.info("Shutdown signal received — stopping gracefully.")
        engine.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown)


async def _run_with_api(engine, mode: str, port: int = 8080) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio
    import uvicorn

    _install_signal_handlers(engine)
    logger.info("Starting CPR Bot in %s mode.", mode)

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    # Whichever side exits first takes the other down with it.
    async def _run_server():
        try:
            await server.serve()
        finally:
            engine.stop()

    async def _run_engine():
        try:
            await engine.run()
        finally:
            server.should_exit = True

    logger.info("Status API available at http://localhost:%d/status", port)
    results = await asyncio.gather(
        _run_server(),
        _run_engine(),
        return_exceptions=True,
    )
    logger.info("CPR Bot stopped. Results: %s", results)


async def _run_engine_only(engine, mode: str) -> None:
    """Run the trading engine without starting the API server."""
    from cprbot.cli.dashboard import print_status

    _install_signal_handlers(engine)
    logger.info("Starting CPR Bot engine (no API) in %s mode.", mode)
    await engine.run()
    print_status(engine.snapshot())
    logger.info("CPR Bot engine stopped.")


if __name__ == "__main__":
    _run_cli()
