"""CPR Bot — Trading engine (scheduler / orchestrator).

Sequences one trading day: wait for a login token → compute pivot levels
→ run the signal, position-monitor and market-status loops concurrently
→ force-close at market close → reset at the next open.  Underlyings with
a configured option chain are traded through their nearest CE or PE.

Every loop iteration isolates its own failures; one instrument's error
never stops another instrument or the loop.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from cprbot.auth.session import SessionProvider
from cprbot.broker.kite_client import KiteClient
from cprbot.broker.models import Instrument, OrderRequest
from cprbot.cli.dashboard import format_status
from cprbot.config import Config
from cprbot.errors import InstrumentNotFoundError
from cprbot.instruments.registry import InstrumentRegistry
from cprbot.risk.ledger import Position, PositionLedger
from cprbot.strategy.market_hours import (
    EXCHANGE_TZ,
    is_market_open,
    next_market_open,
    seconds_until,
    to_exchange_time,
)
from cprbot.strategy.models import CloseReason, Direction, TradingSignal
from cprbot.strategy.pivots import (
    PivotLevels,
    in_trading_range,
    levels_from_candles,
    market_sentiment,
)
from cprbot.strategy.signals import evaluate_signal, is_executable

logger = logging.getLogger("cprbot.engine")

# Calendar days of daily candles requested to find the previous session.
_HISTORY_LOOKBACK_DAYS = 10
_SIGNAL_HISTORY_MAX = 50


class EngineState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class EngineContext:
    """Mutable run state shared by the engine's loops."""

    watchlist: list[str]
    state: EngineState = EngineState.INIT
    levels: dict[str, PivotLevels] = field(default_factory=dict)
    excluded: dict[str, str] = field(default_factory=dict)
    session_date: Optional[date] = None
    logged_in: bool = False
    market_open: bool = False
    fatal_reason: Optional[str] = None
    cycle_count: int = 0
    last_cycle_at: Optional[str] = None
    last_status: dict = field(default_factory=dict)
    signal_history: list[dict] = field(default_factory=list)

    def record_signal(self, entry: dict) -> None:
        self.signal_history.append(entry)
        if len(self.signal_history) > _SIGNAL_HISTORY_MAX:
            del self.signal_history[0]


class TradingEngine:
    """Runs the CPR strategy across a trading day.

    Args:
        config: Application configuration.
        broker: A ``KiteClient`` (or compatible duck-type / mock).
        registry: Instrument catalog and latest quotes.
        ledger: Position risk ledger.
        session: Source of the broker access token.
        clock: Returns the current time; defaults to exchange-local now.
    """

    def __init__(
        self,
        config: Config,
        broker: KiteClient,
        registry: InstrumentRegistry,
        ledger: PositionLedger,
        session: SessionProvider,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._registry = registry
        self._ledger = ledger
        self._session = session
        self._clock = clock or (lambda: datetime.now(EXCHANGE_TZ))
        self._option_chains = dict(config.option_chains)
        self._context = EngineContext(watchlist=list(config.watchlist))
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def context(self) -> EngineContext:
        return self._context

    @property
    def ledger(self) -> PositionLedger:
        return self._ledger

    @property
    def registry(self) -> InstrumentRegistry:
        return self._registry

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _option_contract(self, signal: TradingSignal, today: date) -> Optional[Instrument]:
        """Contract to trade for *signal*, or ``None`` to trade the instrument itself.

        Underlyings with a configured option chain are traded through the
        nearest-expiry, nearest-strike option: a CE for a buy signal, a PE
        for a sell signal.
        """
        underlying = self._registry.lookup(signal.instrument_id)
        chain = (
            self._option_chains.get(underlying.instrument_id)
            or self._option_chains.get(underlying.symbol)
            or self._option_chains.get(f"{underlying.exchange}:{underlying.symbol}")
        )
        if not chain:
            return None
        expiry = self._registry.nearest_expiry(chain, today)
        strike = self._registry.find_closest_strike(chain, signal.trigger_price, expiry)
        option_type = "CE" if signal.direction == Direction.BUY else "PE"
        return self._registry.option_for(chain, strike, option_type, expiry)

    async def _place(self, instrument: Instrument, side: Direction, quantity: int) -> str:
        resp = await self._broker.place_order(
            OrderRequest(
                instrument_id=instrument.instrument_id,
                symbol=instrument.symbol,
                exchange=instrument.exchange,
                transaction_type=side.value,
                quantity=quantity,
            )
        )
        return resp.order_id

    async def _submit_entry(
        self, signal: TradingSignal, contract: Optional[Instrument] = None,
    ) -> str:
        if contract is not None:
            # options are always bought; the CE/PE choice carries the direction
            return await self._place(contract, Direction.BUY, signal.quantity)
        instrument = self._registry.lookup(signal.instrument_id)
        return await self._place(instrument, signal.direction, signal.quantity)

    async def _submit_exit(self, position: Position) -> str:
        if position.contract_id is not None:
            contract = self._registry.lookup(position.contract_id)
            return await self._place(contract, Direction.SELL, position.quantity)
        instrument = self._registry.lookup(position.instrument_id)
        return await self._place(instrument, position.direction.opposite, position.quantity)

    async def _refresh_price(self, instrument_id: str) -> float:
        quote = await self._broker.get_quote(instrument_id)
        self._registry.update_quote(quote)
        return quote.last_price

    # ── Start of day ─────────────────────────────────────────────────────

    async def await_login(self) -> bool:
        """Poll the session provider until a token appears or time runs out.

        On timeout the day is marked fatal (``login_unavailable``).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.login_timeout_seconds
        while True:
            if self._session.current_access_token():
                self._context.logged_in = True
                self._context.fatal_reason = None
                logger.info("Access token available, logged in.")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            logger.info("Waiting for login (%.0fs left)", remaining)
            interval = min(self._config.login_check_interval_seconds, remaining)
            if await self._sleep(interval):
                return False

        self._context.logged_in = False
        self._context.fatal_reason = "login_unavailable"
        logger.error(
            "No access token after %.0fs, trading will not start today.",
            self._config.login_timeout_seconds,
        )
        return False

    async def load_catalog(self) -> int:
        """Download the instrument catalog for each configured exchange."""
        total = 0
        for exchange in self._config.catalog_exchanges:
            try:
                frame = await self._broker.fetch_instruments(exchange)
                total += self._registry.load_catalog(frame)
            except Exception as exc:
                logger.warning("Could not load %s instruments: %s", exchange, exc)
        return total

    async def calculate_levels(self, now: Optional[datetime] = None) -> dict[str, PivotLevels]:
        """Compute today's pivot levels for every watched instrument.

        An instrument whose lookup or history fails is excluded for the day
        with a warning; the others are unaffected.
        """
        now = to_exchange_time(now or self._clock())
        session_date = now.date()
        levels: dict[str, PivotLevels] = {}
        excluded: dict[str, str] = {}

        for item in self._context.watchlist:
            try:
                instrument = self._registry.lookup(item)
                candles = await self._broker.fetch_historical(
                    instrument.instrument_id,
                    "day",
                    now - timedelta(days=_HISTORY_LOOKBACK_DAYS),
                    now,
                )
                lv = levels_from_candles(candles, session_date)
                levels[instrument.instrument_id] = lv
                logger.info(
                    "%s levels: pivot %.2f, TC %.2f, BC %.2f (%s range)",
                    instrument.symbol, lv.pivot, lv.top_central,
                    lv.bottom_central, lv.width_class,
                )
            except Exception as exc:
                logger.warning("Excluding %s for %s: %s", item, session_date, exc)
                excluded[item] = str(exc)

        self._context.levels = levels
        self._context.excluded = excluded
        self._context.session_date = session_date
        return levels

    async def start_day(self, now: Optional[datetime] = None) -> dict:
        """Login → catalog → levels.  Returns a result dict like the cycles."""
        if not await self.await_login():
            return {"action": "halted", "reason": self._context.fatal_reason or "stopped"}
        await self.load_catalog()
        levels = await self.calculate_levels(now)
        return {
            "action": "ready",
            "instruments": len(levels),
            "excluded": sorted(self._context.excluded),
        }

    # ── Signal cycle ─────────────────────────────────────────────────────

    async def _evaluate_instrument(
        self, instrument_id: str, levels: PivotLevels, now: datetime,
    ) -> dict:
        price = await self._refresh_price(instrument_id)
        signal = evaluate_signal(
            instrument_id,
            price,
            levels,
            self._ledger.has_open_position(instrument_id),
            now=now,
        )
        if signal is None:
            return {"action": "skipped", "reason": "no_signal", "price": price}

        executable = is_executable(signal)
        self._context.record_signal({
            **signal.as_dict(),
            "status": "executable" if executable else "near_miss",
        })
        if not executable:
            logger.info(
                "%s %s signal below gate (strength %s, confidence %.2f)",
                signal.direction.value, instrument_id,
                signal.strength.name, signal.confidence,
            )
            return {"action": "skipped", "reason": "not_executable"}

        contract = self._option_contract(signal, now.date())
        traded = contract or self._registry.lookup(instrument_id)
        result = await self._ledger.execute_entry(
            signal,
            traded.lot_size,
            functools.partial(self._submit_entry, contract=contract),
            contract_id=contract.instrument_id if contract else None,
        )
        if not result.opened:
            return {"action": "skipped", "reason": result.reason}

        position = result.position
        return {
            "action": "order_placed",
            "order_id": position.order_id,
            "symbol": traded.symbol,
            "direction": position.direction.value,
            "quantity": position.quantity,
            "entry": position.entry_price,
            "sl": position.stop_loss,
            "tp": position.target,
        }

    async def run_signal_cycle(self, now: Optional[datetime] = None) -> dict:
        """Evaluate every instrument with levels once."""
        now = to_exchange_time(now or self._clock())
        if not self._context.logged_in:
            return {"action": "skipped", "reason": "not_logged_in"}
        if not is_market_open(now):
            return {"action": "skipped", "reason": "market_closed"}
        if self._context.session_date != now.date():
            return {"action": "skipped", "reason": "levels_stale"}

        self._context.cycle_count += 1
        self._context.last_cycle_at = now.isoformat()
        results: dict[str, dict] = {}
        for instrument_id, levels in list(self._context.levels.items()):
            try:
                results[instrument_id] = await self._evaluate_instrument(
                    instrument_id, levels, now,
                )
            except Exception as exc:
                logger.error("Signal evaluation failed for %s: %s", instrument_id, exc)
                results[instrument_id] = {"action": "error", "reason": str(exc)}
        return {"action": "evaluated", "results": results}

    # ── Monitor cycle ────────────────────────────────────────────────────

    async def run_monitor_cycle(self, now: Optional[datetime] = None) -> dict:
        """Refresh open positions and close those at stop or target."""
        now = to_exchange_time(now or self._clock())
        if not self._context.logged_in:
            return {"action": "skipped", "reason": "not_logged_in"}
        open_positions = self._ledger.open_positions
        if not open_positions:
            return {"action": "skipped", "reason": "no_positions"}

        prices: dict[str, float] = {}
        for instrument_id in open_positions:
            try:
                prices[instrument_id] = await self._refresh_price(instrument_id)
            except Exception as exc:
                logger.warning("Price refresh failed for %s: %s", instrument_id, exc)

        closed: list[str] = []
        for position in self._ledger.update_positions(prices):
            reason = (
                CloseReason.STOP_LOSS_HIT
                if position.should_close_on_stop_loss()
                else CloseReason.TARGET_ACHIEVED
            )
            try:
                done = await self._ledger.execute_exit(
                    position,
                    position.current_price,
                    reason,
                    self._submit_exit,
                    now=now,
                )
                if done is not None:
                    closed.append(position.instrument_id)
            except Exception as exc:
                logger.error("Closing %s failed: %s", position.instrument_id, exc)
        return {"action": "monitored", "checked": len(open_positions), "closed": closed}

    # ── Market status + exits ────────────────────────────────────────────

    async def force_close_all(
        self, reason: CloseReason, now: Optional[datetime] = None,
    ) -> list[str]:
        """Close every open position regardless of stop/target state."""
        now = to_exchange_time(now or self._clock())
        closed: list[str] = []
        for instrument_id, position in self._ledger.open_positions.items():
            try:
                price = await self._refresh_price(instrument_id)
            except Exception as exc:
                logger.warning(
                    "No fresh price for %s (%s), exiting at last %.2f",
                    instrument_id, exc, position.current_price,
                )
                price = position.current_price
            if price <= 0:
                logger.warning(
                    "Unusable quote %.2f for %s, exiting at last %.2f",
                    price, instrument_id, position.current_price,
                )
                price = position.current_price
            try:
                done = await self._ledger.execute_exit(
                    position, price, reason, self._submit_exit, now=now,
                )
                if done is not None:
                    closed.append(instrument_id)
            except Exception as exc:
                logger.error("Force-close of %s failed: %s", instrument_id, exc)
        if closed:
            logger.info("Force-closed %d position(s): %s", len(closed), reason.value)
        return closed

    async def run_status_cycle(self, now: Optional[datetime] = None) -> dict:
        """Track market open/close and force-exit on the closing transition."""
        now = to_exchange_time(now or self._clock())
        open_now = is_market_open(now)
        closed: list[str] = []
        if self._context.market_open and not open_now:
            logger.info("Market closed, exiting all positions.")
            closed = await self.force_close_all(CloseReason.MARKET_CLOSE, now)
        self._context.market_open = open_now

        self._context.last_status = self.snapshot()
        logger.info("\n%s", format_status(self._context.last_status))
        return {"action": "status", "market_open": open_now, "closed": closed}

    async def run_daily_reset(self, now: Optional[datetime] = None) -> dict:
        """Reset day counters, then redo login and level calculation."""
        await self._ledger.daily_reset()
        self._context.levels = {}
        self._context.excluded = {}
        self._context.session_date = None
        self._context.logged_in = False
        return await self.start_day(now)

    # ── Loops ────────────────────────────────────────────────────────────

    async def _loop(
        self, name: str, interval: float, cycle: Callable[[], Awaitable[dict]],
    ) -> None:
        while not self._stop_event.is_set():
            try:
                await cycle()
            except Exception as exc:
                logger.error("%s cycle error: %s", name, exc)
            if await self._sleep(interval):
                break

    async def _daily_reset_loop(self) -> None:
        while not self._stop_event.is_set():
            now = to_exchange_time(self._clock())
            wait = seconds_until(next_market_open(now), now)
            if await self._sleep(wait):
                break
            try:
                await self.run_daily_reset()
            except Exception as exc:
                logger.error("Daily reset failed: %s", exc)

    async def run(self) -> None:
        """Run until :meth:`stop` is called, then shut down gracefully."""
        self._context.state = EngineState.RUNNING
        try:
            result = await self.start_day()
            logger.info("Start of day: %s", result)
        except Exception as exc:
            logger.error("Start of day failed: %s", exc)

        cfg = self._config
        self._tasks = [
            asyncio.create_task(
                self._loop("signal", cfg.signal_interval_seconds, self.run_signal_cycle)
            ),
            asyncio.create_task(
                self._loop("monitor", cfg.monitor_interval_seconds, self.run_monitor_cycle)
            ),
            asyncio.create_task(
                self._loop("status", cfg.status_interval_seconds, self.run_status_cycle)
            ),
            asyncio.create_task(self._daily_reset_loop()),
        ]
        await self._stop_event.wait()
        await self._shutdown()

    def stop(self) -> None:
        """Signal the engine to stop; pending timer waits end immediately."""
        if self._context.state in (EngineState.STOPPING, EngineState.STOPPED):
            return
        self._context.state = EngineState.STOPPING
        self._stop_event.set()
        logger.info("Stop requested.")

    async def _shutdown(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(
                tasks, timeout=self._config.shutdown_grace_seconds,
            )
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Abandoned %d in-flight task(s) after grace period.", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        await self.force_close_all(CloseReason.SHUTDOWN)
        self._context.state = EngineState.STOPPED
        logger.info("Engine stopped.")

    # ── Reporting ────────────────────────────────────────────────────────

    def snapshot(self) -> dict:
        """Point-in-time status for the console and the API."""
        ctx = self._context
        return {
            **self._ledger.snapshot(),
            "state": ctx.state.value,
            "market_open": ctx.market_open,
            "logged_in": ctx.logged_in,
            "fatal_reason": ctx.fatal_reason,
            "session_date": ctx.session_date.isoformat() if ctx.session_date else None,
            "instruments": len(ctx.levels),
            "excluded": dict(ctx.excluded),
            "cycle_count": ctx.cycle_count,
            "last_cycle_at": ctx.last_cycle_at,
        }

    def level_report(self) -> dict:
        """Today's levels, each with the last seen price and where it sits."""
        ctx = self._context
        levels = {}
        for instrument_id, lv in ctx.levels.items():
            price = self._registry.current_price(instrument_id)
            levels[instrument_id] = {
                **lv.as_dict(),
                "price": price,
                "sentiment": market_sentiment(price, lv) if price else None,
                "trading_range": in_trading_range(price, lv) if price else None,
            }
        return {
            "session_date": ctx.session_date.isoformat() if ctx.session_date else None,
            "levels": levels,
            "excluded": dict(ctx.excluded),
        }

    def lookup_symbol(self, instrument_id: str) -> str:
        try:
            return self._registry.lookup(instrument_id).symbol
        except InstrumentNotFoundError:
            return instrument_id
