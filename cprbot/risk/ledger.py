"""Position risk ledger — capital, risk limits and the position lifecycle.

Owns every open and (day-scoped) closed position.  Sizing, the open gate,
stop/target detection and the close transition all live here; placing
the actual broker orders does not.  The ``execute_*`` coroutines wrap the
order call in the ledger lock so that gate → size → order → insert and
order → close never interleave with each other or with the daily reset.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Optional

from cprbot.errors import (
    InvalidInputError,
    PositionClosedError,
    PositionExistsError,
)
from cprbot.risk.position_sizer import calculate_quantity
from cprbot.strategy.models import CloseReason, Direction, TradingSignal

logger = logging.getLogger("cprbot.ledger")


@dataclass(frozen=True)
class RiskParameters:
    """Risk limits for one trading day."""

    max_daily_loss: float
    max_position_size_pct: float
    risk_per_trade_pct: float
    max_positions: int
    max_portfolio_exposure_pct: float


@dataclass
class Position:
    """A position held on one instrument.

    Only ``current_price`` changes while open; :meth:`close` is the single
    terminal transition.
    """

    instrument_id: str
    direction: Direction
    quantity: int
    entry_price: float
    stop_loss: float
    target: float
    entry_time: datetime
    current_price: float
    open: bool = True
    realized_pnl: Optional[float] = None
    exit_time: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    order_id: Optional[str] = None
    contract_id: Optional[str] = None  # option contract actually traded, if any

    def _pnl_at(self, price: float) -> float:
        if self.direction == Direction.BUY:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    @property
    def unrealized_pnl(self) -> float:
        """Mark-to-market P&L; 0 once closed."""
        if not self.open:
            return 0.0
        return self._pnl_at(self.current_price)

    @property
    def market_value(self) -> float:
        return self.current_price * self.quantity

    def update_price(self, price: float) -> None:
        if not self.open:
            raise PositionClosedError(f"position {self.instrument_id} is closed")
        if price <= 0:
            raise InvalidInputError(f"price must be positive, got {price}")
        self.current_price = price

    def should_close_on_stop_loss(self) -> bool:
        """Price has reached the stop against the held direction."""
        if self.direction == Direction.BUY:
            return self.current_price <= self.stop_loss
        return self.current_price >= self.stop_loss

    def should_close_on_target(self) -> bool:
        """Price has reached the target in the held direction."""
        if self.direction == Direction.BUY:
            return self.current_price >= self.target
        return self.current_price <= self.target

    def close(self, exit_price: float, reason: CloseReason, now: datetime) -> float:
        """Mark closed at *exit_price* and return the realised P&L."""
        if not self.open:
            raise PositionClosedError(f"position {self.instrument_id} is already closed")
        if exit_price <= 0:
            raise InvalidInputError(f"exit_price must be positive, got {exit_price}")
        self.current_price = exit_price
        self.realized_pnl = self._pnl_at(exit_price)
        self.exit_time = now
        self.close_reason = reason
        self.open = False
        return self.realized_pnl

    def as_dict(self) -> dict:
        return {
            "instrument_id": self.instrument_id,
            "direction": self.direction.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "stop_loss": round(self.stop_loss, 2),
            "target": round(self.target, 2),
            "current_price": self.current_price,
            "unrealized_pnl": round(self.unrealized_pnl, 2),
            "realized_pnl": (
                round(self.realized_pnl, 2) if self.realized_pnl is not None else None
            ),
            "open": self.open,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "close_reason": self.close_reason.value if self.close_reason else None,
            "order_id": self.order_id,
            "contract_id": self.contract_id,
        }


@dataclass(frozen=True)
class EntryResult:
    """Outcome of :meth:`PositionLedger.execute_entry`."""

    opened: bool
    reason: str  # "opened" or the rejection slug
    position: Optional[Position] = None
    quantity: int = 0


EntrySubmitter = Callable[[TradingSignal], Awaitable[str]]
ExitSubmitter = Callable[[Position], Awaitable[str]]


class PositionLedger:
    """Tracks capital, daily P&L and positions under fixed risk limits.

    Args:
        capital: Starting capital for the day.
        risk: Risk limits.
    """

    def __init__(self, capital: float, risk: RiskParameters) -> None:
        if capital <= 0:
            raise ValueError(f"capital must be positive, got {capital}")
        self._capital: float = capital
        self._risk = risk
        self._daily_pnl: float = 0.0
        self._open: dict[str, Position] = {}
        self._closed: list[Position] = []
        self._lock = asyncio.Lock()

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def capital(self) -> float:
        return self._capital

    @property
    def daily_pnl(self) -> float:
        """Realised P&L since the last daily reset."""
        return self._daily_pnl

    @property
    def risk(self) -> RiskParameters:
        return self._risk

    @property
    def open_positions(self) -> dict[str, Position]:
        return dict(self._open)

    @property
    def closed_positions(self) -> list[Position]:
        return list(self._closed)

    @property
    def open_count(self) -> int:
        return len(self._open)

    @property
    def exposure(self) -> float:
        """Market value of all open positions."""
        return sum(p.market_value for p in self._open.values())

    @property
    def exposure_pct(self) -> float:
        return (self.exposure / self._capital) * 100.0

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self._open.values())

    def has_open_position(self, instrument_id: str) -> bool:
        return instrument_id in self._open

    def get_position(self, instrument_id: str) -> Optional[Position]:
        return self._open.get(instrument_id)

    # ── Risk gate + sizing ───────────────────────────────────────────────

    def open_block_reason(self, instrument_id: str) -> Optional[str]:
        """Return why a new position would be refused, or ``None``."""
        if instrument_id in self._open:
            return "position_exists"
        if len(self._open) >= self._risk.max_positions:
            return "max_positions"
        if self._daily_pnl <= -self._risk.max_daily_loss:
            return "daily_loss_limit"
        return None

    def can_open_position(self, instrument_id: str) -> bool:
        return self.open_block_reason(instrument_id) is None

    def calculate_position_size(
        self,
        entry_price: float,
        stop_loss: float,
        lot_size: int = 1,
    ) -> int:
        """Size a trade from current capital; see ``calculate_quantity``."""
        return calculate_quantity(
            capital=self._capital,
            risk_pct=self._risk.risk_per_trade_pct,
            max_position_pct=self._risk.max_position_size_pct,
            entry_price=entry_price,
            stop_loss=stop_loss,
            lot_size=lot_size,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    def open_position(
        self,
        signal: TradingSignal,
        quantity: int,
        now: Optional[datetime] = None,
        order_id: Optional[str] = None,
        contract_id: Optional[str] = None,
    ) -> Position:
        """Record a new open position from *signal*.

        Raises:
            PositionExistsError: If the instrument already has an open position.
            InvalidInputError: If *quantity* is not positive.
        """
        if signal.instrument_id in self._open:
            raise PositionExistsError(
                f"open position already exists for {signal.instrument_id}"
            )
        if quantity <= 0:
            raise InvalidInputError(f"quantity must be positive, got {quantity}")

        position = Position(
            instrument_id=signal.instrument_id,
            direction=signal.direction,
            quantity=quantity,
            entry_price=signal.trigger_price,
            stop_loss=signal.stop_loss_price,
            target=signal.target_price,
            entry_time=now or datetime.now(timezone.utc),
            current_price=signal.trigger_price,
            order_id=order_id,
            contract_id=contract_id,
        )
        self._open[signal.instrument_id] = position
        logger.info(
            "Opened %s %s x%d @ %.2f (SL %.2f, TP %.2f)",
            position.direction.value, position.instrument_id, quantity,
            position.entry_price, position.stop_loss, position.target,
        )
        return position

    def update_positions(self, prices: Mapping[str, float]) -> list[Position]:
        """Refresh open positions with *prices* and flag those to close.

        Positions without a usable price in *prices* keep their last price
        but are still checked.  Nothing is closed here.
        """
        to_close: list[Position] = []
        for instrument_id, position in self._open.items():
            price = prices.get(instrument_id)
            if price is not None:
                try:
                    position.update_price(price)
                except InvalidInputError as exc:
                    logger.warning("Ignoring price for %s: %s", instrument_id, exc)
            if position.should_close_on_stop_loss() or position.should_close_on_target():
                to_close.append(position)
        return to_close

    def close_position(
        self,
        instrument_id: str,
        exit_price: float,
        reason: CloseReason,
        now: Optional[datetime] = None,
    ) -> Position:
        """Close the open position on *instrument_id* at *exit_price*.

        Realised P&L is added to both daily P&L and capital.

        Raises:
            KeyError: If no open position exists for the instrument.
        """
        position = self._open.get(instrument_id)
        if position is None:
            raise KeyError(f"no open position for {instrument_id}")

        pnl = position.close(exit_price, reason, now or datetime.now(timezone.utc))
        del self._open[instrument_id]
        self._closed.append(position)
        self._daily_pnl += pnl
        self._capital += pnl
        logger.info(
            "Closed %s %s @ %.2f (%s) P&L %.2f | capital %.2f, day %.2f",
            position.direction.value, instrument_id, exit_price, reason.value,
            pnl, self._capital, self._daily_pnl,
        )
        return position

    def reset_daily(self) -> None:
        """Zero daily P&L and forget yesterday's closed positions."""
        self._daily_pnl = 0.0
        self._closed.clear()
        logger.info("Daily counters reset (capital %.2f)", self._capital)

    # ── Guarded flows ────────────────────────────────────────────────────

    async def execute_entry(
        self,
        signal: TradingSignal,
        lot_size: int,
        submit: EntrySubmitter,
        contract_id: Optional[str] = None,
    ) -> EntryResult:
        """Gate, size, submit and record a trade as one critical section.

        *submit* receives the sized signal and returns the broker order id.
        If it raises, the exception propagates and the ledger is unchanged.
        *contract_id* names the option contract ordered in place of the
        signal's instrument, when there is one.
        """
        async with self._lock:
            block = self.open_block_reason(signal.instrument_id)
            if block is not None:
                logger.info("Signal on %s rejected: %s", signal.instrument_id, block)
                return EntryResult(opened=False, reason=block)

            quantity = self.calculate_position_size(
                signal.trigger_price, signal.stop_loss_price, lot_size,
            )
            if quantity <= 0:
                logger.info(
                    "Signal on %s rejected: lot-adjusted quantity is zero",
                    signal.instrument_id,
                )
                return EntryResult(opened=False, reason="zero_quantity")

            limit = self._capital * self._risk.max_portfolio_exposure_pct / 100.0
            if self.exposure + quantity * signal.trigger_price > limit:
                logger.info(
                    "Signal on %s rejected: exposure limit %.2f reached",
                    signal.instrument_id, limit,
                )
                return EntryResult(opened=False, reason="exposure_limit")

            sized = replace(signal, quantity=quantity)
            order_id = await submit(sized)
            position = self.open_position(
                sized, quantity, now=signal.timestamp, order_id=order_id,
                contract_id=contract_id,
            )
            return EntryResult(
                opened=True, reason="opened", position=position, quantity=quantity,
            )

    async def execute_exit(
        self,
        position: Position,
        exit_price: float,
        reason: CloseReason,
        submit: ExitSubmitter,
        now: Optional[datetime] = None,
    ) -> Optional[Position]:
        """Submit the closing order and close *position*.

        Returns ``None`` when *position* is no longer the open position on
        its instrument (closed by another loop, or replaced).  If *submit*
        raises, the position stays open.

        Raises:
            InvalidInputError: If *exit_price* is not positive; nothing is
                submitted.
        """
        if exit_price <= 0:
            raise InvalidInputError(f"exit_price must be positive, got {exit_price}")
        async with self._lock:
            if self._open.get(position.instrument_id) is not position:
                return None
            await submit(position)
            return self.close_position(
                position.instrument_id, exit_price, reason, now=now,
            )

    async def daily_reset(self) -> None:
        """:meth:`reset_daily`, excluded from any in-flight open or close."""
        async with self._lock:
            self.reset_daily()

    # ── Reporting ────────────────────────────────────────────────────────

    def snapshot(self) -> dict:
        return {
            "capital": round(self._capital, 2),
            "daily_pnl": round(self._daily_pnl, 2),
            "unrealized_pnl": round(self.unrealized_pnl, 2),
            "open_positions": len(self._open),
            "closed_positions": len(self._closed),
            "exposure": round(self.exposure, 2),
            "exposure_pct": round(self.exposure_pct, 2),
        }
