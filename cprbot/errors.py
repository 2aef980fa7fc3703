"""Error taxonomy for the CPR bot.

Policy rejections (risk-reward too low, risk gate closed, zero quantity)
are return values, not exceptions.  Only genuine failures live here.
"""


class CPRBotError(Exception):
    """Base class for every error raised by the bot."""


class InvalidInputError(CPRBotError, ValueError):
    """Non-positive or otherwise unusable price / OHLC input."""


class BrokerError(CPRBotError):
    """A broker API call failed (network, HTTP or API-level error)."""


class InstrumentNotFoundError(CPRBotError, KeyError):
    """No instrument matches the requested symbol or token."""


class PositionExistsError(CPRBotError):
    """An open position already exists for the instrument."""


class PositionClosedError(CPRBotError):
    """Attempt to mutate a position that has already been closed."""
