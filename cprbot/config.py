"""CPR Bot — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from cprbot.risk.ledger import RiskParameters


_REQUIRED_VARS = [
    "KITE_API_KEY",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    kite_api_key: str
    kite_access_token: str
    access_token_path: str
    kite_base_url: str
    watchlist: tuple[str, ...]
    catalog_exchanges: tuple[str, ...]
    capital: float
    max_daily_loss: float
    max_position_size_pct: float
    risk_per_trade_pct: float
    max_positions: int
    max_portfolio_exposure_pct: float
    signal_interval_seconds: float
    monitor_interval_seconds: float
    status_interval_seconds: float
    login_check_interval_seconds: float
    login_timeout_seconds: float
    shutdown_grace_seconds: float
    log_level: str
    status_port: int
    # underlying (token or symbol) -> option chain name, e.g. ("256265", "NIFTY")
    option_chains: tuple[tuple[str, str], ...] = ()

    @property
    def risk_parameters(self) -> RiskParameters:
        """Risk limits for the trading day."""
        return RiskParameters(
            max_daily_loss=self.max_daily_loss,
            max_position_size_pct=self.max_position_size_pct,
            risk_per_trade_pct=self.risk_per_trade_pct,
            max_positions=self.max_positions,
            max_portfolio_exposure_pct=self.max_portfolio_exposure_pct,
        )


def _split(value: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in value.split(",") if v.strip())


def _pairs(value: str) -> tuple[tuple[str, str], ...]:
    """Parse ``"KEY:CHAIN,KEY:CHAIN"``, splitting each entry on its last ``:``."""
    pairs = []
    for item in _split(value):
        key, sep, chain = item.rpartition(":")
        if not sep or not key.strip() or not chain.strip():
            raise ValueError(f"OPTION_CHAINS entry must be UNDERLYING:CHAIN, got {item!r}")
        pairs.append((key.strip(), chain.strip()))
    return tuple(pairs)


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        kite_api_key=os.environ["KITE_API_KEY"],
        kite_access_token=os.environ.get("KITE_ACCESS_TOKEN", ""),
        access_token_path=os.environ.get(
            "ACCESS_TOKEN_PATH", "login/access_token.json"
        ),
        kite_base_url=os.environ.get("KITE_BASE_URL", "https://api.kite.trade"),
        watchlist=_split(os.environ.get("WATCHLIST", "256265")),
        catalog_exchanges=_split(os.environ.get("CATALOG_EXCHANGES", "NSE,NFO")),
        capital=float(os.environ.get("CAPITAL", "500000")),
        max_daily_loss=float(os.environ.get("MAX_DAILY_LOSS", "10000")),
        max_position_size_pct=float(os.environ.get("MAX_POSITION_SIZE_PCT", "10")),
        risk_per_trade_pct=float(os.environ.get("RISK_PER_TRADE_PCT", "1.0")),
        max_positions=int(os.environ.get("MAX_POSITIONS", "3")),
        max_portfolio_exposure_pct=float(
            os.environ.get("MAX_PORTFOLIO_EXPOSURE_PCT", "50")
        ),
        signal_interval_seconds=float(os.environ.get("SIGNAL_INTERVAL_SECONDS", "10")),
        monitor_interval_seconds=float(os.environ.get("MONITOR_INTERVAL_SECONDS", "5")),
        status_interval_seconds=float(os.environ.get("STATUS_INTERVAL_SECONDS", "30")),
        login_check_interval_seconds=float(
            os.environ.get("LOGIN_CHECK_INTERVAL_SECONDS", "30")
        ),
        login_timeout_seconds=float(os.environ.get("LOGIN_TIMEOUT_SECONDS", "1800")),
        shutdown_grace_seconds=float(os.environ.get("SHUTDOWN_GRACE_SECONDS", "30")),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        status_port=int(os.environ.get("STATUS_PORT", "8080")),
        option_chains=_pairs(os.environ.get("OPTION_CHAINS", "256265:NIFTY")),
    )
