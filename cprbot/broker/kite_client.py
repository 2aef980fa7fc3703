"""Kite Connect v3 REST API async client.

Handles all communication with the broker: quotes, historical candles,
the instrument catalog and order placement.
"""

import asyncio
import io
import itertools
import logging
from datetime import datetime
from typing import Optional

import httpx
import pandas as pd

from cprbot.auth.session import SessionProvider
from cprbot.broker.models import Candle, OrderRequest, OrderResponse, Quote
from cprbot.errors import BrokerError

logger = logging.getLogger("cprbot")

# Retry settings (idempotent GETs only)
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

_QUOTE_TS_FORMAT = "%Y-%m-%d %H:%M:%S"
_CANDLE_TS_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def _parse_quote_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value), _QUOTE_TS_FORMAT)
    except ValueError:
        return None


class KiteClient:
    """Async client wrapping the Kite Connect v3 REST API.

    Args:
        api_key: Kite app API key.
        session: Source of the daily access token.
        base_url: API root, ``https://api.kite.trade`` by default.
        dry_run: Paper mode — orders are logged and acknowledged locally
            instead of being sent.
    """

    def __init__(
        self,
        api_key: str,
        session: SessionProvider,
        base_url: str = "https://api.kite.trade",
        dry_run: bool = False,
    ) -> None:
        self._api_key = api_key
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._dry_run = dry_run
        self._paper_ids = itertools.count(1)

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def _headers(self) -> dict:
        token = self._session.current_access_token()
        if not token:
            raise BrokerError("no access token available (not logged in)")
        return {
            "X-Kite-Version": "3",
            "Authorization": f"token {self._api_key}:{token}",
        }

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        retry: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504), rate-limits
        (429) and transport failures when *retry* is set.  Every failure
        surfaces as ``BrokerError``.
        """
        attempts = _MAX_RETRIES if retry else 1
        headers = self._headers()
        last_exc: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES and attempt + 1 < attempts:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Kite %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, attempts, delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                if resp.is_error:
                    raise BrokerError(
                        f"Kite {method.upper()} {url} failed with "
                        f"{resp.status_code}: {_error_message(resp)}"
                    )
                return resp

            except httpx.TransportError as exc:
                last_exc = exc
                if attempt + 1 >= attempts:
                    break
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Kite %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), url, exc, attempt + 1, attempts, delay,
                )
                await asyncio.sleep(delay)

        raise BrokerError(f"Kite {method.upper()} {url} failed: {last_exc}") from last_exc

    @staticmethod
    def _data(resp: httpx.Response):
        body = resp.json()
        if body.get("status") != "success":
            raise BrokerError(f"Kite API error: {body.get('message', 'unknown error')}")
        return body.get("data")

    # ── Market data ──────────────────────────────────────────────────────

    async def get_quote(self, instrument_id: str) -> Quote:
        """Fetch the latest quote for one instrument token."""
        url = f"{self._base_url}/quote"
        resp = await self._request_with_retry("get", url, params={"i": instrument_id})

        data = self._data(resp) or {}
        raw = data.get(instrument_id)
        if raw is None:
            raise BrokerError(f"no quote returned for {instrument_id}")
        ohlc = raw.get("ohlc", {})
        return Quote(
            instrument_id=instrument_id,
            last_price=float(raw["last_price"]),
            open=float(ohlc.get("open", 0.0)),
            high=float(ohlc.get("high", 0.0)),
            low=float(ohlc.get("low", 0.0)),
            close=float(ohlc.get("close", 0.0)),
            volume=int(raw.get("volume", 0) or 0),
            timestamp=_parse_quote_time(raw.get("timestamp")),
        )

    async def fetch_historical(
        self,
        instrument_id: str,
        interval: str,
        from_dt: datetime,
        to_dt: datetime,
        continuous: bool = False,
        oi: bool = False,
    ) -> list[Candle]:
        """Fetch historical candles.

        Args:
            instrument_id: Kite instrument token, e.g. ``"256265"``.
            interval: ``"minute"``, ``"5minute"``, ..., ``"day"``.
            from_dt: Range start (exchange-local).
            to_dt: Range end (exchange-local).
            continuous: Stitch expired futures contracts together.
            oi: Include open interest as a seventh column.

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        url = f"{self._base_url}/instruments/historical/{instrument_id}/{interval}"
        params = {
            "from": from_dt.strftime(_QUOTE_TS_FORMAT),
            "to": to_dt.strftime(_QUOTE_TS_FORMAT),
            "continuous": int(continuous),
            "oi": int(oi),
        }

        resp = await self._request_with_retry("get", url, params=params)

        data = self._data(resp) or {}
        candles: list[Candle] = []
        for row in data.get("candles", []):
            candles.append(
                Candle(
                    time=datetime.strptime(row[0], _CANDLE_TS_FORMAT),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=int(row[5]),
                    oi=int(row[6]) if oi and len(row) > 6 else None,
                )
            )
        return candles

    async def fetch_instruments(self, exchange: str) -> pd.DataFrame:
        """Download the instrument catalog CSV for *exchange* (e.g. ``"NFO"``)."""
        url = f"{self._base_url}/instruments/{exchange}"
        resp = await self._request_with_retry("get", url)
        return pd.read_csv(io.StringIO(resp.text))

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """Place a regular-variety order.

        Never retried: a timed-out POST may still have reached the
        exchange.
        """
        if self._dry_run:
            order_id = f"PAPER-{next(self._paper_ids)}"
            logger.info(
                "[paper] %s %s x%d (%s) -> %s",
                order.transaction_type, order.symbol, order.quantity,
                order.order_type, order_id,
            )
            return OrderResponse(
                order_id=order_id,
                instrument_id=order.instrument_id,
                transaction_type=order.transaction_type,
                quantity=order.quantity,
            )

        url = f"{self._base_url}/orders/regular"
        form = {
            "tradingsymbol": order.symbol,
            "exchange": order.exchange,
            "transaction_type": order.transaction_type,
            "order_type": order.order_type,
            "quantity": str(order.quantity),
            "product": order.product,
            "validity": "DAY",
        }

        resp = await self._request_with_retry("post", url, retry=False, data=form)

        data = self._data(resp) or {}
        return OrderResponse(
            order_id=str(data["order_id"]),
            instrument_id=order.instrument_id,
            transaction_type=order.transaction_type,
            quantity=order.quantity,
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("message", resp.text)
    except ValueError:
        return resp.text
