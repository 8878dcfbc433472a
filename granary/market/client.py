"""Twelve Data futures client.

Thin async wrapper around the Twelve Data batch ``/quote`` endpoint using
``httpx``.  Transient network failures and retryable HTTP statuses are
retried with tenacity; anything else surfaces as
:class:`~granary.errors.MarketDataUnavailable` so callers can fall back to
cached or mock quotes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from granary.config import settings
from granary.enums import CommodityType
from granary.errors import MarketDataUnavailable

logger = logging.getLogger("granary.market.client")

RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}

_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.NetworkError,
)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, _NETWORK_ERRORS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


_retry_policy = dict(
    retry=retry_if_exception(_should_retry),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class Quote(BaseModel):
    """One OHLCV quote for a commodity contract."""

    commodity: CommodityType
    symbol: str
    contract_month: Optional[str] = None
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    quote_date: datetime
    source: str = "twelvedata"


def _to_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed else default


def parse_quote(
    payload: dict[str, Any],
    symbol: str,
    commodity: CommodityType,
    contract_month: Optional[str] = None,
) -> Optional[Quote]:
    """Convert one Twelve Data quote object; ``None`` when it has no close."""
    if not payload or payload.get("status") == "error":
        return None
    close = _to_float(payload.get("close"), 0.0)
    if not close:
        return None
    try:
        volume = int(float(payload.get("volume") or 0))
    except (TypeError, ValueError):
        volume = 0
    return Quote(
        commodity=commodity,
        symbol=symbol,
        contract_month=contract_month,
        open=_to_float(payload.get("open"), close),
        high=_to_float(payload.get("high"), close),
        low=_to_float(payload.get("low"), close),
        close=close,
        volume=volume,
        quote_date=datetime.now(timezone.utc),
    )


class TwelveDataClient:
    """Batch quote fetcher for grain futures symbols."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.twelve_data_api_key
        self.base_url = (base_url or settings.twelve_data_base_url).rstrip("/")
        self.timeout = timeout or settings.market_request_timeout
        self._client = client
        self.total_calls = 0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        client = self._http()
        async for attempt in AsyncRetrying(**_retry_policy):
            with attempt:
                self.total_calls += 1
                resp = await client.get(f"{self.base_url}{path}", params=params)
                resp.raise_for_status()
                return resp.json()

    async def fetch_quotes(
        self, symbols: dict[str, CommodityType], contract_months: Optional[dict[str, str]] = None
    ) -> dict[str, Quote]:
        """Fetch ``symbols`` in one batch call.

        Args:
            symbols: Mapping of exchange symbol to commodity.
            contract_months: Optional mapping of symbol to contract label.

        Returns:
            Quotes keyed by symbol; symbols the provider could not price are
            omitted.

        Raises:
            MarketDataUnavailable: when no API key is configured or the
                request fails after retries.
        """
        if not self.configured:
            raise MarketDataUnavailable("Twelve Data API key not configured")
        if not symbols:
            return {}

        names = list(symbols)
        try:
            data = await self._get(
                "/quote", {"symbol": ",".join(names), "apikey": self.api_key}
            )
        except (httpx.HTTPError, RetryError, ValueError) as exc:
            logger.error("Twelve Data request failed symbols=%s: %s", names, exc)
            raise MarketDataUnavailable("Twelve Data request failed", exc) from exc

        months = contract_months or {}
        # A single-symbol request returns the quote object itself.
        batch = {names[0]: data} if len(names) == 1 else (data or {})

        quotes: dict[str, Quote] = {}
        for symbol in names:
            quote = parse_quote(batch.get(symbol) or {}, symbol, symbols[symbol], months.get(symbol))
            if quote is not None:
                quotes[symbol] = quote
            else:
                logger.debug("No usable quote for symbol=%s", symbol)

        logger.info("Twelve Data batch: requested=%d priced=%d", len(names), len(quotes))
        return quotes
