"""Market Data Service — quotes, basis history and trend analysis per commodity.

Owns a short-TTL in-memory quote cache in front of
:class:`~granary.market.client.TwelveDataClient`.  When the provider is not
configured or a fetch fails, mock quotes are substituted so that signal
generation never stalls on market data.  Every fetched quote is persisted
to ``granary_futures_quotes`` and all history queries read from there.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from granary.config import settings
from granary.db import BasisObservation, FuturesQuote, SessionFactory, as_utc, async_session
from granary.enums import CommodityType
from granary.errors import MarketDataUnavailable
from granary.market.client import Quote, TwelveDataClient
from granary.market import indicators
from granary.market.indicators import DEFAULT_AVERAGE_BASIS, TrendAnalysis
from granary.signals.thresholds import basis_percentile

logger = logging.getLogger("granary.market")

# Base prices used when live data is unavailable.
MOCK_BASE_PRICES: dict[CommodityType, float] = {
    CommodityType.CORN: 4.50,
    CommodityType.SOYBEANS: 12.00,
    CommodityType.WHEAT: 6.00,
}


class MarketSnapshot:
    """Everything the signal rules need for one commodity at one instant."""

    def __init__(
        self,
        commodity: CommodityType,
        futures_price: float,
        contract_month: Optional[str],
        basis: float,
        trend: TrendAnalysis,
    ) -> None:
        self.commodity = commodity
        self.futures_price = futures_price
        self.contract_month = contract_month
        self.basis = basis
        self.trend = trend

    @property
    def cash_price(self) -> float:
        return self.futures_price + self.basis

    @property
    def volatility_regime(self):
        return indicators.volatility_regime(self.trend.volatility)

    def context(self) -> dict[str, Any]:
        """JSON-serialisable market context stored on each signal."""
        return {
            "futures_price": round(self.futures_price, 4),
            "futures_month": self.contract_month,
            "futures_trend": self.trend.trend.value,
            "trend_strength": round(self.trend.strength, 2),
            "basis_level": round(self.basis, 4),
            "basis_vs_historical": indicators.basis_vs_historical(self.basis),
            "cash_price": round(self.cash_price, 4),
            "rsi_value": round(self.trend.rsi, 2),
            "moving_average_20": round(self.trend.moving_average_20, 4),
            "moving_average_50": round(self.trend.moving_average_50, 4),
            "volatility": round(self.trend.volatility, 4),
        }


class MarketDataService:
    """Quote cache, persistence and analytics for CORN, SOYBEANS and WHEAT."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        client: Optional[TwelveDataClient] = None,
        cache_seconds: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        self._client = client or TwelveDataClient()
        self._cache_seconds = (
            cache_seconds if cache_seconds is not None else settings.market_quote_cache_seconds
        )
        self._cache: dict[CommodityType, tuple[float, Quote]] = {}
        if not self._client.configured:
            logger.warning("Twelve Data API key not set; using mock market data")

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _cached(self, commodity: CommodityType) -> Optional[Quote]:
        entry = self._cache.get(commodity)
        if entry and time.monotonic() - entry[0] < self._cache_seconds:
            return entry[1]
        return None

    @staticmethod
    def mock_quote(commodity: CommodityType) -> Quote:
        price = MOCK_BASE_PRICES[commodity] + random.uniform(-0.25, 0.25)
        return Quote(
            commodity=commodity,
            symbol=indicators.FUTURES_ROOTS[commodity],
            contract_month=indicators.nearest_contract_month(),
            open=price - 0.02,
            high=price + 0.08,
            low=price - 0.06,
            close=price,
            volume=random.randint(10_000, 60_000),
            quote_date=datetime.now(timezone.utc),
            source="mock",
        )

    async def refresh_quotes(
        self, commodities: Optional[list[CommodityType]] = None, force: bool = False
    ) -> dict[CommodityType, Quote]:
        """Fetch front-month quotes in one batch call and persist the real ones.

        Quotes younger than the cache TTL are reused unless ``force`` is set.
        Commodities the provider cannot price fall back to mock quotes.
        """
        wanted = list(commodities or list(CommodityType))
        result: dict[CommodityType, Quote] = {}
        missing: list[CommodityType] = []
        for commodity in wanted:
            cached = None if force else self._cached(commodity)
            if cached is not None:
                result[commodity] = cached
            else:
                missing.append(commodity)

        if not missing:
            return result

        month = indicators.nearest_contract_month()
        symbols = {indicators.FUTURES_ROOTS[c]: c for c in missing}
        fetched: dict[str, Quote] = {}
        if self._client.configured:
            try:
                fetched = await self._client.fetch_quotes(
                    symbols, {s: month for s in symbols}
                )
            except MarketDataUnavailable as exc:
                logger.warning("Market data unavailable, using mock quotes: %s", exc)

        fresh: list[Quote] = []
        for symbol, commodity in symbols.items():
            quote = fetched.get(symbol) or self.mock_quote(commodity)
            self._cache[commodity] = (time.monotonic(), quote)
            result[commodity] = quote
            fresh.append(quote)

        await self._store_quotes([q for q in fresh if q.source != "mock"])
        logger.info(
            "Refreshed quotes: %s",
            ", ".join(f"{q.commodity.value}={q.close:.4f}({q.source})" for q in fresh),
        )
        return result

    async def get_quote(self, commodity: CommodityType) -> Quote:
        quotes = await self.refresh_quotes([commodity])
        return quotes[commodity]

    async def fetch_harvest_quotes(self, harvest_year: int) -> dict[CommodityType, Quote]:
        """December corn and November soybeans for ``harvest_year``."""
        symbols = {
            indicators.harvest_contract_symbol(c, harvest_year): c
            for c in (CommodityType.CORN, CommodityType.SOYBEANS)
        }
        months = {
            s: indicators.harvest_contract_month(c, harvest_year) for s, c in symbols.items()
        }
        fetched: dict[str, Quote] = {}
        if self._client.configured:
            try:
                fetched = await self._client.fetch_quotes(symbols, months)
            except MarketDataUnavailable as exc:
                logger.warning("Harvest quotes unavailable, using mock: %s", exc)

        result: dict[CommodityType, Quote] = {}
        for symbol, commodity in symbols.items():
            quote = fetched.get(symbol)
            if quote is None:
                quote = self.mock_quote(commodity)
                quote.symbol = symbol
                quote.contract_month = months[symbol]
            result[commodity] = quote
        await self._store_quotes([q for q in result.values() if q.source != "mock"])
        return result

    async def _store_quotes(self, quotes: list[Quote]) -> None:
        if not quotes:
            return
        async with self._session_factory() as session:
            for q in quotes:
                session.add(
                    FuturesQuote(
                        commodity_type=q.commodity.value,
                        symbol=q.symbol,
                        contract_month=q.contract_month,
                        open_price=q.open,
                        high_price=q.high,
                        low_price=q.low,
                        close_price=q.close,
                        volume=q.volume,
                        quote_date=q.quote_date,
                        source=q.source,
                    )
                )
            await session.commit()

    async def get_nearest_futures_quote(self, commodity: CommodityType) -> Optional[FuturesQuote]:
        """Latest stored quote for the nearest contract, else the latest of any month."""
        month = indicators.nearest_contract_month()
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(FuturesQuote)
                    .where(
                        FuturesQuote.commodity_type == commodity.value,
                        FuturesQuote.contract_month == month,
                    )
                    .order_by(FuturesQuote.quote_date.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                row = (
                    await session.execute(
                        select(FuturesQuote)
                        .where(FuturesQuote.commodity_type == commodity.value)
                        .order_by(FuturesQuote.quote_date.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
        return row

    async def get_price_history(self, commodity: CommodityType, days: int = 60) -> list[float]:
        """Closing prices for the trailing ``days`` days, oldest first."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(FuturesQuote.close_price)
                    .where(
                        FuturesQuote.commodity_type == commodity.value,
                        FuturesQuote.quote_date >= since,
                    )
                    .order_by(FuturesQuote.quote_date.asc())
                )
            ).scalars().all()
        return [float(p) for p in rows]

    async def get_price_on_or_after(
        self, commodity: CommodityType, when: datetime
    ) -> Optional[float]:
        """First stored close at or after ``when``."""
        async with self._session_factory() as session:
            price = (
                await session.execute(
                    select(FuturesQuote.close_price)
                    .where(
                        FuturesQuote.commodity_type == commodity.value,
                        FuturesQuote.quote_date >= when,
                    )
                    .order_by(FuturesQuote.quote_date.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        return float(price) if price is not None else None

    async def analyze_trend(self, commodity: CommodityType) -> TrendAnalysis:
        return indicators.analyze_trend(await self.get_price_history(commodity, 60))

    # ------------------------------------------------------------------
    # Basis
    # ------------------------------------------------------------------

    async def record_basis(
        self,
        commodity: CommodityType,
        basis: float,
        location: Optional[str] = None,
        business_id=None,
        observed_at: Optional[datetime] = None,
    ) -> BasisObservation:
        obs = BasisObservation(
            commodity_type=commodity.value,
            basis=basis,
            location=location,
            business_id=business_id,
            observed_at=observed_at or datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            session.add(obs)
            await session.commit()
        return obs

    async def get_basis_history(self, commodity: CommodityType, days: int = 30) -> list[float]:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(BasisObservation.basis)
                    .where(
                        BasisObservation.commodity_type == commodity.value,
                        BasisObservation.observed_at >= since,
                    )
                    .order_by(BasisObservation.observed_at.asc())
                )
            ).scalars().all()
        return [float(b) for b in rows]

    async def get_average_basis(self, commodity: CommodityType, days: int = 30) -> float:
        """Mean basis over ``days``; -0.15 when nothing has been observed."""
        history = await self.get_basis_history(commodity, days)
        if not history:
            return DEFAULT_AVERAGE_BASIS
        return sum(history) / len(history)

    async def get_basis_percentile(self, commodity: CommodityType, current_basis: float) -> float:
        return basis_percentile(current_basis, await self.get_basis_history(commodity, 365))

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def snapshot(self, commodity: CommodityType) -> Optional[MarketSnapshot]:
        """Current futures, 30-day average basis and trend for ``commodity``.

        Prefers the stored nearest-contract quote and refreshes through the
        cache when nothing is stored yet.
        """
        stored = await self.get_nearest_futures_quote(commodity)
        if stored is not None:
            futures, month = float(stored.close_price), stored.contract_month
        else:
            quote = await self.get_quote(commodity)
            futures, month = quote.close, quote.contract_month
        if futures <= 0:
            return None
        basis = await self.get_average_basis(commodity)
        trend = await self.analyze_trend(commodity)
        return MarketSnapshot(commodity, futures, month, basis, trend)

    @staticmethod
    def is_market_open(now: Optional[datetime] = None) -> bool:
        return indicators.is_market_open(as_utc(now) if now else None)
