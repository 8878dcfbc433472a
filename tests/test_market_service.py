"""Tests for quote refresh and persistence in the market data service."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from granary.db import FuturesQuote
from granary.enums import CommodityType
from granary.market.client import Quote, TwelveDataClient
from granary.market.service import MarketDataService


class CornOnlyClient:
    """Provider that prices corn and nothing else."""

    configured = True

    def __init__(self) -> None:
        self.calls = 0

    async def fetch_quotes(self, symbols, contract_months=None):
        self.calls += 1
        return {
            "ZC": Quote(
                commodity=CommodityType.CORN, symbol="ZC", open=4.70, high=4.85,
                low=4.66, close=4.80, quote_date=datetime.now(timezone.utc),
            )
        }

    async def close(self) -> None:
        pass


async def stored_sources(session_factory) -> list[str]:
    async with session_factory() as session:
        return sorted((await session.execute(select(FuturesQuote.source))).scalars().all())


class TestRefreshQuotes:
    async def test_mock_quotes_are_not_stored(self, session_factory) -> None:
        market = MarketDataService(session_factory, client=TwelveDataClient(api_key=""))

        quotes = await market.refresh_quotes(force=True)

        assert {q.source for q in quotes.values()} == {"mock"}
        assert await stored_sources(session_factory) == []

    async def test_only_real_quotes_are_stored(self, session_factory) -> None:
        market = MarketDataService(session_factory, client=CornOnlyClient())

        quotes = await market.refresh_quotes(force=True)

        assert quotes[CommodityType.CORN].close == pytest.approx(4.80)
        assert quotes[CommodityType.WHEAT].source == "mock"
        assert await stored_sources(session_factory) == ["twelvedata"]

    async def test_cache_is_reused(self, session_factory) -> None:
        client = CornOnlyClient()
        market = MarketDataService(session_factory, client=client)

        await market.refresh_quotes([CommodityType.CORN])
        await market.refresh_quotes([CommodityType.CORN])

        assert client.calls == 1
