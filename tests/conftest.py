"""Pytest configuration and fixtures."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from granary.db import Business, Farm, MarketingSignal, init_models, utcnow
from granary.enums import CommodityType, TrendDirection
from granary.market.indicators import TrendAnalysis
from granary.market.service import MarketSnapshot


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with every Granary table."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def business(session_factory) -> Business:
    """An active business with one current-year corn farm (break-even $3.80)."""
    async with session_factory() as session:
        biz = Business(name="Prairie Acres")
        session.add(biz)
        await session.flush()
        session.add(
            Farm(
                business_id=biz.id,
                name="North 160",
                year=utcnow().year,
                commodity_type=CommodityType.CORN.value,
                acres=100.0,
                aph=200.0,
                projected_yield=200.0,
                total_cost_per_acre=760.0,
            )
        )
        await session.commit()
    return biz


@pytest_asyncio.fixture
async def make_signal(session_factory):
    """Factory inserting a MarketingSignal row directly."""

    async def _make(business_id: uuid.UUID, **overrides) -> MarketingSignal:
        now = utcnow()
        fields = dict(
            business_id=business_id,
            signal_type="CASH_SALE",
            commodity_type="CORN",
            strength="STRONG_BUY",
            status="ACTIVE",
            title="Strong CORN Cash Sale Opportunity",
            summary="CORN is 18.4% above break-even with downward price momentum.",
            rationale="Overbought.",
            current_price=4.50,
            break_even_price=3.80,
            price_above_break_even=0.70,
            percent_above_break_even=0.184,
            recommended_bushels=5000,
            created_at=now,
            expires_at=now + timedelta(days=7),
        )
        fields.update(overrides)
        signal = MarketingSignal(**fields)
        async with session_factory() as session:
            session.add(signal)
            await session.commit()
        return signal

    return _make


class FakeMarket:
    """Stands in for MarketDataService with fixed prices and no network."""

    def __init__(
        self,
        futures: float = 4.80,
        basis: float = -0.30,
        trend: TrendDirection = TrendDirection.DOWN,
        rsi: float = 75.0,
        volatility: float = 0.015,
        basis_percentile: float = 40.0,
    ) -> None:
        self.futures = futures
        self.basis = basis
        self.trend = TrendAnalysis(trend=trend, rsi=rsi, volatility=volatility)
        self.percentile = basis_percentile
        self.prices: dict[CommodityType, list[tuple[datetime, float]]] = {}
        self.closed = False

    async def snapshot(self, commodity: CommodityType) -> Optional[MarketSnapshot]:
        return MarketSnapshot(commodity, self.futures, "Z26", self.basis, self.trend)

    async def get_basis_percentile(self, commodity: CommodityType, current_basis: float) -> float:
        return self.percentile

    async def get_price_on_or_after(
        self, commodity: CommodityType, when: datetime
    ) -> Optional[float]:
        for stamp, price in sorted(self.prices.get(commodity, [])):
            if stamp >= when:
                return price
        return None

    async def refresh_quotes(self, commodities=None, force: bool = False) -> dict:
        return {}

    async def close(self) -> None:
        self.closed = True


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[uuid.UUID, str, str, Optional[uuid.UUID]]] = []
        self.fail = fail

    async def send(self, business_id, title, body, *, signal_id=None) -> None:
        if self.fail:
            raise RuntimeError("push gateway down")
        self.sent.append((business_id, title, body, signal_id))


@pytest.fixture
def fake_market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture
def utc_noon() -> datetime:
    return datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc)
