"""SQLAlchemy ORM models matching the Granary PostgreSQL schema."""

import uuid
from datetime import datetime, date, timezone
from typing import Optional, List

from sqlalchemy import (
    JSON, String, Text, Integer, Boolean, Date, DateTime, Float,
    ForeignKey, UniqueConstraint, Uuid, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from granary.config import settings


# ── Engine & Session ──────────────────────────────────────────────

engine = create_async_engine(settings.database_url, echo=False, pool_size=10)
async_session = async_sessionmaker(engine, expire_on_commit=False)

SessionFactory = async_sessionmaker[AsyncSession]

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from drivers that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def init_models(bind: Optional[AsyncEngine] = None) -> None:
    """Create every Granary table that does not exist yet."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class Base(DeclarativeBase):
    pass


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow,
        server_default=func.now(), nullable=False,
    )


# ── Operation ─────────────────────────────────────────────────────

class Business(Base):
    __tablename__ = "granary_businesses"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = _created_at()

    farms: Mapped[List["Farm"]] = relationship(
        "Farm", back_populates="business", cascade="all, delete-orphan"
    )
    preferences: Mapped[Optional["MarketingPreferences"]] = relationship(
        "MarketingPreferences", back_populates="business", uselist=False
    )


class Farm(Base):
    """A field/crop-year unit. Break-even inputs come from the cost ledger."""

    __tablename__ = "granary_farms"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    acres: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    aph: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    projected_yield: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_cost_per_acre: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    contracted_bushels: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    contracted_avg_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    county_expected_yield: Mapped[Optional[float]] = mapped_column(Float)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()

    business: Mapped["Business"] = relationship("Business", back_populates="farms")
    policy: Mapped[Optional["CropInsurancePolicy"]] = relationship(
        "CropInsurancePolicy", back_populates="farm", uselist=False
    )


# ── Marketing preferences ─────────────────────────────────────────

PREFERENCES_SCHEMA_VERSION = 2


class MarketingPreferences(Base):
    """One row per business; created lazily with defaults on first read."""

    __tablename__ = "granary_marketing_preferences"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), nullable=False, unique=True
    )
    schema_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=PREFERENCES_SCHEMA_VERSION
    )

    # Notifications
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    daily_digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    quiet_hours_start: Mapped[Optional[int]] = mapped_column(Integer)
    quiet_hours_end: Mapped[Optional[int]] = mapped_column(Integer)

    # Commodities
    corn_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    soybeans_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    wheat_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Marketing tools
    cash_sale_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    basis_contract_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    hta_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    accumulator_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    accumulator_inquiry_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    options_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Thresholds
    risk_tolerance: Mapped[str] = mapped_column(String(20), nullable=False, default="MODERATE")
    target_profit_margin: Mapped[float] = mapped_column(Float, nullable=False, default=0.50)
    min_above_breakeven: Mapped[float] = mapped_column(Float, nullable=False, default=0.05)
    accumulator_marketing_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.20)
    accumulator_min_price: Mapped[Optional[float]] = mapped_column(Float)
    accumulator_percent_above_breakeven: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.10
    )

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    business: Mapped["Business"] = relationship("Business", back_populates="preferences")


# ── Signals ───────────────────────────────────────────────────────

class MarketingSignal(Base):
    __tablename__ = "granary_marketing_signals"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), nullable=False, index=True
    )
    signal_type: Mapped[str] = mapped_column(String(40), nullable=False)
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    strength: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE", index=True)

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[Optional[str]] = mapped_column(Text)

    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    break_even_price: Mapped[float] = mapped_column(Float, nullable=False)
    price_above_break_even: Mapped[float] = mapped_column(Float, nullable=False)
    percent_above_break_even: Mapped[float] = mapped_column(Float, nullable=False)
    target_price: Mapped[Optional[float]] = mapped_column(Float)

    recommended_bushels: Mapped[Optional[int]] = mapped_column(Integer)
    recommended_action: Mapped[Optional[str]] = mapped_column(Text)

    market_context: Mapped[Optional[dict]] = mapped_column(JSONType)
    ai_analysis: Mapped[Optional[str]] = mapped_column(Text)
    ai_analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dismiss_reason: Mapped[Optional[str]] = mapped_column(Text)
    action_taken: Mapped[Optional[str]] = mapped_column(Text)
    action_taken_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class AccumulatorContract(Base):
    __tablename__ = "granary_accumulator_contracts"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), nullable=False, index=True
    )
    contract_number: Mapped[Optional[str]] = mapped_column(String(60))
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    total_bushels: Mapped[float] = mapped_column(Float, nullable=False)
    daily_bushels: Mapped[float] = mapped_column(Float, nullable=False)
    accumulated_bushels: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    knockout_price: Mapped[float] = mapped_column(Float, nullable=False)
    double_up_price: Mapped[Optional[float]] = mapped_column(Float)
    is_knocked_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_doubled_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = _created_at()


# ── Market data ───────────────────────────────────────────────────

class FuturesQuote(Base):
    __tablename__ = "granary_futures_quotes"

    id: Mapped[uuid.UUID] = _pk()
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    contract_month: Mapped[Optional[str]] = mapped_column(String(20))
    open_price: Mapped[float] = mapped_column(Float, nullable=False)
    high_price: Mapped[float] = mapped_column(Float, nullable=False)
    low_price: Mapped[float] = mapped_column(Float, nullable=False)
    close_price: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[Optional[int]] = mapped_column(Integer)
    quote_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="twelvedata")
    created_at: Mapped[datetime] = _created_at()


class BasisObservation(Base):
    __tablename__ = "granary_basis_observations"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), index=True
    )
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    location: Mapped[Optional[str]] = mapped_column(String(200))
    basis: Mapped[float] = mapped_column(Float, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


# ── Learning ──────────────────────────────────────────────────────

class UserMarketingProfile(Base):
    __tablename__ = "granary_user_marketing_profiles"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_businesses.id"), nullable=False
    )

    learned_risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    avg_percent_above_break_even: Mapped[Optional[float]] = mapped_column(Float)
    preferred_sell_window: Mapped[Optional[str]] = mapped_column(String(10))

    corn_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    soybeans_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    wheat_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cash_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    basis_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    hta_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    accumulator_preference: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    total_signals_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_signals_acted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_signals_dismissed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    act_on_strong_buy_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    act_on_buy_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_response_time_hours: Mapped[Optional[float]] = mapped_column(Float)

    total_decisions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bushels_sold: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    model_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_learning_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    decisions: Mapped[List["MarketingDecision"]] = relationship(
        "MarketingDecision", back_populates="profile", cascade="all, delete-orphan"
    )


class MarketingDecision(Base):
    __tablename__ = "granary_marketing_decisions"

    id: Mapped[uuid.UUID] = _pk()
    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_user_marketing_profiles.id"), nullable=False, index=True
    )
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    signal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("granary_marketing_signals.id")
    )
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    marketing_tool: Mapped[str] = mapped_column(String(20), nullable=False)
    bushels: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Market snapshot at decision time
    break_even_price: Mapped[float] = mapped_column(Float, nullable=False)
    percent_above_break_even: Mapped[float] = mapped_column(Float, nullable=False)
    futures_price: Mapped[Optional[float]] = mapped_column(Float)
    basis: Mapped[Optional[float]] = mapped_column(Float)
    rsi: Mapped[Optional[float]] = mapped_column(Float)
    trend_direction: Mapped[Optional[str]] = mapped_column(String(10))
    volatility: Mapped[Optional[float]] = mapped_column(Float)

    # Outcome tracking
    price_after_1_week: Mapped[Optional[float]] = mapped_column(Float)
    price_after_2_weeks: Mapped[Optional[float]] = mapped_column(Float)
    price_after_1_month: Mapped[Optional[float]] = mapped_column(Float)
    decision_quality: Mapped[Optional[str]] = mapped_column(String(20))
    outcome_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    notes: Mapped[Optional[str]] = mapped_column(Text)
    decided_at: Mapped[datetime] = _created_at()

    profile: Mapped["UserMarketingProfile"] = relationship(
        "UserMarketingProfile", back_populates="decisions"
    )


class SignalInteraction(Base):
    __tablename__ = "granary_signal_interactions"
    __table_args__ = (UniqueConstraint("profile_id", "signal_id"),)

    id: Mapped[uuid.UUID] = _pk()
    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_user_marketing_profiles.id"), nullable=False, index=True
    )
    signal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_marketing_signals.id"), nullable=False
    )
    interaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(40), nullable=False)
    signal_strength: Mapped[str] = mapped_column(String(20), nullable=False)
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    signal_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    response_time_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    price_at_signal: Mapped[Optional[float]] = mapped_column(Float)
    percent_above_break_even: Mapped[Optional[float]] = mapped_column(Float)
    dismiss_reason: Mapped[Optional[str]] = mapped_column(Text)
    action_taken: Mapped[Optional[str]] = mapped_column(Text)
    bushels_marketed: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class LearnedThreshold(Base):
    __tablename__ = "granary_learned_thresholds"
    __table_args__ = (UniqueConstraint("profile_id", "commodity_type", "signal_type"),)

    id: Mapped[uuid.UUID] = _pk()
    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_user_marketing_profiles.id"), nullable=False
    )
    commodity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(40), nullable=False)
    strong_buy_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    buy_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_adjustment: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    data_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = _updated_at()


# ── Crop insurance ────────────────────────────────────────────────

class CropInsurancePolicy(Base):
    __tablename__ = "granary_crop_insurance_policies"

    id: Mapped[uuid.UUID] = _pk()
    farm_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("granary_farms.id"), nullable=False, unique=True
    )
    plan_type: Mapped[str] = mapped_column(String(10), nullable=False, default="RP")
    coverage_level: Mapped[int] = mapped_column(Integer, nullable=False, default=80)
    projected_price: Mapped[float] = mapped_column(Float, nullable=False)
    volatility_factor: Mapped[float] = mapped_column(Float, nullable=False, default=0.20)
    premium_per_acre: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    has_sco: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_eco: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    eco_level: Mapped[Optional[int]] = mapped_column(Integer)
    sco_premium_per_acre: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    eco_premium_per_acre: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    farm: Mapped["Farm"] = relationship("Farm", back_populates="policy")


# ── AI analysis audit log ─────────────────────────────────────────

class AIAnalysisLog(Base):
    __tablename__ = "granary_ai_analysis_logs"

    id: Mapped[uuid.UUID] = _pk()
    business_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, index=True)
    signal_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    analysis_type: Mapped[str] = mapped_column(String(40), nullable=False)
    model: Mapped[str] = mapped_column(String(80), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[Optional[str]] = mapped_column(Text)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
