"""Marketing preferences — one versioned row per business.

Rows are created lazily with defaults the first time a business is read,
so signal generation never has to special-case a missing row.  Rows written
under an older ``schema_version`` are brought forward on read: columns
added since then already carry their defaults, only the version stamp moves.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import select

from granary.db import (
    PREFERENCES_SCHEMA_VERSION,
    MarketingPreferences,
    SessionFactory,
    async_session,
)
from granary.enums import CommodityType, RiskTolerance, SignalType

logger = logging.getLogger("granary.signals.preferences")

COMMODITY_FLAGS: dict[CommodityType, str] = {
    CommodityType.CORN: "corn_enabled",
    CommodityType.SOYBEANS: "soybeans_enabled",
    CommodityType.WHEAT: "wheat_enabled",
}

SIGNAL_FLAGS: dict[SignalType, str] = {
    SignalType.CASH_SALE: "cash_sale_signals",
    SignalType.BASIS_CONTRACT: "basis_contract_signals",
    SignalType.HTA_RECOMMENDATION: "hta_signals",
    SignalType.ACCUMULATOR_STRATEGY: "accumulator_signals",
    SignalType.ACCUMULATOR_INQUIRY: "accumulator_inquiry_signals",
}

# Columns a partial update may clear by sending null.
NULLABLE_FIELDS = frozenset({"quiet_hours_start", "quiet_hours_end", "accumulator_min_price"})


class PreferencesOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    business_id: UUID
    schema_version: int
    push_enabled: bool
    email_enabled: bool
    in_app_enabled: bool
    daily_digest_enabled: bool
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    corn_enabled: bool
    soybeans_enabled: bool
    wheat_enabled: bool
    cash_sale_signals: bool
    basis_contract_signals: bool
    hta_signals: bool
    accumulator_signals: bool
    accumulator_inquiry_signals: bool
    options_signals: bool
    risk_tolerance: RiskTolerance
    target_profit_margin: float
    min_above_breakeven: float
    accumulator_marketing_percent: float
    accumulator_min_price: Optional[float] = None
    accumulator_percent_above_breakeven: float
    updated_at: Optional[datetime] = None


class PreferencesUpdate(BaseModel):
    """Partial update; only fields that are set are written."""

    model_config = ConfigDict(extra="forbid")

    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None
    daily_digest_enabled: Optional[bool] = None
    quiet_hours_start: Optional[int] = Field(None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(None, ge=0, le=23)
    corn_enabled: Optional[bool] = None
    soybeans_enabled: Optional[bool] = None
    wheat_enabled: Optional[bool] = None
    cash_sale_signals: Optional[bool] = None
    basis_contract_signals: Optional[bool] = None
    hta_signals: Optional[bool] = None
    accumulator_signals: Optional[bool] = None
    accumulator_inquiry_signals: Optional[bool] = None
    options_signals: Optional[bool] = None
    risk_tolerance: Optional[RiskTolerance] = None
    target_profit_margin: Optional[float] = Field(None, ge=0)
    min_above_breakeven: Optional[float] = Field(None, ge=0, le=1)
    accumulator_marketing_percent: Optional[float] = Field(None, gt=0, le=1)
    accumulator_min_price: Optional[float] = Field(None, gt=0)
    accumulator_percent_above_breakeven: Optional[float] = Field(None, ge=0, le=1)

    @model_validator(mode="after")
    def _quiet_hours_pair(self) -> "PreferencesUpdate":
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end must be set together")
        return self


def commodity_enabled(prefs: MarketingPreferences, commodity: CommodityType) -> bool:
    return bool(getattr(prefs, COMMODITY_FLAGS[CommodityType(commodity)]))


def signal_enabled(prefs: MarketingPreferences, signal_type: SignalType) -> bool:
    flag = SIGNAL_FLAGS.get(SignalType(signal_type))
    return bool(getattr(prefs, flag)) if flag else False


def in_quiet_hours(prefs: MarketingPreferences, hour: int) -> bool:
    """True when ``hour`` (0–23, UTC) falls inside the quiet window; wraps midnight."""
    start, end = prefs.quiet_hours_start, prefs.quiet_hours_end
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


async def get_or_create_preferences(
    business_id: UUID, session_factory: Optional[SessionFactory] = None
) -> MarketingPreferences:
    factory = session_factory or async_session
    async with factory() as session:
        prefs = (
            await session.execute(
                select(MarketingPreferences).where(MarketingPreferences.business_id == business_id)
            )
        ).scalar_one_or_none()
        if prefs is None:
            prefs = MarketingPreferences(
                business_id=business_id, schema_version=PREFERENCES_SCHEMA_VERSION
            )
            session.add(prefs)
            await session.commit()
            await session.refresh(prefs)
            logger.info("Created default marketing preferences business=%s", business_id)
        elif prefs.schema_version < PREFERENCES_SCHEMA_VERSION:
            logger.info(
                "Migrating preferences business=%s v%d -> v%d",
                business_id, prefs.schema_version, PREFERENCES_SCHEMA_VERSION,
            )
            prefs.schema_version = PREFERENCES_SCHEMA_VERSION
            await session.commit()
    return prefs


async def update_preferences(
    business_id: UUID,
    update: PreferencesUpdate,
    session_factory: Optional[SessionFactory] = None,
) -> MarketingPreferences:
    factory = session_factory or async_session
    await get_or_create_preferences(business_id, factory)
    changes = {
        key: value
        for key, value in update.model_dump(exclude_unset=True).items()
        if value is not None or key in NULLABLE_FIELDS
    }
    if "risk_tolerance" in changes:
        changes["risk_tolerance"] = RiskTolerance(changes["risk_tolerance"]).value

    async with factory() as session:
        prefs = (
            await session.execute(
                select(MarketingPreferences).where(MarketingPreferences.business_id == business_id)
            )
        ).scalar_one()
        for key, value in changes.items():
            setattr(prefs, key, value)
        await session.commit()
        await session.refresh(prefs)

    logger.info("Updated preferences business=%s fields=%s", business_id, sorted(changes))
    return prefs
