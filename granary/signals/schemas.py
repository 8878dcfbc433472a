"""Pydantic views of marketing signals."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from granary.enums import CommodityType, SignalStatus, SignalStrength, SignalType


class SignalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    business_id: UUID
    signal_type: SignalType
    commodity_type: CommodityType
    strength: SignalStrength
    status: SignalStatus
    title: str
    summary: str
    rationale: Optional[str] = None
    current_price: float
    break_even_price: float
    price_above_break_even: float
    percent_above_break_even: float
    target_price: Optional[float] = None
    recommended_bushels: Optional[int] = None
    recommended_action: Optional[str] = None
    market_context: Optional[dict[str, Any]] = None
    ai_analysis: Optional[str] = None
    ai_analyzed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    dismiss_reason: Optional[str] = None
    action_taken: Optional[str] = None
    action_taken_at: Optional[datetime] = None
    created_at: datetime


class SignalFilters(BaseModel):
    status: Optional[SignalStatus] = None
    commodity: Optional[CommodityType] = None
    signal_type: Optional[SignalType] = None
    strength: Optional[SignalStrength] = None
