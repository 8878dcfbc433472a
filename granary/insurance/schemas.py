"""Pydantic schemas for crop-insurance policies and the profit matrix."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from granary.enums import CommodityType, PlanType
from granary.insurance.indemnity import IndemnityBreakdown


class PolicyInput(BaseModel):
    """Create/replace payload for a farm's policy.

    Attributes
    ----------
    coverage_level:
        Individual coverage level in percent (50–85, 5-point steps).
    eco_level:
        ECO band top in percent, 90 or 95; required when ``has_eco``.
    """

    plan_type: PlanType = PlanType.RP
    coverage_level: int = Field(80, ge=50, le=85)
    projected_price: float = Field(..., gt=0)
    volatility_factor: float = Field(0.20, ge=0, le=1)
    premium_per_acre: float = Field(0.0, ge=0)
    has_sco: bool = False
    has_eco: bool = False
    eco_level: Optional[int] = None
    sco_premium_per_acre: float = Field(0.0, ge=0)
    eco_premium_per_acre: float = Field(0.0, ge=0)

    @model_validator(mode="after")
    def _check_levels(self) -> "PolicyInput":
        if self.coverage_level % 5:
            raise ValueError("coverage_level must be a multiple of 5")
        if self.has_eco and self.eco_level not in (90, 95):
            raise ValueError("eco_level must be 90 or 95 when ECO is selected")
        return self


class PolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    farm_id: UUID
    plan_type: PlanType
    coverage_level: int
    projected_price: float
    volatility_factor: float
    premium_per_acre: float
    has_sco: bool
    has_eco: bool
    eco_level: Optional[int] = None
    sco_premium_per_acre: float
    eco_premium_per_acre: float
    updated_at: Optional[datetime] = None

    @property
    def total_premium_per_acre(self) -> float:
        return (
            self.premium_per_acre
            + (self.sco_premium_per_acre if self.has_sco else 0.0)
            + (self.eco_premium_per_acre if self.has_eco else 0.0)
        )


class IndemnityEstimate(BaseModel):
    farm_id: UUID
    plan_type: PlanType
    aph: float
    actual_yield: float
    harvest_price: float
    indemnity: IndemnityBreakdown


class ProfitMatrixCell(BaseModel):
    yield_bu_acre: float
    price_bu: float
    gross_revenue_per_acre: float
    total_cost_per_acre: float
    profit_without_insurance: float
    insurance_indemnity: float
    sco_indemnity: float
    eco_indemnity: float
    total_insurance_payout: float
    insurance_premium_cost: float
    net_profit_per_acre: float


class ProfitMatrix(BaseModel):
    farm_id: UUID
    farm_name: str
    commodity_type: CommodityType
    acres: float
    aph: float
    projected_yield: float
    policy: Optional[PolicyOut] = None
    break_even_price: float
    total_cost_per_acre: float
    marketed_bushels_per_acre: float
    marketed_avg_price: float
    unmarketed_bushels_per_acre: float
    yield_scenarios: list[float]
    price_scenarios: list[float]
    matrix: list[list[ProfitMatrixCell]]
