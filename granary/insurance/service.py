"""Crop Insurance Service — policy CRUD, indemnity estimates and profit matrix.

Policies are one-to-one with a farm and soft-deleted.  Every lookup is
scoped to the caller's business: a farm that exists but belongs to a
different business is reported exactly like a missing one.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select

from granary.db import CropInsurancePolicy, Farm, SessionFactory, async_session, utcnow
from granary.enums import CommodityType, PlanType
from granary.errors import FarmNotFound, PolicyNotFound
from granary.insurance.indemnity import CountyYields, calculate_indemnity
from granary.insurance.schemas import (
    IndemnityEstimate,
    PolicyInput,
    PolicyOut,
    ProfitMatrix,
    ProfitMatrixCell,
)

logger = logging.getLogger("granary.insurance")

DEFAULT_PROJECTED_PRICES: dict[CommodityType, float] = {
    CommodityType.CORN: 4.66,
    CommodityType.SOYBEANS: 11.20,
    CommodityType.WHEAT: 5.50,
}

# Scenario ranges as fractions of APH and projected price.
YIELD_RANGE = (0.50, 1.20)
PRICE_RANGE = (0.60, 1.40)


def _cents(value: float) -> float:
    return round(value * 100) / 100


def build_yield_scenarios(aph: float, steps: int = 7) -> list[float]:
    """``steps`` yields from 50% to 120% of APH; 100, 120, ... when APH is unset."""
    if aph <= 0:
        return [100.0 + i * 20 for i in range(steps)]
    if steps < 2:
        return [float(round(aph))]
    lo, hi = YIELD_RANGE
    step = (hi - lo) / (steps - 1)
    return [float(round(aph * (lo + i * step))) for i in range(steps)]


def build_price_scenarios(base_price: float, steps: int, commodity: CommodityType) -> list[float]:
    """``steps`` prices from 60% to 140% of ``base_price``.

    Rounded to the nickel, or to the dime for soybeans.
    """
    lo, hi = PRICE_RANGE
    if steps < 2:
        return [base_price]
    step = (hi - lo) / (steps - 1)
    increments = 10 if CommodityType(commodity) == CommodityType.SOYBEANS else 20
    return [round(base_price * (lo + i * step) * increments) / increments for i in range(steps)]


class CropInsuranceService:
    """Persistence and scenario math for farm crop-insurance policies."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._session_factory = session_factory or async_session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    async def _farm(session, farm_id: UUID, business_id: UUID) -> Farm:
        farm = (
            await session.execute(
                select(Farm).where(
                    Farm.id == farm_id,
                    Farm.business_id == business_id,
                    Farm.deleted_at.is_(None),
                )
            )
        ).scalar_one_or_none()
        if farm is None:
            raise FarmNotFound(farm_id)
        return farm

    @staticmethod
    async def _policy_row(session, farm_id: UUID) -> Optional[CropInsurancePolicy]:
        return (
            await session.execute(
                select(CropInsurancePolicy).where(CropInsurancePolicy.farm_id == farm_id)
            )
        ).scalar_one_or_none()

    async def get_policy(self, farm_id: UUID, business_id: UUID) -> Optional[PolicyOut]:
        async with self._session_factory() as session:
            await self._farm(session, farm_id, business_id)
            row = await self._policy_row(session, farm_id)
        if row is None or row.deleted_at is not None:
            return None
        return PolicyOut.model_validate(row)

    async def list_policies(self, business_id: UUID) -> list[PolicyOut]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CropInsurancePolicy)
                    .join(Farm, Farm.id == CropInsurancePolicy.farm_id)
                    .where(
                        Farm.business_id == business_id,
                        Farm.deleted_at.is_(None),
                        CropInsurancePolicy.deleted_at.is_(None),
                    )
                )
            ).scalars().all()
        return [PolicyOut.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def upsert_policy(
        self, farm_id: UUID, business_id: UUID, data: PolicyInput
    ) -> PolicyOut:
        """Create or replace the farm's policy; revives a soft-deleted row."""
        values = data.model_dump()
        values["plan_type"] = data.plan_type.value
        if not data.has_eco:
            values["eco_level"] = None

        async with self._session_factory() as session:
            await self._farm(session, farm_id, business_id)
            row = await self._policy_row(session, farm_id)
            if row is None:
                row = CropInsurancePolicy(farm_id=farm_id, **values)
                session.add(row)
                logger.info("Created crop insurance policy farm=%s plan=%s", farm_id, data.plan_type.value)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                row.deleted_at = None
                logger.info("Updated crop insurance policy farm=%s plan=%s", farm_id, data.plan_type.value)
            await session.commit()
            await session.refresh(row)
        return PolicyOut.model_validate(row)

    async def delete_policy(self, farm_id: UUID, business_id: UUID) -> None:
        async with self._session_factory() as session:
            await self._farm(session, farm_id, business_id)
            row = await self._policy_row(session, farm_id)
            if row is None or row.deleted_at is not None:
                raise PolicyNotFound(farm_id)
            row.deleted_at = utcnow()
            await session.commit()
        logger.info("Soft-deleted crop insurance policy farm=%s", farm_id)

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    async def estimate(
        self,
        farm_id: UUID,
        business_id: UUID,
        actual_yield: float,
        harvest_price: float,
        county: Optional[CountyYields] = None,
    ) -> IndemnityEstimate:
        async with self._session_factory() as session:
            farm = await self._farm(session, farm_id, business_id)
            row = await self._policy_row(session, farm_id)
        if row is None or row.deleted_at is not None:
            raise PolicyNotFound(farm_id)
        breakdown = calculate_indemnity(row, float(farm.aph), actual_yield, harvest_price, county)
        return IndemnityEstimate(
            farm_id=farm_id,
            plan_type=PlanType(row.plan_type),
            aph=float(farm.aph),
            actual_yield=actual_yield,
            harvest_price=harvest_price,
            indemnity=breakdown,
        )

    async def profit_matrix(
        self,
        farm_id: UUID,
        business_id: UUID,
        yield_steps: int = 7,
        price_steps: int = 7,
    ) -> ProfitMatrix:
        """Net profit per acre across a yield × price grid, with and without insurance.

        Contracted bushels are locked at their average contract price (capped
        at the scenario yield); the rest sells at the scenario price.
        """
        async with self._session_factory() as session:
            farm = await self._farm(session, farm_id, business_id)
            row = await self._policy_row(session, farm_id)
        policy = row if row is not None and row.deleted_at is None else None
        commodity = CommodityType(farm.commodity_type)

        acres = float(farm.acres)
        aph = float(farm.aph)
        projected_yield = float(farm.projected_yield)
        cost_per_acre = float(farm.total_cost_per_acre)

        marketed_per_acre = float(farm.contracted_bushels) / acres if acres > 0 else 0.0
        marketed_price = float(farm.contracted_avg_price) if farm.contracted_bushels else 0.0
        unmarketed_per_acre = max(0.0, projected_yield - marketed_per_acre)

        base_price = (
            float(policy.projected_price) if policy else DEFAULT_PROJECTED_PRICES[commodity]
        )
        yields = build_yield_scenarios(aph, yield_steps)
        prices = build_price_scenarios(base_price, price_steps, commodity)

        premium = 0.0
        if policy is not None:
            premium = (
                float(policy.premium_per_acre)
                + (float(policy.sco_premium_per_acre) if policy.has_sco else 0.0)
                + (float(policy.eco_premium_per_acre) if policy.has_eco else 0.0)
            )

        matrix: list[list[ProfitMatrixCell]] = []
        for scenario_yield in yields:
            row_cells: list[ProfitMatrixCell] = []
            for scenario_price in prices:
                locked = min(marketed_per_acre, scenario_yield)
                open_bushels = max(0.0, scenario_yield - marketed_per_acre)
                gross = locked * marketed_price + open_bushels * scenario_price

                base = sco = eco = 0.0
                if policy is not None:
                    payout = calculate_indemnity(policy, aph, scenario_yield, scenario_price)
                    base, sco, eco = payout.base, payout.sco, payout.eco
                total_payout = base + sco + eco

                row_cells.append(
                    ProfitMatrixCell(
                        yield_bu_acre=scenario_yield,
                        price_bu=scenario_price,
                        gross_revenue_per_acre=_cents(gross),
                        total_cost_per_acre=_cents(cost_per_acre),
                        profit_without_insurance=_cents(gross - cost_per_acre),
                        insurance_indemnity=_cents(base),
                        sco_indemnity=_cents(sco),
                        eco_indemnity=_cents(eco),
                        total_insurance_payout=_cents(total_payout),
                        insurance_premium_cost=_cents(premium),
                        net_profit_per_acre=_cents(gross - cost_per_acre - premium + total_payout),
                    )
                )
            matrix.append(row_cells)

        break_even = cost_per_acre / projected_yield if projected_yield > 0 else 0.0
        return ProfitMatrix(
            farm_id=farm.id,
            farm_name=farm.name,
            commodity_type=commodity,
            acres=acres,
            aph=aph,
            projected_yield=projected_yield,
            policy=PolicyOut.model_validate(policy) if policy else None,
            break_even_price=_cents(break_even),
            total_cost_per_acre=_cents(cost_per_acre),
            marketed_bushels_per_acre=_cents(marketed_per_acre),
            marketed_avg_price=_cents(marketed_price),
            unmarketed_bushels_per_acre=_cents(unmarketed_per_acre),
            yield_scenarios=yields,
            price_scenarios=prices,
            matrix=matrix,
        )
