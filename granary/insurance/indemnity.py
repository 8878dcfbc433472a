"""Crop-insurance indemnity formulas (per-acre dollars).

Implements the base plans and the two area-triggered riders:

* **RP**  — Revenue Protection; guarantee priced at the higher of the
  projected and harvest price.
* **YP**  — Yield Protection; bushel guarantee valued at the projected price.
* **RP_HPE** — RP with Harvest Price Exclusion; guarantee fixed at the
  projected price.
* **SCO** — Supplemental Coverage Option; band from 86% down to the
  underlying coverage level.
* **ECO** — Enhanced Coverage Option; band from the ECO level (90 or 95)
  down to 86%.

Every component is clamped at zero and a rider never pays more than its
own band value.  Nothing here is persisted; indemnities are computed on
demand from a policy and a yield/price scenario.
"""

from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel, computed_field

from granary.enums import PlanType

SCO_TOP = 0.86
ECO_BOTTOM = 0.86


class PolicyTerms(Protocol):
    """Fields of a crop-insurance policy the calculator reads."""

    plan_type: str
    coverage_level: int
    projected_price: float
    has_sco: bool
    has_eco: bool
    eco_level: Optional[int]


class CountyYields(BaseModel):
    """Area yield data used to trigger SCO/ECO.

    Attributes
    ----------
    expected_yield:
        County expected yield (bu/acre).
    actual_yield:
        Final or simulated county yield (bu/acre).
    """

    expected_yield: float
    actual_yield: float


class IndemnityBreakdown(BaseModel):
    base: float = 0.0
    sco: float = 0.0
    eco: float = 0.0

    @computed_field
    @property
    def total(self) -> float:
        return self.base + self.sco + self.eco


# ---------------------------------------------------------------------------
# Base plans
# ---------------------------------------------------------------------------


def rp_indemnity(
    aph: float,
    coverage_level: float,
    projected_price: float,
    actual_yield: float,
    harvest_price: float,
) -> float:
    guarantee = aph * (coverage_level / 100) * max(projected_price, harvest_price)
    return max(0.0, guarantee - actual_yield * harvest_price)


def yp_indemnity(
    aph: float,
    coverage_level: float,
    projected_price: float,
    actual_yield: float,
    harvest_price: float = 0.0,
) -> float:
    shortfall = aph * (coverage_level / 100) - actual_yield
    return max(0.0, shortfall) * projected_price


def rp_hpe_indemnity(
    aph: float,
    coverage_level: float,
    projected_price: float,
    actual_yield: float,
    harvest_price: float,
) -> float:
    guarantee = aph * (coverage_level / 100) * projected_price
    return max(0.0, guarantee - actual_yield * harvest_price)


_BASE_FORMULAS = {
    PlanType.RP: rp_indemnity,
    PlanType.YP: yp_indemnity,
    PlanType.RP_HPE: rp_hpe_indemnity,
}


def base_indemnity(
    plan_type: PlanType | str,
    aph: float,
    coverage_level: float,
    projected_price: float,
    actual_yield: float,
    harvest_price: float,
) -> float:
    formula = _BASE_FORMULAS[PlanType(plan_type)]
    return formula(aph, coverage_level, projected_price, actual_yield, harvest_price)


# ---------------------------------------------------------------------------
# Area riders
# ---------------------------------------------------------------------------


def band_price(plan_type: PlanType | str, projected_price: float, harvest_price: float) -> float:
    """Price used to value a rider band: harvest upside only for RP."""
    if PlanType(plan_type) == PlanType.RP:
        return max(projected_price, harvest_price)
    return projected_price


def _actual_price(plan_type: PlanType, projected_price: float, harvest_price: float) -> float:
    if plan_type == PlanType.RP:
        return max(projected_price, harvest_price)
    return harvest_price


def area_band_indemnity(
    plan_type: PlanType | str,
    aph: float,
    top_pct: float,
    bottom_pct: float,
    projected_price: float,
    harvest_price: float,
    actual_yield: float,
    county: Optional[CountyYields] = None,
) -> float:
    """Payout of one area band between ``bottom_pct`` and ``top_pct`` (fractions).

    With county data the trigger is the county yield ratio (YP) or revenue
    ratio (RP, RP_HPE).  Without it a farm-level loss is used as a proxy,
    capped at the band value.
    """
    plan = PlanType(plan_type)
    if top_pct <= bottom_pct or aph <= 0:
        return 0.0

    price = band_price(plan, projected_price, harvest_price)
    band = aph * (top_pct - bottom_pct) * price

    if county is not None and county.expected_yield > 0:
        if plan == PlanType.YP:
            ratio = county.actual_yield / county.expected_yield
        else:
            if projected_price <= 0:
                return 0.0
            actual = county.actual_yield * _actual_price(plan, projected_price, harvest_price)
            ratio = actual / (county.expected_yield * projected_price)
        if ratio >= top_pct:
            return 0.0
        loss_fraction = min(top_pct - ratio, top_pct - bottom_pct) / (top_pct - bottom_pct)
        return max(0.0, loss_fraction * band)

    top_revenue = aph * top_pct * price
    if plan == PlanType.YP:
        actual_revenue = actual_yield / aph * (aph * price)
    else:
        actual_revenue = actual_yield * _actual_price(plan, projected_price, harvest_price)
    return min(max(0.0, top_revenue - actual_revenue), band)


def sco_indemnity(
    plan_type: PlanType | str,
    aph: float,
    coverage_level: float,
    projected_price: float,
    harvest_price: float,
    actual_yield: float,
    county: Optional[CountyYields] = None,
) -> float:
    return area_band_indemnity(
        plan_type, aph, SCO_TOP, coverage_level / 100,
        projected_price, harvest_price, actual_yield, county,
    )


def eco_indemnity(
    plan_type: PlanType | str,
    aph: float,
    eco_level: float,
    projected_price: float,
    harvest_price: float,
    actual_yield: float,
    county: Optional[CountyYields] = None,
) -> float:
    return area_band_indemnity(
        plan_type, aph, eco_level / 100, ECO_BOTTOM,
        projected_price, harvest_price, actual_yield, county,
    )


# ---------------------------------------------------------------------------
# Policy total
# ---------------------------------------------------------------------------


def calculate_indemnity(
    policy: PolicyTerms,
    aph: float,
    actual_yield: float,
    harvest_price: float,
    county: Optional[CountyYields] = None,
) -> IndemnityBreakdown:
    """Base plan plus enabled riders for one yield/price scenario."""
    plan = PlanType(policy.plan_type)
    projected = float(policy.projected_price)
    coverage = float(policy.coverage_level)

    base = base_indemnity(plan, aph, coverage, projected, actual_yield, harvest_price)
    sco = 0.0
    eco = 0.0
    if policy.has_sco:
        sco = sco_indemnity(plan, aph, coverage, projected, harvest_price, actual_yield, county)
    if policy.has_eco and policy.eco_level:
        eco = eco_indemnity(
            plan, aph, float(policy.eco_level), projected, harvest_price, actual_yield, county
        )
    return IndemnityBreakdown(base=base, sco=sco, eco=eco)
