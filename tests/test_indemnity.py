"""Tests for crop-insurance indemnity formulas."""

import pytest

from granary.enums import PlanType
from granary.insurance.indemnity import (
    CountyYields,
    area_band_indemnity,
    calculate_indemnity,
    eco_indemnity,
    rp_hpe_indemnity,
    rp_indemnity,
    sco_indemnity,
    yp_indemnity,
)
from granary.insurance.schemas import PolicyInput


class TestBasePlans:
    """Tests for RP, YP and RP-HPE."""

    def test_rp_worked_example(self) -> None:
        # 180 × 0.8 × 4.66 = 671.04 guaranteed (not 670.80), 150 × 4.00 = 600 realised
        assert rp_indemnity(180, 80, 4.66, 150, 4.00) == pytest.approx(71.04)

    def test_rp_uses_harvest_price_when_higher(self) -> None:
        assert rp_indemnity(180, 80, 4.00, 120, 4.50) == pytest.approx(180 * 0.8 * 4.50 - 120 * 4.50)

    def test_rp_hpe_keeps_projected_guarantee(self) -> None:
        assert rp_hpe_indemnity(180, 80, 4.00, 150, 4.50) == pytest.approx(0.0)

    def test_yp_values_shortfall_at_projected(self) -> None:
        assert yp_indemnity(200, 75, 5.00, 120) == pytest.approx(30 * 5.00)

    def test_no_loss_pays_nothing(self) -> None:
        assert rp_indemnity(180, 80, 4.66, 200, 4.66) == 0.0
        assert yp_indemnity(200, 75, 5.00, 190) == 0.0


class TestRiders:
    """Tests for the SCO and ECO bands."""

    def test_sco_capped_at_band(self) -> None:
        # Total crop loss: band is 200 × (0.86 − 0.75) × 5.00 = 110
        assert sco_indemnity(PlanType.RP, 200, 75, 5.00, 5.00, 0) == pytest.approx(110.0)

    def test_eco_capped_at_band(self) -> None:
        # 200 × (0.95 − 0.86) × 5.00 = 90
        assert eco_indemnity(PlanType.RP, 200, 95, 5.00, 5.00, 0) == pytest.approx(90.0)

    def test_county_trigger_above_band_pays_nothing(self) -> None:
        county = CountyYields(expected_yield=180, actual_yield=175)
        assert sco_indemnity(PlanType.YP, 200, 75, 5.00, 5.00, 100, county) == 0.0

    def test_county_trigger_partial_loss(self) -> None:
        county = CountyYields(expected_yield=200, actual_yield=160)
        # ratio 0.80: (0.86 − 0.80) / (0.86 − 0.75) of the 110 band
        expected = (0.06 / 0.11) * 110.0
        assert sco_indemnity(PlanType.YP, 200, 75, 5.00, 5.00, 0, county) == pytest.approx(expected)

    def test_empty_band(self) -> None:
        assert area_band_indemnity(PlanType.RP, 200, 0.86, 0.86, 5.00, 5.00, 0) == 0.0

    def test_riders_never_exceed_combined_band(self) -> None:
        policy = PolicyInput(
            plan_type=PlanType.RP, coverage_level=75, projected_price=5.00,
            has_sco=True, has_eco=True, eco_level=95,
        )
        result = calculate_indemnity(policy, 200, 0, 5.00)
        assert result.sco + result.eco <= 200 * (0.95 - 0.75) * 5.00 + 1e-9


class TestCalculateIndemnity:
    def test_base_only(self) -> None:
        policy = PolicyInput(plan_type=PlanType.RP, coverage_level=80, projected_price=4.66)
        result = calculate_indemnity(policy, 180, 150, 4.00)
        assert result.base == pytest.approx(71.04)
        assert result.sco == 0.0
        assert result.eco == 0.0
        assert result.total == pytest.approx(71.04)

    def test_policy_rejects_odd_coverage(self) -> None:
        with pytest.raises(ValueError):
            PolicyInput(coverage_level=77, projected_price=4.66)

    def test_policy_requires_eco_level(self) -> None:
        with pytest.raises(ValueError):
            PolicyInput(projected_price=4.66, has_eco=True)
