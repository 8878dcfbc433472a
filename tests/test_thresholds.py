"""Tests for the signal threshold rules."""

import pytest

from granary.enums import (
    CommodityType,
    RiskTolerance,
    SignalStrength,
    SignalType,
    TrendDirection,
    VolatilityRegime,
)
from granary.market.indicators import TrendAnalysis
from granary.signals.thresholds import (
    STRENGTH_ORDER,
    SignalThresholds,
    basis_percentile,
    evaluate_accumulator_inquiry,
    evaluate_accumulator_position,
    evaluate_basis_contract,
    evaluate_cash_sale,
    evaluate_hta,
    recommended_bushels,
)

DOWN_OVERBOUGHT = TrendAnalysis(trend=TrendDirection.DOWN, rsi=75)
NEUTRAL = TrendAnalysis()


def cash(price, break_even=3.80, bushels=20_000, risk=RiskTolerance.MODERATE, trend=NEUTRAL, **kw):
    return evaluate_cash_sale(
        CommodityType.CORN,
        price,
        break_even,
        bushels,
        risk_tolerance=risk,
        target_profit_margin=kw.pop("target", 0.30),
        min_above_breakeven=kw.pop("floor", 0.05),
        trend=trend,
        **kw,
    )


class TestCashSale:
    """Tests for cash sale classification."""

    def test_strong_buy_on_overbought_downtrend(self) -> None:
        result = cash(4.50, trend=DOWN_OVERBOUGHT)

        assert result.strength == SignalStrength.STRONG_BUY
        assert result.percent_above_break_even == pytest.approx(0.1842, abs=1e-4)
        assert result.recommended_bushels == 5000
        assert result.is_actionable

    def test_below_break_even_is_strong_sell(self) -> None:
        result = cash(4.10, break_even=4.50)

        assert result.strength == SignalStrength.STRONG_SELL
        assert result.percent_above_break_even == pytest.approx(-0.0889, abs=1e-4)
        assert result.recommended_bushels is None
        assert not result.is_actionable

    def test_buy_needs_dollar_margin(self) -> None:
        assert cash(4.25).strength == SignalStrength.BUY
        # 11.8% above break-even but short of a $0.60 target
        assert cash(4.25, target=0.60).strength == SignalStrength.HOLD

    def test_buy_recommends_an_eighth(self) -> None:
        assert cash(4.25, bushels=16_000).recommended_bushels == 2000

    def test_near_break_even_is_sell(self) -> None:
        assert cash(3.85).strength == SignalStrength.SELL

    @pytest.mark.parametrize(
        "risk, expected",
        [
            # 7.9% above break-even: BUY cutoff is 10% / multiplier
            (RiskTolerance.CONSERVATIVE, SignalStrength.BUY),
            (RiskTolerance.MODERATE, SignalStrength.HOLD),
            (RiskTolerance.AGGRESSIVE, SignalStrength.HOLD),
        ],
    )
    def test_risk_multiplier_divides_buy_cutoff(self, risk, expected) -> None:
        assert cash(4.10, risk=risk, target=0.20).strength == expected

    def test_risk_multiplier_divides_strong_cutoff(self) -> None:
        # 13.2% clears 15% / 1.5 but not 15% / 1.0
        assert cash(4.30, trend=DOWN_OVERBOUGHT, risk=RiskTolerance.CONSERVATIVE).strength == SignalStrength.STRONG_BUY
        assert cash(4.30, trend=DOWN_OVERBOUGHT).strength != SignalStrength.STRONG_BUY

    def test_personalized_thresholds_apply(self) -> None:
        learned = SignalThresholds(strong_buy=0.25, buy=0.20, personalized=True)
        assert cash(4.50, trend=DOWN_OVERBOUGHT, thresholds=learned).strength == SignalStrength.HOLD

    def test_strength_is_monotonic_in_price(self) -> None:
        rank = {s: i for i, s in enumerate(STRENGTH_ORDER)}
        last = -1
        for cents in range(300, 520, 5):
            strength = cash(cents / 100).strength
            assert rank[strength] >= last
            last = rank[strength]

    def test_market_context_is_copied(self) -> None:
        context = {"rsi_value": 75}
        result = cash(4.50, trend=DOWN_OVERBOUGHT, market_context=context)
        result.market_context["extra"] = True
        assert "extra" not in context


class TestRecommendedBushels:
    def test_never_exceeds_total(self) -> None:
        assert recommended_bushels(10, 1.5) == 10

    def test_zero_when_nothing_left(self) -> None:
        assert recommended_bushels(0, 0.25) == 0


class TestBasisContract:
    def test_strong_basis(self) -> None:
        result = evaluate_basis_contract(
            CommodityType.SOYBEANS, 11.50, -0.05, 10.00, 10_000,
            risk_tolerance=RiskTolerance.MODERATE, percentile=80,
        )
        assert result.strength == SignalStrength.STRONG_BUY
        assert result.recommended_bushels == 2000
        assert result.market_context["basis_percentile"] == 80

    def test_average_basis_is_silent(self) -> None:
        result = evaluate_basis_contract(
            CommodityType.CORN, 4.60, -0.30, 3.80, 10_000,
            risk_tolerance=RiskTolerance.MODERATE, percentile=30,
        )
        assert result is None

    @pytest.mark.parametrize(
        "risk, percentile, expected",
        [
            (RiskTolerance.CONSERVATIVE, 100, SignalStrength.STRONG_BUY),
            (RiskTolerance.CONSERVATIVE, 55, SignalStrength.STRONG_BUY),
            (RiskTolerance.MODERATE, 55, SignalStrength.BUY),
            (RiskTolerance.AGGRESSIVE, 55, None),
        ],
    )
    def test_percentile_cutoffs_scale_with_risk(self, risk, percentile, expected) -> None:
        result = evaluate_basis_contract(
            CommodityType.CORN, 4.60, -0.20, 3.80, 10_000,
            risk_tolerance=risk, percentile=percentile,
        )
        assert (result.strength if result else None) == expected

    def test_percentile_helper(self) -> None:
        assert basis_percentile(-0.10, [-0.30, -0.20, -0.10, 0.0]) == 50.0
        assert basis_percentile(-0.10, []) == 50.0


class TestHTA:
    def test_requires_weak_basis(self) -> None:
        weak = evaluate_hta(
            CommodityType.CORN, 4.80, -0.30, 3.80, 20_000,
            risk_tolerance=RiskTolerance.MODERATE, target_profit_margin=0.30,
        )
        strong_basis = evaluate_hta(
            CommodityType.CORN, 4.60, -0.10, 3.80, 20_000,
            risk_tolerance=RiskTolerance.MODERATE, target_profit_margin=0.30,
        )
        assert weak.signal_type == SignalType.HTA_RECOMMENDATION
        assert weak.strength == SignalStrength.STRONG_BUY
        assert weak.recommended_bushels == 3500
        assert strong_basis is None


class TestAccumulators:
    def test_knockout_warning_takes_precedence(self) -> None:
        result = evaluate_accumulator_position(
            CommodityType.CORN, 4.90,
            knockout_price=5.00, double_up_price=5.20, daily_bushels=1000,
            knockout_reached=False, currently_doubled=False,
        )
        assert result.strength == SignalStrength.STRONG_SELL
        assert "Knockout" in result.title

    def test_double_up_notice(self) -> None:
        result = evaluate_accumulator_position(
            CommodityType.CORN, 4.20,
            knockout_price=5.00, double_up_price=4.40, daily_bushels=1000,
            knockout_reached=False, currently_doubled=False,
        )
        assert result.strength == SignalStrength.BUY
        assert "2000 bushels/day" in result.rationale

    def test_quiet_position(self) -> None:
        result = evaluate_accumulator_position(
            CommodityType.CORN, 4.50,
            knockout_price=5.00, double_up_price=4.40, daily_bushels=1000,
            knockout_reached=False, currently_doubled=False,
        )
        assert result is None

    @pytest.mark.parametrize(
        "volatility, days, expected",
        [
            (VolatilityRegime.LOW, 120, SignalStrength.STRONG_BUY),
            (VolatilityRegime.HIGH, 120, SignalStrength.BUY),
            (VolatilityRegime.HIGH, 30, SignalStrength.HOLD),
        ],
    )
    def test_inquiry_conditions(self, volatility, days, expected) -> None:
        result = evaluate_accumulator_inquiry(
            CommodityType.CORN, 4.50, 3.80, 20_000,
            risk_tolerance=RiskTolerance.MODERATE,
            volatility_regime=volatility,
            days_to_harvest=days,
        )
        assert result.strength == expected

    def test_inquiry_price_floor(self) -> None:
        result = evaluate_accumulator_inquiry(
            CommodityType.CORN, 4.50, 3.80, 20_000,
            risk_tolerance=RiskTolerance.MODERATE,
            volatility_regime=VolatilityRegime.LOW,
            days_to_harvest=120,
            min_price=4.75,
        )
        assert result.strength == SignalStrength.BUY
        assert result.market_context["price_condition"] is False
