"""Tests for the pure learning aggregates."""

import pytest

from granary.enums import RiskTolerance
from granary.learning.aggregator import (
    build_tips,
    compute_interaction_stats,
    compute_learned_preferences,
    decision_quality,
    effective_thresholds,
    format_response_time,
    learned_threshold_for,
    risk_score_for,
    risk_tolerance_for,
    sell_window_for,
)
from granary.signals.thresholds import DEFAULT_THRESHOLDS


class TestScalarMappings:
    @pytest.mark.parametrize(
        "pct, score",
        [(0.25, 30), (0.18, 40), (0.12, 50), (0.07, 60), (0.02, 70)],
    )
    def test_risk_score_bands(self, pct, score) -> None:
        assert risk_score_for(pct) == score

    def test_risk_tolerance_needs_confidence(self) -> None:
        assert risk_tolerance_for(30, 10) == RiskTolerance.MODERATE
        assert risk_tolerance_for(30, 50) == RiskTolerance.CONSERVATIVE
        assert risk_tolerance_for(70, 50) == RiskTolerance.AGGRESSIVE

    def test_sell_window_tie_goes_early(self) -> None:
        assert sell_window_for([2, 6]) == "EARLY"
        assert sell_window_for([10, 11, 6]) == "LATE"
        assert sell_window_for([]) is None

    def test_decision_quality(self) -> None:
        assert decision_quality(-0.12) == "EXCELLENT"
        assert decision_quality(-0.07) == "GOOD"
        assert decision_quality(0.0) == "NEUTRAL"
        assert decision_quality(0.08) == "POOR"

    def test_format_response_time(self) -> None:
        assert format_response_time(None) == "Unknown"
        assert format_response_time(0.5) == "30 minutes"
        assert format_response_time(5) == "5 hours"
        assert format_response_time(72) == "3 days"


class TestInteractionStats:
    def test_rates_by_strength(self) -> None:
        stats = compute_interaction_stats(
            [
                ("ACTED", "STRONG_BUY", 120),
                ("DISMISSED", "STRONG_BUY", 30),
                ("ACTED", "BUY", 240),
                ("VIEWED", "BUY", None),
            ]
        )
        assert stats.received == 4
        assert stats.acted == 2
        assert stats.dismissed == 1
        assert stats.act_on_strong_buy_rate == pytest.approx(0.5)
        assert stats.act_on_buy_rate == pytest.approx(0.5)
        # Only ACTED rows count toward response time: (120 + 240) / 2 minutes
        assert stats.avg_response_time_hours == pytest.approx(3.0)

    def test_empty(self) -> None:
        stats = compute_interaction_stats([])
        assert stats.received == 0
        assert stats.avg_response_time_hours is None


class TestLearnedPreferences:
    def test_needs_five_decisions(self) -> None:
        decisions = [(0.12, 3, "CORN", "CASH")] * 4
        assert compute_learned_preferences(decisions) is None

    def test_profile_from_decisions(self) -> None:
        decisions = [
            (0.12, 3, "CORN", "CASH"),
            (0.14, 4, "CORN", "CASH"),
            (0.10, 10, "SOYBEANS", "HTA"),
            (0.16, 2, "CORN", "BASIS"),
            (0.08, 1, "WHEAT", "CASH"),
        ]
        learned = compute_learned_preferences(decisions)

        assert learned.avg_percent_above_break_even == pytest.approx(0.12)
        assert learned.learned_risk_score == 50
        assert learned.preferred_sell_window == "EARLY"
        assert learned.commodity_preferences["CORN"] == pytest.approx(60.0)
        assert learned.tool_preferences["CASH"] == pytest.approx(60.0)
        assert learned.tool_preferences["ACCUMULATOR"] == 0.0
        assert learned.confidence_score == pytest.approx(25.0)


class TestLearnedThresholds:
    def test_needs_three_per_commodity(self) -> None:
        assert learned_threshold_for([0.12, 0.14]) is None

    def test_offsets_from_average(self) -> None:
        values = learned_threshold_for([0.12, 0.14, 0.16])
        assert values.strong_buy == pytest.approx(0.19)
        assert values.buy == pytest.approx(0.12)
        assert values.adjustment == pytest.approx(0.02)
        assert values.confidence == pytest.approx(30.0)

    def test_buy_floor(self) -> None:
        assert learned_threshold_for([0.01, 0.02, 0.03]).buy == pytest.approx(0.05)

    def test_effective_thresholds_fall_back(self) -> None:
        assert effective_thresholds(0.19, 0.12, 4) is DEFAULT_THRESHOLDS
        learned = effective_thresholds(0.19, 0.12, 5)
        assert learned.personalized
        assert learned.buy == pytest.approx(0.12)


class TestTips:
    def test_all_tips(self) -> None:
        tips = build_tips(0.1, 60, 0.2, 80)
        assert len(tips) == 4
        assert tips[0].startswith("You've been missing strong opportunities")

    def test_no_tips_for_engaged_user(self) -> None:
        assert build_tips(0.8, 4, 0.12, 40) == []
