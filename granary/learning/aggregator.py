"""Learning Aggregator — running statistics over a user's marketing history.

Pure functions only; :class:`granary.learning.service.LearningService` loads
rows, calls these, and writes the results back.

Risk score convention: higher means more aggressive, i.e. the user is
comfortable selling at smaller margins above break-even.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel

from granary.enums import (
    CommodityType,
    InteractionType,
    MarketingTool,
    RiskTolerance,
    SignalStrength,
)
from granary.signals.thresholds import DEFAULT_THRESHOLDS, SignalThresholds

MIN_DATA_POINTS_FOR_LEARNING = 5
MIN_DATA_POINTS_FOR_HIGH_CONFIDENCE = 20
MIN_COMMODITY_DECISIONS = 3
THRESHOLD_CONFIDENCE_DECISIONS = 10

MIN_LEARNED_BUY_THRESHOLD = 0.05
BUY_THRESHOLD_OFFSET = 0.02
STRONG_BUY_THRESHOLD_OFFSET = 0.05

MIN_CONFIDENCE_FOR_RISK_OVERRIDE = 30

# (lower bound of average pct-above-BE, risk score); first match wins.
RISK_SCORE_BANDS: tuple[tuple[float, int], ...] = (
    (0.20, 30),
    (0.15, 40),
    (0.10, 50),
    (0.05, 60),
)
MOST_AGGRESSIVE_SCORE = 70

TRACKED_TOOLS = (
    MarketingTool.CASH,
    MarketingTool.BASIS,
    MarketingTool.HTA,
    MarketingTool.ACCUMULATOR,
)


class InteractionStats(BaseModel):
    received: int = 0
    acted: int = 0
    dismissed: int = 0
    act_on_strong_buy_rate: float = 0.0
    act_on_buy_rate: float = 0.0
    avg_response_time_hours: Optional[float] = None


class LearnedPreferences(BaseModel):
    avg_percent_above_break_even: float
    learned_risk_score: int
    preferred_sell_window: str
    commodity_preferences: dict[str, float]
    tool_preferences: dict[str, float]
    confidence_score: float


class LearnedThresholdValues(BaseModel):
    strong_buy: float
    buy: float
    adjustment: float
    data_points: int
    confidence: float


# ---------------------------------------------------------------------------
# Scalar mappings
# ---------------------------------------------------------------------------


def average(values: Iterable[float]) -> float:
    vals = list(values)
    return sum(vals) / len(vals) if vals else 0.0


def risk_score_for(avg_percent_above_be: float) -> int:
    for floor, score in RISK_SCORE_BANDS:
        if avg_percent_above_be > floor:
            return score
    return MOST_AGGRESSIVE_SCORE


def sell_window_for_month(month: int) -> str:
    """Calendar month (1–12) to EARLY (Jan–Apr), MID (May–Aug) or LATE (Sep–Dec)."""
    if month <= 4:
        return "EARLY"
    if month <= 8:
        return "MID"
    return "LATE"


def sell_window_for(months: Sequence[int]) -> Optional[str]:
    """Modal sell window; ties resolve to the earlier window."""
    if not months:
        return None
    counts = Counter(sell_window_for_month(m) for m in months)
    order = ("EARLY", "MID", "LATE")
    return max(order, key=lambda w: (counts.get(w, 0), -order.index(w)))


def usage_percentages(values: Sequence[str], keys: Iterable[str]) -> dict[str, float]:
    total = len(values)
    counts = Counter(values)
    return {k: (counts.get(k, 0) / total * 100 if total else 0.0) for k in keys}


def confidence_for(decision_count: int) -> float:
    return min(100.0, decision_count / MIN_DATA_POINTS_FOR_HIGH_CONFIDENCE * 100)


def risk_label(score: float) -> RiskTolerance:
    if score < 40:
        return RiskTolerance.CONSERVATIVE
    if score < 60:
        return RiskTolerance.MODERATE
    return RiskTolerance.AGGRESSIVE


def risk_tolerance_for(score: float, confidence: float) -> RiskTolerance:
    """Learned tolerance, or MODERATE until the profile is confident enough."""
    if confidence < MIN_CONFIDENCE_FOR_RISK_OVERRIDE:
        return RiskTolerance.MODERATE
    return risk_label(score)


def decision_quality(percent_change_after_month: float) -> str:
    """Grade a sale by how the price moved over the following month."""
    if percent_change_after_month < -0.10:
        return "EXCELLENT"
    if percent_change_after_month < -0.05:
        return "GOOD"
    if percent_change_after_month < 0.05:
        return "NEUTRAL"
    return "POOR"


def format_response_time(hours: Optional[float]) -> str:
    if not hours:
        return "Unknown"
    if hours < 1:
        return f"{round(hours * 60)} minutes"
    if hours < 24:
        return f"{round(hours)} hours"
    return f"{round(hours / 24)} days"


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def compute_interaction_stats(
    interactions: Sequence[tuple[str, str, Optional[int]]],
) -> InteractionStats:
    """Stats from ``(interaction_type, signal_strength, response_minutes)`` tuples."""
    acted_type = InteractionType.ACTED.value
    received = len(interactions)
    acted = sum(1 for t, _, _ in interactions if t == acted_type)
    dismissed = sum(1 for t, _, _ in interactions if t == InteractionType.DISMISSED.value)

    def rate(strength: SignalStrength) -> float:
        subset = [t for t, s, _ in interactions if s == strength.value]
        return (sum(1 for t in subset if t == acted_type) / len(subset)) if subset else 0.0

    response = [m for t, _, m in interactions if t == acted_type and m]
    avg_hours = (sum(response) / len(response) / 60) if response else None

    return InteractionStats(
        received=received,
        acted=acted,
        dismissed=dismissed,
        act_on_strong_buy_rate=rate(SignalStrength.STRONG_BUY),
        act_on_buy_rate=rate(SignalStrength.BUY),
        avg_response_time_hours=avg_hours,
    )


def compute_learned_preferences(
    decisions: Sequence[tuple[float, int, str, str]],
) -> Optional[LearnedPreferences]:
    """Preferences from ``(pct_above_be, month, commodity, tool)`` tuples.

    Returns ``None`` below the minimum decision count.
    """
    if len(decisions) < MIN_DATA_POINTS_FOR_LEARNING:
        return None
    avg_pct = average(d[0] for d in decisions)
    return LearnedPreferences(
        avg_percent_above_break_even=avg_pct,
        learned_risk_score=risk_score_for(avg_pct),
        preferred_sell_window=sell_window_for([d[1] for d in decisions]) or "UNKNOWN",
        commodity_preferences=usage_percentages(
            [d[2] for d in decisions], [c.value for c in CommodityType]
        ),
        tool_preferences=usage_percentages(
            [d[3] for d in decisions], [t.value for t in TRACKED_TOOLS]
        ),
        confidence_score=confidence_for(len(decisions)),
    )


def learned_threshold_for(percents: Sequence[float]) -> Optional[LearnedThresholdValues]:
    """Per-commodity cutoffs from historical pct-above-break-even at sale."""
    if len(percents) < MIN_COMMODITY_DECISIONS:
        return None
    avg_pct = average(percents)
    buy = max(MIN_LEARNED_BUY_THRESHOLD, avg_pct - BUY_THRESHOLD_OFFSET)
    return LearnedThresholdValues(
        strong_buy=avg_pct + STRONG_BUY_THRESHOLD_OFFSET,
        buy=buy,
        adjustment=buy - DEFAULT_THRESHOLDS.buy,
        data_points=len(percents),
        confidence=min(100.0, len(percents) / THRESHOLD_CONFIDENCE_DECISIONS * 100),
    )


def effective_thresholds(
    strong_buy: Optional[float], buy: Optional[float], data_points: int
) -> SignalThresholds:
    """Learned cutoffs once backed by enough data points, defaults otherwise."""
    if strong_buy is None or buy is None or data_points < MIN_DATA_POINTS_FOR_LEARNING:
        return DEFAULT_THRESHOLDS
    return SignalThresholds(strong_buy=strong_buy, buy=buy, personalized=True)


def build_tips(
    act_on_strong_buy_rate: float,
    avg_response_time_hours: Optional[float],
    avg_percent_above_break_even: Optional[float],
    cash_preference: float,
) -> list[str]:
    tips: list[str] = []
    if act_on_strong_buy_rate < 0.3:
        tips.append(
            "You've been missing strong opportunities. Consider acting faster on "
            "STRONG_BUY signals."
        )
    if avg_response_time_hours and avg_response_time_hours > 48:
        tips.append(
            "Your response time to signals averages over 2 days. Markets can move "
            "quickly - consider checking signals more frequently."
        )
    if avg_percent_above_break_even and avg_percent_above_break_even > 0.18:
        tips.append(
            "You tend to wait for very high margins (18%+). While this is "
            "conservative, you might miss good opportunities."
        )
    if cash_preference > 70:
        tips.append(
            "You heavily favor cash sales. Consider diversifying with basis "
            "contracts or HTAs to manage risk."
        )
    return tips
