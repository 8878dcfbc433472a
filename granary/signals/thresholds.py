"""Threshold Evaluator — pure price-versus-break-even signal rules.

Every function here maps market inputs for one commodity to a
:class:`SignalEvaluation` (or ``None`` when the rule has nothing to say).
Nothing in this module touches the database or the network; the
:mod:`granary.signals.orchestrator` supplies prices, trend indicators and
preferences and decides what gets persisted.

Percentage thresholds are divided by the risk multiplier of the user's
tolerance: CONSERVATIVE (1.5) lowers every cutoff, AGGRESSIVE (0.7)
raises it.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from granary.enums import (
    CommodityType,
    RiskTolerance,
    SignalStrength,
    SignalType,
    TrendDirection,
    VolatilityRegime,
)
from granary.market.indicators import TrendAnalysis

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RISK_MULTIPLIERS: dict[RiskTolerance, float] = {
    RiskTolerance.CONSERVATIVE: 1.5,
    RiskTolerance.MODERATE: 1.0,
    RiskTolerance.AGGRESSIVE: 0.7,
}

# Share of remaining bushels recommended per rule and strength.
CASH_STRONG_BUY_FRACTION = 0.25
CASH_BUY_FRACTION = 0.125
BASIS_STRONG_BUY_FRACTION = 0.20
BASIS_BUY_FRACTION = 0.10
HTA_STRONG_BUY_FRACTION = 0.175
HTA_BUY_FRACTION = 0.10

BASIS_STRONG_PERCENTILE = 75.0
BASIS_BUY_PERCENTILE = 50.0
WEAK_BASIS_LEVEL = -0.15
KNOCKOUT_WARNING_DISTANCE = 0.05
OVERBOUGHT_RSI = 70.0
MIN_DAYS_TO_HARVEST_FOR_ACCUMULATOR = 60

ACTIONABLE_STRENGTHS = frozenset({SignalStrength.BUY, SignalStrength.STRONG_BUY})

# Ordering used when reasoning about monotonicity; weakest first.
STRENGTH_ORDER: tuple[SignalStrength, ...] = (
    SignalStrength.STRONG_SELL,
    SignalStrength.SELL,
    SignalStrength.HOLD,
    SignalStrength.BUY,
    SignalStrength.STRONG_BUY,
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class SignalThresholds(BaseModel):
    """Percent-above-break-even cutoffs for BUY and STRONG_BUY."""

    strong_buy: float = 0.15
    buy: float = 0.10
    personalized: bool = False


DEFAULT_THRESHOLDS = SignalThresholds()


class SignalEvaluation(BaseModel):
    """Result of one rule evaluation for one commodity.

    ``recommended_bushels`` is always ``round(total * fraction)`` and never
    exceeds the remaining bushels supplied by the caller.
    """

    signal_type: SignalType
    commodity: CommodityType
    strength: SignalStrength
    current_price: float
    break_even_price: float
    price_above_break_even: float
    percent_above_break_even: float
    title: str
    summary: str
    rationale: str
    recommended_action: Optional[str] = None
    recommended_bushels: Optional[int] = None
    target_price: Optional[float] = None
    expires_in: timedelta = timedelta(days=7)
    market_context: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_actionable(self) -> bool:
        return self.strength in ACTIONABLE_STRENGTHS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def risk_multiplier(tolerance: RiskTolerance | str) -> float:
    return RISK_MULTIPLIERS[RiskTolerance(tolerance)]


def price_margin(price: float, break_even: float) -> tuple[float, float]:
    """Return ``(margin, pct_margin)``; pct is 0 when break-even is not positive."""
    margin = price - break_even
    pct = margin / break_even if break_even > 0 else 0.0
    return margin, pct


def recommended_bushels(total_bushels: float, fraction: float) -> int:
    """``round(total * fraction)`` clamped to ``[0, total]``."""
    if total_bushels <= 0 or fraction <= 0:
        return 0
    bushels = round(total_bushels * min(fraction, 1.0))
    return int(min(bushels, int(total_bushels)))


def basis_percentile(current_basis: float, history: list[float]) -> float:
    """Percent of historical basis observations strictly below ``current_basis``.

    Returns 50 when there is no history.
    """
    if not history:
        return 50.0
    below = sum(1 for b in history if b < current_basis)
    return below / len(history) * 100


def _label(commodity: CommodityType) -> str:
    return CommodityType(commodity).value


# ---------------------------------------------------------------------------
# Cash sale
# ---------------------------------------------------------------------------


def evaluate_cash_sale(
    commodity: CommodityType,
    current_price: float,
    break_even_price: float,
    total_bushels: float,
    *,
    risk_tolerance: RiskTolerance | str,
    target_profit_margin: float,
    min_above_breakeven: float,
    trend: TrendAnalysis,
    thresholds: SignalThresholds = DEFAULT_THRESHOLDS,
    market_context: Optional[dict[str, Any]] = None,
) -> SignalEvaluation:
    """Classify a cash sale at ``current_price``.

    All five strengths are produced; callers persist only actionable ones
    (``evaluation.is_actionable``).
    """
    rm = risk_multiplier(risk_tolerance)
    margin, pct = price_margin(current_price, break_even_price)
    name = _label(commodity)
    bushels: Optional[int] = None

    if (
        pct >= thresholds.strong_buy / rm
        and trend.trend == TrendDirection.DOWN
        and trend.rsi > OVERBOUGHT_RSI
    ):
        strength = SignalStrength.STRONG_BUY
        title = f"Strong {name} Cash Sale Opportunity"
        summary = (
            f"{name} is {pct * 100:.1f}% above break-even with downward price momentum."
        )
        rationale = (
            f"Price shows overbought conditions (RSI: {trend.rsi:.0f}) with downward "
            "trend. Consider locking in profits before potential decline."
        )
        action = "Sell 20-30% of remaining bushels at cash market"
        bushels = recommended_bushels(total_bushels, CASH_STRONG_BUY_FRACTION)
    elif pct >= thresholds.buy / rm and margin >= target_profit_margin:
        strength = SignalStrength.BUY
        title = f"{name} Cash Sale Signal"
        summary = (
            f"{name} is ${margin:.2f}/bu above break-even, exceeding your target margin."
        )
        rationale = (
            f"Current profit margin of ${margin:.2f}/bu exceeds your target of "
            f"${target_profit_margin:.2f}/bu."
        )
        action = "Consider selling 10-15% of remaining bushels"
        bushels = recommended_bushels(total_bushels, CASH_BUY_FRACTION)
    elif pct >= min_above_breakeven:
        # Profitable but short of a BUY, including margins above the BUY
        # percentage that miss the dollar target.
        strength = SignalStrength.HOLD
        title = f"{name} Market Watch"
        summary = (
            f"{name} is profitable but below target margin. "
            "Monitor for better opportunities."
        )
        rationale = (
            f"Current price ${current_price:.2f} is {pct * 100:.1f}% above "
            f"break-even of ${break_even_price:.2f}."
        )
        action = "Hold current position, set price alerts"
    elif pct >= 0:
        strength = SignalStrength.SELL
        title = f"{name} Break-Even Alert"
        summary = f"{name} is near break-even. Selling now would yield minimal profit."
        rationale = f"Price margin of ${margin:.2f}/bu is below minimum threshold."
        action = "Consider hedging strategies to protect downside"
    else:
        strength = SignalStrength.STRONG_SELL
        title = f"{name} Below Break-Even Warning"
        summary = (
            f"{name} is currently below your break-even price by "
            f"${abs(margin):.2f}/bu."
        )
        rationale = (
            f"Current market price of ${current_price:.2f} is below break-even of "
            f"${break_even_price:.2f}. Avoid cash sales at current levels."
        )
        action = "Do not sell. Consider put options for protection."

    return SignalEvaluation(
        signal_type=SignalType.CASH_SALE,
        commodity=commodity,
        strength=strength,
        current_price=current_price,
        break_even_price=break_even_price,
        price_above_break_even=margin,
        percent_above_break_even=pct,
        title=title,
        summary=summary,
        rationale=rationale,
        recommended_action=action,
        recommended_bushels=bushels,
        target_price=break_even_price + target_profit_margin,
        expires_in=timedelta(days=7),
        market_context=dict(market_context or {}),
    )


# ---------------------------------------------------------------------------
# Basis contract
# ---------------------------------------------------------------------------


def evaluate_basis_contract(
    commodity: CommodityType,
    futures_price: float,
    current_basis: float,
    break_even_price: float,
    total_bushels: float,
    *,
    risk_tolerance: RiskTolerance | str,
    percentile: float,
    market_context: Optional[dict[str, Any]] = None,
) -> Optional[SignalEvaluation]:
    """Signal when the current basis is historically strong."""
    rm = risk_multiplier(risk_tolerance)
    cash_price = futures_price + current_basis
    margin, pct = price_margin(cash_price, break_even_price)
    name = _label(commodity)

    if percentile >= BASIS_STRONG_PERCENTILE / rm:
        strength = SignalStrength.STRONG_BUY
        title = f"Excellent {name} Basis Opportunity"
        summary = (
            f"{name} basis at {current_basis:.2f} is in the {percentile:.0f}th "
            "percentile historically."
        )
        rationale = (
            f"Current basis is stronger than {percentile:.0f}% of historical values. "
            "Lock in this favorable basis before it weakens."
        )
        action = "Lock basis on 15-25% of unpriced bushels"
        bushels = recommended_bushels(total_bushels, BASIS_STRONG_BUY_FRACTION)
    elif percentile >= BASIS_BUY_PERCENTILE / rm:
        strength = SignalStrength.BUY
        title = f"{name} Basis Signal"
        summary = f"{name} basis at {current_basis:.2f} is above historical average."
        rationale = (
            f"Basis is in the {percentile:.0f}th percentile. "
            "Consider partial basis contract."
        )
        action = "Consider locking basis on 10% of bushels"
        bushels = recommended_bushels(total_bushels, BASIS_BUY_FRACTION)
    else:
        return None

    context = dict(market_context or {})
    context["basis_percentile"] = percentile

    return SignalEvaluation(
        signal_type=SignalType.BASIS_CONTRACT,
        commodity=commodity,
        strength=strength,
        current_price=cash_price,
        break_even_price=break_even_price,
        price_above_break_even=margin,
        percent_above_break_even=pct,
        title=title,
        summary=summary,
        rationale=rationale,
        recommended_action=action,
        recommended_bushels=bushels,
        expires_in=timedelta(days=5),
        market_context=context,
    )


# ---------------------------------------------------------------------------
# Hedge-to-arrive
# ---------------------------------------------------------------------------


def evaluate_hta(
    commodity: CommodityType,
    futures_price: float,
    current_basis: float,
    break_even_price: float,
    total_bushels: float,
    *,
    risk_tolerance: RiskTolerance | str,
    target_profit_margin: float,
    thresholds: SignalThresholds = DEFAULT_THRESHOLDS,
    market_context: Optional[dict[str, Any]] = None,
) -> Optional[SignalEvaluation]:
    """Lock futures while basis is weak and has room to improve."""
    rm = risk_multiplier(risk_tolerance)
    cash_price = futures_price + current_basis
    margin, futures_above_be = price_margin(cash_price, break_even_price)
    basis_weak = current_basis < WEAK_BASIS_LEVEL
    name = _label(commodity)

    if futures_above_be >= thresholds.strong_buy / rm and basis_weak:
        strength = SignalStrength.STRONG_BUY
        title = f"Strong {name} HTA Opportunity"
        summary = (
            f"{name} futures are strong but basis is weak. "
            "Lock futures while waiting for basis improvement."
        )
        rationale = (
            f"Futures at ${futures_price:.2f} provide {futures_above_be * 100:.1f}% "
            f"margin above break-even. Current basis of {current_basis:.2f} has "
            "room to improve."
        )
        action = "Consider HTA on 15-20% of production"
        bushels = recommended_bushels(total_bushels, HTA_STRONG_BUY_FRACTION)
    elif futures_above_be >= thresholds.buy / rm and basis_weak:
        strength = SignalStrength.BUY
        title = f"{name} HTA Signal"
        summary = f"{name} futures offer protection with potential basis upside."
        rationale = (
            f"Lock in futures protection at ${futures_price:.2f} while keeping "
            "basis open."
        )
        action = "Consider HTA on 10% of unpriced bushels"
        bushels = recommended_bushels(total_bushels, HTA_BUY_FRACTION)
    else:
        return None

    return SignalEvaluation(
        signal_type=SignalType.HTA_RECOMMENDATION,
        commodity=commodity,
        strength=strength,
        current_price=cash_price,
        break_even_price=break_even_price,
        price_above_break_even=margin,
        percent_above_break_even=futures_above_be,
        title=title,
        summary=summary,
        rationale=rationale,
        recommended_action=action,
        recommended_bushels=bushels,
        target_price=break_even_price + target_profit_margin,
        expires_in=timedelta(days=7),
        market_context=dict(market_context or {}),
    )


# ---------------------------------------------------------------------------
# Accumulators
# ---------------------------------------------------------------------------


def evaluate_accumulator_position(
    commodity: CommodityType,
    current_price: float,
    *,
    knockout_price: float,
    double_up_price: Optional[float],
    daily_bushels: float,
    knockout_reached: bool,
    currently_doubled: bool,
    reference_price: Optional[float] = None,
    market_context: Optional[dict[str, Any]] = None,
) -> Optional[SignalEvaluation]:
    """Monitor an existing accumulator against its knockout and double-up barriers.

    A knockout warning takes precedence over the double-up notice since both
    share the same signal slot for the commodity.
    """
    name = _label(commodity)
    reference = reference_price or double_up_price or knockout_price
    context = dict(market_context or {})
    context.setdefault("futures_price", current_price)

    distance = (knockout_price - current_price) / knockout_price if knockout_price > 0 else 1.0

    if distance <= KNOCKOUT_WARNING_DISTANCE and not knockout_reached:
        return SignalEvaluation(
            signal_type=SignalType.ACCUMULATOR_STRATEGY,
            commodity=commodity,
            strength=SignalStrength.STRONG_SELL,
            current_price=current_price,
            break_even_price=reference,
            price_above_break_even=0.0,
            percent_above_break_even=0.0,
            title=f"{name} Accumulator Knockout Warning",
            summary=(
                f"Price is within 5% of knockout level (${knockout_price:.2f}). "
                "Consider exit strategy."
            ),
            rationale=(
                f"Current price ${current_price:.2f} is approaching knockout at "
                f"${knockout_price:.2f}. Only {distance * 100:.1f}% away."
            ),
            recommended_action="Review accumulator position and consider protective puts",
            expires_in=timedelta(days=1),
            market_context=context,
        )

    if double_up_price is not None and current_price < double_up_price and not currently_doubled:
        return SignalEvaluation(
            signal_type=SignalType.ACCUMULATOR_STRATEGY,
            commodity=commodity,
            strength=SignalStrength.BUY,
            current_price=current_price,
            break_even_price=reference,
            price_above_break_even=0.0,
            percent_above_break_even=0.0,
            title=f"{name} Accumulator Double-Up Active",
            summary="Price below double-up level means 2x daily accumulation.",
            rationale=(
                f"Current price ${current_price:.2f} is below double-up trigger at "
                f"${double_up_price:.2f}. You're accumulating "
                f"{daily_bushels * 2:g} bushels/day."
            ),
            recommended_action="Monitor position - double accumulation is active",
            expires_in=timedelta(days=3),
            market_context=context,
        )

    return None


def evaluate_accumulator_inquiry(
    commodity: CommodityType,
    current_price: float,
    break_even_price: float,
    total_bushels: float,
    *,
    risk_tolerance: RiskTolerance | str,
    volatility_regime: VolatilityRegime | str,
    days_to_harvest: int,
    percent_above_breakeven: float = 0.10,
    min_price: Optional[float] = None,
    marketing_percent: float = 0.20,
    thresholds: SignalThresholds = DEFAULT_THRESHOLDS,
    market_context: Optional[dict[str, Any]] = None,
) -> SignalEvaluation:
    """Decide whether now is a good time to open a new accumulator.

    Three conditions are scored: price clears the break-even threshold (and
    the optional price floor), volatility is LOW or MODERATE, and harvest is
    more than 60 days out.  STRONG_BUY needs all three plus a margin at the
    STRONG_BUY cutoff; BUY needs any two; everything else is an
    informational HOLD.
    """
    rm = risk_multiplier(risk_tolerance)
    margin, pct = price_margin(current_price, break_even_price)
    name = _label(commodity)

    price_ok = pct >= percent_above_breakeven and (
        min_price is None or current_price >= min_price
    )
    volatility_ok = VolatilityRegime(volatility_regime) in (
        VolatilityRegime.LOW,
        VolatilityRegime.MODERATE,
    )
    timing_ok = days_to_harvest > MIN_DAYS_TO_HARVEST_FOR_ACCUMULATOR
    met = sum((price_ok, volatility_ok, timing_ok))

    context = dict(market_context or {})
    context.update(
        {
            "conditions_met": met,
            "price_condition": price_ok,
            "volatility_condition": volatility_ok,
            "timing_condition": timing_ok,
            "days_to_harvest": days_to_harvest,
            "volatility_regime": VolatilityRegime(volatility_regime).value,
        }
    )

    bushels: Optional[int] = None
    if met == 3 and pct >= thresholds.strong_buy / rm:
        strength = SignalStrength.STRONG_BUY
        title = f"Strong {name} Accumulator Opportunity"
        summary = (
            f"{name} is {pct * 100:.1f}% above break-even with calm volatility and "
            f"{days_to_harvest} days to harvest."
        )
        action = (
            f"Consider an accumulator on {marketing_percent * 100:.0f}% of "
            "remaining bushels"
        )
        bushels = recommended_bushels(total_bushels, marketing_percent)
    elif met >= 2:
        strength = SignalStrength.BUY
        title = f"{name} Accumulator Inquiry"
        summary = (
            f"{met} of 3 accumulator conditions are favorable for {name}."
        )
        action = "Request accumulator terms from your elevator"
        bushels = recommended_bushels(total_bushels, marketing_percent / 2)
    else:
        strength = SignalStrength.HOLD
        title = f"{name} Accumulator Watch"
        summary = f"Accumulator conditions for {name} are not yet favorable."
        action = "No accumulator recommended at this time"

    failing = [
        label
        for label, ok in (
            ("price below target", price_ok),
            ("volatility too high", volatility_ok),
            ("too close to harvest", timing_ok),
        )
        if not ok
    ]
    rationale = (
        f"Price ${current_price:.2f} vs break-even ${break_even_price:.2f} "
        f"({pct * 100:.1f}%)."
    )
    if failing:
        rationale += " Unmet: " + ", ".join(failing) + "."

    return SignalEvaluation(
        signal_type=SignalType.ACCUMULATOR_INQUIRY,
        commodity=commodity,
        strength=strength,
        current_price=current_price,
        break_even_price=break_even_price,
        price_above_break_even=margin,
        percent_above_break_even=pct,
        title=title,
        summary=summary,
        rationale=rationale,
        recommended_action=action,
        recommended_bushels=bushels,
        expires_in=timedelta(days=7),
        market_context=context,
    )
