"""Learning Service — persists interactions/decisions and refreshes user profiles.

Every write follows the same shape: the primary row (interaction or
decision) is committed first, then the profile statistics and learned
preferences are recomputed in a separate best-effort step.  A failure in
the recompute is logged and never undoes the primary write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select

from granary.db import (
    LearnedThreshold,
    MarketingDecision,
    MarketingSignal,
    SessionFactory,
    SignalInteraction,
    UserMarketingProfile,
    as_utc,
    async_session,
    utcnow,
)
from granary.enums import (
    CommodityType,
    InteractionType,
    MarketingTool,
    RiskTolerance,
    SignalType,
)
from granary.errors import SignalNotFound
from granary.learning import aggregator
from granary.signals.thresholds import DEFAULT_THRESHOLDS, SignalThresholds

logger = logging.getLogger("granary.learning")

# Break-even assumed for a decision that is not linked to a signal.
DEFAULT_BREAK_EVEN_RATIO = 0.85

OUTCOME_HORIZONS = {
    "price_after_1_week": timedelta(days=7),
    "price_after_2_weeks": timedelta(days=14),
    "price_after_1_month": timedelta(days=30),
}


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class DecisionInput(BaseModel):
    """A grain sale or contract the user reports."""

    commodity_type: CommodityType
    marketing_tool: MarketingTool
    bushels: float = Field(..., gt=0)
    price: float = Field(..., gt=0)
    signal_id: Optional[UUID] = None
    notes: Optional[str] = None


class ThresholdAdjustment(BaseModel):
    commodity: CommodityType
    adjustment: float
    reason: str


class LearningInsights(BaseModel):
    has_enough_data: bool
    confidence_score: float
    risk_profile: RiskTolerance
    avg_margin_at_sale: Optional[float] = None
    preferred_sell_window: Optional[str] = None
    signal_act_rate: float = 0.0
    strong_buy_act_rate: float = 0.0
    avg_response_time: str = "Unknown"
    adjusted_thresholds: list[ThresholdAdjustment] = Field(default_factory=list)
    tips: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class LearningService:
    """Profile statistics, learned thresholds and decision outcome tracking.

    ``market`` is a :class:`granary.market.service.MarketDataService`; it is
    only needed for decision snapshots and outcome tracking.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None, market=None) -> None:
        self._session_factory = session_factory or async_session
        self._market = market

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: UUID) -> Optional[UserMarketingProfile]:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(UserMarketingProfile).where(UserMarketingProfile.user_id == user_id)
                )
            ).scalar_one_or_none()

    async def get_or_create_profile(self, user_id: UUID, business_id: UUID) -> UserMarketingProfile:
        profile = await self.get_profile(user_id)
        if profile is not None:
            return profile
        async with self._session_factory() as session:
            profile = UserMarketingProfile(user_id=user_id, business_id=business_id)
            session.add(profile)
            await session.commit()
        logger.info("Created marketing profile user=%s business=%s", user_id, business_id)
        return profile

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    async def record_signal_interaction(
        self,
        user_id: UUID,
        business_id: UUID,
        signal_id: UUID,
        interaction_type: InteractionType,
        *,
        dismiss_reason: Optional[str] = None,
        action_taken: Optional[str] = None,
        bushels_marketed: Optional[float] = None,
    ) -> SignalInteraction:
        """Upsert the user's interaction with one signal, then recompute."""
        profile = await self.get_or_create_profile(user_id, business_id)
        interaction_type = InteractionType(interaction_type)

        async with self._session_factory() as session:
            signal = await session.get(MarketingSignal, signal_id)
            if signal is None:
                raise SignalNotFound(signal_id)
            created = as_utc(signal.created_at)
            minutes = int((utcnow() - created).total_seconds() // 60) if created else None

            row = (
                await session.execute(
                    select(SignalInteraction).where(
                        SignalInteraction.profile_id == profile.id,
                        SignalInteraction.signal_id == signal_id,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                row = SignalInteraction(
                    profile_id=profile.id,
                    signal_id=signal_id,
                    signal_type=signal.signal_type,
                    signal_strength=signal.strength,
                    commodity_type=signal.commodity_type,
                    signal_created_at=created,
                    price_at_signal=signal.current_price,
                    percent_above_break_even=signal.percent_above_break_even,
                )
                session.add(row)
            row.interaction_type = interaction_type.value
            row.response_time_minutes = minutes
            if dismiss_reason is not None:
                row.dismiss_reason = dismiss_reason
            if action_taken is not None:
                row.action_taken = action_taken
            if bushels_marketed is not None:
                row.bushels_marketed = bushels_marketed
            await session.commit()

        logger.debug(
            "Recorded %s interaction user=%s signal=%s", interaction_type.value, user_id, signal_id
        )
        await self._recompute(profile.id)
        return row

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def record_marketing_decision(
        self, user_id: UUID, business_id: UUID, decision: DecisionInput
    ) -> MarketingDecision:
        """Store a sale with its break-even and market snapshot.

        Break-even comes from the linked signal, otherwise 85% of the sale
        price is assumed.  A linked signal also gets an ACTED interaction.
        """
        profile = await self.get_or_create_profile(user_id, business_id)

        break_even = decision.price * DEFAULT_BREAK_EVEN_RATIO
        pct_above = (decision.price - break_even) / break_even
        signal: Optional[MarketingSignal] = None
        if decision.signal_id is not None:
            async with self._session_factory() as session:
                signal = await session.get(MarketingSignal, decision.signal_id)
            if signal is None:
                raise SignalNotFound(decision.signal_id)
            break_even = float(signal.break_even_price)
            pct_above = float(signal.percent_above_break_even)

        snapshot = await self._market_snapshot(decision.commodity_type)

        row = MarketingDecision(
            profile_id=profile.id,
            business_id=business_id,
            signal_id=decision.signal_id,
            commodity_type=decision.commodity_type.value,
            marketing_tool=decision.marketing_tool.value,
            bushels=decision.bushels,
            price=decision.price,
            total_value=decision.bushels * decision.price,
            break_even_price=break_even,
            percent_above_break_even=pct_above,
            notes=decision.notes,
        )
        if snapshot is not None:
            row.futures_price = snapshot.futures_price
            row.basis = snapshot.basis
            row.rsi = snapshot.trend.rsi
            row.trend_direction = snapshot.trend.trend.value
            row.volatility = snapshot.trend.volatility

        async with self._session_factory() as session:
            session.add(row)
            db_profile = await session.get(UserMarketingProfile, profile.id)
            db_profile.total_decisions += 1
            db_profile.total_bushels_sold += decision.bushels
            db_profile.total_revenue += decision.bushels * decision.price
            await session.commit()

        logger.info(
            "Recorded decision user=%s %s %s %.0f bu @ %.2f",
            user_id, decision.marketing_tool.value, decision.commodity_type.value,
            decision.bushels, decision.price,
        )

        if signal is not None:
            await self.record_signal_interaction(
                user_id,
                business_id,
                signal.id,
                InteractionType.ACTED,
                action_taken=f"Sold {decision.bushels:g} bu at ${decision.price:.2f}",
                bushels_marketed=decision.bushels,
            )
        else:
            await self._recompute(profile.id)
        return row

    async def _market_snapshot(self, commodity: CommodityType):
        if self._market is None:
            return None
        try:
            return await self._market.snapshot(commodity)
        except Exception:
            logger.warning("Market snapshot unavailable for %s", commodity.value, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def _recompute(self, profile_id: UUID) -> None:
        try:
            await self.update_profile_stats(profile_id)
            await self.update_learned_preferences(profile_id)
        except Exception:
            logger.exception("Learning update failed for profile %s", profile_id)

    async def update_profile_stats(self, profile_id: UUID) -> None:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        SignalInteraction.interaction_type,
                        SignalInteraction.signal_strength,
                        SignalInteraction.response_time_minutes,
                    ).where(SignalInteraction.profile_id == profile_id)
                )
            ).all()
            stats = aggregator.compute_interaction_stats([tuple(r) for r in rows])

            profile = await session.get(UserMarketingProfile, profile_id)
            profile.total_signals_received = stats.received
            profile.total_signals_acted = stats.acted
            profile.total_signals_dismissed = stats.dismissed
            profile.act_on_strong_buy_rate = stats.act_on_strong_buy_rate
            profile.act_on_buy_rate = stats.act_on_buy_rate
            profile.avg_response_time_hours = stats.avg_response_time_hours
            await session.commit()

    async def update_learned_preferences(self, profile_id: UUID) -> bool:
        """Refresh learned preferences and per-commodity thresholds.

        Returns ``False`` without touching the profile when fewer than
        five decisions exist.
        """
        async with self._session_factory() as session:
            decisions = (
                await session.execute(
                    select(MarketingDecision).where(MarketingDecision.profile_id == profile_id)
                )
            ).scalars().all()

            learned = aggregator.compute_learned_preferences(
                [
                    (
                        float(d.percent_above_break_even),
                        as_utc(d.decided_at).month,
                        d.commodity_type,
                        d.marketing_tool,
                    )
                    for d in decisions
                ]
            )
            if learned is None:
                return False

            profile = await session.get(UserMarketingProfile, profile_id)
            profile.avg_percent_above_break_even = learned.avg_percent_above_break_even
            profile.learned_risk_score = learned.learned_risk_score
            profile.preferred_sell_window = learned.preferred_sell_window
            profile.corn_preference = learned.commodity_preferences[CommodityType.CORN.value]
            profile.soybeans_preference = learned.commodity_preferences[CommodityType.SOYBEANS.value]
            profile.wheat_preference = learned.commodity_preferences[CommodityType.WHEAT.value]
            profile.cash_preference = learned.tool_preferences[MarketingTool.CASH.value]
            profile.basis_preference = learned.tool_preferences[MarketingTool.BASIS.value]
            profile.hta_preference = learned.tool_preferences[MarketingTool.HTA.value]
            profile.accumulator_preference = learned.tool_preferences[MarketingTool.ACCUMULATOR.value]
            profile.confidence_score = learned.confidence_score
            profile.model_version += 1
            profile.last_learning_update = utcnow()

            for commodity in CommodityType:
                pcts = [
                    float(d.percent_above_break_even)
                    for d in decisions
                    if d.commodity_type == commodity.value
                ]
                values = aggregator.learned_threshold_for(pcts)
                if values is None:
                    continue
                row = (
                    await session.execute(
                        select(LearnedThreshold).where(
                            LearnedThreshold.profile_id == profile_id,
                            LearnedThreshold.commodity_type == commodity.value,
                            LearnedThreshold.signal_type == SignalType.CASH_SALE.value,
                        )
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = LearnedThreshold(
                        profile_id=profile_id,
                        commodity_type=commodity.value,
                        signal_type=SignalType.CASH_SALE.value,
                    )
                    session.add(row)
                row.strong_buy_threshold = values.strong_buy
                row.buy_threshold = values.buy
                row.threshold_adjustment = values.adjustment
                row.data_points = values.data_points
                row.confidence = values.confidence

            await session.commit()

        logger.info(
            "Learned preferences updated profile=%s risk=%d confidence=%.0f",
            profile_id, learned.learned_risk_score, learned.confidence_score,
        )
        return True

    # ------------------------------------------------------------------
    # Reads used by signal generation
    # ------------------------------------------------------------------

    async def get_personalized_thresholds(
        self,
        user_id: UUID,
        commodity: CommodityType,
        signal_type: SignalType = SignalType.CASH_SALE,
    ) -> SignalThresholds:
        profile = await self.get_profile(user_id)
        if profile is None:
            return DEFAULT_THRESHOLDS
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(LearnedThreshold).where(
                        LearnedThreshold.profile_id == profile.id,
                        LearnedThreshold.commodity_type == CommodityType(commodity).value,
                        LearnedThreshold.signal_type == SignalType(signal_type).value,
                    )
                )
            ).scalar_one_or_none()
        if row is None:
            return DEFAULT_THRESHOLDS
        return aggregator.effective_thresholds(
            row.strong_buy_threshold, row.buy_threshold, row.data_points
        )

    async def get_effective_risk_tolerance(
        self, user_id: UUID, fallback: RiskTolerance = RiskTolerance.MODERATE
    ) -> RiskTolerance:
        """Learned tolerance once the profile is confident, ``fallback`` until then."""
        profile = await self.get_profile(user_id)
        if profile is None or profile.confidence_score < aggregator.MIN_CONFIDENCE_FOR_RISK_OVERRIDE:
            return RiskTolerance(fallback)
        return aggregator.risk_label(profile.learned_risk_score)

    async def get_learning_insights(self, user_id: UUID) -> Optional[LearningInsights]:
        profile = await self.get_profile(user_id)
        if profile is None:
            return None

        async with self._session_factory() as session:
            thresholds = (
                await session.execute(
                    select(LearnedThreshold).where(LearnedThreshold.profile_id == profile.id)
                )
            ).scalars().all()

        adjustments = []
        for t in thresholds:
            name = t.commodity_type.lower()
            if t.threshold_adjustment > 0:
                reason = f"Based on your history, you typically sell at higher margins for {name}"
            else:
                reason = (
                    "Based on your history, you're comfortable selling at smaller "
                    f"margins for {name}"
                )
            adjustments.append(
                ThresholdAdjustment(
                    commodity=CommodityType(t.commodity_type),
                    adjustment=t.threshold_adjustment,
                    reason=reason,
                )
            )

        received = profile.total_signals_received
        return LearningInsights(
            has_enough_data=profile.total_decisions >= aggregator.MIN_DATA_POINTS_FOR_LEARNING,
            confidence_score=profile.confidence_score,
            risk_profile=aggregator.risk_label(profile.learned_risk_score),
            avg_margin_at_sale=profile.avg_percent_above_break_even,
            preferred_sell_window=profile.preferred_sell_window,
            signal_act_rate=(profile.total_signals_acted / received * 100) if received else 0.0,
            strong_buy_act_rate=profile.act_on_strong_buy_rate * 100,
            avg_response_time=aggregator.format_response_time(profile.avg_response_time_hours),
            adjusted_thresholds=adjustments,
            tips=aggregator.build_tips(
                profile.act_on_strong_buy_rate,
                profile.avg_response_time_hours,
                profile.avg_percent_above_break_even,
                profile.cash_preference,
            ),
        )

    # ------------------------------------------------------------------
    # Outcome tracking
    # ------------------------------------------------------------------

    async def update_decision_outcomes(self, now: Optional[datetime] = None) -> int:
        """Fill post-sale prices from stored quotes and grade finished decisions.

        Returns the number of decisions touched.
        """
        if self._market is None:
            raise RuntimeError("update_decision_outcomes needs a market data service")
        now = now or utcnow()
        updated = 0
        async with self._session_factory() as session:
            pending = (
                await session.execute(
                    select(MarketingDecision).where(
                        MarketingDecision.decision_quality.is_(None),
                        MarketingDecision.decided_at <= now - OUTCOME_HORIZONS["price_after_1_week"],
                    )
                )
            ).scalars().all()

            for d in pending:
                decided = as_utc(d.decided_at)
                commodity = CommodityType(d.commodity_type)
                changed = False
                for field, horizon in OUTCOME_HORIZONS.items():
                    if getattr(d, field) is not None or decided + horizon > now:
                        continue
                    price = await self._market.get_price_on_or_after(commodity, decided + horizon)
                    if price is not None:
                        setattr(d, field, price)
                        changed = True
                if d.price_after_1_month is not None and d.price:
                    change = (d.price_after_1_month - d.price) / d.price
                    d.decision_quality = aggregator.decision_quality(change)
                    changed = True
                if changed:
                    d.outcome_updated_at = now
                    updated += 1
            await session.commit()

        logger.info("Decision outcomes updated: %d", updated)
        return updated
