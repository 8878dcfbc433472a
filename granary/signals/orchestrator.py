"""Signal Orchestrator — turns market data and preferences into stored signals.

For each enabled commodity and marketing tool the orchestrator pulls a
:class:`~granary.market.service.MarketSnapshot`, runs the matching rule
from :mod:`granary.signals.thresholds` and upserts the result.

Deduplication: at most one ACTIVE signal per (business, signal type,
commodity) created inside the dedup window.  A re-evaluation with the same
strength leaves the stored row untouched; a different strength rewrites it
in place.

Lifecycle: ACTIVE → DISMISSED | TRIGGERED | EXPIRED.  All three targets are
terminal; any transition out of them raises :class:`InvalidTransition`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select, update

from granary.config import settings
from granary.db import (
    AccumulatorContract,
    Farm,
    MarketingSignal,
    SessionFactory,
    async_session,
    utcnow,
)
from granary.enums import (
    CommodityType,
    InteractionType,
    RiskTolerance,
    SignalStatus,
    SignalType,
)
from granary.errors import InvalidTransition, SignalNotFound
from granary.market import indicators
from granary.market.service import MarketDataService, MarketSnapshot
from granary.notifications import LoggingNotifier, Notifier, notify_new_signals
from granary.signals import thresholds as rules
from granary.signals.preferences import (
    commodity_enabled,
    get_or_create_preferences,
    signal_enabled,
)
from granary.signals.schemas import SignalFilters
from granary.signals.thresholds import DEFAULT_THRESHOLDS, SignalEvaluation

logger = logging.getLogger("granary.signals")


class CommodityPosition(BaseModel):
    """Break-even and unsold bushels for one commodity across a crop year."""

    commodity: CommodityType
    break_even_price: float
    expected_bushels: float
    contracted_bushels: float

    @property
    def remaining_bushels(self) -> float:
        return max(0.0, self.expected_bushels - self.contracted_bushels)


class SignalOrchestrator:
    """Generates, deduplicates and transitions marketing signals.

    ``learning`` is an optional :class:`granary.learning.service.LearningService`;
    without it, or without a ``user_id``, default thresholds and the
    business's configured risk tolerance are used.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        market: Optional[MarketDataService] = None,
        learning=None,
        notifier: Optional[Notifier] = None,
        dedup_window_hours: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        self._market = market or MarketDataService(self._session_factory)
        self._learning = learning
        self._notifier = notifier or LoggingNotifier()
        self._dedup_window = timedelta(
            hours=dedup_window_hours
            if dedup_window_hours is not None
            else settings.signal_dedup_window_hours
        )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def commodity_positions(
        self, business_id: UUID, year: Optional[int] = None
    ) -> dict[CommodityType, CommodityPosition]:
        """Acre-weighted break-even and expected bushels per commodity."""
        year = year or utcnow().year
        async with self._session_factory() as session:
            farms = (
                await session.execute(
                    select(Farm).where(
                        Farm.business_id == business_id,
                        Farm.year == year,
                        Farm.deleted_at.is_(None),
                    )
                )
            ).scalars().all()

        totals: dict[CommodityType, list[float]] = {}
        for farm in farms:
            entry = totals.setdefault(CommodityType(farm.commodity_type), [0.0, 0.0, 0.0])
            acres = float(farm.acres)
            entry[0] += float(farm.total_cost_per_acre) * acres
            entry[1] += float(farm.projected_yield) * acres
            entry[2] += float(farm.contracted_bushels)

        return {
            commodity: CommodityPosition(
                commodity=commodity,
                break_even_price=cost / bushels,
                expected_bushels=bushels,
                contracted_bushels=contracted,
            )
            for commodity, (cost, bushels, contracted) in totals.items()
            if bushels > 0
        }

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_signals(
        self, business_id: UUID, user_id: Optional[UUID] = None
    ) -> list[MarketingSignal]:
        """Evaluate every enabled rule for every enabled commodity.

        Open accumulator contracts are monitored whenever accumulator
        monitoring is on, even for commodities switched off for new signals.
        Returns the signals that were inserted or changed by this run.
        """
        prefs = await get_or_create_preferences(business_id, self._session_factory)
        positions = await self.commodity_positions(business_id)
        risk = RiskTolerance(prefs.risk_tolerance)
        if self._learning is not None and user_id is not None:
            risk = await self._learning.get_effective_risk_tolerance(user_id, risk)

        touched: list[MarketingSignal] = []
        created: list[MarketingSignal] = []

        needs_position = any(
            signal_enabled(prefs, t)
            for t in (
                SignalType.CASH_SALE,
                SignalType.BASIS_CONTRACT,
                SignalType.HTA_RECOMMENDATION,
                SignalType.ACCUMULATOR_INQUIRY,
            )
        )
        monitor = signal_enabled(prefs, SignalType.ACCUMULATOR_STRATEGY)

        for commodity in CommodityType:
            position = positions.get(commodity) if commodity_enabled(prefs, commodity) else None
            if (position is None or not needs_position) and not monitor:
                continue

            snapshot = await self._market.snapshot(commodity)
            if snapshot is None:
                logger.warning("No market snapshot for %s; skipping", commodity.value)
                continue

            evaluations: list[SignalEvaluation] = []
            if position is not None and position.break_even_price > 0:
                evaluations.extend(
                    await self._evaluate_position(prefs, risk, user_id, snapshot, position)
                )
            if monitor:
                evaluations.extend(await self._evaluate_accumulators(business_id, snapshot))

            for evaluation in evaluations:
                signal, status = await self.upsert_signal(business_id, evaluation)
                if status == "created":
                    created.append(signal)
                if status != "unchanged":
                    touched.append(signal)

        if created:
            try:
                await notify_new_signals(
                    business_id, created, self._notifier, self._session_factory
                )
            except Exception:
                logger.exception("New-signal notification failed for business %s", business_id)

        logger.info(
            "Signals generated business=%s created=%d updated=%d",
            business_id, len(created), len(touched) - len(created),
        )
        return touched

    async def _evaluate_position(
        self,
        prefs,
        risk: RiskTolerance,
        user_id: Optional[UUID],
        snapshot: MarketSnapshot,
        position: CommodityPosition,
    ) -> list[SignalEvaluation]:
        commodity = snapshot.commodity
        be = position.break_even_price
        remaining = position.remaining_bushels

        thresholds = DEFAULT_THRESHOLDS
        if self._learning is not None and user_id is not None:
            thresholds = await self._learning.get_personalized_thresholds(
                user_id, commodity, SignalType.CASH_SALE
            )

        context = snapshot.context()
        context["break_even_price"] = round(be, 4)
        context["remaining_bushels"] = round(remaining)
        context["personalized_thresholds"] = thresholds.personalized

        results: list[Optional[SignalEvaluation]] = []

        if signal_enabled(prefs, SignalType.CASH_SALE):
            results.append(
                rules.evaluate_cash_sale(
                    commodity,
                    snapshot.cash_price,
                    be,
                    remaining,
                    risk_tolerance=risk,
                    target_profit_margin=prefs.target_profit_margin,
                    min_above_breakeven=prefs.min_above_breakeven,
                    trend=snapshot.trend,
                    thresholds=thresholds,
                    market_context=context,
                )
            )

        if signal_enabled(prefs, SignalType.BASIS_CONTRACT):
            percentile = await self._market.get_basis_percentile(commodity, snapshot.basis)
            results.append(
                rules.evaluate_basis_contract(
                    commodity,
                    snapshot.futures_price,
                    snapshot.basis,
                    be,
                    remaining,
                    risk_tolerance=risk,
                    percentile=percentile,
                    market_context=context,
                )
            )

        if signal_enabled(prefs, SignalType.HTA_RECOMMENDATION):
            results.append(
                rules.evaluate_hta(
                    commodity,
                    snapshot.futures_price,
                    snapshot.basis,
                    be,
                    remaining,
                    risk_tolerance=risk,
                    target_profit_margin=prefs.target_profit_margin,
                    thresholds=thresholds,
                    market_context=context,
                )
            )

        if signal_enabled(prefs, SignalType.ACCUMULATOR_INQUIRY):
            results.append(
                rules.evaluate_accumulator_inquiry(
                    commodity,
                    snapshot.cash_price,
                    be,
                    remaining,
                    risk_tolerance=risk,
                    volatility_regime=snapshot.volatility_regime,
                    days_to_harvest=indicators.days_to_harvest(commodity),
                    percent_above_breakeven=prefs.accumulator_percent_above_breakeven,
                    min_price=prefs.accumulator_min_price,
                    marketing_percent=prefs.accumulator_marketing_percent,
                    thresholds=thresholds,
                    market_context=context,
                )
            )

        return [r for r in results if r is not None and r.is_actionable]

    async def _evaluate_accumulators(
        self, business_id: UUID, snapshot: MarketSnapshot
    ) -> list[SignalEvaluation]:
        """Knockout warnings and double-up notices for open contracts.

        These are stored whatever their strength; a knockout warning is a
        STRONG_SELL by construction.
        """
        async with self._session_factory() as session:
            contracts = (
                await session.execute(
                    select(AccumulatorContract).where(
                        AccumulatorContract.business_id == business_id,
                        AccumulatorContract.commodity_type == snapshot.commodity.value,
                        AccumulatorContract.is_active.is_(True),
                    )
                )
            ).scalars().all()

        results = []
        for contract in contracts:
            evaluation = rules.evaluate_accumulator_position(
                snapshot.commodity,
                snapshot.futures_price,
                knockout_price=float(contract.knockout_price),
                double_up_price=(
                    float(contract.double_up_price) if contract.double_up_price else None
                ),
                daily_bushels=float(contract.daily_bushels),
                knockout_reached=contract.is_knocked_out,
                currently_doubled=contract.is_doubled_up,
                market_context=snapshot.context(),
            )
            if evaluation is not None:
                evaluation.market_context["contract_id"] = str(contract.id)
                results.append(evaluation)
        return results

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert_signal(
        self, business_id: UUID, evaluation: SignalEvaluation
    ) -> tuple[MarketingSignal, str]:
        """Insert or dedup one evaluation.

        Returns the stored row and one of ``"created"``, ``"updated"`` or
        ``"unchanged"``.
        """
        now = utcnow()
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(MarketingSignal)
                    .where(
                        MarketingSignal.business_id == business_id,
                        MarketingSignal.signal_type == evaluation.signal_type.value,
                        MarketingSignal.commodity_type == evaluation.commodity.value,
                        MarketingSignal.status == SignalStatus.ACTIVE.value,
                        MarketingSignal.created_at >= now - self._dedup_window,
                    )
                    .order_by(MarketingSignal.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

            if existing is not None and existing.strength == evaluation.strength.value:
                return existing, "unchanged"

            if existing is not None:
                logger.info(
                    "Signal %s strength %s -> %s",
                    existing.id, existing.strength, evaluation.strength.value,
                )
                existing.strength = evaluation.strength.value
                existing.title = evaluation.title
                existing.current_price = evaluation.current_price
                existing.price_above_break_even = evaluation.price_above_break_even
                existing.percent_above_break_even = evaluation.percent_above_break_even
                existing.summary = evaluation.summary
                existing.rationale = evaluation.rationale
                existing.recommended_bushels = evaluation.recommended_bushels
                existing.recommended_action = evaluation.recommended_action
                existing.target_price = evaluation.target_price
                existing.market_context = evaluation.market_context
                await session.commit()
                return existing, "updated"

            signal = MarketingSignal(
                business_id=business_id,
                signal_type=evaluation.signal_type.value,
                commodity_type=evaluation.commodity.value,
                strength=evaluation.strength.value,
                status=SignalStatus.ACTIVE.value,
                title=evaluation.title,
                summary=evaluation.summary,
                rationale=evaluation.rationale,
                current_price=evaluation.current_price,
                break_even_price=evaluation.break_even_price,
                price_above_break_even=evaluation.price_above_break_even,
                percent_above_break_even=evaluation.percent_above_break_even,
                target_price=evaluation.target_price,
                recommended_bushels=evaluation.recommended_bushels,
                recommended_action=evaluation.recommended_action,
                market_context=evaluation.market_context,
                expires_at=now + evaluation.expires_in,
                created_at=now,
            )
            session.add(signal)
            await session.commit()
        logger.info(
            "Created %s %s signal for business %s (%s)",
            evaluation.strength.value, evaluation.signal_type.value,
            business_id, evaluation.commodity.value,
        )
        return signal, "created"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_signals(
        self,
        business_id: UUID,
        filters: Optional[SignalFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MarketingSignal]:
        filters = filters or SignalFilters()
        stmt = select(MarketingSignal).where(MarketingSignal.business_id == business_id)
        if filters.status is not None:
            stmt = stmt.where(MarketingSignal.status == filters.status.value)
        if filters.commodity is not None:
            stmt = stmt.where(MarketingSignal.commodity_type == filters.commodity.value)
        if filters.signal_type is not None:
            stmt = stmt.where(MarketingSignal.signal_type == filters.signal_type.value)
        if filters.strength is not None:
            stmt = stmt.where(MarketingSignal.strength == filters.strength.value)
        stmt = stmt.order_by(MarketingSignal.created_at.desc()).limit(limit).offset(offset)
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_signal(self, signal_id: UUID, business_id: UUID) -> MarketingSignal:
        async with self._session_factory() as session:
            signal = (
                await session.execute(
                    select(MarketingSignal).where(
                        MarketingSignal.id == signal_id,
                        MarketingSignal.business_id == business_id,
                    )
                )
            ).scalar_one_or_none()
        if signal is None:
            raise SignalNotFound(signal_id)
        return signal

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self, signal_id: UUID, business_id: UUID, target: SignalStatus, **fields
    ) -> MarketingSignal:
        async with self._session_factory() as session:
            signal = (
                await session.execute(
                    select(MarketingSignal).where(
                        MarketingSignal.id == signal_id,
                        MarketingSignal.business_id == business_id,
                    )
                )
            ).scalar_one_or_none()
            if signal is None:
                raise SignalNotFound(signal_id)
            if signal.status != SignalStatus.ACTIVE.value:
                raise InvalidTransition(signal_id, signal.status, target.value)
            signal.status = target.value
            for key, value in fields.items():
                setattr(signal, key, value)
            await session.commit()
        logger.info("Signal %s -> %s", signal_id, target.value)
        return signal

    async def _record_interaction(
        self,
        user_id: Optional[UUID],
        signal: MarketingSignal,
        interaction: InteractionType,
        **kwargs,
    ) -> None:
        if self._learning is None or user_id is None:
            return
        try:
            await self._learning.record_signal_interaction(
                user_id, signal.business_id, signal.id, interaction, **kwargs
            )
        except Exception:
            logger.exception("Could not record %s interaction for %s", interaction.value, signal.id)

    async def dismiss_signal(
        self,
        signal_id: UUID,
        business_id: UUID,
        reason: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> MarketingSignal:
        signal = await self._transition(
            signal_id, business_id, SignalStatus.DISMISSED,
            dismissed_at=utcnow(), dismiss_reason=reason,
        )
        await self._record_interaction(
            user_id, signal, InteractionType.DISMISSED, dismiss_reason=reason
        )
        return signal

    async def record_action(
        self,
        signal_id: UUID,
        business_id: UUID,
        action: str,
        user_id: Optional[UUID] = None,
    ) -> MarketingSignal:
        signal = await self._transition(
            signal_id, business_id, SignalStatus.TRIGGERED,
            action_taken=action, action_taken_at=utcnow(),
        )
        await self._record_interaction(
            user_id, signal, InteractionType.ACTED, action_taken=action
        )
        return signal

    async def mark_viewed(
        self, signal_id: UUID, business_id: UUID, user_id: Optional[UUID] = None
    ) -> MarketingSignal:
        """Stamp ``viewed_at`` once; status is unchanged."""
        async with self._session_factory() as session:
            signal = (
                await session.execute(
                    select(MarketingSignal).where(
                        MarketingSignal.id == signal_id,
                        MarketingSignal.business_id == business_id,
                    )
                )
            ).scalar_one_or_none()
            if signal is None:
                raise SignalNotFound(signal_id)
            first_view = signal.viewed_at is None
            if first_view:
                signal.viewed_at = utcnow()
                await session.commit()
        if first_view:
            await self._record_interaction(user_id, signal, InteractionType.VIEWED)
        return signal

    async def expire_old_signals(self, now: Optional[datetime] = None) -> int:
        """Flip every ACTIVE signal past its ``expires_at`` to EXPIRED."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(MarketingSignal)
                .where(
                    MarketingSignal.status == SignalStatus.ACTIVE.value,
                    MarketingSignal.expires_at.is_not(None),
                    MarketingSignal.expires_at < now,
                )
                .values(status=SignalStatus.EXPIRED.value, updated_at=now)
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Expired %d signals", count)
        return count
