"""Tests for the learning service against a real database."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from granary.db import MarketingDecision, SignalInteraction, utcnow
from granary.enums import CommodityType, InteractionType, MarketingTool, RiskTolerance
from granary.errors import SignalNotFound
from granary.learning.service import DecisionInput, LearningService
from granary.signals.thresholds import DEFAULT_THRESHOLDS


@pytest.fixture
def learning(session_factory, fake_market) -> LearningService:
    return LearningService(session_factory, fake_market)


async def seed_decisions(session_factory, profile_id, business_id, pcts, commodity="CORN", tool="CASH"):
    async with session_factory() as session:
        for i, pct in enumerate(pcts):
            session.add(
                MarketingDecision(
                    profile_id=profile_id,
                    business_id=business_id,
                    commodity_type=commodity,
                    marketing_tool=tool,
                    bushels=1000,
                    price=4.50,
                    total_value=4500,
                    break_even_price=4.50 / (1 + pct),
                    percent_above_break_even=pct,
                    decided_at=utcnow() - timedelta(days=i),
                )
            )
        await session.commit()


class TestInteractions:
    async def test_interaction_upserts_and_updates_stats(
        self, session_factory, business, make_signal, learning
    ) -> None:
        user_id = uuid.uuid4()
        signal = await make_signal(business.id, created_at=utcnow() - timedelta(hours=2))

        await learning.record_signal_interaction(
            user_id, business.id, signal.id, InteractionType.VIEWED
        )
        await learning.record_signal_interaction(
            user_id, business.id, signal.id, InteractionType.ACTED, action_taken="Sold 5,000 bu"
        )

        async with session_factory() as session:
            rows = (await session.execute(select(SignalInteraction))).scalars().all()
        assert len(rows) == 1
        assert rows[0].interaction_type == "ACTED"
        assert rows[0].action_taken == "Sold 5,000 bu"
        assert rows[0].signal_strength == "STRONG_BUY"

        profile = await learning.get_profile(user_id)
        assert profile.total_signals_received == 1
        assert profile.total_signals_acted == 1
        assert profile.act_on_strong_buy_rate == pytest.approx(1.0)
        assert profile.avg_response_time_hours == pytest.approx(2.0, abs=0.05)

    async def test_unknown_signal(self, business, learning) -> None:
        with pytest.raises(SignalNotFound):
            await learning.record_signal_interaction(
                uuid.uuid4(), business.id, uuid.uuid4(), InteractionType.VIEWED
            )


class TestDecisions:
    async def test_unlinked_decision_assumes_break_even(self, business, learning) -> None:
        user_id = uuid.uuid4()
        decision = await learning.record_marketing_decision(
            user_id,
            business.id,
            DecisionInput(
                commodity_type=CommodityType.CORN,
                marketing_tool=MarketingTool.CASH,
                bushels=5000,
                price=4.50,
            ),
        )

        assert decision.break_even_price == pytest.approx(3.825)
        assert decision.percent_above_break_even == pytest.approx(0.15 / 0.85)
        assert decision.total_value == pytest.approx(22_500)
        assert decision.futures_price == pytest.approx(4.80)
        assert decision.trend_direction == "DOWN"

        profile = await learning.get_profile(user_id)
        assert profile.total_decisions == 1
        assert profile.total_bushels_sold == pytest.approx(5000)
        assert profile.total_revenue == pytest.approx(22_500)

    async def test_linked_decision_records_action(
        self, session_factory, business, make_signal, learning
    ) -> None:
        user_id = uuid.uuid4()
        signal = await make_signal(business.id)

        decision = await learning.record_marketing_decision(
            user_id,
            business.id,
            DecisionInput(
                commodity_type=CommodityType.CORN,
                marketing_tool=MarketingTool.CASH,
                bushels=5000,
                price=4.50,
                signal_id=signal.id,
            ),
        )

        assert decision.break_even_price == pytest.approx(3.80)
        async with session_factory() as session:
            interaction = (await session.execute(select(SignalInteraction))).scalar_one()
        assert interaction.interaction_type == "ACTED"
        assert interaction.action_taken == "Sold 5000 bu at $4.50"
        assert interaction.bushels_marketed == pytest.approx(5000)


class TestLearnedPreferences:
    async def test_needs_five_decisions(self, session_factory, business, learning) -> None:
        profile = await learning.get_or_create_profile(uuid.uuid4(), business.id)
        await seed_decisions(session_factory, profile.id, business.id, [0.12] * 4)

        assert await learning.update_learned_preferences(profile.id) is False

    async def test_thresholds_and_risk(self, session_factory, business, learning) -> None:
        user_id = uuid.uuid4()
        profile = await learning.get_or_create_profile(user_id, business.id)
        await seed_decisions(session_factory, profile.id, business.id, [0.06, 0.07, 0.08, 0.07, 0.07, 0.07])

        assert await learning.update_learned_preferences(profile.id) is True

        thresholds = await learning.get_personalized_thresholds(user_id, CommodityType.CORN)
        assert thresholds.personalized
        assert thresholds.strong_buy == pytest.approx(0.12)
        assert thresholds.buy == pytest.approx(0.05)

        # Too few soybean decisions for a learned threshold
        assert await learning.get_personalized_thresholds(user_id, CommodityType.SOYBEANS) is DEFAULT_THRESHOLDS

        # Six decisions is 30% confidence, enough for the learned score of 60
        assert await learning.get_effective_risk_tolerance(user_id) == RiskTolerance.AGGRESSIVE

    async def test_low_confidence_profile_keeps_configured_risk(
        self, business, make_signal, learning
    ) -> None:
        user_id = uuid.uuid4()
        signal = await make_signal(business.id)
        await learning.record_signal_interaction(
            user_id, business.id, signal.id, InteractionType.VIEWED
        )

        assert await learning.get_profile(user_id) is not None
        for configured in (RiskTolerance.CONSERVATIVE, RiskTolerance.AGGRESSIVE):
            assert await learning.get_effective_risk_tolerance(user_id, configured) == configured

    async def test_no_profile_uses_fallback(self, learning) -> None:
        assert (
            await learning.get_effective_risk_tolerance(uuid.uuid4(), RiskTolerance.CONSERVATIVE)
            == RiskTolerance.CONSERVATIVE
        )
        assert await learning.get_learning_insights(uuid.uuid4()) is None


class TestInsights:
    async def test_insights(self, session_factory, business, learning) -> None:
        user_id = uuid.uuid4()
        profile = await learning.get_or_create_profile(user_id, business.id)
        # Average 24% above break-even, well into the most conservative band
        await seed_decisions(session_factory, profile.id, business.id, [0.24, 0.26, 0.23, 0.25, 0.22])
        await learning.update_learned_preferences(profile.id)

        insights = await learning.get_learning_insights(user_id)

        assert insights.has_enough_data is False  # totals are only bumped by recorded decisions
        assert insights.risk_profile == RiskTolerance.CONSERVATIVE
        assert insights.preferred_sell_window is not None
        assert insights.adjusted_thresholds[0].commodity == CommodityType.CORN
        assert insights.adjusted_thresholds[0].reason.endswith("higher margins for corn")
        assert any("18%+" in tip for tip in insights.tips)


class TestOutcomes:
    async def test_fills_prices_and_grades(self, session_factory, business, learning, fake_market) -> None:
        now = utcnow()
        profile = await learning.get_or_create_profile(uuid.uuid4(), business.id)
        async with session_factory() as session:
            session.add(
                MarketingDecision(
                    profile_id=profile.id, business_id=business.id, commodity_type="CORN",
                    marketing_tool="CASH", bushels=1000, price=4.50, total_value=4500,
                    break_even_price=3.80, percent_above_break_even=0.184,
                    decided_at=now - timedelta(days=35),
                )
            )
            await session.commit()
        sold = now - timedelta(days=35)
        fake_market.prices[CommodityType.CORN] = [
            (sold + timedelta(days=7), 4.40),
            (sold + timedelta(days=14), 4.20),
            (sold + timedelta(days=30), 3.95),
        ]

        assert await learning.update_decision_outcomes(now) == 1

        async with session_factory() as session:
            decision = (await session.execute(select(MarketingDecision))).scalar_one()
        assert decision.price_after_1_week == pytest.approx(4.40)
        assert decision.price_after_1_month == pytest.approx(3.95)
        assert decision.decision_quality == "EXCELLENT"

    async def test_recent_decisions_wait(self, session_factory, business, learning) -> None:
        profile = await learning.get_or_create_profile(uuid.uuid4(), business.id)
        await seed_decisions(session_factory, profile.id, business.id, [0.1])

        assert await learning.update_decision_outcomes() == 0

    async def test_requires_market(self, session_factory) -> None:
        with pytest.raises(RuntimeError):
            await LearningService(session_factory).update_decision_outcomes()
