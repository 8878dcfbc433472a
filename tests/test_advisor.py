"""Tests for the narrative advisor with a stand-in Anthropic client."""

from types import SimpleNamespace

import httpx
import pytest
from anthropic import APIError
from sqlalchemy import select

from granary.db import AIAnalysisLog, MarketingSignal
from granary.enums import AnalysisType, CommodityType
from granary.narrative.advisor import (
    FALLBACK_RESPONSES,
    CommodityBreakEven,
    NarrativeAdvisor,
    build_strategy_prompt,
)


class FakeMessages:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def create(self, model, max_tokens, messages):
        self.prompts.append(messages[0]["content"])
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=self.text)],
            usage=SimpleNamespace(input_tokens=120, output_tokens=80),
        )


def fake_client(text: str = "", error: Exception | None = None):
    return SimpleNamespace(messages=FakeMessages(text, error))


class TestEnrichment:
    async def test_model_text_is_stored(self, session_factory, business, make_signal) -> None:
        signal = await make_signal(business.id)
        client = fake_client("Sell a slice now; the rally looks tired.")
        advisor = NarrativeAdvisor(session_factory, client=client)

        summary = await advisor.enrich_pending(limit=5, delay_seconds=0)

        assert summary == {"enriched": 1, "fallbacks": 0, "errors": []}
        assert "Break-Even Price: $3.80/bushel" in client.messages.prompts[0]
        async with session_factory() as session:
            row = await session.get(MarketingSignal, signal.id)
            log = (await session.execute(select(AIAnalysisLog))).scalar_one()
        assert row.ai_analysis == "Sell a slice now; the rally looks tired."
        assert log.success is True
        assert log.input_tokens == 120

    async def test_fallback_is_not_stored(self, session_factory, business, make_signal) -> None:
        signal = await make_signal(business.id)
        advisor = NarrativeAdvisor(session_factory, client=None)
        advisor._client = None

        text, stored = await advisor.enrich_signal(signal.id)

        assert text == FALLBACK_RESPONSES[AnalysisType.SIGNAL_EXPLANATION]
        assert stored is False
        async with session_factory() as session:
            row = await session.get(MarketingSignal, signal.id)
        assert row.ai_analysis is None
        assert await advisor.pending_signal_ids(10) == [signal.id]

    async def test_fallbacks_are_not_counted_as_enriched(
        self, session_factory, business, make_signal
    ) -> None:
        await make_signal(business.id)
        await make_signal(business.id)
        advisor = NarrativeAdvisor(session_factory, client=None)
        advisor._client = None

        summary = await advisor.enrich_pending(limit=5, delay_seconds=0)

        assert summary == {"enriched": 0, "fallbacks": 2, "errors": []}

    async def test_api_error_falls_back(self, session_factory) -> None:
        error = APIError(
            "overloaded", httpx.Request("POST", "https://api.anthropic.com/v1/messages"), body=None
        )
        advisor = NarrativeAdvisor(session_factory, client=fake_client(error=error))

        text, from_model = await advisor.call(AnalysisType.MARKET_OUTLOOK, "outlook please")

        assert from_model is False
        assert text == FALLBACK_RESPONSES[AnalysisType.MARKET_OUTLOOK]
        async with session_factory() as session:
            log = (await session.execute(select(AIAnalysisLog))).scalar_one()
        assert log.success is False
        assert log.error


class TestAnalyses:
    async def test_outlook_is_parsed(self, session_factory) -> None:
        advisor = NarrativeAdvisor(
            session_factory,
            client=fake_client("SHORT_TERM: Choppy.\nSUPPORT: 4.20\nRESISTANCE: 4.90\nTREND: BULLISH"),
        )

        outlook = await advisor.market_outlook(CommodityType.CORN)

        assert outlook.structured.support == pytest.approx(4.20)
        assert outlook.structured.trend == "BULLISH"

    def test_strategy_prompt_totals(self) -> None:
        prompt = build_strategy_prompt(
            [CommodityBreakEven(commodity=CommodityType.CORN, break_even_price=3.80,
                                total_bushels=20_000, sold_bushels=5_000)],
            "MODERATE",
        )
        assert "Already Marketed: 5,000 bushels (25.0%)" in prompt
        assert "15,000 bushels remaining of 20,000 total" in prompt
