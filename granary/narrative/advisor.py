"""Narrative Advisor — Claude-written explanations, strategy and market outlook.

Wraps the Anthropic ``AsyncAnthropic`` client with:
  - One prompt per analysis type (signal explanation, strategy
    recommendation, market outlook).
  - Automatic retry with exponential back-off via tenacity.
  - A canned fallback per type when no API key is configured or the call
    ultimately fails, so callers always get text back.
  - An ``granary_ai_analysis_logs`` row for every call, fallbacks included.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from anthropic import APIConnectionError, APIError, AsyncAnthropic, RateLimitError
from pydantic import BaseModel
from sqlalchemy import select
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from granary.config import settings
from granary.db import (
    AIAnalysisLog,
    MarketingSignal,
    SessionFactory,
    async_session,
    utcnow,
)
from granary.enums import AnalysisType, CommodityType, SignalStatus
from granary.errors import SignalNotFound
from granary.narrative.parser import ParsedNarrative, parse_outlook, parse_strategy

logger = logging.getLogger("granary.narrative")

# ── Retry configuration ────────────────────────────────────────────────────

_RETRY_EXCEPTIONS = (RateLimitError, APIConnectionError)

_retry_policy = dict(
    retry=retry_if_exception_type(_RETRY_EXCEPTIONS),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=2, min=2, max=60),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)

PROMPT_LOG_LIMIT = 5_000
RESPONSE_LOG_LIMIT = 10_000

# ── Prompts ────────────────────────────────────────────────────────────────

_STRENGTH_DESCRIPTIONS = {
    "STRONG_BUY": "Strong opportunity to take action",
    "BUY": "Good opportunity to consider action",
    "HOLD": "Maintain current position",
    "SELL": "Caution advised",
    "STRONG_SELL": "High risk situation",
}

_SIGNAL_TYPE_DESCRIPTIONS = {
    "CASH_SALE": "sell grain at current cash market prices",
    "BASIS_CONTRACT": "lock in the basis component while leaving futures price open",
    "HTA_RECOMMENDATION": "lock in futures price while leaving basis open (Hedge-to-Arrive)",
    "ACCUMULATOR_STRATEGY": "accumulator contract management",
    "ACCUMULATOR_INQUIRY": "check with elevator for accumulator contract pricing",
    "PUT_OPTION": "purchase put options for downside protection",
    "CALL_OPTION": "purchase call options for upside participation",
    "COLLAR_STRATEGY": "implement a collar strategy (buy put, sell call)",
    "TRADE_POLICY": "respond to trade policy news (tariffs, trade deals, etc.)",
    "WEATHER_ALERT": "respond to weather events affecting crop conditions",
    "BREAKING_NEWS": "respond to breaking news affecting agricultural markets",
}

_SIGNAL_EXPLANATION_PROMPT = """\
You are an agricultural marketing advisor helping a farmer understand a \
marketing signal. Explain this signal in clear, actionable terms.

SIGNAL DETAILS:
- Type: {signal_type} ({type_description})
- Commodity: {commodity}
- Strength: {strength} ({strength_description})
- Current Price: ${current_price:.2f}/bushel
- Break-Even Price: ${break_even_price:.2f}/bushel
- Profit Margin: ${margin:.2f}/bushel ({pct:.1f}% above break-even)
{target_line}
MARKET CONTEXT:
{context}

RULE-BASED RATIONALE:
{rationale}

RECOMMENDED ACTION:
{action}
{bushels_line}
Please provide:
1. A brief explanation (2-3 sentences) of why this signal was generated
2. The potential risks of acting vs not acting on this signal
3. Any market conditions or seasonal timing to consider
4. A clear recommendation with specific next steps

Keep the response concise (under 250 words) and farmer-friendly. Avoid \
jargon where possible.
"""

_STRATEGY_PROMPT = """\
You are an agricultural marketing strategist. Based on the following farm \
operation data, recommend an optimal marketing strategy.

OPERATION OVERVIEW:
- Total Projected Production: {total:,.0f} bushels
- Already Marketed: {sold:,.0f} bushels ({pct_sold:.1f}%)
- Remaining to Market: {remaining:,.0f} bushels

BREAK-EVEN PRICES BY COMMODITY:
{break_evens}

RISK TOLERANCE: {risk_tolerance}

Format your response as follows:
SUMMARY: [2-3 sentence overview]

RECOMMENDATIONS:
[commodity]: [tool] - [percentage]% - [priority] - [reasoning]

RISK_ASSESSMENT: [key risks]

ACTION_ITEMS: [30-day action items]
"""

_OUTLOOK_PROMPT = """\
You are a grain market analyst. Provide a market outlook for {commodity}.

Please analyze the following aspects:

1. Short-Term Outlook (next 30 days): key factors affecting prices
2. Medium-Term Outlook (next 3-6 months): seasonal patterns and expected moves
3. Key Factors: 3-5 factors currently influencing prices
4. Price Targets: support, resistance and fair value estimates
5. Technical Analysis: brief assessment of trend and momentum

Format your response as:
SHORT_TERM: [outlook]
MEDIUM_TERM: [outlook]
KEY_FACTORS: [factor1]; [factor2]; [factor3]
SUPPORT: [price]
RESISTANCE: [price]
FAIR_VALUE: [price]
TREND: [BULLISH/BEARISH/NEUTRAL]

Note: Base your analysis on general market knowledge and seasonal patterns.
"""

FALLBACK_RESPONSES: dict[AnalysisType, str] = {
    AnalysisType.SIGNAL_EXPLANATION: (
        "This signal was generated based on your break-even prices and current market "
        "conditions. Review the rationale provided and consider consulting with your "
        "marketing advisor for personalized guidance. Market conditions change rapidly, "
        "so timely action is recommended if the signal aligns with your marketing goals."
    ),
    AnalysisType.STRATEGY_RECOMMENDATION: (
        "SUMMARY: A balanced approach is recommended based on your current marketing "
        "position and risk tolerance. Consider selling a portion of remaining bushels when "
        "prices exceed your break-even plus target margin.\n\n"
        "RISK_ASSESSMENT: Price volatility remains a key risk. Diversifying marketing tools "
        "can help manage exposure.\n\n"
        "ACTION_ITEMS: Review your break-even calculations, set price alerts for target "
        "levels, and consult with your marketing advisor."
    ),
    AnalysisType.MARKET_OUTLOOK: (
        "SHORT_TERM: Markets are responding to current supply and demand fundamentals.\n"
        "MEDIUM_TERM: Seasonal patterns suggest monitoring weather and export pace.\n"
        "KEY_FACTORS: Supply levels; Export demand; Weather; Currency movements; "
        "Global production\n"
        "TREND: NEUTRAL"
    ),
}


class CommodityBreakEven(BaseModel):
    """Input row for a strategy recommendation."""

    commodity: CommodityType
    break_even_price: float
    total_bushels: float
    sold_bushels: float = 0.0

    @property
    def remaining_bushels(self) -> float:
        return max(0.0, self.total_bushels - self.sold_bushels)


def _format_context(context: Optional[dict[str, Any]]) -> str:
    if not context:
        return "Not available"

    def num(key: str, fmt: str) -> str:
        value = context.get(key)
        return format(value, fmt) if isinstance(value, (int, float)) else "N/A"

    vol = context.get("volatility")
    return "\n".join(
        [
            f"- Futures Price: ${num('futures_price', '.2f')}",
            f"- Futures Contract: {context.get('futures_month') or 'N/A'}",
            f"- Price Trend: {context.get('futures_trend') or 'N/A'}",
            f"- Basis Level: {num('basis_level', '.2f')}",
            f"- Basis vs Historical: {context.get('basis_vs_historical') or 'N/A'}",
            f"- RSI: {num('rsi_value', '.0f')}",
            f"- Volatility: {f'{vol * 100:.1f}%' if isinstance(vol, (int, float)) else 'N/A'}",
        ]
    )


def build_signal_prompt(signal: MarketingSignal) -> str:
    return _SIGNAL_EXPLANATION_PROMPT.format(
        signal_type=signal.signal_type,
        type_description=_SIGNAL_TYPE_DESCRIPTIONS.get(signal.signal_type, signal.signal_type),
        commodity=signal.commodity_type,
        strength=signal.strength,
        strength_description=_STRENGTH_DESCRIPTIONS.get(signal.strength, signal.strength),
        current_price=signal.current_price,
        break_even_price=signal.break_even_price,
        margin=signal.price_above_break_even,
        pct=signal.percent_above_break_even * 100,
        target_line=(
            f"- Target Price: ${signal.target_price:.2f}/bushel\n" if signal.target_price else ""
        ),
        context=_format_context(signal.market_context),
        rationale=signal.rationale or "Not provided",
        action=signal.recommended_action or "Not specified",
        bushels_line=(
            f"Recommended Bushels: {signal.recommended_bushels:,}\n"
            if signal.recommended_bushels
            else ""
        ),
    )


def build_strategy_prompt(break_evens: list[CommodityBreakEven], risk_tolerance: str) -> str:
    total = sum(b.total_bushels for b in break_evens)
    sold = sum(b.sold_bushels for b in break_evens)
    details = "\n".join(
        f"- {b.commodity.value}: Break-even ${b.break_even_price:.2f}/bu, "
        f"{b.remaining_bushels:,.0f} bushels remaining of {b.total_bushels:,.0f} total"
        for b in break_evens
    )
    return _STRATEGY_PROMPT.format(
        total=total,
        sold=sold,
        pct_sold=(sold / total * 100) if total else 0.0,
        remaining=total - sold,
        break_evens=details or "- None recorded",
        risk_tolerance=risk_tolerance,
    )


class NarrativeAdvisor:
    """Claude-backed narrative for signals, strategy and outlook.

    Without an API key every call returns the canned fallback for its
    analysis type; the call is still logged.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        self._model = settings.anthropic_model
        if client is not None:
            self._client: Optional[AsyncAnthropic] = client
        elif settings.anthropic_api_key:
            self._client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        else:
            self._client = None
            logger.warning("ANTHROPIC_API_KEY not set; narrative will use fallback text")

    # ── Core call ──────────────────────────────────────────────────────────

    @retry(**_retry_policy)
    async def _create(self, prompt: str) -> Any:
        return await self._client.messages.create(
            model=self._model,
            max_tokens=settings.ai_max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )

    async def call(
        self,
        analysis_type: AnalysisType,
        prompt: str,
        business_id: Optional[UUID] = None,
        signal_id: Optional[UUID] = None,
    ) -> tuple[str, bool]:
        """Return ``(text, from_model)``; ``from_model`` is False for fallbacks."""
        started = time.monotonic()
        text = ""
        input_tokens = output_tokens = 0
        success = False
        error: Optional[str] = None

        if self._client is None:
            text = FALLBACK_RESPONSES[analysis_type]
            error = "API key not configured"
        else:
            try:
                response = await self._create(prompt)
                text = "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
                if response.usage:
                    input_tokens = getattr(response.usage, "input_tokens", 0)
                    output_tokens = getattr(response.usage, "output_tokens", 0)
                success = True
            except APIError as exc:
                logger.error("Claude %s call failed: %s", analysis_type.value, exc)
                error = str(exc)
                text = FALLBACK_RESPONSES[analysis_type]

        latency_ms = int((time.monotonic() - started) * 1000)
        await self._log_call(
            analysis_type, prompt, text, business_id, signal_id,
            input_tokens, output_tokens, latency_ms, success, error,
        )
        logger.debug(
            "AI %s: in=%d out=%d tokens %dms success=%s",
            analysis_type.value, input_tokens, output_tokens, latency_ms, success,
        )
        return text, success

    async def _log_call(
        self,
        analysis_type: AnalysisType,
        prompt: str,
        response: str,
        business_id: Optional[UUID],
        signal_id: Optional[UUID],
        input_tokens: int,
        output_tokens: int,
        latency_ms: int,
        success: bool,
        error: Optional[str],
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AIAnalysisLog(
                        business_id=business_id,
                        signal_id=signal_id,
                        analysis_type=analysis_type.value,
                        model=self._model,
                        prompt=prompt[:PROMPT_LOG_LIMIT],
                        response=response[:RESPONSE_LOG_LIMIT],
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        latency_ms=latency_ms,
                        success=success,
                        error=error,
                    )
                )
                await session.commit()
        except Exception:
            logger.exception("Could not write AI analysis log")

    # ── Analyses ───────────────────────────────────────────────────────────

    async def explain_signal(self, signal: MarketingSignal) -> str:
        text, _ = await self.call(
            AnalysisType.SIGNAL_EXPLANATION,
            build_signal_prompt(signal),
            business_id=signal.business_id,
            signal_id=signal.id,
        )
        return text

    async def recommend_strategy(
        self,
        business_id: UUID,
        break_evens: list[CommodityBreakEven],
        risk_tolerance: str,
    ) -> ParsedNarrative:
        text, _ = await self.call(
            AnalysisType.STRATEGY_RECOMMENDATION,
            build_strategy_prompt(break_evens, risk_tolerance),
            business_id=business_id,
        )
        return parse_strategy(text, {b.commodity: b.remaining_bushels for b in break_evens})

    async def market_outlook(self, commodity: CommodityType) -> ParsedNarrative:
        text, _ = await self.call(
            AnalysisType.MARKET_OUTLOOK, _OUTLOOK_PROMPT.format(commodity=commodity.value)
        )
        return parse_outlook(text, commodity)

    # ── Signal enrichment ──────────────────────────────────────────────────

    async def enrich_signal(self, signal_id: UUID) -> tuple[str, bool]:
        """Generate and store the explanation for one signal.

        Returns ``(text, stored)``. Fallback text is returned but not stored,
        so the signal is picked up again on the next enrichment run.
        """
        async with self._session_factory() as session:
            signal = await session.get(MarketingSignal, signal_id)
        if signal is None:
            raise SignalNotFound(signal_id)

        text, from_model = await self.call(
            AnalysisType.SIGNAL_EXPLANATION,
            build_signal_prompt(signal),
            business_id=signal.business_id,
            signal_id=signal.id,
        )
        if from_model and text:
            async with self._session_factory() as session:
                row = await session.get(MarketingSignal, signal_id)
                row.ai_analysis = text
                row.ai_analyzed_at = utcnow()
                await session.commit()
            logger.info("Enriched signal %s with narrative", signal_id)
            return text, True
        return text, False

    async def pending_signal_ids(self, limit: int, max_age_hours: int = 24) -> list[UUID]:
        """ACTIVE signals without narrative created within ``max_age_hours``, oldest first."""
        since = utcnow() - timedelta(hours=max_age_hours)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(MarketingSignal.id)
                    .where(
                        MarketingSignal.status == SignalStatus.ACTIVE.value,
                        MarketingSignal.created_at >= since,
                        MarketingSignal.ai_analysis.is_(None),
                    )
                    .order_by(MarketingSignal.created_at.asc())
                    .limit(limit)
                )
            ).scalars().all()
        return list(rows)

    async def enrich_pending(
        self, limit: Optional[int] = None, delay_seconds: Optional[float] = None
    ) -> dict:
        """Sequentially enrich pending signals with a fixed pause between calls."""
        limit = limit if limit is not None else settings.ai_enrichment_batch_size
        delay = delay_seconds if delay_seconds is not None else settings.ai_enrichment_delay_seconds
        summary: dict = {"enriched": 0, "fallbacks": 0, "errors": []}
        ids = await self.pending_signal_ids(limit)
        for i, signal_id in enumerate(ids):
            try:
                _, stored = await self.enrich_signal(signal_id)
                summary["enriched" if stored else "fallbacks"] += 1
            except Exception as exc:
                logger.error("Enrichment failed for signal %s: %s", signal_id, exc)
                summary["errors"].append(f"{signal_id}: {exc}")
            if delay and i < len(ids) - 1:
                await asyncio.sleep(delay)
        return summary
