"""Tolerant parsers for sectioned LLM responses.

The prompts ask the model for ``HEADER: text`` sections.  Models do not
always comply, so every parse returns a :class:`ParsedNarrative`: the
structured view when at least one expected header was found, and always
the raw text so callers can show it verbatim otherwise.
"""

from __future__ import annotations

import re
from typing import Optional, Union

from pydantic import BaseModel, Field

from granary.enums import CommodityType, SignalType

STRATEGY_HEADERS = ("SUMMARY", "RECOMMENDATIONS", "RISK_ASSESSMENT", "ACTION_ITEMS")
OUTLOOK_HEADERS = (
    "SHORT_TERM", "MEDIUM_TERM", "KEY_FACTORS", "SUPPORT", "RESISTANCE", "FAIR_VALUE", "TREND",
)

# (support, resistance, fair value) used when the model omits a level.
DEFAULT_PRICE_LEVELS: dict[CommodityType, tuple[float, float, float]] = {
    CommodityType.CORN: (4.00, 5.00, 4.50),
    CommodityType.SOYBEANS: (10.00, 14.00, 12.00),
    CommodityType.WHEAT: (5.00, 7.00, 6.00),
}

TOOL_ALIASES: dict[str, SignalType] = {
    "CASH": SignalType.CASH_SALE,
    "CASH_SALE": SignalType.CASH_SALE,
    "BASIS": SignalType.BASIS_CONTRACT,
    "BASIS_CONTRACT": SignalType.BASIS_CONTRACT,
    "HTA": SignalType.HTA_RECOMMENDATION,
    "HEDGE_TO_ARRIVE": SignalType.HTA_RECOMMENDATION,
    "ACCUMULATOR": SignalType.ACCUMULATOR_STRATEGY,
    "PUT": SignalType.PUT_OPTION,
    "PUT_OPTION": SignalType.PUT_OPTION,
    "CALL": SignalType.CALL_OPTION,
    "CALL_OPTION": SignalType.CALL_OPTION,
    "COLLAR": SignalType.COLLAR_STRATEGY,
}

_RECOMMENDATION_LINE = re.compile(
    r"(\w+):\s*(\w+)\s*-\s*(\d+)%?\s*-\s*(\w+)\s*-\s*(.+)", re.IGNORECASE
)
_PRICE = r"\$?\s*([\d]+(?:\.\d+)?)"


class StrategyRecommendation(BaseModel):
    commodity: CommodityType
    tool: SignalType
    percentage: int
    priority: str
    reasoning: str
    bushels: int = 0

    @property
    def action(self) -> str:
        return f"{self.tool.value} for {self.percentage}% of remaining {self.commodity.value}"


class StrategyNarrative(BaseModel):
    summary: str = ""
    recommendations: list[StrategyRecommendation] = Field(default_factory=list)
    risk_assessment: str = ""
    action_items: str = ""


class OutlookNarrative(BaseModel):
    commodity: CommodityType
    short_term: str = "Market conditions are relatively stable."
    medium_term: str = "Seasonal patterns suggest moderate volatility ahead."
    key_factors: list[str] = Field(
        default_factory=lambda: ["Supply levels", "Export demand", "Weather conditions"]
    )
    support: float
    resistance: float
    fair_value: float
    trend: str = "NEUTRAL"


class ParsedNarrative(BaseModel):
    structured: Optional[Union[StrategyNarrative, OutlookNarrative]] = None
    raw_text: str

    @property
    def is_structured(self) -> bool:
        return self.structured is not None


def tool_for(name: str) -> SignalType:
    """Map a free-form tool name to a signal type; unknown names read as cash sales."""
    return TOOL_ALIASES.get(name.strip().upper(), SignalType.CASH_SALE)


def extract_sections(text: str, headers: tuple[str, ...]) -> dict[str, str]:
    """``{HEADER: body}`` for every header present, in any order, case-insensitive."""
    pattern = re.compile(
        r"^\s*\**\s*(" + "|".join(headers) + r")\s*\**\s*:\s*", re.IGNORECASE | re.MULTILINE
    )
    matches = list(pattern.finditer(text))
    sections: dict[str, str] = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        key = match.group(1).upper()
        sections.setdefault(key, text[match.end():end].strip())
    return sections


def _float(value: Optional[str], default: float) -> float:
    if not value:
        return default
    match = re.search(_PRICE, value)
    return float(match.group(1)) if match else default


def parse_recommendations(
    body: str, remaining_bushels: dict[CommodityType, float]
) -> list[StrategyRecommendation]:
    """``CORN: CASH_SALE - 20% - HIGH - reasoning`` lines.

    Lines for commodities the operation does not grow are dropped.
    """
    recs: list[StrategyRecommendation] = []
    for line in body.splitlines():
        match = _RECOMMENDATION_LINE.search(line.strip().lstrip("-* "))
        if not match:
            continue
        commodity_name, tool, pct, priority, reasoning = match.groups()
        try:
            commodity = CommodityType(commodity_name.upper())
        except ValueError:
            continue
        if commodity not in remaining_bushels:
            continue
        percentage = int(pct)
        recs.append(
            StrategyRecommendation(
                commodity=commodity,
                tool=tool_for(tool),
                percentage=percentage,
                priority=priority.upper(),
                reasoning=reasoning.strip(),
                bushels=round(remaining_bushels[commodity] * percentage / 100),
            )
        )
    return recs


def parse_strategy(
    text: str, remaining_bushels: Optional[dict[CommodityType, float]] = None
) -> ParsedNarrative:
    sections = extract_sections(text, STRATEGY_HEADERS)
    if not sections:
        return ParsedNarrative(raw_text=text)
    return ParsedNarrative(
        raw_text=text,
        structured=StrategyNarrative(
            summary=sections.get("SUMMARY", text[:500].strip()),
            recommendations=parse_recommendations(
                sections.get("RECOMMENDATIONS", ""), remaining_bushels or {}
            ),
            risk_assessment=sections.get("RISK_ASSESSMENT", ""),
            action_items=sections.get("ACTION_ITEMS", ""),
        ),
    )


def parse_outlook(text: str, commodity: CommodityType) -> ParsedNarrative:
    sections = extract_sections(text, OUTLOOK_HEADERS)
    if not sections:
        return ParsedNarrative(raw_text=text)

    support, resistance, fair = DEFAULT_PRICE_LEVELS[CommodityType(commodity)]
    outlook = OutlookNarrative(
        commodity=commodity,
        support=_float(sections.get("SUPPORT"), support),
        resistance=_float(sections.get("RESISTANCE"), resistance),
        fair_value=_float(sections.get("FAIR_VALUE"), fair),
    )
    if sections.get("SHORT_TERM"):
        outlook.short_term = sections["SHORT_TERM"]
    if sections.get("MEDIUM_TERM"):
        outlook.medium_term = sections["MEDIUM_TERM"]
    factors = [f.strip() for f in sections.get("KEY_FACTORS", "").split(";") if f.strip()]
    if factors:
        outlook.key_factors = factors
    trend = re.match(r"\W*(BULLISH|BEARISH|NEUTRAL)", sections.get("TREND", ""), re.IGNORECASE)
    if trend:
        outlook.trend = trend.group(1).upper()
    return ParsedNarrative(raw_text=text, structured=outlook)
