"""Tests for sectioned LLM response parsing."""

from granary.enums import CommodityType, SignalType
from granary.narrative.parser import (
    OutlookNarrative,
    StrategyNarrative,
    extract_sections,
    parse_outlook,
    parse_strategy,
    tool_for,
)

STRATEGY_TEXT = """SUMMARY: Corn margins are healthy; beans are near break-even.

RECOMMENDATIONS:
- CORN: CASH_SALE - 20% - HIGH - Lock in margin ahead of harvest pressure
- SOYBEANS: HTA - 10% - MEDIUM - Futures strong, basis weak
- WHEAT: CASH - 15% - LOW - Not grown by this operation

RISK_ASSESSMENT: Weather remains the main upside risk.

ACTION_ITEMS: Call the elevator for a basis bid.
"""

OUTLOOK_TEXT = """**SHORT_TERM**: Choppy trade around $4.40.
MEDIUM_TERM: Seasonal harvest lows likely in October.
KEY_FACTORS: Export demand; Brazil safrinha; Dollar strength
SUPPORT: $4.20
RESISTANCE: 4.85
TREND: bearish into harvest
"""


class TestStrategy:
    def test_structured_sections(self) -> None:
        result = parse_strategy(
            STRATEGY_TEXT,
            {CommodityType.CORN: 20_000, CommodityType.SOYBEANS: 8_000},
        )

        assert result.is_structured
        strategy = result.structured
        assert isinstance(strategy, StrategyNarrative)
        assert strategy.summary.startswith("Corn margins are healthy")
        assert strategy.risk_assessment == "Weather remains the main upside risk."
        assert strategy.action_items == "Call the elevator for a basis bid."

    def test_recommendations_map_tools_and_bushels(self) -> None:
        result = parse_strategy(
            STRATEGY_TEXT,
            {CommodityType.CORN: 20_000, CommodityType.SOYBEANS: 8_000},
        )
        recs = result.structured.recommendations

        # WHEAT is dropped: the operation has no wheat bushels
        assert [r.commodity for r in recs] == [CommodityType.CORN, CommodityType.SOYBEANS]
        assert recs[0].tool == SignalType.CASH_SALE
        assert recs[0].bushels == 4000
        assert recs[0].priority == "HIGH"
        assert recs[1].tool == SignalType.HTA_RECOMMENDATION
        assert recs[1].bushels == 800
        assert recs[1].action == "HTA_RECOMMENDATION for 10% of remaining SOYBEANS"

    def test_unstructured_text_is_kept_raw(self) -> None:
        text = "Markets look fine. Sell some corn if you like."
        result = parse_strategy(text)

        assert not result.is_structured
        assert result.raw_text == text


class TestOutlook:
    def test_structured_outlook(self) -> None:
        result = parse_outlook(OUTLOOK_TEXT, CommodityType.CORN)
        outlook = result.structured

        assert isinstance(outlook, OutlookNarrative)
        assert outlook.short_term == "Choppy trade around $4.40."
        assert outlook.key_factors == ["Export demand", "Brazil safrinha", "Dollar strength"]
        assert outlook.support == 4.20
        assert outlook.resistance == 4.85
        assert outlook.trend == "BEARISH"

    def test_missing_levels_use_defaults(self) -> None:
        result = parse_outlook(OUTLOOK_TEXT, CommodityType.CORN)
        assert result.structured.fair_value == 4.50

    def test_no_headers(self) -> None:
        result = parse_outlook("Prices could go either way.", CommodityType.WHEAT)
        assert result.structured is None
        assert result.raw_text == "Prices could go either way."


class TestHelpers:
    def test_unknown_tool_is_cash_sale(self) -> None:
        assert tool_for("forward contract") == SignalType.CASH_SALE
        assert tool_for("put") == SignalType.PUT_OPTION

    def test_sections_any_order(self) -> None:
        sections = extract_sections("b: two\na: one", ("A", "B"))
        assert sections == {"B": "two", "A": "one"}
