"""Tests for technical indicators and the trading calendar."""

from datetime import date, datetime, timezone

import pytest

from granary.enums import CommodityType, TrendDirection, VolatilityRegime
from granary.market.indicators import (
    analyze_trend,
    days_to_harvest,
    harvest_contract_symbol,
    is_market_open,
    moving_average,
    nearest_contract_month,
    rsi,
    volatility_regime,
)


class TestIndicators:
    def test_moving_average(self) -> None:
        assert moving_average([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx(3.5)

    def test_rsi_uptrend_is_overbought(self) -> None:
        prices = [4.00 + i * 0.05 for i in range(30)]
        assert rsi(prices) > 70

    def test_short_history_is_neutral(self) -> None:
        result = analyze_trend([4.50] * 5)
        assert result.trend == TrendDirection.NEUTRAL
        assert result.rsi == 50.0

    def test_volatility_regimes(self) -> None:
        assert volatility_regime(0.01) == VolatilityRegime.LOW
        assert volatility_regime(0.02) == VolatilityRegime.MODERATE
        assert volatility_regime(0.05) == VolatilityRegime.HIGH


class TestMarketHours:
    """Tests for the CME grain session window."""

    def test_midweek_is_open(self) -> None:
        assert is_market_open(datetime(2026, 6, 10, 15, 0, tzinfo=timezone.utc))

    def test_saturday_is_closed(self) -> None:
        assert not is_market_open(datetime(2026, 6, 13, 15, 0, tzinfo=timezone.utc))

    def test_friday_evening_is_closed(self) -> None:
        assert not is_market_open(datetime(2026, 6, 12, 20, 30, tzinfo=timezone.utc))

    def test_sunday_reopens(self) -> None:
        assert not is_market_open(datetime(2026, 6, 14, 0, 30, tzinfo=timezone.utc))
        assert is_market_open(datetime(2026, 6, 14, 1, 30, tzinfo=timezone.utc))


class TestCalendar:
    def test_days_to_harvest_rolls_forward(self) -> None:
        assert days_to_harvest(CommodityType.CORN, date(2026, 9, 1)) == 30
        assert days_to_harvest(CommodityType.WHEAT, date(2026, 8, 1)) == 334

    def test_contract_helpers(self) -> None:
        assert harvest_contract_symbol(CommodityType.SOYBEANS, 2026) == "ZSX26"
        assert nearest_contract_month(date(2026, 12, 15)) == "MAR27"
        assert nearest_contract_month(date(2026, 4, 2)) == "MAY26"
