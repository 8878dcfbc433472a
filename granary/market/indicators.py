"""Technical indicators and calendar helpers for grain futures.

Pure functions over lists of closing prices.  Used by
:class:`granary.market.service.MarketDataService` for trend analysis and
by the threshold evaluator through :class:`TrendAnalysis`.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from pydantic import BaseModel

from granary.enums import CommodityType, TrendDirection, VolatilityRegime

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_PRICES_FOR_TREND = 20
RSI_PERIOD = 14
VOLATILITY_PERIOD = 20

LOW_VOLATILITY = 0.015
HIGH_VOLATILITY = 0.03

DEFAULT_AVERAGE_BASIS = -0.15

# Listed grain contract months (month number, code, label).
CONTRACT_MONTHS: tuple[tuple[int, str, str], ...] = (
    (3, "H", "MAR"),
    (5, "K", "MAY"),
    (7, "N", "JUL"),
    (9, "U", "SEP"),
    (12, "Z", "DEC"),
)

# Harvest contract per commodity: (month code, label, harvest start month).
HARVEST_CONTRACTS: dict[CommodityType, tuple[str, str, int]] = {
    CommodityType.CORN: ("Z", "DEC", 10),
    CommodityType.SOYBEANS: ("X", "NOV", 10),
    CommodityType.WHEAT: ("N", "JUL", 7),
}

FUTURES_ROOTS: dict[CommodityType, str] = {
    CommodityType.CORN: "ZC",
    CommodityType.SOYBEANS: "ZS",
    CommodityType.WHEAT: "ZW",
}


class TrendAnalysis(BaseModel):
    trend: TrendDirection = TrendDirection.NEUTRAL
    strength: float = 50.0
    moving_average_20: float = 0.0
    moving_average_50: float = 0.0
    rsi: float = 50.0
    volatility: float = 0.02
    recent_high: float = 0.0
    recent_low: float = 0.0


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


def moving_average(prices: Sequence[float], period: int) -> float:
    """Simple moving average of the last ``period`` prices (all of them if fewer)."""
    if not prices:
        return 0.0
    window = prices[-period:] if len(prices) >= period else prices
    return sum(window) / len(window)


def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Relative strength index from simple average gains and losses.

    Returns 50 with fewer than ``period + 1`` prices and 100 when the window
    has no losses.
    """
    if len(prices) < period + 1:
        return 50.0
    gains = 0.0
    losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def volatility(prices: Sequence[float], period: int = VOLATILITY_PERIOD) -> float:
    """Coefficient of variation (population std / mean) of the last ``period`` prices."""
    window = list(prices[-period:])
    if not window:
        return 0.0
    mean = sum(window) / len(window)
    if mean == 0:
        return 0.0
    variance = sum((p - mean) ** 2 for p in window) / len(window)
    return math.sqrt(variance) / mean


def determine_trend(price: float, ma20: float, ma50: float) -> TrendDirection:
    if price > ma20 > ma50:
        return TrendDirection.UP
    if price < ma20 < ma50:
        return TrendDirection.DOWN
    return TrendDirection.NEUTRAL


def trend_strength(price: float, ma20: float, ma50: float, rsi_value: float) -> float:
    """0–100 strength score; 50 is neutral."""
    strength = 50.0
    if ma20:
        strength += (price - ma20) / ma20 * 100
    if ma50:
        strength += (ma20 - ma50) / ma50 * 50
    if rsi_value > 70:
        strength += 10
    elif rsi_value < 30:
        strength -= 10
    return max(0.0, min(100.0, strength))


def analyze_trend(prices: Sequence[float]) -> TrendAnalysis:
    """Full trend analysis over closing prices ordered oldest first."""
    if len(prices) < MIN_PRICES_FOR_TREND:
        return TrendAnalysis()

    ma20 = moving_average(prices, 20)
    ma50 = moving_average(prices, min(50, len(prices)))
    rsi_value = rsi(prices, RSI_PERIOD)
    current = prices[-1]
    recent = prices[-20:]

    return TrendAnalysis(
        trend=determine_trend(current, ma20, ma50),
        strength=trend_strength(current, ma20, ma50, rsi_value),
        moving_average_20=ma20,
        moving_average_50=ma50,
        rsi=rsi_value,
        volatility=volatility(prices, VOLATILITY_PERIOD),
        recent_high=max(recent),
        recent_low=min(recent),
    )


def volatility_regime(vol: float) -> VolatilityRegime:
    if vol < LOW_VOLATILITY:
        return VolatilityRegime.LOW
    if vol > HIGH_VOLATILITY:
        return VolatilityRegime.HIGH
    return VolatilityRegime.MODERATE


def basis_vs_historical(basis: float) -> str:
    if basis > -0.10:
        return "STRONG"
    if basis > -0.20:
        return "AVERAGE"
    return "WEAK"


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


def is_market_open(now: Optional[datetime] = None) -> bool:
    """CME grain session: Sunday 01:00 UTC through Friday 20:00 UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    weekday = now.weekday()  # Monday == 0
    if weekday == 5:
        return False
    if weekday == 6 and now.hour < 1:
        return False
    if weekday == 4 and now.hour >= 20:
        return False
    return True


def nearest_contract_month(today: Optional[date] = None) -> str:
    """Label of the next listed contract after ``today``'s month, e.g. ``DEC26``."""
    today = today or date.today()
    for month, _code, label in CONTRACT_MONTHS:
        if month > today.month:
            return f"{label}{str(today.year)[-2:]}"
    return f"MAR{str(today.year + 1)[-2:]}"


def harvest_contract_symbol(commodity: CommodityType, harvest_year: int) -> str:
    """Exchange symbol of the harvest contract, e.g. ``ZCZ26`` or ``ZSX26``."""
    code, _label, _month = HARVEST_CONTRACTS[CommodityType(commodity)]
    return f"{FUTURES_ROOTS[CommodityType(commodity)]}{code}{str(harvest_year)[-2:]}"


def harvest_contract_month(commodity: CommodityType, harvest_year: int) -> str:
    _code, label, _month = HARVEST_CONTRACTS[CommodityType(commodity)]
    return f"{label}{str(harvest_year)[-2:]}"


def days_to_harvest(commodity: CommodityType, today: Optional[date] = None) -> int:
    """Days until the first day of the commodity's next harvest month."""
    today = today or date.today()
    _code, _label, month = HARVEST_CONTRACTS[CommodityType(commodity)]
    harvest = date(today.year, month, 1)
    if harvest < today:
        harvest = date(today.year + 1, month, 1)
    return (harvest - today).days
