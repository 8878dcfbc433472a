"""Enumerations shared by the evaluator, the ORM models and the API."""

from __future__ import annotations

from enum import Enum


class CommodityType(str, Enum):
    CORN = "CORN"
    SOYBEANS = "SOYBEANS"
    WHEAT = "WHEAT"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class SignalStrength(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


class SignalType(str, Enum):
    CASH_SALE = "CASH_SALE"
    BASIS_CONTRACT = "BASIS_CONTRACT"
    HTA_RECOMMENDATION = "HTA_RECOMMENDATION"
    ACCUMULATOR_STRATEGY = "ACCUMULATOR_STRATEGY"
    ACCUMULATOR_INQUIRY = "ACCUMULATOR_INQUIRY"
    PUT_OPTION = "PUT_OPTION"
    CALL_OPTION = "CALL_OPTION"
    COLLAR_STRATEGY = "COLLAR_STRATEGY"
    TRADE_POLICY = "TRADE_POLICY"
    WEATHER_ALERT = "WEATHER_ALERT"
    BREAKING_NEWS = "BREAKING_NEWS"


class SignalStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISMISSED = "DISMISSED"
    TRIGGERED = "TRIGGERED"
    EXPIRED = "EXPIRED"


class TrendDirection(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    NEUTRAL = "NEUTRAL"


class VolatilityRegime(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


class MarketingTool(str, Enum):
    CASH = "CASH"
    BASIS = "BASIS"
    HTA = "HTA"
    ACCUMULATOR = "ACCUMULATOR"
    FUTURES = "FUTURES"
    OPTIONS = "OPTIONS"


class InteractionType(str, Enum):
    VIEWED = "VIEWED"
    ACTED = "ACTED"
    DISMISSED = "DISMISSED"
    IGNORED = "IGNORED"


class PlanType(str, Enum):
    RP = "RP"
    YP = "YP"
    RP_HPE = "RP_HPE"


class AnalysisType(str, Enum):
    SIGNAL_EXPLANATION = "SIGNAL_EXPLANATION"
    STRATEGY_RECOMMENDATION = "STRATEGY_RECOMMENDATION"
    MARKET_OUTLOOK = "MARKET_OUTLOOK"
