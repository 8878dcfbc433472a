"""Tests for marketing preferences storage and helpers."""

import uuid

import pytest
from pydantic import ValidationError

from granary.db import PREFERENCES_SCHEMA_VERSION, MarketingPreferences
from granary.enums import CommodityType, RiskTolerance, SignalType
from granary.signals.preferences import (
    PreferencesUpdate,
    commodity_enabled,
    get_or_create_preferences,
    in_quiet_hours,
    signal_enabled,
    update_preferences,
)


class TestStorage:
    async def test_created_lazily_with_defaults(self, session_factory) -> None:
        business_id = uuid.uuid4()
        prefs = await get_or_create_preferences(business_id, session_factory)

        assert prefs.business_id == business_id
        assert prefs.schema_version == PREFERENCES_SCHEMA_VERSION
        assert prefs.risk_tolerance == RiskTolerance.MODERATE.value
        assert commodity_enabled(prefs, CommodityType.CORN)
        assert signal_enabled(prefs, SignalType.CASH_SALE)

        again = await get_or_create_preferences(business_id, session_factory)
        assert again.id == prefs.id

    async def test_old_rows_are_migrated(self, session_factory) -> None:
        business_id = uuid.uuid4()
        async with session_factory() as session:
            session.add(MarketingPreferences(business_id=business_id, schema_version=1))
            await session.commit()

        prefs = await get_or_create_preferences(business_id, session_factory)
        assert prefs.schema_version == PREFERENCES_SCHEMA_VERSION

    async def test_partial_update(self, session_factory) -> None:
        business_id = uuid.uuid4()
        prefs = await update_preferences(
            business_id,
            PreferencesUpdate(
                risk_tolerance=RiskTolerance.AGGRESSIVE,
                wheat_enabled=False,
                quiet_hours_start=22,
                quiet_hours_end=6,
            ),
            session_factory,
        )

        assert prefs.risk_tolerance == "AGGRESSIVE"
        assert not commodity_enabled(prefs, CommodityType.WHEAT)
        assert commodity_enabled(prefs, CommodityType.CORN)
        assert prefs.quiet_hours_start == 22

    async def test_null_clears_only_nullable_fields(self, session_factory) -> None:
        business_id = uuid.uuid4()
        await update_preferences(
            business_id,
            PreferencesUpdate(quiet_hours_start=22, quiet_hours_end=6, accumulator_min_price=4.75),
            session_factory,
        )
        prefs = await update_preferences(
            business_id,
            PreferencesUpdate(
                quiet_hours_start=None,
                quiet_hours_end=None,
                accumulator_min_price=None,
                target_profit_margin=None,
            ),
            session_factory,
        )

        assert prefs.quiet_hours_start is None
        assert prefs.accumulator_min_price is None
        assert prefs.target_profit_margin == pytest.approx(0.50)


class TestValidation:
    def test_quiet_hours_must_be_paired(self) -> None:
        with pytest.raises(ValidationError):
            PreferencesUpdate(quiet_hours_start=22)

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PreferencesUpdate(sms_enabled=True)

    def test_hour_range(self) -> None:
        with pytest.raises(ValidationError):
            PreferencesUpdate(quiet_hours_start=24, quiet_hours_end=6)


class TestQuietHours:
    @pytest.mark.parametrize(
        "start, end, hour, expected",
        [
            (22, 6, 23, True),
            (22, 6, 3, True),
            (22, 6, 12, False),
            (9, 17, 9, True),
            (9, 17, 17, False),
            (None, None, 3, False),
        ],
    )
    def test_window(self, start, end, hour, expected) -> None:
        prefs = MarketingPreferences(quiet_hours_start=start, quiet_hours_end=end)
        assert in_quiet_hours(prefs, hour) is expected
