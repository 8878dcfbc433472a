"""Tests for the marketing job service."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from granary.db import Business, utcnow
from granary.errors import ValidationError
from granary.jobs import service as jobs_module
from granary.jobs.service import (
    EXPIRATION,
    SIGNAL_GENERATION,
    JobStatus,
    MarketingJobService,
)
from granary.learning.service import LearningService
from granary.narrative.advisor import NarrativeAdvisor
from granary.signals.orchestrator import SignalOrchestrator


class FlakyOrchestrator:
    """Fails generation for one business and expiry for everyone."""

    def __init__(self, bad_business: uuid.UUID) -> None:
        self.bad_business = bad_business
        self.seen: list[uuid.UUID] = []

    async def generate_signals(self, business_id, user_id=None):
        self.seen.append(business_id)
        if business_id == self.bad_business:
            raise RuntimeError("price feed hiccup")
        return []

    async def expire_old_signals(self, now=None):
        raise RuntimeError("database unavailable")


def build_service(session_factory, fake_market, notifier, orchestrator=None) -> MarketingJobService:
    learning = LearningService(session_factory, fake_market)
    return MarketingJobService(
        session_factory,
        market=fake_market,
        learning=learning,
        orchestrator=orchestrator or SignalOrchestrator(session_factory, fake_market, learning, notifier),
        advisor=NarrativeAdvisor(session_factory, client=None),
        notifier=notifier,
    )


@pytest.fixture
def jobs(session_factory, fake_market, notifier) -> MarketingJobService:
    return build_service(session_factory, fake_market, notifier)


class TestRunJob:
    async def test_unknown_job(self, jobs) -> None:
        with pytest.raises(ValidationError):
            await jobs.run_job("harvest_moon")

    async def test_overlapping_run_is_skipped(self, jobs) -> None:
        jobs._running.add(EXPIRATION)

        run = await jobs.run_job(EXPIRATION)

        assert run.status == JobStatus.SKIPPED
        assert run.reason == "already running"

    async def test_market_closed_skips_unless_forced(self, jobs, business, monkeypatch) -> None:
        monkeypatch.setattr(jobs_module, "is_market_open", lambda now=None: False)

        skipped = await jobs.run_job(SIGNAL_GENERATION)
        forced = await jobs.run_job(SIGNAL_GENERATION, force=True)

        assert skipped.status == JobStatus.SKIPPED
        assert skipped.reason == "market closed"
        assert forced.status == JobStatus.SUCCESS
        assert forced.result["succeeded"] == 1

    async def test_expiration(self, jobs, business, make_signal) -> None:
        await make_signal(business.id, expires_at=utcnow() - timedelta(minutes=5))

        run = await jobs.run_job(EXPIRATION)

        assert run.status == JobStatus.SUCCESS
        assert run.result == {"expired": 1}
        assert jobs.status()["jobs"][EXPIRATION]["last_status"] == "SUCCESS"

    async def test_failure_is_recorded(self, session_factory, fake_market, notifier) -> None:
        jobs = build_service(session_factory, fake_market, notifier, FlakyOrchestrator(uuid.uuid4()))

        run = await jobs.run_job(EXPIRATION)

        assert run.status == JobStatus.FAILED
        assert "database unavailable" in run.error
        assert EXPIRATION not in jobs._running
        assert jobs.status()["jobs"][EXPIRATION]["last_error"] == "database unavailable"


class TestSignalGeneration:
    async def test_one_failure_does_not_stop_the_batch(
        self, session_factory, fake_market, notifier, business
    ) -> None:
        async with session_factory() as session:
            other = Business(name="Bluestem Farms")
            dormant = Business(name="Closed Co", is_active=False)
            session.add_all([other, dormant])
            await session.commit()
        orchestrator = FlakyOrchestrator(other.id)
        jobs = build_service(session_factory, fake_market, notifier, orchestrator)

        batch = await jobs.generate_all_signals()

        assert batch.succeeded == 1
        assert batch.failed == 1
        assert set(orchestrator.seen) == {business.id, other.id}
        failed = next(item for item in batch.items if not item.ok)
        assert failed.key == str(other.id)
        assert failed.error == "price feed hiccup"


class TestTimers:
    @pytest.mark.parametrize(
        "now, hour, expected",
        [
            (datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc), 13, 3600.0),
            (datetime(2026, 6, 10, 12, 30, tzinfo=timezone.utc), 12, 23.5 * 3600),
            (datetime(2026, 6, 10, 13, 0, tzinfo=timezone.utc), 13, 86_400.0),
        ],
    )
    def test_seconds_until_hour(self, now, hour, expected) -> None:
        assert MarketingJobService.seconds_until_hour(hour, now) == pytest.approx(expected)

    async def test_start_and_stop(self, jobs, fake_market) -> None:
        jobs.start()
        assert jobs.status()["running"] is True

        await jobs.stop()

        assert jobs.status()["running"] is False
        assert fake_market.closed
