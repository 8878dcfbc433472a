"""Marketing Job Service — the named periodic jobs behind signal generation.

One :class:`MarketingJobService` is created per process and handed to
whatever needs to trigger jobs (the API, the CLI, Celery tasks).  Each job
is a single tick: :meth:`MarketingJobService.run_job` runs it once, records
the outcome and never raises.  :meth:`start` drives every job on its own
asyncio timer for in-process deployments; Celery beat drives the same
ticks in production.

Job inventory:
    market_data        — refresh futures quotes (market hours only)
    signal_generation  — evaluate signals for every active business (market hours only)
    ai_enrichment      — add narrative to recent signals, one LLM call at a time
    expiration         — flip ACTIVE signals past expiry to EXPIRED
    daily_digest       — per-business digest at the configured UTC hour
    decision_outcomes  — fill post-sale prices and grade decisions
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, computed_field
from sqlalchemy import select

from granary.config import settings
from granary.db import Business, SessionFactory, async_session, utcnow
from granary.errors import ValidationError
from granary.learning.service import LearningService
from granary.market.indicators import is_market_open
from granary.market.service import MarketDataService
from granary.narrative.advisor import NarrativeAdvisor
from granary.notifications import LoggingNotifier, Notifier, daily_digest
from granary.signals.orchestrator import SignalOrchestrator

logger = logging.getLogger("granary.jobs")

MARKET_DATA = "market_data"
SIGNAL_GENERATION = "signal_generation"
AI_ENRICHMENT = "ai_enrichment"
EXPIRATION = "expiration"
DAILY_DIGEST = "daily_digest"
DECISION_OUTCOMES = "decision_outcomes"

DAY_SECONDS = 86_400


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class BatchItem(BaseModel):
    key: str
    ok: bool
    detail: Optional[str] = None
    error: Optional[str] = None


class BatchResult(BaseModel):
    """Per-item outcome of a job that loops over businesses."""

    items: list[BatchItem] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> int:
        return sum(1 for i in self.items if i.ok)

    @computed_field
    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if not i.ok)


class JobRun(BaseModel):
    job: str
    status: JobStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class JobSpec(BaseModel):
    name: str
    period_seconds: int
    market_hours_only: bool = False
    # Fixed UTC hour instead of a rolling period.
    at_hour: Optional[int] = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MarketingJobService:
    """Runs the named marketing jobs once on demand or forever on timers."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        market: Optional[MarketDataService] = None,
        learning: Optional[LearningService] = None,
        orchestrator: Optional[SignalOrchestrator] = None,
        advisor: Optional[NarrativeAdvisor] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.session_factory = session_factory or async_session
        self.market = market or MarketDataService(self.session_factory)
        self.learning = learning or LearningService(self.session_factory, self.market)
        self.notifier = notifier or LoggingNotifier()
        self.orchestrator = orchestrator or SignalOrchestrator(
            self.session_factory, self.market, self.learning, self.notifier
        )
        self.advisor = advisor or NarrativeAdvisor(self.session_factory)

        self.specs: dict[str, JobSpec] = {
            s.name: s
            for s in (
                JobSpec(name=MARKET_DATA, period_seconds=settings.market_data_interval,
                        market_hours_only=True),
                JobSpec(name=SIGNAL_GENERATION, period_seconds=settings.signal_generation_interval,
                        market_hours_only=True),
                JobSpec(name=AI_ENRICHMENT, period_seconds=settings.ai_enrichment_interval),
                JobSpec(name=EXPIRATION, period_seconds=settings.expiration_interval),
                JobSpec(name=DAILY_DIGEST, period_seconds=DAY_SECONDS,
                        at_hour=settings.daily_digest_hour),
                JobSpec(name=DECISION_OUTCOMES, period_seconds=DAY_SECONDS),
            )
        }
        self._handlers: dict[str, Callable[[], Awaitable[Any]]] = {
            MARKET_DATA: self.refresh_market_data,
            SIGNAL_GENERATION: self.generate_all_signals,
            AI_ENRICHMENT: self.enrich_signals,
            EXPIRATION: self.expire_signals,
            DAILY_DIGEST: self.send_daily_digest,
            DECISION_OUTCOMES: self.update_decision_outcomes,
        }
        self._running: set[str] = set()
        self._last_runs: dict[str, JobRun] = {}
        self._timers: list[asyncio.Task] = []
        self._started = False

    # ------------------------------------------------------------------
    # Single tick
    # ------------------------------------------------------------------

    async def run_job(self, name: str, force: bool = False) -> JobRun:
        """Run one job once.

        A run that overlaps a still-running instance of the same job is
        SKIPPED, as is a market-hours job outside trading hours unless
        ``force`` is set.  Failures are recorded on the returned run.
        """
        spec = self.specs.get(name)
        if spec is None:
            raise ValidationError(f"Unknown job: {name}")

        started = utcnow()
        if name in self._running:
            logger.warning("Job %s already running; skipping", name)
            return self._record(JobRun(job=name, status=JobStatus.SKIPPED, started_at=started,
                                       finished_at=started, reason="already running"))
        if spec.market_hours_only and not force and not is_market_open(started):
            logger.debug("Job %s skipped: market closed", name)
            return self._record(JobRun(job=name, status=JobStatus.SKIPPED, started_at=started,
                                       finished_at=started, reason="market closed"))

        self._running.add(name)
        logger.info("Job %s started", name)
        try:
            outcome = await self._handlers[name]()
            result = outcome.model_dump() if isinstance(outcome, BaseModel) else outcome
            run = JobRun(job=name, status=JobStatus.SUCCESS, started_at=started,
                         finished_at=utcnow(), result=result)
        except Exception as exc:
            logger.exception("Job %s failed", name)
            run = JobRun(job=name, status=JobStatus.FAILED, started_at=started,
                         finished_at=utcnow(), error=str(exc))
        finally:
            self._running.discard(name)

        logger.info("Job %s finished: %s", name, run.status.value)
        return self._record(run)

    def _record(self, run: JobRun) -> JobRun:
        self._last_runs[run.job] = run
        return run

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def refresh_market_data(self) -> dict:
        quotes = await self.market.refresh_quotes(force=True)
        return {
            "quotes": {c.value: round(q.close, 4) for c, q in quotes.items()},
            "sources": sorted({q.source for q in quotes.values()}),
        }

    async def generate_all_signals(self) -> BatchResult:
        """Generate signals for every active business; one failure never stops the loop."""
        async with self.session_factory() as session:
            business_ids = (
                await session.execute(
                    select(Business.id).where(Business.is_active.is_(True)).order_by(Business.name)
                )
            ).scalars().all()

        batch = BatchResult()
        for business_id in business_ids:
            try:
                signals = await self.orchestrator.generate_signals(business_id)
                batch.items.append(
                    BatchItem(key=str(business_id), ok=True, detail=f"{len(signals)} signals")
                )
            except Exception as exc:
                logger.error("Signal generation failed for business %s: %s", business_id, exc)
                batch.items.append(BatchItem(key=str(business_id), ok=False, error=str(exc)))

        logger.info(
            "Signal generation: %d businesses, %d failed", len(batch.items), batch.failed
        )
        return batch

    async def enrich_signals(self) -> dict:
        return await self.advisor.enrich_pending(
            settings.ai_enrichment_batch_size, settings.ai_enrichment_delay_seconds
        )

    async def expire_signals(self) -> dict:
        return {"expired": await self.orchestrator.expire_old_signals()}

    async def send_daily_digest(self) -> dict:
        return await daily_digest(self.notifier, self.session_factory)

    async def update_decision_outcomes(self) -> dict:
        return {"updated": await self.learning.update_decision_outcomes()}

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    @staticmethod
    def seconds_until_hour(hour: int, now: Optional[datetime] = None) -> float:
        """Seconds from ``now`` to the next ``hour``:00 UTC (a full day if it is now)."""
        now = now or utcnow()
        target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def _loop(self, spec: JobSpec) -> None:
        while True:
            if spec.at_hour is not None:
                await asyncio.sleep(self.seconds_until_hour(spec.at_hour))
            else:
                await asyncio.sleep(spec.period_seconds)
            await self.run_job(spec.name)

    def start(self) -> None:
        """Start one timer per job on the running event loop."""
        if self._started:
            return
        self._timers = [
            asyncio.create_task(self._loop(spec), name=f"granary-job-{spec.name}")
            for spec in self.specs.values()
        ]
        self._started = True
        logger.info("Job scheduler started with %d jobs", len(self._timers))

    async def stop(self) -> None:
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []
        self._started = False
        await self.market.close()
        logger.info("Job scheduler stopped")

    def status(self) -> dict[str, Any]:
        jobs = {}
        for name, spec in self.specs.items():
            last = self._last_runs.get(name)
            jobs[name] = {
                "period_seconds": spec.period_seconds,
                "at_hour": spec.at_hour,
                "market_hours_only": spec.market_hours_only,
                "running": name in self._running,
                "last_run": last.started_at.isoformat() if last else None,
                "last_status": last.status.value if last else None,
                "last_error": last.error if last else None,
            }
        return {"running": self._started, "market_open": is_market_open(), "jobs": jobs}
