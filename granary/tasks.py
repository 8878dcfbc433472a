"""Granary Celery Tasks — one task per marketing job.

Each task drives :meth:`MarketingJobService.run_job` through the shared
``_run_async`` helper and returns the job run as a plain dict.  The job
service is created once per worker process.

Task inventory:
    1. refresh_market_data      — futures quotes (market hours only)
    2. generate_signals         — signals for every active business (market hours only)
    3. enrich_signals           — LLM narrative for recent signals
    4. expire_signals           — ACTIVE → EXPIRED sweep
    5. daily_digest             — per-business digest
    6. update_decision_outcomes — post-sale prices and decision quality
    7. run_job                  — manual trigger by job name
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, TypeVar

from celery import Task

from granary.celery_app import app
from granary.jobs import service as jobs
from granary.jobs.service import MarketingJobService

logger = logging.getLogger("granary.tasks")

T = TypeVar("T")

_service: Optional[MarketingJobService] = None

# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Execute an async coroutine from a synchronous Celery task."""
    loop = asyncio.get_event_loop()
    return loop.run_until_complete(coro)


def _job_service() -> MarketingJobService:
    global _service
    if _service is None:
        _service = MarketingJobService()
    return _service


def _run_job(name: str, force: bool = False) -> dict:
    logger.info("Task: %s started", name)
    run = _run_async(_job_service().run_job(name, force=force))
    return run.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@app.task(name="granary.tasks.refresh_market_data", bind=True, max_retries=0, queue="market")
def refresh_market_data(self: Task) -> dict:
    return _run_job(jobs.MARKET_DATA)


@app.task(name="granary.tasks.generate_signals", bind=True, max_retries=0, queue="signals")
def generate_signals(self: Task) -> dict:
    """Returns the job run; ``result["items"]`` holds one entry per business."""
    return _run_job(jobs.SIGNAL_GENERATION)


@app.task(name="granary.tasks.enrich_signals", bind=True, max_retries=0, queue="ai")
def enrich_signals(self: Task) -> dict:
    return _run_job(jobs.AI_ENRICHMENT)


@app.task(name="granary.tasks.expire_signals", bind=True, max_retries=2,
          default_retry_delay=60, queue="signals")
def expire_signals(self: Task) -> dict:
    return _run_job(jobs.EXPIRATION)


@app.task(name="granary.tasks.daily_digest", bind=True, max_retries=0, queue="default")
def daily_digest(self: Task) -> dict:
    return _run_job(jobs.DAILY_DIGEST)


@app.task(name="granary.tasks.update_decision_outcomes", bind=True, max_retries=2,
          default_retry_delay=300, queue="default")
def update_decision_outcomes(self: Task) -> dict:
    return _run_job(jobs.DECISION_OUTCOMES)


@app.task(name="granary.tasks.run_job", bind=True, max_retries=0, queue="default")
def run_job(self: Task, name: str, force: bool = False) -> dict:
    """Manual trigger used by the API and CLI when a worker is available."""
    return _run_job(name, force=force)
