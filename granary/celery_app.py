"""Granary Celery application — broker, beat schedule and configuration.

Initialises the Celery app with Redis as both broker and result backend and
registers one periodic beat entry per marketing job
(``celery -A granary.celery_app worker -B``).

Beat schedule overview:
    - refresh-market-data      : every MARKET_DATA_INTERVAL seconds (300)
    - generate-signals         : every SIGNAL_GENERATION_INTERVAL seconds (1800)
    - enrich-signals           : every AI_ENRICHMENT_INTERVAL seconds (3600)
    - expire-signals           : every EXPIRATION_INTERVAL seconds (3600)
    - daily-digest             : DAILY_DIGEST_HOUR:00 UTC daily
    - update-decision-outcomes : 03:00 UTC daily
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab

from granary.config import settings

logger = logging.getLogger("granary.celery")

# ---------------------------------------------------------------------------
# App initialisation
# ---------------------------------------------------------------------------

app = Celery(
    "granary",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["granary.tasks"],
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,
    task_max_retries=3,
    task_default_retry_delay=60,
    beat_schedule_filename="celerybeat-schedule",
)

# ---------------------------------------------------------------------------
# Beat schedule
# ---------------------------------------------------------------------------

app.conf.beat_schedule = {
    "refresh-market-data": {
        "task": "granary.tasks.refresh_market_data",
        "schedule": float(settings.market_data_interval),
        "options": {"queue": "market"},
    },
    "generate-signals": {
        "task": "granary.tasks.generate_signals",
        "schedule": float(settings.signal_generation_interval),
        "options": {"queue": "signals"},
    },
    "enrich-signals": {
        "task": "granary.tasks.enrich_signals",
        "schedule": float(settings.ai_enrichment_interval),
        "options": {"queue": "ai"},
    },
    "expire-signals": {
        "task": "granary.tasks.expire_signals",
        "schedule": float(settings.expiration_interval),
        "options": {"queue": "signals"},
    },
    "daily-digest": {
        "task": "granary.tasks.daily_digest",
        "schedule": crontab(hour=settings.daily_digest_hour, minute=0),
        "options": {"queue": "default"},
    },
    "update-decision-outcomes": {
        "task": "granary.tasks.update_decision_outcomes",
        "schedule": crontab(hour=3, minute=0),
        "options": {"queue": "default"},
    },
}

logger.info(
    "Celery app configured: broker=%s tasks=%d",
    settings.redis_url,
    len(app.conf.beat_schedule),
)
