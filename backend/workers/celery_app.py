"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "devolucoes",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.enrichment", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.enrichment.*": {"queue": "enrichment"},
        "workers.scheduler.*": {"queue": "scheduler"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Fans out across active integration accounts via workers.scheduler.dispatch_active_accounts.
    beat_schedule={
        "enrich-incomplete-returns-nightly": {
            "task": "workers.scheduler.dispatch_active_accounts",
            "schedule": crontab(hour=3, minute=0),
            "kwargs": {"task_name": "workers.enrichment.batch_enrich_account"},
            "options": {"queue": "scheduler"},
        },
        "enrich-incomplete-returns-business-hours": {
            "task": "workers.scheduler.dispatch_active_accounts",
            "schedule": crontab(minute=15, hour="8-20/4"),
            "kwargs": {"task_name": "workers.enrichment.batch_enrich_account"},
            "options": {"queue": "scheduler"},
        },
    },
)
