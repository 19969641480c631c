"""Celery app for pipeline runs outside the request cycle. Uses Redis; fresh DB engine per task."""
import logging

from celery import Celery
from .config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

celery_app = Celery(
    "newsletter_intel",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["newsletter_intel.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # The coordinator stops itself before the host limit; this is the hard backstop.
    task_time_limit=int(settings.host_max_duration_s) + 30,
)

if settings.backlog_drain_interval_s > 0 and settings.backlog_drain_user_ids:
    celery_app.conf.beat_schedule = {
        f"drain-backlog-user-{user_id}": {
            "task": "newsletter_intel.tasks.drain_backlog",
            "schedule": float(settings.backlog_drain_interval_s),
            "kwargs": {"user_id": user_id},
        }
        for user_id in settings.backlog_drain_user_ids
    }
