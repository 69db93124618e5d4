"""Celery application configuration for commerce_ingestor."""

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from ..utils.config import get_settings


def _resolve_redis_url() -> str:
    """Return the Redis URL configured for the application."""

    settings = get_settings()
    return settings.redis_url or "redis://localhost:6379/0"


celery_app = Celery(
    "commerce_ingestor",
    broker=_resolve_redis_url(),
    backend=_resolve_redis_url(),
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,
    task_acks_late=True,
    beat_schedule={
        "sync-all-connections": {
            "task": "sync_all_connections",
            "schedule": get_settings().sync_schedule_minutes * 60.0,
        },
        "check-connection-health": {
            "task": "check_connection_health",
            "schedule": crontab(minute=15, hour=3),
        },
    },
)

celery_app.autodiscover_tasks(["commerce_ingestor.tasks"], related_name="sync")
