"""Celery task package exposing the configured app and sync tasks."""

from __future__ import annotations

from .celery_app import celery_app as app
from .sync import (
    check_connection_health_task,
    run_sync_pipeline,
    sync_all_connections_task,
    sync_connection_task,
)

__all__ = [
    "app",
    "check_connection_health_task",
    "run_sync_pipeline",
    "sync_all_connections_task",
    "sync_connection_task",
]
