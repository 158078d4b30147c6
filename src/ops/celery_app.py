"""Celery entry point for the periodic orchestration heartbeat."""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery

from config import settings
from ops.runtime import build_heartbeat, build_store

LOGGER = logging.getLogger(__name__)

celery_app = Celery("opsloop.heartbeat")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule["ops.heartbeat"] = {
    "task": "ops.heartbeat",
    "schedule": settings.heartbeat.interval_seconds,
}
celery_app.conf.beat_schedule = beat_schedule


@celery_app.task(name="ops.heartbeat", ignore_result=False)
def heartbeat() -> dict[str, Any]:
    """Celery beat job that runs one heartbeat tick."""
    summary = build_heartbeat(build_store()).tick()
    LOGGER.debug("Heartbeat task finished: %s", summary)
    return summary
