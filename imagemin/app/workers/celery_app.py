"""Celery application configuration."""
from __future__ import annotations

from celery import Celery

from ..core.config import settings

celery_app = Celery(
    "imagemin",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["imagemin.app.workers.tasks"],
)

celery_app.conf.update(
    task_default_queue="default",
    beat_schedule={
        "imagemin-file-scanner": {
            "task": "workers.run_file_scanner",
            "schedule": settings.SCANNER_INTERVAL,
        },
        "imagemin-queue-worker": {
            "task": "workers.run_queue_worker",
            "schedule": settings.WORKER_INTERVAL,
        },
        "imagemin-queue-worker-healthcheck": {
            "task": "workers.queue_worker_healthcheck",
            "schedule": settings.WORKER_HEALTHCHECK_INTERVAL,
        },
    },
)
