from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", BROKER_URL)

celery_app = Celery(
    "notifyhub_worker",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=[
        "notifyhub.worker.tasks.notifications",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "dispatch-pending-notifications": {
            "task": "notifyhub.worker.tasks.dispatch_pending_notifications",
            "schedule": crontab(minute="*"),
        },
        "recover-stuck-notifications": {
            "task": "notifyhub.worker.tasks.recover_stuck_notifications",
            "schedule": crontab(minute="*/5"),
        },
        "cleanup-old-notifications": {
            "task": "notifyhub.worker.tasks.cleanup_old_notifications",
            "schedule": crontab(minute=15, hour=3),
        },
    },
)
