from __future__ import annotations

import logging
from dataclasses import asdict

from notifyhub.db.session import session_scope
from notifyhub.notifications.config import load_notification_config
from notifyhub.services.notification_dispatcher_service import (
    NotificationDispatcherService,
)
from notifyhub.services.notification_queue_service import NotificationQueueService
from notifyhub.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="notifyhub.worker.tasks.dispatch_pending_notifications")
def dispatch_pending_notifications(batch_size: int | None = None) -> dict[str, int]:
    config = load_notification_config()
    if not config.worker_enabled:
        logger.warning("dispatch_pending_notifications_disabled")
        return {}

    with session_scope() as session:
        summary = NotificationDispatcherService(config).dispatch_pending(
            session,
            batch_size=batch_size,
        )

    payload = asdict(summary)
    logger.info("dispatch_pending_notifications_summary", extra=payload)
    return payload


@celery_app.task(name="notifyhub.worker.tasks.recover_stuck_notifications")
def recover_stuck_notifications() -> dict[str, int]:
    config = load_notification_config()
    with session_scope() as session:
        recovered = NotificationQueueService(config).recover_stuck_processing(session)

    payload = {"recovered": recovered}
    logger.info("recover_stuck_notifications_summary", extra=payload)
    return payload


@celery_app.task(name="notifyhub.worker.tasks.cleanup_old_notifications")
def cleanup_old_notifications(days_to_keep: int | None = None) -> dict[str, int]:
    config = load_notification_config()
    with session_scope() as session:
        deleted = NotificationQueueService(config).cleanup_old_notifications(
            session, days_to_keep
        )

    payload = {"deleted": deleted}
    logger.info("cleanup_old_notifications_summary", extra=payload)
    return payload
