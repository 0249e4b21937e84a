from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from notifyhub.api.schemas import (
    CleanupResponse,
    DeliveryStatsResponse,
    NotificationEnqueueRequest,
    NotificationQueueEntryResponse,
    QueueStatsResponse,
)
from notifyhub.db.models import NotificationPriority
from notifyhub.db.session import get_db_session
from notifyhub.notifications.time_utils import utc_now
from notifyhub.services.delivery_tracker_service import DeliveryTrackerService
from notifyhub.services.notification_queue_service import NotificationQueueService

router = APIRouter(prefix="/admin/notifications", tags=["notification-queue"])


@router.post(
    "/queue",
    response_model=NotificationQueueEntryResponse,
    status_code=201,
)
def enqueue_notification(
    payload: NotificationEnqueueRequest,
    session: Session = Depends(get_db_session),
) -> NotificationQueueEntryResponse:
    entry = NotificationQueueService().enqueue(
        session,
        user_id=payload.user_id,
        notification_type=payload.notification_type,
        title=payload.title,
        body=payload.body,
        data=payload.data,
        priority=payload.priority,
        scheduled_for=payload.scheduled_for,
        correlation_id=payload.correlation_id,
        idempotency_key=payload.idempotency_key,
    )
    return NotificationQueueEntryResponse.model_validate(entry)


@router.get(
    "/queue/pending",
    response_model=list[NotificationQueueEntryResponse],
)
def get_pending_notifications(
    limit: int = Query(100, ge=1, le=1000),
    priority: NotificationPriority | None = Query(None),
    session: Session = Depends(get_db_session),
) -> list[NotificationQueueEntryResponse]:
    entries = NotificationQueueService().get_pending_notifications(
        session, limit=limit, priority=priority
    )
    return [NotificationQueueEntryResponse.model_validate(e) for e in entries]


@router.get("/queue/stats", response_model=QueueStatsResponse)
def get_queue_stats(
    session: Session = Depends(get_db_session),
) -> QueueStatsResponse:
    stats = NotificationQueueService().get_queue_stats(session)
    return QueueStatsResponse(
        pending=stats.pending,
        processing=stats.processing,
        delivered=stats.delivered,
        failed=stats.failed,
        partial=stats.partial,
        cancelled=stats.cancelled,
        by_priority=stats.by_priority,
    )


@router.post("/queue/cleanup", response_model=CleanupResponse)
def cleanup_old_notifications(
    days_to_keep: int = Query(30, ge=1),
    session: Session = Depends(get_db_session),
) -> CleanupResponse:
    deleted = NotificationQueueService().cleanup_old_notifications(
        session, days_to_keep
    )
    return CleanupResponse(
        deleted=deleted, message=f"Cleaned up {deleted} old notifications"
    )


@router.get("/deliveries/stats", response_model=DeliveryStatsResponse)
def get_delivery_stats(
    since_hours: int = Query(24, ge=1, le=24 * 90),
    session: Session = Depends(get_db_session),
) -> DeliveryStatsResponse:
    since = utc_now() - timedelta(hours=since_hours)
    stats = DeliveryTrackerService().get_delivery_stats(session, since=since)
    return DeliveryStatsResponse(
        total=stats.total,
        by_status=stats.by_status,
        by_channel=stats.by_channel,
        since=since,
    )
