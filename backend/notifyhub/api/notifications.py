from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from notifyhub.api.schemas import (
    MarketingUnsubscribeResponse,
    NotificationHistoryItem,
    NotificationHistoryResponse,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdateRequest,
    NotificationQueueEntryResponse,
    QuietHoursRequest,
    QuietHoursResponse,
)
from notifyhub.db.models import NotificationQueueStatus, NotificationType
from notifyhub.db.session import get_db_session
from notifyhub.services.errors import not_found_error
from notifyhub.services.notification_preference_service import (
    NotificationPreferenceService,
)
from notifyhub.services.notification_queue_service import NotificationQueueService

router = APIRouter(tags=["notifications"])


@router.get(
    "/users/{user_id}/notification-preferences",
    response_model=list[NotificationPreferenceResponse],
)
def list_notification_preferences(
    user_id: str,
    session: Session = Depends(get_db_session),
) -> list[NotificationPreferenceResponse]:
    preferences = NotificationPreferenceService().get_user_preferences(session, user_id)
    return [NotificationPreferenceResponse.model_validate(p) for p in preferences]


@router.put(
    "/users/{user_id}/notification-preferences/quiet-hours",
    response_model=QuietHoursResponse,
)
def set_quiet_hours(
    user_id: str,
    payload: QuietHoursRequest,
    session: Session = Depends(get_db_session),
) -> QuietHoursResponse:
    updated = NotificationPreferenceService().set_quiet_hours(
        session,
        user_id,
        payload.quiet_hours_start,
        payload.quiet_hours_end,
        payload.timezone,
    )
    return QuietHoursResponse(preferences_updated=updated)


@router.post(
    "/users/{user_id}/notification-preferences/marketing/unsubscribe",
    response_model=MarketingUnsubscribeResponse,
)
def unsubscribe_from_marketing(
    user_id: str,
    session: Session = Depends(get_db_session),
) -> MarketingUnsubscribeResponse:
    NotificationPreferenceService().unsubscribe_from_marketing(session, user_id)
    return MarketingUnsubscribeResponse(ok=True)


@router.get(
    "/users/{user_id}/notification-preferences/{notification_type}",
    response_model=NotificationPreferenceResponse,
)
def get_notification_preference(
    user_id: str,
    notification_type: NotificationType,
    session: Session = Depends(get_db_session),
) -> NotificationPreferenceResponse:
    preference = NotificationPreferenceService().get_or_create_preference(
        session, user_id, notification_type
    )
    return NotificationPreferenceResponse.model_validate(preference)


@router.patch(
    "/users/{user_id}/notification-preferences/{notification_type}",
    response_model=NotificationPreferenceResponse,
)
def update_notification_preference(
    user_id: str,
    notification_type: NotificationType,
    payload: NotificationPreferenceUpdateRequest,
    session: Session = Depends(get_db_session),
) -> NotificationPreferenceResponse:
    preference = NotificationPreferenceService().update_preference(
        session,
        user_id,
        notification_type,
        payload.model_dump(exclude_unset=True),
    )
    return NotificationPreferenceResponse.model_validate(preference)


@router.get(
    "/users/{user_id}/notifications/history",
    response_model=NotificationHistoryResponse,
)
def get_notification_history(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: NotificationQueueStatus | None = Query(None),
    notification_type: NotificationType | None = Query(None, alias="type"),
    session: Session = Depends(get_db_session),
) -> NotificationHistoryResponse:
    page = NotificationQueueService().get_user_notification_history(
        session,
        user_id,
        limit=limit,
        offset=offset,
        status=status,
        notification_type=notification_type,
    )
    return NotificationHistoryResponse(
        items=[NotificationHistoryItem.model_validate(item) for item in page.items],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.delete(
    "/users/{user_id}/notifications/{queue_id}",
    response_model=NotificationQueueEntryResponse,
)
def cancel_notification(
    user_id: str,
    queue_id: UUID,
    session: Session = Depends(get_db_session),
) -> NotificationQueueEntryResponse:
    service = NotificationQueueService()
    entry = service.get_entry(session, queue_id)
    if entry.user_id != user_id:
        raise not_found_error(
            "NOTIFICATION_NOT_FOUND", f"Queue entry not found: {queue_id}"
        )

    entry = service.cancel_notification(session, queue_id)
    return NotificationQueueEntryResponse.model_validate(entry)
