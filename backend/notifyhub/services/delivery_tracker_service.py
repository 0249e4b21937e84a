from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from notifyhub.db.models import (
    DeliveryStatus,
    NotificationChannel,
    NotificationDeliveryAttempt,
    NotificationQueueEntry,
    NotificationQueueStatus,
)
from notifyhub.notifications.time_utils import ensure_utc, utc_now
from notifyhub.services.errors import conflict_error, not_found_error, validation_error

logger = logging.getLogger(__name__)

# Position along the success pipeline; failures branch off before READ.
_PIPELINE_RANK = {
    DeliveryStatus.pending.value: 0,
    DeliveryStatus.sent.value: 1,
    DeliveryStatus.delivered.value: 2,
    DeliveryStatus.read.value: 3,
}
_FAILURE_STATUSES = frozenset(
    {DeliveryStatus.failed.value, DeliveryStatus.bounced.value}
)
TERMINAL_DELIVERY_STATUSES = _FAILURE_STATUSES | {DeliveryStatus.read.value}

_TIMESTAMP_FIELDS = {
    DeliveryStatus.sent.value: "sent_at",
    DeliveryStatus.delivered.value: "delivered_at",
    DeliveryStatus.read.value: "read_at",
    DeliveryStatus.failed.value: "failed_at",
    DeliveryStatus.bounced.value: "failed_at",
}


@dataclass(frozen=True)
class DeliveryStats:
    total: int
    by_status: dict[str, int]
    by_channel: dict[str, int]


def is_allowed_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if current in TERMINAL_DELIVERY_STATUSES:
        return False
    if new in _FAILURE_STATUSES:
        return True
    return _PIPELINE_RANK[new] > _PIPELINE_RANK[current]


class DeliveryTrackerService:
    def record_delivery_attempt(
        self,
        session: Session,
        *,
        queue_id: UUID,
        user_id: str,
        channel: NotificationChannel | str,
        provider: str | None = None,
        device_id: str | None = None,
        push_token: str | None = None,
        email_address: str | None = None,
        now: datetime | None = None,
    ) -> NotificationDeliveryAttempt:
        now = ensure_utc(now) if now else utc_now()
        try:
            channel_value = NotificationChannel(channel).value
        except ValueError as exc:
            raise validation_error(
                "DELIVERY_CHANNEL_INVALID", f"Unknown channel: {channel}"
            ) from exc

        entry = session.get(NotificationQueueEntry, queue_id)
        if entry is None:
            raise not_found_error(
                "NOTIFICATION_NOT_FOUND", f"Queue entry not found: {queue_id}"
            )
        if entry.status == NotificationQueueStatus.cancelled.value:
            raise conflict_error(
                "NOTIFICATION_CANCELLED",
                f"Queue entry {queue_id} is cancelled; no delivery may be recorded",
            )

        attempt = NotificationDeliveryAttempt(
            queue_id=entry.id,
            user_id=user_id,
            channel=channel_value,
            status=DeliveryStatus.pending.value,
            provider=provider,
            device_id=device_id,
            push_token=push_token,
            email_address=email_address,
            created_at=now,
            updated_at=now,
        )
        session.add(attempt)
        session.commit()
        session.refresh(attempt)
        return attempt

    def update_delivery_status(
        self,
        session: Session,
        attempt_id: UUID,
        status: DeliveryStatus | str,
        *,
        provider_message_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> NotificationDeliveryAttempt:
        now = ensure_utc(now) if now else utc_now()
        try:
            status_value = DeliveryStatus(status).value
        except ValueError as exc:
            raise validation_error(
                "DELIVERY_STATUS_INVALID", f"Unknown delivery status: {status}"
            ) from exc

        attempt = session.get(NotificationDeliveryAttempt, attempt_id)
        if attempt is None:
            raise not_found_error(
                "DELIVERY_ATTEMPT_NOT_FOUND",
                f"Delivery attempt not found: {attempt_id}",
            )

        if not is_allowed_transition(attempt.status, status_value):
            raise conflict_error(
                "DELIVERY_STATUS_REGRESSION",
                f"Cannot move delivery attempt from {attempt.status} to {status_value}",
            )

        attempt.status = status_value
        if provider_message_id is not None:
            attempt.provider_message_id = provider_message_id
        if error_code is not None:
            attempt.error_code = error_code
        if error_message is not None:
            attempt.error_message = error_message[:500]

        timestamp_field = _TIMESTAMP_FIELDS.get(status_value)
        if timestamp_field and getattr(attempt, timestamp_field) is None:
            setattr(attempt, timestamp_field, now)

        attempt.updated_at = now
        session.add(attempt)
        session.commit()

        if status_value in _FAILURE_STATUSES:
            logger.info(
                "notification_delivery_attempt_failed",
                extra={
                    "attempt_id": str(attempt.id),
                    "queue_id": str(attempt.queue_id),
                    "channel": attempt.channel,
                    "error_code": attempt.error_code,
                },
            )
        return attempt

    def get_attempts_for_entry(
        self, session: Session, queue_id: UUID
    ) -> list[NotificationDeliveryAttempt]:
        stmt = (
            select(NotificationDeliveryAttempt)
            .where(NotificationDeliveryAttempt.queue_id == queue_id)
            .order_by(NotificationDeliveryAttempt.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def get_delivery_stats(self, session: Session, *, since: datetime) -> DeliveryStats:
        rows = session.execute(
            select(
                NotificationDeliveryAttempt.status,
                NotificationDeliveryAttempt.channel,
                func.count(NotificationDeliveryAttempt.id),
            )
            .where(NotificationDeliveryAttempt.created_at >= ensure_utc(since))
            .group_by(
                NotificationDeliveryAttempt.status,
                NotificationDeliveryAttempt.channel,
            )
        ).all()

        by_status: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        total = 0
        for status, channel, count in rows:
            by_status[status] = by_status.get(status, 0) + int(count)
            by_channel[channel] = by_channel.get(channel, 0) + int(count)
            total += int(count)
        return DeliveryStats(total=total, by_status=by_status, by_channel=by_channel)
