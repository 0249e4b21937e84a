from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from notifyhub.db.models import (
    PRIORITY_WEIGHTS,
    NotificationDeliveryAttempt,
    NotificationPreference,
    NotificationPriority,
    NotificationQueueEntry,
    NotificationQueueStatus,
    NotificationType,
)
from notifyhub.notifications.config import NotificationConfig, load_notification_config
from notifyhub.notifications.time_utils import (
    ensure_utc,
    next_window_end,
    parse_quiet_hours_time,
    resolve_timezone,
    utc_now,
)
from notifyhub.services.errors import (
    conflict_error,
    not_found_error,
    validation_error,
)
from notifyhub.services.notification_preference_service import (
    NotificationPreferenceService,
    normalize_notification_type,
)

logger = logging.getLogger(__name__)

NO_CHANNELS_MESSAGE = "No channels enabled by user preferences"
STUCK_PROCESSING_MESSAGE = "Worker did not report back before the claim went stale"
MAX_ERROR_MESSAGE_LENGTH = 1000
MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 2000

PURGEABLE_STATUSES = (
    NotificationQueueStatus.delivered.value,
    NotificationQueueStatus.failed.value,
    NotificationQueueStatus.cancelled.value,
)


@dataclass(frozen=True)
class HistoryPage:
    items: list[NotificationQueueEntry]
    total: int


@dataclass(frozen=True)
class QueueStats:
    pending: int
    processing: int
    delivered: int
    failed: int
    partial: int = 0
    cancelled: int = 0
    by_priority: dict[str, int] = field(default_factory=dict)


def normalize_priority(priority: NotificationPriority | str) -> str:
    if isinstance(priority, NotificationPriority):
        return priority.value
    try:
        return NotificationPriority(priority).value
    except ValueError as exc:
        raise validation_error(
            "NOTIFICATION_REQUEST_INVALID", f"Unknown priority: {priority}"
        ) from exc


def _coerce_queue_id(queue_id: UUID | str) -> UUID:
    if isinstance(queue_id, UUID):
        return queue_id
    try:
        return UUID(str(queue_id))
    except ValueError as exc:
        raise not_found_error(
            "NOTIFICATION_NOT_FOUND", f"Queue entry not found: {queue_id}"
        ) from exc


def _priority_weight():
    return case(PRIORITY_WEIGHTS, value=NotificationQueueEntry.priority, else_=0)


class NotificationQueueService:
    def __init__(
        self,
        config: NotificationConfig | None = None,
        preference_service: NotificationPreferenceService | None = None,
    ) -> None:
        self.config = config or load_notification_config()
        self.preference_service = preference_service or NotificationPreferenceService(
            default_timezone=self.config.default_timezone
        )

    def enqueue(
        self,
        session: Session,
        *,
        user_id: str,
        notification_type: NotificationType | str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        priority: NotificationPriority | str = NotificationPriority.normal,
        scheduled_for: datetime | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> NotificationQueueEntry:
        now = ensure_utc(now) if now else utc_now()
        type_value = normalize_notification_type(notification_type)
        priority_value = normalize_priority(priority)
        self._validate_content(user_id=user_id, title=title, body=body)

        if idempotency_key:
            existing = self._find_by_idempotency_key(session, idempotency_key)
            if existing is not None:
                logger.debug(
                    "notification_enqueue_duplicate",
                    extra={
                        "idempotency_key": idempotency_key,
                        "queue_id": str(existing.id),
                    },
                )
                return existing

        channels = self.preference_service.get_enabled_channels(
            session, user_id, type_value
        )

        status = NotificationQueueStatus.pending.value
        error_message: str | None = None
        due_at = ensure_utc(scheduled_for) if scheduled_for else now

        if not channels:
            status = NotificationQueueStatus.cancelled.value
            error_message = NO_CHANNELS_MESSAGE
        elif priority_value != NotificationPriority.critical.value:
            preference = self.preference_service.get_preference(
                session, user_id, type_value
            )
            if preference is not None and self.preference_service.is_in_quiet_hours(
                preference, now=now
            ):
                quiet_end = self._next_delivery_time(preference, now)
                due_at = max(due_at, quiet_end)
                logger.debug(
                    "notification_deferred_for_quiet_hours",
                    extra={"user_id": user_id, "scheduled_for": due_at.isoformat()},
                )

        entry = NotificationQueueEntry(
            user_id=user_id,
            notification_type=type_value,
            title=title,
            body=body,
            data=dict(data or {}),
            channels=channels,
            priority=priority_value,
            status=status,
            scheduled_for=due_at,
            attempts=0,
            max_attempts=self.config.max_attempts,
            error_message=error_message,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if idempotency_key:
                # Lost the insert race; the unique key points at the winner.
                existing = self._find_by_idempotency_key(session, idempotency_key)
                if existing is not None:
                    logger.debug(
                        "notification_enqueue_duplicate",
                        extra={
                            "idempotency_key": idempotency_key,
                            "queue_id": str(existing.id),
                        },
                    )
                    return existing
            raise

        session.refresh(entry)
        logger.info(
            "notification_enqueued",
            extra={
                "queue_id": str(entry.id),
                "user_id": user_id,
                "notification_type": type_value,
                "priority": priority_value,
                "status": entry.status,
                "channels": list(channels),
                "correlation_id": correlation_id,
            },
        )
        return entry

    def get_entry(
        self, session: Session, queue_id: UUID | str
    ) -> NotificationQueueEntry:
        entry = session.get(NotificationQueueEntry, _coerce_queue_id(queue_id))
        if entry is None:
            raise not_found_error(
                "NOTIFICATION_NOT_FOUND", f"Queue entry not found: {queue_id}"
            )
        return entry

    def get_pending_notifications(
        self,
        session: Session,
        limit: int = 100,
        priority: NotificationPriority | str | None = None,
        *,
        now: datetime | None = None,
        lock: bool = False,
    ) -> list[NotificationQueueEntry]:
        if limit <= 0:
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID", "limit must be positive"
            )
        now = ensure_utc(now) if now else utc_now()

        stmt = select(NotificationQueueEntry).where(
            NotificationQueueEntry.status == NotificationQueueStatus.pending.value,
            NotificationQueueEntry.scheduled_for <= now,
        )
        if priority is not None:
            stmt = stmt.where(
                NotificationQueueEntry.priority == normalize_priority(priority)
            )
        stmt = stmt.order_by(
            _priority_weight().desc(),
            NotificationQueueEntry.scheduled_for.asc(),
            NotificationQueueEntry.created_at.asc(),
        ).limit(limit)
        if lock:
            stmt = stmt.with_for_update(skip_locked=True)
        return list(session.scalars(stmt).all())

    def mark_as_processing(
        self,
        session: Session,
        queue_id: UUID | str,
        *,
        now: datetime | None = None,
    ) -> NotificationQueueEntry | None:
        """Claim a pending entry for delivery.

        The claim is a single conditional UPDATE, so two workers racing for
        the same entry cannot both win. Returns ``None`` for the loser, or
        when the entry is no longer pending.
        """
        now = ensure_utc(now) if now else utc_now()
        entry = self.get_entry(session, queue_id)

        result = session.execute(
            update(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.id == entry.id,
                NotificationQueueEntry.status
                == NotificationQueueStatus.pending.value,
                NotificationQueueEntry.attempts < NotificationQueueEntry.max_attempts,
            )
            .values(
                status=NotificationQueueStatus.processing.value,
                attempts=NotificationQueueEntry.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()

        if result.rowcount != 1:
            logger.info(
                "notification_claim_skipped",
                extra={"queue_id": str(entry.id)},
            )
            return None

        session.refresh(entry)
        return entry

    def mark_as_delivered(
        self,
        session: Session,
        queue_id: UUID | str,
        delivery_results: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> NotificationQueueEntry:
        now = ensure_utc(now) if now else utc_now()
        entry = self._current_entry(session, queue_id)
        self._finish_processing_or_conflict(
            session,
            entry,
            {
                "status": NotificationQueueStatus.delivered.value,
                "delivered_at": now,
                "delivery_results": delivery_results,
                "updated_at": now,
            },
        )
        return entry

    def mark_as_partial(
        self,
        session: Session,
        queue_id: UUID | str,
        delivery_results: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> NotificationQueueEntry:
        now = ensure_utc(now) if now else utc_now()
        entry = self._current_entry(session, queue_id)
        self._finish_processing_or_conflict(
            session,
            entry,
            {
                "status": NotificationQueueStatus.partial.value,
                "delivered_at": now,
                "delivery_results": delivery_results,
                "updated_at": now,
            },
        )
        logger.warning(
            "notification_partially_delivered",
            extra={"queue_id": str(entry.id), "user_id": entry.user_id},
        )
        return entry

    def mark_as_failed(
        self,
        session: Session,
        queue_id: UUID | str,
        error_message: str,
        *,
        now: datetime | None = None,
    ) -> NotificationQueueEntry:
        now = ensure_utc(now) if now else utc_now()
        entry = self._current_entry(session, queue_id)
        self._finish_processing_or_conflict(
            session, entry, self._failure_values(entry, error_message, now)
        )
        self._log_failure(entry)
        return entry

    def cancel_notification(
        self,
        session: Session,
        queue_id: UUID | str,
        *,
        now: datetime | None = None,
    ) -> NotificationQueueEntry:
        now = ensure_utc(now) if now else utc_now()
        entry = self.get_entry(session, queue_id)

        result = session.execute(
            update(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.id == entry.id,
                NotificationQueueEntry.status
                == NotificationQueueStatus.pending.value,
            )
            .values(
                status=NotificationQueueStatus.cancelled.value,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(entry)

        if result.rowcount != 1:
            raise conflict_error(
                "NOTIFICATION_NOT_CANCELLABLE",
                f"Only pending notifications can be cancelled (status: {entry.status})",
            )

        logger.info("notification_cancelled", extra={"queue_id": str(entry.id)})
        return entry

    def get_user_notification_history(
        self,
        session: Session,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        status: NotificationQueueStatus | str | None = None,
        notification_type: NotificationType | str | None = None,
    ) -> HistoryPage:
        if limit <= 0 or offset < 0:
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID",
                "limit must be positive and offset must not be negative",
            )

        filters = [NotificationQueueEntry.user_id == user_id]
        if status is not None:
            try:
                status_value = NotificationQueueStatus(status).value
            except ValueError as exc:
                raise validation_error(
                    "NOTIFICATION_REQUEST_INVALID", f"Unknown status: {status}"
                ) from exc
            filters.append(NotificationQueueEntry.status == status_value)
        if notification_type is not None:
            filters.append(
                NotificationQueueEntry.notification_type
                == normalize_notification_type(notification_type)
            )

        items = list(
            session.scalars(
                select(NotificationQueueEntry)
                .where(*filters)
                .options(selectinload(NotificationQueueEntry.deliveries))
                .order_by(NotificationQueueEntry.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        )
        total = session.scalar(
            select(func.count(NotificationQueueEntry.id)).where(*filters)
        )
        return HistoryPage(items=items, total=int(total or 0))

    def get_queue_stats(self, session: Session) -> QueueStats:
        by_status = {
            status: int(count)
            for status, count in session.execute(
                select(
                    NotificationQueueEntry.status,
                    func.count(NotificationQueueEntry.id),
                ).group_by(NotificationQueueEntry.status)
            ).all()
        }
        by_priority = {
            priority: int(count)
            for priority, count in session.execute(
                select(
                    NotificationQueueEntry.priority,
                    func.count(NotificationQueueEntry.id),
                )
                .where(
                    NotificationQueueEntry.status
                    == NotificationQueueStatus.pending.value
                )
                .group_by(NotificationQueueEntry.priority)
            ).all()
        }
        return QueueStats(
            pending=by_status.get(NotificationQueueStatus.pending.value, 0),
            processing=by_status.get(NotificationQueueStatus.processing.value, 0),
            delivered=by_status.get(NotificationQueueStatus.delivered.value, 0),
            failed=by_status.get(NotificationQueueStatus.failed.value, 0),
            partial=by_status.get(NotificationQueueStatus.partial.value, 0),
            cancelled=by_status.get(NotificationQueueStatus.cancelled.value, 0),
            by_priority=by_priority,
        )

    def cleanup_old_notifications(
        self,
        session: Session,
        days_to_keep: int | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        # PARTIAL is left alone so operators can reconcile it.
        days = (
            self.config.cleanup_days_to_keep if days_to_keep is None else days_to_keep
        )
        if days <= 0:
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID", "days_to_keep must be positive"
            )
        now = ensure_utc(now) if now else utc_now()
        cutoff = now - timedelta(days=days)

        ids = list(
            session.scalars(
                select(NotificationQueueEntry.id).where(
                    NotificationQueueEntry.status.in_(PURGEABLE_STATUSES),
                    NotificationQueueEntry.created_at < cutoff,
                )
            ).all()
        )
        if ids:
            session.execute(
                delete(NotificationDeliveryAttempt)
                .where(NotificationDeliveryAttempt.queue_id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(NotificationQueueEntry)
                .where(NotificationQueueEntry.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            session.commit()

        logger.info(
            "notification_cleanup_completed",
            extra={"deleted": len(ids), "cutoff": cutoff.isoformat()},
        )
        return len(ids)

    def recover_stuck_processing(
        self,
        session: Session,
        *,
        now: datetime | None = None,
        stale_after_minutes: int | None = None,
    ) -> int:
        now = ensure_utc(now) if now else utc_now()
        minutes = stale_after_minutes or self.config.stuck_after_minutes
        threshold = now - timedelta(minutes=minutes)

        stmt = (
            select(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.status
                == NotificationQueueStatus.processing.value,
                NotificationQueueEntry.last_attempt_at < threshold,
            )
            .execution_options(populate_existing=True)
        )
        recovered = 0
        for entry in session.scalars(stmt).all():
            # The worker may report back between the select and this update.
            if self._finish_processing(
                session,
                entry,
                self._failure_values(entry, STUCK_PROCESSING_MESSAGE, now),
                NotificationQueueEntry.last_attempt_at < threshold,
            ):
                self._log_failure(entry)
                recovered += 1

        if recovered:
            logger.warning(
                "notification_stuck_processing_recovered",
                extra={"recovered": recovered},
            )
        return recovered

    def _current_entry(
        self, session: Session, queue_id: UUID | str
    ) -> NotificationQueueEntry:
        entry = self.get_entry(session, queue_id)
        session.refresh(entry)
        return entry

    def _finish_processing(
        self,
        session: Session,
        entry: NotificationQueueEntry,
        values: dict[str, Any],
        *conditions: Any,
    ) -> bool:
        """Move a claimed entry out of PROCESSING.

        Conditional on the entry still being PROCESSING with the attempt
        count the caller saw, so a late or duplicate report cannot reopen a
        settled entry or overwrite a newer claim.
        """
        result = session.execute(
            update(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.id == entry.id,
                NotificationQueueEntry.status
                == NotificationQueueStatus.processing.value,
                NotificationQueueEntry.attempts == entry.attempts,
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(entry)
        return result.rowcount == 1

    def _finish_processing_or_conflict(
        self,
        session: Session,
        entry: NotificationQueueEntry,
        values: dict[str, Any],
    ) -> None:
        if self._finish_processing(session, entry, values):
            return
        logger.warning(
            "notification_late_report_rejected",
            extra={
                "queue_id": str(entry.id),
                "status": entry.status,
                "requested_status": values["status"],
            },
        )
        raise conflict_error(
            "NOTIFICATION_NOT_PROCESSING",
            f"Queue entry {entry.id} is not being processed (status: {entry.status})",
        )

    def _failure_values(
        self, entry: NotificationQueueEntry, error_message: str, now: datetime
    ) -> dict[str, Any]:
        values: dict[str, Any] = {
            "error_message": (error_message or "")[:MAX_ERROR_MESSAGE_LENGTH],
            "updated_at": now,
        }
        if entry.attempts < entry.max_attempts:
            backoff_minutes = self.config.backoff_base_minutes**entry.attempts
            values["status"] = NotificationQueueStatus.pending.value
            values["scheduled_for"] = now + timedelta(minutes=backoff_minutes)
        else:
            values["status"] = NotificationQueueStatus.failed.value
            values["failed_at"] = now
        return values

    @staticmethod
    def _log_failure(entry: NotificationQueueEntry) -> None:
        if entry.status == NotificationQueueStatus.pending.value:
            logger.info(
                "notification_retry_scheduled",
                extra={
                    "queue_id": str(entry.id),
                    "attempts": entry.attempts,
                    "max_attempts": entry.max_attempts,
                    "scheduled_for": ensure_utc(entry.scheduled_for).isoformat(),
                },
            )
            return

        logger.warning(
            "notification_failed_permanently",
            extra={
                "queue_id": str(entry.id),
                "attempts": entry.attempts,
                "error_message": entry.error_message,
            },
        )

    def _next_delivery_time(
        self, preference: NotificationPreference, now: datetime
    ) -> datetime:
        if not preference.quiet_hours_end:
            return now
        tz = resolve_timezone(preference.timezone, self.config.default_timezone)
        end = parse_quiet_hours_time(preference.quiet_hours_end)
        return next_window_end(now, end, tz)

    def _find_by_idempotency_key(
        self, session: Session, idempotency_key: str
    ) -> NotificationQueueEntry | None:
        return session.scalar(
            select(NotificationQueueEntry).where(
                NotificationQueueEntry.idempotency_key == idempotency_key
            )
        )

    @staticmethod
    def _validate_content(*, user_id: str, title: str, body: str) -> None:
        if not user_id or not user_id.strip():
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID", "user_id must not be empty"
            )
        if not title or not title.strip() or len(title) > MAX_TITLE_LENGTH:
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID",
                f"title must be 1-{MAX_TITLE_LENGTH} characters",
            )
        if not body or not body.strip() or len(body) > MAX_BODY_LENGTH:
            raise validation_error(
                "NOTIFICATION_REQUEST_INVALID",
                f"body must be 1-{MAX_BODY_LENGTH} characters",
            )
