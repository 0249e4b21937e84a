from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from notifyhub.db.models import (
    DeliveryStatus,
    NotificationQueueEntry,
    NotificationQueueStatus,
)
from notifyhub.notifications.channels import (
    ChannelSender,
    ChannelSendResult,
    build_default_senders,
)
from notifyhub.notifications.config import NotificationConfig
from notifyhub.notifications.time_utils import ensure_utc, utc_now
from notifyhub.services.delivery_tracker_service import DeliveryTrackerService
from notifyhub.services.errors import ApiError
from notifyhub.services.notification_queue_service import NotificationQueueService

logger = logging.getLogger(__name__)

ALL_CHANNELS_FAILED_MESSAGE = "All delivery channels failed"


@dataclass(frozen=True)
class DispatchSummary:
    picked: int
    delivered: int
    partial: int
    retried: int
    failed: int
    claimed_elsewhere: int
    recovered_stuck: int


class NotificationDispatcherService:
    def __init__(
        self,
        config: NotificationConfig,
        senders: dict[str, ChannelSender] | None = None,
        queue_service: NotificationQueueService | None = None,
        tracker: DeliveryTrackerService | None = None,
    ) -> None:
        self.config = config
        self.senders = senders if senders is not None else build_default_senders(config)
        self.queue_service = queue_service or NotificationQueueService(config)
        self.tracker = tracker or DeliveryTrackerService()

    def dispatch_pending(
        self,
        session: Session,
        *,
        now: datetime | None = None,
        batch_size: int | None = None,
    ) -> DispatchSummary:
        now = ensure_utc(now) if now else utc_now()
        recovered_stuck = self.queue_service.recover_stuck_processing(session, now=now)
        items = self.queue_service.get_pending_notifications(
            session,
            limit=batch_size or self.config.worker_batch_size,
            now=now,
            lock=True,
        )

        outcomes = {
            "delivered": 0,
            "partial": 0,
            "retried": 0,
            "failed": 0,
            "claimed_elsewhere": 0,
        }

        for item in items:
            entry = self.queue_service.mark_as_processing(session, item.id, now=now)
            if entry is None:
                outcomes["claimed_elsewhere"] += 1
                continue

            try:
                outcome = self._process(session, entry, now=now)
            except ApiError as exc:
                # The claim went stale and was reclaimed before we reported back.
                if exc.status_code != 409:
                    raise
                logger.warning(
                    "notification_claim_lost",
                    extra={"queue_id": str(entry.id), "code": exc.code},
                )
                outcome = "claimed_elsewhere"
            outcomes[outcome] += 1

        summary = DispatchSummary(
            picked=len(items),
            recovered_stuck=recovered_stuck,
            **outcomes,
        )
        logger.info("notification_dispatch_batch_completed", extra=asdict(summary))
        return summary

    def _process(
        self, session: Session, entry: NotificationQueueEntry, *, now: datetime
    ) -> str:
        try:
            results = self._deliver(session, entry, now=now)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "notification_dispatch_failed",
                extra={"queue_id": str(entry.id)},
            )
            entry = self.queue_service.mark_as_failed(
                session, entry.id, str(exc) or type(exc).__name__, now=now
            )
            return self._failure_outcome(entry)

        successes = sum(1 for result in results.values() if result["success"])
        if results and successes == len(results):
            self.queue_service.mark_as_delivered(session, entry.id, results, now=now)
            return "delivered"
        if successes > 0:
            self.queue_service.mark_as_partial(session, entry.id, results, now=now)
            return "partial"
        entry = self.queue_service.mark_as_failed(
            session, entry.id, ALL_CHANNELS_FAILED_MESSAGE, now=now
        )
        return self._failure_outcome(entry)

    @staticmethod
    def _failure_outcome(entry: NotificationQueueEntry) -> str:
        if entry.status == NotificationQueueStatus.failed.value:
            return "failed"
        return "retried"

    def _deliver(
        self, session: Session, entry: NotificationQueueEntry, *, now: datetime
    ) -> dict[str, dict[str, Any]]:
        results: dict[str, dict[str, Any]] = {}
        for channel in entry.channels:
            sender = self.senders.get(channel)
            attempt = self.tracker.record_delivery_attempt(
                session,
                queue_id=entry.id,
                user_id=entry.user_id,
                channel=channel,
                provider=sender.provider_name if sender else None,
                now=now,
            )

            if sender is None:
                result = ChannelSendResult(
                    success=False,
                    error_code="UNKNOWN_CHANNEL",
                    error_message=f"No sender registered for channel {channel}",
                )
            else:
                try:
                    result = sender.send(entry, attempt)
                except Exception as exc:
                    logger.exception(
                        "notification_channel_send_failed",
                        extra={"queue_id": str(entry.id), "channel": channel},
                    )
                    result = ChannelSendResult(
                        success=False,
                        error_code="DELIVERY_ERROR",
                        error_message=(str(exc) or type(exc).__name__)[:500],
                    )

            self.tracker.update_delivery_status(
                session,
                attempt.id,
                DeliveryStatus.sent if result.success else DeliveryStatus.failed,
                provider_message_id=result.provider_message_id,
                error_code=result.error_code,
                error_message=result.error_message,
                now=now,
            )
            results[channel] = {
                "success": result.success,
                "attempt_id": str(attempt.id),
                "provider_message_id": result.provider_message_id,
                "error_code": result.error_code,
                "error_message": result.error_message,
            }
        return results
