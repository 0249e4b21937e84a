from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from notifyhub.db.base import Base
from notifyhub.db.models import (
    NotificationDeliveryAttempt,
    NotificationQueueEntry,
    NotificationQueueStatus,
)
from notifyhub.db.session import configure_engine, get_engine, get_session_factory
from notifyhub.notifications.config import NotificationConfig
from notifyhub.notifications.time_utils import ensure_utc
from notifyhub.services.delivery_tracker_service import DeliveryTrackerService
from notifyhub.services.errors import ApiError
from notifyhub.services.notification_preference_service import (
    NotificationPreferenceService,
)
from notifyhub.services.notification_queue_service import (
    NO_CHANNELS_MESSAGE,
    STUCK_PROCESSING_MESSAGE,
    NotificationQueueService,
)

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=UTC)
USER_ID = "worker-42"


@pytest.fixture()
def session_factory(tmp_path: Path) -> sessionmaker:
    configure_engine(f"sqlite:///{tmp_path / 'test_queue.db'}")
    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield get_session_factory()

    Base.metadata.drop_all(bind=engine)


def _queue_service(**overrides: Any) -> NotificationQueueService:
    return NotificationQueueService(NotificationConfig(**overrides))


def _enqueue(
    service: NotificationQueueService, session: Session, **overrides: Any
) -> NotificationQueueEntry:
    params: dict[str, Any] = {
        "user_id": USER_ID,
        "notification_type": "message_new",
        "title": "New message",
        "body": "Alex sent you a message about the kitchen job",
        "now": NOW,
    }
    params.update(overrides)
    return service.enqueue(session, **params)


def _set_quiet_hours(session: Session, notification_type: str = "message_new") -> None:
    NotificationPreferenceService().update_preference(
        session,
        USER_ID,
        notification_type,
        {"quiet_hours_start": "22:00", "quiet_hours_end": "08:00", "timezone": "UTC"},
    )


def test_enqueue_materialises_channels_from_preferences(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session, data={"conversation_id": "c-1"})

        assert entry.status == NotificationQueueStatus.pending.value
        assert entry.channels == ["push", "in_app"]
        assert entry.priority == "normal"
        assert entry.attempts == 0
        assert entry.max_attempts == 3
        assert entry.data == {"conversation_id": "c-1"}
        assert ensure_utc(entry.scheduled_for) == NOW


def test_enqueue_without_enabled_channels_is_cancelled(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        NotificationPreferenceService().update_preference(
            session,
            USER_ID,
            "review_received",
            {"push_enabled": False, "in_app_enabled": False},
        )
        entry = _enqueue(service, session, notification_type="review_received")

        assert entry.status == NotificationQueueStatus.cancelled.value
        assert entry.channels == []
        assert entry.error_message == NO_CHANNELS_MESSAGE
        assert service.get_pending_notifications(session, now=NOW) == []

        with pytest.raises(ApiError) as exc_info:
            DeliveryTrackerService().record_delivery_attempt(
                session, queue_id=entry.id, user_id=USER_ID, channel="push"
            )
        assert exc_info.value.status_code == 409


def test_enqueue_with_idempotency_key_returns_existing_entry(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        first = _enqueue(service, session, idempotency_key="msg-991")
        second = _enqueue(
            service, session, idempotency_key="msg-991", title="Different title"
        )

        assert second.id == first.id
        assert second.title == "New message"
        count = session.scalar(select(func.count(NotificationQueueEntry.id)))
        assert count == 1


def test_enqueue_recovers_from_lost_idempotency_race(
    session_factory: sessionmaker, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = _queue_service()

    with session_factory() as session:
        winner = _enqueue(service, session, idempotency_key="msg-race")

        real_lookup = service._find_by_idempotency_key
        calls = {"count": 0}

        def stale_lookup(db_session: Session, key: str):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_lookup(db_session, key)

        monkeypatch.setattr(service, "_find_by_idempotency_key", stale_lookup)
        loser = _enqueue(service, session, idempotency_key="msg-race")

        assert loser.id == winner.id
        assert calls["count"] == 2
        count = session.scalar(select(func.count(NotificationQueueEntry.id)))
        assert count == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"title": "   "},
        {"title": "x" * 201},
        {"body": ""},
        {"body": "x" * 2001},
        {"user_id": ""},
        {"priority": "urgent"},
        {"notification_type": "pizza_arrived"},
    ],
)
def test_enqueue_rejects_invalid_requests(
    session_factory: sessionmaker, overrides: dict[str, Any]
) -> None:
    service = _queue_service()

    with session_factory() as session:
        with pytest.raises(ApiError) as exc_info:
            _enqueue(service, session, **overrides)
        assert exc_info.value.status_code == 422
        count = session.scalar(select(func.count(NotificationQueueEntry.id)))
        assert count == 0


def test_quiet_hours_defer_non_critical_notifications(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()
    late_evening = datetime(2026, 10, 16, 23, 0, tzinfo=UTC)
    early_morning = datetime(2026, 10, 17, 5, 0, tzinfo=UTC)
    quiet_end = datetime(2026, 10, 17, 8, 0, tzinfo=UTC)

    with session_factory() as session:
        _set_quiet_hours(session)

        evening = _enqueue(service, session, now=late_evening)
        morning = _enqueue(service, session, now=early_morning, priority="high")
        critical = _enqueue(service, session, now=late_evening, priority="critical")
        later = _enqueue(
            service,
            session,
            now=late_evening,
            scheduled_for=datetime(2026, 10, 17, 10, 0, tzinfo=UTC),
        )
        daytime = _enqueue(service, session, now=NOW)

        assert ensure_utc(evening.scheduled_for) == quiet_end
        assert ensure_utc(morning.scheduled_for) == quiet_end
        assert ensure_utc(critical.scheduled_for) == late_evening
        assert ensure_utc(later.scheduled_for) == datetime(
            2026, 10, 17, 10, 0, tzinfo=UTC
        )
        assert ensure_utc(daytime.scheduled_for) == NOW


def test_quiet_hours_follow_the_user_timezone(session_factory: sessionmaker) -> None:
    service = _queue_service()
    # 08:00 in Toronto, still on daylight time in October.
    quiet_end = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)

    with session_factory() as session:
        NotificationPreferenceService().update_preference(
            session,
            USER_ID,
            "message_new",
            {
                "quiet_hours_start": "22:00",
                "quiet_hours_end": "08:00",
                "timezone": "America/Toronto",
            },
        )

        evening = _enqueue(
            service, session, now=datetime(2026, 10, 17, 3, 0, tzinfo=UTC)
        )
        early = _enqueue(
            service, session, now=datetime(2026, 10, 17, 9, 0, tzinfo=UTC)
        )
        awake = _enqueue(
            service, session, now=datetime(2026, 10, 17, 13, 0, tzinfo=UTC)
        )
        # 23:00 UTC is 19:00 in Toronto.
        utc_night = _enqueue(
            service, session, now=datetime(2026, 10, 16, 23, 0, tzinfo=UTC)
        )

        assert ensure_utc(evening.scheduled_for) == quiet_end
        assert ensure_utc(early.scheduled_for) == quiet_end
        assert ensure_utc(awake.scheduled_for) == datetime(
            2026, 10, 17, 13, 0, tzinfo=UTC
        )
        assert ensure_utc(utc_night.scheduled_for) == datetime(
            2026, 10, 16, 23, 0, tzinfo=UTC
        )


def test_pending_notifications_order_by_priority_then_schedule(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        low = _enqueue(service, session, priority="low")
        normal = _enqueue(
            service,
            session,
            priority="normal",
            scheduled_for=NOW + timedelta(minutes=1),
        )
        high = _enqueue(
            service,
            session,
            priority="high",
            scheduled_for=NOW + timedelta(minutes=5),
        )
        critical = _enqueue(
            service,
            session,
            priority="critical",
            scheduled_for=NOW + timedelta(minutes=8),
        )
        early_normal = _enqueue(service, session, priority="normal")
        _enqueue(
            service,
            session,
            priority="critical",
            scheduled_for=NOW + timedelta(hours=1),
        )

        pending = service.get_pending_notifications(
            session, now=NOW + timedelta(minutes=10)
        )
        assert [entry.id for entry in pending] == [
            critical.id,
            high.id,
            early_normal.id,
            normal.id,
            low.id,
        ]

        limited = service.get_pending_notifications(
            session, limit=2, now=NOW + timedelta(minutes=10)
        )
        assert [entry.id for entry in limited] == [critical.id, high.id]

        only_normal = service.get_pending_notifications(
            session, priority="normal", now=NOW + timedelta(minutes=10)
        )
        assert {entry.id for entry in only_normal} == {normal.id, early_normal.id}


def test_claim_is_exclusive(session_factory: sessionmaker) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry_id = _enqueue(service, session).id

    with session_factory() as slow_worker:
        stale = service.get_entry(slow_worker, entry_id)
        assert stale.status == NotificationQueueStatus.pending.value

        with session_factory() as fast_worker:
            claimed = service.mark_as_processing(fast_worker, entry_id, now=NOW)
            assert claimed is not None
            assert claimed.status == NotificationQueueStatus.processing.value
            assert claimed.attempts == 1
            assert ensure_utc(claimed.last_attempt_at) == NOW

        assert service.mark_as_processing(slow_worker, entry_id, now=NOW) is None

    with session_factory() as session:
        assert service.get_entry(session, entry_id).attempts == 1


def test_failure_backoff_then_permanent_failure(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session)
        clock = NOW

        for expected_minutes in (3, 9):
            assert service.mark_as_processing(session, entry.id, now=clock) is not None
            entry = service.mark_as_failed(
                session, entry.id, "push gateway timeout", now=clock
            )
            assert entry.status == NotificationQueueStatus.pending.value
            assert ensure_utc(entry.scheduled_for) == clock + timedelta(
                minutes=expected_minutes
            )
            assert entry.error_message == "push gateway timeout"
            clock = ensure_utc(entry.scheduled_for)

        assert service.mark_as_processing(session, entry.id, now=clock) is not None
        entry = service.mark_as_failed(
            session, entry.id, "push gateway timeout", now=clock
        )
        assert entry.status == NotificationQueueStatus.failed.value
        assert entry.attempts == 3
        assert ensure_utc(entry.failed_at) == clock

        assert service.mark_as_processing(session, entry.id, now=clock) is None


def test_backoff_grows_exponentially_with_more_attempts(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service(max_attempts=4)

    with session_factory() as session:
        entry = _enqueue(service, session)
        delays = []
        for _ in range(3):
            service.mark_as_processing(session, entry.id, now=NOW)
            entry = service.mark_as_failed(session, entry.id, "smtp 451", now=NOW)
            delays.append(ensure_utc(entry.scheduled_for) - NOW)

        assert delays == [
            timedelta(minutes=3),
            timedelta(minutes=9),
            timedelta(minutes=27),
        ]
        assert entry.status == NotificationQueueStatus.pending.value


def test_failure_message_is_truncated(session_factory: sessionmaker) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session)
        service.mark_as_processing(session, entry.id, now=NOW)
        entry = service.mark_as_failed(session, entry.id, "x" * 5000, now=NOW)
        assert len(entry.error_message) == 1000


def test_cancel_only_from_pending(session_factory: sessionmaker) -> None:
    service = _queue_service()

    with session_factory() as session:
        pending = _enqueue(service, session)
        cancelled = service.cancel_notification(session, pending.id, now=NOW)
        assert cancelled.status == NotificationQueueStatus.cancelled.value

        with pytest.raises(ApiError) as exc_info:
            service.cancel_notification(session, pending.id, now=NOW)
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "NOTIFICATION_NOT_CANCELLABLE"

        in_flight = _enqueue(service, session)
        service.mark_as_processing(session, in_flight.id, now=NOW)
        with pytest.raises(ApiError) as exc_info:
            service.cancel_notification(session, in_flight.id, now=NOW)
        assert exc_info.value.status_code == 409
        assert (
            service.get_entry(session, in_flight.id).status
            == NotificationQueueStatus.processing.value
        )


def test_late_failure_does_not_reopen_delivered_entry(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session)
        service.mark_as_processing(session, entry.id, now=NOW)
        service.mark_as_delivered(session, entry.id, {}, now=NOW)

        for report in (
            lambda: service.mark_as_failed(session, entry.id, "timeout", now=NOW),
            lambda: service.mark_as_partial(session, entry.id, {}, now=NOW),
            lambda: service.mark_as_delivered(session, entry.id, {}, now=NOW),
        ):
            with pytest.raises(ApiError) as exc_info:
                report()
            assert exc_info.value.status_code == 409
            assert exc_info.value.code == "NOTIFICATION_NOT_PROCESSING"

        entry = service.get_entry(session, entry.id)
        assert entry.status == NotificationQueueStatus.delivered.value
        assert entry.error_message is None
        assert (
            service.get_pending_notifications(session, now=NOW + timedelta(hours=1))
            == []
        )


def test_late_report_after_reclaim_keeps_entry_cancelled(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session, now=NOW - timedelta(hours=1))
        service.mark_as_processing(session, entry.id, now=NOW - timedelta(hours=1))
        assert service.recover_stuck_processing(session, now=NOW) == 1
        service.cancel_notification(session, entry.id, now=NOW)

        with pytest.raises(ApiError) as exc_info:
            service.mark_as_failed(session, entry.id, "smtp 451", now=NOW)
        assert exc_info.value.status_code == 409
        with pytest.raises(ApiError):
            service.mark_as_delivered(session, entry.id, {}, now=NOW)

    with session_factory() as session:
        entry = service.get_entry(session, entry.id)
        assert entry.status == NotificationQueueStatus.cancelled.value
        assert entry.delivered_at is None
        assert entry.error_message == STUCK_PROCESSING_MESSAGE


def test_pending_entry_cannot_be_reported_on(session_factory: sessionmaker) -> None:
    service = _queue_service()

    with session_factory() as session:
        entry = _enqueue(service, session)
        with pytest.raises(ApiError) as exc_info:
            service.mark_as_failed(session, entry.id, "boom", now=NOW)
        assert exc_info.value.code == "NOTIFICATION_NOT_PROCESSING"

        entry = service.get_entry(session, entry.id)
        assert entry.status == NotificationQueueStatus.pending.value
        assert entry.attempts == 0


def test_unknown_queue_entry_is_not_found(session_factory: sessionmaker) -> None:
    service = _queue_service()

    with session_factory() as session:
        for queue_id in (uuid4(), "not-a-uuid"):
            with pytest.raises(ApiError) as exc_info:
                service.cancel_notification(session, queue_id)
            assert exc_info.value.status_code == 404

        with pytest.raises(ApiError) as exc_info:
            service.mark_as_failed(session, uuid4(), "boom")
        assert exc_info.value.code == "NOTIFICATION_NOT_FOUND"


def test_user_history_is_newest_first_and_paginated(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        entries = [
            _enqueue(service, session, now=NOW + timedelta(minutes=index))
            for index in range(3)
        ]
        booking = _enqueue(
            service,
            session,
            notification_type="booking_confirmed",
            now=NOW + timedelta(minutes=5),
        )
        _enqueue(service, session, user_id="someone-else")
        service.cancel_notification(session, entries[0].id)

        page = service.get_user_notification_history(session, USER_ID, limit=2)
        assert page.total == 4
        assert [item.id for item in page.items] == [booking.id, entries[2].id]

        second_page = service.get_user_notification_history(
            session, USER_ID, limit=2, offset=2
        )
        assert [item.id for item in second_page.items] == [
            entries[1].id,
            entries[0].id,
        ]

        cancelled = service.get_user_notification_history(
            session, USER_ID, status="cancelled"
        )
        assert cancelled.total == 1
        assert cancelled.items[0].id == entries[0].id

        bookings = service.get_user_notification_history(
            session, USER_ID, notification_type="booking_confirmed"
        )
        assert [item.id for item in bookings.items] == [booking.id]

        with pytest.raises(ApiError):
            service.get_user_notification_history(session, USER_ID, status="lost")


def test_queue_stats_count_statuses_and_pending_priorities(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        _enqueue(service, session)
        _enqueue(service, session)
        _enqueue(service, session, priority="high")
        cancelled = _enqueue(service, session, priority="low")
        service.cancel_notification(session, cancelled.id)
        delivered = _enqueue(service, session, priority="critical")
        service.mark_as_processing(session, delivered.id, now=NOW)
        service.mark_as_delivered(session, delivered.id, {}, now=NOW)

        stats = service.get_queue_stats(session)
        assert stats.pending == 3
        assert stats.processing == 0
        assert stats.delivered == 1
        assert stats.cancelled == 1
        assert stats.failed == 0
        assert stats.by_priority == {"normal": 2, "high": 1}


def test_cleanup_purges_only_old_settled_entries(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()
    long_ago = NOW - timedelta(days=40)

    with session_factory() as session:
        old = {
            status: _enqueue(service, session, now=long_ago)
            for status in ("delivered", "failed", "cancelled", "partial", "pending")
        }
        fresh = _enqueue(service, session, now=NOW - timedelta(days=1))
        DeliveryTrackerService().record_delivery_attempt(
            session,
            queue_id=old["delivered"].id,
            user_id=USER_ID,
            channel="push",
            now=long_ago,
        )
        for status, entry in old.items():
            entry.status = status
        fresh.status = NotificationQueueStatus.delivered.value
        session.commit()

        deleted = service.cleanup_old_notifications(session, 30, now=NOW)
        assert deleted == 3

    with session_factory() as session:
        remaining = session.scalars(select(NotificationQueueEntry.status)).all()
        assert sorted(remaining) == ["delivered", "partial", "pending"]
        attempts = session.scalar(select(func.count(NotificationDeliveryAttempt.id)))
        assert attempts == 0

        with pytest.raises(ApiError):
            service.cleanup_old_notifications(session, 0, now=NOW)


def test_stuck_processing_entries_are_reclaimed(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service()

    with session_factory() as session:
        stuck = _enqueue(service, session, now=NOW - timedelta(hours=1))
        busy = _enqueue(service, session, now=NOW - timedelta(hours=1))
        service.mark_as_processing(session, stuck.id, now=NOW - timedelta(minutes=30))
        service.mark_as_processing(session, busy.id, now=NOW - timedelta(minutes=5))

        recovered = service.recover_stuck_processing(session, now=NOW)
        assert recovered == 1

        stuck = service.get_entry(session, stuck.id)
        assert stuck.status == NotificationQueueStatus.pending.value
        assert stuck.error_message == STUCK_PROCESSING_MESSAGE
        assert ensure_utc(stuck.scheduled_for) == NOW + timedelta(minutes=3)
        assert (
            service.get_entry(session, busy.id).status
            == NotificationQueueStatus.processing.value
        )


def test_stuck_entry_with_no_attempts_left_fails(
    session_factory: sessionmaker,
) -> None:
    service = _queue_service(max_attempts=1)

    with session_factory() as session:
        entry = _enqueue(service, session, now=NOW - timedelta(hours=1))
        service.mark_as_processing(session, entry.id, now=NOW - timedelta(hours=1))

        assert service.recover_stuck_processing(session, now=NOW) == 1
        entry = service.get_entry(session, entry.id)
        assert entry.status == NotificationQueueStatus.failed.value
        assert ensure_utc(entry.failed_at) == NOW


def test_new_message_end_to_end(session_factory: sessionmaker) -> None:
    service = _queue_service()
    tracker = DeliveryTrackerService()

    with session_factory() as session:
        entry = _enqueue(service, session, priority="high")
        assert entry.channels == ["push", "in_app"]

        claimed = service.mark_as_processing(session, entry.id, now=NOW)
        assert claimed is not None
        results = {}
        for channel in claimed.channels:
            attempt = tracker.record_delivery_attempt(
                session, queue_id=entry.id, user_id=USER_ID, channel=channel, now=NOW
            )
            tracker.update_delivery_status(
                session,
                attempt.id,
                "sent",
                provider_message_id=f"msg-{channel}",
                now=NOW,
            )
            results[channel] = {"success": True, "attempt_id": str(attempt.id)}

        delivered = service.mark_as_delivered(session, entry.id, results, now=NOW)
        assert delivered.status == NotificationQueueStatus.delivered.value
        assert ensure_utc(delivered.delivered_at) == NOW

    with session_factory() as session:
        page = service.get_user_notification_history(session, USER_ID)
        assert page.total == 1
        item = page.items[0]
        assert item.status == "delivered"
        assert set(item.delivery_results) == {"push", "in_app"}
        assert {attempt.channel for attempt in item.deliveries} == {"push", "in_app"}
        assert all(attempt.status == "sent" for attempt in item.deliveries)
