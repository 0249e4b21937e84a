from __future__ import annotations

from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from notifyhub.db.base import Base
from notifyhub.db.models import NotificationPreference, NotificationType
from notifyhub.db.session import configure_engine, get_engine, get_session_factory
from notifyhub.notifications.defaults import INITIAL_PREFERENCE_TYPES
from notifyhub.services.errors import ApiError
from notifyhub.services.notification_preference_service import (
    NotificationPreferenceService,
)

TORONTO_TZ = ZoneInfo("America/Toronto")
USER_ID = "worker-42"


@pytest.fixture()
def session_factory(tmp_path: Path) -> sessionmaker:
    configure_engine(f"sqlite:///{tmp_path / 'test_preferences.db'}")
    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield get_session_factory()

    Base.metadata.drop_all(bind=engine)


def test_missing_preference_is_created_from_type_defaults(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        assert service.get_preference(session, USER_ID, "payment_failed") is None
        preference = service.get_or_create_preference(
            session, USER_ID, NotificationType.payment_failed
        )
        assert preference.push_enabled is True
        assert preference.email_enabled is True
        assert preference.in_app_enabled is True
        assert preference.sms_enabled is False
        assert preference.timezone == "America/Toronto"

        again = service.get_or_create_preference(session, USER_ID, "payment_failed")
        assert again.id == preference.id
        count = session.scalar(select(func.count(NotificationPreference.id)))
        assert count == 1


def test_enabled_channels_follow_channel_order(session_factory: sessionmaker) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        assert service.get_enabled_channels(session, USER_ID, "message_new") == [
            "push",
            "in_app",
        ]
        service.update_preference(
            session,
            USER_ID,
            "message_new",
            {"sms_enabled": True, "email_enabled": True},
        )
        assert service.get_enabled_channels(session, USER_ID, "message_new") == [
            "push",
            "email",
            "in_app",
            "sms",
        ]
        assert service.get_enabled_channels(session, USER_ID, "marketing_promo") == []
        assert service.is_channel_enabled(session, USER_ID, "message_new", "sms")
        assert not service.is_channel_enabled(
            session, USER_ID, "message_new", "carrier_pigeon"
        )


def test_security_channels_cannot_be_disabled(session_factory: sessionmaker) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        preference = service.update_preference(
            session,
            USER_ID,
            "account_security",
            {
                "push_enabled": False,
                "email_enabled": False,
                "in_app_enabled": False,
                "sms_enabled": True,
            },
        )
        assert preference.push_enabled is True
        assert preference.email_enabled is True
        assert preference.in_app_enabled is True
        assert preference.sms_enabled is True

    with session_factory() as session:
        stored = service.get_preference(session, USER_ID, "account_security")
        assert stored is not None
        assert stored.push_enabled is True
        assert service.get_enabled_channels(session, USER_ID, "account_security") == [
            "push",
            "email",
            "in_app",
            "sms",
        ]


@pytest.mark.parametrize(
    "changes",
    [
        {"quiet_hours_start": "25:00"},
        {"quiet_hours_end": "7pm"},
        {"timezone": "Nowhere/Special"},
        {"push_enabled": "yes"},
        {"digest_frequency": "monthly"},
        {"favourite_colour": "blue"},
    ],
)
def test_invalid_updates_are_rejected(
    session_factory: sessionmaker, changes: dict
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        with pytest.raises(ApiError) as exc_info:
            service.update_preference(session, USER_ID, "message_new", changes)
        assert exc_info.value.status_code == 422
        assert exc_info.value.code == "NOTIFICATION_PREFERENCE_INVALID"
        assert service.get_preference(session, USER_ID, "message_new") is None


def test_unknown_notification_type_is_rejected(session_factory: sessionmaker) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        with pytest.raises(ApiError) as exc_info:
            service.get_or_create_preference(session, USER_ID, "pizza_arrived")
        assert exc_info.value.code == "NOTIFICATION_TYPE_INVALID"


def test_overnight_quiet_hours(session_factory: sessionmaker) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        preference = service.update_preference(
            session,
            USER_ID,
            "message_new",
            {
                "quiet_hours_start": "22:00",
                "quiet_hours_end": "08:00",
                "timezone": "America/Toronto",
            },
        )

        assert service.is_in_quiet_hours(
            preference, now=datetime(2026, 10, 16, 23, 30, tzinfo=TORONTO_TZ)
        )
        assert service.is_in_quiet_hours(
            preference, now=datetime(2026, 10, 17, 5, 0, tzinfo=TORONTO_TZ)
        )
        assert not service.is_in_quiet_hours(
            preference, now=datetime(2026, 10, 16, 12, 0, tzinfo=TORONTO_TZ)
        )


def test_quiet_hours_need_both_bounds(session_factory: sessionmaker) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        preference = service.update_preference(
            session, USER_ID, "message_new", {"quiet_hours_start": "22:00"}
        )
        assert not service.is_in_quiet_hours(
            preference, now=datetime(2026, 10, 16, 23, 30, tzinfo=TORONTO_TZ)
        )


def test_set_quiet_hours_updates_every_preference_of_user(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        service.initialize_default_preferences(session, USER_ID)
        service.initialize_default_preferences(session, "someone-else")

        updated = service.set_quiet_hours(
            session, USER_ID, "21:30", "07:15", "Europe/Berlin"
        )
        assert updated == len(INITIAL_PREFERENCE_TYPES)

        for preference in service.get_user_preferences(session, USER_ID):
            assert preference.quiet_hours_start == "21:30"
            assert preference.quiet_hours_end == "07:15"
            assert preference.timezone == "Europe/Berlin"
        for preference in service.get_user_preferences(session, "someone-else"):
            assert preference.quiet_hours_start is None

        cleared = service.set_quiet_hours(session, USER_ID, None, None)
        assert cleared == len(INITIAL_PREFERENCE_TYPES)
        for preference in service.get_user_preferences(session, USER_ID):
            assert preference.quiet_hours_start is None
            assert preference.timezone == "Europe/Berlin"


def test_set_quiet_hours_validates_before_writing(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        service.initialize_default_preferences(session, USER_ID)
        with pytest.raises(ApiError):
            service.set_quiet_hours(session, USER_ID, "22:00", "8 am")
        for preference in service.get_user_preferences(session, USER_ID):
            assert preference.quiet_hours_start is None


def test_initialize_default_preferences_is_repeatable(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        first = service.initialize_default_preferences(session, USER_ID)
        second = service.initialize_default_preferences(session, USER_ID)
        assert [p.id for p in first] == [p.id for p in second]
        assert len(service.get_user_preferences(session, USER_ID)) == len(
            INITIAL_PREFERENCE_TYPES
        )


def test_marketing_unsubscribe_disables_outbound_channels(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        service.update_preference(
            session,
            USER_ID,
            "marketing_news",
            {"push_enabled": True, "email_enabled": True, "in_app_enabled": True},
        )
        service.unsubscribe_from_marketing(session, USER_ID)

        news = service.get_preference(session, USER_ID, "marketing_news")
        promo = service.get_preference(session, USER_ID, "marketing_promo")
        assert news is not None and promo is not None
        assert news.push_enabled is False
        assert news.email_enabled is False
        assert news.sms_enabled is False
        assert news.in_app_enabled is True
        assert promo.email_enabled is False


def test_bulk_update_requires_notification_type(
    session_factory: sessionmaker,
) -> None:
    service = NotificationPreferenceService()

    with session_factory() as session:
        results = service.bulk_update_preferences(
            session,
            USER_ID,
            [
                {"notification_type": "message_new", "push_enabled": False},
                {"notification_type": "review_received", "email_enabled": True},
            ],
        )
        assert [p.notification_type for p in results] == [
            "message_new",
            "review_received",
        ]
        assert results[0].push_enabled is False
        assert results[1].email_enabled is True

        with pytest.raises(ApiError):
            service.bulk_update_preferences(session, USER_ID, [{"push_enabled": True}])
