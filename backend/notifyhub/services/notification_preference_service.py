from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from notifyhub.db.models import (
    CHANNEL_ORDER,
    DEFAULT_TIMEZONE,
    DigestFrequency,
    NotificationChannel,
    NotificationPreference,
    NotificationType,
)
from notifyhub.notifications.defaults import (
    INITIAL_PREFERENCE_TYPES,
    MARKETING_TYPES,
    apply_security_pin,
    defaults_for_type,
)
from notifyhub.notifications.time_utils import (
    ensure_utc,
    is_known_timezone,
    is_valid_quiet_hours_time,
    is_within_window,
    parse_quiet_hours_time,
    resolve_timezone,
)
from notifyhub.services.errors import validation_error

logger = logging.getLogger(__name__)

BOOLEAN_FIELDS = frozenset(
    {
        "push_enabled",
        "email_enabled",
        "in_app_enabled",
        "sms_enabled",
        "digest_enabled",
    }
)
UPDATABLE_FIELDS = BOOLEAN_FIELDS | {
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "digest_frequency",
}

_CHANNEL_FLAGS = {
    NotificationChannel.push.value: "push_enabled",
    NotificationChannel.email.value: "email_enabled",
    NotificationChannel.in_app.value: "in_app_enabled",
    NotificationChannel.sms.value: "sms_enabled",
}


def normalize_notification_type(notification_type: NotificationType | str) -> str:
    if isinstance(notification_type, NotificationType):
        return notification_type.value
    try:
        return NotificationType(notification_type).value
    except ValueError as exc:
        raise validation_error(
            "NOTIFICATION_TYPE_INVALID",
            f"Unknown notification type: {notification_type}",
        ) from exc


def _validate_quiet_hours(start: str | None, end: str | None) -> None:
    if start is not None and (
        not isinstance(start, str) or not is_valid_quiet_hours_time(start)
    ):
        raise validation_error(
            "NOTIFICATION_PREFERENCE_INVALID",
            "Invalid quiet_hours_start format. Use HH:MM (24h)",
        )
    if end is not None and (
        not isinstance(end, str) or not is_valid_quiet_hours_time(end)
    ):
        raise validation_error(
            "NOTIFICATION_PREFERENCE_INVALID",
            "Invalid quiet_hours_end format. Use HH:MM (24h)",
        )


def _validate_timezone(timezone: Any) -> None:
    if not isinstance(timezone, str) or not is_known_timezone(timezone):
        raise validation_error(
            "NOTIFICATION_PREFERENCE_INVALID",
            f"Unknown timezone: {timezone}",
        )


class NotificationPreferenceService:
    def __init__(self, default_timezone: str = DEFAULT_TIMEZONE) -> None:
        self.default_timezone = default_timezone

    def get_user_preferences(
        self, session: Session, user_id: str
    ) -> list[NotificationPreference]:
        stmt = (
            select(NotificationPreference)
            .where(NotificationPreference.user_id == user_id)
            .order_by(NotificationPreference.notification_type.asc())
        )
        return list(session.scalars(stmt).all())

    def get_preference(
        self,
        session: Session,
        user_id: str,
        notification_type: NotificationType | str,
    ) -> NotificationPreference | None:
        type_value = normalize_notification_type(notification_type)
        return session.scalar(
            select(NotificationPreference).where(
                NotificationPreference.user_id == user_id,
                NotificationPreference.notification_type == type_value,
            )
        )

    def get_or_create_preference(
        self,
        session: Session,
        user_id: str,
        notification_type: NotificationType | str,
    ) -> NotificationPreference:
        type_value = normalize_notification_type(notification_type)
        existing = self.get_preference(session, user_id, type_value)
        if existing is not None:
            return existing

        now = datetime.now(UTC)
        preference = NotificationPreference(
            user_id=user_id,
            notification_type=type_value,
            timezone=self.default_timezone,
            created_at=now,
            updated_at=now,
            **defaults_for_type(type_value),
        )
        session.add(preference)
        try:
            session.commit()
        except IntegrityError:
            # Another request created the row first; theirs is authoritative.
            session.rollback()
            existing = self.get_preference(session, user_id, type_value)
            if existing is None:
                raise
            return existing

        session.refresh(preference)
        return preference

    def update_preference(
        self,
        session: Session,
        user_id: str,
        notification_type: NotificationType | str,
        changes: Mapping[str, Any],
    ) -> NotificationPreference:
        type_value = normalize_notification_type(notification_type)
        values = self._validated_changes(changes)
        values = apply_security_pin(type_value, values)

        preference = self.get_or_create_preference(session, user_id, type_value)
        for field, value in values.items():
            setattr(preference, field, value)
        preference.updated_at = datetime.now(UTC)
        session.add(preference)
        session.commit()
        session.refresh(preference)
        return preference

    def bulk_update_preferences(
        self,
        session: Session,
        user_id: str,
        updates: Iterable[Mapping[str, Any]],
    ) -> list[NotificationPreference]:
        results: list[NotificationPreference] = []
        for item in updates:
            changes = dict(item)
            notification_type = changes.pop("notification_type", None)
            if notification_type is None:
                raise validation_error(
                    "NOTIFICATION_PREFERENCE_INVALID",
                    "notification_type is required for each bulk update",
                )
            results.append(
                self.update_preference(session, user_id, notification_type, changes)
            )
        return results

    def set_quiet_hours(
        self,
        session: Session,
        user_id: str,
        quiet_hours_start: str | None,
        quiet_hours_end: str | None,
        timezone: str | None = None,
    ) -> int:
        _validate_quiet_hours(quiet_hours_start, quiet_hours_end)
        values: dict[str, Any] = {
            "quiet_hours_start": quiet_hours_start,
            "quiet_hours_end": quiet_hours_end,
            "updated_at": datetime.now(UTC),
        }
        if timezone:
            _validate_timezone(timezone)
            values["timezone"] = timezone

        result = session.execute(
            update(NotificationPreference)
            .where(NotificationPreference.user_id == user_id)
            .values(**values)
        )
        session.commit()
        updated = int(result.rowcount or 0)

        logger.info(
            "notification_quiet_hours_set",
            extra={
                "user_id": user_id,
                "quiet_hours_start": quiet_hours_start,
                "quiet_hours_end": quiet_hours_end,
                "preferences_updated": updated,
            },
        )
        return updated

    def is_in_quiet_hours(
        self, preference: NotificationPreference, now: datetime | None = None
    ) -> bool:
        if not preference.quiet_hours_start or not preference.quiet_hours_end:
            return False

        tz = resolve_timezone(preference.timezone, self.default_timezone)
        current = ensure_utc(now or datetime.now(UTC)).astimezone(tz)
        local = current.time().replace(second=0, microsecond=0)
        return is_within_window(
            local,
            parse_quiet_hours_time(preference.quiet_hours_start),
            parse_quiet_hours_time(preference.quiet_hours_end),
        )

    def get_enabled_channels(
        self,
        session: Session,
        user_id: str,
        notification_type: NotificationType | str,
    ) -> list[str]:
        preference = self.get_or_create_preference(session, user_id, notification_type)
        return [
            channel.value
            for channel in CHANNEL_ORDER
            if getattr(preference, _CHANNEL_FLAGS[channel.value])
        ]

    def is_channel_enabled(
        self,
        session: Session,
        user_id: str,
        notification_type: NotificationType | str,
        channel: NotificationChannel | str,
    ) -> bool:
        channel_value = (
            channel.value if isinstance(channel, NotificationChannel) else channel
        )
        flag = _CHANNEL_FLAGS.get(channel_value)
        if flag is None:
            return False
        preference = self.get_or_create_preference(session, user_id, notification_type)
        return bool(getattr(preference, flag))

    def unsubscribe_from_marketing(self, session: Session, user_id: str) -> None:
        for type_value in sorted(MARKETING_TYPES):
            self.update_preference(
                session,
                user_id,
                type_value,
                {
                    "push_enabled": False,
                    "email_enabled": False,
                    "sms_enabled": False,
                },
            )
        logger.info("notification_marketing_unsubscribed", extra={"user_id": user_id})

    def initialize_default_preferences(
        self, session: Session, user_id: str
    ) -> list[NotificationPreference]:
        preferences = [
            self.get_or_create_preference(session, user_id, type_value)
            for type_value in INITIAL_PREFERENCE_TYPES
        ]
        logger.info(
            "notification_default_preferences_initialized",
            extra={"user_id": user_id, "count": len(preferences)},
        )
        return preferences

    def _validated_changes(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise validation_error(
                "NOTIFICATION_PREFERENCE_INVALID",
                f"Unknown preference fields: {', '.join(unknown)}",
            )

        values = dict(changes)
        for field in BOOLEAN_FIELDS & set(values):
            if not isinstance(values[field], bool):
                raise validation_error(
                    "NOTIFICATION_PREFERENCE_INVALID",
                    f"{field} must be a boolean",
                )

        _validate_quiet_hours(
            values.get("quiet_hours_start"), values.get("quiet_hours_end")
        )

        if "timezone" in values:
            _validate_timezone(values["timezone"])

        if values.get("digest_frequency") is not None:
            frequency = values["digest_frequency"]
            try:
                values["digest_frequency"] = DigestFrequency(frequency).value
            except ValueError as exc:
                raise validation_error(
                    "NOTIFICATION_PREFERENCE_INVALID",
                    f"Unknown digest frequency: {frequency}",
                ) from exc

        return values
