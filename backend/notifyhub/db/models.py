from __future__ import annotations

import os
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from notifyhub.db.base import Base


class NotificationType(str, Enum):
    mission_new_offer = "mission_new_offer"
    mission_offer_accepted = "mission_offer_accepted"
    mission_started = "mission_started"
    mission_completed = "mission_completed"
    mission_cancelled = "mission_cancelled"
    message_new = "message_new"
    message_unread_reminder = "message_unread_reminder"
    payment_received = "payment_received"
    payment_sent = "payment_sent"
    payment_failed = "payment_failed"
    payout_processed = "payout_processed"
    review_received = "review_received"
    review_reminder = "review_reminder"
    account_security = "account_security"
    account_verification = "account_verification"
    booking_request = "booking_request"
    booking_confirmed = "booking_confirmed"
    booking_reminder = "booking_reminder"
    booking_cancelled = "booking_cancelled"
    marketing_promo = "marketing_promo"
    marketing_news = "marketing_news"


class NotificationChannel(str, Enum):
    push = "push"
    email = "email"
    in_app = "in_app"
    sms = "sms"


# Channel order used when materialising preference flags.
CHANNEL_ORDER: tuple[NotificationChannel, ...] = (
    NotificationChannel.push,
    NotificationChannel.email,
    NotificationChannel.in_app,
    NotificationChannel.sms,
)


class DigestFrequency(str, Enum):
    hourly = "hourly"
    daily = "daily"
    weekly = "weekly"


class NotificationPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    critical = "critical"


PRIORITY_WEIGHTS: dict[str, int] = {
    NotificationPriority.low.value: 0,
    NotificationPriority.normal.value: 1,
    NotificationPriority.high.value: 2,
    NotificationPriority.critical.value: 3,
}


class NotificationQueueStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    delivered = "delivered"
    partial = "partial"
    failed = "failed"
    cancelled = "cancelled"


class DeliveryStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"
    bounced = "bounced"


JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")
JSON_EMPTY_DEFAULT = (
    text("'{}'::jsonb")
    if os.getenv("DATABASE_URL", "").startswith("postgresql")
    else text("'{}'")
)
JSON_EMPTY_LIST_DEFAULT = (
    text("'[]'::jsonb")
    if os.getenv("DATABASE_URL", "").startswith("postgresql")
    else text("'[]'")
)

DEFAULT_TIMEZONE = "America/Toronto"
DEFAULT_MAX_ATTEMPTS = 3


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "notification_type",
            name="uq_notification_preferences_user_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    in_app_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiet_hours_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default=DEFAULT_TIMEZONE
    )
    digest_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    digest_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class NotificationQueueEntry(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", name="uq_notification_queue_idempotency_key"
        ),
        Index("ix_notification_queue_status_scheduled", "status", "scheduled_for"),
        Index("ix_notification_queue_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(
        JSON_TYPE, nullable=False, server_default=JSON_EMPTY_DEFAULT
    )
    channels: Mapped[list[str]] = mapped_column(
        JSON_TYPE, nullable=False, server_default=JSON_EMPTY_LIST_DEFAULT
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_results: Mapped[dict[str, Any] | None] = mapped_column(
        JSON_TYPE, nullable=True
    )
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    deliveries: Mapped[list[NotificationDeliveryAttempt]] = relationship(
        back_populates="queue_entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="NotificationDeliveryAttempt.created_at",
    )


class NotificationDeliveryAttempt(Base):
    __tablename__ = "notification_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    queue_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("notification_queue.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    push_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    queue_entry: Mapped[NotificationQueueEntry] = relationship(
        back_populates="deliveries"
    )
