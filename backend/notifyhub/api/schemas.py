from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from notifyhub.db.models import (
    DigestFrequency,
    NotificationPriority,
    NotificationType,
)


class NotificationPreferenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    notification_type: NotificationType
    push_enabled: bool
    email_enabled: bool
    in_app_enabled: bool
    sms_enabled: bool
    quiet_hours_start: str | None
    quiet_hours_end: str | None
    timezone: str
    digest_enabled: bool
    digest_frequency: DigestFrequency | None
    created_at: datetime
    updated_at: datetime


class NotificationPreferenceUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    push_enabled: bool | None = None
    email_enabled: bool | None = None
    in_app_enabled: bool | None = None
    sms_enabled: bool | None = None
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    timezone: str | None = None
    digest_enabled: bool | None = None
    digest_frequency: DigestFrequency | None = None


class QuietHoursRequest(BaseModel):
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    timezone: str | None = None


class QuietHoursResponse(BaseModel):
    preferences_updated: int


class MarketingUnsubscribeResponse(BaseModel):
    ok: bool


class NotificationEnqueueRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    notification_type: NotificationType
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)
    data: dict[str, Any] | None = None
    priority: NotificationPriority = NotificationPriority.normal
    scheduled_for: datetime | None = None
    correlation_id: str | None = None
    idempotency_key: str | None = None


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue_id: UUID
    channel: str
    status: str
    provider: str | None
    provider_message_id: str | None
    error_code: str | None
    error_message: str | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    failed_at: datetime | None
    created_at: datetime


class NotificationQueueEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    notification_type: NotificationType
    title: str
    body: str
    data: dict[str, Any]
    channels: list[str]
    priority: NotificationPriority
    status: str
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    last_attempt_at: datetime | None
    delivered_at: datetime | None
    failed_at: datetime | None
    error_message: str | None
    delivery_results: dict[str, Any] | None
    correlation_id: str | None
    idempotency_key: str | None
    created_at: datetime
    updated_at: datetime


class NotificationHistoryItem(NotificationQueueEntryResponse):
    deliveries: list[DeliveryAttemptResponse] = Field(default_factory=list)


class NotificationHistoryResponse(BaseModel):
    items: list[NotificationHistoryItem]
    total: int
    limit: int
    offset: int


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    delivered: int
    failed: int
    partial: int
    cancelled: int
    by_priority: dict[str, int]


class CleanupResponse(BaseModel):
    deleted: int
    message: str


class DeliveryStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_channel: dict[str, int]
    since: datetime


class ErrorEnvelope(BaseModel):
    error: dict[str, Any]
