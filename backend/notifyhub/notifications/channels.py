from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from notifyhub.db.models import (
    CHANNEL_ORDER,
    NotificationChannel,
    NotificationDeliveryAttempt,
    NotificationQueueEntry,
)
from notifyhub.notifications.config import NotificationConfig


@dataclass(frozen=True)
class ChannelSendResult:
    success: bool
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ChannelSender(Protocol):
    channel: str
    provider_name: str

    def send(
        self, entry: NotificationQueueEntry, attempt: NotificationDeliveryAttempt
    ) -> ChannelSendResult: ...


class DryRunChannelSender:
    provider_name = "dry-run"

    def __init__(self, channel: NotificationChannel | str) -> None:
        self.channel = NotificationChannel(channel).value

    def send(
        self, entry: NotificationQueueEntry, attempt: NotificationDeliveryAttempt
    ) -> ChannelSendResult:
        return ChannelSendResult(
            success=True,
            provider_message_id=f"dry-run-{self.channel}-{attempt.id}",
        )


class UnconfiguredChannelSender:
    provider_name = "unconfigured"

    def __init__(self, channel: NotificationChannel | str) -> None:
        self.channel = NotificationChannel(channel).value

    def send(
        self, entry: NotificationQueueEntry, attempt: NotificationDeliveryAttempt
    ) -> ChannelSendResult:
        return ChannelSendResult(
            success=False,
            error_code="PROVIDER_NOT_CONFIGURED",
            error_message=f"No {self.channel} provider is configured",
        )


def build_default_senders(config: NotificationConfig) -> dict[str, ChannelSender]:
    senders: dict[str, ChannelSender] = {}
    for channel in CHANNEL_ORDER:
        if config.dry_run:
            senders[channel.value] = DryRunChannelSender(channel)
        else:
            senders[channel.value] = UnconfiguredChannelSender(channel)
    return senders
