"""Per-type preference defaults and the security pin rule.

Kept free of persistence so the policy can be exercised on plain dicts.
"""

from __future__ import annotations

from typing import Any

from notifyhub.db.models import NotificationType

SECURITY_TYPES: frozenset[str] = frozenset({NotificationType.account_security.value})

MARKETING_TYPES: frozenset[str] = frozenset(
    {
        NotificationType.marketing_promo.value,
        NotificationType.marketing_news.value,
    }
)

PAYMENT_TYPES: frozenset[str] = frozenset(
    {
        NotificationType.payment_received.value,
        NotificationType.payment_sent.value,
        NotificationType.payment_failed.value,
        NotificationType.payout_processed.value,
    }
)

# Rows created for every new account so inboxes show the important types.
INITIAL_PREFERENCE_TYPES: tuple[str, ...] = (
    NotificationType.account_security.value,
    NotificationType.payment_received.value,
    NotificationType.payment_failed.value,
    NotificationType.message_new.value,
    NotificationType.mission_new_offer.value,
    NotificationType.mission_offer_accepted.value,
)

PINNED_SECURITY_FLAGS: tuple[str, ...] = (
    "push_enabled",
    "email_enabled",
    "in_app_enabled",
)

_SECURITY_DEFAULTS = {
    "push_enabled": True,
    "email_enabled": True,
    "in_app_enabled": True,
    "sms_enabled": False,
    "digest_enabled": False,
}
_MARKETING_DEFAULTS = {
    "push_enabled": False,
    "email_enabled": False,
    "in_app_enabled": False,
    "sms_enabled": False,
    "digest_enabled": False,
}
_PAYMENT_DEFAULTS = {
    "push_enabled": True,
    "email_enabled": True,
    "in_app_enabled": True,
    "sms_enabled": False,
    "digest_enabled": False,
}
_GENERAL_DEFAULTS = {
    "push_enabled": True,
    "email_enabled": False,
    "in_app_enabled": True,
    "sms_enabled": False,
    "digest_enabled": False,
}


def _type_value(notification_type: NotificationType | str) -> str:
    if isinstance(notification_type, NotificationType):
        return notification_type.value
    return notification_type


def is_security_type(notification_type: NotificationType | str) -> bool:
    return _type_value(notification_type) in SECURITY_TYPES


def is_marketing_type(notification_type: NotificationType | str) -> bool:
    return _type_value(notification_type) in MARKETING_TYPES


def is_payment_type(notification_type: NotificationType | str) -> bool:
    return _type_value(notification_type) in PAYMENT_TYPES


def defaults_for_type(notification_type: NotificationType | str) -> dict[str, bool]:
    if is_security_type(notification_type):
        return dict(_SECURITY_DEFAULTS)
    if is_marketing_type(notification_type):
        return dict(_MARKETING_DEFAULTS)
    if is_payment_type(notification_type):
        return dict(_PAYMENT_DEFAULTS)
    return dict(_GENERAL_DEFAULTS)


def apply_security_pin(
    notification_type: NotificationType | str, values: dict[str, Any]
) -> dict[str, Any]:
    """Force push/email/in-app on for security types; other types pass through."""
    if not is_security_type(notification_type):
        return dict(values)
    pinned = dict(values)
    for flag in PINNED_SECURITY_FLAGS:
        pinned[flag] = True
    return pinned
