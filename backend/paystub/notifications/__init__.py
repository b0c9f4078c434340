"""
Notification channels — message structs and the senders that deliver them.

Message rendering lives with the caller (escalation, collection,
pipeline conclusion); senders only move a ``NotificationMessage`` to an
address and report a ``DeliveryResult``.
"""

from paystub.notifications.senders import (
    ChannelSender,
    ChannelSenders,
    DeliveryResult,
    LogChannelSender,
    NotificationMessage,
    WebhookChannelSender,
    build_senders,
)

__all__ = [
    "ChannelSender",
    "ChannelSenders",
    "DeliveryResult",
    "LogChannelSender",
    "NotificationMessage",
    "WebhookChannelSender",
    "build_senders",
]
