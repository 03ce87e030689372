"""Database models."""

from pushretry.models.base import Base, TimestampMixin
from pushretry.models.notification_retry import NotificationRetry, RetrySettings
from pushretry.models.push_subscription import PushSubscription

__all__ = [
    "Base",
    "TimestampMixin",
    "NotificationRetry",
    "RetrySettings",
    "PushSubscription",
]
