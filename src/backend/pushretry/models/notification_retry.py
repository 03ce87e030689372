"""Persisted retry queue state."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pushretry.models.base import Base, TimestampMixin


class NotificationRetry(Base, TimestampMixin):
    """One queued retry per notification, saved across restarts."""

    __tablename__ = "notification_retries"

    notification_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    retry_id: Mapped[str] = mapped_column(String(300), nullable=False)

    # Serialized FailedNotification (recipients, title, body, data, options)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Retry management
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    last_delay: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Keeps due-time ties in insertion order after a reload
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Error tracking
    last_error: Mapped[str] = mapped_column(Text, default="", nullable=False)

    def __repr__(self) -> str:
        return f"<NotificationRetry(notification_id={self.notification_id}, attempt={self.attempt}/{self.max_attempts}, next_retry_at={self.next_retry_at})>"


class RetrySettings(Base, TimestampMixin):
    """Single-row table holding the last applied retry configuration."""

    __tablename__ = "retry_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
