"""Data types shared by the retry subsystem."""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from pushretry.services.retry.errors import RetryConfigError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


def parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        # SQLite hands back naive datetimes
        value = value.replace(tzinfo=timezone.utc)
    return value


class JitterType(str, Enum):
    """Randomization applied to a backoff delay."""

    NONE = "NONE"
    FULL = "FULL"
    EQUAL = "EQUAL"
    DECORRELATED = "DECORRELATED"


class RetryConfig(BaseModel):
    """Process-wide retry configuration.

    Durations are in seconds. Instances are immutable; updates go through
    :meth:`merge`, which validates the whole result before anything changes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0, le=60)
    max_delay: float = Field(16.0, gt=0, le=300)
    backoff_factor: float = Field(2.0, ge=1, le=5)
    jitter_type: JitterType = JitterType.FULL
    circuit_breaker_threshold: int = Field(5, ge=1, le=20)
    circuit_breaker_reset_timeout: float = Field(30.0, gt=0, le=600)

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "RetryConfig":
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay must not exceed max_delay")
        return self

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        """Build the default configuration from application settings."""
        return cls.build(
            {
                "max_attempts": settings.retry_max_attempts,
                "initial_delay": settings.retry_initial_delay,
                "max_delay": settings.retry_max_delay,
                "backoff_factor": settings.retry_backoff_factor,
                "jitter_type": settings.retry_jitter_type,
                "circuit_breaker_threshold": settings.retry_circuit_breaker_threshold,
                "circuit_breaker_reset_timeout": settings.retry_circuit_breaker_reset_timeout,
            }
        )

    @classmethod
    def build(cls, data: Mapping[str, Any]) -> "RetryConfig":
        """Validate ``data`` as a complete configuration.

        Raises:
            RetryConfigError: listing every violation
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise RetryConfigError.from_validation_error(exc) from exc

    def merge(self, changes: Mapping[str, Any]) -> "RetryConfig":
        """Return a new configuration with ``changes`` applied.

        Options that are absent keep their current value. The result is
        validated as a unit, so an update is either applied in full or
        rejected in full.
        """
        unknown = sorted(set(changes) - set(type(self).model_fields))
        if unknown:
            raise RetryConfigError([f"{name}: unknown option" for name in unknown])
        data = self.model_dump()
        data.update(changes)
        return self.build(data)


@dataclass(frozen=True)
class FailedNotification:
    """A notification whose delivery failed and should be retried."""

    notification_id: str
    user_ids: tuple[str, ...]
    title: str
    body: str
    error: str
    data: dict[str, Any] | None = None
    options: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.notification_id:
            raise ValueError("notification_id is required")
        object.__setattr__(self, "user_ids", tuple(str(u) for u in self.user_ids))
        if self.data is not None:
            object.__setattr__(self, "data", dict(self.data))
        if self.options is not None:
            object.__setattr__(self, "options", dict(self.options))

    def to_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_ids": list(self.user_ids),
            "title": self.title,
            "body": self.body,
            "error": self.error,
            "data": self.data,
            "options": self.options,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FailedNotification":
        return cls(
            notification_id=payload["notification_id"],
            user_ids=tuple(payload.get("user_ids") or ()),
            title=payload.get("title", ""),
            body=payload.get("body", ""),
            error=payload.get("error", ""),
            data=payload.get("data"),
            options=payload.get("options"),
            created_at=parse_datetime(payload.get("created_at")) or utc_now(),
        )


@dataclass
class RetryRecord:
    """Queue entry for a notification awaiting its next retry.

    ``attempt`` is the 1-indexed number of the retry that is pending.
    ``last_delay`` is the delay computed for the pending retry; decorrelated
    jitter derives the next delay from it.
    """

    id: str
    notification: FailedNotification
    attempt: int
    max_attempts: int
    next_retry_at: datetime
    last_error: str
    created_at: datetime
    last_attempt_at: datetime
    last_delay: float = 0.0

    @property
    def notification_id(self) -> str:
        return self.notification.notification_id

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "notification": self.notification.to_dict(),
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "next_retry_at": self.next_retry_at.isoformat(),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat(),
            "last_delay": self.last_delay,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RetryRecord":
        return cls(
            id=payload["id"],
            notification=FailedNotification.from_dict(payload["notification"]),
            attempt=int(payload["attempt"]),
            max_attempts=int(payload["max_attempts"]),
            next_retry_at=parse_datetime(payload["next_retry_at"]),
            last_error=payload.get("last_error", ""),
            created_at=parse_datetime(payload["created_at"]),
            last_attempt_at=parse_datetime(payload["last_attempt_at"]),
            last_delay=float(payload.get("last_delay", 0.0)),
        )


class FailureOutcome(str, Enum):
    """What happened to a record after a failed retry."""

    RESCHEDULED = "rescheduled"
    EXHAUSTED = "exhausted"
    NOT_FOUND = "not_found"


@dataclass
class DeliveryResult:
    """Outcome reported by the external delivery function."""

    success: bool
    errors: list[str] = field(default_factory=list)
    messages_sent: int = 0


DeliveryFunc = Callable[[FailedNotification], Awaitable[DeliveryResult]]


@dataclass
class CycleResult:
    """Summary of one drain cycle."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)
    duration: float = 0.0
    already_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "exhausted": list(self.exhausted),
            "duration": round(self.duration, 4),
            "already_running": self.already_running,
        }


@dataclass
class QueueStatistics:
    """Aggregate view of the retry queue."""

    total_in_queue: int
    ready_for_retry: int
    by_attempt_count: dict[int, int]
    oldest_retry: datetime | None = None
    newest_retry: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_in_queue": self.total_in_queue,
            "ready_for_retry": self.ready_for_retry,
            "by_attempt_count": dict(self.by_attempt_count),
            "oldest_retry": self.oldest_retry.isoformat() if self.oldest_retry else None,
            "newest_retry": self.newest_retry.isoformat() if self.newest_retry else None,
        }
