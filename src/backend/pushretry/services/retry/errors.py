"""Exceptions raised by the notification retry subsystem."""

from typing import TYPE_CHECKING

from pydantic import ValidationError

if TYPE_CHECKING:
    from pushretry.services.retry.types import RetryRecord


class RetryError(Exception):
    """Base class for retry subsystem errors."""


class RetryConfigError(RetryError, ValueError):
    """Raised when a retry configuration update is rejected.

    Carries every violation found so the caller can report them together.
    Nothing from a rejected update is applied.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid retry configuration: " + "; ".join(self.errors))

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> "RetryConfigError":
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            message = str(error.get("msg"))
            messages.append(f"{location}: {message}" if location else message)
        return cls(messages)


class RetryExhaustedError(RetryError):
    """Raised when a notification has no retry attempts left."""

    def __init__(self, record: "RetryRecord"):
        self.record = record
        super().__init__(
            f"Max attempts ({record.max_attempts}) exceeded for "
            f"{record.notification_id}: {record.last_error}"
        )

    @property
    def notification_id(self) -> str:
        return self.record.notification_id
