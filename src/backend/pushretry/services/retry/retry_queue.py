"""In-memory retry queue keyed by notification identity."""

import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta

import structlog

from pushretry.services.retry.backoff import compute_delay
from pushretry.services.retry.errors import RetryExhaustedError
from pushretry.services.retry.types import (
    Clock,
    FailedNotification,
    FailureOutcome,
    QueueStatistics,
    RetryConfig,
    RetryRecord,
    utc_now,
)

logger = structlog.get_logger()


class RetryQueue:
    """
    Holds at most one RetryRecord per notification.

    All mutations run under a single lock. Every record handed out is a copy,
    so callers can never modify queue state through a returned record.
    """

    def __init__(
        self,
        config_provider: Callable[[], RetryConfig],
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ):
        self._config_provider = config_provider
        self._clock = clock
        self._rng = rng
        # Insertion-ordered; due-time ties resolve in this order
        self._records: dict[str, RetryRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, notification_id: str) -> bool:
        with self._lock:
            return notification_id in self._records

    def schedule_retry(self, notification: FailedNotification) -> RetryRecord:
        """Schedule a retry for a failed notification.

        A notification that is already queued is updated in place: its attempt
        advances and its next retry time is recomputed with the current
        configuration.

        Raises:
            RetryExhaustedError: the notification has no attempts left; its
                record is removed
        """
        with self._lock:
            config = self._config_provider()
            now = self._clock()
            notification_id = notification.notification_id
            existing = self._records.get(notification_id)

            if existing is None:
                delay = compute_delay(1, config, rng=self._rng)
                record = RetryRecord(
                    id=f"{notification_id}_{int(now.timestamp() * 1000)}",
                    notification=notification,
                    attempt=1,
                    max_attempts=config.max_attempts,
                    next_retry_at=now + timedelta(seconds=delay),
                    last_error=notification.error,
                    created_at=now,
                    last_attempt_at=now,
                    last_delay=delay,
                )
            else:
                attempt = existing.attempt + 1
                if attempt > existing.max_attempts:
                    del self._records[notification_id]
                    exhausted = replace(
                        existing,
                        notification=notification,
                        attempt=attempt,
                        last_error=notification.error,
                        last_attempt_at=now,
                    )
                    logger.warning(
                        "Retry not rescheduled, attempts exhausted",
                        notification_id=notification_id,
                        attempt=attempt,
                        max_attempts=existing.max_attempts,
                    )
                    raise RetryExhaustedError(exhausted)

                delay = compute_delay(attempt, config, existing.last_delay, self._rng)
                record = replace(
                    existing,
                    notification=notification,
                    attempt=attempt,
                    next_retry_at=now + timedelta(seconds=delay),
                    last_error=notification.error,
                    last_attempt_at=now,
                    last_delay=delay,
                )

            self._records[notification_id] = record

            logger.info(
                "Scheduled notification retry",
                notification_id=notification_id,
                attempt=record.attempt,
                max_attempts=record.max_attempts,
                next_retry_at=record.next_retry_at.isoformat(),
                delay=round(delay, 3),
                jitter_type=config.jitter_type.value,
            )
            return replace(record)

    def due_records(self, now: datetime | None = None) -> list[RetryRecord]:
        """Snapshot of records due at ``now``, oldest-due first."""
        now = now or self._clock()
        with self._lock:
            due = [replace(r) for r in self._records.values() if r.is_due(now)]
        # sorted() is stable, so equal due times keep insertion order
        return sorted(due, key=lambda r: r.next_retry_at)

    def mark_succeeded(self, notification_id: str) -> bool:
        """Remove a delivered notification. Returns False if it was not queued."""
        with self._lock:
            return self._records.pop(notification_id, None) is not None

    def mark_failed(
        self, notification_id: str, error: str
    ) -> tuple[FailureOutcome, RetryRecord | None]:
        """Record a failed retry of a queued notification.

        If attempts remain, the record advances to the next attempt and is
        rescheduled. Otherwise it is removed.

        Returns:
            The outcome, and a copy of the rescheduled or removed record
            (None when the notification was not queued)
        """
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                return FailureOutcome.NOT_FOUND, None

            now = self._clock()
            if record.attempt >= record.max_attempts:
                del self._records[notification_id]
                removed = replace(record, last_error=error, last_attempt_at=now)
                logger.warning(
                    "Giving up on notification, attempts exhausted",
                    notification_id=notification_id,
                    attempts=record.attempt,
                    max_attempts=record.max_attempts,
                    error=error,
                )
                return FailureOutcome.EXHAUSTED, removed

            config = self._config_provider()
            attempt = record.attempt + 1
            delay = compute_delay(attempt, config, record.last_delay, self._rng)
            updated = replace(
                record,
                attempt=attempt,
                next_retry_at=now + timedelta(seconds=delay),
                last_error=error,
                last_attempt_at=now,
                last_delay=delay,
            )
            self._records[notification_id] = updated

            logger.info(
                "Retry failed, rescheduled",
                notification_id=notification_id,
                attempt=attempt,
                max_attempts=updated.max_attempts,
                next_retry_at=updated.next_retry_at.isoformat(),
                delay=round(delay, 3),
                error=error,
            )
            return FailureOutcome.RESCHEDULED, replace(updated)

    def force_due(self, notification_id: str) -> RetryRecord | None:
        """Make a queued notification due now without touching its attempt."""
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                return None
            updated = replace(record, next_retry_at=self._clock())
            self._records[notification_id] = updated
            return replace(updated)

    def get_status(self, notification_id: str) -> RetryRecord | None:
        with self._lock:
            record = self._records.get(notification_id)
            return replace(record) if record else None

    def get_statistics(self, now: datetime | None = None) -> QueueStatistics:
        now = now or self._clock()
        with self._lock:
            records = list(self._records.values())

        by_attempt_count: dict[int, int] = {}
        for record in records:
            by_attempt_count[record.attempt] = by_attempt_count.get(record.attempt, 0) + 1

        retry_times = sorted(r.next_retry_at for r in records)
        return QueueStatistics(
            total_in_queue=len(records),
            ready_for_retry=sum(1 for r in records if r.is_due(now)),
            by_attempt_count=dict(sorted(by_attempt_count.items())),
            oldest_retry=retry_times[0] if retry_times else None,
            newest_retry=retry_times[-1] if retry_times else None,
        )

    def clear(self, notification_id: str) -> int:
        """Remove one notification. Returns the number of records removed."""
        with self._lock:
            removed = 0 if self._records.pop(notification_id, None) is None else 1
        logger.info("Cleared notification retries", notification_id=notification_id, cleared=removed)
        return removed

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
        logger.info("Cleared entire retry queue", cleared=count)
        return count

    def snapshot(self) -> list[RetryRecord]:
        """Copies of every record in insertion order, for persistence."""
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def restore(self, records: Iterable[RetryRecord]) -> int:
        """Replace the queue contents with previously persisted records."""
        with self._lock:
            self._records = {r.notification_id: replace(r) for r in records}
            return len(self._records)
