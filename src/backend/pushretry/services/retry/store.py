"""Persistence boundary for the retry queue and its configuration."""

from typing import Protocol

import backoff
import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pushretry.models.base import Base
from pushretry.models.notification_retry import NotificationRetry, RetrySettings
from pushretry.models.push_subscription import PushSubscription
from pushretry.services.retry.errors import RetryConfigError
from pushretry.services.retry.types import FailedNotification, RetryConfig, RetryRecord, parse_datetime

logger = structlog.get_logger()

SETTINGS_ROW_ID = 1


class RetryStore(Protocol):
    """Where the retry queue lives between process restarts."""

    async def load_records(self) -> list[RetryRecord]: ...

    async def save_records(self, records: list[RetryRecord]) -> None: ...

    async def load_config(self) -> RetryConfig | None: ...

    async def save_config(self, config: RetryConfig) -> None: ...


class InMemoryRetryStore:
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        self.records: list[RetryRecord] = []
        self.config: RetryConfig | None = None

    async def load_records(self) -> list[RetryRecord]:
        return list(self.records)

    async def save_records(self, records: list[RetryRecord]) -> None:
        self.records = list(records)

    async def load_config(self) -> RetryConfig | None:
        return self.config

    async def save_config(self, config: RetryConfig) -> None:
        self.config = config


def _log_backoff(details) -> None:
    logger.warning(
        "Retry store operation failed, backing off",
        operation=details["target"].__name__,
        tries=details["tries"],
        wait=round(details["wait"], 2),
    )


def _log_giveup(details) -> None:
    logger.error(
        "Retry store operation failed",
        operation=details["target"].__name__,
        tries=details["tries"],
        elapsed=round(details["elapsed"], 2),
    )


_with_backoff = backoff.on_exception(
    backoff.expo,
    SQLAlchemyError,
    max_tries=3,
    jitter=backoff.full_jitter,
    on_backoff=_log_backoff,
    on_giveup=_log_giveup,
)


class SqlRetryStore:
    """Stores the retry queue in the notification_retries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    async def create_schema(engine: AsyncEngine) -> None:
        """Create the retry and push subscription tables if they do not exist."""
        async with engine.begin() as conn:
            await conn.run_sync(
                Base.metadata.create_all,
                tables=[
                    NotificationRetry.__table__,
                    RetrySettings.__table__,
                    PushSubscription.__table__,
                ],
            )

    @_with_backoff
    async def load_records(self) -> list[RetryRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationRetry).order_by(NotificationRetry.position)
            )
            rows = list(result.scalars().all())

        records = []
        for row in rows:
            try:
                records.append(self._to_record(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(
                    "Skipping unreadable persisted retry",
                    notification_id=row.notification_id,
                    error=str(e),
                )
        return records

    @_with_backoff
    async def save_records(self, records: list[RetryRecord]) -> None:
        async with self.session_factory.begin() as db:
            await db.execute(delete(NotificationRetry))
            db.add_all(self._to_row(record, position) for position, record in enumerate(records))

    @_with_backoff
    async def load_config(self) -> RetryConfig | None:
        async with self.session_factory() as db:
            row = await db.get(RetrySettings, SETTINGS_ROW_ID)
            if row is None:
                return None
            data = dict(row.config)

        try:
            return RetryConfig.build(data)
        except RetryConfigError as e:
            logger.warning("Ignoring invalid persisted retry configuration", errors=e.errors)
            return None

    @_with_backoff
    async def save_config(self, config: RetryConfig) -> None:
        async with self.session_factory.begin() as db:
            await db.merge(
                RetrySettings(id=SETTINGS_ROW_ID, config=config.model_dump(mode="json"))
            )

    @staticmethod
    def _to_row(record: RetryRecord, position: int) -> NotificationRetry:
        return NotificationRetry(
            notification_id=record.notification_id,
            retry_id=record.id,
            payload=record.notification.to_dict(),
            attempt=record.attempt,
            max_attempts=record.max_attempts,
            next_retry_at=record.next_retry_at,
            last_delay=record.last_delay,
            queued_at=record.created_at,
            last_attempt_at=record.last_attempt_at,
            position=position,
            last_error=record.last_error,
        )

    @staticmethod
    def _to_record(row: NotificationRetry) -> RetryRecord:
        return RetryRecord(
            id=row.retry_id,
            notification=FailedNotification.from_dict(row.payload),
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            next_retry_at=parse_datetime(row.next_retry_at),
            last_error=row.last_error,
            created_at=parse_datetime(row.queued_at),
            last_attempt_at=parse_datetime(row.last_attempt_at),
            last_delay=row.last_delay,
        )
