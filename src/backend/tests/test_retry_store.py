"""
Tests for retry queue persistence.
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pushretry.models.notification_retry import RetrySettings
from pushretry.services.delivery import SqlSubscriptionResolver
from pushretry.services.retry import (
    InMemoryRetryStore,
    JitterType,
    NotificationRetryManager,
    RetryConfig,
    RetryQueue,
    SqlRetryStore,
)
from conftest import FakeDelivery


@pytest.fixture
def store(session_factory) -> SqlRetryStore:
    return SqlRetryStore(session_factory)


def queued_records(clock, retry_config, make_notification):
    queue = RetryQueue(config_provider=lambda: retry_config, clock=clock)
    queue.schedule_retry(make_notification("b", options={"ttl": 60}))
    queue.schedule_retry(make_notification("a"))
    queue.schedule_retry(make_notification("a", error="gateway timeout"))
    return queue.snapshot()


class TestSqlRetryStore:
    """Tests for the SQLAlchemy-backed store."""

    @pytest.mark.asyncio
    async def test_empty_database(self, store):
        assert await store.load_records() == []
        assert await store.load_config() is None

    @pytest.mark.asyncio
    async def test_records_survive_reload(self, store, clock, retry_config, make_notification):
        records = queued_records(clock, retry_config, make_notification)

        await store.save_records(records)
        loaded = await store.load_records()

        assert [r.notification_id for r in loaded] == ["b", "a"]
        by_id = {r.notification_id: r for r in loaded}
        assert by_id["a"].attempt == 2
        assert by_id["a"].last_error == "gateway timeout"
        assert by_id["a"].next_retry_at == records[1].next_retry_at
        assert by_id["a"].next_retry_at.tzinfo is not None
        assert by_id["b"].notification.options == {"ttl": 60}
        assert by_id["b"].notification.user_ids == ("user-1", "user-2")
        assert by_id["b"].id == records[0].id

    @pytest.mark.asyncio
    async def test_save_replaces_previous_contents(self, store, clock, retry_config, make_notification):
        await store.save_records(queued_records(clock, retry_config, make_notification))

        await store.save_records([])

        assert await store.load_records() == []

    @pytest.mark.asyncio
    async def test_config_round_trip(self, store):
        config = RetryConfig(max_attempts=6, jitter_type=JitterType.DECORRELATED, max_delay=120)

        await store.save_config(config)
        await store.save_config(config.merge({"initial_delay": 2.5}))

        loaded = await store.load_config()
        assert loaded.max_attempts == 6
        assert loaded.initial_delay == 2.5
        assert loaded.jitter_type == JitterType.DECORRELATED

    @pytest.mark.asyncio
    async def test_invalid_persisted_config_ignored(self, store, session_factory):
        async with session_factory.begin() as db:
            db.add(RetrySettings(id=1, config={"max_attempts": 99}))

        assert await store.load_config() is None

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, store):
        """Database errors are retried with backoff before giving up."""
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        factory = store.session_factory
        calls = []

        def flaky_factory():
            calls.append(1)
            if len(calls) < 3:
                raise error
            return factory()

        store.session_factory = flaky_factory
        with patch("asyncio.sleep", new=AsyncMock()):
            assert await store.load_records() == []

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_manager_restart_over_database(self, store, clock, retry_config, make_notification):
        first = NotificationRetryManager(
            deliver=FakeDelivery(), config=retry_config, store=store, clock=clock, autostart=False
        )
        await first.init()
        await first.schedule_retry(make_notification("n1"))
        await first.update_config({"max_attempts": 5})
        await first.shutdown()

        second = NotificationRetryManager(
            deliver=FakeDelivery(), store=store, clock=clock, autostart=False
        )
        await second.init()

        assert second.get_config().max_attempts == 5
        assert second.get_status("n1")["max_attempts"] == 3

    @pytest.mark.asyncio
    async def test_create_schema_builds_every_table(self):
        """A database built only by create_schema serves both the store and subscription lookups."""
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        try:
            await SqlRetryStore.create_schema(engine)
            factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

            assert await SqlRetryStore(factory).load_records() == []
            assert await SqlSubscriptionResolver(factory)("user-1") == []
        finally:
            await engine.dispose()


class TestInMemoryRetryStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, clock, retry_config, make_notification):
        store = InMemoryRetryStore()
        records = queued_records(clock, retry_config, make_notification)

        await store.save_records(records)
        await store.save_config(retry_config)

        assert await store.load_records() == records
        assert await store.load_config() == retry_config
