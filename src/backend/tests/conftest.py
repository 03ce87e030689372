"""Pytest configuration and fixtures for retry service tests."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pushretry.main import fastapi_app as app
from pushretry.models.base import Base
from pushretry.services.retry import (
    DeliveryResult,
    FailedNotification,
    JitterType,
    NotificationRetryManager,
    RetryConfig,
)

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeDelivery:
    """Scripted delivery function.

    ``outcomes`` is consumed one entry per call: True/False for success or
    failure, an exception instance to raise. When exhausted, ``default`` is used.
    """

    def __init__(self, outcomes=None, default: bool = False, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.delay = delay
        self.calls: list[FailedNotification] = []

    async def __call__(self, notification: FailedNotification) -> DeliveryResult:
        self.calls.append(notification)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            return DeliveryResult(success=True, messages_sent=1)
        return DeliveryResult(success=False, errors=["push gateway returned 503"])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_config() -> RetryConfig:
    """Deterministic config: delays of 1s, 2s, 4s, ... capped at 16s."""
    return RetryConfig(
        max_attempts=3,
        initial_delay=1.0,
        max_delay=16.0,
        backoff_factor=2.0,
        jitter_type=JitterType.NONE,
        circuit_breaker_threshold=5,
        circuit_breaker_reset_timeout=30.0,
    )


@pytest.fixture
def make_notification() -> Callable[..., FailedNotification]:
    """Factory for failed notifications."""

    def _make(notification_id: str = "notif-1", **kwargs) -> FailedNotification:
        defaults = {
            "user_ids": ("user-1", "user-2"),
            "title": "Material delivered",
            "body": "Cement batch arrived at site",
            "error": "push gateway returned 503",
            "data": {"project_id": "p-42"},
        }
        defaults.update(kwargs)
        return FailedNotification(notification_id=notification_id, **defaults)

    return _make


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def manager(clock: FakeClock, retry_config: RetryConfig, delivery: FakeDelivery) -> NotificationRetryManager:
    """Retry manager with a fake clock and no background loop."""
    return NotificationRetryManager(
        deliver=delivery,
        config=retry_config,
        clock=clock,
        rng=random.Random(1234),
        delivery_timeout=1.0,
        autostart=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def client(manager: NotificationRetryManager) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client wired to the test retry manager."""
    app.state.retry_manager = manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.retry_manager = None
