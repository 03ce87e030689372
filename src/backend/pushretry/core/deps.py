"""Dependency injection utilities for FastAPI."""

import secrets

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pushretry.core.config import settings
from pushretry.services.retry import NotificationRetryManager

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def get_retry_manager(request: Request) -> NotificationRetryManager:
    """Retry manager built during application startup."""
    manager = getattr(request.app.state, "retry_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Retry manager not initialized",
        )
    return manager


async def require_admin(x_admin_key: str | None = Header(None)) -> None:
    """Guard administrative endpoints when an admin key is configured."""
    if not settings.admin_api_key:
        return
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin key",
        )
