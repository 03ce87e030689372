"""API Routes Module."""

from fastapi import APIRouter

from pushretry.api import retries

router = APIRouter()

router.include_router(retries.router, prefix="/notifications/retry", tags=["Notification Retries"])
