"""Notification retry management API endpoints."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pushretry.core.deps import get_retry_manager, require_admin
from pushretry.services.retry import NotificationRetryManager, RetryConfigError

logger = structlog.get_logger()

router = APIRouter(dependencies=[Depends(require_admin)])


# ===========================
# Request Models
# ===========================

class RetryAction(str, Enum):
    """Administrative commands."""

    PROCESS_QUEUE = "process_queue"
    FORCE_RETRY = "force_retry"
    CLEAR_RETRIES = "clear_retries"
    CLEAR_ALL = "clear_all"


class RetryActionRequest(BaseModel):
    """Body of a retry command."""

    action: str
    notification_id: str | None = None


class RetryConfigUpdate(BaseModel):
    """Partial retry configuration. Omitted fields keep their value."""

    max_attempts: int | None = None
    initial_delay: float | None = None
    max_delay: float | None = None
    backoff_factor: float | None = None
    jitter_type: str | None = None
    circuit_breaker_threshold: int | None = None
    circuit_breaker_reset_timeout: float | None = None

    model_config = {"extra": "forbid"}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(message: str, data: dict[str, Any] | None = None, status_code: int = 200, **extra) -> JSONResponse:
    success = status_code < 400
    content: dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        content["data"] = {**data, "timestamp": _timestamp()}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


# ===========================
# API Endpoints
# ===========================

@router.get("")
async def get_retry_info(
    notification_id: str | None = Query(None, description="Notification to look up"),
    manager: NotificationRetryManager = Depends(get_retry_manager),
) -> JSONResponse:
    """
    Get retry queue statistics, or the retry status of one notification.
    """
    if notification_id:
        status = manager.get_status(notification_id)
        if status is None:
            return _response("Notification not found in retry queue", status_code=404)
        return _response("Retry status retrieved successfully", {"status": status})

    return _response(
        "Retry queue statistics retrieved successfully",
        {"statistics": manager.get_statistics()},
    )


@router.post("")
async def run_retry_action(
    request: RetryActionRequest,
    manager: NotificationRetryManager = Depends(get_retry_manager),
) -> JSONResponse:
    """Run an administrative retry command."""
    try:
        action = RetryAction(request.action)
    except ValueError:
        supported = ", ".join(a.value for a in RetryAction)
        return _response(f"Invalid action. Supported actions: {supported}", status_code=400)

    if action == RetryAction.PROCESS_QUEUE:
        logger.info("Manually triggering retry queue processing")
        result = await manager.process_queue()
        message = (
            "Retry queue processing already in progress"
            if result.already_running
            else "Retry queue processing completed"
        )
        return _response(message, {"result": result.to_dict()})

    if action == RetryAction.CLEAR_ALL:
        cleared = manager.clear_all()
        return _response(
            f"Cleared entire retry queue ({cleared} notifications)",
            {"cleared_count": cleared},
        )

    if not request.notification_id:
        return _response(f"notification_id is required for {action.value} action", status_code=400)

    if action == RetryAction.FORCE_RETRY:
        record = manager.force_retry(request.notification_id)
        if record is None:
            return _response("Notification not found in retry queue", status_code=404)
        return _response(
            "Notification will be retried on the next processing cycle",
            {"status": manager.get_status(request.notification_id)},
        )

    cleared = manager.clear(request.notification_id)
    return _response(
        f"Cleared {cleared} retries for notification {request.notification_id}",
        {"cleared_count": cleared, "notification_id": request.notification_id},
    )


@router.delete("")
async def clear_retries(
    notification_id: str | None = Query(None, description="Notification to clear; all when omitted"),
    manager: NotificationRetryManager = Depends(get_retry_manager),
) -> JSONResponse:
    """Clear retries for one notification, or the entire queue."""
    if notification_id:
        cleared = manager.clear(notification_id)
        return _response(
            f"Cleared {cleared} retries for notification {notification_id}",
            {"cleared_count": cleared, "notification_id": notification_id},
        )

    cleared = manager.clear_all()
    return _response(
        f"Cleared entire retry queue ({cleared} notifications)",
        {"cleared_count": cleared},
    )


@router.get("/config")
async def get_retry_config(
    manager: NotificationRetryManager = Depends(get_retry_manager),
) -> JSONResponse:
    """Get the current retry configuration."""
    return _response(
        "Retry configuration retrieved successfully",
        {"config": manager.get_config().model_dump(mode="json")},
    )


@router.put("/config")
async def update_retry_config(
    update: RetryConfigUpdate,
    manager: NotificationRetryManager = Depends(get_retry_manager),
) -> JSONResponse:
    """
    Update the retry configuration.

    Only the provided fields change. The update is validated as a whole and
    either applied completely or rejected with every violation listed.
    """
    changes = update.model_dump(exclude_unset=True)
    try:
        config = await manager.update_config(changes)
    except RetryConfigError as e:
        return _response("Invalid configuration values", status_code=400, errors=e.errors)

    return _response(
        "Retry configuration updated successfully",
        {"updated_config": changes, "config": config.model_dump(mode="json")},
    )
