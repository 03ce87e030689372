"""
Tests for the notification retry admin API.
"""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from pushretry.main import fastapi_app

RETRY_URL = "/api/v1/notifications/retry"


class TestRetryQueries:
    """Tests for GET /notifications/retry."""

    @pytest.mark.asyncio
    async def test_statistics(self, client, manager, make_notification):
        await manager.schedule_retry(make_notification("n1"))
        await manager.schedule_retry(make_notification("n2"))

        response = await client.get(RETRY_URL)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        stats = data["data"]["statistics"]
        assert stats["total_in_queue"] == 2
        assert stats["by_attempt_count"] == {"1": 2}
        assert stats["circuit_breaker_state"] == "closed"
        assert "timestamp" in data["data"]

    @pytest.mark.asyncio
    async def test_notification_status(self, client, manager, make_notification):
        await manager.schedule_retry(make_notification("n1"))

        response = await client.get(RETRY_URL, params={"notification_id": "n1"})

        assert response.status_code == 200
        status = response.json()["data"]["status"]
        assert status["notification_id"] == "n1"
        assert status["attempt"] == 1
        assert status["total_delay"] == 1.0

    @pytest.mark.asyncio
    async def test_unknown_notification(self, client):
        response = await client.get(RETRY_URL, params={"notification_id": "missing"})

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "Notification not found in retry queue"


class TestRetryActions:
    """Tests for POST /notifications/retry."""

    @pytest.mark.asyncio
    async def test_process_queue(self, client, manager, clock, delivery, make_notification):
        delivery.default = True
        await manager.schedule_retry(make_notification("n1"))
        clock.advance(1)

        response = await client.post(RETRY_URL, json={"action": "process_queue"})

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Retry queue processing completed"
        result = data["data"]["result"]
        assert result["processed"] == 1
        assert result["successful"] == 1
        assert result["already_running"] is False

    @pytest.mark.asyncio
    async def test_invalid_action(self, client):
        response = await client.post(RETRY_URL, json={"action": "explode"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["message"] == (
            "Invalid action. Supported actions: process_queue, force_retry, clear_retries, clear_all"
        )

    @pytest.mark.parametrize("action", ["force_retry", "clear_retries"])
    @pytest.mark.asyncio
    async def test_notification_id_required(self, client, action):
        response = await client.post(RETRY_URL, json={"action": action})

        assert response.status_code == 400
        assert response.json()["message"] == f"notification_id is required for {action} action"

    @pytest.mark.asyncio
    async def test_force_retry(self, client, manager, clock, make_notification):
        await manager.schedule_retry(make_notification("n1"))

        response = await client.post(RETRY_URL, json={"action": "force_retry", "notification_id": "n1"})

        assert response.status_code == 200
        status = response.json()["data"]["status"]
        assert status["next_retry_at"] == clock.now.isoformat()
        assert status["attempt"] == 1

    @pytest.mark.asyncio
    async def test_force_retry_unknown(self, client):
        response = await client.post(RETRY_URL, json={"action": "force_retry", "notification_id": "missing"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_clear_retries(self, client, manager, make_notification):
        await manager.schedule_retry(make_notification("n1"))

        response = await client.post(RETRY_URL, json={"action": "clear_retries", "notification_id": "n1"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["cleared_count"] == 1
        assert data["notification_id"] == "n1"
        assert manager.get_status("n1") is None

    @pytest.mark.asyncio
    async def test_clear_retries_unknown_is_zero(self, client):
        response = await client.post(RETRY_URL, json={"action": "clear_retries", "notification_id": "missing"})

        assert response.status_code == 200
        assert response.json()["data"]["cleared_count"] == 0

    @pytest.mark.asyncio
    async def test_clear_all(self, client, manager, make_notification):
        for name in ["n1", "n2"]:
            await manager.schedule_retry(make_notification(name))

        response = await client.post(RETRY_URL, json={"action": "clear_all"})

        assert response.status_code == 200
        assert response.json()["data"]["cleared_count"] == 2
        assert manager.get_statistics()["total_in_queue"] == 0


class TestRetryDeletion:
    """Tests for DELETE /notifications/retry."""

    @pytest.mark.asyncio
    async def test_delete_single(self, client, manager, make_notification):
        await manager.schedule_retry(make_notification("n1"))
        await manager.schedule_retry(make_notification("n2"))

        response = await client.delete(RETRY_URL, params={"notification_id": "n1"})

        assert response.status_code == 200
        assert response.json()["data"]["cleared_count"] == 1
        assert manager.get_statistics()["total_in_queue"] == 1

    @pytest.mark.asyncio
    async def test_delete_all(self, client, manager, make_notification):
        await manager.schedule_retry(make_notification("n1"))

        response = await client.delete(RETRY_URL)

        assert response.status_code == 200
        assert response.json()["data"]["cleared_count"] == 1


class TestRetryConfigApi:
    """Tests for /notifications/retry/config."""

    @pytest.mark.asyncio
    async def test_get_config(self, client):
        response = await client.get(f"{RETRY_URL}/config")

        assert response.status_code == 200
        config = response.json()["data"]["config"]
        assert config["max_attempts"] == 3
        assert config["jitter_type"] == "NONE"

    @pytest.mark.asyncio
    async def test_update_config(self, client, manager):
        response = await client.put(f"{RETRY_URL}/config", json={"max_attempts": 5, "jitter_type": "EQUAL"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["updated_config"] == {"max_attempts": 5, "jitter_type": "EQUAL"}
        assert data["config"]["max_attempts"] == 5
        assert data["config"]["initial_delay"] == 1.0
        assert manager.get_config().max_attempts == 5

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self, client, manager):
        response = await client.put(f"{RETRY_URL}/config", json={"max_attempts": 5, "max_delay": 1000})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert any(error.startswith("max_delay") for error in data["errors"])
        assert manager.get_config().max_attempts == 3

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, client):
        response = await client.put(f"{RETRY_URL}/config", json={"retries": 4})

        assert response.status_code == 422


class TestAdminAccess:
    """Tests for the admin key guard."""

    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, client):
        with patch("pushretry.core.deps.settings.admin_api_key", "s3cret"):
            response = await client.get(RETRY_URL)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_key_accepted(self, client):
        with patch("pushretry.core.deps.settings.admin_api_key", "s3cret"):
            response = await client.get(RETRY_URL, headers={"X-Admin-Key": "s3cret"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_manager_not_initialized(self):
        fastapi_app.state.retry_manager = None
        transport = ASGITransport(app=fastapi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get(RETRY_URL)

        assert response.status_code == 503


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["circuit_breaker_state"] == "closed"
        assert data["processor_running"] is False
