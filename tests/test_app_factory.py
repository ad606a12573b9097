"""Tests for app factory and role-based routing."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from borrowmybike.api.factory import create_app


class TestPublicRole:
    """Tests for APP_ROLE=public."""

    def test_health_available(self):
        client = TestClient(create_app(role="public"))
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_tasks_not_mounted(self):
        client = TestClient(create_app(role="public"))
        assert client.get("/tasks/health").status_code == 404
        assert client.post("/tasks/bookings/expire").status_code == 404

    def test_booking_routes_require_auth(self):
        client = TestClient(create_app(role="public"))
        response = client.get("/bookings/b-1")
        assert response.status_code == 401


class TestWorkerRole:
    """Tests for APP_ROLE=worker."""

    def test_health_available(self):
        client = TestClient(create_app(role="worker"))
        assert client.get("/health").status_code == 200

    def test_tasks_mounted(self):
        client = TestClient(create_app(role="worker"))
        response = client.get("/tasks/health")
        assert response.status_code == 200
        assert response.json()["subsystem"] == "tasks"

    def test_expire_task_mounted(self):
        client = TestClient(create_app(role="worker"))
        # Route exists: unauthenticated call is rejected, not missing
        assert client.post("/tasks/bookings/expire").status_code == 401


class TestRoleSelection:
    def test_env_role(self):
        with patch.dict("os.environ", {"APP_ROLE": "worker"}):
            client = TestClient(create_app())
        assert client.get("/tasks/health").status_code == 200

    def test_invalid_role(self):
        with pytest.raises(ValueError):
            create_app(role="admin")  # type: ignore[arg-type]


class TestCorrelationId:
    """Tests for correlation ID middleware."""

    def test_generates_correlation_id(self):
        client = TestClient(create_app(role="public"))
        response = client.get("/health")
        cid = response.headers["X-Correlation-ID"]
        assert len(cid) == 36  # UUID length

    def test_preserves_incoming_correlation_id(self):
        client = TestClient(create_app(role="public"))
        response = client.get("/health", headers={"X-Correlation-ID": "test-123"})
        assert response.headers["X-Correlation-ID"] == "test-123"


class TestUnhandledErrors:
    def test_returns_500_with_correlation_id(self):
        app = create_app(role="public")

        def boom():
            raise RuntimeError("settlement store unreachable")

        app.add_api_route("/boom", boom)
        client = TestClient(app)

        response = client.get("/boom", headers={"X-Correlation-ID": "cid-500"})

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal Server Error", "correlation_id": "cid-500"}
        assert response.headers["X-Correlation-ID"] == "cid-500"
