"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from segmentation.main import app

client = TestClient(app)

HEALTHY_DB = {"healthy": True, "pool_stats": {"pool_size": 2}}


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("segmentation.routes.health.redis_ping", AsyncMock(return_value=True)),
        patch("segmentation.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_stats"] == {"pool_size": 2}


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with (
        patch("segmentation.routes.health.redis_ping", AsyncMock(return_value=False)),
        patch("segmentation.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_redis_raises():
    with (
        patch(
            "segmentation.routes.health.redis_ping",
            AsyncMock(side_effect=ConnectionError("refused")),
        ),
        patch("segmentation.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert "ConnectionError" in data["checks"]["redis"]["error"]


def test_readyz_endpoint_database_unhealthy():
    """Test readiness endpoint when the database is down."""
    with (
        patch("segmentation.routes.health.redis_ping", AsyncMock(return_value=True)),
        patch(
            "segmentation.routes.health.db_health_check",
            AsyncMock(return_value={"healthy": False, "error": "Connection failed"}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"


def test_readyz_includes_latency_metrics():
    with (
        patch("segmentation.routes.health.redis_ping", AsyncMock(return_value=True)),
        patch("segmentation.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    checks = response.json()["checks"]
    assert isinstance(checks["redis"]["latency_ms"], (int, float))
    assert isinstance(checks["database"]["latency_ms"], (int, float))
