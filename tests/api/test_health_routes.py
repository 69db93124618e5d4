"""Tests for health, liveness and metrics endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

from commerce_ingestor.utils.health import ComponentHealth, HealthStatus, get_health_checker


def test_health_reports_components(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "commerce_ingestor"
    assert data["components"]["database"]["status"] == "healthy"
    assert set(data["components"]) == {"database", "redis", "kafka", "connections"}


def test_unhealthy_database_is_503(client: TestClient):
    get_health_checker().register_check(
        "database",
        lambda: ComponentHealth(name="database", status=HealthStatus.UNHEALTHY, message="down"),
    )

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_degraded_optional_component_keeps_200(client: TestClient):
    get_health_checker().register_check(
        "kafka",
        lambda: ComponentHealth(name="kafka", status=HealthStatus.DEGRADED),
    )

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_liveness(client: TestClient):
    response = client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "alive", "service": "commerce_ingestor"}


def test_prometheus_metrics_are_exposed(client: TestClient):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "webhooks_received_total" in response.text
    assert "sync_runs_total" in response.text
