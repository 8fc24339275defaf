"""Tests for the FastAPI application factory."""

from __future__ import annotations

from fastapi import testclient

from replica import main


def test_health() -> None:
    """Test the health check endpoint returns ok status."""
    client = testclient.TestClient(main.create_app())
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_routes_registered() -> None:
    app = main.create_app()
    paths = {route.path for route in app.routes}  # type: ignore[attr-defined]
    assert "/api/layers" in paths
    assert "/api/layers/{layer_id}/sync" in paths
    assert "/tiles/{layer_id}/items" in paths
    assert "/tiles/{layer_id}/{z}/{x}/{y}.json" in paths
    assert app.title == "Vector Replica"


def test_lifespan_runs() -> None:
    """Test that startup and shutdown complete without a started worker."""
    with testclient.TestClient(main.create_app()) as client:
        assert client.get("/health").status_code == 200
