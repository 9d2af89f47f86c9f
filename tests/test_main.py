"""Tests for the main.py application wiring."""

from fastapi.testclient import TestClient


def test_ping_reports_service_name():
    """Ping needs neither the database nor Redis."""
    from main import app

    resp = TestClient(app).get("/api/ping")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["service"] == "Finale Inventory Sync"


def test_all_route_groups_are_registered():
    from main import app

    paths = set(app.openapi()["paths"])
    for expected in (
        "/api/inventory",
        "/api/inventory/cache",
        "/api/purchase-orders/{po_id}/approve",
        "/api/vendors/{vendor_id}",
        "/api/sync-finale/trigger",
        "/api/sync-finale/check-stuck",
        "/api/sync-vendors",
        "/api/sync/rebuild-cache",
        "/api/dashboard/trends",
        "/api/settings/simple",
    ):
        assert expected in paths, f"missing route {expected}"


def test_validation_errors_use_the_error_envelope(tmp_db):
    from main import app

    resp = TestClient(app).post("/api/vendors", json={})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"
    assert resp.json()["details"][0]["field"] == "name"
