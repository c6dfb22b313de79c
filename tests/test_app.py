from fastapi.testclient import TestClient

from web.main import app


def test_healthz_reports_database(engine) -> None:
    with TestClient(app) as client:
        response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["database"]["ok"] is True


def test_metrics_exposes_share_counters(engine) -> None:
    with TestClient(app) as client:
        response = client.get("/metrics")
    assert response.status_code == 200
    assert "share_access_outcomes" in response.text


def test_status_includes_share_settings(engine) -> None:
    with TestClient(app) as client:
        response = client.get("/api/v1/health/status")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["share"]["maxTtlDays"] == 365
    assert isinstance(body["share"]["warnings"], list)
