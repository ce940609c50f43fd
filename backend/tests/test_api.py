import logging
import time

import pytest
from fastapi.testclient import TestClient

from patchdeploy.models.deployment import TERMINAL_STATUSES, DeploymentStatus, HealthStatus

from main import create_app

TERMINAL = {status.value for status in TERMINAL_STATUSES}


def wait_until_terminal(client, deployment_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/v1/deployments/{deployment_id}").json()
        if body["status"] in TERMINAL:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Deployment {deployment_id} did not finish")


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as client:
        yield client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "active_deployments": 0}


def test_create_and_follow_deployment(client):
    response = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1", "user_id": "alice"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == DeploymentStatus.VALIDATING.value

    final = wait_until_terminal(client, body["id"])
    assert final["status"] == DeploymentStatus.COMPLETED.value
    assert final["progress"] == 100

    history = client.get("/v1/deployments/history", params={"user_id": "alice"}).json()
    assert [item["id"] for item in history] == [body["id"]]
    assert client.get("/v1/deployments/active").json() == []


def test_events_for_finished_deployment(client):
    deployment_id = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1"}).json()["id"]
    wait_until_terminal(client, deployment_id)

    response = client.get(f"/v1/deployments/{deployment_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert "event: terminal" in response.text
    assert '"status": "completed"' in response.text


def test_not_found(client):
    assert client.get("/v1/deployments/missing").status_code == 404
    assert client.post("/v1/deployments/missing/cancel").status_code == 404
    assert client.get("/v1/deployments/missing/events").status_code == 404

    response = client.post("/v1/deployments/", json={"scan_id": "unknown", "site_id": "site-1"})
    assert response.status_code == 404


def test_invalid_request(client):
    assert client.post("/v1/deployments/", json={"scan_id": "", "site_id": "site-1"}).status_code == 422
    assert client.get("/v1/deployments/history", params={"limit": 0}).status_code == 422


def test_preflight(client):
    response = client.post("/v1/deployments/preflight", json={"scan_id": "scan-1", "site_id": "site-1"})

    assert response.status_code == 200
    assert response.json()["safe"] is True
    assert client.get("/v1/deployments/history").json() == []


def test_strict_preflight_rejects_blocked_deployment(client, health_checker):
    health_checker.push(HealthStatus.CRITICAL, HealthStatus.CRITICAL)
    body = {"scan_id": "scan-1", "site_id": "site-1"}

    advisory = client.post("/v1/deployments/preflight", json=body)
    assert advisory.status_code == 200
    assert advisory.json()["safe"] is False

    strict = client.post("/v1/deployments/preflight", params={"strict": True}, json=body)
    assert strict.status_code == 422
    assert "Baseline health" in strict.json()["detail"]


def test_conflicting_deployment_is_rejected(make_engine):
    engine = make_engine(monitoring_window=30)
    with TestClient(create_app(engine=engine)) as client:
        first = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1"})
        second = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1"})

        assert first.status_code == 202
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "30"
        detail = second.json()["detail"]
        assert detail["retry_later"] is True
        blocked = client.get(f"/v1/deployments/{detail['deployment_id']}").json()
        assert blocked["status"] == DeploymentStatus.BLOCKED.value

        cancelled = client.post(f"/v1/deployments/{first.json()['id']}/cancel")
        assert cancelled.status_code == 202
        assert wait_until_terminal(client, first.json()["id"])["status"] == DeploymentStatus.CANCELLED.value


def test_rollback_of_completed_deployment_conflicts(client):
    deployment_id = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1"}).json()["id"]
    wait_until_terminal(client, deployment_id)

    response = client.post(f"/v1/deployments/{deployment_id}/rollback", json={"reason": "customer request"})

    assert response.status_code == 409
    assert client.post(f"/v1/deployments/{deployment_id}/cancel").status_code == 409


def test_manual_rollback_through_api(make_engine, transport):
    engine = make_engine(monitoring_window=30)
    with TestClient(create_app(engine=engine)) as client:
        deployment_id = client.post("/v1/deployments/", json={"scan_id": "scan-1", "site_id": "site-1"}).json()["id"]
        deadline = time.monotonic() + 5
        while client.get(f"/v1/deployments/{deployment_id}").json()["status"] != "monitoring":
            assert time.monotonic() < deadline
            time.sleep(0.01)

        response = client.post(f"/v1/deployments/{deployment_id}/rollback")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["trigger"] == "manual"
        assert client.get(f"/v1/deployments/{deployment_id}").json()["status"] == "rolled_back"


def test_metrics_endpoint(client):
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "patchdeploy_http_requests_total" in response.text


def test_build_engine_uses_injected_collaborators(patch_source, connections, caplog):
    from main import build_engine

    with caplog.at_level(logging.WARNING):
        engine = build_engine(patch_source=patch_source, connections=connections)
    assert engine.patch_source is patch_source
    assert engine.connections is connections
    assert "empty in-memory collaborators" not in caplog.text

    with caplog.at_level(logging.WARNING):
        build_engine()
    assert "empty in-memory collaborators" in caplog.text
