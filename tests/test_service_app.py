# tests/test_service_app.py
import logging

import pytest
from fastapi.testclient import TestClient

from conftest import PRIMARY, SECONDARY, make_harness
from service.app import create_app


@pytest.fixture
def client(harness):
    return TestClient(create_app(harness.controller, start_monitor=False))


def test_healthz(client):
    res = client.get("/healthz")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["traffic"]["weights"]["primary"] == 100
    assert "X-Request-ID" in res.headers


def test_request_id_is_propagated(client):
    res = client.get("/status", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"


def test_switch_and_history(client, harness):
    res = client.post("/switch", json={"target": "secondary"})
    assert res.status_code == 200
    assert res.json()["outcome"] == "success"
    assert harness.store.read().weights[SECONDARY] == 100

    history = client.get("/history", params={"limit": 5}).json()["entries"]
    assert history[-1]["operation"] == "direct_switch"


def test_unhealthy_target_maps_to_502(client, harness):
    harness.prober.health[SECONDARY] = False
    res = client.post("/switch", json={"target": "secondary"})
    assert res.status_code == 502
    assert res.json()["detail"]["outcome"] == "rejected"


def test_validation_errors_map_to_400(client):
    assert client.post("/switch", json={"target": "staging"}).status_code == 400
    assert client.post("/rollback").status_code == 400
    assert client.post("/canary", json={"target": "secondary", "percentage": 100}).status_code == 400


def test_missing_body_field_is_422(client):
    assert client.post("/deploy", json={"environment": "secondary"}).status_code == 422


def test_migrate_in_foreground(client, harness):
    res = client.post("/migrate", json={"target": "secondary", "steps": [50, 100], "background": False})
    assert res.status_code == 200
    assert res.json()["plan"]["status"] == "succeeded"


def test_concurrent_migration_maps_to_409(tmp_path):
    h = make_harness(tmp_path, settle_seconds=30)
    client = TestClient(create_app(h.controller, start_monitor=False))
    first = client.post("/migrate", json={"target": "secondary"})
    assert first.status_code == 200
    res = client.post("/migrate", json={"target": "secondary"})
    assert res.status_code == 409
    assert res.json()["detail"]["error_kind"] == "concurrency"

    assert client.post("/abort").status_code == 200
    h.planner.wait(first.json()["plan"]["id"], 5)
    h.controller.shutdown()


def test_unhealthy_rollback_target_maps_to_500(client, harness):
    assert client.post("/canary", json={"target": "secondary", "percentage": 10, "background": False}).status_code == 200
    harness.prober.health[PRIMARY] = False
    res = client.post("/rollback")
    assert res.status_code == 500
    assert res.json()["detail"]["outcome"] == "fatal"


def test_read_only_endpoints(client, harness):
    harness.monitor.tick()
    assert client.get("/dashboard").json()["status"] == "HEALTHY"
    assert client.get("/alerts").json() == {"alerts": []}
    validate = client.get("/validate").json()
    assert validate["healthy"] is True
    assert set(validate["environments"]) == {"primary", "secondary"}
    assert client.get("/status").json()["plan"] is None


def test_metrics_endpoint(client):
    client.post("/switch", json={"target": "secondary"})
    res = client.get("/metrics")
    assert res.status_code == 200
    assert "bluegreen_traffic_revision" in res.text
    assert "bluegreen_operations_total" in res.text


@pytest.mark.parametrize("path", ["/alerts", "/history"])
def test_non_positive_limit_is_rejected(client, path):
    assert client.get(path, params={"limit": -1}).status_code == 400
    assert client.get(path, params={"limit": 0}).status_code == 400
    assert client.get(path, params={"limit": 1}).status_code == 200


def test_operator_is_logged_with_mutating_requests(client, caplog):
    caplog.set_level(logging.DEBUG, logger="service.middleware")
    client.post("/switch", json={"target": "secondary"}, headers={"X-Operator": "alice"})
    client.get("/status")

    switch_records = [r for r in caplog.records if r.name == "service.middleware" and "/switch" in r.getMessage()]
    assert switch_records
    assert all(r.operator == "alice" for r in switch_records)
    assert all(r.levelno == logging.INFO for r in switch_records)
    status_records = [r for r in caplog.records if r.name == "service.middleware" and "/status" in r.getMessage()]
    assert all(r.levelno == logging.DEBUG and r.operator == "anonymous" for r in status_records)

    metrics_text = client.get("/metrics").text
    assert 'bluegreen_api_requests_total{method="POST",status="200"}' in metrics_text
