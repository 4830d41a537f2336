# tests/test_prober.py
import time
from threading import Event
from unittest import mock

import requests

from bluegreen.backoff import BackoffPolicy
from bluegreen.models import EnvironmentId, Role
from bluegreen.prober import HealthProber
from bluegreen.registry import EnvironmentRegistry

PRIMARY = EnvironmentId.PRIMARY
SECONDARY = EnvironmentId.SECONDARY


def _response(status=200, body=None):
    resp = mock.Mock()
    resp.status_code = status
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


class ScriptedSession:
    """Returns queued responses per path; the last one repeats."""

    def __init__(self, responses):
        self.responses = {path: list(items) for path, items in responses.items()}
        self.calls = []

    def get(self, url, timeout=None, headers=None):
        self.calls.append(url)
        path = "/" + url.split("/", 3)[3]
        queue = self.responses[path]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item


def _prober(session, registry=None, clock=None, attempts=3):
    registry = registry or EnvironmentRegistry.from_endpoints({
        PRIMARY: ["http://127.0.0.1:3001"],
        SECONDARY: ["http://127.0.0.1:3002"],
    })
    return HealthProber(
        registry,
        BackoffPolicy(max_attempts=attempts, base_delay=0.0, jitter=0.0),
        session=session,
        sleep=lambda s: None,
        clock=clock or (lambda: 0.0),
    ), registry


def test_healthy_environment():
    session = ScriptedSession({
        "/health": [_response(200)],
        "/health/deep": [_response(200, {"status": "ok", "checks": {"db": "up"}})],
    })
    prober, registry = _prober(session)
    verdict = prober.probe(PRIMARY)
    assert verdict.healthy
    assert set(verdict.checks) == {"liveness", "deep"}
    assert registry.latest_verdict(PRIMARY).healthy


def test_5xx_is_retried_then_recovers():
    session = ScriptedSession({
        "/health": [_response(503), _response(200)],
        "/health/deep": [_response(200, {"status": "ok"})],
    })
    prober, _ = _prober(session)
    verdict = prober.probe(PRIMARY)
    assert verdict.healthy
    assert verdict.checks["liveness"].attempts == 2


def test_connection_errors_exhaust_into_failed_check():
    session = ScriptedSession({
        "/health": [requests.ConnectionError("refused")],
        "/health/deep": [requests.ConnectionError("refused")],
    })
    prober, _ = _prober(session)
    verdict = prober.probe(SECONDARY)
    assert not verdict.healthy
    assert verdict.checks["liveness"].attempts == 3
    assert "ConnectionError" in verdict.checks["liveness"].error
    assert verdict.failed_checks() == ["liveness", "deep"]


def test_4xx_fails_without_retry():
    session = ScriptedSession({
        "/health": [_response(404)],
        "/health/deep": [_response(200, {"status": "ok"})],
    })
    prober, _ = _prober(session)
    verdict = prober.probe(PRIMARY)
    assert not verdict.healthy
    assert verdict.checks["liveness"].attempts == 1
    assert verdict.checks["liveness"].status_code == 404


def test_deep_check_reports_failing_dependency():
    session = ScriptedSession({
        "/health": [_response(200)],
        "/health/deep": [_response(200, {"status": "ok", "checks": {"db": {"status": "down"}, "cache": "up"}})],
    })
    prober, _ = _prober(session)
    verdict = prober.probe(PRIMARY)
    assert not verdict.healthy
    assert "db" in verdict.checks["deep"].error


def test_latency_over_budget_fails_check():
    ticks = iter(range(0, 1000, 2))
    session = ScriptedSession({
        "/health": [_response(200)],
        "/health/deep": [_response(200, {"status": "ok"})],
    })
    prober, _ = _prober(session, clock=lambda: float(next(ticks)))
    verdict = prober.probe(PRIMARY)
    assert not verdict.healthy
    assert "over budget" in verdict.checks["liveness"].error


def test_unhealthy_verdict_demotes_active_environment():
    session = ScriptedSession({
        "/health": [_response(200), _response(500)],
        "/health/deep": [_response(200, {"status": "ok"})],
    })
    prober, registry = _prober(session, attempts=1)
    prober.probe(PRIMARY)
    registry.set_role(PRIMARY, Role.ACTIVE)
    prober.probe(PRIMARY)
    assert registry.get(PRIMARY).role == Role.DRAINING


def test_wait_until_healthy_polls_until_deadline():
    now = [0.0]
    session = ScriptedSession({"/health": [_response(503)], "/health/deep": [_response(503)]})
    registry = EnvironmentRegistry.from_endpoints({PRIMARY: ["http://127.0.0.1:3001"], SECONDARY: []})
    prober = HealthProber(
        registry,
        BackoffPolicy(max_attempts=1),
        session=session,
        sleep=lambda s: now.__setitem__(0, now[0] + s),
        clock=lambda: now[0],
    )
    verdict = prober.wait_until_healthy(PRIMARY, max_wait_seconds=10, poll_interval_seconds=4)
    assert not verdict.healthy
    assert now[0] >= 10


def test_wait_until_healthy_stops_when_cancelled():
    session = ScriptedSession({"/health": [_response(503)], "/health/deep": [_response(503)]})
    registry = EnvironmentRegistry.from_endpoints({PRIMARY: ["http://127.0.0.1:3001"], SECONDARY: []})
    prober = HealthProber(registry, BackoffPolicy(max_attempts=1), session=session)
    cancel = Event()
    cancel.set()

    started = time.monotonic()
    verdict = prober.wait_until_healthy(PRIMARY, max_wait_seconds=150, poll_interval_seconds=5, cancel=cancel)
    assert not verdict.healthy
    assert time.monotonic() - started < 2
    assert len([c for c in session.calls if c.endswith("/health")]) == 1


def test_environment_without_endpoints_is_unhealthy():
    registry = EnvironmentRegistry.from_endpoints({PRIMARY: ["http://127.0.0.1:3001"], SECONDARY: []})
    prober, _ = _prober(ScriptedSession({}), registry=registry)
    verdict = prober.probe(SECONDARY)
    assert not verdict.healthy
    assert "endpoints" in verdict.failed_checks()
