# tests/test_alerting.py
from unittest import mock

from bluegreen.alerting import AlertManager, LogSink, WebhookSink
from bluegreen.models import AlertEvent, Severity
from conftest import FakeClock, RecordingSink


def _event(type_="HIGH_ERROR_RATE", severity=Severity.WARNING, key=""):
    return AlertEvent(type=type_, message="error rate 12%", severity=severity, cooldown_key=key)


def test_emit_fans_out_to_every_sink():
    a, b = RecordingSink(), RecordingSink()
    manager = AlertManager([a, b])
    assert manager.emit(_event())
    manager.shutdown(wait=True)
    assert len(a.events) == 1 and len(b.events) == 1


def test_same_key_is_suppressed_within_cooldown():
    clock = FakeClock()
    sink = RecordingSink()
    manager = AlertManager([sink], cooldown_seconds=60, clock=clock)
    assert manager.emit(_event())
    clock.advance(30)
    assert not manager.emit(_event())
    clock.advance(31)
    assert manager.emit(_event())
    manager.shutdown(wait=True)
    assert len(sink.events) == 2


def test_distinct_keys_do_not_share_cooldown():
    manager = AlertManager([RecordingSink()])
    assert manager.emit(_event(key="SERVICE_UNHEALTHY:primary"))
    assert manager.emit(_event(key="SERVICE_UNHEALTHY:secondary"))
    manager.shutdown(wait=True)


def test_zero_cooldown_always_dispatches():
    manager = AlertManager([RecordingSink()])
    assert manager.emit(_event(severity=Severity.CRITICAL), cooldown_seconds=0)
    assert manager.emit(_event(severity=Severity.CRITICAL), cooldown_seconds=0)
    manager.shutdown(wait=True)


def test_failing_sink_does_not_break_others(caplog):
    class Broken(RecordingSink):
        def send(self, event):
            raise RuntimeError("slack down")

    good = RecordingSink()
    manager = AlertManager([Broken(), good])
    assert manager.emit(_event())
    manager.shutdown(wait=True)
    assert len(good.events) == 1
    assert "failed to deliver" in caplog.text


def test_recent_is_newest_first_and_bounded():
    manager = AlertManager([], recent_limit=3)
    for i in range(5):
        manager.emit(_event(key=f"k{i}"))
    recent = manager.recent()
    assert [a.cooldown_key for a in recent] == ["k4", "k3", "k2"]


def test_webhook_sink_posts_json():
    session = mock.Mock()
    sink = WebhookSink("https://hooks.example.com/T000", timeout=2.0, session=session)
    sink.send(_event(severity=Severity.CRITICAL))
    args, kwargs = session.post.call_args
    assert args[0] == "https://hooks.example.com/T000"
    assert kwargs["timeout"] == 2.0
    assert kwargs["json"]["text"].startswith("[CRITICAL] HIGH_ERROR_RATE")
    session.post.return_value.raise_for_status.assert_called_once()


def test_log_sink_maps_severity(caplog):
    with caplog.at_level("WARNING", logger="bluegreen.alerts"):
        LogSink().send(_event(severity=Severity.CRITICAL))
    assert caplog.records[-1].levelname == "CRITICAL"
