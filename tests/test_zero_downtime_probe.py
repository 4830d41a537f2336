# tests/test_zero_downtime_probe.py
from unittest import mock

import requests

from scripts import zero_downtime_probe


def test_probe_once_records_revision(capsys):
    with mock.patch("scripts.zero_downtime_probe.requests.get") as mock_get:
        mock_get.return_value.status_code = 200
        mock_get.return_value.headers = {"X-Bluegreen-Revision": "7"}
        data = zero_downtime_probe.main_once("http://fake-edge")

    mock_get.assert_called_once()
    assert data["ok"] is True
    assert data["status"] == 200
    assert data["revision"] == "7"
    assert "probe ok" in capsys.readouterr().out.lower()


def test_connection_error_counts_as_failure(capsys):
    with mock.patch("scripts.zero_downtime_probe.requests.get",
                    side_effect=requests.ConnectionError("refused")):
        data = zero_downtime_probe.main_once("http://fake-edge")

    assert data["ok"] is False
    assert data["status"] == 0
    assert "refused" in data["error"]
    assert "probe failed" in capsys.readouterr().out.lower()


def test_summarize_flags_any_failure():
    records = [
        {"ok": True, "revision": "3"},
        {"ok": True, "revision": "4"},
        {"ok": False, "revision": None},
        {"ok": True, "revision": "4"},
    ]
    report = zero_downtime_probe.summarize(records)
    assert report["total"] == 4
    assert report["failed"] == 1
    assert report["availability"] == 75.0
    assert report["revisions_seen"] == ["3", "4"]
    assert report["zero_downtime"] is False


def test_summarize_clean_run():
    report = zero_downtime_probe.summarize([{"ok": True, "revision": "1"}] * 10)
    assert report["zero_downtime"] is True
    assert report["availability"] == 100.0
