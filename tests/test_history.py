# tests/test_history.py
from datetime import timedelta

import pytest
from pydantic import ValidationError

from bluegreen.history import HISTORY_FILE, DeploymentHistory
from bluegreen.models import EnvironmentId, HistoryEntry, Outcome, utcnow


def _entry(op="direct_switch", outcome=Outcome.SUCCESS, **kw):
    return HistoryEntry(
        operation=op,
        from_environment=EnvironmentId.PRIMARY,
        to_environment=EnvironmentId.SECONDARY,
        outcome=outcome,
        **kw,
    )


def test_append_and_reload(tmp_path):
    history = DeploymentHistory(tmp_path)
    history.append(_entry())
    history.append(_entry("rollback", Outcome.FAILED, detail="edge unreachable"))

    reopened = DeploymentHistory(tmp_path)
    entries = reopened.entries()
    assert len(reopened) == 2
    assert entries[1].operation == "rollback"
    assert entries[1].detail == "edge unreachable"


def test_entries_are_time_ordered_and_limited(tmp_path):
    history = DeploymentHistory(tmp_path)
    now = utcnow()
    history.append(_entry("late", timestamp=now))
    history.append(_entry("early", timestamp=now - timedelta(minutes=5)))
    history.append(_entry("middle", timestamp=now - timedelta(minutes=1)))

    assert [e.operation for e in history.entries()] == ["early", "middle", "late"]
    assert [e.operation for e in history.entries(limit=2)] == ["middle", "late"]


def test_torn_last_line_is_skipped(tmp_path):
    history = DeploymentHistory(tmp_path)
    history.append(_entry())
    with open(tmp_path / HISTORY_FILE, "a", encoding="utf-8") as f:
        f.write('{"operation": "dep')

    assert len(DeploymentHistory(tmp_path)) == 1


def test_entries_are_immutable(tmp_path):
    entry = DeploymentHistory(tmp_path).append(_entry())
    with pytest.raises(ValidationError):
        entry.outcome = Outcome.FAILED
