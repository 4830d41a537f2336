# tests/test_cli.py
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import SECONDARY
from scripts import bluegreen_cli

ROOT = Path(__file__).resolve().parents[1]


def test_cli_help():
    env = dict(os.environ, PYTHONPATH=str(ROOT))
    result = subprocess.run(
        [sys.executable, "scripts/bluegreen_cli.py", "--help"],
        capture_output=True, text=True, cwd=ROOT, env=env
    )
    assert "blue-green deployment orchestrator" in result.stdout.lower()


@pytest.fixture
def cli(harness, tmp_path, monkeypatch):
    monkeypatch.setenv("BLUEGREEN_STATE_DIR", str(tmp_path / "cli-state"))
    monkeypatch.setattr(bluegreen_cli, "build_controller", lambda config: harness.controller)
    return harness


def test_switch_exits_zero_on_success(cli, capsys):
    assert bluegreen_cli.main(["switch", "secondary"]) == 0
    assert cli.store.read().weight_of(SECONDARY) == 100
    assert "SUCCESS" in capsys.readouterr().out


def test_rejected_operation_exits_one(cli, capsys):
    cli.prober.health[SECONDARY] = False
    assert bluegreen_cli.main(["--json", "switch", "secondary"]) == 1
    body = json.loads(capsys.readouterr().out)
    assert body["outcome"] == "rejected"
    assert body["error_kind"] == "operational"


def test_status_prints_json(cli, capsys):
    assert bluegreen_cli.main(["status"]) == 0
    body = json.loads(capsys.readouterr().out)
    assert body["traffic"]["weights"] == {"primary": 100, "secondary": 0}
    assert body["plan_running"] is False


def test_history_lists_operations(cli, capsys):
    bluegreen_cli.main(["migrate", "secondary", "--steps", "50,100"])
    capsys.readouterr()
    assert bluegreen_cli.main(["history", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "gradual_migrate" in out
    assert "primary -> secondary" in out


def test_bad_steps_are_rejected_by_parser():
    with pytest.raises(SystemExit):
        bluegreen_cli.build_parser().parse_args(["migrate", "secondary", "--steps", "10,half"])
