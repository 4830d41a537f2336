# tests/test_deployer.py
import pytest

from bluegreen.deployer import CommandDeployer
from bluegreen.errors import DeployError
from bluegreen.models import EnvironmentId


def test_templates_and_env_are_substituted(tmp_path):
    marker = tmp_path / "started.txt"
    deployer = CommandDeployer(["sh", "-c", f'echo "{{environment}} $BLUEGREEN_VERSION" > {marker}'])
    deployer.build_and_start(EnvironmentId.SECONDARY, "v3.1.0")
    assert marker.read_text().strip() == "secondary v3.1.0"


def test_nonzero_exit_carries_output_tail():
    deployer = CommandDeployer(["sh", "-c", "echo 'image pull failed' >&2; exit 3"])
    with pytest.raises(DeployError) as exc:
        deployer.build_and_start(EnvironmentId.PRIMARY, "v1")
    assert "exited 3" in exc.value.message
    assert exc.value.details["output"] == ["image pull failed"]


def test_timeout_is_a_deploy_error():
    deployer = CommandDeployer(["sleep", "5"], timeout=0.1)
    with pytest.raises(DeployError):
        deployer.build_and_start(EnvironmentId.PRIMARY, "v1")


def test_stop_requires_a_command():
    with pytest.raises(DeployError):
        CommandDeployer(["true"]).stop(EnvironmentId.PRIMARY)
    CommandDeployer(["true"], stop_command=["true"]).stop(EnvironmentId.PRIMARY)


def test_start_command_is_required():
    with pytest.raises(ValueError):
        CommandDeployer([])
