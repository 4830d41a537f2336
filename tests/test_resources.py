# tests/test_resources.py
import sys

import pytest

from bluegreen.errors import OperationalError, TransientError
from bluegreen.models import EnvironmentId
from bluegreen.resources import DockerStatsSampler, parse_stats_line

PRIMARY = EnvironmentId.PRIMARY
SECONDARY = EnvironmentId.SECONDARY

# echoes one stats line per container name passed as a positional argument
FAKE_STATS = (
    'for c in "$@"; do '
    'if [ "$c" = blue-app ]; then cpu=85.5; else cpu=10; fi; '
    'printf \'{"Name":"%s","CPUPerc":"%s%%","MemPerc":"40.00%%"}\\n\' "$c" "$cpu"; '
    'done'
)

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="needs a POSIX shell")


def test_sample_maps_containers_to_environments():
    sampler = DockerStatsSampler({PRIMARY: "blue-app", SECONDARY: "green-app"}, ["sh", "-c", FAKE_STATS, "sh"])
    usage = sampler.sample()
    assert usage[PRIMARY].container == "blue-app"
    assert usage[PRIMARY].cpu_ratio == pytest.approx(0.855)
    assert usage[PRIMARY].memory_ratio == pytest.approx(0.4)
    assert usage[SECONDARY].cpu_ratio == pytest.approx(0.1)


def test_environment_without_stats_is_left_out():
    blue_only = 'printf \'{"Name":"blue-app","CPUPerc":"1%%","MemPerc":"2%%"}\\n\''
    sampler = DockerStatsSampler({PRIMARY: "blue-app", SECONDARY: "green-app"}, ["sh", "-c", blue_only, "sh"])
    assert set(sampler.sample()) == {PRIMARY}


def test_no_containers_skips_the_command():
    sampler = DockerStatsSampler({}, ["false"])
    assert sampler.sample() == {}


def test_nonzero_exit_is_transient():
    sampler = DockerStatsSampler({PRIMARY: "blue-app"}, ["sh", "-c", "echo 'daemon not running' >&2; exit 1", "sh"])
    with pytest.raises(TransientError) as err:
        sampler.sample()
    assert "daemon not running" in err.value.message


def test_timeout_is_transient():
    sampler = DockerStatsSampler({PRIMARY: "blue-app"}, ["sh", "-c", "sleep 5", "sh"], timeout=0.2)
    with pytest.raises(TransientError):
        sampler.sample()


def test_missing_binary_is_operational():
    sampler = DockerStatsSampler({PRIMARY: "blue-app"}, ["/nonexistent/docker-stats"])
    with pytest.raises(OperationalError):
        sampler.sample()


@pytest.mark.parametrize("line,expected", [
    ('{"Name": "blue-app", "CPUPerc": "12.5%", "MemPerc": "40%"}', ("blue-app", 0.125, 0.4)),
    ('{"Name": "green-app", "CPUPerc": "--", "MemPerc": "--"}', ("green-app", 0.0, 0.0)),
    ('{"Name": "green-app"}', ("green-app", 0.0, 0.0)),
])
def test_parse_stats_line(line, expected):
    name, cpu, memory = parse_stats_line(line)
    assert (name, cpu, memory) == (expected[0], pytest.approx(expected[1]), pytest.approx(expected[2]))


@pytest.mark.parametrize("line", ["", "not json", "[]", '{"CPUPerc": "1%"}', '{"Name": "x", "CPUPerc": "lots"}'])
def test_parse_stats_line_rejects_garbage(line):
    assert parse_stats_line(line) is None
