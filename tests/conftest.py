# tests/conftest.py
import os
import sys

import pytest

# Allow "from gg import ..." when running pytest from a source checkout
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


OBJECT = "/apis/cluster.x-k8s.io/v1alpha2/namespaces/default/machinedeployments/qihx8"

BASIC_LOGS = [
    '{"time":"2021-01-01T10:00:00.000000+00:00","level":"debug","loop":"1","object":"%s","resource":"drainer","message":"finding out if node is drained"}'
    % OBJECT,
    '{"time":"2021-01-01T10:00:01.250000+00:00","level":"debug","loop":"1","object":"%s","resource":"accountid","message":"found account id"}'
    % OBJECT,
    '{"time":"2021-01-01T10:00:02.000000+00:00","level":"debug","loop":"2","object":"%s","resource":"drainer","message":"node is drained"}'
    % OBJECT,
    '{"time":"2021-01-01T10:00:03.000000+00:00","level":"debug","loop":"2","object":"/apis/other/x9y8z","resource":"drainer","message":"not our object"}',
    '{"time":"2021-01-01T10:00:04.000000+00:00","level":"debug","loop":"3","object":"%s","resource":"asgstatus","message":"found asg status"}'
    % OBJECT,
]

TEXT_LOGS = [
    BASIC_LOGS[0],
    "panic: runtime error: invalid memory address",
    "goroutine 1 [running]:",
    "",
    BASIC_LOGS[2],
]

ERROR_LOGS = [
    '{"time":"2021-01-01T11:00:00.000000+00:00","level":"warning","resource":"drainer","message":"retrying","stack":"[{/go/src/drainer/create.go:64: } {/go/src/drainer/create.go:80: node not drained}]"}',
    '{"time":"2021-01-01T11:00:01.000000+00:00","level":"error","caller":"microkit/server.go:12","resource":"collector","message":"metrics failed","stack":[{"file":"collector/set.go","line":31},{"file":"microkit/server.go","line":120}]}',
    '{"time":"2021-01-01T11:00:02.000000+00:00","level":"info","resource":"drainer","message":"done"}',
]


def write_lines(path, lines):
    path.write_text("".join(line + "\n" for line in lines))
    return path


@pytest.fixture
def basic_logfile(tmp_path):
    """Log file with JSON lines of a few resources and loops."""
    return write_lines(tmp_path / "basic.json", BASIC_LOGS)


@pytest.fixture
def text_logfile(tmp_path):
    """Log file with plain text and empty lines between JSON lines."""
    return write_lines(tmp_path / "text.json", TEXT_LOGS)


@pytest.fixture
def error_logfile(tmp_path):
    """Log file with error and warning lines carrying stacks."""
    return write_lines(tmp_path / "error.json", ERROR_LOGS)


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated home directory, so no real config file is picked up."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("NO_COLOR", raising=False)
    return home
