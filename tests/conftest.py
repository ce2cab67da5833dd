import shlex
import sys
import time
from pathlib import Path

import pytest

import featurespec
from featurespec import HarnessConfig, RunContext

STUB_CLI = Path(__file__).parent / "scripts" / "stub_cli.py"


@pytest.fixture
def config(tmp_path):
    return HarnessConfig(
        binary=[sys.executable, str(STUB_CLI)],
        cwd=str(tmp_path),
        timeout=10,
        server_ready="listening",
        ready_timeout=10,
    )


@pytest.fixture
def context():
    return RunContext()


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    monkeypatch.setattr(featurespec, "verbose", False)


@pytest.fixture
def write_feature(tmp_path):
    def write(text, name="test.feature"):
        path = tmp_path / name
        path.write_text(text)
        return path

    return write


def wrapped(binary):
    """A shell wrapper that forks the binary instead of exec'ing it."""
    return ["sh", "-c", " ".join(shlex.quote(part) for part in binary) + ' "$@"; true', "sh"]


def process_alive(pid):
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def wait_until_gone(pid, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not process_alive(pid):
            return True
        time.sleep(0.05)
    return False


def wait_for_file(path, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text():
            return path.read_text()
        time.sleep(0.05)
    raise AssertionError(f"{path} was never written")
