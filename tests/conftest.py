"""Shared pytest fixtures for tether tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tether.core.config import NESTED_SESSION_ENV, Settings
from tether.core.orchestrator import Orchestrator

# Agent stand-ins. The orchestrator appends "-p PROMPT", which python -c
# passes through to sys.argv.
SLEEP_CODE = "import time; time.sleep(30)"
EXIT_CODE = "import sys; sys.exit({code})"


def agent_settings(code: str = SLEEP_CODE, **overrides) -> Settings:
    """Settings whose agent is a python -c one-liner."""
    values = {"agent_command": [sys.executable, "-c", code], "kill_grace_seconds": 0.5}
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Controllable clock for watchdog tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Isolated tether data directory.

    Also clears nested-session markers inherited from the environment the
    tests run in.
    """
    base = tmp_path / "data"
    monkeypatch.setenv("TETHER_DATA_DIR", str(base))
    for key in NESTED_SESSION_ENV:
        monkeypatch.delenv(key, raising=False)
    return base


@pytest.fixture
def project(tmp_path) -> Path:
    """An empty project directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def make_orchestrator(data_dir):
    """Factory for open orchestrators; every one is disposed after the test."""
    created: list[Orchestrator] = []

    def factory(code: str = SLEEP_CODE, tailer=None, **overrides) -> Orchestrator:
        orchestrator = Orchestrator(
            data_dir, settings=agent_settings(code, **overrides), tailer=tailer
        )
        orchestrator.open()
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.dispose()
