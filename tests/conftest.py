"""Shared fixtures: temporary git repos, configs and an in-process fake adapter."""

import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from crew_orchestrator.adapters.base import Completion, OutputChunk
from crew_orchestrator.config import Config
from crew_orchestrator.core.coordinator import ExecutionCoordinator


def git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "checkout", "-b", "main")
    git(path, "config", "user.name", "Test")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# Test\n")
    git(path, "add", ".")
    git(path, "commit", "-m", "init")
    return path


@pytest.fixture
def git_repo(tmp_path):
    """A git repo on branch main with one commit."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def config(tmp_path, git_repo):
    return Config(
        db_path=tmp_path / "state" / "crew.db",
        logs_dir=tmp_path / "state" / "logs",
        default_project_path=git_repo,
        stop_grace_seconds=0.5,
    )


class FakeRun:
    """Adapter run driven by the test: emit output, then finish."""

    def __init__(self, request, outbox):
        self.request = request
        self.outbox = outbox
        self.stopped = False

    def emit(self, data: str, stream: str = "stdout"):
        self.outbox.put(OutputChunk(stream, data))

    def finish(self, exit_code: int = 0, error: str | None = None):
        self.outbox.put(Completion(exit_code=exit_code, error=error))

    def write(self, name: str, content: str):
        (Path(self.request.cwd) / name).write_text(content)

    def stop(self, grace: float):
        self.stopped = True
        self.outbox.put(Completion(exit_code=-15, error="stopped"))


class FakeAdapter:
    def __init__(self):
        self.runs: list[FakeRun] = []
        self.providers: list[str] = []
        self.fail_start: Exception | None = None

    def factory(self, provider, config):
        self.providers.append(provider)
        return self

    def start(self, request, outbox):
        if self.fail_start:
            raise self.fail_start
        run = FakeRun(request, outbox)
        self.runs.append(run)
        return run

    @property
    def last_run(self) -> FakeRun:
        return self.runs[-1]


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def coordinator(config, fake_adapter, notifier):
    return ExecutionCoordinator(config, adapter_factory=fake_adapter.factory, notifier=notifier)
