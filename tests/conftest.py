from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from taskpilot.config_loader import StoreConfig
from taskpilot.models import ExecutionRequest
from taskpilot.store import DispatchTarget, MemoryStateStorage, TaskStateStore


class ManualAlarm:
    """Records arm() calls; tests fire dispatch() themselves."""

    def __init__(self) -> None:
        self.armed: list[float] = []
        self.cancelled = 0

    def arm(self, delay: float) -> None:
        self.armed.append(delay)

    def cancel(self) -> None:
        self.cancelled += 1

    @property
    def last(self) -> float | None:
        return self.armed[-1] if self.armed else None


class FakeDispatcher:
    def __init__(self, error: Exception | None = None) -> None:
        self.requests: list[ExecutionRequest] = []
        self.error = error

    def trigger_execution(self, request: ExecutionRequest) -> dict:
        self.requests.append(request)
        if self.error:
            raise self.error
        return {"executionId": f"exec-{len(self.requests)}", "taskId": request.task_id}


@pytest.fixture
def alarm() -> ManualAlarm:
    return ManualAlarm()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def make_store(alarm, dispatcher):
    def _make(storage=None, **config) -> TaskStateStore:
        return TaskStateStore(
            "demo",
            storage if storage is not None else MemoryStateStorage(),
            dispatcher,
            DispatchTarget(
                repo_url="https://github.com/acme/widgets.git",
                callback_url="http://coordinator/callbacks/execution?project=demo",
            ),
            StoreConfig(backend="memory", **config),
            alarm=alarm,
        )

    return _make


@pytest.fixture
def store(make_store) -> TaskStateStore:
    return make_store()


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


@pytest.fixture
def origin_repo(tmp_path) -> Path:
    """A bare repository with one commit on `main`, standing in for the remote."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-b", "main")
    (seed / "README.md").write_text("# widgets\n")
    git(seed, "add", "-A")
    git(seed, "-c", "user.name=Seed", "-c", "user.email=seed@example.com", "commit", "-m", "init")

    bare = tmp_path / "origin.git"
    git(tmp_path, "clone", "--bare", str(seed), str(bare))
    return bare
