"""Shared test fixtures for Cadence."""

import asyncio
import json
import time

import pytest

from cadence.core.bus import EventBus
from cadence.core.config import CadenceConfig
from cadence.core.errors import InvocationError
from cadence.core.paths import CadencePaths
from cadence.core.types import InvocationResult


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep the developer's CADENCE_* variables and ~/.cadence out of every test."""
    for var in (
        "CADENCE_HOME",
        "CADENCE_TIMEZONE",
        "CADENCE_TIMEZONE_OFFSET_MINUTES",
        "CADENCE_SECURITY_LEVEL",
        "CADENCE_ASSISTANT_EXECUTABLE",
        "CADENCE_ASSISTANT_MODEL",
        "CADENCE_HEARTBEAT_ENABLED",
        "CADENCE_HEARTBEAT_INTERVAL",
        "CADENCE_TICK_SECONDS",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("CADENCE_USER_HOME", str(tmp_path / "user-home"))


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return CadenceConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def paths(tmp_path):
    """State directory under a temporary project."""
    project = tmp_path / "project"
    project.mkdir()
    p = CadencePaths.for_project(project)
    p.ensure()
    return p


@pytest.fixture
def write_settings(paths):
    """Write settings.json for the temporary project."""

    def _write(data: dict) -> None:
        paths.settings_file.write_text(json.dumps(data), encoding="utf-8")

    return _write


@pytest.fixture
def write_job_file(paths):
    """Write a raw job document into the jobs directory."""

    def _write(name: str, content: str):
        path = paths.jobs_dir / f"{name}.md"
        path.write_text(content, encoding="utf-8")
        return path

    return _write


class FakeRunner:
    """
    Stands in for run_process. Records every command with its start and end
    time; `fail` holds prompts whose spawn should fail, `exit_codes` maps
    prompts to exit codes.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[dict] = []
        self.fail: set[str] = set()
        self.exit_codes: dict[str, int] = {}
        self.active = 0
        self.max_active = 0

    async def __call__(self, command, cwd):
        prompt = command[2] if len(command) > 2 else ""
        call = {"command": list(command), "cwd": cwd, "prompt": prompt, "start": time.monotonic()}
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if prompt in self.fail:
                raise InvocationError(f"Executable not found: {command[0]!r}", executable=command[0])
        finally:
            self.active -= 1
            call["end"] = time.monotonic()
        return InvocationResult(
            stdout=f"ran {prompt}",
            stderr="",
            exit_code=self.exit_codes.get(prompt, 0),
        )

    @property
    def prompts(self) -> list[str]:
        return [c["prompt"] for c in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()
