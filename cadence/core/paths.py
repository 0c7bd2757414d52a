"""
State directory layout.

Everything the daemon persists lives under one directory per project:

    <project>/.cadence/
        settings.json     live settings (also edited by the dashboard)
        session.json      current session identity
        session_N.backup  archived identities
        state.json        status snapshot for status displays
        daemon.pid        process identity marker
        jobs/*.md         job documents
        logs/             one record per invocation + daemon logs

CADENCE_HOME overrides the location.

Outside any project, ~/.cadence/projects.json lists every project a daemon
has run for (CADENCE_USER_HOME overrides ~/.cadence).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from cadence.core.errors import ConfigError

STATE_DIR_NAME = ".cadence"
USER_HOME_ENV = "CADENCE_USER_HOME"


def user_home() -> Path:
    """Per-user directory shared by every project (CADENCE_USER_HOME, else ~/.cadence)."""
    if override := os.environ.get(USER_HOME_ENV):
        return Path(override).expanduser().resolve()
    return Path.home() / STATE_DIR_NAME


def projects_file() -> Path:
    return user_home() / "projects.json"


@dataclass(frozen=True)
class CadencePaths:
    """Resolved locations of every file the daemon reads or writes."""

    project_dir: Path
    home: Path

    @classmethod
    def for_project(cls, project_dir: Path | None = None) -> CadencePaths:
        project = (project_dir or Path.cwd()).resolve()
        override = os.environ.get("CADENCE_HOME")
        home = Path(override).expanduser().resolve() if override else project / STATE_DIR_NAME
        return cls(project_dir=project, home=home)

    @property
    def settings_file(self) -> Path:
        return self.home / "settings.json"

    @property
    def session_file(self) -> Path:
        return self.home / "session.json"

    @property
    def state_file(self) -> Path:
        return self.home / "state.json"

    @property
    def pid_file(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def jobs_dir(self) -> Path:
        return self.home / "jobs"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    def ensure(self) -> None:
        """Create the state, jobs and logs directories. Failure is fatal."""
        for directory in (self.home, self.jobs_dir, self.logs_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create directory {directory}: {e}") from e
