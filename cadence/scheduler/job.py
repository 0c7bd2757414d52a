"""
Scheduler Job — the declarative unit loaded from a job document.

A job document is a markdown file in the jobs directory:

    ---
    schedule: "0 9 * * 1-5"
    recurring: true
    notify: error
    type: prompt
    ---
    Summarise yesterday's commits and open issues.

The job name is the file name without `.md`. Jobs are immutable once
loaded; a reload replaces the whole list.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cadence.core.types import TaskKind


class NotifyMode(str, Enum):
    """When the bot front end should message the user about a run."""

    ALWAYS = "always"
    NEVER = "never"
    ERROR = "error"   # only when the run exits non-zero


@dataclass(frozen=True, slots=True)
class Job:
    """A scheduled prompt or script."""

    name: str
    schedule: str
    prompt: str = ""
    recurring: bool = False
    notify: NotifyMode = NotifyMode.ALWAYS
    kind: TaskKind = TaskKind.PROMPT

    def should_notify(self, exit_code: int) -> bool:
        if self.notify is NotifyMode.ALWAYS:
            return True
        if self.notify is NotifyMode.NEVER:
            return False
        return exit_code != 0
