"""
Cadence shared types — small value objects used across layers.

Dataclasses are frozen where the value never changes after creation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SecurityLevel(str, Enum):
    """How much the assistant process may do, from most to least restricted."""

    LOCKED = "locked"
    STRICT = "strict"
    MODERATE = "moderate"
    UNRESTRICTED = "unrestricted"


class TaskKind(str, Enum):
    """How a queued task body is executed."""

    PROMPT = "prompt"   # handed to the assistant verbatim
    SCRIPT = "script"   # run as a shell script


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """Captured outcome of one external process run."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
