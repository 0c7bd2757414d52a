"""
Status snapshot — state.json, read by status displays outside the daemon.

    {
      "pid": 4242,
      "startedAt": 1760864400000,
      "security": "moderate",
      "nextHeartbeatAt": 1760865300000,
      "jobs": [{"name": "daily-report", "schedule": "0 9 * * *", "nextAt": 1760950800000}]
    }

Timestamps are epoch milliseconds; null means unknown (disabled heartbeat,
or no run within the scan horizon).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobStatus:
    name: str
    schedule: str
    next_at: int | None


@dataclass(slots=True)
class StatusSnapshot:
    pid: int
    started_at: int
    security: str
    next_heartbeat_at: int | None = None
    jobs: list[JobStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "startedAt": self.started_at,
            "security": self.security,
            "nextHeartbeatAt": self.next_heartbeat_at,
            "jobs": [
                {"name": j.name, "schedule": j.schedule, "nextAt": j.next_at}
                for j in self.jobs
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusSnapshot:
        return cls(
            pid=int(data.get("pid", 0)),
            started_at=int(data.get("startedAt", 0)),
            security=str(data.get("security", "")),
            next_heartbeat_at=data.get("nextHeartbeatAt"),
            jobs=[
                JobStatus(
                    name=str(j.get("name", "")),
                    schedule=str(j.get("schedule", "")),
                    next_at=j.get("nextAt"),
                )
                for j in data.get("jobs", [])
            ],
        )


def to_millis(instant: datetime | None) -> int | None:
    return int(instant.timestamp() * 1000) if instant is not None else None


def write_state(path: Path, snapshot: StatusSnapshot) -> bool:
    """Atomically replace state.json. Failure is logged, not raised."""
    tmp = path.with_suffix(".json.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        logger.warning(f"Failed to write status snapshot {path}: {e}")
        return False
    return True


def read_state(path: Path) -> StatusSnapshot | None:
    if not path.exists():
        return None
    try:
        return StatusSnapshot.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Unreadable status snapshot {path}: {e}")
        return None


def clear_state(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove status snapshot {path}: {e}")


def format_countdown(target_ms: int | None, now_ms: int) -> str:
    """'in 1h 05m', 'in 42s', 'due' or 'unknown'."""
    if target_ms is None:
        return "unknown"
    seconds = (target_ms - now_ms) // 1000
    if seconds <= 0:
        return "due"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"in {hours}h {minutes:02d}m"
    if minutes:
        return f"in {minutes}m {secs:02d}s"
    return f"in {secs}s"
