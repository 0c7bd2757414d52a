"""
Process identity marker — <state>/daemon.pid.

Two lines: the daemon's pid and its start time (epoch seconds). Written at
startup, removed on clean shutdown; `cadence stop` and `cadence status`
read it from other processes.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from cadence.core.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DaemonProcess:
    pid: int
    started_at: float
    alive: bool


def write_marker(path: Path, pid: int | None = None) -> None:
    """
    Write the marker for this process.

    Raises ConfigError if another live daemon already owns the state
    directory. A stale marker (dead pid) is replaced.
    """
    existing = read_marker(path)
    if existing and existing.alive and existing.pid != (pid or os.getpid()):
        raise ConfigError(
            f"Daemon already running (pid {existing.pid})",
            details={"pid": existing.pid},
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid or os.getpid()}\n{time.time()}\n", encoding="utf-8")


def read_marker(path: Path) -> DaemonProcess | None:
    """Read the marker and check whether its process is alive. None if absent or garbled."""
    if not path.exists():
        return None
    try:
        lines = path.read_text(encoding="utf-8").strip().splitlines()
        pid = int(lines[0])
        started_at = float(lines[1]) if len(lines) > 1 else 0.0
    except (OSError, ValueError, IndexError):
        logger.warning(f"Ignoring unreadable pid marker {path}")
        return None
    return DaemonProcess(pid=pid, started_at=started_at, alive=is_alive(pid))


def remove_marker(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove pid marker {path}: {e}")


def is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)   # signal 0 only checks existence
    except ProcessLookupError:
        return False
    except PermissionError:
        return True       # exists, owned by someone else
    except OSError:
        return False
    return True


def send_signal(pid: int, sig: signal.Signals = signal.SIGTERM) -> bool:
    """Signal the process without waiting. True if the signal was delivered."""
    try:
        os.kill(pid, sig)
    except OSError as e:
        logger.warning(f"Could not signal pid {pid}: {e}")
        return False
    return True


def terminate(pid: int, timeout: float = 5.0) -> bool:
    """SIGTERM the process and wait for it to exit. True if it is gone."""
    if not is_alive(pid):
        return True
    if not send_signal(pid):
        return not is_alive(pid)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(0.1)
    return not is_alive(pid)
