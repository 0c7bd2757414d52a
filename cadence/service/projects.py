"""
Known projects — every project a daemon has been started for on this machine.

The daemon records its project directory at startup; `cadence stop --all`
walks the list and stops whichever of them still has a live marker. Entries
are never pruned: a project without a live daemon is simply skipped.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from cadence.core.paths import projects_file

logger = logging.getLogger(__name__)


def known_projects(path: Path | None = None) -> list[Path]:
    """Recorded project directories, oldest first. Empty if none or unreadable."""
    path = path or projects_file()
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable project list {path}: {e}")
        return []
    if not isinstance(data, list):
        logger.warning(f"Ignoring project list {path}: expected a JSON array")
        return []
    return [Path(entry) for entry in data if isinstance(entry, str) and entry]


def remember_project(project_dir: Path, path: Path | None = None) -> bool:
    """
    Add a project directory to the list. Returns True if it was added.

    A failed write is logged, not raised; the daemon runs without it.
    """
    path = path or projects_file()
    project = str(project_dir.resolve())
    entries = [str(p) for p in known_projects(path)]
    if project in entries:
        return False

    tmp = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(entries + [project], indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        logger.warning(f"Could not record project {project} in {path}: {e}")
        return False
    return True
