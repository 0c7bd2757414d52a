"""
Security Policy — maps a security level to assistant process arguments.

The assistant always runs with its interactive permission prompts disabled
(there is nobody to answer them); the arguments built here are the only
restriction it gets.

    level          tool restriction                      directory scope
    locked         --tools Read,Grep,Glob                yes
    strict         --disallowedTools Bash,WebSearch,...  yes
    moderate       none                                  yes
    unrestricted   none                                  no

Explicit allow/deny lists from settings are appended after the level's
arguments. Level denials win: an allow-list entry naming a tool the level
denies is dropped with a warning.

The policy is rebuilt for every invocation from freshly loaded settings.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from cadence.core.types import SecurityLevel

logger = logging.getLogger(__name__)

SKIP_PERMISSIONS = "--dangerously-skip-permissions"

READ_ONLY_TOOLS = ("Read", "Grep", "Glob")
STRICT_DENIED_TOOLS = ("Bash", "WebSearch", "WebFetch")

DIRECTORY_SCOPE_PROMPT = (
    "You are running unattended inside the project directory {project_dir}. "
    "Only read, create or modify files inside that directory. "
    "Do not access, list or change anything outside it."
)


def build_arguments(
    level: SecurityLevel,
    allowed_tools: Iterable[str] = (),
    disallowed_tools: Iterable[str] = (),
    project_dir: Path | None = None,
) -> list[str]:
    """
    Build the security argument set for one invocation.

    Args:
        level: Configured security level
        allowed_tools: Extra tools to allow (filtered against the level)
        disallowed_tools: Extra tools to deny
        project_dir: Directory the scope instruction confines the assistant to

    Returns:
        Argument list, always starting with the permission-skip flag
    """
    args = [SKIP_PERMISSIONS]

    if level is SecurityLevel.LOCKED:
        args += ["--tools", ",".join(READ_ONLY_TOOLS)]
    elif level is SecurityLevel.STRICT:
        args += ["--disallowedTools", ",".join(STRICT_DENIED_TOOLS)]

    scope = directory_scope_prompt(level, project_dir)
    if scope:
        args += ["--append-system-prompt", scope]

    allowed = [tool for tool in allowed_tools if _permitted(level, tool)]
    if allowed:
        args += ["--allowedTools", *allowed]

    disallowed = list(disallowed_tools)
    if disallowed:
        args += ["--disallowedTools", *disallowed]

    return args


def directory_scope_prompt(level: SecurityLevel, project_dir: Path | None) -> str:
    """Scope instruction for the level, or "" when the level has none."""
    if level is SecurityLevel.UNRESTRICTED:
        return ""
    return DIRECTORY_SCOPE_PROMPT.format(project_dir=project_dir or Path.cwd())


def _permitted(level: SecurityLevel, tool: str) -> bool:
    # "Bash(git log:*)" is governed by its base tool "Bash"
    base = tool.split("(", 1)[0].strip()
    if level is SecurityLevel.LOCKED and base not in READ_ONLY_TOOLS:
        logger.warning(f"Dropping allowed tool {tool!r}: level 'locked' is read-only")
        return False
    if level is SecurityLevel.STRICT and base in STRICT_DENIED_TOOLS:
        logger.warning(f"Dropping allowed tool {tool!r}: denied by level 'strict'")
        return False
    return True
