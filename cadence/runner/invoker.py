"""
Process invocation — command building, spawning, and the per-run log record.

Assistant command shape:

    <executable> -p <prompt> --output-format <fmt> [--model <m>]
        <security arguments>
        --session-id <id> [system prompt]      (new session)
        --resume <id>                          (existing session)

Script jobs run their body with `bash -c` in the project directory.

Nothing here interprets the output. A non-zero exit code is a normal
result; only a process that cannot be started raises InvocationError.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

from cadence.core.config import CadenceConfig
from cadence.core.errors import InvocationError
from cadence.core.types import InvocationResult
from cadence.security.policy import build_arguments
from cadence.session.registry import SessionHandle

logger = logging.getLogger(__name__)

PROMPT_FILE_SUFFIXES = (".md", ".txt", ".prompt")

_UNSAFE_LABEL = re.compile(r"[^A-Za-z0-9._-]+")


# ━━━ Prompt resolution ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def resolve_prompt(prompt: str, project_dir: Path) -> str:
    """
    Return the prompt text, reading it from a file when it names one.

    A prompt ending in .md, .txt or .prompt is treated as a path relative to
    the project directory. If that file is missing, the literal string is
    used instead.
    """
    text = prompt.strip()
    if not text.endswith(PROMPT_FILE_SUFFIXES) or "\n" in text:
        return prompt
    path = Path(text).expanduser()
    if not path.is_absolute():
        path = project_dir / path
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        logger.warning(f"Prompt file {path} not found, using the prompt text as-is")
        return prompt


# ━━━ Command building ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def build_assistant_command(
    config: CadenceConfig,
    prompt: str,
    session: SessionHandle,
    project_dir: Path,
) -> list[str]:
    """Full argv for one assistant invocation, from freshly loaded settings."""
    assistant = config.assistant
    cmd = [assistant.executable, "-p", prompt, "--output-format", assistant.output_format]
    if assistant.model:
        cmd += ["--model", assistant.model]

    cmd += build_arguments(
        config.security.level,
        config.security.allowed_tools,
        config.security.disallowed_tools,
        project_dir,
    )

    if session.is_new:
        cmd += ["--session-id", session.id]
        if assistant.system_prompt:
            _append_system_prompt(cmd, resolve_prompt(assistant.system_prompt, project_dir))
    else:
        cmd += ["--resume", session.id]
    return cmd


def build_script_command(body: str) -> list[str]:
    return [shutil.which("bash") or "/bin/bash", "-c", body]


def _append_system_prompt(cmd: list[str], text: str) -> None:
    # the assistant accepts one --append-system-prompt; merge with the scope text
    flag = "--append-system-prompt"
    if flag in cmd:
        i = cmd.index(flag) + 1
        cmd[i] = f"{cmd[i]}\n\n{text}"
    else:
        cmd += [flag, text]


# ━━━ Spawning ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


async def run_process(command: list[str], cwd: Path) -> InvocationResult:
    """
    Run a command to completion, capturing stdout and stderr in full.

    No timeout is applied. Raises InvocationError if the process cannot be
    started at all.
    """
    start = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except FileNotFoundError as e:
        raise InvocationError(
            f"Executable not found: {command[0]!r}",
            executable=command[0],
        ) from e
    except OSError as e:
        raise InvocationError(
            f"Failed to start {command[0]!r}: {e}",
            executable=command[0],
        ) from e

    stdout_bytes, stderr_bytes = await process.communicate()
    elapsed = int((time.monotonic() - start) * 1000)

    return InvocationResult(
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=process.returncode if process.returncode is not None else -1,
        duration_ms=elapsed,
    )


# ━━━ Log record ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def write_log_record(
    logs_dir: Path,
    label: str,
    prompt: str,
    result: InvocationResult,
    session: SessionHandle | None = None,
    started_at: datetime | None = None,
) -> Path | None:
    """
    Write the human-readable record of one run to <logs>/<label>-<timestamp>.log.

    Returns the path, or None if it could not be written (logged, not raised).
    """
    started_at = started_at or datetime.now(timezone.utc)
    stamp = started_at.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
    path = logs_dir / f"{_UNSAFE_LABEL.sub('_', label)}-{stamp}.log"

    lines = [
        f"# {label}",
        f"Date: {started_at.isoformat()}",
    ]
    if session is not None:
        lines.append(f"Session: {session.id} ({'new' if session.is_new else 'resumed'})")
    lines += [
        f"Prompt: {prompt}",
        f"Exit code: {result.exit_code}",
        "",
        "## Output",
        result.stdout,
    ]
    if result.stderr:
        lines += ["## Stderr", result.stderr]

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to write log record for {label}: {e}")
        return None
    return path
