"""
JobStore — job documents on disk.

Directory: <state>/jobs/*.md  (one document per job, name = file stem)

Loading is lenient: a document that cannot be turned into a valid Job is
skipped with a warning and the rest of the directory still loads. Nothing
here raises for bad data on the load path.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from cadence.core.errors import JobError, ScheduleError
from cadence.core.types import TaskKind
from cadence.scheduler.cron import parse_expression
from cadence.scheduler.job import Job, NotifyMode

logger = logging.getLogger(__name__)

DELIMITER = "---"
JOB_SUFFIX = ".md"

_TRUE_VALUES = {"true", "yes", "1"}
_QUOTES = re.compile(r"^[\"']|[\"']$")
_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class JobStore:
    """
    Reads and rewrites job documents. All blocking ops run in executor.

    Usage:
        store = JobStore(paths.jobs_dir)
        jobs = await store.load_jobs()
        await store.clear_schedule("remind-standup")
    """

    def __init__(self, jobs_dir: Path) -> None:
        self._jobs_dir = jobs_dir

    @property
    def jobs_dir(self) -> Path:
        return self._jobs_dir

    async def load_jobs(self) -> list[Job]:
        """Load every valid job document, ordered by name."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_jobs_sync)

    def load_jobs_sync(self) -> list[Job]:
        if not self._jobs_dir.is_dir():
            logger.debug(f"Jobs directory {self._jobs_dir} does not exist")
            return []
        jobs: list[Job] = []
        for path in sorted(self._jobs_dir.glob(f"*{JOB_SUFFIX}")):
            job = self._read(path)
            if job is not None:
                jobs.append(job)
        logger.debug(f"Loaded {len(jobs)} job(s) from {self._jobs_dir}")
        return jobs

    async def get(self, job_name: str) -> Job | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, self._path(job_name))

    async def clear_schedule(self, job_name: str) -> bool:
        """
        Remove the schedule line from a job document.

        Used to disable one-shot jobs after they fire. Returns False (and
        changes nothing) if the document or its schedule line is absent.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._clear_schedule_sync, job_name)

    def _clear_schedule_sync(self, job_name: str) -> bool:
        path = self._path(job_name)
        if not path.is_file():
            return False
        parts = split_document(path.read_text(encoding="utf-8"))
        if parts is None:
            return False
        header, body = parts
        kept = [line for line in header if not line.strip().startswith("schedule:")]
        if len(kept) == len(header):
            return False
        path.write_text(_render(kept, body), encoding="utf-8")
        logger.info(f"Cleared schedule of job {job_name!r}")
        return True

    async def write_job(
        self,
        name: str,
        schedule: str,
        prompt: str = "",
        *,
        recurring: bool = True,
        notify: NotifyMode = NotifyMode.ALWAYS,
        kind: TaskKind = TaskKind.PROMPT,
        overwrite: bool = False,
    ) -> Job:
        """Validate and write a job document. Raises JobError on bad input."""
        job = Job(
            name=name,
            schedule=schedule.strip(),
            prompt=prompt.strip(),
            recurring=recurring,
            notify=notify,
            kind=kind,
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, job, overwrite)
        return job

    def _write_sync(self, job: Job, overwrite: bool) -> None:
        if not _VALID_NAME.match(job.name):
            raise JobError(f"Invalid job name {job.name!r}", job_name=job.name)
        try:
            parse_expression(job.schedule)
        except ScheduleError as e:
            raise JobError(str(e), job_name=job.name) from e
        if job.kind is TaskKind.SCRIPT and not job.prompt:
            raise JobError("Script job needs a body", job_name=job.name)
        path = self._path(job.name)
        if path.exists() and not overwrite:
            raise JobError(f"Job {job.name!r} already exists", job_name=job.name)
        header = [
            f'schedule: "{job.schedule}"',
            f"recurring: {'true' if job.recurring else 'false'}",
            f"notify: {_NOTIFY_VALUES[job.notify]}",
            f"type: {job.kind.value}",
        ]
        self._jobs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(_render(header, job.prompt), encoding="utf-8")
        logger.info(f"Wrote job {job.name!r} [{job.schedule}]")

    async def delete_job(self, job_name: str) -> bool:
        """Remove a job document. Takes effect on the next load."""
        path = self._path(job_name)
        if not path.is_file():
            return False
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, path.unlink)
        logger.info(f"Deleted job {job_name!r}")
        return True

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _path(self, job_name: str) -> Path:
        return self._jobs_dir / f"{job_name}{JOB_SUFFIX}"

    def _read(self, path: Path) -> Job | None:
        if not path.is_file():
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping job {path.name}: unreadable ({e})")
            return None
        return parse_job_document(path.stem, content)


_NOTIFY_VALUES = {
    NotifyMode.ALWAYS: "true",
    NotifyMode.NEVER: "false",
    NotifyMode.ERROR: "error",
}


def split_document(content: str) -> tuple[list[str], str] | None:
    """Split a document into header lines and body. None if delimiters are missing."""
    lines = content.replace("\r\n", "\n").split("\n")
    if not lines or lines[0].strip() != DELIMITER:
        return None
    for i in range(1, len(lines)):
        if lines[i].strip() == DELIMITER:
            return lines[1:i], "\n".join(lines[i + 1:]).strip()
    return None


def parse_job_document(name: str, content: str) -> Job | None:
    """Turn one document into a Job, or log why it was skipped and return None."""
    parts = split_document(content)
    if parts is None:
        logger.warning(f"Skipping job {name!r}: missing '---' header delimiters")
        return None
    header_lines, body = parts

    header: dict[str, str] = {}
    for line in header_lines:
        key, sep, value = line.strip().partition(":")
        if not sep:
            continue
        # first occurrence of a key wins
        header.setdefault(key.strip().lower(), _unquote(value))

    schedule = header.get("schedule", "")
    if not schedule:
        logger.warning(f"Skipping job {name!r}: no schedule")
        return None
    try:
        parse_expression(schedule)
    except ScheduleError as e:
        logger.warning(f"Skipping job {name!r}: {e}")
        return None

    kind = TaskKind.SCRIPT if header.get("type", "").lower() == "script" else TaskKind.PROMPT
    if kind is TaskKind.SCRIPT and not body:
        logger.warning(f"Skipping job {name!r}: script job has no body")
        return None

    recurring_raw = header.get("recurring", header.get("daily", ""))
    return Job(
        name=name,
        schedule=schedule,
        prompt=body,
        recurring=recurring_raw.lower() in _TRUE_VALUES,
        notify=_parse_notify(header.get("notify", "")),
        kind=kind,
    )


def _parse_notify(raw: str) -> NotifyMode:
    value = raw.lower()
    if value in ("false", "no"):
        return NotifyMode.NEVER
    if value == "error":
        return NotifyMode.ERROR
    return NotifyMode.ALWAYS


def _unquote(raw: str) -> str:
    return _QUOTES.sub("", raw.strip())


def _render(header: list[str], body: str) -> str:
    header_text = "\n".join(line for line in header if line.strip())
    return f"{DELIMITER}\n{header_text}\n{DELIMITER}\n{body.strip()}\n"
