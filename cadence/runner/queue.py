"""
ExecutionQueue — strictly serialized runner for every invocation.

All work (scheduled jobs, the heartbeat, manual triggers from the bot or
dashboard) funnels through one asyncio.Queue drained by a single worker
coroutine. That worker is the only place a process is spawned, so two
invocations never overlap and never share the session concurrently.

Per task the worker:
    1. resolves the session identity (prompt tasks only)
    2. loads settings fresh and builds the security arguments
    3. runs the process to completion, capturing stdout/stderr
    4. writes the log record
    5. emits queue:complete or queue:failed

A failing task fails only its own submitter; the worker moves on.

Usage:
    queue = ExecutionQueue(paths, sessions, bus=bus)
    result = await queue.submit("daily-report", "Summarise yesterday")
    future = queue.submit_nowait("heartbeat", prompt)   # fire-and-forget
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from cadence.core.bus import EventBus
from cadence.core.config import CadenceConfig
from cadence.core.errors import ConfigError, InvocationError
from cadence.core.events import Event, EventType
from cadence.core.paths import CadencePaths
from cadence.core.types import InvocationResult, TaskKind
from cadence.runner.invoker import (
    build_assistant_command,
    build_script_command,
    resolve_prompt,
    run_process,
    write_log_record,
)
from cadence.session.registry import SessionHandle, SessionRegistry

logger = logging.getLogger(__name__)

ProcessRunner = Callable[[list[str], Any], Awaitable[InvocationResult]]


@dataclass(slots=True)
class QueueTask:
    """One submission waiting for the worker."""

    label: str
    prompt: str
    kind: TaskKind
    future: asyncio.Future
    submitted_at: float = field(default_factory=time.time)


class ExecutionQueue:
    """FIFO, at most one invocation in flight."""

    def __init__(
        self,
        paths: CadencePaths,
        sessions: SessionRegistry,
        bus: EventBus | None = None,
        runner: ProcessRunner = run_process,
    ) -> None:
        self._paths = paths
        self._sessions = sessions
        self._bus = bus
        self._runner = runner
        self._queue: asyncio.Queue[QueueTask] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._current: QueueTask | None = None
        self._last_config = CadenceConfig()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the worker. Submitting also starts it lazily."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name="execution-queue")
            logger.debug("ExecutionQueue worker started")

    async def stop(self) -> None:
        """
        Stop the worker. The in-flight invocation is abandoned; its submitter
        and every queued submission see their future cancelled.
        """
        current = self._current
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        if current is not None and not current.future.done():
            current.future.cancel()
        while not self._queue.empty():
            task = self._queue.get_nowait()
            task.future.cancel()
            self._queue.task_done()
        logger.debug("ExecutionQueue worker stopped")

    async def join(self) -> None:
        """Wait until every task queued so far has finished."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def busy(self) -> bool:
        return self._current is not None

    # ── Submission ────────────────────────────────────────────────────────────

    async def submit(
        self,
        label: str,
        prompt: str,
        kind: TaskKind = TaskKind.PROMPT,
    ) -> InvocationResult:
        """
        Queue a task and wait for its result.

        Raises InvocationError if the process could not be started. A
        non-zero exit code is returned, not raised.
        """
        return await self._enqueue(label, prompt, kind)

    def submit_nowait(
        self,
        label: str,
        prompt: str,
        kind: TaskKind = TaskKind.PROMPT,
    ) -> asyncio.Future:
        """
        Queue a task without waiting. Failures are logged when the task ends;
        callers may attach their own done-callbacks to the returned future.
        """
        future = self._enqueue(label, prompt, kind)
        future.add_done_callback(functools.partial(_log_outcome, label))
        return future

    def _enqueue(self, label: str, prompt: str, kind: TaskKind) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[InvocationResult] = loop.create_future()
        self._queue.put_nowait(QueueTask(label=label, prompt=prompt, kind=kind, future=future))
        self.start()
        logger.debug(f"Queued {label!r} ({self._queue.qsize()} pending)")
        if self._bus:
            self._bus.emit_nowait(Event(
                type=EventType.QUEUE_SUBMITTED,
                source="queue",
                data={"label": label, "kind": kind.value, "pending": self._queue.qsize()},
            ))
        return future

    # ── Worker ────────────────────────────────────────────────────────────────

    async def _work(self) -> None:
        while True:
            task = await self._queue.get()
            if task.future.cancelled():
                self._queue.task_done()
                continue
            self._current = task
            try:
                await self._emit(EventType.QUEUE_STARTED, task, {})
                try:
                    result = await self._execute(task)
                except Exception as e:
                    # the error belongs to this submitter; the worker carries on
                    logger.warning(f"Task {task.label!r} failed: {e}")
                    if not task.future.done():
                        task.future.set_exception(e)
                    await self._emit(EventType.QUEUE_FAILED, task, {"error": str(e)})
                else:
                    if not task.future.done():
                        task.future.set_result(result)
                    await self._emit(EventType.QUEUE_COMPLETE, task, {
                        "exit_code": result.exit_code,
                        "duration_ms": result.duration_ms,
                        "stdout": result.stdout,
                        "stderr": result.stderr,
                    })
            finally:
                self._current = None
                self._queue.task_done()

    async def _execute(self, task: QueueTask) -> InvocationResult:
        project_dir = self._paths.project_dir
        session: SessionHandle | None = None

        if task.kind is TaskKind.SCRIPT:
            prompt = task.prompt
            command = build_script_command(prompt)
        else:
            prompt = resolve_prompt(task.prompt, project_dir)
            session = await self._sessions.get_or_create()
            config = self._load_config()
            command = build_assistant_command(config, prompt, session, project_dir)

        started_at = datetime.now(timezone.utc)
        logger.info(f"Running: {task.label}")
        try:
            result = await self._runner(command, project_dir)
        except InvocationError as e:
            raise InvocationError(
                e.message,
                label=task.label,
                executable=e.executable,
                details=e.details,
            ) from e

        log_file = write_log_record(
            self._paths.logs_dir, task.label, prompt, result, session, started_at
        )
        logger.info(f"Done: {task.label} (exit {result.exit_code}) → {log_file}")
        return result

    def _load_config(self) -> CadenceConfig:
        try:
            self._last_config = CadenceConfig.load(self._paths.settings_file)
        except ConfigError as e:
            logger.warning(f"Using last good settings: {e}")
        return self._last_config

    async def _emit(self, event_type: str, task: QueueTask, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(Event(
                type=event_type,
                source="queue",
                data={"label": task.label, "kind": task.kind.value, **data},
            ))


def _log_outcome(label: str, future: asyncio.Future) -> None:
    if future.cancelled():
        logger.info(f"Task {label!r} cancelled before it ran")
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Background task {label!r} failed: {error}")
