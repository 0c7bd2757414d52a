"""
SchedulerEngine — the background asyncio tasks that fire jobs.

Design:
- Ticks on wall-clock boundaries (every tick_seconds, default each minute);
  each minute is evaluated exactly once even if a tick runs late or twice
- A job whose schedule matches the current local minute is handed to the
  ExecutionQueue without waiting; the queue serializes everything
- A match inside an exclusion window is deferred (skipped this minute)
- Non-recurring jobs fire once: they leave the in-memory list when they fire
  and their document's schedule is cleared after the run completes
- After every tick the status snapshot is recomputed with each job's next
  effective run and written to state.json
- The heartbeat loop is independent: if enabled it submits once at start,
  then every `interval` minutes, re-reading settings every cycle

Jobs are loaded once at start. Settings are re-read each cycle; if they
become invalid the last good settings stay in effect.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from cadence.core.bus import EventBus
from cadence.core.config import CadenceConfig
from cadence.core.errors import ConfigError, JobError
from cadence.core.events import Event, EventType
from cadence.core.paths import CadencePaths
from cadence.core.types import InvocationResult
from cadence.runner.queue import ExecutionQueue
from cadence.scheduler.cron import (
    ExclusionWindow,
    floor_minute,
    is_excluded,
    matches,
    next_effective_run,
)
from cadence.scheduler.job import Job
from cadence.scheduler.status import (
    JobStatus,
    StatusSnapshot,
    clear_state,
    to_millis,
    write_state,
)
from cadence.scheduler.store import JobStore

logger = logging.getLogger(__name__)

HEARTBEAT_LABEL = "heartbeat"
HEARTBEAT_POLL = 60   # seconds between heartbeat settings checks


class SchedulerEngine:
    """
    Usage:
        engine = SchedulerEngine(paths, store, queue, bus=bus)
        await engine.start()
        ...
        await engine.trigger("daily-report")   # manual run
        await engine.stop()
    """

    def __init__(
        self,
        paths: CadencePaths,
        store: JobStore,
        queue: ExecutionQueue,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._paths = paths
        self._store = store
        self._queue = queue
        self._bus = bus
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._config = CadenceConfig()
        self._jobs: list[Job] = []
        self._running = False
        self._started_at = self._clock()
        self._last_minute: datetime | None = None
        self._last_heartbeat_at: datetime | None = None
        self._next_heartbeat_at: datetime | None = None
        self._tick_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs)

    @property
    def config(self) -> CadenceConfig:
        return self._config

    @property
    def next_heartbeat_at(self) -> datetime | None:
        return self._next_heartbeat_at

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, jobs: list[Job] | None = None) -> None:
        """Load jobs (once), write the first snapshot, start both loops."""
        self._jobs = list(jobs) if jobs is not None else await self._store.load_jobs()
        self._started_at = self._clock()
        self.refresh_config()
        self._running = True
        self._queue.start()

        logger.info(f"SchedulerEngine started with {len(self._jobs)} job(s)")
        for job in self._jobs:
            logger.info(f"  - {job.name} [{job.schedule}]")

        self._write_snapshot(self._clock())
        self._tick_task = asyncio.create_task(self._tick_loop(), name="scheduler-tick")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")

    async def stop(self) -> None:
        """Stop both loops and remove the snapshot. In-flight work is abandoned."""
        self._running = False
        for task in (self._tick_task, self._heartbeat_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._heartbeat_task = None
        clear_state(self._paths.state_file)
        logger.info("SchedulerEngine stopped")

    async def wait_idle(self) -> None:
        """Wait for queued runs and their completion handling to finish."""
        await self._queue.join()
        await asyncio.sleep(0)
        while self._background:
            await asyncio.gather(*list(self._background))

    def refresh_config(self) -> CadenceConfig:
        """Re-read settings.json, keeping the last good settings on error."""
        try:
            self._config = CadenceConfig.load(self._paths.settings_file)
        except ConfigError as e:
            logger.warning(f"Keeping previous settings: {e}")
        return self._config

    # ── Minute tick ───────────────────────────────────────────────────────────

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._seconds_to_next_tick())
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"Scheduler tick error (non-fatal): {e}")

    def _seconds_to_next_tick(self) -> float:
        interval = max(1, self._config.scheduler.tick_seconds)
        now = time.time()
        # small margin so the wake-up lands inside the new minute
        return interval - (now % interval) + 0.05

    async def tick(self, now: datetime | None = None) -> list[str]:
        """
        Evaluate every job against the current minute. Returns fired job names.

        A minute already evaluated is skipped.
        """
        now = now or self._clock()
        minute = floor_minute(now)
        if self._last_minute is not None and minute <= self._last_minute:
            return []
        self._last_minute = minute

        config = self.refresh_config()
        offset = config.offset_minutes(minute)
        windows = _windows(config)

        fired: list[str] = []
        for job in list(self._jobs):
            if not matches(job.schedule, minute, offset):
                continue
            if is_excluded(minute, offset, windows):
                logger.info(f"Job {job.name!r} deferred: inside an exclusion window")
                await self._emit(EventType.JOB_DEFERRED, {"name": job.name})
                continue
            self._fire(job)
            fired.append(job.name)

        await self._emit(EventType.SCHEDULER_TICK, {"minute": minute.isoformat(), "fired": fired})
        self._write_snapshot(now)
        return fired

    def _fire(self, job: Job, manual: bool = False) -> asyncio.Future:
        if not job.recurring and not manual and job in self._jobs:
            self._jobs.remove(job)
        logger.info(f"Firing job {job.name!r}{' (manual)' if manual else ''}")
        if self._bus:
            self._bus.emit_nowait(Event(
                type=EventType.JOB_FIRED,
                source=f"scheduler:{job.name}",
                data={"name": job.name, "kind": job.kind.value, "manual": manual},
            ))
        future = self._queue.submit_nowait(job.name, job.prompt, job.kind)
        future.add_done_callback(functools.partial(self._on_job_done, job, manual))
        return future

    def _on_job_done(self, job: Job, manual: bool, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        task = asyncio.ensure_future(self._finish_job(job, manual, future))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _finish_job(self, job: Job, manual: bool, future: asyncio.Future) -> None:
        error = future.exception()
        result: InvocationResult | None = None if error else future.result()
        exit_code = result.exit_code if result else None

        await self._emit(EventType.JOB_COMPLETE, {
            "name": job.name,
            "exit_code": exit_code,
            "error": str(error) if error else None,
            "notify": job.should_notify(exit_code if exit_code is not None else 1),
            "output": result.stdout if result else "",
        }, source=f"scheduler:{job.name}")

        if not job.recurring and not manual:
            try:
                await self._store.clear_schedule(job.name)
            except OSError as e:
                logger.warning(f"Failed to clear schedule of one-shot job {job.name!r}: {e}")

    # ── Manual trigger ────────────────────────────────────────────────────────

    async def trigger(self, job_name: str) -> asyncio.Future:
        """
        Queue a job now, outside its schedule.

        Looks in the loaded jobs first, then on disk. Raises JobError if the
        job does not exist.
        """
        job = next((j for j in self._jobs if j.name == job_name), None)
        if job is None:
            job = await self._store.get(job_name)
        if job is None:
            raise JobError(f"No such job: {job_name!r}", job_name=job_name)
        return self._fire(job, manual=True)

    # ── Heartbeat ─────────────────────────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                delay = self.heartbeat_cycle()
            except Exception as e:
                logger.warning(f"Heartbeat error (non-fatal): {e}")
                delay = HEARTBEAT_POLL
            await asyncio.sleep(delay)

    def heartbeat_cycle(self, now: datetime | None = None) -> float:
        """
        Fire the heartbeat if it is due. Returns seconds until the next check.

        Settings are re-read here, so enabling, disabling or changing the
        interval takes effect within one check.
        """
        now = now or self._clock()
        heartbeat = self.refresh_config().heartbeat
        if not heartbeat.enabled:
            self._next_heartbeat_at = None
            self._last_heartbeat_at = None
            return HEARTBEAT_POLL

        interval = timedelta(minutes=heartbeat.interval)
        due = self._last_heartbeat_at is None or now >= self._last_heartbeat_at + interval
        if due:
            self._last_heartbeat_at = now
            self._fire_heartbeat(now)
        self._next_heartbeat_at = self._last_heartbeat_at + interval
        remaining = (self._next_heartbeat_at - now).total_seconds()
        return max(1.0, min(remaining, HEARTBEAT_POLL))

    def _fire_heartbeat(self, now: datetime) -> None:
        config = self._config
        offset = config.offset_minutes(now)
        if is_excluded(now, offset, _windows(config)):
            logger.info("Heartbeat skipped: inside an exclusion window")
            if self._bus:
                self._bus.emit_nowait(Event(
                    type=EventType.JOB_DEFERRED,
                    source="heartbeat",
                    data={"name": HEARTBEAT_LABEL},
                ))
            return
        if not config.heartbeat.prompt.strip():
            logger.warning("Heartbeat enabled but no prompt configured, skipping")
            return
        logger.info("Firing heartbeat")
        if self._bus:
            self._bus.emit_nowait(Event(type=EventType.HEARTBEAT_FIRED, source="heartbeat"))
        self._queue.submit_nowait(HEARTBEAT_LABEL, config.heartbeat.prompt)

    # ── Status snapshot ───────────────────────────────────────────────────────

    def snapshot(self, now: datetime | None = None) -> StatusSnapshot:
        now = now or self._clock()
        config = self._config
        offset = config.offset_minutes   # looked up per candidate minute
        windows = _windows(config)
        return StatusSnapshot(
            pid=os.getpid(),
            started_at=to_millis(self._started_at) or 0,
            security=config.security.level.value,
            next_heartbeat_at=to_millis(self._next_heartbeat_at),
            jobs=[
                JobStatus(
                    name=job.name,
                    schedule=job.schedule,
                    next_at=to_millis(next_effective_run(job.schedule, now, offset, windows)),
                )
                for job in self._jobs
            ],
        )

    def _write_snapshot(self, now: datetime) -> None:
        write_state(self._paths.state_file, self.snapshot(now))

    async def _emit(self, event_type: str, data: dict[str, Any], source: str = "scheduler") -> None:
        if self._bus:
            await self._bus.emit(Event(type=event_type, data=data, source=source))


def _windows(config: CadenceConfig) -> list[ExclusionWindow]:
    return [
        ExclusionWindow.parse(w.start, w.end, w.days)
        for w in config.heartbeat.exclude_windows
    ]
