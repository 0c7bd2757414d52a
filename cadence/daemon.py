"""
Daemon — wires the components together and owns startup/shutdown.

Startup:
    1. ensure the state directories (fatal on failure)
    2. write default settings if none exist
    3. configure logging and the JSONL event log
    4. write the pid marker and record the project for `cadence stop --all`
    5. load jobs once and start the scheduler

Shutdown (SIGTERM / SIGINT): stop the scheduler and the queue, remove the
pid marker and the status snapshot. In-flight invocations are abandoned.

Collaborators running in the same process (a bot front end, the dashboard)
reach the queue, session registry and scheduler through the Daemon's
attributes and subscribe to `daemon.bus`.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from cadence.core.bus import EventBus
from cadence.core.config import init_settings
from cadence.core.errors import StorageError
from cadence.core.events import Event, EventType
from cadence.core.logsetup import EventLogger, setup_logging
from cadence.core.paths import CadencePaths
from cadence.runner.queue import ExecutionQueue
from cadence.scheduler.engine import SchedulerEngine
from cadence.scheduler.status import clear_state
from cadence.scheduler.store import JobStore
from cadence.service.pid import remove_marker, write_marker
from cadence.service.projects import remember_project
from cadence.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


class Daemon:
    """
    Usage:
        daemon = Daemon(CadencePaths.for_project(Path("~/proj").expanduser()))
        asyncio.run(daemon.run())
    """

    def __init__(self, paths: CadencePaths, console_level: int = logging.INFO) -> None:
        self.paths = paths
        self._console_level = console_level
        self.bus = EventBus()
        self.sessions = SessionRegistry(paths.session_file, bus=self.bus)
        self.queue = ExecutionQueue(paths, self.sessions, bus=self.bus)
        self.store = JobStore(paths.jobs_dir)
        self.engine = SchedulerEngine(paths, self.store, self.queue, bus=self.bus)
        self._stop_event: asyncio.Event | None = None

    async def run(self) -> None:
        """Run until a termination signal or request_stop()."""
        self._stop_event = asyncio.Event()
        self._prepare()
        write_marker(self.paths.pid_file)
        self._install_signal_handlers()

        try:
            await self.bus.emit(Event(
                type=EventType.SYSTEM_START,
                source="daemon",
                data={"project_dir": str(self.paths.project_dir)},
            ))
            await self.engine.start()
            logger.info(f"Cadence daemon running for {self.paths.project_dir}")
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        logger.info("Shutting down")
        await self.engine.stop()
        await self.queue.stop()
        remove_marker(self.paths.pid_file)
        clear_state(self.paths.state_file)
        self._remove_signal_handlers()
        await self.bus.emit(Event(type=EventType.SYSTEM_STOP, source="daemon"))

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _prepare(self) -> None:
        self.paths.ensure()
        setup_logging(self.paths.logs_dir, console_level=self._console_level)
        remember_project(self.paths.project_dir)
        try:
            init_settings(self.paths.settings_file)
        except StorageError as e:
            logger.warning(f"Running on default settings: {e}")
        self.bus.on(EventType.ALL, EventLogger(self.paths.logs_dir).handle)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # not available off the main thread or on Windows
                logger.debug(f"Signal handler for {sig.name} not installed")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


def run_daemon(project_dir: Path | None = None, console_level: int = logging.INFO) -> None:
    asyncio.run(Daemon(CadencePaths.for_project(project_dir), console_level).run())
