"""
Cadence — scheduled, session-continuous runs of an AI assistant.

Public API:
    from cadence import Daemon, ExecutionQueue, SessionRegistry, SchedulerEngine
"""

__version__ = "0.1.0"

# Core
from cadence.core.bus import EventBus
from cadence.core.config import CadenceConfig
from cadence.core.errors import CadenceError
from cadence.core.events import Event, EventType
from cadence.core.paths import CadencePaths
from cadence.core.types import InvocationResult, SecurityLevel, TaskKind

# Scheduling
from cadence.scheduler.cron import matches, next_effective_run, next_match
from cadence.scheduler.engine import SchedulerEngine
from cadence.scheduler.job import Job, NotifyMode
from cadence.scheduler.store import JobStore

# Execution
from cadence.runner.queue import ExecutionQueue
from cadence.security.policy import build_arguments
from cadence.session.registry import SessionRegistry

from cadence.daemon import Daemon

__all__ = [
    # Core
    "EventBus",
    "CadenceConfig",
    "CadenceError",
    "Event",
    "EventType",
    "CadencePaths",
    "InvocationResult",
    "SecurityLevel",
    "TaskKind",
    # Scheduling
    "matches",
    "next_match",
    "next_effective_run",
    "SchedulerEngine",
    "Job",
    "NotifyMode",
    "JobStore",
    # Execution
    "ExecutionQueue",
    "build_arguments",
    "SessionRegistry",
    "Daemon",
]
