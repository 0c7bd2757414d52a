"""
Cadence Event System — types and constants.

Every terminal outcome of the execution queue, every job fire and every
session change produces an event. Collaborators (bot, dashboard, the JSONL
event log) subscribe instead of polling.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "queue:*" matches "queue:complete"
    """

    # Daemon lifecycle
    SYSTEM_START = "system:start"
    SYSTEM_STOP = "system:stop"

    # Execution queue
    QUEUE_SUBMITTED = "queue:submitted"
    QUEUE_STARTED = "queue:started"
    QUEUE_COMPLETE = "queue:complete"
    QUEUE_FAILED = "queue:failed"

    # Scheduler
    SCHEDULER_TICK = "scheduler:tick"
    JOB_FIRED = "job:fired"
    JOB_DEFERRED = "job:deferred"
    JOB_COMPLETE = "job:complete"
    HEARTBEAT_FIRED = "heartbeat:fired"

    # Session identity
    SESSION_CREATED = "session:created"
    SESSION_RESET = "session:reset"
    SESSION_BACKUP = "session:backup"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    A single event in the Cadence daemon.

    Typed by a hierarchical string, timestamped, and tagged with the
    component that produced it.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
