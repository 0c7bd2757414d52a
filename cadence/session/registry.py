"""
Session Registry — the one persistent conversation identity.

The identity lives in <state>/session.json:

    {"sessionId": "...", "createdAt": "...", "lastUsedAt": "..."}

It is read from disk on every call, so a reset or backup performed by another
process (the dashboard, the bot) is honoured by the next invocation. Every
operation holds the registry lock for its whole read-modify-write.

Usage:
    registry = SessionRegistry(paths.session_file, bus=bus)
    handle = await registry.get_or_create()
    if handle.is_new:
        ...  # pass --session-id and the system prompt
    await registry.backup()   # -> "session_3.backup"
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cadence.core.bus import EventBus
from cadence.core.errors import SessionError
from cadence.core.events import Event, EventType

logger = logging.getLogger(__name__)

_BACKUP_NAME = re.compile(r"^session_(\d+)\.backup$")


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    """The persisted record."""

    id: str
    created_at: str
    last_used_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "sessionId": self.id,
            "createdAt": self.created_at,
            "lastUsedAt": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionIdentity:
        return cls(
            id=str(data["sessionId"]),
            created_at=str(data.get("createdAt", "")),
            last_used_at=str(data.get("lastUsedAt", "")),
        )


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """What the queue needs: the id, and whether it was just created."""

    id: str
    is_new: bool


class SessionRegistry:
    """Lock-guarded owner of session.json."""

    def __init__(self, session_file: Path, bus: EventBus | None = None) -> None:
        self._file = session_file
        self._bus = bus
        self._lock = asyncio.Lock()

    @property
    def session_file(self) -> Path:
        return self._file

    async def get_or_create(self) -> SessionHandle:
        """
        Return the current identity, marking it used, or create a new one.

        `is_new` is True only when this call created the identity.
        """
        async with self._lock:
            now = _now()
            existing = self._read()
            if existing is not None:
                self._write(
                    SessionIdentity(existing.id, existing.created_at, now)
                )
                return SessionHandle(id=existing.id, is_new=False)

            identity = SessionIdentity(id=str(uuid.uuid4()), created_at=now, last_used_at=now)
            self._write(identity)
            logger.info(f"Created session {identity.id}")

        await self._emit(EventType.SESSION_CREATED, {"session_id": identity.id})
        return SessionHandle(id=identity.id, is_new=True)

    async def peek(self) -> SessionIdentity | None:
        """Read the identity without marking it used."""
        async with self._lock:
            return self._read()

    async def reset(self) -> None:
        """Discard the identity. Safe to call when none exists."""
        async with self._lock:
            existed = self._file.exists()
            try:
                self._file.unlink(missing_ok=True)
            except OSError as e:
                raise SessionError(f"Failed to remove {self._file}: {e}") from e
        if existed:
            logger.info("Session reset")
            await self._emit(EventType.SESSION_RESET, {})

    async def backup(self) -> str | None:
        """
        Archive the identity as session_<n>.backup, n = highest existing + 1.

        Returns the backup file name, or None when there is no identity.
        """
        async with self._lock:
            existing = self._read()
            if existing is None:
                return None
            name = f"session_{self._next_backup_index()}.backup"
            try:
                os.replace(self._file, self._file.parent / name)
            except OSError as e:
                raise SessionError(f"Failed to archive session to {name}: {e}") from e
            logger.info(f"Session {existing.id} archived as {name}")

        await self._emit(EventType.SESSION_BACKUP, {"session_id": existing.id, "backup": name})
        return name

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _read(self) -> SessionIdentity | None:
        if not self._file.exists():
            return None
        try:
            return SessionIdentity.from_dict(json.loads(self._file.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            # an unreadable record is replaced by a fresh identity
            logger.warning(f"Ignoring unreadable session file {self._file}: {e}")
            return None

    def _write(self, identity: SessionIdentity) -> None:
        tmp = self._file.with_suffix(".json.tmp")
        try:
            self._file.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(identity.to_dict(), indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, self._file)
        except OSError as e:
            raise SessionError(f"Failed to write {self._file}: {e}") from e

    def _next_backup_index(self) -> int:
        indices = [
            int(m.group(1))
            for m in (_BACKUP_NAME.match(p.name) for p in self._file.parent.iterdir())
            if m
        ]
        return max(indices) + 1 if indices else 1

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(Event(type=event_type, data=data, source="session"))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
