"""Tests for the Session Registry."""

import asyncio
import json

import pytest

from cadence.core.events import Event, EventType
from cadence.session.registry import SessionRegistry


@pytest.fixture
def registry(paths, bus):
    return SessionRegistry(paths.session_file, bus=bus)


@pytest.mark.asyncio
class TestSessionRegistry:
    async def test_first_call_creates(self, registry):
        handle = await registry.get_or_create()
        assert handle.is_new is True
        assert handle.id
        assert registry.session_file.exists()

    async def test_same_id_until_reset(self, registry):
        first = await registry.get_or_create()
        second = await registry.get_or_create()
        third = await registry.get_or_create()

        assert second.id == first.id == third.id
        assert (second.is_new, third.is_new) == (False, False)

    async def test_use_updates_last_used(self, registry):
        await registry.get_or_create()
        created = await registry.peek()
        await asyncio.sleep(0.01)
        await registry.get_or_create()
        used = await registry.peek()

        assert used.created_at == created.created_at
        assert used.last_used_at > created.last_used_at

    async def test_peek_does_not_touch(self, registry):
        assert await registry.peek() is None
        await registry.get_or_create()
        before = registry.session_file.read_text()
        await registry.peek()
        assert registry.session_file.read_text() == before

    async def test_persisted_format(self, registry):
        handle = await registry.get_or_create()
        data = json.loads(registry.session_file.read_text())
        assert data["sessionId"] == handle.id
        assert set(data) == {"sessionId", "createdAt", "lastUsedAt"}

    async def test_reset_starts_a_new_identity(self, registry):
        first = await registry.get_or_create()
        await registry.reset()
        second = await registry.get_or_create()

        assert second.is_new is True
        assert second.id != first.id

    async def test_reset_is_idempotent(self, registry):
        await registry.reset()
        await registry.reset()
        assert await registry.peek() is None

    async def test_backup_numbers_increase(self, registry):
        first = await registry.get_or_create()
        assert await registry.backup() == "session_1.backup"
        assert not registry.session_file.exists()

        archived = json.loads((registry.session_file.parent / "session_1.backup").read_text())
        assert archived["sessionId"] == first.id

        second = await registry.get_or_create()
        assert second.is_new is True
        assert await registry.backup() == "session_2.backup"

    async def test_backup_continues_after_highest_existing(self, registry):
        (registry.session_file.parent / "session_7.backup").write_text("{}")
        (registry.session_file.parent / "session_3.backup").write_text("{}")
        await registry.get_or_create()

        assert await registry.backup() == "session_8.backup"

    async def test_backup_without_session(self, registry):
        assert await registry.backup() is None

    async def test_external_removal_is_honoured(self, registry):
        first = await registry.get_or_create()
        # another process (the dashboard) deletes the record
        registry.session_file.unlink()

        second = await registry.get_or_create()
        assert second.is_new is True
        assert second.id != first.id

    async def test_unreadable_record_is_replaced(self, registry):
        registry.session_file.write_text("{garbage")
        handle = await registry.get_or_create()
        assert handle.is_new is True

    async def test_concurrent_callers_share_one_identity(self, registry):
        handles = await asyncio.gather(*(registry.get_or_create() for _ in range(10)))

        assert len({h.id for h in handles}) == 1
        assert sum(h.is_new for h in handles) == 1

    async def test_events(self, registry, bus):
        received = []

        async def handler(event: Event):
            received.append(event.type)

        bus.on("session:*", handler)
        await registry.get_or_create()
        await registry.get_or_create()
        await registry.backup()
        await registry.get_or_create()
        await registry.reset()

        assert received == [
            EventType.SESSION_CREATED,
            EventType.SESSION_BACKUP,
            EventType.SESSION_CREATED,
            EventType.SESSION_RESET,
        ]
