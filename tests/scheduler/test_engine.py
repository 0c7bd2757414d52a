"""Tests for cadence/scheduler/engine.py"""
from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from cadence.core.errors import JobError
from cadence.core.events import Event, EventType
from cadence.core.types import SecurityLevel
from cadence.runner.queue import ExecutionQueue
from cadence.scheduler.engine import HEARTBEAT_LABEL, SchedulerEngine
from cadence.scheduler.status import read_state, to_millis
from cadence.scheduler.store import JobStore
from cadence.session.registry import SessionRegistry


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


MONDAY_9 = utc(2026, 10, 19, 9, 0, 5)


@pytest.fixture
def store(paths):
    return JobStore(paths.jobs_dir)


@pytest_asyncio.fixture
async def queue(paths, bus, fake_runner):
    q = ExecutionQueue(paths, SessionRegistry(paths.session_file), bus=bus, runner=fake_runner)
    yield q
    await q.stop()


@pytest.fixture
def engine(paths, store, queue, bus):
    return SchedulerEngine(paths, store, queue, bus=bus, clock=lambda: MONDAY_9)


@pytest.fixture
def collect(bus):
    """Record events of the given types."""
    received: list[Event] = []

    def _collect(*types: str) -> list[Event]:
        async def handler(event: Event):
            received.append(event)

        for event_type in types:
            bus.on(event_type, handler)
        return received

    return _collect


async def _load(engine: SchedulerEngine, store: JobStore) -> None:
    engine._jobs = await store.load_jobs()


@pytest.mark.asyncio
class TestTick:
    async def test_fires_matching_jobs_only(self, engine, store, write_job_file, fake_runner):
        write_job_file("daily", "---\nschedule: 0 9 * * *\nrecurring: true\n---\nSummarise")
        write_job_file("evening", "---\nschedule: 0 18 * * *\nrecurring: true\n---\nWrap up")
        await _load(engine, store)

        fired = await engine.tick(MONDAY_9)
        await engine.wait_idle()

        assert fired == ["daily"]
        assert fake_runner.prompts == ["Summarise"]

    async def test_each_minute_evaluated_once(self, engine, store, write_job_file, fake_runner):
        write_job_file("every", "---\nschedule: * * * * *\nrecurring: true\n---\ntick")
        await _load(engine, store)

        assert await engine.tick(utc(2026, 10, 19, 9, 0, 1)) == ["every"]
        assert await engine.tick(utc(2026, 10, 19, 9, 0, 59)) == []
        assert await engine.tick(utc(2026, 10, 19, 8, 59, 30)) == []
        assert await engine.tick(utc(2026, 10, 19, 9, 1, 0)) == ["every"]
        await engine.wait_idle()

        assert len(fake_runner.calls) == 2

    async def test_uses_configured_offset(self, engine, store, write_job_file, write_settings):
        write_settings({"timezone_offset_minutes": 120})
        write_job_file("daily", "---\nschedule: 0 9 * * *\nrecurring: true\n---\nSummarise")
        await _load(engine, store)

        assert await engine.tick(utc(2026, 10, 19, 7, 0)) == ["daily"]
        await engine.wait_idle()

    async def test_match_inside_exclusion_window_is_deferred(
        self, engine, store, write_job_file, write_settings, fake_runner, collect, paths
    ):
        write_settings({"heartbeat": {"exclude_windows": [{"start": "08:00", "end": "10:00"}]}})
        write_job_file("daily", "---\nschedule: 0 9 * * *\nrecurring: true\n---\nSummarise")
        await _load(engine, store)
        deferred = collect(EventType.JOB_DEFERRED)

        assert await engine.tick(MONDAY_9) == []
        await engine.wait_idle()

        assert fake_runner.calls == []
        assert [e.data["name"] for e in deferred] == ["daily"]
        # every future 09:00 is excluded too, so the next run is unknown
        assert read_state(paths.state_file).jobs[0].next_at is None

    async def test_one_shot_job_fires_once_and_is_cleared(
        self, engine, store, write_job_file, fake_runner
    ):
        path = write_job_file("dentist", "---\nschedule: 0 9 19 10 *\n---\nRemind me")
        await _load(engine, store)

        assert await engine.tick(MONDAY_9) == ["dentist"]
        assert engine.jobs == []
        await engine.wait_idle()

        assert "schedule:" not in path.read_text()
        assert store.load_jobs_sync() == []
        assert fake_runner.prompts == ["Remind me"]

    async def test_job_complete_carries_notify(
        self, engine, store, write_job_file, fake_runner, collect
    ):
        write_job_file("quiet", "---\nschedule: 0 9 * * *\nrecurring: true\nnotify: error\n---\nquiet")
        write_job_file("loud", "---\nschedule: 0 9 * * *\nrecurring: true\nnotify: error\n---\nloud")
        fake_runner.exit_codes["loud"] = 1
        await _load(engine, store)
        completed = collect(EventType.JOB_COMPLETE)

        await engine.tick(MONDAY_9)
        await engine.wait_idle()

        outcome = {e.data["name"]: (e.data["exit_code"], e.data["notify"]) for e in completed}
        assert outcome == {"quiet": (0, False), "loud": (1, True)}

    async def test_spawn_failure_is_reported_as_job_complete(
        self, engine, store, write_job_file, fake_runner, collect
    ):
        write_job_file("broken", "---\nschedule: 0 9 * * *\nrecurring: true\n---\nbroken")
        fake_runner.fail.add("broken")
        await _load(engine, store)
        completed = collect(EventType.JOB_COMPLETE)

        await engine.tick(MONDAY_9)
        await engine.wait_idle()

        (event,) = completed
        assert event.data["exit_code"] is None
        assert "not found" in event.data["error"]
        assert event.data["notify"] is True


@pytest.mark.asyncio
class TestSnapshot:
    async def test_snapshot_written_after_tick(self, engine, store, write_job_file, paths):
        write_job_file("quarter", "---\nschedule: */15 * * * *\nrecurring: true\n---\nq")
        await _load(engine, store)

        now = utc(2026, 10, 19, 10, 7)
        await engine.tick(now)

        state = json.loads(paths.state_file.read_text())
        assert state["pid"] == os.getpid()
        assert state["security"] == SecurityLevel.MODERATE.value
        assert state["nextHeartbeatAt"] is None
        assert state["jobs"] == [
            {"name": "quarter", "schedule": "*/15 * * * *", "nextAt": to_millis(utc(2026, 10, 19, 10, 15))}
        ]

    async def test_unmatchable_job_has_unknown_next_run(self, engine, store, write_job_file):
        write_job_file("never", "---\nschedule: 0 0 31 2 *\nrecurring: true\n---\nx")
        await _load(engine, store)

        snapshot = engine.snapshot(MONDAY_9)
        assert snapshot.jobs[0].next_at is None

    async def test_next_run_follows_timezone_across_dst(
        self, engine, store, write_job_file, write_settings
    ):
        write_settings({"timezone": "Europe/Berlin"})
        write_job_file("sunday", "---\nschedule: 0 9 * * 0\nrecurring: true\n---\nweekly")
        await _load(engine, store)
        engine.refresh_config()

        snapshot = engine.snapshot(utc(2026, 10, 24, 12, 0))

        # summer time has ended by Sunday morning, so 09:00 local is 08:00 UTC
        assert snapshot.jobs[0].next_at == to_millis(utc(2026, 10, 25, 8, 0))


@pytest.mark.asyncio
class TestTrigger:
    async def test_unknown_job(self, engine):
        with pytest.raises(JobError):
            await engine.trigger("ghost")

    async def test_manual_run(self, engine, store, write_job_file, fake_runner):
        write_job_file("dentist", "---\nschedule: 0 9 19 10 *\n---\nRemind me")
        await _load(engine, store)

        result = await (await engine.trigger("dentist"))
        await engine.wait_idle()

        assert result.stdout == "ran Remind me"
        # a manual run leaves a one-shot job scheduled
        assert [j.name for j in engine.jobs] == ["dentist"]
        assert store.load_jobs_sync()[0].schedule == "0 9 19 10 *"

    async def test_trigger_reads_jobs_added_after_start(self, engine, store, write_job_file, fake_runner):
        await _load(engine, store)
        write_job_file("late", "---\nschedule: 0 9 * * *\n---\nlate arrival")

        await (await engine.trigger("late"))
        await engine.wait_idle()
        assert fake_runner.prompts == ["late arrival"]


@pytest.mark.asyncio
class TestHeartbeat:
    async def test_fires_at_start_then_every_interval(
        self, engine, write_settings, fake_runner, queue
    ):
        write_settings({"heartbeat": {"enabled": True, "interval": 30, "prompt": "check in"}})
        t0 = utc(2026, 10, 19, 12, 0)

        assert engine.heartbeat_cycle(t0) == 60
        assert engine.next_heartbeat_at == t0 + timedelta(minutes=30)

        engine.heartbeat_cycle(t0 + timedelta(minutes=10))
        engine.heartbeat_cycle(t0 + timedelta(minutes=30))
        await queue.join()

        assert fake_runner.prompts == ["check in", "check in"]
        assert engine.next_heartbeat_at == t0 + timedelta(minutes=60)

    async def test_interval_change_applies_without_restart(self, engine, write_settings, fake_runner, queue):
        write_settings({"heartbeat": {"enabled": True, "interval": 60, "prompt": "check in"}})
        t0 = utc(2026, 10, 19, 12, 0)
        engine.heartbeat_cycle(t0)

        write_settings({"heartbeat": {"enabled": True, "interval": 5, "prompt": "check in"}})
        engine.heartbeat_cycle(t0 + timedelta(minutes=5))
        await queue.join()

        assert len(fake_runner.calls) == 2

    async def test_disabled(self, engine, fake_runner, queue):
        assert engine.heartbeat_cycle(utc(2026, 10, 19, 12, 0)) == 60
        await queue.join()

        assert engine.next_heartbeat_at is None
        assert fake_runner.calls == []

    async def test_skipped_inside_exclusion_window(self, engine, write_settings, fake_runner, queue):
        write_settings({"heartbeat": {
            "enabled": True,
            "interval": 15,
            "prompt": "check in",
            "exclude_windows": [{"start": "22:00", "end": "07:00"}],
        }})

        engine.heartbeat_cycle(utc(2026, 10, 19, 23, 0))
        await queue.join()

        assert fake_runner.calls == []
        assert engine.next_heartbeat_at == utc(2026, 10, 19, 23, 15)

    async def test_heartbeat_label(self, engine, write_settings, paths, queue):
        write_settings({"heartbeat": {"enabled": True, "interval": 15, "prompt": "check in"}})
        engine.heartbeat_cycle(utc(2026, 10, 19, 12, 0))
        await queue.join()

        assert list(paths.logs_dir.glob(f"{HEARTBEAT_LABEL}-*.log"))


@pytest.mark.asyncio
class TestLifecycle:
    async def test_bad_settings_keep_last_good(self, engine, write_settings, paths):
        write_settings({"security": {"level": "strict"}})
        assert engine.refresh_config().security.level is SecurityLevel.STRICT

        paths.settings_file.write_text("{broken")
        assert engine.refresh_config().security.level is SecurityLevel.STRICT

    async def test_start_writes_snapshot_and_stop_removes_it(
        self, engine, write_job_file, paths
    ):
        write_job_file("daily", "---\nschedule: 0 9 * * *\nrecurring: true\n---\nSummarise")

        await engine.start()
        try:
            assert [j.name for j in engine.jobs] == ["daily"]
            state = read_state(paths.state_file)
            assert [j.name for j in state.jobs] == ["daily"]
        finally:
            await engine.stop()

        assert not paths.state_file.exists()
