"""Tests for the Execution Queue."""

import asyncio

import pytest
import pytest_asyncio

from cadence.core.errors import InvocationError
from cadence.core.events import Event, EventType
from cadence.core.types import TaskKind
from cadence.runner.queue import ExecutionQueue
from cadence.session.registry import SessionRegistry


@pytest.fixture
def sessions(paths):
    return SessionRegistry(paths.session_file)


@pytest_asyncio.fixture
async def queue(paths, sessions, bus, fake_runner):
    q = ExecutionQueue(paths, sessions, bus=bus, runner=fake_runner)
    yield q
    await q.stop()


@pytest.mark.asyncio
class TestExecutionQueue:
    async def test_submit_returns_result(self, queue, fake_runner):
        result = await queue.submit("daily", "Summarise")
        assert result.stdout == "ran Summarise"
        assert result.exit_code == 0
        assert fake_runner.prompts == ["Summarise"]

    async def test_runs_in_project_directory(self, queue, fake_runner, paths):
        await queue.submit("daily", "Summarise")
        assert fake_runner.calls[0]["cwd"] == paths.project_dir

    async def test_log_record_written(self, queue, paths):
        await queue.submit("daily", "Summarise")
        records = list(paths.logs_dir.glob("daily-*.log"))
        assert len(records) == 1
        assert "Prompt: Summarise" in records[0].read_text()

    async def test_concurrent_submissions_never_overlap(self, queue, fake_runner):
        fake_runner.delay = 0.02
        labels = [f"job-{i}" for i in range(5)]

        await asyncio.gather(*(queue.submit(label, label) for label in labels))

        assert fake_runner.max_active == 1
        assert fake_runner.prompts == labels
        calls = fake_runner.calls
        for earlier, later in zip(calls, calls[1:]):
            assert earlier["end"] <= later["start"]

    async def test_spawn_failure_fails_only_its_submitter(self, queue, fake_runner):
        fake_runner.fail.add("broken")

        results = await asyncio.gather(
            queue.submit("first", "first"),
            queue.submit("broken", "broken"),
            queue.submit("after", "after"),
            return_exceptions=True,
        )

        assert results[0].exit_code == 0
        assert isinstance(results[1], InvocationError)
        assert results[1].label == "broken"
        assert results[2].exit_code == 0
        assert fake_runner.prompts == ["first", "broken", "after"]

    async def test_non_zero_exit_is_a_result(self, queue, fake_runner):
        fake_runner.exit_codes["flaky"] = 2
        result = await queue.submit("flaky", "flaky")
        assert result.exit_code == 2

    async def test_submit_nowait(self, queue, fake_runner):
        futures = [queue.submit_nowait(f"bg-{i}", f"bg-{i}") for i in range(3)]
        results = await asyncio.gather(*futures)

        assert [r.stdout for r in results] == ["ran bg-0", "ran bg-1", "ran bg-2"]

    async def test_submit_nowait_failure_is_logged(self, queue, fake_runner, caplog):
        fake_runner.fail.add("broken")
        future = queue.submit_nowait("broken", "broken")
        await queue.join()
        await asyncio.sleep(0)

        assert isinstance(future.exception(), InvocationError)
        assert "broken" in caplog.text

    async def test_first_run_creates_session_then_resumes(self, queue, fake_runner, sessions):
        await queue.submit("one", "one")
        await queue.submit("two", "two")

        first, second = (c["command"] for c in fake_runner.calls)
        identity = await sessions.peek()
        assert first[first.index("--session-id") + 1] == identity.id
        assert "--resume" not in first
        assert second[second.index("--resume") + 1] == identity.id
        assert "--session-id" not in second

    async def test_settings_read_fresh_for_each_task(self, queue, fake_runner, write_settings):
        write_settings({"security": {"level": "moderate"}})
        await queue.submit("one", "one")
        write_settings({"security": {"level": "locked"}})
        await queue.submit("two", "two")

        first, second = (c["command"] for c in fake_runner.calls)
        assert "--tools" not in first
        assert second[second.index("--tools") + 1] == "Read,Grep,Glob"

    async def test_invalid_settings_keep_last_good(self, queue, fake_runner, write_settings, paths):
        write_settings({"security": {"level": "strict"}})
        await queue.submit("one", "one")
        paths.settings_file.write_text("{broken")
        await queue.submit("two", "two")

        second = fake_runner.calls[1]["command"]
        assert second[second.index("--disallowedTools") + 1] == "Bash,WebSearch,WebFetch"

    async def test_script_kind_runs_bash_without_session(self, queue, fake_runner, sessions):
        await queue.submit("backup", "tar czf /tmp/x.tgz .", kind=TaskKind.SCRIPT)

        command = fake_runner.calls[0]["command"]
        assert command[0].endswith("bash")
        assert command[1:] == ["-c", "tar czf /tmp/x.tgz ."]
        assert await sessions.peek() is None

    async def test_stop_cancels_running_and_queued_submissions(self, queue, fake_runner):
        fake_runner.delay = 30
        running = asyncio.create_task(queue.submit("slow", "slow"))
        waiting = asyncio.create_task(queue.submit("next", "next"))
        while not fake_runner.calls:
            await asyncio.sleep(0.01)

        await queue.stop()

        for submission in (running, waiting):
            with pytest.raises(asyncio.CancelledError):
                await asyncio.wait_for(submission, timeout=1)
        assert fake_runner.prompts == ["slow"]

    async def test_events(self, queue, fake_runner, bus):
        received = []

        async def handler(event: Event):
            received.append((event.type, event.data.get("label")))

        bus.on("queue:*", handler)
        fake_runner.fail.add("broken")

        await queue.submit("good", "good")
        with pytest.raises(InvocationError):
            await queue.submit("broken", "broken")
        await queue.join()

        assert (EventType.QUEUE_COMPLETE, "good") in received
        assert (EventType.QUEUE_FAILED, "broken") in received
        assert (EventType.QUEUE_STARTED, "good") in received
        assert (EventType.QUEUE_SUBMITTED, "good") in received


@pytest.mark.asyncio
async def test_missing_executable_through_real_runner(paths, sessions, write_settings):
    write_settings({"assistant": {"executable": "/nonexistent/claude-cadence-test"}})
    queue = ExecutionQueue(paths, sessions)
    try:
        with pytest.raises(InvocationError):
            await queue.submit("daily", "hello")
        result = await queue.submit("script", "echo still-alive", kind=TaskKind.SCRIPT)
        assert result.stdout.strip() == "still-alive"
    finally:
        await queue.stop()
