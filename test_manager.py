"""
Tests for the job manager: execution, run history and notifications.

Jobs run through /bin/sh without login/interactive flags.
"""

import asyncio
import threading
import time

import pytest

from cronos.config import Settings
from cronos.manager import LAUNCH_FAILURE_EXIT_CODE, JobManager
from cronos.models import CustomCommand, Job
from cronos.schedule import DailySchedule
from cronos.store import JobStore


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    def notify(self, notification):
        self.notifications.append(notification)


@pytest.fixture
def settings():
    return Settings(shell="/bin/sh", shell_flags=())


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path):
    return JobStore(str(tmp_path / "data"))


@pytest.fixture
def manager(store, notifier, settings):
    return JobManager(store=store, notifier=notifier, settings_provider=lambda: settings)


def make_job(command, name="job"):
    return Job(
        name=name,
        command=CustomCommand(text=command),
        working_directory="~",
        schedule=DailySchedule(hour=2, minute=0),
    )


def test_add_job_is_persisted(manager, store):
    job = make_job("echo hi", name="greeter")
    manager.add_job(job)

    assert store.load_jobs() == [job]
    assert manager.find_job("greeter") is job
    assert manager.find_job(job.id) is job
    assert manager.find_job("nobody") is None
    assert manager.search("GREET") == [job]


def test_run_job_success(manager, store, notifier):
    job = make_job("echo hello")
    manager.add_job(job)

    assert asyncio.run(manager.run_job(job)) is True

    runs = manager.runs_for(job.id)
    assert len(runs) == 1
    assert runs[0].exit_code == 0
    assert runs[0].success is True
    assert not runs[0].in_flight
    assert manager.read_log_for_run(runs[0].id) == ("hello\n", "")
    assert manager.live_stdout(job.id) == "hello\n"
    assert manager.current_run_start_time(job.id) == runs[0].started_at

    saved = store.load_jobs()[0]
    assert saved.last_run is not None
    assert saved.last_run_successful is True

    assert len(notifier.notifications) == 1
    notification = notifier.notifications[0]
    assert notification.success
    assert notification.output_preview == "hello"
    assert not manager.is_running(job.id)


def test_run_job_failure_records_exit_code(manager, notifier):
    job = make_job("echo partial; echo broken >&2; exit 1")
    manager.add_job(job)

    assert asyncio.run(manager.run_job(job)) is False

    run = manager.latest_run(job.id)
    assert run.exit_code == 1
    assert run.success is False
    assert manager.get_job(job.id).last_run_successful is False
    assert manager.live_stderr(job.id) == "broken\n"
    assert notifier.notifications[0].title == "Job Failed"
    assert notifier.notifications[0].output_preview == "broken"


def test_launch_failure_completes_run(store, notifier):
    manager = JobManager(
        store=store,
        notifier=notifier,
        settings_provider=lambda: Settings(shell="/nonexistent/shell", shell_flags=()),
    )
    job = make_job("echo hi")
    manager.add_job(job)

    assert asyncio.run(manager.run_job(job)) is False

    run = manager.latest_run(job.id)
    assert run.exit_code == LAUNCH_FAILURE_EXIT_CODE
    assert run.success is False
    assert not run.in_flight
    assert "Failed to run job" in manager.error_message
    assert notifier.notifications[0].success is False


def test_double_trigger_runs_once(manager):
    job = make_job("sleep 0.3; echo done")
    manager.add_job(job)

    async def trigger_twice():
        first = manager.start_job(job)
        second = manager.start_job(job)
        return await asyncio.gather(first, second)

    results = asyncio.run(trigger_twice())

    assert sorted(results, key=str) == [None, True]
    assert len(manager.runs_for(job.id)) == 1


def test_success_notification_can_be_disabled(store, notifier):
    manager = JobManager(
        store=store,
        notifier=notifier,
        settings_provider=lambda: Settings(shell="/bin/sh", shell_flags=(), notify_on_success=False),
    )
    ok = make_job("true", name="ok")
    bad = make_job("false", name="bad")
    manager.add_job(ok)
    manager.add_job(bad)

    asyncio.run(manager.run_job(ok))
    asyncio.run(manager.run_job(bad))

    assert [n.job_name for n in notifier.notifications] == ["bad"]


def test_delete_job_removes_history(manager, store):
    job = make_job("echo again")
    other = make_job("echo other", name="other")
    manager.add_job(job)
    manager.add_job(other)

    async def run_three_times():
        for _ in range(3):
            await manager.run_job(job)
        await manager.run_job(other)

    asyncio.run(run_three_times())
    runs = manager.runs_for(job.id)
    paths = [path for run in runs for path in store.log_files_for_run(run.id)]
    assert len(paths) == 6
    assert all(path.exists() for path in paths)

    manager.delete_job(job)

    assert manager.runs_for(job.id) == []
    assert not any(path.exists() for path in paths)
    assert len(manager.runs_for(other.id)) == 1
    assert [j.id for j in store.load_jobs()] == [other.id]


def test_delete_while_running_leaves_no_run(manager, store):
    job = make_job("sleep 0.3; echo late")
    manager.add_job(job)

    async def delete_mid_run():
        task = manager.start_job(job)
        await asyncio.sleep(0.1)
        assert manager.is_running(job.id)
        manager.delete_job(job)
        return await task

    assert asyncio.run(delete_mid_run()) is True
    assert store.load_runs_index() == []
    assert store.load_jobs() == []


def test_update_and_toggle(manager, store):
    job = make_job("echo hi")
    manager.add_job(job)

    manager.toggle_job(job)
    assert manager.get_job(job.id).enabled is False
    assert store.load_jobs()[0].enabled is False

    manager.update_job(make_job("echo stranger", name="stranger"))
    assert [j.name for j in manager.jobs] == ["job"]


def test_output_listeners_receive_chunks(manager):
    job = make_job("echo out; echo err >&2")
    manager.add_job(job)
    seen = []
    manager.output_listeners.append(lambda job_id, stream, text: seen.append((job_id, stream, text)))

    asyncio.run(manager.run_job(job))

    assert (job.id, "stdout", "out\n") in seen
    assert (job.id, "stderr", "err\n") in seen


def test_start_arms_enabled_jobs(manager):
    enabled = make_job("true", name="enabled")
    disabled = make_job("true", name="disabled")
    disabled.enabled = False
    manager.add_job(enabled)
    manager.add_job(disabled)

    async def start_and_stop():
        fresh = JobManager(store=manager.store, settings_provider=lambda: Settings())
        await fresh.start()
        try:
            armed = fresh.scheduler.armed_job_ids
            next_enabled = fresh.next_run_time(fresh.get_job(enabled.id))
            next_disabled = fresh.next_run_time(fresh.get_job(disabled.id))
        finally:
            fresh.shutdown()
        return armed, next_enabled, next_disabled

    armed, next_enabled, next_disabled = asyncio.run(start_and_stop())

    assert armed == [enabled.id]
    assert next_enabled is not None
    assert (next_enabled.hour, next_enabled.minute) == (2, 0)
    assert next_disabled is None


def test_corrupt_jobs_file_is_reported(store):
    store.ensure_directories_exist()
    store.jobs_file.write_text("[{]")
    manager = JobManager(store=store)

    manager.load_jobs()

    assert manager.jobs == []
    assert "Failed to load jobs" in manager.error_message


def test_settings_failure_completes_run(store, notifier):
    def broken_settings():
        raise AttributeError("'list' object has no attribute 'items'")

    manager = JobManager(store=store, notifier=notifier, settings_provider=broken_settings)
    job = make_job("echo hi")
    manager.add_job(job)

    assert asyncio.run(manager.run_job(job)) is False

    runs = manager.runs_for(job.id)
    assert len(runs) == 1
    assert not runs[0].in_flight
    assert runs[0].exit_code == LAUNCH_FAILURE_EXIT_CODE
    assert "Failed to run job" in manager.error_message
    assert not manager.is_running(job.id)
    assert notifier.notifications[0].success is False


def test_invalid_command_completes_run(manager):
    job = make_job("echo a\0b")
    manager.add_job(job)

    assert asyncio.run(manager.run_job(job)) is False

    run = manager.latest_run(job.id)
    assert run.exit_code == LAUNCH_FAILURE_EXIT_CODE
    assert not run.in_flight


def test_slow_notifier_does_not_block_the_loop(store, settings):
    class SlowNotifier:
        def __init__(self):
            self.threads = []

        def notify(self, notification):
            self.threads.append(threading.get_ident())
            time.sleep(0.5)

    notifier = SlowNotifier()
    manager = JobManager(store=store, notifier=notifier, settings_provider=lambda: settings)
    job = make_job("true")
    manager.add_job(job)

    async def run_with_ticker():
        loop = asyncio.get_running_loop()
        gaps = []

        async def ticker():
            last = loop.time()
            while True:
                await asyncio.sleep(0.02)
                now = loop.time()
                gaps.append(now - last)
                last = now

        tick = asyncio.ensure_future(ticker())
        try:
            result = await manager.run_job(job)
        finally:
            tick.cancel()
        return result, gaps, threading.get_ident()

    result, gaps, loop_thread = asyncio.run(run_with_ticker())

    assert result is True
    assert notifier.threads and notifier.threads[0] != loop_thread
    assert max(gaps) < 0.4
