"""
Job manager: the coordinating layer between scheduler, runner and store.

Owns the in-memory job list, the set of running jobs and their live output.
All of its state is touched only from one asyncio event loop; each run is an
independent task on that loop. Failures are caught here, logged and exposed
through `error_message` - nothing propagates out to stop the daemon.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from cronos.config import Settings
from cronos.errors import LaunchError, PersistenceError, StaleReferenceError
from cronos.models import Job, LogRun
from cronos.notifications import (
    LoggingNotifier,
    Notification,
    Notifier,
    WebhookNotifier,
    output_preview,
)
from cronos.runner import STDERR, STDOUT, ProcessRunner
from cronos.schedule import local_now
from cronos.scheduler import JobScheduler
from cronos.store import JobStore

logger = logging.getLogger(__name__)

# Exit code recorded for runs whose process never started
LAUNCH_FAILURE_EXIT_CODE = -1


@dataclass
class LiveOutput:
    """Output of a job's current (or most recent) run, as it streams in."""
    started_at: datetime
    run_id: str
    stdout: str = ""
    stderr: str = ""

    def append_stdout(self, text: str):
        self.stdout += text

    def append_stderr(self, text: str):
        self.stderr += text


def default_notifier(settings: Settings) -> Notifier:
    if settings.webhook_url:
        return WebhookNotifier(settings.webhook_url)
    return LoggingNotifier()


class JobManager:
    """
    Coordinates JobScheduler -> ProcessRunner -> JobStore.

    At most one run per job is in flight at any time.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        runner: Optional[ProcessRunner] = None,
        notifier: Optional[Notifier] = None,
        settings_provider: Optional[Callable[[], Settings]] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        """
        Initialize the job manager.

        Args:
            store: Job and run-history storage (default data dir if not given)
            runner: Process runner
            notifier: Receives run-completion notifications (built from
                      settings at notification time if not given)
            settings_provider: Returns current settings; called each time a
                               command is materialised
            clock: Returns the current aware datetime
        """
        self.store = store or JobStore()
        self.runner = runner or ProcessRunner()
        self.notifier = notifier
        self._settings_provider = settings_provider or (
            lambda: Settings.load(str(self.store.data_dir))
        )
        self._clock = clock

        self.jobs: List[Job] = []
        self.running_job_ids: Set[str] = set()
        self.live_outputs: Dict[str, LiveOutput] = {}
        self.error_message: Optional[str] = None
        self.scheduler: Optional[JobScheduler] = None
        # Called as listener(job_id, stream_name, text) for every output chunk
        self.output_listeners: List[Callable[[str, str, str], None]] = []
        self._tasks: Set[asyncio.Task] = set()

    # Lifecycle

    async def start(self):
        """Load jobs and arm their timers. Call from the running event loop."""
        self.load_jobs()
        self.scheduler = JobScheduler(
            on_trigger=self._on_trigger,
            job_provider=self._current_jobs,
            clock=self._clock,
        )
        self.scheduler.reschedule(self.jobs)
        self.scheduler.start()
        logger.info(f"Job manager started with {len(self.jobs)} job(s)")

    def shutdown(self):
        """Cancel every timer. Running jobs are left to finish."""
        if self.scheduler is not None:
            self.scheduler.shutdown()
            self.scheduler = None

    async def wait_for_running(self):
        """Wait until every in-flight run has finished."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running job(s) to finish")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reload(self):
        """Re-read jobs.json (after an out-of-process edit) and re-arm timers."""
        self.load_jobs()
        self._reschedule()

    def _report(self, message: str):
        logger.error(message)
        self.error_message = message

    def _current_jobs(self) -> List[Job]:
        return self.jobs

    def _reschedule(self):
        if self.scheduler is not None:
            self.scheduler.reschedule(self.jobs)

    # Job CRUD

    def load_jobs(self):
        try:
            self.jobs = self.store.load_jobs()
        except PersistenceError as e:
            self._report(f"Failed to load jobs: {e}")
            self.jobs = []

    def _save_jobs(self):
        try:
            self.store.save_jobs(self.jobs)
        except PersistenceError as e:
            # Memory keeps the change; disk catches up on the next good save
            self._report(f"Failed to save jobs: {e}")

    def _index_of(self, job_id: str) -> int:
        for position, job in enumerate(self.jobs):
            if job.id == job_id:
                return position
        raise StaleReferenceError(f"Job {job_id} not found")

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return self.jobs[self._index_of(job_id)]
        except StaleReferenceError:
            return None

    def find_job(self, name_or_id: str) -> Optional[Job]:
        """Look a job up by id, then by exact name."""
        job = self.get_job(name_or_id)
        if job is not None:
            return job
        return next((j for j in self.jobs if j.name == name_or_id), None)

    def search(self, query: str) -> List[Job]:
        return [job for job in self.jobs if job.matches(query)]

    def add_job(self, job: Job):
        self.jobs.append(job)
        self._save_jobs()
        self._reschedule()
        logger.info(f"Added job '{job.name}' ({job.schedule.display_string})")

    def update_job(self, job: Job):
        try:
            position = self._index_of(job.id)
        except StaleReferenceError:
            logger.debug(f"Ignoring update of unknown job {job.id}")
            return
        self.jobs[position] = job
        self._save_jobs()
        self._reschedule()
        logger.info(f"Updated job '{job.name}'")

    def delete_job(self, job: Job):
        """Remove a job together with its run history and log files."""
        self.jobs = [j for j in self.jobs if j.id != job.id]
        self.store.delete_log(job.id)
        try:
            self.store.delete_runs_for(job.id)
        except PersistenceError as e:
            self._report(f"Failed to delete run history for '{job.name}': {e}")
        self._save_jobs()
        self._reschedule()
        logger.info(f"Deleted job '{job.name}'")

    def toggle_job(self, job: Job):
        self.update_job(replace(job, enabled=not job.enabled))

    # Execution

    def _on_trigger(self, job_id: str):
        job = self.get_job(job_id)
        if job is None:
            return
        self.start_job(job)

    def start_job(self, job: Job) -> asyncio.Task:
        """Run a job as an independent task on the current loop."""
        task = asyncio.ensure_future(self.run_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def is_running(self, job_id: str) -> bool:
        return job_id in self.running_job_ids

    async def run_job(self, job: Job) -> Optional[bool]:
        """
        Execute a job once, recording the run and notifying on completion.

        Returns:
            True/False for the run's outcome, or None if the job was already
            running or no run record could be created
        """
        if job.id in self.running_job_ids:
            logger.info(f"Job '{job.name}' is already running, skipping")
            return None

        self.running_job_ids.add(job.id)
        try:
            return await self._execute(job)
        finally:
            self.running_job_ids.discard(job.id)

    async def _execute(self, job: Job) -> Optional[bool]:
        try:
            run = self.store.create_run(job.id)
        except PersistenceError as e:
            self._report(f"Failed to create log run for '{job.name}': {e}")
            return None

        live = LiveOutput(started_at=run.started_at, run_id=run.id)
        self.live_outputs[job.id] = live
        stdout_path, stderr_path = self.store.log_files_for_run(run.id)
        settings = None

        logger.info(f"[{job.name}] Starting run {run.id}")
        try:
            settings = self._settings_provider()
            result = await self.runner.execute(
                job.effective_command(settings),
                job.working_directory,
                settings.shell,
                stdout_path,
                stderr_path,
                on_stdout=self._output_callback(job.id, STDOUT, live.append_stdout),
                on_stderr=self._output_callback(job.id, STDERR, live.append_stderr),
                shell_flags=settings.shell_flags,
                job_name=job.name,
            )
            exit_code, success = result.exit_code, result.success
        except LaunchError as e:
            self._report(f"Failed to run job '{job.name}': {e}")
            exit_code, success = LAUNCH_FAILURE_EXIT_CODE, False
        except Exception as e:
            # The run record is open; it must still be completed below
            logger.debug(f"[{job.name}] Run {run.id} aborted", exc_info=True)
            self._report(f"Failed to run job '{job.name}': {e!r}")
            exit_code, success = LAUNCH_FAILURE_EXIT_CODE, False

        try:
            self.store.complete_run(run, exit_code=exit_code, success=success)
        except PersistenceError as e:
            self._report(f"Failed to record result of '{job.name}': {e}")

        self._record_last_run(job.id, success)
        await self._notify(job, success, live, settings or Settings())

        status = "succeeded" if success else f"failed (exit code {exit_code})"
        logger.info(f"[{job.name}] Run {run.id} {status}")
        return success

    def _output_callback(self, job_id: str, stream: str, append: Callable[[str], None]):
        def on_output(text: str):
            append(text)
            for listener in self.output_listeners:
                listener(job_id, stream, text)
        return on_output

    def _record_last_run(self, job_id: str, success: bool):
        try:
            position = self._index_of(job_id)
        except StaleReferenceError:
            return
        self.jobs[position] = replace(
            self.jobs[position],
            last_run=self._clock(),
            last_run_successful=success,
        )
        self._save_jobs()

    async def _notify(self, job: Job, success: bool, live: LiveOutput, settings: Settings):
        if success and not settings.notify_on_success:
            return
        output = live.stdout if success else (live.stderr or live.stdout)
        notification = Notification(
            job_id=job.id,
            job_name=job.name,
            success=success,
            output_preview=output_preview(output),
        )
        notifier = self.notifier or default_notifier(settings)
        try:
            # Notifiers may block (HTTP); keep them off the event loop
            await asyncio.to_thread(notifier.notify, notification)
        except Exception:
            logger.exception(f"Notifier failed for job '{job.name}'")

    # Live output

    def live_stdout(self, job_id: str) -> str:
        live = self.live_outputs.get(job_id)
        return live.stdout if live else ""

    def live_stderr(self, job_id: str) -> str:
        live = self.live_outputs.get(job_id)
        return live.stderr if live else ""

    def current_run_start_time(self, job_id: str) -> Optional[datetime]:
        live = self.live_outputs.get(job_id)
        return live.started_at if live else None

    # Schedule / history queries

    def next_run_time(self, job: Job) -> Optional[datetime]:
        """Next fire time of an enabled job."""
        if not job.enabled:
            return None
        if self.scheduler is not None:
            armed = self.scheduler.next_fire_time(job.id)
            if armed is not None:
                return armed
        return job.schedule.next_run(self._clock())

    def runs_for(self, job_id: str) -> List[LogRun]:
        try:
            return self.store.runs_for(job_id)
        except PersistenceError as e:
            self._report(f"Failed to load run history: {e}")
            return []

    def latest_run(self, job_id: str) -> Optional[LogRun]:
        runs = self.runs_for(job_id)
        return runs[0] if runs else None

    def read_log_for_run(self, run_id: str) -> Tuple[str, str]:
        return self.store.read_log_for_run(run_id)

    def read_log(self, job_id: str) -> Tuple[str, str]:
        """Legacy per-job log content."""
        return self.store.read_log(job_id)
