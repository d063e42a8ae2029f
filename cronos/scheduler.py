"""
Timer bank that fires jobs at their scheduled wall-clock time.

Each enabled job has at most one outstanding timer: a one-shot APScheduler
'date' job keyed by the Cronos job id. When a timer fires, the trigger
callback is invoked and only the *next* occurrence is armed, using the job
as it is at that moment (fetched through the job-provider callback).
"""

import inspect
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cronos.models import Job
from cronos.schedule import local_now

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[str], None]
JobProvider = Callable[[], List[Job]]


def _weak_callable(func: Callable) -> Callable[[], Optional[Callable]]:
    """Hold bound methods weakly so armed timers never keep their owner alive."""
    if inspect.ismethod(func):
        return weakref.WeakMethod(func)
    return lambda: func


@dataclass
class Timer:
    """An armed timer: the APScheduler job and the instant it fires."""
    handle: Any
    fire_at: datetime


class JobScheduler:
    """
    Owns one outstanding timer per enabled job.

    Timer coroutines run on the asyncio loop that owns the job list, so
    rescheduling and job mutation never race.
    """

    def __init__(
        self,
        on_trigger: TriggerCallback,
        job_provider: JobProvider,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = local_now,
        misfire_grace_time: Optional[int] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            on_trigger: Called with a job id when its time arrives
            job_provider: Returns the current authoritative job list
            scheduler: APScheduler instance (created if not given)
            clock: Returns the current aware datetime
            misfire_grace_time: Seconds a timer may be late and still fire.
                                None (default) fires a late timer once, e.g.
                                when the host wakes from sleep; with a bound,
                                later timers are skipped and the next
                                occurrence is armed
        """
        self._on_trigger = _weak_callable(on_trigger)
        self._job_provider = _weak_callable(job_provider)
        self._clock = clock
        self._timers: Dict[str, Timer] = {}

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': misfire_grace_time,
        }
        self.scheduler = scheduler or AsyncIOScheduler(job_defaults=job_defaults)

        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners."""

        def job_error_listener(event):
            logger.error(
                f"Timer for job '{event.job_id}' raised exception: {event.exception}"
            )

        def job_missed_listener(event):
            # A missed one-shot timer is gone for good unless re-armed here
            logger.warning(
                f"Job '{event.job_id}' missed scheduled run time "
                f"{event.scheduled_run_time}, arming next occurrence"
            )
            timer = self._timers.pop(event.job_id, None)
            self._rearm(event.job_id, after=timer.fire_at if timer else None)

        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def start(self):
        """Start firing timers. Must be called from the running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self):
        """Cancel every timer and stop the underlying scheduler."""
        for job_id in list(self._timers):
            self.cancel_job(job_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def reschedule(self, jobs: List[Job]):
        """
        Discard every timer, then arm one per enabled job.

        Call after any add, update, delete or toggle so stale timers never
        fire for removed or disabled jobs.
        """
        for job_id in list(self._timers):
            self.cancel_job(job_id)

        for job in jobs:
            if job.enabled:
                self._schedule_next(job)

        logger.info(f"Rescheduled {len(self._timers)} enabled job(s)")

    def cancel_job(self, job_id: str):
        """Cancel one job's timer (no-op if it has none)."""
        self._timers.pop(job_id, None)
        self._remove_handle(job_id)

    def next_fire_time(self, job_id: str) -> Optional[datetime]:
        timer = self._timers.get(job_id)
        return timer.fire_at if timer else None

    @property
    def armed_job_ids(self) -> List[str]:
        return list(self._timers)

    async def fire(self, job_id: str):
        """
        Timer callback: trigger the job, then arm its next occurrence.

        The trigger is fire-and-forget. The next timer is armed only if the
        job still exists and is enabled; otherwise the chain simply stops.
        """
        timer = self._timers.pop(job_id, None)
        self._remove_handle(job_id)
        fired_at = timer.fire_at if timer else self._clock()

        logger.info(f"Firing job {job_id}")
        trigger = self._on_trigger()
        if trigger is not None:
            try:
                trigger(job_id)
            except Exception:
                logger.exception(f"Trigger callback failed for job {job_id}")

        self._rearm(job_id, after=fired_at)

    def _rearm(self, job_id: str, after: Optional[datetime] = None):
        provider = self._job_provider()
        jobs = provider() if provider is not None else []
        current = next((j for j in jobs if j.id == job_id and j.enabled), None)
        if current is None:
            logger.debug(f"Job {job_id} deleted or disabled, not re-arming")
            return
        self._schedule_next(current, after=after)

    def _schedule_next(self, job: Job, after: Optional[datetime] = None):
        now = self._clock()
        if after is None or after < now:
            after = now

        fire_at = job.schedule.next_run(after)
        if fire_at <= now:
            fire_at = job.schedule.next_run(now + timedelta(seconds=1))

        handle = self.scheduler.add_job(
            self.fire,
            'date',
            run_date=fire_at,
            args=[job.id],
            id=job.id,
            name=job.name,
            replace_existing=True,
        )
        self._timers[job.id] = Timer(handle=handle, fire_at=fire_at)
        logger.info(f"Armed job '{job.name}' for {fire_at.isoformat()}")

    def _remove_handle(self, job_id: str):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass
