"""
Cronos

Runs shell commands and agent prompts on a daily or weekly schedule.

Features:
- Daily and weekly wall-clock schedules in the local time zone
- Self-rearming timers (one outstanding timer per enabled job)
- Shell execution with streamed, per-run stdout/stderr logs
- Atomic JSON persistence of jobs and run history
- Run-completion notifications (log or webhook)
"""

from cronos.config import Settings, LoggingConfig, resolve_data_dir
from cronos.errors import CronosError, LaunchError, PersistenceError, StaleReferenceError
from cronos.manager import JobManager
from cronos.models import AgentInvocation, AgentModel, CustomCommand, Job, LogRun
from cronos.runner import ProcessRunner, ProcessResult
from cronos.schedule import DailySchedule, WeeklySchedule
from cronos.scheduler import JobScheduler
from cronos.store import JobStore

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "Settings",
    "LoggingConfig",
    "resolve_data_dir",
    # Errors
    "CronosError",
    "LaunchError",
    "PersistenceError",
    "StaleReferenceError",
    # Models
    "Job",
    "LogRun",
    "CustomCommand",
    "AgentInvocation",
    "AgentModel",
    "DailySchedule",
    "WeeklySchedule",
    # Engine
    "JobManager",
    "JobScheduler",
    "ProcessRunner",
    "ProcessResult",
    "JobStore",
]
