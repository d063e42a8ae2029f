"""
Command-line interface for Cronos.

Provides commands for:
- Running the scheduler daemon in the foreground
- Adding/removing/enabling/disabling jobs
- Running a job immediately
- Viewing run history and captured output
"""

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from cronos.config import LoggingConfig, Settings, resolve_data_dir
from cronos.errors import CronosError
from cronos.manager import JobManager
from cronos.models import AgentInvocation, AgentModel, CustomCommand, Job
from cronos.runner import STDERR
from cronos.schedule import DailySchedule, WeeklySchedule, parse_time, parse_weekday
from cronos.store import JobStore

logger = logging.getLogger(__name__)

PID_FILE_NAME = "cronos.pid"

_installed_handlers = []


def setup_logging(logging_config: LoggingConfig, verbose: bool = False):
    """Setup console and rotating file logging."""
    level = logging.DEBUG if verbose else getattr(logging, logging_config.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace handlers from an earlier call
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    # File handler
    if logging_config.file:
        log_path = Path(logging_config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=logging_config.max_bytes,
            backupCount=logging_config.backup_count,
            encoding='utf-8',
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)


# Daemon PID file

def _pid_file(data_dir: Path) -> Path:
    return data_dir / PID_FILE_NAME


def daemon_pid(data_dir: Path) -> Optional[int]:
    """PID of the running daemon, or None (stale PID files are removed)."""
    pid_file = _pid_file(data_dir)
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return pid
    except (ValueError, OSError):
        pid_file.unlink(missing_ok=True)
        return None


def _notify_daemon(data_dir: Path):
    """Ask a running daemon to reload jobs.json after a CLI change."""
    pid = daemon_pid(data_dir)
    if pid is None:
        return
    try:
        os.kill(pid, signal.SIGHUP)
        logger.info(f"Asked daemon (PID {pid}) to reload jobs")
    except OSError as e:
        logger.warning(f"Failed to signal daemon (PID {pid}): {e}")


def _make_manager(args) -> JobManager:
    return JobManager(store=JobStore(args.data_dir))


def _require_job(manager: JobManager, name_or_id: str) -> Job:
    job = manager.find_job(name_or_id)
    if job is None:
        logger.error(f"Job '{name_or_id}' not found")
        sys.exit(1)
    return job


# Commands

async def _serve(manager: JobManager):
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def request_stop(signum):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    def reload_jobs():
        logger.info("Reloading jobs")
        manager.reload()

    loop.add_signal_handler(signal.SIGINT, request_stop, signal.SIGINT)
    loop.add_signal_handler(signal.SIGTERM, request_stop, signal.SIGTERM)
    loop.add_signal_handler(signal.SIGHUP, reload_jobs)

    await manager.start()
    for job in manager.jobs:
        next_run = manager.next_run_time(job)
        logger.info(f"  - {job.name}: next run at {next_run.isoformat() if next_run else 'disabled'}")

    await stop.wait()
    manager.shutdown()
    await manager.wait_for_running()


def cmd_start(args):
    """Run the scheduler daemon in the foreground."""
    data_dir = resolve_data_dir(args.data_dir)
    setup_logging(LoggingConfig.for_data_dir(args.data_dir), verbose=args.verbose)

    pid = daemon_pid(data_dir)
    if pid is not None:
        logger.warning(f"Cronos is already running (PID: {pid})")
        sys.exit(1)

    pid_file = _pid_file(data_dir)
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))

    try:
        asyncio.run(_serve(_make_manager(args)))
    except CronosError as e:
        logger.error(f"Failed to start: {e}", exc_info=True)
        sys.exit(1)
    finally:
        pid_file.unlink(missing_ok=True)
    logger.info("Cronos stopped")


def cmd_list(args):
    """List jobs with their schedule and next run."""
    manager = _make_manager(args)
    manager.load_jobs()

    if not manager.jobs:
        print("No jobs configured")
        return

    print(f"\n{len(manager.jobs)} job(s):\n")
    for job in manager.jobs:
        status = "✓" if job.enabled else "✗"
        print(f"{status} {job.name}  ({job.id})")
        if isinstance(job.command, CustomCommand):
            print(f"    Command:   {job.command.text}")
        else:
            model = job.command.model.display_name if job.command.model else "default"
            print(f"    Prompt:    {job.command.prompt}")
            print(f"    Model:     {model}")
        print(f"    Directory: {job.working_directory}")
        print(f"    Schedule:  {job.schedule.display_string}")
        next_run = manager.next_run_time(job)
        if next_run:
            print(f"    Next Run:  {next_run.strftime('%Y-%m-%d %H:%M')}")
        if job.last_run:
            outcome = "succeeded" if job.last_run_successful else "failed"
            print(f"    Last Run:  {job.last_run.strftime('%Y-%m-%d %H:%M:%S')} ({outcome})")
        print()


def cmd_add(args):
    """Add a new job."""
    setup_logging(LoggingConfig(file=None), verbose=args.verbose)

    try:
        hour, minute = parse_time(args.time)
        if args.weekly:
            schedule = WeeklySchedule(weekday=parse_weekday(args.weekly), hour=hour, minute=minute)
        else:
            schedule = DailySchedule(hour=hour, minute=minute)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    if args.prompt is not None:
        command = AgentInvocation(
            prompt=args.prompt,
            model=AgentModel.parse(args.model),
            context_directories=args.context_dir or [],
        )
    else:
        command = CustomCommand(text=args.command)

    manager = _make_manager(args)
    manager.load_jobs()
    if manager.find_job(args.name):
        logger.error(f"Job with name '{args.name}' already exists")
        sys.exit(1)

    job = Job(
        name=args.name,
        command=command,
        working_directory=args.workdir,
        schedule=schedule,
        enabled=not args.disabled,
    )
    manager.add_job(job)
    if manager.error_message:
        sys.exit(1)

    print(f"Added job '{job.name}' ({job.id}): {schedule.display_string}")
    _notify_daemon(manager.store.data_dir)


def _set_enabled(args, enabled: bool):
    setup_logging(LoggingConfig(file=None), verbose=args.verbose)
    manager = _make_manager(args)
    manager.load_jobs()
    job = _require_job(manager, args.name)
    if job.enabled != enabled:
        manager.toggle_job(job)
    print(f"{'Enabled' if enabled else 'Disabled'} job '{job.name}'")
    _notify_daemon(manager.store.data_dir)


def cmd_enable(args):
    """Enable a job."""
    _set_enabled(args, True)


def cmd_disable(args):
    """Disable a job."""
    _set_enabled(args, False)


def cmd_remove(args):
    """Remove a job and its history."""
    setup_logging(LoggingConfig(file=None), verbose=args.verbose)
    manager = _make_manager(args)
    manager.load_jobs()
    job = _require_job(manager, args.name)
    manager.delete_job(job)
    print(f"Removed job '{job.name}'")
    _notify_daemon(manager.store.data_dir)


def cmd_run(args):
    """Run a job now, streaming its output to the terminal."""
    setup_logging(LoggingConfig(file=None), verbose=args.verbose)
    manager = _make_manager(args)
    manager.load_jobs()
    job = _require_job(manager, args.name)

    def echo(job_id: str, stream: str, text: str):
        target = sys.stderr if stream == STDERR else sys.stdout
        target.write(text)
        target.flush()

    manager.output_listeners.append(echo)
    success = asyncio.run(manager.run_job(job))

    if success is None or manager.error_message:
        sys.exit(1)
    sys.exit(0 if success else 1)


def _format_duration(run) -> str:
    return run.duration_string or "running..."


def cmd_history(args):
    """Show run history as a table."""
    manager = _make_manager(args)
    manager.load_jobs()

    if args.job:
        jobs = [_require_job(manager, args.job)]
    else:
        jobs = manager.jobs
    names = {job.id: job.name for job in jobs}

    runs = [run for job in jobs for run in manager.runs_for(job.id)]
    runs.sort(key=lambda run: run.started_at, reverse=True)
    if not args.show_all:
        runs = runs[:args.limit]

    if not runs:
        print("\nNo job run history found.")
        return

    if args.json:
        print(json.dumps([dict(run.to_dict(), job_name=names[run.job_id]) for run in runs], indent=2))
        return

    rows = []
    for run in runs:
        if run.in_flight:
            status = 'running'
        else:
            status = 'success' if run.success else 'failed'
        rows.append([
            names[run.job_id],
            run.id[:8],
            run.started_at.strftime('%Y-%m-%d %H:%M:%S'),
            _format_duration(run),
            '-' if run.exit_code is None else str(run.exit_code),
            status,
        ])

    headers = ['Job Name', 'Run ID', 'Start Time', 'Duration', 'Exit', 'Status']
    col_widths = [
        max(len(headers[i]), max(len(row[i]) for row in rows))
        for i in range(len(headers))
    ]

    def make_row(cells):
        return "│ " + " │ ".join(cell.ljust(w) for cell, w in zip(cells, col_widths)) + " │"

    def make_separator(left, mid, right, fill='─'):
        return left + mid.join(fill * (w + 2) for w in col_widths) + right

    print()
    print(make_separator('┌', '┬', '┐'))
    print(make_row(headers))
    print(make_separator('├', '┼', '┤'))
    for row in rows:
        print(make_row(row))
    print(make_separator('└', '┴', '┘'))

    print(f"\nShowing {len(rows)} run(s)")
    print("\nTo view output for a specific run: cronos logs <run_id>")


def cmd_logs(args):
    """Print the captured output of one run (run id or unique prefix)."""
    store = JobStore(args.data_dir)
    try:
        matches = [run for run in store.load_runs_index() if run.id.startswith(args.run_id)]
    except CronosError as e:
        print(f"Error reading history: {e}")
        sys.exit(1)

    if len(matches) != 1:
        reason = "No run" if not matches else "More than one run"
        print(f"{reason} matches '{args.run_id}'")
        sys.exit(1)

    stdout, stderr = store.read_log_for_run(matches[0].id)
    sys.stdout.write(stdout)
    if stderr:
        sys.stderr.write(stderr)


def cmd_show_config(args):
    """Show current configuration."""
    data_dir = resolve_data_dir(args.data_dir)
    settings = Settings.load(str(data_dir))
    store = JobStore(str(data_dir))
    pid = daemon_pid(data_dir)

    print(f"\nData directory:   {data_dir}")
    print(f"Jobs file:        {store.jobs_file}")
    print(f"Logs directory:   {store.logs_directory}")
    print(f"Daemon:           {'running (PID ' + str(pid) + ')' if pid else 'not running'}")
    print(f"Shell:            {settings.shell} {' '.join(settings.shell_flags)}")
    print(f"Default model:    {settings.default_model}")
    print(f"Agent executable: {settings.agent_executable}")
    print(f"Webhook:          {settings.webhook_url or '-'}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cronos',
        description="Cronos - run commands and agent prompts on a daily or weekly schedule",
    )
    parser.add_argument('-d', '--data-dir', type=str, help='Data directory (default: ~/.cronos)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='subcommand', help='Commands')

    start_parser = subparsers.add_parser('start', help='Run the scheduler in the foreground')
    start_parser.set_defaults(func=cmd_start)

    list_parser = subparsers.add_parser('list', help='List all jobs')
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser('add', help='Add a new job')
    add_parser.add_argument('name', help='Job name')
    command_group = add_parser.add_mutually_exclusive_group(required=True)
    command_group.add_argument('--command', '-c', help='Shell command to execute')
    command_group.add_argument('--prompt', '-p', help='Prompt for the agent CLI')
    add_parser.add_argument('--model', choices=[m.value for m in AgentModel],
                            help='Agent model (default: settings)')
    add_parser.add_argument('--context-dir', action='append',
                            help='Directory passed to the agent (repeatable)')
    schedule_group = add_parser.add_mutually_exclusive_group(required=True)
    schedule_group.add_argument('--daily', action='store_true', help='Daily schedule')
    schedule_group.add_argument('--weekly', metavar='DAY', help='Weekly schedule on DAY')
    add_parser.add_argument('--time', required=True, help='Time of day (HH:MM)')
    add_parser.add_argument('--workdir', default='~', help='Working directory (default: ~)')
    add_parser.add_argument('--disabled', action='store_true', help='Add the job disabled')
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser('remove', help='Remove a job and its history')
    remove_parser.add_argument('name', help='Job name or id')
    remove_parser.set_defaults(func=cmd_remove)

    enable_parser = subparsers.add_parser('enable', help='Enable a job')
    enable_parser.add_argument('name', help='Job name or id')
    enable_parser.set_defaults(func=cmd_enable)

    disable_parser = subparsers.add_parser('disable', help='Disable a job')
    disable_parser.add_argument('name', help='Job name or id')
    disable_parser.set_defaults(func=cmd_disable)

    run_parser = subparsers.add_parser('run', help='Run a job now')
    run_parser.add_argument('name', help='Job name or id')
    run_parser.set_defaults(func=cmd_run)

    history_parser = subparsers.add_parser('history', help='View job run history')
    history_parser.add_argument('--job', '-j', type=str, help='Filter by job name or id')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.set_defaults(func=cmd_history)

    logs_parser = subparsers.add_parser('logs', help="Show a run's captured output")
    logs_parser.add_argument('run_id', help='Run id (or unique prefix)')
    logs_parser.set_defaults(func=cmd_logs)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subcommand:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
