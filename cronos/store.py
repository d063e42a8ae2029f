"""
Durable storage for jobs and run history.

Layout under the data directory (default ~/.cronos):

    {data_dir}/
    ├── jobs.json              # Job definitions
    └── logs/
        ├── index.json         # Run history index (every LogRun)
        ├── runs/
        │   ├── <run-id>.stdout
        │   └── <run-id>.stderr
        ├── <job-id>.log       # Legacy single-log-per-job files
        └── <job-id>.err       #   (read and deleted, never written)

Documents are rewritten whole and atomically. Nothing is cached: every
read parses the file again, so readers always see the last committed state.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cronos.config import resolve_data_dir
from cronos.errors import PersistenceError, StaleReferenceError
from cronos.models import Job, LogRun
from cronos.schedule import local_now

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, payload: Any):
    """Write JSON to a temp file next to `path`, then swap it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)

    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            encoding='utf-8',
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix='.tmp',
            delete=False,
        ) as f:
            tmp_name = f.name
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, str(path))
        tmp_name = None
    finally:
        if tmp_name:
            try:
                Path(tmp_name).unlink(missing_ok=True)
            except OSError:
                pass


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return ""


class JobStore:
    """
    Persists jobs, the run index and per-run log files.

    Single-writer: the read-modify-write cycles are not protected against
    other processes writing the same documents.
    """

    def __init__(self, data_dir: Optional[str] = None):
        """
        Initialize the store.

        Args:
            data_dir: Root directory (uses CRONOS_HOME or ~/.cronos if not specified)
        """
        self.data_dir = resolve_data_dir(data_dir)
        self.jobs_file = self.data_dir / "jobs.json"
        self.logs_directory = self.data_dir / "logs"
        self.runs_directory = self.logs_directory / "runs"
        self.runs_index_file = self.logs_directory / "index.json"

    def ensure_directories_exist(self):
        """Create the data, logs and runs directories."""
        try:
            self.runs_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.runs_directory}: {e}") from e

    def _read_document(self, path: Path) -> List[Dict[str, Any]]:
        """Read a JSON list document; a missing file is an empty list."""
        self.ensure_directories_exist()
        if not path.exists():
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"Malformed document {path}: expected a list")
        return data

    def _write_document(self, path: Path, records: List[Dict[str, Any]]):
        self.ensure_directories_exist()
        try:
            _atomic_write_json(path, records)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    # Jobs

    def load_jobs(self) -> List[Job]:
        """Load all jobs (empty list if none have been saved yet)."""
        records = self._read_document(self.jobs_file)
        try:
            return [Job.from_dict(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed job in {self.jobs_file}: {e}") from e

    def save_jobs(self, jobs: List[Job]):
        """Replace the jobs document atomically."""
        self._write_document(self.jobs_file, [job.to_dict() for job in jobs])
        logger.debug(f"Saved {len(jobs)} job(s) to {self.jobs_file}")

    # Legacy per-job logs

    def log_files(self, job_id: str) -> Tuple[Path, Path]:
        """Legacy (stdout, stderr) log paths for a job."""
        return (
            self.logs_directory / f"{job_id}.log",
            self.logs_directory / f"{job_id}.err",
        )

    def read_log(self, job_id: str) -> Tuple[str, str]:
        """Read a job's legacy log files ('' for missing files)."""
        stdout_path, stderr_path = self.log_files(job_id)
        return _read_text(stdout_path), _read_text(stderr_path)

    def delete_log(self, job_id: str):
        """Delete a job's legacy log files, ignoring failures."""
        for path in self.log_files(job_id):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete {path}: {e}")

    # Run history

    def load_runs_index(self) -> List[LogRun]:
        """Load every run from the index."""
        records = self._read_document(self.runs_index_file)
        try:
            return [LogRun.from_dict(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed run in {self.runs_index_file}: {e}") from e

    def _save_runs_index(self, runs: List[LogRun]):
        self._write_document(self.runs_index_file, [run.to_dict() for run in runs])

    def create_run(self, job_id: str) -> LogRun:
        """
        Record the start of a new run.

        Args:
            job_id: Job being executed

        Returns:
            The new in-flight LogRun
        """
        runs = self.load_runs_index()
        run = LogRun(job_id=job_id)
        runs.append(run)
        self._save_runs_index(runs)
        logger.debug(f"Created run {run.id} for job {job_id}")
        return run

    @staticmethod
    def _find_run(runs: List[LogRun], run_id: str) -> int:
        for position, run in enumerate(runs):
            if run.id == run_id:
                return position
        raise StaleReferenceError(f"Run {run_id} is not in the index")

    def complete_run(self, run: LogRun, exit_code: int, success: bool) -> Optional[LogRun]:
        """
        Mark a run as finished.

        Does nothing if the run is no longer in the index (its job was
        deleted while it was running).

        Returns:
            The completed run, or None if it no longer exists
        """
        runs = self.load_runs_index()
        try:
            position = self._find_run(runs, run.id)
        except StaleReferenceError:
            logger.debug(f"Run {run.id} vanished before completion, not recording result")
            return None

        completed = runs[position]
        completed.ended_at = local_now()
        completed.exit_code = exit_code
        completed.success = success
        self._save_runs_index(runs)
        return completed

    def runs_for(self, job_id: str) -> List[LogRun]:
        """All runs of a job, newest first."""
        runs = [run for run in self.load_runs_index() if run.job_id == job_id]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return runs

    def latest_run(self, job_id: str) -> Optional[LogRun]:
        runs = self.runs_for(job_id)
        return runs[0] if runs else None

    def log_files_for_run(self, run_id: str) -> Tuple[Path, Path]:
        """(stdout, stderr) log paths for a run."""
        return (
            self.runs_directory / f"{run_id}.stdout",
            self.runs_directory / f"{run_id}.stderr",
        )

    def read_log_for_run(self, run_id: str) -> Tuple[str, str]:
        """Read a run's captured output ('' for missing files)."""
        stdout_path, stderr_path = self.log_files_for_run(run_id)
        return _read_text(stdout_path), _read_text(stderr_path)

    def delete_runs_for(self, job_id: str):
        """Delete a job's run log files (best effort) and its index entries."""
        runs = self.load_runs_index()
        job_runs = [run for run in runs if run.job_id == job_id]

        for run in job_runs:
            for path in self.log_files_for_run(run.id):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Failed to delete {path}: {e}")

        remaining = [run for run in runs if run.job_id != job_id]
        self._save_runs_index(remaining)
        logger.info(f"Deleted {len(job_runs)} run(s) for job {job_id}")
