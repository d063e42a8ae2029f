"""
Error types raised by the Cronos engine.

All of them are recovered at the JobManager boundary and turned into a
user-visible message; none is allowed to terminate the daemon.
"""


class CronosError(Exception):
    """Base error for Cronos."""


class LaunchError(CronosError):
    """Raised when a job's process could not be started."""


class PersistenceError(CronosError):
    """Raised when a jobs or run-index document cannot be read or written."""


class StaleReferenceError(CronosError):
    """Raised when a job or run identifier is no longer present."""
