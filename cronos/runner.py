"""
Shell command execution for jobs.

Runs a command through the user's shell, writes stdout/stderr to log files as
the output arrives and forwards decoded chunks to optional live observers.
The runner knows nothing about jobs or schedules - it simply runs whatever
command it is given.
"""

import asyncio
import codecs
import logging
import os
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Union, BinaryIO

from cronos.config import DEFAULT_SHELL_FLAGS
from cronos.errors import LaunchError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]
PathLike = Union[str, Path]

# Typographic quotes pasted from rich-text sources, mapped to shell quotes
SMART_QUOTES = str.maketrans({
    '\u201c': '"',
    '\u201d': '"',
    '\u2018': "'",
    '\u2019': "'",
})

CHUNK_SIZE = 64 * 1024
CHANNEL_SIZE = 256

STDOUT = "stdout"
STDERR = "stderr"


def normalize_command(command: str) -> str:
    """Replace smart quotes with their ASCII equivalents."""
    return command.translate(SMART_QUOTES)


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a finished process."""
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """
    Runs one shell command at a time per call and supervises it to exit.

    stdout and stderr are drained concurrently. Decoded chunks reach the
    callbacks through a bounded queue, so order within a stream is kept.
    No timeout is applied: a started process runs until it exits.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, channel_size: int = CHANNEL_SIZE):
        self.chunk_size = chunk_size
        self.channel_size = channel_size

    async def run(
        self,
        command: str,
        working_directory: str,
        shell_path: str,
        stdout_sink: PathLike,
        stderr_sink: PathLike,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        shell_flags: Sequence[str] = DEFAULT_SHELL_FLAGS,
    ) -> bool:
        """
        Run a command and report whether it exited with code 0.

        Raises:
            LaunchError: If the process could not be started
        """
        result = await self.execute(
            command,
            working_directory,
            shell_path,
            stdout_sink,
            stderr_sink,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            shell_flags=shell_flags,
        )
        return result.success

    async def execute(
        self,
        command: str,
        working_directory: str,
        shell_path: str,
        stdout_sink: PathLike,
        stderr_sink: PathLike,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        shell_flags: Sequence[str] = DEFAULT_SHELL_FLAGS,
        job_name: Optional[str] = None,
    ) -> ProcessResult:
        """
        Run a command in `<shell_path> <shell_flags> -c <command>`.

        Args:
            command: Shell command text (smart quotes are normalised)
            working_directory: Directory to run in (a leading ~ is expanded)
            shell_path: Shell executable
            stdout_sink: File receiving raw stdout bytes (truncated first)
            stderr_sink: File receiving raw stderr bytes (truncated first)
            on_stdout: Called with each decoded stdout chunk
            on_stderr: Called with each decoded stderr chunk
            shell_flags: Flags placed before -c (login + interactive by default)
            job_name: Name of the job (for logging)

        Returns:
            ProcessResult with the exit code

        Raises:
            LaunchError: If the sinks cannot be opened or the shell cannot start
        """
        log_prefix = f"[{job_name}] " if job_name else ""
        command = normalize_command(command)
        cwd = os.path.expanduser(working_directory)

        logger.info(f"{log_prefix}Executing command: {command}")

        with ExitStack() as stack:
            try:
                stdout_file = stack.enter_context(open(stdout_sink, 'wb'))
                stderr_file = stack.enter_context(open(stderr_sink, 'wb'))
                process = await asyncio.create_subprocess_exec(
                    shell_path,
                    *shell_flags,
                    '-c',
                    command,
                    cwd=cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (OSError, ValueError) as e:
                logger.error(f"{log_prefix}Failed to launch {shell_path} in {cwd}: {e}")
                raise LaunchError(f"Could not start {shell_path} in {cwd}: {e}") from e

            channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)
            callbacks = {STDOUT: on_stdout, STDERR: on_stderr}
            delivery = asyncio.ensure_future(self._deliver(channel, callbacks))

            try:
                # Read both streams to EOF so a final unterminated chunk is kept
                await asyncio.gather(
                    self._pump(process.stdout, stdout_file, STDOUT, channel, on_stdout is not None),
                    self._pump(process.stderr, stderr_file, STDERR, channel, on_stderr is not None),
                )
                exit_code = await process.wait()
            finally:
                await channel.put(None)
                await delivery

        logger.info(f"{log_prefix}Process exited with code {exit_code}")
        return ProcessResult(exit_code=exit_code)

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        sink: BinaryIO,
        name: str,
        channel: asyncio.Queue,
        forward: bool,
    ):
        """Copy one stream to its sink, forwarding decoded text to the channel."""
        decoder = codecs.getincrementaldecoder('utf-8')(errors='ignore')
        write_failed = False

        while True:
            chunk = await stream.read(self.chunk_size)
            if not chunk:
                break

            if not write_failed:
                try:
                    sink.write(chunk)
                    sink.flush()
                except OSError as e:
                    write_failed = True
                    logger.warning(f"Failed writing {name} log, output will not be saved: {e}")

            if forward:
                text = decoder.decode(chunk)
                if text:
                    await channel.put((name, text))

        if forward:
            tail = decoder.decode(b'', final=True)
            if tail:
                await channel.put((name, tail))

    async def _deliver(self, channel: asyncio.Queue, callbacks):
        """Hand queued chunks to the callbacks until the end marker arrives."""
        while True:
            item = await channel.get()
            if item is None:
                return
            name, text = item
            callback = callbacks.get(name)
            if callback is None:
                continue
            try:
                callback(text)
            except Exception:
                logger.exception(f"Output callback for {name} raised")
