"""
Tests for shell command execution with streamed output.
"""

import asyncio

import pytest

from cronos.errors import LaunchError
from cronos.runner import ProcessRunner, normalize_command

SHELL = "/bin/sh"


def run(runner, command, tmp_path, working_directory="~", **kwargs):
    stdout_path = tmp_path / "out.stdout"
    stderr_path = tmp_path / "out.stderr"
    result = asyncio.run(runner.execute(
        command,
        working_directory,
        SHELL,
        stdout_path,
        stderr_path,
        shell_flags=(),
        **kwargs,
    ))
    return result, stdout_path, stderr_path


def test_echo_hello(tmp_path):
    chunks = []
    success = asyncio.run(ProcessRunner().run(
        "echo hello",
        "~",
        SHELL,
        tmp_path / "a.stdout",
        tmp_path / "a.stderr",
        on_stdout=chunks.append,
        shell_flags=(),
    ))
    assert success is True
    assert (tmp_path / "a.stdout").read_bytes() == b"hello\n"
    assert (tmp_path / "a.stderr").read_bytes() == b""
    assert "".join(chunks) == "hello\n"


def test_nonzero_exit(tmp_path):
    result, _, _ = run(ProcessRunner(), "exit 1", tmp_path)
    assert result.exit_code == 1
    assert result.success is False


def test_stderr_is_captured_separately(tmp_path):
    out, err = [], []
    result, stdout_path, stderr_path = run(
        ProcessRunner(),
        "echo visible; echo oops 1>&2; exit 3",
        tmp_path,
        on_stdout=out.append,
        on_stderr=err.append,
    )
    assert result.exit_code == 3
    assert stdout_path.read_text() == "visible\n"
    assert stderr_path.read_text() == "oops\n"
    assert "".join(out) == "visible\n"
    assert "".join(err) == "oops\n"


def test_runs_in_working_directory(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    result, stdout_path, _ = run(ProcessRunner(), "pwd", tmp_path, working_directory=str(workdir))
    assert result.success
    assert stdout_path.read_text().strip() == str(workdir.resolve())


def test_small_chunks_keep_order(tmp_path):
    chunks = []
    runner = ProcessRunner(chunk_size=3, channel_size=1)
    expected = "".join(f"line {i}\n" for i in range(200))
    result, stdout_path, _ = run(
        runner,
        "i=0; while [ $i -lt 200 ]; do echo \"line $i\"; i=$((i+1)); done",
        tmp_path,
        on_stdout=chunks.append,
    )
    assert result.success
    assert stdout_path.read_text() == expected
    assert "".join(chunks) == expected


def test_multibyte_characters_split_across_chunks(tmp_path):
    chunks = []
    result, stdout_path, _ = run(
        ProcessRunner(chunk_size=1),
        "printf '\\303\\251t\\303\\251'",
        tmp_path,
        on_stdout=chunks.append,
    )
    assert result.success
    assert stdout_path.read_bytes() == "été".encode("utf-8")
    assert "".join(chunks) == "été"


def test_smart_quotes_are_normalised(tmp_path):
    assert normalize_command("echo “hi” ‘there’") == "echo \"hi\" 'there'"

    result, stdout_path, _ = run(ProcessRunner(), "echo “hello world”", tmp_path)
    assert result.success
    assert stdout_path.read_text() == "hello world\n"


def test_failing_callback_does_not_stop_run(tmp_path):
    def explode(text):
        raise RuntimeError("observer went away")

    result, stdout_path, _ = run(ProcessRunner(), "echo still here", tmp_path, on_stdout=explode)
    assert result.success
    assert stdout_path.read_text() == "still here\n"


def test_missing_shell_raises_launch_error(tmp_path):
    runner = ProcessRunner()
    with pytest.raises(LaunchError):
        asyncio.run(runner.execute(
            "echo hi", "~", "/nonexistent/shell",
            tmp_path / "x.stdout", tmp_path / "x.stderr", shell_flags=(),
        ))


def test_missing_working_directory_raises_launch_error(tmp_path):
    with pytest.raises(LaunchError):
        run(ProcessRunner(), "echo hi", tmp_path, working_directory=str(tmp_path / "nope"))


def test_sinks_are_truncated(tmp_path):
    (tmp_path / "out.stdout").write_text("stale content that is long\n")
    result, stdout_path, _ = run(ProcessRunner(), "echo new", tmp_path)
    assert stdout_path.read_text() == "new\n"


def test_nul_byte_in_command_raises_launch_error(tmp_path):
    with pytest.raises(LaunchError):
        run(ProcessRunner(), "echo a\0b", tmp_path)
