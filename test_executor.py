"""Tests for shell command execution."""

import asyncio
import os
import signal
import time

import pytest

from shellglance.executor import TIMEOUT_MESSAGE, CommandExecutor, ExecutionResult


def process_alive(pid):
    """True while pid exists and is not a zombie waiting to be reaped."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


@pytest.fixture
def executor():
    return CommandExecutor()


@pytest.mark.asyncio
async def test_successful_command(executor):
    result = await executor.execute("echo hi", 5)

    assert result == ExecutionResult(success=True, output="hi", error="")


@pytest.mark.asyncio
async def test_output_is_trimmed_but_keeps_inner_newlines(executor):
    result = await executor.execute("printf '  first\\nsecond  \\n\\n'", 5)

    assert result.success is True
    assert result.output == "first\nsecond"


@pytest.mark.asyncio
async def test_failed_command_reports_stderr(executor):
    result = await executor.execute("echo partial; echo ' oops ' >&2; exit 3", 5)

    assert result.success is False
    assert result.output == "partial"
    assert result.error == "oops"


@pytest.mark.asyncio
async def test_timeout_kills_process(executor, tmp_path):
    pid_file = tmp_path / "pid"

    start = time.monotonic()
    result = await executor.execute(f"echo $$ > {pid_file}; sleep 10", 0.5)
    elapsed = time.monotonic() - start

    assert result == ExecutionResult(success=False, output="", error=TIMEOUT_MESSAGE)
    assert elapsed < 5

    # The shell was killed and reaped
    pid = int(pid_file.read_text().strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_timeout_discards_partial_output(executor):
    result = await executor.execute("echo started; sleep 10", 0.5)

    assert result.output == ""
    assert result.error == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_spawn_failure_becomes_result():
    executor = CommandExecutor(shell="/nonexistent/shell")

    result = await executor.execute("echo hi", 5)

    assert result.success is False
    assert result.output == ""
    assert result.error


@pytest.mark.asyncio
async def test_concurrent_runs_are_independent(executor):
    slow, fast = await asyncio.gather(
        executor.execute("sleep 0.3; echo slow", 5),
        executor.execute("echo fast", 5),
    )

    assert slow.output == "slow"
    assert fast.output == "fast"


@pytest.mark.asyncio
async def test_cancelled_run_kills_process(executor, tmp_path):
    pid_file = tmp_path / "pid"
    task = asyncio.ensure_future(executor.execute(f"echo $$ > {pid_file}; sleep 10", 30))

    for _ in range(50):
        await asyncio.sleep(0.05)
        if pid_file.exists() and pid_file.read_text().strip():
            break
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    pid = int(pid_file.read_text().strip())
    for _ in range(50):
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            break
        await asyncio.sleep(0.05)
    else:
        pytest.fail("process still running after cancel")


@pytest.mark.asyncio
async def test_timeout_kills_background_jobs_after_shell_exits(executor, tmp_path):
    pid_file = tmp_path / "pid"

    # The shell exits at once; the background sleep keeps stdout open
    result = await executor.execute(f"sleep 30 & echo $! > {pid_file}", 1)

    assert result == ExecutionResult(success=False, output="", error=TIMEOUT_MESSAGE)
    pid = int(pid_file.read_text().strip())
    for _ in range(50):
        if not process_alive(pid):
            break
        await asyncio.sleep(0.05)
    else:
        os.kill(pid, signal.SIGKILL)
        pytest.fail(f"background job {pid} survived the timeout")
