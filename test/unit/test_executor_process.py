"""Unit tests for bounded subprocess execution."""

from __future__ import annotations

import asyncio
import time

import pytest

from executors.process import ArgumentLimits, raise_for_result, run_process, validate_args
from ops.errors import ExecutionTimeoutError, ExecutorValidationError, TransientExecutionError


@pytest.mark.asyncio
async def test_run_process_captures_output() -> None:
    """Stdout, stderr and the exit code are captured."""
    result = await run_process(
        ["sh", "-c", "echo out; echo err >&2"],
        timeout_seconds=5,
        kill_grace_seconds=1,
    )

    assert result.exit_code == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert raise_for_result(result, "Test") == {"ok": True, "stdout": "out\n", "stderr": "err\n"}


@pytest.mark.asyncio
async def test_nonzero_exit_is_transient_with_diagnostics() -> None:
    """A failing command maps to a retryable error carrying its output."""
    result = await run_process(["sh", "-c", "echo nope >&2; exit 3"], timeout_seconds=5, kill_grace_seconds=1)

    with pytest.raises(TransientExecutionError) as excinfo:
        raise_for_result(result, "Test")

    assert "code 3" in str(excinfo.value)
    assert excinfo.value.diagnostics() == {
        "stdout": "",
        "stderr": "nope\n",
        "code": 3,
        "error_code": "transient_error",
    }


@pytest.mark.asyncio
async def test_timeout_terminates_process_group() -> None:
    """A command past its deadline is terminated and reported as a timeout."""
    started = time.monotonic()
    result = await run_process(["sleep", "30"], timeout_seconds=0.2, kill_grace_seconds=1)

    assert time.monotonic() - started < 5
    assert result.timed_out
    assert not result.killed
    with pytest.raises(ExecutionTimeoutError):
        raise_for_result(result, "Test")


@pytest.mark.asyncio
async def test_sigterm_ignoring_process_is_killed() -> None:
    """A process that traps SIGTERM is escalated to SIGKILL after the grace period."""
    result = await run_process(
        ["sh", "-c", "trap '' TERM; sleep 30"],
        timeout_seconds=0.2,
        kill_grace_seconds=0.3,
    )

    assert result.timed_out
    assert result.killed
    assert result.exit_code == -9


@pytest.mark.asyncio
async def test_cancellation_kills_child() -> None:
    """Cancelling the awaiting task leaves no child running."""
    task = asyncio.create_task(run_process(["sleep", "30"], timeout_seconds=60, kill_grace_seconds=1))
    await asyncio.sleep(0.2)
    task.cancel()

    started = time.monotonic()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert time.monotonic() - started < 5


@pytest.mark.asyncio
async def test_output_is_capped_with_marker() -> None:
    """Output beyond the cap is dropped and marked."""
    result = await run_process(
        ["sh", "-c", "head -c 5000 /dev/zero | tr '\\0' 'a'"],
        timeout_seconds=5,
        kill_grace_seconds=1,
        max_output_bytes=100,
    )

    assert result.stdout.startswith("a" * 100)
    assert result.stdout.endswith("[OUTPUT TRUNCATED]")


@pytest.mark.asyncio
async def test_missing_executable_is_transient() -> None:
    """A binary that cannot be found is a retryable failure."""
    with pytest.raises(TransientExecutionError, match="Executable not found"):
        await run_process(["definitely-not-a-real-binary-xyz"], timeout_seconds=1, kill_grace_seconds=1)


def test_validate_args_rejects_null_bytes_and_oversize() -> None:
    """Arguments are checked for NUL bytes and length limits."""
    limits = ArgumentLimits(max_arg_length=5, max_total_length=8)

    assert validate_args(["abc", "de"], limits) == ["abc", "de"]
    with pytest.raises(ExecutorValidationError, match="null byte"):
        validate_args(["a\x00b"], limits)
    with pytest.raises(ExecutorValidationError, match="too long"):
        validate_args(["abcdef"], limits)
    with pytest.raises(ExecutorValidationError, match="too large"):
        validate_args(["abcde", "abcde"], limits)
    with pytest.raises(ExecutorValidationError):
        validate_args([5], limits)
