"""Bounded subprocess execution with graceful-then-forced termination."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ops.errors import ExecutionTimeoutError, ExecutorValidationError, TransientExecutionError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_TRUNCATED_MARKER = "\n[OUTPUT TRUNCATED]"


@dataclass(frozen=True)
class ArgumentLimits:
    """Per-argument and total length limits for spawned commands."""

    max_arg_length: int = 512
    max_total_length: int = 4096


@dataclass(frozen=True)
class ProcessResult:
    """Captured outcome of one spawned process."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    killed: bool = False


def validate_args(args: Sequence[Any], limits: ArgumentLimits = ArgumentLimits()) -> list[str]:
    """Return the arguments as strings, rejecting NUL bytes and oversize input."""
    sanitized: list[str] = []
    total = 0
    for raw in args:
        if not isinstance(raw, str):
            raise ExecutorValidationError(f"Argument must be a string: {raw!r}")
        if "\x00" in raw:
            raise ExecutorValidationError("Invalid null byte in argument")
        if len(raw) > limits.max_arg_length:
            raise ExecutorValidationError(
                "Argument too long",
                details={"length": len(raw), "limit": limits.max_arg_length},
            )
        total += len(raw)
        if total > limits.max_total_length:
            raise ExecutorValidationError(
                "Arguments too large",
                details={"length": total, "limit": limits.max_total_length},
            )
        sanitized.append(raw)
    return sanitized


def string_list(value: Any) -> list[str]:
    """Return the non-empty strings of a list value, stripped."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


async def run_process(
    argv: Sequence[str],
    *,
    timeout_seconds: float,
    kill_grace_seconds: float,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    max_output_bytes: int = 1_000_000,
) -> ProcessResult:
    """Run a process without a shell, enforcing a watchdog deadline.

    At the deadline the process group receives SIGTERM, then SIGKILL once
    ``kill_grace_seconds`` pass without an exit. Cancelling the awaiting
    task kills the process group before the cancellation propagates.
    """
    if not argv:
        raise ExecutorValidationError("Command is empty")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise TransientExecutionError(
            f"Executable not found: {argv[0]}",
            details={"argv": list(argv)},
        ) from exc
    except OSError as exc:
        raise TransientExecutionError(
            f"Failed to spawn {argv[0]}: {exc}",
            details={"argv": list(argv)},
        ) from exc

    stdout_buffer = bytearray()
    stderr_buffer = bytearray()
    readers = [
        asyncio.create_task(_drain(proc.stdout, stdout_buffer, max_output_bytes)),
        asyncio.create_task(_drain(proc.stderr, stderr_buffer, max_output_bytes)),
    ]
    timed_out = False
    killed = False
    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Process timed out after %ss; terminating: %s",
                timeout_seconds,
                argv[0],
            )
            killed = await _terminate(proc, kill_grace_seconds)
        await asyncio.wait(readers, timeout=max(kill_grace_seconds, 1.0))
    finally:
        if proc.returncode is None:
            logger.warning("Process abandoned by caller; killing: %s", argv[0])
            _signal_group(proc, signal.SIGKILL)
        for reader in readers:
            if not reader.done():
                reader.cancel()

    return ProcessResult(
        argv=tuple(argv),
        exit_code=proc.returncode,
        stdout=_decode(stdout_buffer, max_output_bytes),
        stderr=_decode(stderr_buffer, max_output_bytes),
        timed_out=timed_out,
        killed=killed,
    )


def raise_for_result(result: ProcessResult, label: str) -> dict[str, Any]:
    """Map a process result to a success document or a typed executor error."""
    if result.timed_out:
        raise ExecutionTimeoutError(
            f"{label} command timed out",
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            details={"killed": result.killed},
        )
    if result.exit_code != 0:
        if result.exit_code is not None and result.exit_code < 0:
            reason = f"killed by signal {-result.exit_code}"
        else:
            reason = f"code {result.exit_code}"
        raise TransientExecutionError(
            f"{label} exited with {reason}",
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )
    return {"ok": True, "stdout": result.stdout, "stderr": result.stderr}


async def _drain(stream: asyncio.StreamReader | None, buffer: bytearray, limit: int) -> None:
    """Read a pipe to EOF, keeping at most ``limit`` bytes plus one overflow byte."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        room = limit + 1 - len(buffer)
        if room > 0:
            buffer.extend(chunk[:room])


def _decode(buffer: bytearray, limit: int) -> str:
    if len(buffer) > limit:
        return bytes(buffer[:limit]).decode("utf-8", errors="replace") + _TRUNCATED_MARKER
    return bytes(buffer).decode("utf-8", errors="replace")


async def _terminate(proc: asyncio.subprocess.Process, grace_seconds: float) -> bool:
    """SIGTERM the process group, escalating to SIGKILL; True when escalated."""
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        return False
    except asyncio.TimeoutError:
        logger.warning("Process ignored SIGTERM for %ss; sending SIGKILL", grace_seconds)
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()
        return True


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.send_signal(sig)
