"""Adapter for the external OpenClaw agent CLI."""

from __future__ import annotations

import logging
from typing import Any, Callable

from executors.capabilities import CapabilityTable
from executors.interface import StepRequest
from executors.process import raise_for_result, run_process, string_list, validate_args

logger = logging.getLogger(__name__)


def _add_flag(args: list[str], flag: str, value: Any) -> None:
    if value is None or value == "":
        return
    args.append(flag)
    args.append(str(value))


def _first_string(params: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = params.get(key)
        if isinstance(value, str):
            return value
    return None


def build_agent_args(params: dict[str, Any]) -> list[str]:
    """Translate ``agent`` subcommand params into CLI flags."""
    args: list[str] = []
    _add_flag(args, "--message", _first_string(params, "message", "prompt"))
    _add_flag(args, "--agent", params.get("agent"))
    _add_flag(args, "--to", params.get("to"))
    _add_flag(args, "--session-id", params.get("session_id", params.get("sessionId")))
    _add_flag(args, "--thinking", params.get("thinking"))
    if params.get("deliver"):
        args.append("--deliver")
    _add_flag(args, "--reply-channel", params.get("reply_channel", params.get("replyChannel")))
    _add_flag(args, "--reply-to", params.get("reply_to", params.get("replyTo")))
    if params.get("local"):
        args.append("--local")
    return args


class OpenClawAdapter:
    """Run an allow-listed OpenClaw subcommand as a child process."""

    def __init__(
        self,
        capabilities: Callable[[], CapabilityTable],
        *,
        kill_grace_seconds: float,
        max_output_bytes: int,
    ) -> None:
        """Initialize the adapter with a capability provider and process limits."""
        self._capabilities = capabilities
        self._kill_grace_seconds = kill_grace_seconds
        self._max_output_bytes = max_output_bytes

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Validate the requested subcommand and tools, then run the CLI."""
        capability = self._capabilities().openclaw
        params = step.params
        subcommand = _first_string(params, "subcommand", "command") or "agent"
        capability.require_sub_action(subcommand)
        capability.require_tools(string_list(params.get("tools")))

        args = build_agent_args(params) if subcommand == "agent" else []
        args.extend(string_list(params.get("args")))
        safe_args = validate_args(args, capability.limits)

        timeout = capability.timeout_seconds
        override = _timeout_override(params)
        if override is not None:
            timeout = min(override, timeout)
        cwd = str(params["cwd"]) if params.get("cwd") else None
        logger.info("Running openclaw subcommand=%s args=%s", subcommand, len(safe_args))
        result = await run_process(
            [capability.executable, subcommand, *safe_args],
            timeout_seconds=timeout,
            kill_grace_seconds=self._kill_grace_seconds,
            cwd=cwd,
            max_output_bytes=self._max_output_bytes,
        )
        output = raise_for_result(result, "OpenClaw")
        output.update(subcommand=subcommand, args=safe_args)
        return output


def _timeout_override(params: dict[str, Any]) -> float | None:
    """Return a per-step timeout in seconds, accepting ``timeout_ms`` as well.

    Overrides can only shorten the configured capability timeout.
    """
    seconds = params.get("timeout_seconds")
    if isinstance(seconds, (int, float)) and seconds > 0:
        return float(seconds)
    millis = params.get("timeout_ms")
    if isinstance(millis, (int, float)) and millis > 0:
        return float(millis) / 1000.0
    return None
