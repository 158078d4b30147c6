"""Minion adapter: wreckit delegation plus an allow-listed shell fallback."""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Any, Callable

from executors.capabilities import WRECKIT_COMMANDS, CapabilityTable
from executors.interface import StepRequest
from executors.process import raise_for_result, run_process, string_list, validate_args
from executors.wreckit import WreckitAdapter
from ops.errors import ExecutorValidationError

logger = logging.getLogger(__name__)


class MinionAdapter:
    """Route builder tasks to wreckit or to a small set of shell commands."""

    def __init__(
        self,
        capabilities: Callable[[], CapabilityTable],
        wreckit: WreckitAdapter,
        *,
        workspace: str,
        kill_grace_seconds: float,
        max_output_bytes: int,
    ) -> None:
        """Initialize the adapter with the wreckit adapter and process limits."""
        self._capabilities = capabilities
        self._wreckit = wreckit
        self._workspace = os.path.expanduser(workspace)
        self._kill_grace_seconds = kill_grace_seconds
        self._max_output_bytes = max_output_bytes

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Execute a minion step."""
        params = step.params
        command = params.get("command")
        if command == "ideas" and params.get("idea"):
            return await self._submit_idea(str(params["idea"]))
        if command in WRECKIT_COMMANDS:
            logger.info("Minion delegating to wreckit: command=%s", command)
            return await self._wreckit.execute(step)
        return await self._run_shell(params)

    async def _submit_idea(self, idea: str) -> dict[str, Any]:
        """Write an inline idea to a temporary file and hand it to wreckit."""
        handle = tempfile.NamedTemporaryFile(
            "w", prefix="wreckit-idea-", suffix=".md", delete=False, encoding="utf-8"
        )
        try:
            with handle:
                handle.write(idea)
            argv = self._wreckit.build_argv(
                {"command": "ideas", "args": ["--file", handle.name], "cwd": self._workspace}
            )
            result = await run_process(
                argv,
                timeout_seconds=self._capabilities().wreckit.timeout_seconds,
                kill_grace_seconds=self._kill_grace_seconds,
                max_output_bytes=self._max_output_bytes,
            )
            output = raise_for_result(result, "Wreckit ideas")
        finally:
            try:
                os.unlink(handle.name)
            except FileNotFoundError:
                pass
        output["executed"] = "wreckit ideas"
        return output

    async def _run_shell(self, params: dict[str, Any]) -> dict[str, Any]:
        capability = self._capabilities().minion
        command = params.get("command")
        if not command or not isinstance(command, str):
            raise ExecutorValidationError(
                'Minion step requires a "command" parameter (or a wreckit command)'
            )
        capability.require_sub_action(command)
        args = validate_args(string_list(params.get("args")), capability.limits)
        cwd = str(params["cwd"]) if params.get("cwd") else None
        logger.info("Minion executing shell command=%s args=%s", command, len(args))
        result = await run_process(
            [command, *args],
            timeout_seconds=capability.timeout_seconds,
            kill_grace_seconds=self._kill_grace_seconds,
            cwd=cwd,
            max_output_bytes=self._max_output_bytes,
        )
        output = raise_for_result(result, "Minion command")
        output["executed"] = " ".join([command, *args])
        return output
