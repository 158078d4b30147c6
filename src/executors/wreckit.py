"""Adapter for the wreckit build tool, run through its launcher script."""

from __future__ import annotations

import logging
import os
from typing import Any, Callable

from executors.capabilities import CapabilityTable
from executors.interface import StepRequest
from executors.process import raise_for_result, run_process, string_list, validate_args

logger = logging.getLogger(__name__)


class WreckitAdapter:
    """Run an allow-listed wreckit command under the launcher script."""

    def __init__(
        self,
        capabilities: Callable[[], CapabilityTable],
        *,
        script_path: str,
        kill_grace_seconds: float,
        max_output_bytes: int,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize the adapter with its launcher script and process limits."""
        self._capabilities = capabilities
        self._script_path = os.path.expanduser(script_path)
        self._kill_grace_seconds = kill_grace_seconds
        self._max_output_bytes = max_output_bytes
        self._env = env

    def build_argv(self, params: dict[str, Any]) -> list[str]:
        """Build the launcher invocation for a step's params."""
        capability = self._capabilities().wreckit
        command = str(params.get("command") or "status")
        capability.require_sub_action(command)
        args = ["--command", command, *string_list(params.get("args"))]
        if params.get("cwd"):
            args.extend(["--cwd", str(params["cwd"])])
        if params.get("item"):
            args.extend(["--id", str(params["item"])])
        safe_args = validate_args(args, capability.limits)
        return [capability.executable, "run", self._script_path, *safe_args]

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Run the wreckit command named in the step params."""
        capability = self._capabilities().wreckit
        argv = self.build_argv(step.params)
        logger.info("Running wreckit command=%s", step.params.get("command") or "status")
        result = await run_process(
            argv,
            timeout_seconds=capability.timeout_seconds,
            kill_grace_seconds=self._kill_grace_seconds,
            env=_child_env(self._env),
            max_output_bytes=self._max_output_bytes,
        )
        return raise_for_result(result, "Wreckit")


def _child_env(overrides: dict[str, str] | None) -> dict[str, str] | None:
    if not overrides:
        return None
    env = dict(os.environ)
    env.update(overrides)
    return env
