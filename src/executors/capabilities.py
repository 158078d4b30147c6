"""Static capability table for process-spawning adapters.

Each capability names the executable it may spawn, the sub-actions it may
request and the argument limits applied before every invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from config import ExecutorsConfig
from executors.process import ArgumentLimits
from ops.errors import ExecutorValidationError
from ops.policy import WorkerPolicy

DEFAULT_OPENCLAW_SUBCOMMANDS = ("agent",)
DEFAULT_OPENCLAW_TOOLS = ("web_search", "web_fetch")

WRECKIT_COMMANDS = (
    "status",
    "list",
    "show",
    "run",
    "next",
    "ideas",
    "doctor",
    "rollback",
    "init",
    "research",
    "plan",
    "implement",
    "pr",
    "complete",
)
MINION_SHELL_COMMANDS = (
    "git",
    "vercel",
    "npm",
    "echo",
    "mkdir",
    "ls",
    "cat",
    "touch",
    "rm",
    "sh",
    "node",
    "bun",
)


@dataclass(frozen=True)
class Capability:
    """What one adapter may spawn and how long it may run."""

    name: str
    executable: str
    sub_actions: tuple[str, ...]
    timeout_seconds: float
    tools: tuple[str, ...] = ()
    limits: ArgumentLimits = ArgumentLimits()

    def require_sub_action(self, action: str) -> None:
        """Reject a sub-action outside this capability's allow-list."""
        if action not in self.sub_actions:
            raise ExecutorValidationError(
                f"{self.name} sub-action not allowed: {action}",
                details={"allowed": list(self.sub_actions)},
            )

    def require_tools(self, requested: list[str]) -> None:
        """Reject any requested tool outside this capability's allow-list."""
        if not self.tools:
            return
        for tool in requested:
            if tool not in self.tools:
                raise ExecutorValidationError(
                    f"Unauthorized tool requested: {tool}",
                    details={"allowed": list(self.tools)},
                )


@dataclass(frozen=True)
class CapabilityTable:
    """Capabilities keyed by adapter name."""

    openclaw: Capability
    wreckit: Capability
    minion: Capability

    def with_policy(self, policy: WorkerPolicy | None) -> "CapabilityTable":
        """Return the table with the worker policy's allow-lists applied.

        An explicitly configured allow-list replaces the default set
        (default-deny); an absent or empty one keeps the minimal defaults.
        A policy timeout may shorten the configured one, never extend it.
        """
        if policy is None:
            return self
        openclaw = self.openclaw
        subcommands = _clean(policy.allowed_openclaw_subcommands)
        if subcommands:
            openclaw = replace(openclaw, sub_actions=subcommands)
        tools = _clean(policy.allowed_tools)
        if tools:
            openclaw = replace(openclaw, tools=tools)
        if policy.openclaw_timeout_seconds:
            timeout = min(float(policy.openclaw_timeout_seconds), openclaw.timeout_seconds)
            openclaw = replace(openclaw, timeout_seconds=timeout)
        return replace(self, openclaw=openclaw)


def build_capability_table(config: ExecutorsConfig) -> CapabilityTable:
    """Build the default capability table from executor settings."""
    return CapabilityTable(
        openclaw=Capability(
            name="openclaw",
            executable=config.openclaw_bin,
            sub_actions=DEFAULT_OPENCLAW_SUBCOMMANDS,
            tools=DEFAULT_OPENCLAW_TOOLS,
            timeout_seconds=float(config.openclaw_timeout_seconds),
        ),
        wreckit=Capability(
            name="wreckit",
            executable=config.wreckit_bin,
            sub_actions=WRECKIT_COMMANDS,
            timeout_seconds=float(config.wreckit_timeout_seconds),
        ),
        minion=Capability(
            name="minion",
            executable="",
            sub_actions=MINION_SHELL_COMMANDS,
            timeout_seconds=float(config.minion_timeout_seconds),
        ),
    )


def _clean(values: list[str] | None) -> tuple[str, ...]:
    if not values:
        return ()
    return tuple(item.strip() for item in values if isinstance(item, str) and item.strip())
