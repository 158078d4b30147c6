"""Executor dispatch: route a step to its capability adapter."""

from __future__ import annotations

import logging
from typing import Any, Callable

from config import ExecutorsConfig
from executors.capabilities import CapabilityTable, build_capability_table
from executors.interface import StepAdapter, StepRequest
from executors.minion import MinionAdapter
from executors.notify import NotifyAdapter
from executors.openclaw import OpenClawAdapter
from executors.radar import RadarAdapter
from executors.wreckit import WreckitAdapter
from ops.errors import ExecutorValidationError, PolicyError
from ops.policy import WORKER_POLICY_KEY, load_worker_policy
from ops.store_interface import OpsStore

logger = logging.getLogger(__name__)

DEFAULT_EXECUTOR = "openclaw"
MINION_KINDS = ("minion", "minion_request")


class NoopAdapter:
    """Adapter that succeeds without side effects."""

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Return a fixed success document."""
        return {"ok": True, "note": "noop executor"}


def resolve_adapter_name(kind: str, executor: str | None) -> str:
    """Return the adapter name for a step's kind and executor."""
    name = executor or DEFAULT_EXECUTOR
    if kind in MINION_KINDS:
        return "minion"
    if kind == "radar":
        return "radar"
    if name == "openclaw" or kind == "openclaw":
        return "openclaw"
    if name == "wreckit" or kind == "wreckit":
        return "wreckit"
    return name


class ExecutorDispatch:
    """Select and invoke the adapter for a claimed step."""

    def __init__(self, adapters: dict[str, StepAdapter]) -> None:
        """Initialize the dispatcher with adapters keyed by name."""
        self._adapters = dict(adapters)

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Execute a step through its adapter."""
        name = resolve_adapter_name(step.kind, step.executor)
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ExecutorValidationError(
                f"No executor registered for {step.executor or name}",
                details={"kind": step.kind, "executor": step.executor},
            )
        return await adapter.execute(step)


def policy_capabilities(store: OpsStore, config: ExecutorsConfig) -> Callable[[], CapabilityTable]:
    """Return a provider that applies the current worker policy on every call."""
    base = build_capability_table(config)

    def provider() -> CapabilityTable:
        try:
            policy = load_worker_policy(store.get_policy(WORKER_POLICY_KEY))
        except PolicyError as exc:
            logger.warning("Worker policy invalid; using default allow-lists: %s", exc.details)
            return base
        return base.with_policy(policy)

    return provider


def build_dispatch(store: OpsStore, config: ExecutorsConfig) -> ExecutorDispatch:
    """Wire the standard adapter set from executor settings."""
    capabilities = policy_capabilities(store, config)
    wreckit = WreckitAdapter(
        capabilities,
        script_path=config.wreckit_script,
        kill_grace_seconds=config.kill_grace_seconds,
        max_output_bytes=config.max_output_bytes,
    )
    return ExecutorDispatch(
        {
            "openclaw": OpenClawAdapter(
                capabilities,
                kill_grace_seconds=config.kill_grace_seconds,
                max_output_bytes=config.max_output_bytes,
            ),
            "wreckit": wreckit,
            "minion": MinionAdapter(
                capabilities,
                wreckit,
                workspace=config.wreckit_workspace,
                kill_grace_seconds=config.kill_grace_seconds,
                max_output_bytes=config.max_output_bytes,
            ),
            "radar": RadarAdapter(store),
            "notify": NotifyAdapter(
                store,
                api_base_url=config.notify_api_base_url,
                bot_token=config.notify_bot_token,
                default_chat_id=config.notify_default_chat_id,
                timeout_seconds=config.notify_timeout_seconds,
            ),
            "noop": NoopAdapter(),
        }
    )
