"""Unit tests for executor routing and the process-spawning adapters."""

from __future__ import annotations

import os

import pytest

from config import ExecutorsConfig
from executors.capabilities import build_capability_table
from executors.dispatch import ExecutorDispatch, NoopAdapter, policy_capabilities, resolve_adapter_name
from executors.interface import StepRequest
from executors.minion import MinionAdapter
from executors.openclaw import OpenClawAdapter, build_agent_args
from executors.wreckit import WreckitAdapter
from ops.data_access import SqlAlchemyOpsStore
from ops.errors import ExecutorValidationError
from ops.policy import WORKER_POLICY_KEY, WorkerPolicy

ECHO_CONFIG = ExecutorsConfig(
    openclaw_bin="echo",
    wreckit_bin="echo",
    wreckit_script="/opt/wreckit/run.mjs",
    wreckit_workspace="/tmp",
    openclaw_timeout_seconds=5,
    wreckit_timeout_seconds=5,
    minion_timeout_seconds=5,
    kill_grace_seconds=1,
)


def _request(kind: str = "openclaw", executor: str | None = None, **params) -> StepRequest:
    return StepRequest(id=1, mission_id=1, kind=kind, executor=executor, params=params)


def _table(policy: WorkerPolicy | None = None):
    table = build_capability_table(ECHO_CONFIG)
    return lambda: table.with_policy(policy)


def _wreckit(policy: WorkerPolicy | None = None) -> WreckitAdapter:
    return WreckitAdapter(
        _table(policy),
        script_path=ECHO_CONFIG.wreckit_script,
        kill_grace_seconds=1,
        max_output_bytes=10_000,
    )


@pytest.mark.parametrize(
    ("kind", "executor", "expected"),
    [
        ("openclaw", None, "openclaw"),
        ("anything", None, "openclaw"),
        ("draft", "openclaw", "openclaw"),
        ("wreckit", None, "wreckit"),
        ("build", "wreckit", "wreckit"),
        ("minion", "openclaw", "minion"),
        ("minion_request", None, "minion"),
        ("radar", None, "radar"),
        ("notify", "notify", "notify"),
        ("noop", "noop", "noop"),
    ],
)
def test_resolve_adapter_name(kind: str, executor: str | None, expected: str) -> None:
    """Kinds and executors route to the expected adapter."""
    assert resolve_adapter_name(kind, executor) == expected


@pytest.mark.asyncio
async def test_dispatch_rejects_unregistered_executor() -> None:
    """A step naming an unknown executor fails validation."""
    dispatch = ExecutorDispatch({"noop": NoopAdapter()})

    with pytest.raises(ExecutorValidationError, match="No executor registered for mystery"):
        await dispatch.execute(_request("thing", "mystery"))
    assert await dispatch.execute(_request("noop", "noop")) == {"ok": True, "note": "noop executor"}


def test_build_agent_args_maps_params_to_flags() -> None:
    """Agent params become CLI flags in a stable order."""
    args = build_agent_args(
        {
            "prompt": "Summarize",
            "agent": "main",
            "session_id": "s1",
            "thinking": "low",
            "deliver": True,
            "reply_channel": "telegram",
            "local": True,
        }
    )

    assert args == [
        "--message",
        "Summarize",
        "--agent",
        "main",
        "--session-id",
        "s1",
        "--thinking",
        "low",
        "--deliver",
        "--reply-channel",
        "telegram",
        "--local",
    ]


@pytest.mark.asyncio
async def test_openclaw_runs_allowed_subcommand() -> None:
    """The agent subcommand is spawned without a shell."""
    adapter = OpenClawAdapter(_table(), kill_grace_seconds=1, max_output_bytes=10_000)

    output = await adapter.execute(_request(message="hello world; rm -rf /"))

    assert output["ok"] is True
    assert output["subcommand"] == "agent"
    assert output["stdout"] == "agent --message hello world; rm -rf /\n"


@pytest.mark.asyncio
async def test_openclaw_rejects_disallowed_subcommand_and_tool() -> None:
    """Default-deny allow-lists block other subcommands and tools."""
    adapter = OpenClawAdapter(_table(), kill_grace_seconds=1, max_output_bytes=10_000)

    with pytest.raises(ExecutorValidationError, match="sub-action not allowed: config"):
        await adapter.execute(_request(subcommand="config"))
    with pytest.raises(ExecutorValidationError, match="Unauthorized tool requested: exec"):
        await adapter.execute(_request(tools=["web_search", "exec"]))


@pytest.mark.asyncio
async def test_worker_policy_replaces_openclaw_allow_list() -> None:
    """An explicit policy allow-list replaces the defaults."""
    policy = WorkerPolicy(allowed_openclaw_subcommands=["status"], allowed_tools=["exec"])
    adapter = OpenClawAdapter(_table(policy), kill_grace_seconds=1, max_output_bytes=10_000)

    output = await adapter.execute(_request(subcommand="status", tools=["exec"]))

    assert output["stdout"] == "status\n"
    with pytest.raises(ExecutorValidationError):
        await adapter.execute(_request(subcommand="agent", message="hi"))


def test_policy_capabilities_reads_store_each_call(store: SqlAlchemyOpsStore) -> None:
    """Policy changes apply to the next capability lookup; invalid policies fall back."""
    provider = policy_capabilities(store, ECHO_CONFIG)
    assert provider().openclaw.sub_actions == ("agent",)

    store.upsert_policy(WORKER_POLICY_KEY, {"allowed_openclaw_subcommands": ["agent", "status"]})
    assert provider().openclaw.sub_actions == ("agent", "status")

    store.upsert_policy(WORKER_POLICY_KEY, {"max_retries": 0})
    assert provider().openclaw.sub_actions == ("agent",)


def test_policy_timeout_only_shortens_configured_ceiling() -> None:
    """A policy may lower the openclaw timeout but not raise it past the config."""
    assert _table(WorkerPolicy(openclaw_timeout_seconds=2))().openclaw.timeout_seconds == 2.0
    assert _table(WorkerPolicy(openclaw_timeout_seconds=99999))().openclaw.timeout_seconds == 5.0


def test_wreckit_argv_uses_launcher_script() -> None:
    """Wreckit commands run through the launcher with cwd and item flags."""
    argv = _wreckit().build_argv({"command": "run", "args": ["--fast"], "cwd": "/repo", "item": "42"})

    assert argv == [
        "echo",
        "run",
        "/opt/wreckit/run.mjs",
        "--command",
        "run",
        "--fast",
        "--cwd",
        "/repo",
        "--id",
        "42",
    ]


def test_wreckit_rejects_unknown_command() -> None:
    """Only the wreckit command allow-list may run."""
    with pytest.raises(ExecutorValidationError):
        _wreckit().build_argv({"command": "deploy"})


@pytest.mark.asyncio
async def test_minion_runs_allow_listed_shell_command() -> None:
    """Non-wreckit minion commands run from the shell allow-list."""
    minion = MinionAdapter(
        _table(), _wreckit(), workspace="/tmp", kill_grace_seconds=1, max_output_bytes=10_000
    )

    output = await minion.execute(_request("minion", command="echo", args=["built"]))

    assert output["stdout"] == "built\n"
    assert output["executed"] == "echo built"
    with pytest.raises(ExecutorValidationError):
        await minion.execute(_request("minion", command="curl", args=["http://x"]))
    with pytest.raises(ExecutorValidationError, match="command"):
        await minion.execute(_request("minion"))


@pytest.mark.asyncio
async def test_minion_delegates_wreckit_commands() -> None:
    """Wreckit command names go to the wreckit launcher."""
    minion = MinionAdapter(
        _table(), _wreckit(), workspace="/tmp", kill_grace_seconds=1, max_output_bytes=10_000
    )

    output = await minion.execute(_request("minion", command="status"))

    assert output["stdout"] == "run /opt/wreckit/run.mjs --command status\n"


@pytest.mark.asyncio
async def test_minion_submits_inline_idea_through_temp_file() -> None:
    """An inline idea is written to a temp file passed with --file, then removed."""
    minion = MinionAdapter(
        _table(), _wreckit(), workspace="/tmp", kill_grace_seconds=1, max_output_bytes=10_000
    )

    output = await minion.execute(_request("minion", command="ideas", idea="Add dark mode"))

    words = output["stdout"].split()
    path = words[words.index("--file") + 1]
    assert output["executed"] == "wreckit ideas"
    assert "--cwd" in words
    assert not os.path.exists(path)
