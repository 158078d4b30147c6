"""Unit tests for the operator CLI."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from helpers.ops_harness import mission_template
from ops import cli
from ops.data_access import SqlAlchemyOpsStore

runner = CliRunner()

TEMPLATE = json.dumps(mission_template({"kind": "noop", "executor": "noop"}))


@pytest.fixture
def cli_store(store: SqlAlchemyOpsStore, monkeypatch: pytest.MonkeyPatch) -> SqlAlchemyOpsStore:
    """Point the CLI at the in-memory store and leave logging untouched."""
    monkeypatch.setattr(cli, "build_store", lambda: store)
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    return store


def _invoke_json(*args: str):
    result = runner.invoke(cli.app, ["--json", *args])
    return result, (json.loads(result.stdout) if result.exit_code == 0 else None)


def test_submit_event_outputs_record(cli_store: SqlAlchemyOpsStore) -> None:
    """An event is stored and echoed back as JSON."""
    result, payload = _invoke_json(
        "submit-event", "deploy:requested", "--data", '{"service": "api"}', "--annotation", "manual"
    )

    assert result.exit_code == 0
    assert payload["type"] == "deploy:requested"
    assert payload["data"] == {"service": "api"}
    assert len(cli_store.list_unprocessed_events(10)) == 1


def test_submit_event_rejects_bad_data(cli_store: SqlAlchemyOpsStore) -> None:
    """Malformed or non-object data is a usage error."""
    invalid = runner.invoke(cli.app, ["submit-event", "ping", "--data", "{nope"])
    not_object = runner.invoke(cli.app, ["submit-event", "ping", "--data", "[1, 2]"])

    assert invalid.exit_code == cli.USAGE_ERROR_EXIT_CODE
    assert "--data is not valid JSON" in invalid.output
    assert not_object.exit_code == cli.USAGE_ERROR_EXIT_CODE
    assert cli_store.list_unprocessed_events(10) == []


def test_propose_then_approve(cli_store: SqlAlchemyOpsStore) -> None:
    """A manual proposal is approved once; a second approval is a conflict."""
    _, proposed = _invoke_json("propose", TEMPLATE, "--dedupe-key", "cli-1")
    proposal_id = proposed["proposal"]["id"]
    assert proposed["proposal"]["status"] == "pending"

    result, mission = _invoke_json("approve", str(proposal_id))
    assert result.exit_code == 0
    assert mission["proposal_id"] == proposal_id
    assert mission["status"] == "running"

    again = runner.invoke(cli.app, ["--json", "approve", str(proposal_id)])
    assert again.exit_code == cli.DOMAIN_ERROR_EXIT_CODE
    assert '"code": "conflict"' in again.output


def test_reject_unknown_proposal_is_domain_error(cli_store: SqlAlchemyOpsStore) -> None:
    """Decisions on missing proposals exit with the domain error code."""
    result = runner.invoke(cli.app, ["reject", "404"])

    assert result.exit_code == cli.DOMAIN_ERROR_EXIT_CODE
    assert "error: Proposal not found" in result.output


def test_set_policy_reports_version_and_validates(cli_store: SqlAlchemyOpsStore) -> None:
    """Valid policies are stored with a version; invalid ones are refused."""
    result, payload = _invoke_json("set-policy", "worker_policy", '{"max_retries": 3}')
    assert result.exit_code == 0
    assert payload == {"key": "worker_policy", "version": 1}

    rejected = runner.invoke(cli.app, ["set-policy", "worker_policy", '{"max_retries": 0}'])
    assert rejected.exit_code == cli.DOMAIN_ERROR_EXIT_CODE
    assert cli_store.get_policy("worker_policy") == {"max_retries": 3}


def test_status_and_heartbeat_once(cli_store: SqlAlchemyOpsStore) -> None:
    """An auto-approved proposal gets its first step from a single tick."""
    _invoke_json("set-policy", "auto_approve", '{"enabled": true}')
    _invoke_json("propose", TEMPLATE)

    result, summary = _invoke_json("heartbeat", "--once")
    assert result.exit_code == 0
    assert summary["missions"]["steps_created"] == 1

    _, state = _invoke_json("status", "--limit", "5")
    assert [step["status"] for step in state["steps"]] == ["queued"]
    assert state["missions"][0]["status"] == "running"
