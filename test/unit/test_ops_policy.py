"""Unit tests for policy document parsing and the retry budget."""

from __future__ import annotations

import logging

import pytest

from ops.errors import ExecutionTimeoutError, ExecutorValidationError, PolicyError
from ops.policy import (
    AutoApprovePolicy,
    ReactionPattern,
    StepTemplate,
    WorkerPolicy,
    load_auto_approve_policy,
    load_reaction_patterns,
    load_worker_policy,
    parse_mission_template,
)
from ops.retry_policy import decide_retry, resolve_max_retries, should_retry


def test_reaction_pattern_accepts_legacy_keys() -> None:
    """``type`` and ``proposal`` map onto event_type and template."""
    pattern = ReactionPattern.model_validate(
        {"id": 12, "type": "build:failed", "proposal": {"steps": []}}
    )

    assert pattern.id == "12"
    assert pattern.event_type == "build:failed"
    assert pattern.template == {"steps": []}
    assert pattern.proposal_source == "trigger"


def test_reaction_pattern_type_matching() -> None:
    """Wildcards, exact types and type lists all match as documented."""
    assert ReactionPattern().matches_type("anything")
    assert ReactionPattern(event_type="a").matches_type("a")
    assert not ReactionPattern(event_type="a").matches_type("b")
    assert ReactionPattern(event_type=["a", "b"]).matches_type("b")
    assert not ReactionPattern(event_type=["a", "b"]).matches_type("*")


def test_load_reaction_patterns_skips_invalid_entries(caplog: pytest.LogCaptureFixture) -> None:
    """Malformed patterns are logged and dropped; the rest survive."""
    document = {
        "patterns": [
            {"id": "ok", "event_type": "x", "template": {"steps": []}},
            {"id": "bad", "probability": "often"},
        ]
    }

    with caplog.at_level(logging.WARNING):
        patterns = load_reaction_patterns(document)

    assert [pattern.id for pattern in patterns] == ["ok"]
    assert "Skipping invalid reaction pattern" in caplog.text


@pytest.mark.parametrize("document", [None, [], {"patterns": "nope"}, {}])
def test_load_reaction_patterns_tolerates_missing_matrix(document: object) -> None:
    """A missing or malformed matrix yields no patterns."""
    assert load_reaction_patterns(document) == []


def test_mission_template_normalizes_risk_level() -> None:
    """Risk levels are lower-cased and unknown values are treated as high."""
    assert parse_mission_template({"risk_level": "LOW", "steps": []}).risk_level == "low"
    assert parse_mission_template({"risk_level": "extreme", "steps": []}).risk_level == "high"
    assert parse_mission_template({"steps": []}).risk_level == "low"


def test_mission_template_rejects_blank_step_kind() -> None:
    """Steps need a kind."""
    with pytest.raises(PolicyError):
        parse_mission_template({"steps": [{"kind": " "}]})


def test_worker_policy_rejects_zero_retry_budget() -> None:
    """A retry budget below one is invalid."""
    with pytest.raises(PolicyError):
        load_worker_policy({"max_retries": 0})
    assert load_worker_policy(None) == WorkerPolicy()


def test_auto_approve_policy_permits() -> None:
    """Auto-approval needs the flag, an allowed source and a low enough risk."""
    policy = load_auto_approve_policy(
        {"enabled": True, "allowed_sources": ["trigger"], "max_risk_level": "medium"}
    )

    assert policy.permits("trigger", "low")
    assert policy.permits("trigger", "medium")
    assert not policy.permits("trigger", "high")
    assert not policy.permits("manual", "low")
    assert not AutoApprovePolicy().permits("trigger", "low")
    assert not policy.permits("trigger", "catastrophic")


def test_retry_budget_boundaries() -> None:
    """With max_retries=2 the first failure retries and the second is terminal."""
    first = decide_retry(0, 2, RuntimeError("boom"))
    second = decide_retry(1, 2, RuntimeError("boom"))

    assert first.failure_count == 1 and first.retry
    assert second.failure_count == 2 and not second.retry
    assert should_retry(1, 2)
    assert not should_retry(2, 2)


def test_validation_errors_are_never_retried() -> None:
    """Validation failures go terminal even with budget left."""
    decision = decide_retry(0, 5, ExecutorValidationError("nope"))

    assert decision.failure_count == 1
    assert not decision.retry
    assert decide_retry(0, 5, ExecutionTimeoutError("slow")).retry


def test_resolve_max_retries_precedence() -> None:
    """The step template wins over the worker policy, which wins over settings."""
    assert resolve_max_retries(StepTemplate(kind="x", max_retries=5), WorkerPolicy(max_retries=3)) == 5
    assert resolve_max_retries(StepTemplate(kind="x"), WorkerPolicy(max_retries=3)) == 3
    assert resolve_max_retries(StepTemplate(kind="x"), None) >= 1
