"""Retry budget helpers for mission steps."""

from __future__ import annotations

from dataclasses import dataclass

from config import settings
from ops.errors import ExecutorError
from ops.policy import StepTemplate, WorkerPolicy


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of applying the retry budget to one failed attempt."""

    failure_count: int
    retry: bool


def next_failure_count(failure_count: int) -> int:
    """Return the failure count after one more failed attempt."""
    return int(failure_count) + 1


def should_retry(failure_count: int, max_retries: int) -> bool:
    """Return whether a step with ``failure_count`` failures may run again."""
    return int(failure_count) < int(max_retries)


def is_retryable(error: BaseException) -> bool:
    """Return whether an execution error class permits a retry.

    Errors that are not executor errors are treated as transient.
    """
    if isinstance(error, ExecutorError):
        return bool(error.retryable)
    return True


def decide_retry(failure_count: int, max_retries: int, error: BaseException) -> RetryDecision:
    """Increment the failure count and decide whether the step is requeued."""
    updated = next_failure_count(failure_count)
    retry = is_retryable(error) and should_retry(updated, max_retries)
    return RetryDecision(failure_count=updated, retry=retry)


def resolve_max_retries(
    step_template: StepTemplate | None,
    worker_policy: WorkerPolicy | None,
) -> int:
    """Resolve a new step's retry budget: template, then policy, then settings."""
    if step_template is not None and step_template.max_retries is not None:
        return int(step_template.max_retries)
    if worker_policy is not None and worker_policy.max_retries is not None:
        return int(worker_policy.max_retries)
    return int(settings.worker.default_max_retries)
