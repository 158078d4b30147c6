"""Capability adapter interface and the step payload handed to adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ops.store_interface import StepRecord


@dataclass(frozen=True)
class StepRequest:
    """Executor-facing view of a claimed step."""

    id: int
    mission_id: int
    kind: str
    executor: str | None
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_step(cls, step: StepRecord) -> "StepRequest":
        """Build a request from a claimed step record."""
        return cls(
            id=step.id,
            mission_id=step.mission_id,
            kind=step.kind,
            executor=step.executor,
            params=dict(step.params or {}),
        )


class StepAdapter(Protocol):
    """Protocol for capability adapters.

    ``execute`` returns ``{"ok": True, ...}`` on success and raises an
    ``ExecutorError`` subclass carrying any captured output on failure.
    """

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Execute one step and return its success document."""
        ...
