"""Heartbeat tick: triggers, reactions, mission advancement and lease sweep."""

from __future__ import annotations

import logging
from typing import Any, Callable

from ops.errors import OpsError
from ops.leases import StepLeaseManager
from ops.missions import MissionLifecycleManager
from ops.reactions import ReactionProcessor
from ops.triggers import TriggerEvaluator

logger = logging.getLogger(__name__)


class Heartbeat:
    """Run one orchestration tick with each phase isolated from the others."""

    def __init__(
        self,
        triggers: TriggerEvaluator,
        reactions: ReactionProcessor,
        missions: MissionLifecycleManager,
        leases: StepLeaseManager,
    ) -> None:
        """Initialize the heartbeat with its phase components."""
        self._phases: list[tuple[str, Callable[[], dict[str, Any]]]] = [
            ("triggers", lambda: triggers.evaluate().as_dict()),
            ("reactions", lambda: reactions.process().as_dict()),
            ("missions", lambda: missions.advance_all().as_dict()),
            ("leases", lambda: _lease_summary(leases)),
        ]

    def tick(self) -> dict[str, Any]:
        """Run every phase once and return a per-phase summary.

        A phase that raises an ``OpsError`` is recorded as an error entry and
        the remaining phases still run.
        """
        summary: dict[str, Any] = {}
        for name, phase in self._phases:
            try:
                summary[name] = phase()
            except OpsError as exc:
                logger.error("Heartbeat phase failed: phase=%s code=%s error=%s", name, exc.code, exc)
                summary[name] = {"error": exc.message, "code": exc.code}
        logger.info("Heartbeat tick completed: %s", summary)
        return summary


def _lease_summary(leases: StepLeaseManager) -> dict[str, int]:
    result = leases.sweep()
    return {"requeued": len(result.requeued), "failed": len(result.failed)}
