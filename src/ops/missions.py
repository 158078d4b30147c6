"""Mission lifecycle: create steps in template order and settle terminal states."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from ops.errors import PolicyError
from ops.policy import (
    WORKER_POLICY_KEY,
    MissionTemplate,
    WorkerPolicy,
    load_worker_policy,
    parse_mission_template,
)
from ops.retry_policy import resolve_max_retries
from ops.store_interface import MissionRecord, OpsStore, StepCreateInput
from ops.templates import render_template
from structured_logging import fields, log_context
from time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MissionAdvanceResult:
    """Summary of one mission advancement pass."""

    missions: int
    steps_created: int
    succeeded: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        """Return the summary as a plain mapping."""
        return {
            "missions": self.missions,
            "steps_created": self.steps_created,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class MissionLifecycleManager:
    """Advance running missions one step at a time from their proposal template."""

    def __init__(
        self,
        store: OpsStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the manager with its store and clock."""
        self._store = store
        self._clock = clock or utc_now

    def advance_all(self) -> MissionAdvanceResult:
        """Advance every running mission by at most one transition."""
        missions = self._store.list_running_missions()
        worker_policy = self._load_worker_policy()
        created = succeeded = failed = 0
        for mission in missions:
            with log_context({fields.MISSION_ID: mission.id}):
                outcome = self.advance(mission, worker_policy=worker_policy)
            if outcome == "step_created":
                created += 1
            elif outcome == "succeeded":
                succeeded += 1
            elif outcome == "failed":
                failed += 1
        return MissionAdvanceResult(
            missions=len(missions),
            steps_created=created,
            succeeded=succeeded,
            failed=failed,
        )

    def advance(self, mission: MissionRecord, *, worker_policy: WorkerPolicy | None = None) -> str:
        """Apply the next transition to a running mission and name the outcome.

        Outcomes are ``step_created``, ``succeeded``, ``failed`` or ``waiting``.
        """
        proposal = self._store.get_proposal(mission.proposal_id)
        if proposal is None:
            return self._fail(mission, f"Proposal {mission.proposal_id} not found")
        try:
            template = parse_mission_template(proposal.template)
        except PolicyError as exc:
            return self._fail(mission, f"Invalid mission template: {exc.details.get('errors')}")
        if not template.steps:
            return self._fail(mission, "Mission template has no steps")

        steps = self._store.list_steps_for_mission(mission.id)
        created = len(steps)
        if created == 0:
            if self._create_step(mission, template, 0, worker_policy):
                return "step_created"
            return "waiting"

        last = steps[-1]
        if last.status == "failed":
            return self._fail(mission, f"Step {last.id} ({last.kind}) failed: {last.last_error}")
        if last.status != "succeeded":
            return "waiting"
        if created < len(template.steps):
            if self._create_step(mission, template, created, worker_policy):
                return "step_created"
            return "waiting"
        if self._store.update_mission_status(mission.id, "succeeded", now=self._clock()):
            logger.info("Mission succeeded: steps=%s", created)
        return "succeeded"

    def finalize_mission(self, mission_id: int) -> bool:
        """Fail a running mission whose most recent step has failed.

        Used by workers and lease recovery right after a terminal step
        failure; success is only ever reached through ``advance``.
        """
        mission = self._store.get_mission(mission_id)
        if mission is None or mission.status != "running":
            return False
        steps = self._store.list_steps_for_mission(mission_id)
        if not steps or steps[-1].status != "failed":
            return False
        last = steps[-1]
        with log_context({fields.MISSION_ID: mission_id}):
            self._fail(mission, f"Step {last.id} ({last.kind}) failed: {last.last_error}")
        return True

    def _create_step(
        self,
        mission: MissionRecord,
        template: MissionTemplate,
        index: int,
        worker_policy: WorkerPolicy | None,
    ) -> bool:
        step_template = template.steps[index]
        context = {"event": {"data": mission.context}}
        step = self._store.insert_step(
            StepCreateInput(
                mission_id=mission.id,
                step_index=index,
                kind=step_template.kind,
                executor=step_template.executor,
                params=render_template(step_template.params, context),
                max_retries=resolve_max_retries(step_template, worker_policy),
            ),
            now=self._clock(),
        )
        if step is None:
            return False
        logger.info(
            "Mission step created: step_id=%s index=%s kind=%s",
            step.id,
            index,
            step.kind,
        )
        return True

    def _fail(self, mission: MissionRecord, reason: str) -> str:
        if self._store.update_mission_status(
            mission.id, "failed", failure_reason=reason, now=self._clock()
        ):
            logger.warning("Mission failed: %s", reason)
        return "failed"

    def _load_worker_policy(self) -> WorkerPolicy | None:
        try:
            return load_worker_policy(self._store.get_policy(WORKER_POLICY_KEY))
        except PolicyError as exc:
            logger.warning("Worker policy invalid; using configured retry budget: %s", exc.details)
            return None
