"""Callable entry points for the admin surface."""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from ops.errors import ConflictError, NotFoundError, PolicyError
from ops.heartbeat import Heartbeat
from ops.policy import (
    AUTO_APPROVE_KEY,
    REACTION_MATRIX_KEY,
    WORKER_POLICY_KEY,
    load_auto_approve_policy,
    load_worker_policy,
    parse_mission_template,
)
from ops.store_interface import EventRecord, MissionRecord, OpsStore, ProposalCreateResult

logger = logging.getLogger(__name__)


def to_document(record: Any) -> dict[str, Any]:
    """Convert a record dataclass into a JSON-compatible mapping."""
    document = dataclasses.asdict(record)
    for key, value in document.items():
        if isinstance(value, datetime):
            document[key] = value.isoformat()
    return document


class OpsAdmin:
    """Submit events, manage proposals and policies, and inspect state."""

    def __init__(self, store: OpsStore, heartbeat: Heartbeat | None = None) -> None:
        """Initialize the admin surface with its store and optional heartbeat."""
        self._store = store
        self._heartbeat = heartbeat

    def submit_event(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        *,
        annotation: str | None = None,
        dedupe_key: str | None = None,
    ) -> EventRecord:
        """Insert an event for the next trigger evaluation."""
        event = self._store.insert_event(
            event_type,
            dict(data or {}),
            annotation=annotation,
            dedupe_key=dedupe_key,
        )
        logger.info("Event submitted: event_id=%s type=%s", event.id, event.type)
        return event

    def create_proposal(
        self,
        source: str,
        template: dict[str, Any],
        *,
        dedupe_key: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> ProposalCreateResult:
        """Create a proposal directly, applying the auto-approve policy."""
        if not source or not source.strip():
            raise ValueError("source is required.")
        mission_template = parse_mission_template(template)
        policy = load_auto_approve_policy(self._store.get_policy(AUTO_APPROVE_KEY))
        return self._store.create_proposal_idempotent(
            dedupe_key or f"manual:{uuid4().hex}",
            source.strip(),
            template,
            context=context,
            auto_approve=policy.permits(source.strip(), mission_template.risk_level),
        )

    def approve_proposal(self, proposal_id: int) -> MissionRecord:
        """Approve a pending proposal and return the mission created for it."""
        proposal = self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal not found", details={"proposal_id": proposal_id})
        if proposal.status != "pending":
            raise ConflictError(
                "Proposal is not pending",
                details={"proposal_id": proposal_id, "status": proposal.status},
            )
        mission = self._store.approve_proposal(proposal_id)
        if mission is None:
            raise ConflictError("Proposal is not pending", details={"proposal_id": proposal_id})
        logger.info("Proposal approved: proposal_id=%s mission_id=%s", proposal_id, mission.id)
        return mission

    def reject_proposal(self, proposal_id: int) -> None:
        """Reject a pending proposal."""
        if self._store.get_proposal(proposal_id) is None:
            raise NotFoundError("Proposal not found", details={"proposal_id": proposal_id})
        if not self._store.reject_proposal(proposal_id):
            raise ConflictError("Proposal is not pending", details={"proposal_id": proposal_id})
        logger.info("Proposal rejected: proposal_id=%s", proposal_id)

    def update_policy(self, key: str, value: Any) -> int:
        """Validate and store a policy document, returning its new version."""
        if not key or not key.strip():
            raise ValueError("policy key is required.")
        _validate_policy(key, value)
        version = self._store.upsert_policy(key, value)
        logger.info("Policy updated: key=%s version=%s", key, version)
        return version

    def get_state(self, *, limit: int = 50) -> dict[str, list[dict[str, Any]]]:
        """Return recent missions, steps, proposals and dead letters."""
        return {
            "missions": [to_document(item) for item in self._store.list_missions(limit=limit)],
            "steps": [to_document(item) for item in self._store.list_steps(limit=limit)],
            "proposals": [to_document(item) for item in self._store.list_proposals(limit=limit)],
            "dead_letters": [to_document(item) for item in self._store.list_dead_letters(limit=limit)],
        }

    def tick(self) -> dict[str, Any]:
        """Run one heartbeat tick on demand."""
        if self._heartbeat is None:
            raise RuntimeError("No heartbeat configured for on-demand ticks.")
        return self._heartbeat.tick()


def _validate_policy(key: str, value: Any) -> None:
    if key == REACTION_MATRIX_KEY:
        if not isinstance(value, dict) or not isinstance(value.get("patterns"), list):
            raise PolicyError("reaction_matrix must be a mapping with a patterns list.")
    elif key == WORKER_POLICY_KEY:
        load_worker_policy(value)
    elif key == AUTO_APPROVE_KEY:
        load_auto_approve_policy(value)
