"""Reaction processing: turn queued reactions into idempotent proposals."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ops.errors import PolicyError, StoreError
from ops.policy import (
    AUTO_APPROVE_KEY,
    AutoApprovePolicy,
    load_auto_approve_policy,
)
from ops.store_interface import OpsStore, ReactionRecord
from structured_logging import fields, log_context
from time_utils import isoformat, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReactionQueueResult:
    """Summary of one reaction queue pass."""

    processed: int
    created: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        """Return the summary as a plain mapping."""
        return {"processed": self.processed, "created": self.created, "failed": self.failed}


class ReactionProcessor:
    """Consume queued reactions, creating at most one proposal per dedupe key."""

    def __init__(
        self,
        store: OpsStore,
        *,
        batch_size: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the processor with its store and batch size."""
        self._store = store
        self._batch_size = batch_size
        self._clock = clock or utc_now

    def process(self) -> ReactionQueueResult:
        """Process one oldest-first batch of queued reactions."""
        reactions = self._store.list_queued_reactions(self._batch_size)
        if not reactions:
            return ReactionQueueResult(processed=0, created=0, failed=0)

        auto_approve = self._load_auto_approve()
        created = 0
        failed = 0
        for reaction in reactions:
            with log_context({fields.REACTION_ID: reaction.id, fields.EVENT_ID: reaction.event_id}):
                outcome = self._process_one(reaction, auto_approve)
            if outcome == "created":
                created += 1
            elif outcome == "failed":
                failed += 1

        logger.info(
            "Reaction queue processed: processed=%s created=%s failed=%s",
            len(reactions),
            created,
            failed,
        )
        return ReactionQueueResult(processed=len(reactions), created=created, failed=failed)

    def _load_auto_approve(self) -> AutoApprovePolicy:
        try:
            return load_auto_approve_policy(self._store.get_policy(AUTO_APPROVE_KEY))
        except PolicyError as exc:
            logger.warning("Auto-approve policy invalid; approvals stay manual: %s", exc.details)
            return AutoApprovePolicy()

    def _process_one(self, reaction: ReactionRecord, auto_approve: AutoApprovePolicy) -> str:
        payload = dict(reaction.payload)
        template = payload.get("proposal_template")
        if not template:
            logger.warning("Reaction has no proposal template; marking failed.")
            self._store.update_reaction_status(reaction.id, "failed", now=self._clock())
            return "failed"

        source = str(payload.get("proposal_source") or "reaction")
        dedupe_key = str(payload.get("dedupe_key") or reaction.id)
        risk_level = template.get("risk_level", "low") if isinstance(template, dict) else "low"
        try:
            context = self._event_context(reaction.event_id)
            result = self._store.create_proposal_idempotent(
                dedupe_key,
                source,
                template,
                context=context,
                auto_approve=auto_approve.permits(source, str(risk_level)),
                now=self._clock(),
            )
        except StoreError as exc:
            logger.error("Proposal creation failed: %s", exc.message)
            payload["error"] = exc.message
            self._store.update_reaction_status(
                reaction.id, "failed", payload=payload, now=self._clock()
            )
            return "failed"

        proposal = result.proposal
        payload["result"] = {
            "proposal_id": proposal.id,
            "status": proposal.status,
            "created": result.created,
            "mission_id": result.mission_id,
            "approved_at": isoformat(proposal.approved_at),
        }
        self._store.update_reaction_status(reaction.id, "done", payload=payload, now=self._clock())
        if result.created:
            logger.info(
                "Proposal created: proposal_id=%s status=%s mission_id=%s",
                proposal.id,
                proposal.status,
                result.mission_id,
            )
            return "created"
        return "duplicate"

    def _event_context(self, event_id: int) -> dict[str, Any]:
        """Snapshot the triggering event's data for the mission context."""
        event = self._store.get_event(event_id)
        if event is None:
            return {}
        return dict(event.data)
