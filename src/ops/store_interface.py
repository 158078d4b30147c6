"""Storage-agnostic store contract and the records passed across it."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from time_utils import isoformat

UNSET = object()


@dataclass(frozen=True)
class EventRecord:
    """Immutable snapshot of an event row."""

    id: int
    type: str
    data: dict[str, Any]
    annotation: str | None
    created_at: datetime
    processed_at: datetime | None = None
    mission_id: int | None = None
    dedupe_key: str | None = None

    @property
    def tags(self) -> list[str]:
        """Return the event's tags, carried in ``data.tags``."""
        raw = self.data.get("tags") if isinstance(self.data, dict) else None
        if not isinstance(raw, list):
            return []
        return [str(tag) for tag in raw]

    @property
    def source(self) -> str | None:
        """Return the event's source, carried in ``data.source``."""
        if not isinstance(self.data, dict):
            return None
        value = self.data.get("source")
        return None if value is None else str(value)

    def as_document(self) -> dict[str, Any]:
        """Return the event as a plain document for template rendering."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "annotation": self.annotation,
            "mission_id": self.mission_id,
            "created_at": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class ReactionRecord:
    """Immutable snapshot of a reaction row."""

    id: int
    event_id: int
    pattern_id: str | None
    status: str
    payload: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class ProposalRecord:
    """Immutable snapshot of a proposal row."""

    id: int
    source: str
    dedupe_key: str
    template: dict[str, Any]
    context: dict[str, Any] | None
    status: str
    approved_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ProposalCreateResult:
    """Outcome of the idempotent proposal check-and-insert."""

    proposal: ProposalRecord
    created: bool
    mission_id: int | None = None


@dataclass(frozen=True)
class MissionRecord:
    """Immutable snapshot of a mission row."""

    id: int
    proposal_id: int
    title: str | None
    status: str
    context: dict[str, Any]
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None = None


@dataclass(frozen=True)
class StepRecord:
    """Immutable snapshot of a mission step row."""

    id: int
    mission_id: int
    step_index: int
    kind: str
    executor: str | None
    params: dict[str, Any]
    status: str
    failure_count: int
    max_retries: int
    last_error: str | None
    result: Any
    reserved_at: datetime | None
    lease_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class StepCreateInput:
    """Input payload for creating a queued mission step."""

    mission_id: int
    step_index: int
    kind: str
    executor: str | None
    params: dict[str, Any]
    max_retries: int


@dataclass(frozen=True)
class StepUpdateInput:
    """Input payload for updating a mission step; UNSET fields are left as-is."""

    status: str | object = UNSET
    failure_count: int | object = UNSET
    last_error: str | None | object = UNSET
    result: Any = UNSET
    reserved_at: datetime | None | object = UNSET
    lease_expires_at: datetime | None | object = UNSET


@dataclass(frozen=True)
class LeaseRecoveryResult:
    """Steps moved by a stale-lease sweep or an orphan cleanup."""

    requeued: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    mission_ids: list[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Return the number of recovered steps."""
        return len(self.requeued) + len(self.failed)


@dataclass(frozen=True)
class DeadLetterRecord:
    """Immutable snapshot of a dead-letter row."""

    id: int
    step_id: int
    mission_id: int
    kind: str
    executor: str | None
    params: dict[str, Any]
    failure_count: int
    last_error: str | None
    result: Any
    created_at: datetime


@dataclass(frozen=True)
class ActionRunRecord:
    """Immutable snapshot of an action run audit row."""

    run_id: str
    step_id: int
    executor: str | None
    status: str
    started_at: datetime
    completed_at: datetime | None
    error: str | None
    meta: dict[str, Any]


@dataclass(frozen=True)
class RadarItemRecord:
    """Immutable snapshot of a radar roadmap item."""

    id: int
    title: str
    description: str | None
    stage: str
    notes: str | None
    updated_at: datetime

    def as_document(self) -> dict[str, Any]:
        """Return the item as a JSON-compatible document."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "stage": self.stage,
            "notes": self.notes,
            "updated_at": isoformat(self.updated_at),
        }


class OpsStore(Protocol):
    """Durable record of events, policies, reactions, proposals, missions and steps.

    Every method is its own transaction. Implementations raise ``StoreError``
    when persistence is unavailable.
    """

    # Events
    def list_unprocessed_events(self, limit: int) -> list[EventRecord]: ...

    def insert_event(
        self,
        event_type: str,
        data: dict[str, Any],
        *,
        annotation: str | None = None,
        mission_id: int | None = None,
        dedupe_key: str | None = None,
        now: datetime | None = None,
    ) -> EventRecord: ...

    def get_event(self, event_id: int) -> EventRecord | None: ...

    def mark_event_processed(self, event_id: int, *, now: datetime | None = None) -> None: ...

    def expire_unmatched_events(self, created_before: datetime, *, now: datetime) -> int: ...

    # Policies
    def get_policy(self, key: str) -> Any: ...

    def upsert_policy(self, key: str, value: Any, *, now: datetime | None = None) -> int: ...

    # Reactions
    def insert_reaction(
        self,
        event_id: int,
        pattern_id: str | None,
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> ReactionRecord: ...

    def has_recent_reaction(self, pattern_id: str, since: datetime) -> bool: ...

    def list_queued_reactions(self, limit: int) -> list[ReactionRecord]: ...

    def update_reaction_status(
        self,
        reaction_id: int,
        status: str,
        *,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None: ...

    # Proposals
    def create_proposal_idempotent(
        self,
        dedupe_key: str,
        source: str,
        template: dict[str, Any],
        *,
        context: dict[str, Any] | None = None,
        auto_approve: bool = False,
        now: datetime | None = None,
    ) -> ProposalCreateResult: ...

    def get_proposal(self, proposal_id: int) -> ProposalRecord | None: ...

    def list_proposals(self, *, status: str | None = None, limit: int = 50) -> list[ProposalRecord]: ...

    def approve_proposal(
        self, proposal_id: int, *, now: datetime | None = None
    ) -> MissionRecord | None: ...

    def reject_proposal(self, proposal_id: int, *, now: datetime | None = None) -> bool: ...

    # Missions
    def insert_mission(
        self,
        proposal_id: int,
        context: dict[str, Any],
        *,
        title: str | None = None,
        now: datetime | None = None,
    ) -> MissionRecord: ...

    def get_mission(self, mission_id: int) -> MissionRecord | None: ...

    def list_running_missions(self) -> list[MissionRecord]: ...

    def list_missions(self, *, status: str | None = None, limit: int = 50) -> list[MissionRecord]: ...

    def update_mission_status(
        self,
        mission_id: int,
        status: str,
        *,
        failure_reason: str | None = None,
        now: datetime | None = None,
    ) -> bool: ...

    # Steps
    def insert_step(
        self, step_input: StepCreateInput, *, now: datetime | None = None
    ) -> StepRecord | None: ...

    def get_step(self, step_id: int) -> StepRecord | None: ...

    def list_steps_for_mission(self, mission_id: int) -> list[StepRecord]: ...

    def list_steps(self, *, status: str | None = None, limit: int = 50) -> list[StepRecord]: ...

    def claim_next_queued_step(
        self, lease_duration: timedelta, *, now: datetime | None = None
    ) -> StepRecord | None: ...

    def touch_step(
        self, step_id: int, lease_duration: timedelta, *, now: datetime | None = None
    ) -> bool: ...

    def update_step(
        self,
        step_id: int,
        update: StepUpdateInput,
        *,
        expected_status: str | None = None,
        now: datetime | None = None,
    ) -> bool: ...

    def fail_step(
        self,
        step_id: int,
        update: StepUpdateInput,
        *,
        dead_letter: bool,
        expected_status: str | None = "running",
        now: datetime | None = None,
    ) -> bool: ...

    def recover_expired_leases(
        self, *, stale_before: datetime, now: datetime | None = None
    ) -> LeaseRecoveryResult: ...

    def recover_orphaned_running_steps(self, *, now: datetime | None = None) -> LeaseRecoveryResult: ...

    # Dead letters and audit
    def insert_dead_letter(self, step_id: int, *, now: datetime | None = None) -> bool: ...

    def list_dead_letters(self, *, limit: int = 50) -> list[DeadLetterRecord]: ...

    def insert_action_run(
        self,
        run_id: str,
        step_id: int,
        executor: str | None,
        *,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None: ...

    def update_action_run(
        self,
        run_id: str,
        status: str,
        *,
        error: str | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None: ...

    def list_action_runs(self, step_id: int) -> list[ActionRunRecord]: ...

    # Radar roadmap
    def insert_radar_item(
        self, title: str, *, description: str | None = None, stage: str = "watching"
    ) -> RadarItemRecord: ...

    def update_radar_stage(
        self,
        *,
        stage: str,
        item_id: int | None = None,
        title: str | None = None,
        notes: str | None = None,
    ) -> RadarItemRecord | None: ...

    def list_radar_items(self, *, stage: str | None = None) -> list[RadarItemRecord]: ...

    # Delivery receipts
    def get_delivery_receipt(self, key: str) -> dict[str, Any] | None: ...

    def insert_delivery_receipt(
        self,
        key: str,
        channel: str,
        *,
        step_id: int | None = None,
        response: dict[str, Any] | None = None,
    ) -> bool: ...
