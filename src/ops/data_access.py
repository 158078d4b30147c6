"""SQLAlchemy implementation of the orchestration store."""

from __future__ import annotations

import logging
from contextlib import closing, contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    ActionRun,
    AgentEvent,
    DeadLetter,
    DeliveryReceipt,
    Mission,
    MissionStep,
    Policy,
    Proposal,
    RadarItem,
    Reaction,
)
from ops.errors import StoreError
from ops.store_interface import (
    UNSET,
    ActionRunRecord,
    DeadLetterRecord,
    EventRecord,
    LeaseRecoveryResult,
    MissionRecord,
    ProposalCreateResult,
    ProposalRecord,
    RadarItemRecord,
    ReactionRecord,
    StepCreateInput,
    StepRecord,
    StepUpdateInput,
)
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Queued steps examined per claim attempt before giving up on this poll.
_CLAIM_CANDIDATES = 10
_RECOVERY_BATCH = 100


def _normalize_timestamp(value: datetime | None) -> datetime:
    """Return an aware UTC timestamp, defaulting to now."""
    if value is None:
        return utc_now()
    return ensure_utc(value)


def _event_record(row: AgentEvent) -> EventRecord:
    return EventRecord(
        id=row.id,
        type=row.type,
        data=dict(row.data or {}),
        annotation=row.annotation,
        created_at=ensure_utc(row.created_at),
        processed_at=ensure_utc(row.processed_at),
        mission_id=row.mission_id,
        dedupe_key=row.dedupe_key,
    )


def _reaction_record(row: Reaction) -> ReactionRecord:
    return ReactionRecord(
        id=row.id,
        event_id=row.event_id,
        pattern_id=row.pattern_id,
        status=row.status,
        payload=dict(row.payload or {}),
        created_at=ensure_utc(row.created_at),
    )


def _proposal_record(row: Proposal) -> ProposalRecord:
    return ProposalRecord(
        id=row.id,
        source=row.source,
        dedupe_key=row.dedupe_key,
        template=dict(row.template or {}),
        context=row.context,
        status=row.status,
        approved_at=ensure_utc(row.approved_at),
        created_at=ensure_utc(row.created_at),
    )


def _mission_record(row: Mission) -> MissionRecord:
    return MissionRecord(
        id=row.id,
        proposal_id=row.proposal_id,
        title=row.title,
        status=row.status,
        context=dict(row.context or {}),
        failure_reason=row.failure_reason,
        created_at=ensure_utc(row.created_at),
        completed_at=ensure_utc(row.completed_at),
    )


def _step_record(row: MissionStep) -> StepRecord:
    return StepRecord(
        id=row.id,
        mission_id=row.mission_id,
        step_index=row.step_index,
        kind=row.kind,
        executor=row.executor,
        params=dict(row.params or {}),
        status=row.status,
        failure_count=row.failure_count,
        max_retries=row.max_retries,
        last_error=row.last_error,
        result=row.result,
        reserved_at=ensure_utc(row.reserved_at),
        lease_expires_at=ensure_utc(row.lease_expires_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _dead_letter_record(row: DeadLetter) -> DeadLetterRecord:
    return DeadLetterRecord(
        id=row.id,
        step_id=row.step_id,
        mission_id=row.mission_id,
        kind=row.kind,
        executor=row.executor,
        params=dict(row.params or {}),
        failure_count=row.failure_count,
        last_error=row.last_error,
        result=row.result,
        created_at=ensure_utc(row.created_at),
    )


def _action_run_record(row: ActionRun) -> ActionRunRecord:
    return ActionRunRecord(
        run_id=row.run_id,
        step_id=row.step_id,
        executor=row.executor,
        status=row.status,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
        error=row.error,
        meta=dict(row.meta or {}),
    )


def _radar_record(row: RadarItem) -> RadarItemRecord:
    return RadarItemRecord(
        id=row.id,
        title=row.title,
        description=row.description,
        stage=row.stage,
        notes=row.notes,
        updated_at=ensure_utc(row.updated_at),
    )


def _step_update_values(update_input: StepUpdateInput) -> dict[str, Any]:
    """Translate a step update payload into column values, skipping UNSET fields."""
    values: dict[str, Any] = {}
    if update_input.status is not UNSET:
        if update_input.status is None:
            raise ValueError("status cannot be null.")
        if update_input.status not in MissionStep.status.type.enums:
            raise ValueError(f"Invalid step status: {update_input.status}.")
        values["status"] = update_input.status
    if update_input.failure_count is not UNSET:
        values["failure_count"] = int(update_input.failure_count)
    if update_input.last_error is not UNSET:
        values["last_error"] = update_input.last_error
    if update_input.result is not UNSET:
        values["result"] = update_input.result
    if update_input.reserved_at is not UNSET:
        values["reserved_at"] = update_input.reserved_at
    if update_input.lease_expires_at is not UNSET:
        values["lease_expires_at"] = update_input.lease_expires_at
    return values


def _dead_letter_from_step(step: MissionStep, now: datetime) -> DeadLetter:
    return DeadLetter(
        step_id=step.id,
        mission_id=step.mission_id,
        kind=step.kind,
        executor=step.executor,
        params=dict(step.params or {}),
        failure_count=step.failure_count,
        last_error=step.last_error,
        result=step.result,
        created_at=now,
    )


class SqlAlchemyOpsStore:
    """Store implementation backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the store with a session factory."""
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Yield a session whose work is committed on success, rolled back on error."""
        with closing(self._session_factory()) as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StoreError(
                    "Store operation failed.",
                    details={"error": str(exc), "type": type(exc).__name__},
                ) from exc
            except Exception:
                session.rollback()
                raise

    # Events

    def list_unprocessed_events(self, limit: int) -> list[EventRecord]:
        """Return the oldest unprocessed events, up to ``limit``."""
        with self._transaction() as session:
            rows = (
                session.query(AgentEvent)
                .filter(AgentEvent.processed_at.is_(None))
                .order_by(AgentEvent.created_at.asc(), AgentEvent.id.asc())
                .limit(limit)
                .all()
            )
            return [_event_record(row) for row in rows]

    def insert_event(
        self,
        event_type: str,
        data: dict[str, Any],
        *,
        annotation: str | None = None,
        mission_id: int | None = None,
        dedupe_key: str | None = None,
        now: datetime | None = None,
    ) -> EventRecord:
        """Insert an event; a repeated dedupe key returns the existing event."""
        if not event_type or not event_type.strip():
            raise ValueError("event type is required.")
        timestamp = _normalize_timestamp(now)
        try:
            with self._transaction() as session:
                row = AgentEvent(
                    type=event_type.strip(),
                    data=dict(data or {}),
                    annotation=annotation,
                    mission_id=mission_id,
                    dedupe_key=dedupe_key,
                    created_at=timestamp,
                )
                session.add(row)
                session.flush()
                return _event_record(row)
        except StoreError as exc:
            if dedupe_key is None or not isinstance(exc.__cause__, IntegrityError):
                raise
        with self._transaction() as session:
            existing = (
                session.query(AgentEvent).filter(AgentEvent.dedupe_key == dedupe_key).first()
            )
            if existing is None:
                raise StoreError(
                    "Event insert conflicted but no existing event was found.",
                    details={"dedupe_key": dedupe_key},
                )
            logger.info("Duplicate event suppressed: dedupe_key=%s", dedupe_key)
            return _event_record(existing)

    def get_event(self, event_id: int) -> EventRecord | None:
        """Return an event by id."""
        with self._transaction() as session:
            row = session.get(AgentEvent, event_id)
            return None if row is None else _event_record(row)

    def mark_event_processed(self, event_id: int, *, now: datetime | None = None) -> None:
        """Stamp an event as processed."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            session.execute(
                update(AgentEvent)
                .where(AgentEvent.id == event_id, AgentEvent.processed_at.is_(None))
                .values(processed_at=timestamp)
                .execution_options(synchronize_session=False)
            )

    def expire_unmatched_events(self, created_before: datetime, *, now: datetime) -> int:
        """Mark unprocessed events older than ``created_before`` as processed."""
        cutoff = ensure_utc(created_before)
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            result = session.execute(
                update(AgentEvent)
                .where(AgentEvent.processed_at.is_(None), AgentEvent.created_at < cutoff)
                .values(processed_at=timestamp)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    # Policies

    def get_policy(self, key: str) -> Any:
        """Return the current document for a policy key, or None."""
        with self._transaction() as session:
            row = session.query(Policy).filter(Policy.key == key).first()
            return None if row is None else row.value

    def upsert_policy(self, key: str, value: Any, *, now: datetime | None = None) -> int:
        """Replace a policy document and return its new version."""
        if not key or not key.strip():
            raise ValueError("policy key is required.")
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            row = session.query(Policy).filter(Policy.key == key).with_for_update().first()
            if row is None:
                row = Policy(key=key, value=value, version=1, updated_at=timestamp)
                session.add(row)
            else:
                row.value = value
                row.version = (row.version or 0) + 1
                row.updated_at = timestamp
            session.flush()
            return row.version

    # Reactions

    def insert_reaction(
        self,
        event_id: int,
        pattern_id: str | None,
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> ReactionRecord:
        """Queue a reaction for an event."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            row = Reaction(
                event_id=event_id,
                pattern_id=pattern_id,
                status="queued",
                payload=payload,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            session.flush()
            return _reaction_record(row)

    def has_recent_reaction(self, pattern_id: str, since: datetime) -> bool:
        """Return True when a reaction for the pattern was created after ``since``."""
        cutoff = ensure_utc(since)
        with self._transaction() as session:
            row = (
                session.query(Reaction.id)
                .filter(Reaction.pattern_id == pattern_id, Reaction.created_at > cutoff)
                .first()
            )
            return row is not None

    def list_queued_reactions(self, limit: int) -> list[ReactionRecord]:
        """Return the oldest queued reactions, up to ``limit``."""
        with self._transaction() as session:
            rows = (
                session.query(Reaction)
                .filter(Reaction.status == "queued")
                .order_by(Reaction.created_at.asc(), Reaction.id.asc())
                .limit(limit)
                .all()
            )
            return [_reaction_record(row) for row in rows]

    def update_reaction_status(
        self,
        reaction_id: int,
        status: str,
        *,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Set a reaction's status, optionally replacing its payload."""
        if status not in Reaction.status.type.enums:
            raise ValueError(f"Invalid reaction status: {status}.")
        values: dict[str, Any] = {"status": status, "updated_at": _normalize_timestamp(now)}
        if payload is not None:
            values["payload"] = payload
        with self._transaction() as session:
            session.execute(
                update(Reaction)
                .where(Reaction.id == reaction_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

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
    ) -> ProposalCreateResult:
        """Insert a proposal unless its dedupe key exists; optionally auto-approve it."""
        if not dedupe_key:
            raise ValueError("dedupe_key is required.")
        timestamp = _normalize_timestamp(now)
        try:
            with self._transaction() as session:
                proposal = Proposal(
                    source=source,
                    dedupe_key=dedupe_key,
                    template=template,
                    context=context,
                    status="auto_approved" if auto_approve else "pending",
                    approved_at=timestamp if auto_approve else None,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                session.add(proposal)
                session.flush()
                mission_id = None
                if auto_approve:
                    mission = Mission(
                        proposal_id=proposal.id,
                        title=_template_title(template),
                        status="running",
                        context=dict(context or {}),
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                    session.add(mission)
                    session.flush()
                    mission_id = mission.id
                return ProposalCreateResult(
                    proposal=_proposal_record(proposal),
                    created=True,
                    mission_id=mission_id,
                )
        except StoreError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
        with self._transaction() as session:
            existing = session.query(Proposal).filter(Proposal.dedupe_key == dedupe_key).first()
            if existing is None:
                raise StoreError(
                    "Proposal insert conflicted but no existing proposal was found.",
                    details={"dedupe_key": dedupe_key},
                )
            logger.info("Duplicate proposal suppressed: dedupe_key=%s", dedupe_key)
            return ProposalCreateResult(proposal=_proposal_record(existing), created=False)

    def get_proposal(self, proposal_id: int) -> ProposalRecord | None:
        """Return a proposal by id."""
        with self._transaction() as session:
            row = session.get(Proposal, proposal_id)
            return None if row is None else _proposal_record(row)

    def list_proposals(self, *, status: str | None = None, limit: int = 50) -> list[ProposalRecord]:
        """Return recent proposals, newest first."""
        with self._transaction() as session:
            query = session.query(Proposal)
            if status is not None:
                query = query.filter(Proposal.status == status)
            rows = query.order_by(Proposal.id.desc()).limit(limit).all()
            return [_proposal_record(row) for row in rows]

    def approve_proposal(
        self, proposal_id: int, *, now: datetime | None = None
    ) -> MissionRecord | None:
        """Approve a pending proposal and create its mission in one transaction.

        Returns None when the proposal is missing or no longer pending.
        """
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            result = session.execute(
                update(Proposal)
                .where(Proposal.id == proposal_id, Proposal.status == "pending")
                .values(status="approved", approved_at=timestamp, updated_at=timestamp)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            proposal = session.get(Proposal, proposal_id)
            mission = Mission(
                proposal_id=proposal_id,
                title=_template_title(proposal.template),
                status="running",
                context=dict(proposal.context or {}),
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(mission)
            session.flush()
            return _mission_record(mission)

    def reject_proposal(self, proposal_id: int, *, now: datetime | None = None) -> bool:
        """Reject a pending proposal; returns False when it was not pending."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            result = session.execute(
                update(Proposal)
                .where(Proposal.id == proposal_id, Proposal.status == "pending")
                .values(status="rejected", updated_at=timestamp)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # Missions

    def insert_mission(
        self,
        proposal_id: int,
        context: dict[str, Any],
        *,
        title: str | None = None,
        now: datetime | None = None,
    ) -> MissionRecord:
        """Create a running mission for a proposal."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            row = Mission(
                proposal_id=proposal_id,
                title=title,
                status="running",
                context=dict(context or {}),
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            session.flush()
            return _mission_record(row)

    def get_mission(self, mission_id: int) -> MissionRecord | None:
        """Return a mission by id."""
        with self._transaction() as session:
            row = session.get(Mission, mission_id)
            return None if row is None else _mission_record(row)

    def list_running_missions(self) -> list[MissionRecord]:
        """Return every running mission, oldest first."""
        with self._transaction() as session:
            rows = (
                session.query(Mission)
                .filter(Mission.status == "running")
                .order_by(Mission.created_at.asc(), Mission.id.asc())
                .all()
            )
            return [_mission_record(row) for row in rows]

    def list_missions(self, *, status: str | None = None, limit: int = 50) -> list[MissionRecord]:
        """Return recent missions, newest first."""
        with self._transaction() as session:
            query = session.query(Mission)
            if status is not None:
                query = query.filter(Mission.status == status)
            rows = query.order_by(Mission.id.desc()).limit(limit).all()
            return [_mission_record(row) for row in rows]

    def update_mission_status(
        self,
        mission_id: int,
        status: str,
        *,
        failure_reason: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move a running mission to ``status``; terminal missions are left untouched."""
        if status not in Mission.status.type.enums:
            raise ValueError(f"Invalid mission status: {status}.")
        timestamp = _normalize_timestamp(now)
        values: dict[str, Any] = {"status": status, "updated_at": timestamp}
        if status in {"succeeded", "failed"}:
            values["completed_at"] = timestamp
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        with self._transaction() as session:
            result = session.execute(
                update(Mission)
                .where(Mission.id == mission_id, Mission.status == "running")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # Steps

    def insert_step(
        self, step_input: StepCreateInput, *, now: datetime | None = None
    ) -> StepRecord | None:
        """Create a queued step for a mission.

        Returns None when the mission already has a step at that index.
        """
        if not step_input.kind:
            raise ValueError("step kind is required.")
        timestamp = _normalize_timestamp(now)
        try:
            with self._transaction() as session:
                row = MissionStep(
                    mission_id=step_input.mission_id,
                    step_index=step_input.step_index,
                    kind=step_input.kind,
                    executor=step_input.executor,
                    params=dict(step_input.params or {}),
                    status="queued",
                    failure_count=0,
                    max_retries=step_input.max_retries,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                session.add(row)
                session.flush()
                return _step_record(row)
        except StoreError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
        logger.info(
            "Duplicate step suppressed: mission_id=%s step_index=%s",
            step_input.mission_id,
            step_input.step_index,
        )
        return None

    def get_step(self, step_id: int) -> StepRecord | None:
        """Return a step by id."""
        with self._transaction() as session:
            row = session.get(MissionStep, step_id)
            return None if row is None else _step_record(row)

    def list_steps_for_mission(self, mission_id: int) -> list[StepRecord]:
        """Return a mission's steps in creation order."""
        with self._transaction() as session:
            rows = (
                session.query(MissionStep)
                .filter(MissionStep.mission_id == mission_id)
                .order_by(MissionStep.created_at.asc(), MissionStep.id.asc())
                .all()
            )
            return [_step_record(row) for row in rows]

    def list_steps(self, *, status: str | None = None, limit: int = 50) -> list[StepRecord]:
        """Return recent steps, newest first."""
        with self._transaction() as session:
            query = session.query(MissionStep)
            if status is not None:
                query = query.filter(MissionStep.status == status)
            rows = query.order_by(MissionStep.id.desc()).limit(limit).all()
            return [_step_record(row) for row in rows]

    def claim_next_queued_step(
        self, lease_duration: timedelta, *, now: datetime | None = None
    ) -> StepRecord | None:
        """Atomically move the oldest queued step to running under a fresh lease."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            candidates = (
                session.query(MissionStep.id)
                .filter(MissionStep.status == "queued")
                .order_by(MissionStep.created_at.asc(), MissionStep.id.asc())
                .limit(_CLAIM_CANDIDATES)
                .with_for_update(skip_locked=True)
                .all()
            )
            for (step_id,) in candidates:
                result = session.execute(
                    update(MissionStep)
                    .where(MissionStep.id == step_id, MissionStep.status == "queued")
                    .values(
                        status="running",
                        reserved_at=timestamp,
                        lease_expires_at=timestamp + lease_duration,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.debug("Claim lost to another worker: step_id=%s", step_id)
                    continue
                row = session.get(MissionStep, step_id, populate_existing=True)
                return _step_record(row)
            return None

    def touch_step(
        self, step_id: int, lease_duration: timedelta, *, now: datetime | None = None
    ) -> bool:
        """Refresh a running step's updated_at and extend its lease."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            result = session.execute(
                update(MissionStep)
                .where(MissionStep.id == step_id, MissionStep.status == "running")
                .values(updated_at=timestamp, lease_expires_at=timestamp + lease_duration)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def update_step(
        self,
        step_id: int,
        update_input: StepUpdateInput,
        *,
        expected_status: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Apply a step update, guarded on ``expected_status`` when provided."""
        values = _step_update_values(update_input)
        values["updated_at"] = _normalize_timestamp(now)
        conditions = [MissionStep.id == step_id]
        if expected_status is not None:
            conditions.append(MissionStep.status == expected_status)
        with self._transaction() as session:
            result = session.execute(
                update(MissionStep)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def fail_step(
        self,
        step_id: int,
        update_input: StepUpdateInput,
        *,
        dead_letter: bool,
        expected_status: str | None = "running",
        now: datetime | None = None,
    ) -> bool:
        """Mark a step failed and, when requested, dead-letter it in the same transaction."""
        values = _step_update_values(update_input)
        timestamp = _normalize_timestamp(now)
        values.update(
            status="failed",
            reserved_at=None,
            lease_expires_at=None,
            updated_at=timestamp,
        )
        conditions = [MissionStep.id == step_id]
        if expected_status is not None:
            conditions.append(MissionStep.status == expected_status)
        with self._transaction() as session:
            result = session.execute(
                update(MissionStep)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            if dead_letter:
                self._add_dead_letter(session, step_id, timestamp)
            return True

    def recover_expired_leases(
        self, *, stale_before: datetime, now: datetime | None = None
    ) -> LeaseRecoveryResult:
        """Requeue or fail running steps whose lease has lapsed.

        A step is stale when its lease expired before ``now`` or, lacking a
        lease, when it was last touched before ``stale_before``. Each recovery
        counts as one failure against the step's retry budget.
        """
        timestamp = _normalize_timestamp(now)
        cutoff = ensure_utc(stale_before)
        requeued: list[int] = []
        failed: list[int] = []
        mission_ids: list[int] = []
        with self._transaction() as session:
            rows = (
                session.query(MissionStep)
                .filter(
                    MissionStep.status == "running",
                    or_(
                        and_(
                            MissionStep.lease_expires_at.isnot(None),
                            MissionStep.lease_expires_at < timestamp,
                        ),
                        and_(
                            MissionStep.lease_expires_at.is_(None),
                            MissionStep.updated_at < cutoff,
                        ),
                    ),
                )
                .order_by(MissionStep.id.asc())
                .limit(_RECOVERY_BATCH)
                .with_for_update(skip_locked=True)
                .all()
            )
            for row in rows:
                failure_count = (row.failure_count or 0) + 1
                reason = _stale_reason(row, timestamp)
                exhausted = failure_count >= row.max_retries
                result = session.execute(
                    update(MissionStep)
                    .where(MissionStep.id == row.id, MissionStep.status == "running")
                    .values(
                        status="failed" if exhausted else "queued",
                        failure_count=failure_count,
                        last_error=reason,
                        reserved_at=None,
                        lease_expires_at=None,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                if exhausted:
                    self._add_dead_letter(session, row.id, timestamp)
                    failed.append(row.id)
                    if row.mission_id not in mission_ids:
                        mission_ids.append(row.mission_id)
                else:
                    requeued.append(row.id)
        return LeaseRecoveryResult(requeued=requeued, failed=failed, mission_ids=mission_ids)

    def recover_orphaned_running_steps(self, *, now: datetime | None = None) -> LeaseRecoveryResult:
        """Fail every step still marked running, without dead-lettering."""
        timestamp = _normalize_timestamp(now)
        failed: list[int] = []
        mission_ids: list[int] = []
        with self._transaction() as session:
            rows = (
                session.query(MissionStep.id, MissionStep.mission_id)
                .filter(MissionStep.status == "running")
                .order_by(MissionStep.id.asc())
                .all()
            )
            for step_id, mission_id in rows:
                result = session.execute(
                    update(MissionStep)
                    .where(MissionStep.id == step_id, MissionStep.status == "running")
                    .values(
                        status="failed",
                        last_error="Orphaned: worker restarted while step was running",
                        reserved_at=None,
                        lease_expires_at=None,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                failed.append(step_id)
                if mission_id not in mission_ids:
                    mission_ids.append(mission_id)
        return LeaseRecoveryResult(failed=failed, mission_ids=mission_ids)

    # Dead letters and audit

    def insert_dead_letter(self, step_id: int, *, now: datetime | None = None) -> bool:
        """Snapshot a step into the dead-letter table; False if already present."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            return self._add_dead_letter(session, step_id, timestamp)

    def _add_dead_letter(self, session: Session, step_id: int, timestamp: datetime) -> bool:
        existing = session.query(DeadLetter.id).filter(DeadLetter.step_id == step_id).first()
        if existing is not None:
            return False
        step = session.get(MissionStep, step_id, populate_existing=True)
        if step is None:
            raise ValueError("step not found.")
        session.add(_dead_letter_from_step(step, timestamp))
        session.flush()
        logger.warning(
            "Step dead-lettered: step_id=%s mission_id=%s failures=%s",
            step.id,
            step.mission_id,
            step.failure_count,
        )
        return True

    def list_dead_letters(self, *, limit: int = 50) -> list[DeadLetterRecord]:
        """Return recent dead letters, newest first."""
        with self._transaction() as session:
            rows = session.query(DeadLetter).order_by(DeadLetter.id.desc()).limit(limit).all()
            return [_dead_letter_record(row) for row in rows]

    def insert_action_run(
        self,
        run_id: str,
        step_id: int,
        executor: str | None,
        *,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Record the start of one execution attempt."""
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            session.add(
                ActionRun(
                    run_id=run_id,
                    step_id=step_id,
                    executor=executor,
                    status="started",
                    started_at=timestamp,
                    meta=dict(meta or {}),
                )
            )

    def update_action_run(
        self,
        run_id: str,
        status: str,
        *,
        error: str | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Close out an execution attempt with its final status."""
        if status not in ActionRun.status.type.enums:
            raise ValueError(f"Invalid action run status: {status}.")
        timestamp = _normalize_timestamp(now)
        with self._transaction() as session:
            row = session.query(ActionRun).filter(ActionRun.run_id == run_id).first()
            if row is None:
                raise ValueError("action run not found.")
            row.status = status
            row.error = error
            if status != "started":
                row.completed_at = timestamp
            if meta:
                merged = dict(row.meta or {})
                merged.update(meta)
                row.meta = merged

    def list_action_runs(self, step_id: int) -> list[ActionRunRecord]:
        """Return a step's execution attempts in start order."""
        with self._transaction() as session:
            rows = (
                session.query(ActionRun)
                .filter(ActionRun.step_id == step_id)
                .order_by(ActionRun.id.asc())
                .all()
            )
            return [_action_run_record(row) for row in rows]

    # Radar roadmap

    def insert_radar_item(
        self, title: str, *, description: str | None = None, stage: str = "watching"
    ) -> RadarItemRecord:
        """Add a roadmap item."""
        if not title or not title.strip():
            raise ValueError("radar item title is required.")
        timestamp = utc_now()
        with self._transaction() as session:
            row = RadarItem(
                title=title.strip(),
                description=description,
                stage=stage,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            session.flush()
            return _radar_record(row)

    def update_radar_stage(
        self,
        *,
        stage: str,
        item_id: int | None = None,
        title: str | None = None,
        notes: str | None = None,
    ) -> RadarItemRecord | None:
        """Move a roadmap item, found by id or exact title, to a new stage."""
        if item_id is None and not title:
            raise ValueError("item_id or title is required.")
        with self._transaction() as session:
            query = session.query(RadarItem)
            if item_id is not None:
                query = query.filter(RadarItem.id == item_id)
            else:
                query = query.filter(RadarItem.title == title)
            row = query.order_by(RadarItem.id.desc()).first()
            if row is None:
                return None
            row.stage = stage
            if notes is not None:
                row.notes = notes
            row.updated_at = utc_now()
            session.flush()
            return _radar_record(row)

    def list_radar_items(self, *, stage: str | None = None) -> list[RadarItemRecord]:
        """Return roadmap items, optionally filtered by stage."""
        with self._transaction() as session:
            query = session.query(RadarItem)
            if stage is not None:
                query = query.filter(RadarItem.stage == stage)
            rows = query.order_by(RadarItem.id.asc()).all()
            return [_radar_record(row) for row in rows]

    # Delivery receipts

    def get_delivery_receipt(self, key: str) -> dict[str, Any] | None:
        """Return the stored response for a delivered side effect."""
        with self._transaction() as session:
            row = session.query(DeliveryReceipt).filter(DeliveryReceipt.key == key).first()
            if row is None:
                return None
            return dict(row.response or {})

    def insert_delivery_receipt(
        self,
        key: str,
        channel: str,
        *,
        step_id: int | None = None,
        response: dict[str, Any] | None = None,
    ) -> bool:
        """Record a delivery; returns False when the key was already recorded."""
        try:
            with self._transaction() as session:
                session.add(
                    DeliveryReceipt(
                        key=key,
                        channel=channel,
                        step_id=step_id,
                        response=response,
                        created_at=utc_now(),
                    )
                )
                session.flush()
                return True
        except StoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                return False
            raise


def _template_title(template: Any) -> str | None:
    if isinstance(template, dict):
        title = template.get("title")
        if title is not None:
            return str(title)[:500]
    return None


def _stale_reason(row: MissionStep, now: datetime) -> str:
    lease = ensure_utc(row.lease_expires_at)
    if lease is not None:
        return f"Stale: lease expired at {lease.isoformat()} (swept at {now.isoformat()})"
    updated = ensure_utc(row.updated_at)
    stamp = updated.isoformat() if updated is not None else "unknown"
    return f"Stale: no activity since {stamp}"
