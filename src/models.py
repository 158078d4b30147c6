"""Data models for the opsloop orchestration store."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ReactionStatusEnum = Enum(
    "queued",
    "done",
    "failed",
    name="reaction_status",
    native_enum=False,
)
ProposalStatusEnum = Enum(
    "pending",
    "approved",
    "auto_approved",
    "rejected",
    name="proposal_status",
    native_enum=False,
)
MissionStatusEnum = Enum(
    "running",
    "succeeded",
    "failed",
    name="mission_status",
    native_enum=False,
)
StepStatusEnum = Enum(
    "queued",
    "running",
    "succeeded",
    "failed",
    name="step_status",
    native_enum=False,
)
ActionRunStatusEnum = Enum(
    "started",
    "succeeded",
    "failed",
    name="action_run_status",
    native_enum=False,
)


class AgentEvent(Base):
    """Incoming or emitted event evaluated by the trigger engine."""

    __tablename__ = "ops_events"

    id = Column(Integer, primary_key=True)
    type = Column(String(200), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    annotation = Column(Text, nullable=True)
    dedupe_key = Column(String(300), nullable=True, unique=True)
    mission_id = Column(Integer, ForeignKey("ops_missions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_ops_events_pending", "processed_at", "created_at"),)


class Policy(Base):
    """Versioned policy document keyed by name (reaction matrix, worker policy)."""

    __tablename__ = "ops_policy"

    id = Column(Integer, primary_key=True)
    key = Column(String(200), nullable=False, unique=True)
    value = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Reaction(Base):
    """Queued intent to create a proposal from a matched event."""

    __tablename__ = "ops_reactions"

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey("ops_events.id"), nullable=False)
    pattern_id = Column(String(200), nullable=True, index=True)
    status = Column(ReactionStatusEnum, nullable=False, default="queued")
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Proposal(Base):
    """Mission template awaiting or having received approval."""

    __tablename__ = "ops_proposals"

    id = Column(Integer, primary_key=True)
    source = Column(String(200), nullable=False)
    dedupe_key = Column(String(300), nullable=False, unique=True)
    template = Column(JSON, nullable=False)
    context = Column(JSON, nullable=True)
    status = Column(ProposalStatusEnum, nullable=False, default="pending")
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Mission(Base):
    """Multi-step unit of work instantiated from an approved proposal."""

    __tablename__ = "ops_missions"

    id = Column(Integer, primary_key=True)
    proposal_id = Column(Integer, ForeignKey("ops_proposals.id"), nullable=False)
    title = Column(String(500), nullable=True)
    status = Column(MissionStatusEnum, nullable=False, default="running")
    context = Column(JSON, nullable=False, default=dict)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class MissionStep(Base):
    """One executable unit of a mission, leased to at most one worker."""

    __tablename__ = "ops_mission_steps"

    id = Column(Integer, primary_key=True)
    mission_id = Column(Integer, ForeignKey("ops_missions.id"), nullable=False)
    step_index = Column(Integer, nullable=False, default=0)
    kind = Column(String(200), nullable=False)
    executor = Column(String(200), nullable=True)
    params = Column(JSON, nullable=False, default=dict)
    status = Column(StepStatusEnum, nullable=False, default="queued")
    failure_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=2)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    reserved_at = Column(DateTime(timezone=True), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_ops_mission_steps_status_created", "status", "created_at"),
        Index("ix_ops_mission_steps_mission", "mission_id", "step_index", unique=True),
    )


class ActionRun(Base):
    """Diagnostic audit record for one execution attempt of a step."""

    __tablename__ = "ops_action_runs"

    id = Column(Integer, primary_key=True)
    run_id = Column(String(200), nullable=False, unique=True)
    step_id = Column(Integer, ForeignKey("ops_mission_steps.id"), nullable=False)
    executor = Column(String(200), nullable=True)
    status = Column(ActionRunStatusEnum, nullable=False, default="started")
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)


class DeadLetter(Base):
    """Terminal record for a step that exhausted its retry budget."""

    __tablename__ = "ops_dead_letters"

    id = Column(Integer, primary_key=True)
    step_id = Column(Integer, ForeignKey("ops_mission_steps.id"), nullable=False, unique=True)
    mission_id = Column(Integer, ForeignKey("ops_missions.id"), nullable=False)
    kind = Column(String(200), nullable=False)
    executor = Column(String(200), nullable=True)
    params = Column(JSON, nullable=False, default=dict)
    failure_count = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RadarItem(Base):
    """Roadmap item managed by the radar sub-adapter."""

    __tablename__ = "ops_radar_items"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    stage = Column(String(100), nullable=False, default="watching")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class DeliveryReceipt(Base):
    """Record of a delivered non-idempotent side effect, keyed for de-duplication."""

    __tablename__ = "ops_delivery_receipts"

    id = Column(Integer, primary_key=True)
    key = Column(String(300), nullable=False, unique=True)
    step_id = Column(Integer, ForeignKey("ops_mission_steps.id"), nullable=True)
    channel = Column(String(100), nullable=False)
    response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
