"""Wire orchestration components from settings for the process entry points."""

from __future__ import annotations

import os
import socket
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session

from config import Settings, settings
from executors.dispatch import build_dispatch
from ops.data_access import SqlAlchemyOpsStore
from ops.heartbeat import Heartbeat
from ops.leases import StepLeaseManager
from ops.missions import MissionLifecycleManager
from ops.reactions import ReactionProcessor
from ops.store_interface import OpsStore
from ops.triggers import TriggerEvaluator
from ops.worker import StepWorker
from services.database import get_session_factory


def build_store(session_factory: Callable[[], Session] | None = None) -> SqlAlchemyOpsStore:
    """Return a store over the given or the process-wide session factory."""
    return SqlAlchemyOpsStore(session_factory or get_session_factory())


def build_lease_manager(
    store: OpsStore,
    missions: MissionLifecycleManager,
    config: Settings = settings,
) -> StepLeaseManager:
    """Return a lease manager using the configured lease and stale thresholds."""
    return StepLeaseManager(
        store,
        missions,
        lease_duration=timedelta(minutes=config.worker.lease_minutes),
        stale_after=timedelta(minutes=config.heartbeat.stale_step_minutes),
    )


def build_heartbeat(store: OpsStore, config: Settings = settings) -> Heartbeat:
    """Return a heartbeat wired with the configured batch sizes."""
    missions = MissionLifecycleManager(store)
    expire_after = config.heartbeat.expire_unmatched_events_after_minutes
    return Heartbeat(
        TriggerEvaluator(
            store,
            batch_size=config.heartbeat.event_batch_size,
            expire_unmatched_after=(
                timedelta(minutes=expire_after) if expire_after is not None else None
            ),
        ),
        ReactionProcessor(store, batch_size=config.heartbeat.reaction_batch_size),
        missions,
        build_lease_manager(store, missions, config),
    )


def default_worker_id() -> str:
    """Return a worker identifier unique to this host and process."""
    return f"{socket.gethostname()}-{os.getpid()}"


def build_worker(
    store: OpsStore,
    *,
    worker_id: str | None = None,
    config: Settings = settings,
) -> StepWorker:
    """Return a step worker wired with the standard adapter set."""
    missions = MissionLifecycleManager(store)
    return StepWorker(
        store,
        build_dispatch(store, config.executors),
        build_lease_manager(store, missions, config),
        missions,
        worker_id=worker_id or default_worker_id(),
        step_timeout_seconds=float(config.worker.step_timeout_seconds),
        idle_backoff_seconds=config.worker.idle_backoff_seconds,
        keepalive_interval_seconds=config.worker.keepalive_interval_seconds,
    )
