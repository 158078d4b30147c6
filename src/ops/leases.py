"""Step lease management: atomic claim, stale-lease sweep and orphan cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from ops.missions import MissionLifecycleManager
from ops.store_interface import LeaseRecoveryResult, OpsStore, StepRecord
from time_utils import utc_now

logger = logging.getLogger(__name__)


class StepLeaseManager:
    """Hand out steps under time-boxed leases and reclaim abandoned ones."""

    def __init__(
        self,
        store: OpsStore,
        missions: MissionLifecycleManager,
        *,
        lease_duration: timedelta,
        stale_after: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the lease manager with its store and lease timings."""
        self._store = store
        self._missions = missions
        self._lease_duration = lease_duration
        self._stale_after = stale_after
        self._clock = clock or utc_now

    @property
    def lease_duration(self) -> timedelta:
        """Return the duration granted by each claim or keep-alive."""
        return self._lease_duration

    def claim(self) -> StepRecord | None:
        """Claim the oldest queued step, or return None when the queue is empty."""
        return self._store.claim_next_queued_step(self._lease_duration, now=self._clock())

    def keep_alive(self, step_id: int) -> bool:
        """Extend a held step's lease; False when the step is no longer running."""
        return self._store.touch_step(step_id, self._lease_duration, now=self._clock())

    def sweep(self) -> LeaseRecoveryResult:
        """Requeue or fail running steps whose lease lapsed, then settle their missions."""
        now = self._clock()
        result = self._store.recover_expired_leases(stale_before=now - self._stale_after, now=now)
        if result.count:
            logger.warning(
                "Stale leases recovered: requeued=%s failed=%s",
                len(result.requeued),
                len(result.failed),
            )
        self._finalize(result)
        return result

    def recover_orphans(self) -> LeaseRecoveryResult:
        """Fail every step left running by a crashed worker, then settle their missions."""
        result = self._store.recover_orphaned_running_steps(now=self._clock())
        if result.count:
            logger.warning("Orphaned steps failed on startup: steps=%s", result.failed)
        self._finalize(result)
        return result

    def _finalize(self, result: LeaseRecoveryResult) -> None:
        for mission_id in result.mission_ids:
            self._missions.finalize_mission(mission_id)
