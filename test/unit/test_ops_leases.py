"""Unit tests for step claims, stale-lease recovery and orphan cleanup."""

from __future__ import annotations

from datetime import timedelta

from helpers.ops_harness import DeterministicClock, approved_mission
from ops.data_access import SqlAlchemyOpsStore
from ops.leases import StepLeaseManager
from ops.missions import MissionLifecycleManager
from ops.store_interface import StepCreateInput, StepUpdateInput


def _setup(
    store: SqlAlchemyOpsStore,
    *,
    max_retries: int = 2,
    steps: int = 1,
) -> tuple[StepLeaseManager, DeterministicClock, int]:
    """Create a running mission with queued steps and a lease manager."""
    clock = DeterministicClock()
    created = approved_mission(store, {"kind": "work"})
    for index in range(steps):
        store.insert_step(
            StepCreateInput(
                mission_id=created.mission_id,
                step_index=index,
                kind="work",
                executor="noop",
                params={},
                max_retries=max_retries,
            ),
            now=clock(),
        )
        clock.advance(seconds=1)
    missions = MissionLifecycleManager(store, clock=clock)
    leases = StepLeaseManager(
        store,
        missions,
        lease_duration=timedelta(minutes=10),
        stale_after=timedelta(minutes=5),
        clock=clock,
    )
    return leases, clock, created.mission_id


def test_claim_sets_running_with_lease(store: SqlAlchemyOpsStore) -> None:
    """A claim moves the oldest queued step to running with a fresh lease."""
    leases, clock, _ = _setup(store, steps=2)

    first = leases.claim()
    second = leases.claim()

    assert first.step_index == 0
    assert second.step_index == 1
    assert first.status == "running"
    assert first.reserved_at == clock()
    assert first.lease_expires_at == clock() + timedelta(minutes=10)
    assert leases.claim() is None


def test_keep_alive_extends_lease_only_while_running(store: SqlAlchemyOpsStore) -> None:
    """Keep-alive pushes the lease forward and reports lost steps."""
    leases, clock, _ = _setup(store)
    step = leases.claim()

    clock.advance(minutes=8)
    assert leases.keep_alive(step.id)
    refreshed = store.get_step(step.id)
    assert refreshed.lease_expires_at == clock() + timedelta(minutes=10)

    clock.advance(minutes=11)
    leases.sweep()
    assert not leases.keep_alive(step.id)


def test_sweep_requeues_expired_lease_and_counts_failure(store: SqlAlchemyOpsStore) -> None:
    """An expired lease returns the step to the queue with one more failure."""
    leases, clock, _ = _setup(store, max_retries=3)
    step = leases.claim()

    clock.advance(minutes=5)
    assert leases.sweep().count == 0

    clock.advance(minutes=6)
    result = leases.sweep()

    assert result.requeued == [step.id]
    recovered = store.get_step(step.id)
    assert recovered.status == "queued"
    assert recovered.failure_count == 1
    assert recovered.lease_expires_at is None
    assert recovered.reserved_at is None
    assert recovered.last_error.startswith("Stale: lease expired")


def test_sweep_fails_and_dead_letters_exhausted_step(store: SqlAlchemyOpsStore) -> None:
    """A step reaching its budget through staleness fails, dead-letters once and fails the mission."""
    leases, clock, mission_id = _setup(store, max_retries=2)

    for _ in range(2):
        step = leases.claim()
        clock.advance(minutes=11)
        leases.sweep()

    recovered = store.get_step(step.id)
    assert recovered.status == "failed"
    assert recovered.failure_count == 2
    [dead] = store.list_dead_letters()
    assert dead.step_id == step.id
    assert dead.failure_count == 2
    assert store.get_mission(mission_id).status == "failed"

    assert not store.insert_dead_letter(step.id)
    assert len(store.list_dead_letters()) == 1


def test_sweep_recovers_lease_less_running_step_by_activity(store: SqlAlchemyOpsStore) -> None:
    """Running steps without a lease are stale once untouched past the threshold."""
    leases, clock, _ = _setup(store, max_retries=3)
    step = leases.claim()
    store.update_step(step.id, StepUpdateInput(lease_expires_at=None), now=clock())

    clock.advance(minutes=4)
    assert leases.sweep().count == 0
    clock.advance(minutes=2)
    result = leases.sweep()

    assert result.requeued == [step.id]
    assert store.get_step(step.id).last_error.startswith("Stale: no activity since")


def test_recover_orphans_fails_running_steps_without_dead_letter(store: SqlAlchemyOpsStore) -> None:
    """Startup cleanup fails running steps, skips dead letters and settles missions."""
    leases, _, mission_id = _setup(store, steps=2)
    running = leases.claim()

    result = leases.recover_orphans()

    assert result.failed == [running.id]
    orphan = store.get_step(running.id)
    assert orphan.status == "failed"
    assert orphan.last_error == "Orphaned: worker restarted while step was running"
    assert store.list_dead_letters() == []
    statuses = sorted(step.status for step in store.list_steps_for_mission(mission_id))
    assert statuses == ["failed", "queued"]


def test_recover_orphans_fails_mission_of_in_flight_step(store: SqlAlchemyOpsStore) -> None:
    """An orphaned step that was its mission's latest fails the mission too."""
    leases, _, mission_id = _setup(store)
    running = leases.claim()

    leases.recover_orphans()

    assert store.get_step(running.id).status == "failed"
    mission = store.get_mission(mission_id)
    assert mission.status == "failed"
    assert "Orphaned" in mission.failure_reason


def test_sweep_leaves_terminal_and_queued_steps_alone(store: SqlAlchemyOpsStore) -> None:
    """Only running steps are ever recovered."""
    leases, clock, _ = _setup(store, steps=2)
    step = leases.claim()

    store.update_step(step.id, StepUpdateInput(status="succeeded"), now=clock())
    clock.advance(hours=2)

    assert leases.sweep().count == 0
    assert store.get_step(step.id).status == "succeeded"
