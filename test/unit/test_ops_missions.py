"""Unit tests for mission advancement and terminal settlement."""

from __future__ import annotations

from helpers.ops_harness import DeterministicClock, approved_mission
from ops.data_access import SqlAlchemyOpsStore
from ops.missions import MissionLifecycleManager
from ops.policy import WORKER_POLICY_KEY
from ops.store_interface import StepUpdateInput


def _manager(store: SqlAlchemyOpsStore) -> MissionLifecycleManager:
    return MissionLifecycleManager(store, clock=DeterministicClock())


def _finish(store: SqlAlchemyOpsStore, step_id: int, status: str, error: str | None = None) -> None:
    """Force a step into a terminal status."""
    store.update_step(step_id, StepUpdateInput(status=status, last_error=error))


def test_steps_are_created_one_at_a_time_in_order(store: SqlAlchemyOpsStore) -> None:
    """The next step is created only after the previous one succeeds."""
    created = approved_mission(
        store,
        {"kind": "first", "executor": "noop"},
        {"kind": "second", "executor": "noop"},
    )
    manager = _manager(store)

    assert manager.advance_all().steps_created == 1
    assert manager.advance_all().steps_created == 0
    [first] = store.list_steps_for_mission(created.mission_id)
    assert first.kind == "first"
    assert first.step_index == 0
    assert first.status == "queued"

    _finish(store, first.id, "succeeded")
    assert manager.advance_all().steps_created == 1
    steps = store.list_steps_for_mission(created.mission_id)
    assert [step.kind for step in steps] == ["first", "second"]

    _finish(store, steps[1].id, "succeeded")
    assert manager.advance_all().succeeded == 1
    mission = store.get_mission(created.mission_id)
    assert mission.status == "succeeded"
    assert mission.completed_at is not None


def test_failed_step_fails_the_mission(store: SqlAlchemyOpsStore) -> None:
    """A failed most-recent step fails the mission with its error."""
    created = approved_mission(store, {"kind": "first"}, {"kind": "second"})
    manager = _manager(store)
    manager.advance_all()
    [first] = store.list_steps_for_mission(created.mission_id)

    _finish(store, first.id, "failed", "exploded")
    result = manager.advance_all()

    assert result.failed == 1
    mission = store.get_mission(created.mission_id)
    assert mission.status == "failed"
    assert "exploded" in mission.failure_reason
    assert len(store.list_steps_for_mission(created.mission_id)) == 1


def test_finalize_mission_only_acts_on_failed_last_step(store: SqlAlchemyOpsStore) -> None:
    """finalize_mission never succeeds a mission and ignores healthy ones."""
    created = approved_mission(store, {"kind": "only"})
    manager = _manager(store)
    manager.advance_all()
    [step] = store.list_steps_for_mission(created.mission_id)

    assert not manager.finalize_mission(created.mission_id)
    _finish(store, step.id, "succeeded")
    assert not manager.finalize_mission(created.mission_id)
    assert store.get_mission(created.mission_id).status == "running"


def test_terminal_mission_is_not_revived(store: SqlAlchemyOpsStore) -> None:
    """A failed mission never transitions again."""
    created = approved_mission(store, {"kind": "only"})
    store.update_mission_status(created.mission_id, "failed", failure_reason="manual")

    assert not store.update_mission_status(created.mission_id, "succeeded")
    assert _manager(store).advance_all().missions == 0
    assert store.get_mission(created.mission_id).status == "failed"


def test_template_without_steps_fails_mission(store: SqlAlchemyOpsStore) -> None:
    """An empty template is a mission failure."""
    created = approved_mission(store)

    _manager(store).advance_all()

    mission = store.get_mission(created.mission_id)
    assert mission.status == "failed"
    assert mission.failure_reason == "Mission template has no steps"


def test_step_params_render_against_mission_context(store: SqlAlchemyOpsStore) -> None:
    """Step params resolve placeholders from the triggering event's data."""
    created = approved_mission(
        store,
        {"kind": "openclaw", "params": {"message": "Fix {{event.data.repo}}", "n": "{{event.data.n}}"}},
        context={"repo": "api", "n": 4},
    )

    _manager(store).advance_all()

    [step] = store.list_steps_for_mission(created.mission_id)
    assert step.params == {"message": "Fix api", "n": 4}


def test_retry_budget_comes_from_worker_policy(store: SqlAlchemyOpsStore) -> None:
    """Steps without their own budget use the worker policy's max_retries."""
    store.upsert_policy(WORKER_POLICY_KEY, {"max_retries": 4})
    created = approved_mission(
        store,
        {"kind": "a"},
        {"kind": "b", "max_retries": 1},
    )
    manager = _manager(store)
    manager.advance_all()
    [first] = store.list_steps_for_mission(created.mission_id)
    _finish(store, first.id, "succeeded")
    manager.advance_all()

    budgets = [step.max_retries for step in store.list_steps_for_mission(created.mission_id)]
    assert budgets == [4, 1]


def test_step_already_created_by_another_tick_waits(
    store: SqlAlchemyOpsStore, monkeypatch
) -> None:
    """A step index taken since the mission was read leaves the mission waiting."""
    created = approved_mission(store, {"kind": "first", "executor": "noop"})
    manager = _manager(store)
    manager.advance_all()
    monkeypatch.setattr(store, "list_steps_for_mission", lambda mission_id: [])

    [mission] = store.list_running_missions()
    assert manager.advance(mission) == "waiting"

    monkeypatch.undo()
    [step] = store.list_steps_for_mission(created.mission_id)
    assert step.step_index == 0
