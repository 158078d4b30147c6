"""Unit tests for trigger evaluation over the event stream."""

from __future__ import annotations

import random
from datetime import timedelta

from helpers.ops_harness import T0, DeterministicClock, mission_template
from ops.data_access import SqlAlchemyOpsStore
from ops.policy import REACTION_MATRIX_KEY, ReactionPattern
from ops.store_interface import EventRecord
from ops.triggers import TriggerEvaluator, matches_pattern, passes_probability

TEMPLATE = mission_template({"kind": "openclaw", "params": {"message": "{{event.data.text}}"}})


def _evaluator(store: SqlAlchemyOpsStore, clock: DeterministicClock, **kwargs) -> TriggerEvaluator:
    """Return an evaluator using the deterministic clock."""
    return TriggerEvaluator(store, batch_size=25, clock=clock, **kwargs)


def _event(event_type: str = "build:failed", **data) -> EventRecord:
    """Return an in-memory event record."""
    return EventRecord(id=1, type=event_type, data=data, annotation=None, created_at=T0)


def test_matches_pattern_requires_every_tag_and_source() -> None:
    """Tags must all be present and the source must match exactly."""
    pattern = ReactionPattern(event_type="build:failed", tags=["ci", "main"], source="github")

    assert matches_pattern(_event(tags=["ci", "main", "extra"], source="github"), pattern)
    assert not matches_pattern(_event(tags=["ci"], source="github"), pattern)
    assert not matches_pattern(_event(tags=["ci", "main"], source="gitlab"), pattern)
    assert not matches_pattern(_event("build:passed", tags=["ci", "main"], source="github"), pattern)


def test_passes_probability_edges() -> None:
    """Unset and >=1 always pass, <=0 never passes, otherwise the RNG decides."""
    assert passes_probability(None, lambda: 0.99)
    assert passes_probability(1.0, lambda: 0.99)
    assert not passes_probability(0.0, lambda: 0.0)
    assert passes_probability(0.5, lambda: 0.49)
    assert not passes_probability(0.5, lambda: 0.5)


def test_probability_gate_rate_over_many_trials() -> None:
    """A 0.3 gate passes roughly 30% of the time with a seeded RNG."""
    rng = random.Random(1234).random
    passed = sum(1 for _ in range(10_000) if passes_probability(0.3, rng))

    assert 2700 <= passed <= 3300


def test_no_patterns_leaves_events_untouched(store: SqlAlchemyOpsStore) -> None:
    """Without a reaction matrix nothing is consumed."""
    store.insert_event("build:failed", {}, now=T0)

    result = _evaluator(store, DeterministicClock()).evaluate()

    assert result.as_dict() == {"events": 0, "queued": 0, "processed": 0}
    assert len(store.list_unprocessed_events(10)) == 1


def test_matching_event_queues_reaction_and_is_processed(store: SqlAlchemyOpsStore) -> None:
    """A match renders the template, queues a reaction and marks the event."""
    store.upsert_policy(
        REACTION_MATRIX_KEY,
        {"patterns": [{"id": "p1", "event_type": "build:failed", "template": TEMPLATE}]},
    )
    event = store.insert_event("build:failed", {"text": "fix it"}, now=T0)
    store.insert_event("build:passed", {}, now=T0)

    result = _evaluator(store, DeterministicClock()).evaluate()

    assert result.as_dict() == {"events": 2, "queued": 1, "processed": 1}
    [reaction] = store.list_queued_reactions(10)
    assert reaction.event_id == event.id
    assert reaction.pattern_id == "p1"
    assert reaction.payload["dedupe_key"] == f"{event.id}:p1"
    assert reaction.payload["proposal_source"] == "trigger"
    step = reaction.payload["proposal_template"]["steps"][0]
    assert step["params"]["message"] == "fix it"
    remaining = store.list_unprocessed_events(10)
    assert [item.type for item in remaining] == ["build:passed"]


def test_custom_dedupe_key_is_rendered(store: SqlAlchemyOpsStore) -> None:
    """A pattern dedupe key template renders against the event."""
    store.upsert_policy(
        REACTION_MATRIX_KEY,
        {
            "patterns": [
                {
                    "id": "p1",
                    "event_type": "build:failed",
                    "dedupe_key": "build:{{event.data.sha}}",
                    "template": TEMPLATE,
                }
            ]
        },
    )
    store.insert_event("build:failed", {"sha": "abc123"}, now=T0)

    _evaluator(store, DeterministicClock()).evaluate()

    [reaction] = store.list_queued_reactions(10)
    assert reaction.payload["dedupe_key"] == "build:abc123"


def test_cooldown_suppresses_until_window_elapses(store: SqlAlchemyOpsStore) -> None:
    """A 30-minute cooldown blocks a match at +29 minutes and allows it at +31."""
    store.upsert_policy(
        REACTION_MATRIX_KEY,
        {
            "patterns": [
                {
                    "id": "cool",
                    "event_type": "ping",
                    "cooldown_minutes": 30,
                    "template": TEMPLATE,
                }
            ]
        },
    )
    clock = DeterministicClock()
    evaluator = _evaluator(store, clock)

    store.insert_event("ping", {}, now=clock())
    assert evaluator.evaluate().queued == 1

    clock.advance(minutes=29)
    store.insert_event("ping", {}, now=clock())
    blocked = evaluator.evaluate()
    assert blocked.queued == 0
    assert blocked.processed == 0

    clock.advance(minutes=2)
    assert evaluator.evaluate().queued == 1
    assert len(store.list_queued_reactions(10)) == 2


def test_probability_zero_never_queues(store: SqlAlchemyOpsStore) -> None:
    """A zero-probability pattern leaves the event unprocessed."""
    store.upsert_policy(
        REACTION_MATRIX_KEY,
        {"patterns": [{"id": "never", "event_type": "*", "probability": 0, "template": TEMPLATE}]},
    )
    store.insert_event("anything", {}, now=T0)

    result = _evaluator(store, DeterministicClock(), rng=lambda: 0.0).evaluate()

    assert result.queued == 0
    assert len(store.list_unprocessed_events(10)) == 1


def test_pattern_without_template_is_skipped(store: SqlAlchemyOpsStore) -> None:
    """Matching a pattern with no template queues nothing."""
    store.upsert_policy(REACTION_MATRIX_KEY, {"patterns": [{"id": "bare", "event_type": "x"}]})
    store.insert_event("x", {}, now=T0)

    assert _evaluator(store, DeterministicClock()).evaluate().queued == 0


def test_unmatched_events_expire_after_window(store: SqlAlchemyOpsStore) -> None:
    """Old unmatched events are marked processed when expiry is configured."""
    store.upsert_policy(
        REACTION_MATRIX_KEY,
        {"patterns": [{"id": "p1", "event_type": "wanted", "template": TEMPLATE}]},
    )
    clock = DeterministicClock()
    store.insert_event("unwanted", {}, now=clock())
    clock.advance(hours=2)
    store.insert_event("unwanted", {}, now=clock())

    _evaluator(store, clock, expire_unmatched_after=timedelta(hours=1)).evaluate()

    remaining = store.list_unprocessed_events(10)
    assert len(remaining) == 1
    assert remaining[0].created_at == clock()
