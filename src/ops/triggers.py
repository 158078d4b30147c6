"""Trigger evaluation: match unprocessed events against reaction patterns."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from ops.policy import REACTION_MATRIX_KEY, ReactionPattern, load_reaction_patterns
from ops.store_interface import EventRecord, OpsStore
from ops.templates import render_template
from structured_logging import fields, log_context
from time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    """Summary of one trigger evaluation pass."""

    events: int
    queued: int
    processed: int

    def as_dict(self) -> dict[str, int]:
        """Return the summary as a plain mapping."""
        return {"events": self.events, "queued": self.queued, "processed": self.processed}


def matches_pattern(event: EventRecord, pattern: ReactionPattern) -> bool:
    """Return True when the event satisfies the pattern's type, tag and source filters."""
    if not pattern.matches_type(event.type):
        return False
    if pattern.tags:
        event_tags = set(event.tags)
        if not all(tag in event_tags for tag in pattern.tags):
            return False
    if pattern.source and event.source != pattern.source:
        return False
    return True


def passes_probability(probability: float | None, rng: Callable[[], float]) -> bool:
    """Apply the probability gate; an unset probability always passes."""
    if probability is None:
        return True
    if probability <= 0:
        return False
    if probability >= 1:
        return True
    return rng() < probability


def build_reaction_payload(event: EventRecord, pattern: ReactionPattern) -> dict[str, Any]:
    """Render the pattern's template and dedupe key for one event."""
    context = {"event": event.as_document()}
    if pattern.dedupe_key:
        dedupe_key = str(render_template(pattern.dedupe_key, context))
    elif pattern.id:
        dedupe_key = f"{event.id}:{pattern.id}"
    else:
        dedupe_key = str(event.id)
    return {
        "pattern_id": pattern.id,
        "event_type": event.type,
        "proposal_template": render_template(pattern.template, context),
        "proposal_source": pattern.proposal_source,
        "dedupe_key": dedupe_key,
    }


class TriggerEvaluator:
    """Queue reactions for unprocessed events that match configured patterns."""

    def __init__(
        self,
        store: OpsStore,
        *,
        batch_size: int,
        rng: Callable[[], float] | None = None,
        clock: Callable[[], datetime] | None = None,
        expire_unmatched_after: timedelta | None = None,
    ) -> None:
        """Initialize the evaluator with its store, batch size, RNG and clock."""
        self._store = store
        self._batch_size = batch_size
        self._rng = rng or random.random
        self._clock = clock or utc_now
        self._expire_unmatched_after = expire_unmatched_after

    def evaluate(self) -> TriggerResult:
        """Evaluate one oldest-first batch of unprocessed events."""
        patterns = load_reaction_patterns(self._store.get_policy(REACTION_MATRIX_KEY))
        if not patterns:
            return TriggerResult(events=0, queued=0, processed=0)

        events = self._store.list_unprocessed_events(self._batch_size)
        queued = 0
        processed = 0
        for event in events:
            with log_context({fields.EVENT_ID: event.id}):
                matched = self._evaluate_event(event, patterns)
                if matched:
                    self._store.mark_event_processed(event.id, now=self._clock())
                    processed += 1
                    queued += matched

        if self._expire_unmatched_after is not None:
            now = self._clock()
            expired = self._store.expire_unmatched_events(
                now - self._expire_unmatched_after, now=now
            )
            if expired:
                logger.info("Expired unmatched events: count=%s", expired)

        if events:
            logger.info(
                "Trigger evaluation completed: events=%s queued=%s processed=%s",
                len(events),
                queued,
                processed,
            )
        return TriggerResult(events=len(events), queued=queued, processed=processed)

    def _evaluate_event(self, event: EventRecord, patterns: list[ReactionPattern]) -> int:
        """Queue one reaction per passing pattern and return how many were queued."""
        queued = 0
        for pattern in patterns:
            if not matches_pattern(event, pattern):
                continue
            if not passes_probability(pattern.probability, self._rng):
                logger.debug("Probability gate rejected pattern=%s", pattern.id)
                continue
            if self._cooldown_active(pattern):
                logger.debug("Cooldown active for pattern=%s", pattern.id)
                continue
            if pattern.template is None:
                logger.debug("Pattern has no template: pattern=%s", pattern.id)
                continue
            payload = build_reaction_payload(event, pattern)
            self._store.insert_reaction(event.id, pattern.id, payload, now=self._clock())
            queued += 1
        return queued

    def _cooldown_active(self, pattern: ReactionPattern) -> bool:
        if not pattern.id or not pattern.cooldown_minutes:
            return False
        since = self._clock() - timedelta(minutes=float(pattern.cooldown_minutes))
        return self._store.has_recent_reaction(pattern.id, since)
