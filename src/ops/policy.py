"""Runtime policy documents stored in the policy table."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ops.errors import PolicyError

logger = logging.getLogger(__name__)

REACTION_MATRIX_KEY = "reaction_matrix"
WORKER_POLICY_KEY = "worker_policy"
AUTO_APPROVE_KEY = "auto_approve"

RISK_LEVELS = ("low", "medium", "high")


class StepTemplate(BaseModel):
    """One step of a mission template."""

    model_config = ConfigDict(extra="allow")

    kind: str
    executor: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = None

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, value: str) -> str:
        """Ensure the step kind is a non-empty string."""
        if not value or not value.strip():
            raise ValueError("step kind is required.")
        return value.strip()

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, value: int | None) -> int | None:
        """Ensure an explicit retry budget allows at least one attempt."""
        if value is not None and value < 1:
            raise ValueError("max_retries must be >= 1.")
        return value


class MissionTemplate(BaseModel):
    """Title, risk level and ordered step templates of a mission."""

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    risk_level: str = "low"
    steps: list[StepTemplate] = Field(default_factory=list)

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk_level(cls, value: Any) -> str:
        """Normalize risk levels, treating unknown values as high."""
        if value is None:
            return "low"
        normalized = str(value).strip().lower()
        if normalized not in RISK_LEVELS:
            return "high"
        return normalized


class ReactionPattern(BaseModel):
    """Event pattern that queues a reaction when matched."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    event_type: str | list[str] = "*"
    tags: list[str] = Field(default_factory=list)
    source: str | None = None
    probability: float | None = None
    cooldown_minutes: float | None = None
    dedupe_key: str | None = None
    template: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        """Accept ``type`` for ``event_type`` and ``proposal`` for ``template``."""
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        if "event_type" not in normalized and "type" in normalized:
            normalized["event_type"] = normalized.pop("type")
        if normalized.get("template") is None and "proposal" in normalized:
            normalized["template"] = normalized.pop("proposal")
        if normalized.get("id") is not None:
            normalized["id"] = str(normalized["id"])
        return normalized

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, value: Any) -> list[str]:
        """Treat a non-list tag value as no required tags."""
        if not isinstance(value, list):
            return []
        return [str(tag) for tag in value]

    def matches_type(self, event_type: str) -> bool:
        """Return True when the event type satisfies this pattern's matcher."""
        if isinstance(self.event_type, list):
            return event_type in self.event_type
        return self.event_type == "*" or self.event_type == event_type

    @property
    def proposal_source(self) -> str:
        """Return the source recorded on proposals created from this pattern."""
        return self.source or "trigger"


class WorkerPolicy(BaseModel):
    """Executor allow-lists and retry budget, read fresh by workers."""

    model_config = ConfigDict(extra="ignore")

    max_retries: int | None = None
    allowed_openclaw_subcommands: list[str] | None = None
    allowed_tools: list[str] | None = None
    openclaw_timeout_seconds: int | None = None

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, value: int | None) -> int | None:
        """Ensure a configured retry budget allows at least one attempt."""
        if value is not None and value < 1:
            raise ValueError("max_retries must be >= 1.")
        return value


class AutoApprovePolicy(BaseModel):
    """Rules deciding whether a new proposal is approved without review."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    allowed_sources: list[str] = Field(default_factory=list)
    max_risk_level: str = "low"

    def permits(self, source: str, risk_level: str) -> bool:
        """Return True when a proposal from ``source`` at ``risk_level`` may auto-approve."""
        if not self.enabled:
            return False
        if self.allowed_sources and source not in self.allowed_sources:
            return False
        return _risk_rank(risk_level) <= _risk_rank(self.max_risk_level)


def _risk_rank(level: str) -> int:
    normalized = (level or "").strip().lower()
    if normalized not in RISK_LEVELS:
        return len(RISK_LEVELS)
    return RISK_LEVELS.index(normalized)


def load_reaction_patterns(document: Any) -> list[ReactionPattern]:
    """Parse the reaction matrix, skipping patterns that fail validation."""
    if not isinstance(document, dict):
        return []
    raw_patterns = document.get("patterns")
    if not isinstance(raw_patterns, list):
        return []
    patterns: list[ReactionPattern] = []
    for index, raw in enumerate(raw_patterns):
        try:
            patterns.append(ReactionPattern.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid reaction pattern at index=%s: %s",
                index,
                exc.errors(include_url=False),
            )
    return patterns


def load_worker_policy(document: Any) -> WorkerPolicy:
    """Parse the worker policy; a missing document yields defaults."""
    if document is None:
        return WorkerPolicy()
    try:
        return WorkerPolicy.model_validate(document)
    except ValidationError as exc:
        raise PolicyError(
            "worker_policy document is invalid.",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def load_auto_approve_policy(document: Any) -> AutoApprovePolicy:
    """Parse the auto-approve policy; a missing document disables auto-approval."""
    if document is None:
        return AutoApprovePolicy()
    try:
        return AutoApprovePolicy.model_validate(document)
    except ValidationError as exc:
        raise PolicyError(
            "auto_approve document is invalid.",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def parse_mission_template(template: Any) -> MissionTemplate:
    """Validate a stored mission template."""
    try:
        return MissionTemplate.model_validate(template)
    except ValidationError as exc:
        raise PolicyError(
            "mission template is invalid.",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
