"""Canonical logging field names shared by the heartbeat and the workers."""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"

SERVICE = "service"
WORKER_ID = "worker_id"

# Orchestration correlation fields.
EVENT_ID = "event_id"
REACTION_ID = "reaction_id"
MISSION_ID = "mission_id"
STEP_ID = "step_id"
STEP_KIND = "step_kind"
EXECUTOR = "executor"
RUN_ID = "run_id"
