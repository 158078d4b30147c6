"""Radar sub-adapter: manage roadmap items keyed by a nested action."""

from __future__ import annotations

import asyncio
from typing import Any

from executors.interface import StepRequest
from ops.errors import ExecutorValidationError
from ops.store_interface import OpsStore

RADAR_ACTIONS = ("add", "update", "list")


class RadarAdapter:
    """Add, re-stage and list roadmap items in the store."""

    def __init__(self, store: OpsStore) -> None:
        """Initialize the adapter with the store holding radar items."""
        self._store = store

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Run the radar action named by ``params.action``."""
        action = step.params.get("action")
        nested = step.params.get("params")
        params = nested if isinstance(nested, dict) else {}
        if action not in RADAR_ACTIONS:
            raise ExecutorValidationError(
                f"Unknown radar action: {action}",
                details={"allowed": list(RADAR_ACTIONS)},
            )
        return await asyncio.to_thread(self._run, action, params)

    def _run(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        if action == "add":
            title = params.get("title")
            if not isinstance(title, str) or not title.strip():
                raise ExecutorValidationError("Radar add requires a title")
            item = self._store.insert_radar_item(
                title,
                description=params.get("description"),
                stage=str(params.get("stage") or "watching"),
            )
            return {"ok": True, "item": item.as_document()}

        if action == "update":
            stage = params.get("stage")
            if not stage:
                raise ExecutorValidationError("Radar update requires a stage")
            if params.get("id") is None and not params.get("title"):
                raise ExecutorValidationError("Missing id or title for radar update")
            item = self._store.update_radar_stage(
                stage=str(stage),
                item_id=_item_id(params.get("id")),
                title=params.get("title"),
                notes=params.get("notes"),
            )
            return {"ok": True, "item": None if item is None else item.as_document()}

        items = self._store.list_radar_items(stage=params.get("stage"))
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return {"ok": True, "items": [item.as_document() for item in items]}


def _item_id(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ExecutorValidationError(
            f"Radar item id must be an integer: {value!r}",
            details={"id": repr(value)},
        ) from exc
