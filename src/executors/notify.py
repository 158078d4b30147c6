"""Notification adapter: send a chat message through the messaging bot API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from executors.interface import StepRequest
from ops.errors import ExecutorValidationError, TransientExecutionError
from ops.store_interface import OpsStore
from services.http_client import AsyncHttpClient, RetryConfig

logger = logging.getLogger(__name__)

CHANNEL = "telegram"


class NotifyAdapter:
    """Deliver a message at most once per delivery key."""

    def __init__(
        self,
        store: OpsStore,
        *,
        api_base_url: str,
        bot_token: str | None,
        default_chat_id: str | None,
        timeout_seconds: float,
        client: AsyncHttpClient | None = None,
    ) -> None:
        """Initialize the adapter with API credentials and the receipt store."""
        self._store = store
        self._api_base_url = api_base_url.rstrip("/")
        self._bot_token = bot_token
        self._default_chat_id = default_chat_id
        self._client = client or AsyncHttpClient(
            timeout=timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=3,
                retry_status_codes=set(),
                retry_exceptions=(httpx.ConnectError,),
            ),
        )

    async def execute(self, step: StepRequest) -> dict[str, Any]:
        """Send ``params.message`` to ``params.chat_id`` unless already delivered."""
        params = step.params
        if not self._bot_token:
            raise ExecutorValidationError("Notify bot token is not configured")
        chat_id = params.get("chat_id") or self._default_chat_id
        if not chat_id:
            raise ExecutorValidationError("Notify step requires a chat_id")
        text = str(params.get("message") or "Notification")
        key = str(params.get("dedupe_key") or f"notify:{step.id}")

        existing = await asyncio.to_thread(self._store.get_delivery_receipt, key)
        if existing is not None:
            logger.info("Notification already delivered: key=%s", key)
            return {"ok": True, "duplicate": True, "result": existing}

        payload = {"chat_id": chat_id, "text": text, "parse_mode": params.get("parse_mode", "HTML")}
        url = f"{self._api_base_url}/bot{self._bot_token}/sendMessage"
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPStatusError as exc:
            raise TransientExecutionError(
                f"Notify API returned {exc.response.status_code}",
                stderr=exc.response.text,
                exit_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientExecutionError(f"Notify request failed: {type(exc).__name__}") from exc

        data = _json_body(response)
        if not data.get("ok"):
            raise TransientExecutionError(
                "Notify API rejected the message",
                stderr=str(data),
                details={"response": data},
            )
        await asyncio.to_thread(
            self._store.insert_delivery_receipt, key, CHANNEL, step_id=step.id, response=data
        )
        return {"ok": True, "result": data}


def _json_body(response: httpx.Response | None) -> dict[str, Any]:
    if response is None:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
