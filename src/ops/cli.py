"""Operator command-line interface for the orchestration engine, built with Typer."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

import typer

from config import settings
from ops.admin import OpsAdmin
from ops.errors import OpsError
from ops.runtime import build_heartbeat, build_store, build_worker, default_worker_id
from services.database import run_migrations
from structured_logging import configure_logging

logger = logging.getLogger(__name__)

SUCCESS_EXIT_CODE = 0
USAGE_ERROR_EXIT_CODE = 2
DOMAIN_ERROR_EXIT_CODE = 3


@dataclass(frozen=True)
class CliConfig:
    """Global CLI options shared by every command."""

    as_json: bool


def _serialize(value: Any) -> Any:
    """Convert result objects to JSON-serializable structures."""

    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _serialize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(key): _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize(item) for item in value]
    return str(value)


def _emit_output(result: Any, as_json: bool) -> None:
    """Render command output in the requested format."""

    data = _serialize(result)
    if as_json:
        typer.echo(json.dumps(data, sort_keys=True, separators=(",", ":")))
        return
    if data is None:
        typer.echo("ok")
        return
    if isinstance(data, (dict, list)):
        typer.echo(json.dumps(data, indent=2, sort_keys=True))
        return
    typer.echo(str(data))


def _emit_error(exc: Exception, as_json: bool) -> None:
    """Render a mapped error to stderr."""

    if as_json:
        payload: dict[str, Any] = {"error": str(exc)}
        if isinstance(exc, OpsError):
            payload["code"] = exc.code
        typer.echo(json.dumps(payload), err=True)
        return
    typer.echo(f"error: {exc}", err=True)


def _parse_json(raw: str, label: str) -> Any:
    """Parse a JSON option value, exiting with a usage error when invalid."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.echo(f"error: {label} is not valid JSON: {exc}", err=True)
        raise typer.Exit(code=USAGE_ERROR_EXIT_CODE) from exc


def _run_admin(cfg: CliConfig, invoke: Callable[[OpsAdmin], Any]) -> None:
    """Execute one admin call and map outputs/errors to process semantics."""
    try:
        store = build_store()
        result = invoke(OpsAdmin(store, build_heartbeat(store)))
    except (OpsError, ValueError) as exc:
        _emit_error(exc, cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE) from exc

    _emit_output(result, cfg.as_json)
    raise typer.Exit(code=SUCCESS_EXIT_CODE)


def _require_config(ctx: typer.Context) -> CliConfig:
    """Return required CLI config from Typer context."""

    config = ctx.obj
    if not isinstance(config, CliConfig):
        raise RuntimeError("CLI configuration not initialized")
    return config


app = typer.Typer(no_args_is_help=True, help="Opsloop orchestration command-line interface")


@app.callback()
def main(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Initialize logging and shared CLI options."""
    configure_logging(
        level=settings.logging.level,
        json_output=settings.logging.json_output,
        service=settings.logging.service,
    )
    ctx.obj = CliConfig(as_json=as_json)


@app.command("worker")
def worker_command(
    worker_id: str | None = typer.Option(None, help="Worker identifier for leases and logs"),
) -> None:
    """Run a step worker until SIGTERM or SIGINT."""
    resolved_id = worker_id or default_worker_id()
    configure_logging(
        level=settings.logging.level,
        json_output=settings.logging.json_output,
        service=settings.logging.service,
        worker_id=resolved_id,
    )
    worker = build_worker(build_store(), worker_id=resolved_id)
    asyncio.run(worker.run())


@app.command("heartbeat")
def heartbeat_command(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
) -> None:
    """Run heartbeat ticks on the configured interval."""
    cfg = _require_config(ctx)
    heartbeat = build_heartbeat(build_store())
    if once:
        _emit_output(heartbeat.tick(), cfg.as_json)
        raise typer.Exit(code=SUCCESS_EXIT_CODE)

    interval = settings.heartbeat.interval_seconds
    logger.info("Heartbeat loop started: interval_seconds=%s", interval)
    try:
        while True:
            started = time.monotonic()
            heartbeat.tick()
            time.sleep(max(0.0, interval - (time.monotonic() - started)))
    except KeyboardInterrupt:
        logger.info("Heartbeat loop stopped.")


@app.command("submit-event")
def submit_event_command(
    ctx: typer.Context,
    event_type: str = typer.Argument(..., help="Event type, e.g. build:failed"),
    data: str = typer.Option("{}", help="Event data as a JSON object"),
    annotation: str | None = typer.Option(None, help="Optional human annotation"),
    dedupe_key: str | None = typer.Option(None, help="Optional idempotency key"),
) -> None:
    """Insert an event for the next trigger evaluation."""
    cfg = _require_config(ctx)
    payload = _parse_json(data, "--data")
    if not isinstance(payload, dict):
        typer.echo("error: --data must be a JSON object", err=True)
        raise typer.Exit(code=USAGE_ERROR_EXIT_CODE)
    _run_admin(
        cfg,
        lambda admin: admin.submit_event(
            event_type,
            payload,
            annotation=annotation,
            dedupe_key=dedupe_key,
        ),
    )


@app.command("propose")
def propose_command(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Mission template as a JSON object"),
    source: str = typer.Option("manual", help="Proposal source used by auto-approve"),
    dedupe_key: str | None = typer.Option(None, help="Optional idempotency key"),
) -> None:
    """Create a proposal directly from a mission template."""
    cfg = _require_config(ctx)
    document = _parse_json(template, "template")
    _run_admin(
        cfg,
        lambda admin: admin.create_proposal(source, document, dedupe_key=dedupe_key),
    )


@app.command("approve")
def approve_command(
    ctx: typer.Context,
    proposal_id: int = typer.Argument(..., help="Pending proposal id"),
) -> None:
    """Approve a pending proposal and create its mission."""
    _run_admin(_require_config(ctx), lambda admin: admin.approve_proposal(proposal_id))


@app.command("reject")
def reject_command(
    ctx: typer.Context,
    proposal_id: int = typer.Argument(..., help="Pending proposal id"),
) -> None:
    """Reject a pending proposal."""
    _run_admin(_require_config(ctx), lambda admin: admin.reject_proposal(proposal_id))


@app.command("set-policy")
def set_policy_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Policy key, e.g. reaction_matrix"),
    value: str = typer.Argument(..., help="Policy document as JSON"),
) -> None:
    """Validate and store a policy document."""
    cfg = _require_config(ctx)
    document = _parse_json(value, "policy")
    _run_admin(
        cfg,
        lambda admin: {"key": key, "version": admin.update_policy(key, document)},
    )


@app.command("status")
def status_command(
    ctx: typer.Context,
    limit: int = typer.Option(20, min=1, help="Maximum rows per section"),
) -> None:
    """Show recent missions, steps, proposals and dead letters."""
    _run_admin(_require_config(ctx), lambda admin: admin.get_state(limit=limit))


@app.command("migrate")
def migrate_command(
    revision: str = typer.Option("head", help="Target schema revision"),
) -> None:
    """Apply database migrations."""
    run_migrations(revision=revision)
    typer.echo(f"migrated to {revision}")
