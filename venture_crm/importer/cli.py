"""
``flask importer`` commands.

Every command resolves the Flask app through ``ScriptInfo`` and delegates to
``venture_crm.importer.service``; domain errors surface as ``ClickException``.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from venture_crm.importer import service
from venture_crm.importer.adapters.folk import FolkAdapterError, ensure_folk_adapter_ready
from venture_crm.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from venture_crm.importer.mapping import MappingLoadError
from venture_crm.importer.pipeline.merge_service import MergeService, serialize_candidate
from venture_crm.importer.pipeline.run_service import ImportRunService, serialize_failure
from venture_crm.models.crm import EntityType
from venture_crm.utils.importer import get_importer_adapters, is_importer_enabled, is_worker_enabled

ENTITY_CHOICE = click.Choice([member.value for member in EntityType], case_sensitive=False)
DOMAIN_ERRORS = (
    ValueError,
    LookupError,
    NoResultFound,
    FolkAdapterError,
    MappingLoadError,
    service.ImporterUnavailableError,
)


@contextmanager
def _cli_errors():
    try:
        yield
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _should_queue(app, inline: Optional[bool]) -> bool:
    if inline is None:
        return is_worker_enabled(app)
    return not inline


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Reconciliation engine commands.

    Displays configured adapters when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        adapters = get_importer_adapters(app)
        if not adapters:
            click.echo("No importer adapters configured.")
        else:
            click.echo("Enabled importer adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_importer_group() -> click.Group:
    """Return a stub group that explains how to enable the importer."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Importer worker is not configured. Ensure IMPORTER_ENABLED=true.")
    return celery_app


# Import runs -------------------------------------------------------------------


@importer_cli.command("run")
@click.option("--entity", "entity_type", type=ENTITY_CHOICE, required=True, help="Entity type to import.")
@click.option("--workspace", "workspace_id", required=True, help="External workspace (group) id.")
@click.option(
    "--inline/--queue",
    default=None,
    help="Run in this process or queue on the worker (defaults to the worker when IMPORTER_WORKER_ENABLED).",
)
@click.pass_context
def importer_run(ctx, entity_type: str, workspace_id: str, inline: Optional[bool]):
    """Import one entity type for a workspace."""
    app = _load_app(ctx)
    queue = _should_queue(app, inline)
    with _cli_errors():
        run_id = service.start_import(entity_type, workspace_id, run_async=queue, triggered_by="cli")
        payload = service.get_run_status(run_id)
    app.logger.info(
        "Importer run started via CLI",
        extra={"importer_run_id": run_id, "importer_queued": queue, "importer_entity_type": entity_type},
    )
    _echo_json(payload)


@importer_cli.command("retry")
@click.argument("run_id", type=int)
@click.option("--inline/--queue", default=None, help="Run in this process or queue on the worker.")
@click.pass_context
def importer_retry(ctx, run_id: int, inline: Optional[bool]):
    """Start a new run that resumes a failed run from its stored cursor."""
    app = _load_app(ctx)
    with _cli_errors():
        new_run_id = service.start_import(
            None,
            run_async=_should_queue(app, inline),
            resume_from_run_id=run_id,
            triggered_by="cli",
        )
        _echo_json(service.get_run_status(new_run_id))


@importer_cli.command("status")
@click.argument("run_id", type=int)
@click.pass_context
def importer_status(ctx, run_id: int):
    """Show progress and counters for a run."""
    _load_app(ctx)
    with _cli_errors():
        _echo_json(service.get_run_status(run_id))


@importer_cli.command("cancel")
@click.argument("run_id", type=int)
@click.pass_context
def importer_cancel(ctx, run_id: int):
    """Request cancellation of a pending or running import."""
    _load_app(ctx)
    with _cli_errors():
        _echo_json(service.cancel_run(run_id))


# Failed records ----------------------------------------------------------------


@importer_cli.group(name="failures")
def failures_group():
    """Inspect and resolve records that failed to import."""


@failures_group.command("list")
@click.option("--run-id", type=int, help="Limit to a single run.")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved failures.")
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def failures_list(ctx, run_id: Optional[int], include_resolved: bool, limit: int):
    _load_app(ctx)
    items, total = ImportRunService().list_failures(run_id=run_id, include_resolved=include_resolved, limit=limit)
    _echo_json({"total": total, "items": [serialize_failure(item) for item in items]})


@failures_group.command("retry")
@click.argument("failure_id", type=int)
@click.pass_context
def failures_retry(ctx, failure_id: int):
    _load_app(ctx)
    with _cli_errors():
        failure = service.retry_failure(failure_id)
    _echo_json(serialize_failure(failure))
    if not failure.is_resolved:
        raise click.ClickException(f"Retry of failed record {failure_id} did not succeed: {failure.error_message}")


@failures_group.command("dismiss")
@click.argument("failure_id", type=int)
@click.pass_context
def failures_dismiss(ctx, failure_id: int):
    _load_app(ctx)
    with _cli_errors():
        _echo_json(serialize_failure(service.dismiss_failure(failure_id)))


# Deduplication -----------------------------------------------------------------


@importer_cli.command("dedupe")
@click.option("--entity", "entity_type", type=ENTITY_CHOICE, required=True)
@click.option("--detect-candidates", is_flag=True, help="Also record fuzzy candidates for review.")
@click.pass_context
def importer_dedupe(ctx, entity_type: str, detect_candidates: bool):
    """Archive exact duplicates, keeping the most complete record."""
    _load_app(ctx)
    with _cli_errors():
        payload = service.run_deduplication(entity_type)
        if detect_candidates:
            payload["candidates"] = service.detect_duplicate_candidates(entity_type)
    _echo_json(payload)


@importer_cli.command("candidates")
@click.option("--entity", "entity_type", type=ENTITY_CHOICE)
@click.option("--status", default="pending", show_default=True)
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def importer_candidates(ctx, entity_type: Optional[str], status: str, limit: int):
    """List duplicate candidates awaiting review."""
    _load_app(ctx)
    with _cli_errors():
        items, total = MergeService().list_candidates(entity_type=entity_type, status=status or None, limit=limit)
    _echo_json({"total": total, "items": [serialize_candidate(item) for item in items]})


@importer_cli.command("merge")
@click.argument("candidate_id", type=int)
@click.option("--reviewed-by", default="cli", show_default=True)
@click.option("--survivor-id", type=int, help="Keep this entity instead of the candidate's primary.")
@click.pass_context
def importer_merge(ctx, candidate_id: int, reviewed_by: str, survivor_id: Optional[int]):
    _load_app(ctx)
    with _cli_errors():
        result = MergeService().merge_candidate(candidate_id, reviewed_by=reviewed_by, survivor_id=survivor_id)
    _echo_json(result.to_dict())


@importer_cli.command("dismiss")
@click.argument("candidate_id", type=int)
@click.option("--reviewed-by", default="cli", show_default=True)
@click.pass_context
def importer_dismiss(ctx, candidate_id: int, reviewed_by: str):
    _load_app(ctx)
    with _cli_errors():
        candidate = MergeService().dismiss_candidate(candidate_id, reviewed_by=reviewed_by)
    _echo_json(serialize_candidate(candidate))


# Push sync ---------------------------------------------------------------------


@importer_cli.command("push")
@click.option("--entity", "entity_type", type=ENTITY_CHOICE, required=True)
@click.option("--inline/--queue", default=None, help="Run in this process or queue on the worker.")
@click.pass_context
def importer_push(ctx, entity_type: str, inline: Optional[bool]):
    """Push pending local edits to Folk."""
    app = _load_app(ctx)
    with _cli_errors():
        if _should_queue(app, inline):
            task_id = service.enqueue(service.PUSH_TASK_NAME, entity_type=entity_type)
            _echo_json({"status": "queued", "task_id": task_id, "entityType": entity_type})
            return
        _echo_json(service.push_pending_syncs(entity_type))


@importer_cli.command("ping-folk")
@click.pass_context
def importer_ping_folk(ctx):
    """Verify Folk credentials with a cheap authenticated request."""
    _load_app(ctx)
    with _cli_errors():
        readiness = ensure_folk_adapter_ready(require_auth_ping=True)
    _echo_json(readiness.as_dict())


# Worker ------------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    if not is_worker_enabled(app):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but queued work is not expected until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)
