"""
Caller-facing operations for the reconciliation engine.

The CLI, JSON endpoints and Celery tasks all go through these functions so
run creation, queueing, cancellation and the batch jobs behave identically
regardless of the entry point.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy.exc import NoResultFound

from venture_crm.importer.adapters.folk import ensure_folk_adapter_ready
from venture_crm.importer.adapters.folk.client import FolkClient
from venture_crm.importer.adapters.folk.fetcher import PaginatedFetcher
from venture_crm.importer.celery_app import get_celery_app
from venture_crm.importer.mapping import FieldMapper, get_active_mapping
from venture_crm.importer.pipeline.dedupe import DuplicateResolver
from venture_crm.importer.pipeline.folk_import import (
    FolkImportPipeline,
    ImportSummary,
    collection_for,
    dismiss_failed_record,
    retry_failed_record,
)
from venture_crm.importer.pipeline.fuzzy_candidates import FuzzyCandidateDetector
from venture_crm.importer.pipeline.progress import ProgressReporter
from venture_crm.importer.pipeline.push_sync import PushSyncOrchestrator
from venture_crm.importer.pipeline.run_service import can_resume, serialize_run
from venture_crm.models import db
from venture_crm.models.crm import EntityType
from venture_crm.models.importer.schema import FailedRecord, ImportRun, ImportRunStatus
from venture_crm.utils.importer import (
    get_conflict_policy,
    get_dedupe_thresholds,
    get_progress_commit_interval,
    get_push_batch_size,
)

IMPORT_TASK_NAME = "importer.folk.import_collection"
PUSH_TASK_NAME = "importer.folk.push_pending"
DEDUPE_TASK_NAME = "importer.dedupe.resolve"


class ImporterUnavailableError(RuntimeError):
    """Raised when work is queued but no Celery worker is configured."""


def _config() -> Mapping[str, Any]:
    return current_app.config


def build_folk_client(config: Mapping[str, Any] | None = None, **kwargs) -> FolkClient:
    return FolkClient.from_config(config or _config(), logger=current_app.logger, **kwargs)


def _get_run(run_id: int) -> ImportRun:
    run = db.session.get(ImportRun, run_id)
    if run is None:
        raise NoResultFound(f"Import run {run_id} not found.")
    return run


# Import runs -------------------------------------------------------------------


def create_run(
    entity_type,
    workspace_id: str | None = None,
    *,
    resume_from_run_id: int | None = None,
    triggered_by: str | None = None,
) -> ImportRun:
    """Persist a pending run; a resumed run inherits the previous run's cursor."""

    params: dict[str, Any] = {"start_cursor": None, "page_offset": 0}
    previous = None
    if resume_from_run_id is not None:
        previous = _get_run(resume_from_run_id)
        if not can_resume(previous):
            raise ValueError(
                f"Import run {previous.id} has status '{previous.status.value}'; only failed runs can be resumed."
            )
        entity = EntityType.coerce(previous.entity_type)
        workspace_id = previous.workspace_id
        params.update({"start_cursor": previous.resume_cursor, "page_offset": previous.page_index or 0})
    else:
        entity = EntityType.coerce(entity_type)
        if not workspace_id or not str(workspace_id).strip():
            raise ValueError("A workspace id is required to start an import.")
        workspace_id = str(workspace_id).strip()

    params["page_limit"] = _config().get("FOLK_PAGE_LIMIT", 100)
    run = ImportRun(
        source="folk",
        entity_type=entity.value,
        collection=collection_for(entity),
        workspace_id=workspace_id,
        status=ImportRunStatus.PENDING,
        resume_cursor=params["start_cursor"],
        page_index=params["page_offset"],
        resumed_from_run_id=previous.id if previous else None,
        triggered_by=triggered_by,
        params_json=params,
    )
    db.session.add(run)
    db.session.commit()
    return run


def execute_run(
    run_id: int,
    *,
    client: FolkClient | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> ImportSummary:
    """Run the import pipeline for a pending run in the current process."""

    config = _config()
    run = _get_run(run_id)
    params = run.params_json or {}
    mapper = FieldMapper(get_active_mapping(run.entity_type), run.workspace_id)
    client = client or build_folk_client(config)
    fetcher_kwargs: dict[str, Any] = {"logger": current_app.logger}
    if sleep_fn is not None:
        fetcher_kwargs["sleep_fn"] = sleep_fn
    fetcher = PaginatedFetcher.from_config(client, config, **fetcher_kwargs)

    pipeline = FolkImportPipeline(
        run,
        fetcher,
        mapper,
        session=db.session,
        start_cursor=params.get("start_cursor"),
        page_offset=int(params.get("page_offset") or 0),
        commit_interval=get_progress_commit_interval(),
        conflict_policy=get_conflict_policy(),
        logger=current_app.logger,
    )
    return pipeline.execute()


def start_import(
    entity_type,
    workspace_id: str | None = None,
    *,
    run_async: bool = False,
    resume_from_run_id: int | None = None,
    triggered_by: str | None = None,
    client: FolkClient | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> int:
    """Create a run and execute it inline or queue it; returns the run id."""

    ensure_folk_adapter_ready()
    run = create_run(
        entity_type,
        workspace_id,
        resume_from_run_id=resume_from_run_id,
        triggered_by=triggered_by,
    )
    run_id = run.id
    if run_async:
        task_id = enqueue(IMPORT_TASK_NAME, run_id=run_id, on_failure_run_id=run_id)
        run = _get_run(run_id)
        run.params_json = {**(run.params_json or {}), "task_id": task_id}
        db.session.commit()
        current_app.logger.info(
            "Import run queued",
            extra={"importer_run_id": run_id, "importer_task_id": task_id},
        )
        return run_id

    execute_run(run_id, client=client, sleep_fn=sleep_fn)
    return run_id


def get_run_status(run_id: int) -> dict[str, Any]:
    return serialize_run(_get_run(run_id))


def cancel_run(run_id: int) -> dict[str, Any]:
    """Mark a run cancelled; an executing pipeline stops at its next check."""

    run = _get_run(run_id)
    if run.is_terminal:
        raise ValueError(f"Import run {run_id} already finished with status '{run.status.value}'.")
    run.status = ImportRunStatus.CANCELLED
    run.completed_at = datetime.now(timezone.utc)
    run.percent_complete = 100
    run.error_summary = run.error_summary or "Cancelled by request."
    db.session.commit()
    current_app.logger.info("Import run cancelled", extra={"importer_run_id": run_id})
    return serialize_run(run)


def retry_failure(failure_id: int) -> FailedRecord:
    return retry_failed_record(failure_id, session=db.session, conflict_policy=get_conflict_policy())


def dismiss_failure(failure_id: int) -> FailedRecord:
    return dismiss_failed_record(failure_id, session=db.session)


# Batch jobs --------------------------------------------------------------------


def run_deduplication(entity_type, *, reporter: ProgressReporter | None = None) -> dict[str, Any]:
    summary = DuplicateResolver(
        entity_type,
        session=db.session,
        reporter=reporter,
        logger=current_app.logger,
    ).run()
    return summary.to_dict()


def detect_duplicate_candidates(entity_type) -> dict[str, Any]:
    thresholds = get_dedupe_thresholds()
    summary = FuzzyCandidateDetector(
        entity_type,
        session=db.session,
        name_threshold=thresholds.name,
        review_threshold=thresholds.review,
        logger=current_app.logger,
    ).run()
    return summary.to_dict()


def push_pending_syncs(
    entity_type,
    *,
    client: FolkClient | None = None,
    reporter: ProgressReporter | None = None,
) -> dict[str, Any]:
    ensure_folk_adapter_ready()
    reporter = reporter or ProgressReporter()
    orchestrator = PushSyncOrchestrator(
        entity_type,
        client or build_folk_client(),
        session=db.session,
        batch_size=get_push_batch_size(),
        reporter=reporter,
        logger=current_app.logger,
    )
    payload = orchestrator.run().to_dict()
    progress = orchestrator.progress
    payload["progress"] = progress.as_dict() if progress else None
    return payload


# Worker queueing ---------------------------------------------------------------


def enqueue(task_name: str, *, on_failure_run_id: int | None = None, **kwargs) -> str:
    """Send ``task_name`` to the importer queue and return the task id."""

    celery_app = get_celery_app(current_app._get_current_object())
    if celery_app is None:
        raise ImporterUnavailableError("Importer worker is not configured; enable the importer first.")
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception as exc:
        if on_failure_run_id is not None:
            run = db.session.get(ImportRun, on_failure_run_id)
            if run is not None and not run.is_terminal:
                run.status = ImportRunStatus.FAILED
                run.error_summary = f"Failed to enqueue: {exc}"
                run.completed_at = datetime.now(timezone.utc)
                db.session.commit()
        raise
    return async_result.id
