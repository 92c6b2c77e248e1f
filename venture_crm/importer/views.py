"""
Importer blueprint: health, run control, failure triage, dedupe and push endpoints.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from venture_crm.importer import service
from venture_crm.importer.adapters.folk import FolkAdapterError
from venture_crm.importer.mapping import MappingLoadError
from venture_crm.importer.metrics import record_api_request
from venture_crm.importer.pipeline.merge_service import MergeService, serialize_candidate
from venture_crm.importer.pipeline.run_service import ImportRunService, RunFilters, serialize_failure
from venture_crm.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .registry import AdapterDescriptor, compute_adapter_readiness

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {"name": adapter.name, "title": adapter.title, "summary": adapter.summary}


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _domain_error(exc: Exception):
    """Translate service exceptions into JSON error responses."""
    if isinstance(exc, (NoResultFound, LookupError)):
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    if isinstance(exc, (FolkAdapterError, service.ImporterUnavailableError)):
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE)
    if isinstance(exc, MappingLoadError):
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
    return _json_error(str(exc), HTTPStatus.CONFLICT)


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _pick(payload: dict, *keys):
    for key in keys:
        if payload.get(key) not in (None, ""):
            return payload[key]
    return None


def _coerce_flag(value) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _wants_queue(payload: dict) -> bool:
    requested = _coerce_flag(_pick(payload, "async", "queue"))
    if requested is None:
        return is_worker_enabled(current_app)
    return requested


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Report importer state and cached adapter readiness.

    ``?ping=true`` re-runs the readiness checks with an authenticated request
    to each adapter and caches the fresh result.
    """
    importer_state = current_app.extensions.get("importer", {})
    adapters = importer_state.get("active_adapters", ())
    if adapters and _coerce_flag(request.args.get("ping")):
        importer_state["adapter_readiness"] = compute_adapter_readiness(
            current_app.config, adapters, require_auth_ping=True
        )
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
                "readiness": importer_state.get("adapter_readiness", {}),
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "importer_enabled": importer_state.get("enabled", False),
        "worker_enabled": importer_state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["importer_enabled"] or not payload["worker_enabled"]:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    payload["status"] = "ok"
    return jsonify(payload), 200


# ---------------------------------------------------------------------------
# Import runs
# ---------------------------------------------------------------------------


@importer_blueprint.post("/runs")
def importer_start_run():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = _json_body()
    resume_from = _pick(payload, "resumeFromRunId", "resume_from_run_id")
    queue = _wants_queue(payload)
    start_time = time.perf_counter()
    try:
        run_id = service.start_import(
            _pick(payload, "entityType", "entity_type"),
            _pick(payload, "workspaceId", "workspace_id"),
            run_async=queue,
            resume_from_run_id=int(resume_from) if resume_from is not None else None,
            triggered_by=_pick(payload, "triggeredBy", "triggered_by") or "api",
        )
        response_payload = service.get_run_status(run_id)
    except (ValueError, LookupError, NoResultFound, FolkAdapterError, service.ImporterUnavailableError) as exc:
        record_api_request("start_run", "error", time.perf_counter() - start_time)
        if isinstance(exc, ValueError):
            return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
        return _domain_error(exc)

    record_api_request("start_run", "success", time.perf_counter() - start_time)
    current_app.logger.info(
        "Importer run requested via API",
        extra={"importer_run_id": run_id, "importer_queued": queue},
    )
    return jsonify(response_payload), HTTPStatus.ACCEPTED if queue else HTTPStatus.CREATED


@importer_blueprint.get("/runs")
def importer_runs_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            entity_types=_split_csv(raw.get("entity_type")),
            workspace_id=raw.get("workspace_id"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = ImportRunService().list_runs(filters)
    record_api_request("list_runs", "success", time.perf_counter() - start_time)
    return jsonify(result.to_dict()), HTTPStatus.OK


@importer_blueprint.get("/runs/stats")
def importer_runs_stats():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    stats = ImportRunService().get_stats()
    return (
        jsonify({"total": stats.total, "by_status": stats.statuses, "by_entity_type": stats.entity_types}),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/runs/<int:run_id>")
def importer_run_detail(run_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        return jsonify(service.get_run_status(run_id)), HTTPStatus.OK
    except NoResultFound:
        return _json_error(f"Import run {run_id} not found.", HTTPStatus.NOT_FOUND)


@importer_blueprint.post("/runs/<int:run_id>/cancel")
def importer_run_cancel(run_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        return jsonify(service.cancel_run(run_id)), HTTPStatus.OK
    except (NoResultFound, ValueError) as exc:
        return _domain_error(exc)


# ---------------------------------------------------------------------------
# Failed records
# ---------------------------------------------------------------------------


@importer_blueprint.get("/failures")
def importer_failures_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        run_id = int(raw["run_id"]) if raw.get("run_id") else None
        limit = int(raw.get("limit", 100))
        offset = int(raw.get("offset", 0))
    except ValueError:
        return _json_error("run_id, limit and offset must be integers.", HTTPStatus.BAD_REQUEST)

    items, total = ImportRunService().list_failures(
        run_id=run_id,
        include_resolved=bool(_coerce_flag(raw.get("include_resolved"))),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [serialize_failure(item) for item in items], "total": total}), HTTPStatus.OK


@importer_blueprint.post("/failures/<int:failure_id>/retry")
def importer_failure_retry(failure_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        failure = service.retry_failure(failure_id)
    except (LookupError, ValueError, MappingLoadError) as exc:
        return _domain_error(exc)
    status = HTTPStatus.OK if failure.is_resolved else HTTPStatus.UNPROCESSABLE_ENTITY
    return jsonify(serialize_failure(failure)), status


@importer_blueprint.post("/failures/<int:failure_id>/dismiss")
def importer_failure_dismiss(failure_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        failure = service.dismiss_failure(failure_id)
    except (LookupError, ValueError) as exc:
        return _domain_error(exc)
    return jsonify(serialize_failure(failure)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Deduplication and review
# ---------------------------------------------------------------------------


@importer_blueprint.post("/dedupe")
def importer_dedupe():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = _json_body()
    entity_type = _pick(payload, "entityType", "entity_type")
    detect = bool(_coerce_flag(_pick(payload, "detectCandidates", "detect_candidates")))
    try:
        if _coerce_flag(_pick(payload, "async", "queue")):
            task_id = service.enqueue(
                service.DEDUPE_TASK_NAME, entity_type=entity_type, detect_candidates=detect
            )
            return jsonify({"status": "queued", "task_id": task_id}), HTTPStatus.ACCEPTED
        result = service.run_deduplication(entity_type)
        if detect:
            result["candidates"] = service.detect_duplicate_candidates(entity_type)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except service.ImporterUnavailableError as exc:
        return _domain_error(exc)
    return jsonify(result), HTTPStatus.OK


@importer_blueprint.get("/candidates")
def importer_candidates_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        items, total = MergeService().list_candidates(
            entity_type=raw.get("entity_type") or None,
            status=raw.get("status", "pending") or None,
            limit=int(raw.get("limit", 50)),
            offset=int(raw.get("offset", 0)),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify({"items": [serialize_candidate(item) for item in items], "total": total}), HTTPStatus.OK


@importer_blueprint.post("/candidates/<int:candidate_id>/merge")
def importer_candidate_merge(candidate_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = _json_body()
    survivor_id = _pick(payload, "survivorId", "survivor_id")
    try:
        result = MergeService().merge_candidate(
            candidate_id,
            reviewed_by=_pick(payload, "reviewedBy", "reviewed_by"),
            survivor_id=int(survivor_id) if survivor_id is not None else None,
        )
    except (LookupError, ValueError) as exc:
        return _domain_error(exc)
    return jsonify(result.to_dict()), HTTPStatus.OK


@importer_blueprint.post("/candidates/<int:candidate_id>/dismiss")
def importer_candidate_dismiss(candidate_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = _json_body()
    try:
        candidate = MergeService().dismiss_candidate(
            candidate_id, reviewed_by=_pick(payload, "reviewedBy", "reviewed_by")
        )
    except (LookupError, ValueError) as exc:
        return _domain_error(exc)
    return jsonify(serialize_candidate(candidate)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Push sync
# ---------------------------------------------------------------------------


@importer_blueprint.post("/push")
def importer_push():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = _json_body()
    entity_type = _pick(payload, "entityType", "entity_type")
    start_time = time.perf_counter()
    try:
        if _wants_queue(payload):
            task_id = service.enqueue(service.PUSH_TASK_NAME, entity_type=entity_type)
            return jsonify({"status": "queued", "task_id": task_id}), HTTPStatus.ACCEPTED
        result = service.push_pending_syncs(entity_type)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except (FolkAdapterError, service.ImporterUnavailableError) as exc:
        record_api_request("push", "error", time.perf_counter() - start_time)
        return _domain_error(exc)
    record_api_request("push", "success", time.perf_counter() - start_time)
    return jsonify(result), HTTPStatus.OK
