"""
Importer Celery tasks.

Each task is a thin wrapper over ``venture_crm.importer.service`` so queued
and inline work share one code path.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from venture_crm.importer import service


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask importer worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=service.IMPORT_TASK_NAME, bind=True)
def import_collection(self, *, run_id: int) -> dict[str, Any]:
    current_app.logger.info(
        "Worker picked up import run",
        extra={"importer_run_id": run_id, "importer_task_id": self.request.id},
    )
    summary = service.execute_run(run_id)
    return summary.to_dict()


@shared_task(name=service.PUSH_TASK_NAME, bind=True)
def push_pending(self, *, entity_type: str) -> dict[str, Any]:
    return service.push_pending_syncs(entity_type)


@shared_task(name=service.DEDUPE_TASK_NAME, bind=True)
def resolve_duplicates(self, *, entity_type: str, detect_candidates: bool = False) -> dict[str, Any]:
    result = service.run_deduplication(entity_type)
    if detect_candidates:
        result["candidates"] = service.detect_duplicate_candidates(entity_type)
    return result
