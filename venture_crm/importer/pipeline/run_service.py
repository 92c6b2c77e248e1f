"""
Service helpers for importer run querying, filtering, and serialization.

The CLI and JSON endpoints consume these helpers for paginated run listings,
detail payloads, aggregate statistics and failed-record queues while keeping
SQLAlchemy logic in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from venture_crm.models import db
from venture_crm.models.base import as_utc
from venture_crm.models.crm import EntityType
from venture_crm.models.importer.schema import FailedRecord, ImportRun, ImportRunStatus

from .progress import run_progress

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-created_at"

VALID_SORT_FIELDS = {
    "id": ImportRun.id,
    "run_id": ImportRun.id,
    "status": ImportRun.status,
    "entity_type": ImportRun.entity_type,
    "started_at": ImportRun.started_at,
    "completed_at": ImportRun.completed_at,
    "created_at": ImportRun.created_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to importer runs queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportRunStatus, ...] = field(default_factory=tuple)
    entity_types: tuple[str, ...] = field(default_factory=tuple)
    workspace_id: str | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        entity_types: Iterable[str] | None = None,
        workspace_id: str | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_types = tuple(
            sorted({EntityType.coerce(value).value for value in (entity_types or ()) if value not in (None, "")})
        )
        resolved_workspace = workspace_id.strip() if isinstance(workspace_id, str) and workspace_id.strip() else None

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            entity_types=resolved_types,
            workspace_id=resolved_workspace,
        )


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for importer runs."""

    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


@dataclass(slots=True)
class RunStats:
    total: int
    statuses: dict[str, int]
    entity_types: dict[str, int]


def serialize_run(run: ImportRun) -> dict[str, Any]:
    """Run status projection shared by the CLI, JSON API and worker results."""

    payload = run_progress(run).as_dict()
    started_at = as_utc(run.started_at)
    finished_at = as_utc(run.completed_at)
    duration_seconds = None
    if started_at is not None:
        duration_seconds = ((finished_at or datetime.now(timezone.utc)) - started_at).total_seconds()
    payload.update(
        {
            "source": run.source,
            "collection": run.collection,
            "workspace_id": run.workspace_id,
            "resumed_from_run_id": run.resumed_from_run_id,
            "triggered_by": run.triggered_by,
            "duration_seconds": duration_seconds,
            "can_resume": can_resume(run),
        }
    )
    return payload


def serialize_failure(failure: FailedRecord) -> dict[str, Any]:
    resolved_at = as_utc(failure.resolved_at)
    created_at = as_utc(failure.created_at)
    return {
        "id": failure.id,
        "run_id": failure.run_id,
        "entity_type": failure.entity_type,
        "external_id": failure.external_id,
        "error_code": failure.error_code.value,
        "error_message": failure.error_message,
        "retry_count": failure.retry_count,
        "resolution": failure.resolution.value if failure.resolution else None,
        "resolved_at": resolved_at.isoformat() if resolved_at else None,
        "created_at": created_at.isoformat() if created_at else None,
        "payload": failure.payload_json,
    }


def can_resume(run: ImportRun) -> bool:
    return run.status is ImportRunStatus.FAILED


class ImportRunService:
    """Facade for querying importer runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # Runs -----------------------------------------------------------------------

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self.session.query(ImportRun), filters)
        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        runs = (
            query.order_by(_resolve_sort_expression(filters.sort), ImportRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[serialize_run(run) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> ImportRun:
        run = self.session.get(ImportRun, run_id)
        if run is None:
            raise NoResultFound(f"Import run {run_id} not found.")
        return run

    def get_stats(self, filters: RunFilters | None = None) -> RunStats:
        query = self._apply_filters(self.session.query(ImportRun), filters or RunFilters())
        status_counts = {
            status.value: count
            for status, count in query.with_entities(ImportRun.status, func.count()).group_by(ImportRun.status).all()
        }
        type_counts = dict(
            query.with_entities(ImportRun.entity_type, func.count()).group_by(ImportRun.entity_type).all()
        )
        return RunStats(total=sum(status_counts.values()), statuses=status_counts, entity_types=type_counts)

    # Failed records -------------------------------------------------------------

    def list_failures(
        self,
        *,
        run_id: int | None = None,
        include_resolved: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[FailedRecord], int]:
        query = self.session.query(FailedRecord)
        if run_id is not None:
            query = query.filter(FailedRecord.run_id == run_id)
        if not include_resolved:
            query = query.filter(FailedRecord.resolved_at.is_(None))
        total = query.count()
        items = (
            query.order_by(FailedRecord.id.asc())
            .offset(max(0, offset))
            .limit(max(1, min(limit, 500)))
            .all()
        )
        return items, total

    # Internal helpers -----------------------------------------------------------

    @staticmethod
    def _apply_filters(query, filters: RunFilters):
        if filters.statuses:
            query = query.filter(ImportRun.status.in_(filters.statuses))
        if filters.entity_types:
            query = query.filter(ImportRun.entity_type.in_(filters.entity_types))
        if filters.workspace_id:
            query = query.filter(ImportRun.workspace_id == filters.workspace_id)
        return query


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportRunStatus) -> ImportRunStatus:
    if isinstance(value, ImportRunStatus):
        return value
    try:
        return ImportRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()
