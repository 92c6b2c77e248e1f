"""
Folk import pipeline: fetch pages, map records, upsert, track progress.

Pages are processed as they arrive. Record-level failures are written to
``failed_records`` and do not stop the run; a fetch failure ends the run as
``failed`` with the cursor of the page that could not be read so a later run
can resume there.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Mapping

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from venture_crm.importer.adapters.folk.fetcher import FetchError, PaginatedFetcher
from venture_crm.importer.mapping import FieldMapper, MappingError, get_active_mapping
from venture_crm.models import db
from venture_crm.models.crm import EntityType
from venture_crm.models.importer.schema import (
    FailedRecord,
    FailedRecordErrorCode,
    FailedRecordResolution,
    ImportRun,
    ImportRunStatus,
)

from .identity import IdentityCache
from .run_tracker import ImportRunTracker
from .upsert import EXTERNAL_WINS, UpsertEngine

ENTITY_COLLECTIONS = {
    EntityType.FIRM: "companies",
    EntityType.INVESTOR: "people",
    EntityType.CONTACT: "people",
}


def collection_for(entity_type) -> str:
    return ENTITY_COLLECTIONS[EntityType.coerce(entity_type)]


def classify_error(exc: BaseException) -> FailedRecordErrorCode:
    if isinstance(exc, MappingError):
        return FailedRecordErrorCode.VALIDATION
    if isinstance(exc, IntegrityError):
        return FailedRecordErrorCode.DUPLICATE
    if isinstance(exc, requests.RequestException):
        return FailedRecordErrorCode.NETWORK
    return FailedRecordErrorCode.UNKNOWN


def _record_external_id(record: Any) -> str | None:
    if isinstance(record, Mapping) and record.get("id") is not None:
        return str(record["id"])
    return None


@dataclass
class ImportSummary:
    run_id: int
    status: str
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    percent: int = 0
    resume_cursor: str | None = None
    error_summary: str | None = None

    @classmethod
    def from_run(cls, run: ImportRun) -> "ImportSummary":
        return cls(
            run_id=run.id,
            status=run.status.value,
            total=run.total_records or 0,
            processed=run.processed_records or 0,
            created=run.created_records or 0,
            updated=run.updated_records or 0,
            skipped=run.skipped_records or 0,
            failed=run.failed_records or 0,
            percent=run.percent_complete or 0,
            resume_cursor=run.resume_cursor,
            error_summary=run.error_summary,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class FolkImportPipeline:
    """Run one import for a single entity type and workspace."""

    def __init__(
        self,
        run: ImportRun,
        fetcher: PaginatedFetcher,
        mapper: FieldMapper,
        *,
        session: Session | None = None,
        start_cursor: str | None = None,
        page_offset: int = 0,
        commit_interval: int = 10,
        conflict_policy: str = EXTERNAL_WINS,
        identity_cache: IdentityCache | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.run = run
        self.fetcher = fetcher
        self.mapper = mapper
        self.session: Session = session or db.session
        self.start_cursor = start_cursor
        self.page_offset = max(0, page_offset)
        self.logger = logger or logging.getLogger(__name__)
        self.identity_cache = identity_cache if identity_cache is not None else IdentityCache()
        self.tracker = ImportRunTracker(run, session=self.session, commit_interval=commit_interval, logger=self.logger)
        self.upsert_engine = UpsertEngine(
            run.entity_type,
            session=self.session,
            identity_cache=self.identity_cache,
            conflict_policy=conflict_policy,
            logger=self.logger,
        )

    def execute(self) -> ImportSummary:
        self.tracker.begin()
        self.logger.info(
            "Import run started",
            extra={
                "importer_run_id": self.run.id,
                "importer_entity_type": self.run.entity_type,
                "importer_collection": self.run.collection,
                "importer_workspace_id": self.run.workspace_id,
                "importer_resume_cursor": self.start_cursor,
            },
        )
        try:
            if self.tracker.cancellation_requested():
                return self._cancelled()
            self.tracker.release()
            pages = self.fetcher.iter_pages(
                self.run.collection,
                self.run.workspace_id,
                start_cursor=self.start_cursor,
            )
            for page in pages:
                # a cancel may have landed while the page was in flight
                if self.tracker.cancellation_requested():
                    return self._cancelled()
                page_index = self.page_offset + page.index
                self.tracker.add_total(len(page.items))
                self.tracker.checkpoint(cursor=page.cursor, page_index=page_index)
                for record in page.items:
                    if self.tracker.cancellation_requested():
                        return self._cancelled()
                    self._process_record(record)
                self.tracker.checkpoint(cursor=page.next_cursor, page_index=page_index + 1)
                if self.tracker.cancellation_requested():
                    return self._cancelled()
                self.tracker.release()
        except FetchError as exc:
            return self._fetch_failed(exc)
        except Exception as exc:
            self.session.rollback()
            if not self.run.is_terminal:
                self.tracker.finish(ImportRunStatus.FAILED, error_summary=f"Unexpected error: {exc}")
            self.logger.exception(
                "Import run aborted",
                extra={"importer_run_id": self.run.id, "importer_error": str(exc)},
            )
            raise

        self.run.resume_cursor = None
        self.tracker.finish(ImportRunStatus.COMPLETED)
        return ImportSummary.from_run(self.run)

    # Internal helpers -----------------------------------------------------------

    def _process_record(self, record: Any) -> None:
        external_id = _record_external_id(record)
        try:
            with self.session.begin_nested():
                result = self.mapper.map_record(record)
                outcome = self.upsert_engine.upsert(result.canonical)
        except Exception as exc:
            error_code = classify_error(exc)
            self.logger.warning(
                "Record could not be reconciled",
                extra={
                    "importer_run_id": self.run.id,
                    "importer_external_id": external_id,
                    "importer_error_code": error_code.value,
                    "importer_error": str(exc),
                },
            )
            payload = record if isinstance(record, Mapping) else {"value": repr(record)}
            self.tracker.record_failure(
                payload=payload,
                error_code=error_code,
                message=str(exc),
                external_id=external_id,
            )
            return
        self.tracker.advance(outcome.action.value)

    def _fetch_failed(self, exc: FetchError) -> ImportSummary:
        if self.tracker.cancellation_requested():
            return self._cancelled()
        self.run.resume_cursor = exc.last_cursor
        self.run.page_index = self.page_offset + exc.page_index
        self.tracker.finish(ImportRunStatus.FAILED, error_summary=str(exc))
        self.logger.error(
            "Import run failed while fetching",
            extra={
                "importer_run_id": self.run.id,
                "importer_page_index": self.run.page_index,
                "importer_resume_cursor": exc.last_cursor,
                "importer_status_code": exc.status_code,
                "importer_error": str(exc),
            },
        )
        return ImportSummary.from_run(self.run)

    def _cancelled(self) -> ImportSummary:
        self.tracker.commit()
        self.logger.info(
            "Import run cancelled",
            extra={
                "importer_run_id": self.run.id,
                "importer_records_processed": self.run.processed_records,
            },
        )
        return ImportSummary.from_run(self.run)


# Failed-record review ----------------------------------------------------------


def _get_failure(session: Session, failure_id: int) -> FailedRecord:
    failure = session.get(FailedRecord, failure_id)
    if failure is None:
        raise LookupError(f"Failed record {failure_id} not found.")
    if failure.is_resolved:
        raise ValueError(f"Failed record {failure_id} is already resolved ({failure.resolution.value}).")
    return failure


def retry_failed_record(
    failure_id: int,
    *,
    session: Session | None = None,
    mapper: FieldMapper | None = None,
    conflict_policy: str = EXTERNAL_WINS,
) -> FailedRecord:
    """
    Re-map and upsert a stored failure payload.

    Success resolves the failure; another error bumps ``retry_count`` and
    replaces the stored error.
    """

    session = session or db.session
    failure = _get_failure(session, failure_id)
    run = failure.import_run
    if mapper is None:
        mapper = FieldMapper(get_active_mapping(failure.entity_type), run.workspace_id)
    engine = UpsertEngine(failure.entity_type, session=session, conflict_policy=conflict_policy)

    failure.retry_count = (failure.retry_count or 0) + 1
    try:
        with session.begin_nested():
            result = mapper.map_record(failure.payload_json)
            engine.upsert(result.canonical)
    except Exception as exc:
        failure.error_code = classify_error(exc)
        failure.error_message = str(exc)[:2000] or failure.error_code.value
        session.commit()
        return failure

    failure.resolve(FailedRecordResolution.RETRIED)
    session.commit()
    return failure


def dismiss_failed_record(failure_id: int, *, session: Session | None = None) -> FailedRecord:
    session = session or db.session
    failure = _get_failure(session, failure_id)
    failure.resolve(FailedRecordResolution.DISMISSED)
    session.commit()
    return failure
