"""
Persistent state machine for import runs.

``pending -> in_progress -> {completed, failed, cancelled}``. Counters and
percent are flushed every ``commit_interval`` records and at each page
boundary so other sessions can observe progress while the run is active.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from venture_crm.importer.metrics import record_import_records, record_run_duration
from venture_crm.models import db
from venture_crm.models.base import as_utc
from venture_crm.models.importer.schema import (
    FailedRecord,
    FailedRecordErrorCode,
    ImportRun,
    ImportRunStatus,
)

from .progress import compute_percent

OUTCOME_COUNTERS = {
    "created": "created_records",
    "updated": "updated_records",
    "skipped": "skipped_records",
    "failed": "failed_records",
}


class InvalidRunTransition(RuntimeError):
    """Raised when a run is moved out of order or out of a terminal state."""


class ImportRunTracker:
    """Owns the lifecycle and counters of a single ``ImportRun``."""

    def __init__(
        self,
        run: ImportRun,
        *,
        session: Session | None = None,
        commit_interval: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.run = run
        self.session: Session = session or db.session
        self.commit_interval = max(1, int(commit_interval))
        self.logger = logger or logging.getLogger(__name__)
        self._uncommitted = 0

    # Lifecycle ------------------------------------------------------------------

    def begin(self) -> ImportRun:
        if self.run.status is not ImportRunStatus.PENDING:
            raise InvalidRunTransition(
                f"Run {self.run.id} cannot start from status '{self.run.status.value}'."
            )
        self.run.status = ImportRunStatus.IN_PROGRESS
        self.run.started_at = datetime.now(timezone.utc)
        self.run.percent_complete = 0
        self.commit()
        return self.run

    def finish(self, status: ImportRunStatus, *, error_summary: str | None = None) -> ImportRun:
        status = ImportRunStatus(status)
        if not status.is_terminal:
            raise InvalidRunTransition(f"'{status.value}' is not a terminal run status.")
        if self.run.is_terminal:
            raise InvalidRunTransition(
                f"Run {self.run.id} already finished with status '{self.run.status.value}'."
            )
        finished_at = datetime.now(timezone.utc)
        self.run.status = status
        self.run.completed_at = finished_at
        self.run.percent_complete = 100
        if error_summary is not None:
            self.run.error_summary = error_summary
        self.commit()

        started_at = as_utc(self.run.started_at)
        if started_at is not None:
            record_run_duration(status.value, (finished_at - started_at).total_seconds())
        self.logger.info(
            "Import run finished",
            extra={
                "importer_run_id": self.run.id,
                "importer_status": status.value,
                "importer_records_processed": self.run.processed_records,
                "importer_records_created": self.run.created_records,
                "importer_records_updated": self.run.updated_records,
                "importer_records_skipped": self.run.skipped_records,
                "importer_records_failed": self.run.failed_records,
            },
        )
        return self.run

    def cancellation_requested(self) -> bool:
        """Read the persisted status; another session may have cancelled the run."""

        if self.run.status is ImportRunStatus.CANCELLED:
            return True
        status = self.session.execute(select(ImportRun.status).where(ImportRun.id == self.run.id)).scalar_one_or_none()
        if status is ImportRunStatus.CANCELLED:
            self.session.refresh(self.run, attribute_names=["status", "percent_complete", "completed_at"])
            return True
        return False

    # Counters -------------------------------------------------------------------

    def add_total(self, count: int) -> None:
        if self.run.status is ImportRunStatus.CANCELLED:
            return
        self._require_active()
        self.run.total_records = (self.run.total_records or 0) + max(0, int(count))
        self._refresh_percent()

    def advance(self, outcome: str, count: int = 1) -> bool:
        """Count ``count`` processed records; returns ``False`` once the run was cancelled."""

        if self.run.status is ImportRunStatus.CANCELLED:
            return False
        self._require_active()
        column = OUTCOME_COUNTERS.get(outcome)
        if column is None:
            raise ValueError(f"Unknown record outcome '{outcome}'.")
        setattr(self.run, column, (getattr(self.run, column) or 0) + count)
        self.run.processed_records = (self.run.processed_records or 0) + count
        self._refresh_percent()
        record_import_records(self.run.entity_type, action=outcome, count=count)

        self._uncommitted += count
        if self._uncommitted >= self.commit_interval:
            self.commit()
        return True

    def record_failure(
        self,
        *,
        payload: Mapping[str, Any],
        error_code: FailedRecordErrorCode,
        message: str,
        external_id: str | None = None,
    ) -> FailedRecord:
        failure = FailedRecord(
            run_id=self.run.id,
            entity_type=self.run.entity_type,
            external_id=str(external_id) if external_id is not None else None,
            payload_json=dict(payload),
            error_code=error_code,
            error_message=str(message)[:2000] or error_code.value,
        )
        self.session.add(failure)
        self.advance("failed")
        return failure

    def checkpoint(self, *, cursor: str | None, page_index: int) -> None:
        """Persist the position a later run can resume from."""

        if self.run.status is ImportRunStatus.CANCELLED:
            return
        self._require_active()
        self.run.resume_cursor = cursor
        self.run.page_index = page_index
        self.commit()

    def commit(self) -> None:
        self.session.commit()
        self._uncommitted = 0

    def release(self) -> None:
        """End the open transaction so no read snapshot outlives a page fetch."""

        self.commit()

    # Internal helpers -----------------------------------------------------------

    def _require_active(self) -> None:
        if self.run.status is not ImportRunStatus.IN_PROGRESS:
            raise InvalidRunTransition(
                f"Run {self.run.id} is not in progress (status '{self.run.status.value}')."
            )

    def _refresh_percent(self) -> None:
        self.run.percent_complete = compute_percent(
            self.run.processed_records or 0,
            self.run.total_records or 0,
            previous=self.run.percent_complete or 0,
        )
