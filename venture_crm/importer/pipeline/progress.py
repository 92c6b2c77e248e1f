"""
Progress projections for long-running importer operations.

Runs expose a ``RunProgress`` snapshot derived from the persisted run row;
push sync and deduplication publish ``BatchProgress`` snapshots through a
``ProgressReporter`` that callers poll for the latest value.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from venture_crm.models.base import as_utc


def compute_percent(processed: int, total: int, *, previous: int = 0, terminal: bool = False) -> int:
    """
    Integer percentage of work done.

    Never decreases relative to ``previous`` and stays below 100 until the
    operation reaches a terminal state.
    """

    if terminal:
        return 100
    if total <= 0:
        return max(0, min(previous, 99))
    value = min((max(processed, 0) * 100) // total, 99)
    return max(previous, value)


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


@dataclass(frozen=True)
class RunProgress:
    run_id: int
    entity_type: str
    status: str
    percent: int
    current: int
    total: int
    created: int
    updated: int
    skipped: int
    failed: int
    page_index: int
    resume_cursor: str | None
    started_at: str | None
    completed_at: str | None
    error_summary: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def run_progress(run) -> RunProgress:
    """Project an ``ImportRun`` row into a caller-facing snapshot."""

    return RunProgress(
        run_id=run.id,
        entity_type=run.entity_type,
        status=run.status.value,
        percent=run.percent_complete or 0,
        current=run.processed_records or 0,
        total=run.total_records or 0,
        created=run.created_records or 0,
        updated=run.updated_records or 0,
        skipped=run.skipped_records or 0,
        failed=run.failed_records or 0,
        page_index=run.page_index or 0,
        resume_cursor=run.resume_cursor,
        started_at=_isoformat(run.started_at),
        completed_at=_isoformat(run.completed_at),
        error_summary=run.error_summary,
    )


@dataclass(frozen=True)
class BatchProgress:
    current: int
    total: int
    current_batch: int
    total_batches: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return (self.current * 100) // self.total

    def as_dict(self) -> dict[str, int]:
        payload = asdict(self)
        payload["percent"] = self.percent
        return payload


class ProgressReporter:
    """Holds the most recent progress snapshot; optionally forwards each one."""

    def __init__(self, callback: Callable[[Any], None] | None = None) -> None:
        self._callback = callback
        self._latest: Any = None
        self._lock = threading.Lock()

    @property
    def latest(self):
        with self._lock:
            return self._latest

    def publish(self, snapshot) -> None:
        with self._lock:
            self._latest = snapshot
        if self._callback is not None:
            self._callback(snapshot)
