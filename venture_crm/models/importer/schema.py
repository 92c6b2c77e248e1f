"""
SQLAlchemy models backing the reconciliation engine's bookkeeping.

Import runs and their per-record failures, duplicate candidates awaiting
review, and the write-once archive of entities that lost a duplicate ranking.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for an import run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {ImportRunStatus.COMPLETED, ImportRunStatus.FAILED, ImportRunStatus.CANCELLED}
)


class ImportRun(BaseModel):
    """One execution of the fetch-map-upsert pipeline."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(100), nullable=False, default="folk", index=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    collection: Mapped[str] = mapped_column(db.String(100), nullable=False)
    workspace_id: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.PENDING,
        index=True,
    )
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    percent_complete: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    page_index: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    resume_cursor: Mapped[str | None] = mapped_column(
        db.Text,
        nullable=True,
        comment="Opaque pagination cursor of the last page not yet fully processed.",
    )
    resumed_from_run_id: Mapped[int | None] = mapped_column(ForeignKey("import_runs.id"), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for retry support (mapping checksum, page limit, task id).",
    )

    failures = relationship(
        "FailedRecord",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="FailedRecord.id",
    )
    resumed_from = relationship("ImportRun", remote_side=[id])

    __table_args__ = (
        CheckConstraint("percent_complete >= 0 AND percent_complete <= 100", name="ck_import_run_percent"),
        Index("idx_import_runs_entity_status", "entity_type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def __repr__(self) -> str:
        return f"<ImportRun id={self.id} entity={self.entity_type} status={self.status.value}>"


class FailedRecordErrorCode(str, enum.Enum):
    """Classification of a per-record reconciliation failure."""

    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    NETWORK = "network"
    UNKNOWN = "unknown"


class FailedRecordResolution(str, enum.Enum):
    RETRIED = "retried"
    DISMISSED = "dismissed"


class FailedRecord(BaseModel):
    """A record that could not be reconciled during an import run."""

    __tablename__ = "failed_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    payload_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    error_code: Mapped[FailedRecordErrorCode] = mapped_column(
        Enum(FailedRecordErrorCode, name="failed_record_error_code_enum"),
        nullable=False,
        default=FailedRecordErrorCode.UNKNOWN,
    )
    error_message: Mapped[str] = mapped_column(db.Text, nullable=False)
    retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolution: Mapped[FailedRecordResolution | None] = mapped_column(
        Enum(FailedRecordResolution, name="failed_record_resolution_enum"),
        nullable=True,
    )

    import_run = relationship("ImportRun", back_populates="failures")

    __table_args__ = (Index("idx_failed_records_unresolved", "run_id", "resolved_at"),)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self, resolution: FailedRecordResolution, *, resolved_at: datetime | None = None) -> None:
        self.resolution = resolution
        self.resolved_at = resolved_at or datetime.now(timezone.utc)


class DuplicateMatchType(str, enum.Enum):
    EXACT_IDENTITY = "exact_identity"
    FUZZY_NAME = "fuzzy_name"
    COMBINED = "combined"


class DuplicateStatus(str, enum.Enum):
    PENDING = "pending"
    MERGED = "merged"
    DISMISSED = "dismissed"
    REVIEWED = "reviewed"


class DuplicateCandidate(BaseModel):
    """Pair of canonical entities believed to describe the same real-world entity."""

    __tablename__ = "duplicate_candidates"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    primary_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    duplicate_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    match_type: Mapped[DuplicateMatchType] = mapped_column(
        Enum(DuplicateMatchType, name="duplicate_match_type_enum"),
        nullable=False,
    )
    score: Mapped[int] = mapped_column(db.Integer, nullable=False)
    features_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    status: Mapped[DuplicateStatus] = mapped_column(
        Enum(DuplicateStatus, name="duplicate_status_enum"),
        nullable=False,
        default=DuplicateStatus.PENDING,
        index=True,
    )
    merged_into_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_type", "primary_id", "duplicate_id", name="uq_duplicate_candidate_pair"),
        CheckConstraint("primary_id <> duplicate_id", name="ck_duplicate_candidate_distinct"),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_duplicate_candidate_score"),
    )

    def involves(self, entity_id: int) -> bool:
        return entity_id in (self.primary_id, self.duplicate_id)


class ArchiveReason(str, enum.Enum):
    DUPLICATE_LESS_COMPLETE = "duplicate_less_complete"
    MANUAL_MERGE = "manual_merge"


class ArchivedEntity(BaseModel):
    """Write-once snapshot of an entity removed from the active store."""

    __tablename__ = "archived_entities"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    snapshot_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    archive_reason: Mapped[ArchiveReason] = mapped_column(
        Enum(ArchiveReason, name="archive_reason_enum"),
        nullable=False,
    )
    merged_into_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    archived_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (Index("idx_archived_entities_lookup", "entity_type", "external_id"),)
