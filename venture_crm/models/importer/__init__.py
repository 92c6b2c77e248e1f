"""
Importer-specific SQLAlchemy models.

Import runs, failed records, duplicate candidates and the entity archive.
"""

from .schema import (
    TERMINAL_RUN_STATUSES,
    ArchivedEntity,
    ArchiveReason,
    DuplicateCandidate,
    DuplicateMatchType,
    DuplicateStatus,
    FailedRecord,
    FailedRecordErrorCode,
    FailedRecordResolution,
    ImportRun,
    ImportRunStatus,
)

__all__ = [
    "ArchiveReason",
    "ArchivedEntity",
    "DuplicateCandidate",
    "DuplicateMatchType",
    "DuplicateStatus",
    "FailedRecord",
    "FailedRecordErrorCode",
    "FailedRecordResolution",
    "ImportRun",
    "ImportRunStatus",
    "TERMINAL_RUN_STATUSES",
]
