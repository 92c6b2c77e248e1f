# venture_crm/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, as_utc, configure_sqlite_engine, db
from .crm import (
    ENTITY_MODELS,
    Contact,
    EntityType,
    ExternalSyncMixin,
    InvestmentFirm,
    Investor,
    RecordSource,
    SyncStatus,
    get_entity_model,
)
from .importer import (
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
    "db",
    "BaseModel",
    "as_utc",
    "configure_sqlite_engine",
    # CRM entities
    "ENTITY_MODELS",
    "Contact",
    "EntityType",
    "ExternalSyncMixin",
    "InvestmentFirm",
    "Investor",
    "RecordSource",
    "SyncStatus",
    "get_entity_model",
    # Importer bookkeeping
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
]
