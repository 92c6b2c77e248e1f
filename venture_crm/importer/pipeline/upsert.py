"""
Identity resolution and idempotent upsert of mapped records.

Each external identity resolves to at most one active local entity. Updates
overwrite mapped fields and leave local-only columns alone; inserts are tagged
as external records. Re-running a mapping against the same store never
appends.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from venture_crm.models import db
from venture_crm.models.base import as_utc
from venture_crm.models.crm import EntityType, InvestmentFirm, RecordSource, SyncStatus, get_entity_model
from venture_crm.models.importer.schema import ArchivedEntity

from .identity import IdentityCache, normalize_name

EXTERNAL_WINS = "external_wins"
LAST_WRITE_WINS = "last_write_wins"

# Bookkeeping columns an import never assigns from mapped data
PROTECTED_COLUMNS = frozenset(
    {
        "id",
        "external_id",
        "source",
        "sync_status",
        "sync_error",
        "last_external_sync_at",
        "created_at",
        "updated_at",
        "firm_id",
    }
)
MAX_MERGE_CHAIN = 25


class UpsertAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpsertOutcome:
    action: UpsertAction
    entity: Any = None
    reason: str | None = None


class UpsertEngine:
    """Resolve mapped records to local entities and write them."""

    def __init__(
        self,
        entity_type,
        *,
        session: Session | None = None,
        identity_cache: IdentityCache | None = None,
        conflict_policy: str = EXTERNAL_WINS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.entity_type = EntityType.coerce(entity_type)
        self.model = get_entity_model(self.entity_type)
        self.session: Session = session or db.session
        self.cache = identity_cache if identity_cache is not None else IdentityCache()
        if conflict_policy not in (EXTERNAL_WINS, LAST_WRITE_WINS):
            raise ValueError(f"Unsupported conflict policy '{conflict_policy}'.")
        self.conflict_policy = conflict_policy
        self.logger = logger or logging.getLogger(__name__)
        self._assignable = frozenset(
            column.key
            for column in self.model.__table__.columns
            if column.key not in PROTECTED_COLUMNS and column.key not in self.model.LOCAL_ONLY_FIELDS
        )
        self._links_firm = "firm_id" in self.model.__table__.columns

    # Identity resolution --------------------------------------------------------

    def resolve(self, external_id: str):
        """Return the active entity owning ``external_id`` or ``None``."""

        external_id = str(external_id)
        cached_id = self.cache.get(self.entity_type, external_id)
        if cached_id is not None:
            entity = self.session.get(self.model, cached_id)
            if entity is not None and entity.is_active and entity.external_id == external_id:
                return entity
            self.cache.forget(self.entity_type, cached_id)

        entity = (
            self.session.query(self.model)
            .filter(self.model.external_id == external_id, self.model.is_active.is_(True))
            .order_by(self.model.id.asc())
            .first()
        )
        if entity is not None:
            self.cache.remember(self.entity_type, external_id, entity.id)
        return entity

    def resolve_archived_survivor(self, external_id: str):
        """Follow an archived loser carrying ``external_id`` to its active survivor."""

        archived = (
            self.session.query(ArchivedEntity)
            .filter(
                ArchivedEntity.entity_type == self.entity_type.value,
                ArchivedEntity.external_id == str(external_id),
            )
            .order_by(ArchivedEntity.id.desc())
            .first()
        )
        target_id = archived.merged_into_id if archived else None
        for _ in range(MAX_MERGE_CHAIN):
            if target_id is None:
                return None
            survivor = self.session.get(self.model, target_id)
            if survivor is None:
                return None
            if survivor.is_active:
                return survivor
            hop = (
                self.session.query(ArchivedEntity)
                .filter(
                    ArchivedEntity.entity_type == self.entity_type.value,
                    ArchivedEntity.entity_id == survivor.id,
                )
                .order_by(ArchivedEntity.id.desc())
                .first()
            )
            target_id = hop.merged_into_id if hop else None
        return None

    def resolve_firm_id(self, firm_name) -> int | None:
        key = normalize_name(firm_name)
        if not key:
            return None
        cached = self.cache.get_by_name(EntityType.FIRM, key)
        if cached is not None:
            return cached
        firm = (
            self.session.query(InvestmentFirm)
            .filter(
                func.lower(func.trim(InvestmentFirm.name)) == str(firm_name).strip().lower(),
                InvestmentFirm.is_active.is_(True),
            )
            .order_by(InvestmentFirm.id.asc())
            .first()
        )
        if firm is None:
            return None
        self.cache.remember_name(EntityType.FIRM, key, firm.id)
        return firm.id

    # Writes ---------------------------------------------------------------------

    def upsert(self, canonical: Mapping[str, Any], *, now: datetime | None = None) -> UpsertOutcome:
        external_id = canonical.get("external_id")
        if external_id in (None, ""):
            return UpsertOutcome(UpsertAction.SKIPPED, reason="missing_external_id")
        external_id = str(external_id)
        now = now or datetime.now(timezone.utc)

        entity = self.resolve(external_id)
        if entity is None:
            survivor = self.resolve_archived_survivor(external_id)
            if survivor is not None:
                if survivor.external_id and survivor.external_id != external_id:
                    return UpsertOutcome(UpsertAction.SKIPPED, entity=survivor, reason="merged_into_other_identity")
                survivor.external_id = external_id
                entity = survivor
                self.logger.info(
                    "Survivor adopted archived external identity",
                    extra={
                        "importer_entity_type": self.entity_type.value,
                        "importer_entity_id": survivor.id,
                        "importer_external_id": external_id,
                    },
                )

        if entity is None:
            entity = self.model(external_id=external_id, source=RecordSource.EXTERNAL, is_active=True)
            self._assign(entity, canonical)
            entity.mark_synced(synced_at=now)
            self.session.add(entity)
            self.session.flush()
            self.cache.remember(self.entity_type, external_id, entity.id)
            self._remember_name(entity)
            return UpsertOutcome(UpsertAction.CREATED, entity=entity)

        if self.conflict_policy == LAST_WRITE_WINS and self._has_unsynced_local_edits(entity):
            return UpsertOutcome(UpsertAction.SKIPPED, entity=entity, reason="local_changes_pending")

        self._assign(entity, canonical)
        entity.mark_synced(synced_at=now)
        self.session.flush()
        self.cache.remember(self.entity_type, external_id, entity.id)
        self._remember_name(entity)
        return UpsertOutcome(UpsertAction.UPDATED, entity=entity)

    # Internal helpers -----------------------------------------------------------

    def _assign(self, entity, canonical: Mapping[str, Any]) -> None:
        for key, value in canonical.items():
            if key not in self._assignable:
                continue
            if getattr(entity, key) != value:
                setattr(entity, key, value)
        if self._links_firm:
            firm_id = self.resolve_firm_id(canonical.get("firm_name"))
            if firm_id is not None and entity.firm_id != firm_id:
                entity.firm_id = firm_id

    def _remember_name(self, entity) -> None:
        if self.entity_type is EntityType.FIRM:
            self.cache.remember_name(EntityType.FIRM, entity.name, entity.id)

    @staticmethod
    def _has_unsynced_local_edits(entity) -> bool:
        if entity.sync_status is not SyncStatus.PENDING:
            return False
        last_sync = as_utc(entity.last_external_sync_at)
        if last_sync is None:
            return True
        updated_at = as_utc(entity.updated_at)
        return updated_at is not None and updated_at > last_sync
