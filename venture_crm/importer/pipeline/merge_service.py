"""
Review actions for duplicate candidates.

Merging keeps the survivor, fills its empty fields from the duplicate, unions
list fields, and archives the duplicate with ``manual_merge``. Dismissal and
review only change the candidate's status.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from venture_crm.models import db
from venture_crm.models.base import as_utc
from venture_crm.models.crm import EntityType, get_entity_model
from venture_crm.models.importer.schema import (
    ArchivedEntity,
    ArchiveReason,
    DuplicateCandidate,
    DuplicateStatus,
)

from .dedupe import is_filled, repoint_firm_members, settle_candidates
from .upsert import PROTECTED_COLUMNS

DEFAULT_LIMIT = 100
MAX_LIMIT = 500


@dataclass(frozen=True)
class MergeResult:
    candidate_id: int
    survivor_id: int
    archived_id: int
    fields_filled: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidateId": self.candidate_id,
            "survivorId": self.survivor_id,
            "archivedId": self.archived_id,
            "fieldsFilled": list(self.fields_filled),
        }


def serialize_candidate(candidate: DuplicateCandidate) -> dict[str, Any]:
    reviewed_at = as_utc(candidate.reviewed_at)
    created_at = as_utc(candidate.created_at)
    return {
        "id": candidate.id,
        "entity_type": candidate.entity_type,
        "primary_id": candidate.primary_id,
        "duplicate_id": candidate.duplicate_id,
        "match_type": candidate.match_type.value,
        "score": candidate.score,
        "features": candidate.features_json or {},
        "status": candidate.status.value,
        "merged_into_id": candidate.merged_into_id,
        "reviewed_by": candidate.reviewed_by,
        "reviewed_at": reviewed_at.isoformat() if reviewed_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


def _merge_value(current: Any, incoming: Any) -> tuple[Any, bool]:
    if isinstance(current, list) and isinstance(incoming, list):
        merged = list(current)
        for item in incoming:
            if item not in merged:
                merged.append(item)
        return merged, merged != current
    if not is_filled(current) and is_filled(incoming):
        return incoming, True
    return current, False


class MergeService:
    """Service for handling candidate merges, dismissals and review queue reads."""

    def __init__(self, session: Session | None = None, logger: logging.Logger | None = None):
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    # Queries --------------------------------------------------------------------

    def list_candidates(
        self,
        *,
        entity_type: str | None = None,
        status: str | None = DuplicateStatus.PENDING.value,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> tuple[list[DuplicateCandidate], int]:
        query = self.session.query(DuplicateCandidate)
        if entity_type:
            query = query.filter(DuplicateCandidate.entity_type == EntityType.coerce(entity_type).value)
        if status:
            query = query.filter(DuplicateCandidate.status == DuplicateStatus(status))
        total = query.count()
        limit = max(1, min(int(limit), MAX_LIMIT))
        items = (
            query.order_by(DuplicateCandidate.score.desc(), DuplicateCandidate.id.asc())
            .offset(max(0, int(offset)))
            .limit(limit)
            .all()
        )
        return items, total

    def get_candidate(self, candidate_id: int) -> DuplicateCandidate:
        candidate = self.session.get(DuplicateCandidate, candidate_id)
        if candidate is None:
            raise LookupError(f"Duplicate candidate {candidate_id} not found.")
        return candidate

    # Actions --------------------------------------------------------------------

    def merge_candidate(
        self,
        candidate_id: int,
        *,
        reviewed_by: str | None = None,
        survivor_id: int | None = None,
    ) -> MergeResult:
        with self._transaction():
            candidate = self._pending_candidate(candidate_id)
            entity_type = EntityType.coerce(candidate.entity_type)
            model = get_entity_model(entity_type)

            survivor_id = survivor_id or candidate.primary_id
            if not candidate.involves(survivor_id):
                raise ValueError(f"Entity {survivor_id} is not part of candidate {candidate_id}.")
            duplicate_id = candidate.duplicate_id if survivor_id == candidate.primary_id else candidate.primary_id

            survivor = self.session.get(model, survivor_id)
            duplicate = self.session.get(model, duplicate_id)
            for label, entity in (("survivor", survivor), ("duplicate", duplicate)):
                if entity is None or not entity.is_active:
                    raise ValueError(f"Candidate {candidate_id} {label} is missing or already archived.")

            now = datetime.now(timezone.utc)
            snapshot = duplicate.to_snapshot()
            filled = self._fill_survivor(model, survivor, duplicate)

            self.session.add(
                ArchivedEntity(
                    entity_type=entity_type.value,
                    entity_id=duplicate.id,
                    external_id=duplicate.external_id,
                    snapshot_json=snapshot,
                    archive_reason=ArchiveReason.MANUAL_MERGE,
                    merged_into_id=survivor.id,
                    archived_at=now,
                )
            )
            duplicate.is_active = False
            duplicate.archived_at = now
            if filled:
                survivor.mark_pending()
            self.session.flush()

            if entity_type is EntityType.FIRM:
                repoint_firm_members(self.session, from_firm_id=duplicate.id, to_firm_id=survivor.id)
            settle_candidates(self.session, entity_type, loser_id=duplicate.id, winner_id=survivor.id)

            candidate.status = DuplicateStatus.MERGED
            candidate.merged_into_id = survivor.id
            candidate.reviewed_by = reviewed_by
            candidate.reviewed_at = now
            result = MergeResult(
                candidate_id=candidate.id,
                survivor_id=survivor.id,
                archived_id=duplicate.id,
                fields_filled=tuple(filled),
            )

        self.logger.info(
            "Duplicate candidate merged",
            extra={
                "importer_candidate_id": result.candidate_id,
                "importer_survivor_id": result.survivor_id,
                "importer_archived_id": result.archived_id,
                "importer_reviewed_by": reviewed_by,
            },
        )
        return result

    def dismiss_candidate(self, candidate_id: int, *, reviewed_by: str | None = None) -> DuplicateCandidate:
        return self._close(candidate_id, DuplicateStatus.DISMISSED, reviewed_by=reviewed_by)

    def mark_reviewed(self, candidate_id: int, *, reviewed_by: str | None = None) -> DuplicateCandidate:
        return self._close(candidate_id, DuplicateStatus.REVIEWED, reviewed_by=reviewed_by)

    # Internal helpers -----------------------------------------------------------

    def _close(self, candidate_id: int, status: DuplicateStatus, *, reviewed_by: str | None) -> DuplicateCandidate:
        with self._transaction():
            candidate = self._pending_candidate(candidate_id)
            candidate.status = status
            candidate.reviewed_by = reviewed_by
            candidate.reviewed_at = datetime.now(timezone.utc)
        return candidate

    def _pending_candidate(self, candidate_id: int) -> DuplicateCandidate:
        candidate = self.get_candidate(candidate_id)
        if candidate.status is not DuplicateStatus.PENDING:
            raise ValueError(f"Duplicate candidate {candidate_id} is already {candidate.status.value}.")
        return candidate

    @staticmethod
    def _fill_survivor(model, survivor, duplicate) -> list[str]:
        filled: list[str] = []
        for column in model.__table__.columns:
            name = column.key
            if name in PROTECTED_COLUMNS or name in model.LOCAL_ONLY_FIELDS:
                continue
            merged, changed = _merge_value(getattr(survivor, name), getattr(duplicate, name))
            if changed:
                setattr(survivor, name, merged)
                filled.append(name)
        if "firm_id" in model.__table__.columns and survivor.firm_id is None and duplicate.firm_id is not None:
            survivor.firm_id = duplicate.firm_id
            filled.append("firm_id")
        if not survivor.external_id and duplicate.external_id:
            survivor.external_id = duplicate.external_id
        return filled

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
