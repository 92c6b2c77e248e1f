"""
Exact-duplicate resolution for canonical entities.

Active entities sharing a normalized name or an external id form a group.
The most complete member survives; the others are snapshotted into
``archived_entities`` and deactivated. Each group is resolved inside its own
savepoint, so a failure leaves that group untouched and later groups proceed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from venture_crm.importer.metrics import record_dedupe_result
from venture_crm.models import db
from venture_crm.models.base import as_utc
from venture_crm.models.crm import Contact, EntityType, Investor, get_entity_model
from venture_crm.models.importer.schema import (
    ArchivedEntity,
    ArchiveReason,
    DuplicateCandidate,
    DuplicateStatus,
)

from .identity import normalize_name
from .progress import BatchProgress, ProgressReporter

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class DedupeSummary:
    entity_type: str
    groups_found: int = 0
    removed: int = 0
    failed_groups: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "groupsFound": self.groups_found,
            "removed": self.removed,
            "failedGroups": self.failed_groups,
        }


def is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def completeness_score(entity) -> int:
    """Number of non-empty completeness fields on ``entity``."""
    return sum(1 for name in entity.COMPLETENESS_FIELDS if is_filled(getattr(entity, name, None)))


def rank_group(entities: Iterable[Any]) -> list:
    """Order a group best-first: most complete, then oldest, then lowest id."""

    def sort_key(entity):
        created_at = as_utc(entity.created_at) or _FAR_FUTURE
        return (-completeness_score(entity), created_at, entity.id)

    return sorted(entities, key=sort_key)


def find_duplicate_groups(entities: Sequence[Any]) -> list[list]:
    """
    Partition entities into groups sharing a normalized name or external id.

    Groups are connected components over both keys, so every entity lands in
    at most one group. Blank names never group; singletons are dropped.
    """

    parent = list(range(len(entities)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    def union(left: int, right: int) -> None:
        root_left, root_right = find(left), find(right)
        if root_left != root_right:
            parent[max(root_left, root_right)] = min(root_left, root_right)

    first_seen: dict[tuple[str, str], int] = {}
    for index, entity in enumerate(entities):
        keys = []
        name_key = normalize_name(entity.display_name)
        if name_key:
            keys.append(("name", name_key))
        if entity.external_id:
            keys.append(("external_id", str(entity.external_id)))
        for key in keys:
            if key in first_seen:
                union(first_seen[key], index)
            else:
                first_seen[key] = index

    components: dict[int, list] = {}
    for index, entity in enumerate(entities):
        components.setdefault(find(index), []).append(entity)
    groups = [members for members in components.values() if len(members) > 1]
    groups.sort(key=lambda members: min(member.id for member in members))
    return groups


class DuplicateResolver:
    """Detect, rank and archive exact duplicates for one entity type."""

    def __init__(
        self,
        entity_type,
        *,
        session: Session | None = None,
        reporter: ProgressReporter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.entity_type = EntityType.coerce(entity_type)
        self.model = get_entity_model(self.entity_type)
        self.session: Session = session or db.session
        self.reporter = reporter or ProgressReporter()
        self.logger = logger or logging.getLogger(__name__)

    def detect(self) -> list[list]:
        entities = (
            self.session.query(self.model)
            .filter(self.model.is_active.is_(True))
            .order_by(self.model.id.asc())
            .all()
        )
        return find_duplicate_groups(entities)

    def run(self) -> DedupeSummary:
        groups = self.detect()
        summary = DedupeSummary(entity_type=self.entity_type.value, groups_found=len(groups))
        total = len(groups)
        self.reporter.publish(BatchProgress(current=0, total=total, current_batch=0, total_batches=total))

        for index, group in enumerate(groups, start=1):
            ranked = rank_group(group)
            winner, losers = ranked[0], ranked[1:]
            winner_id = winner.id
            loser_ids = [loser.id for loser in losers]
            try:
                with self.session.begin_nested():
                    archived_at = datetime.now(timezone.utc)
                    for loser in losers:
                        self.archive_loser(winner, loser, archived_at=archived_at)
                self.session.commit()
                summary.removed += len(losers)
            except Exception as exc:
                summary.failed_groups += 1
                self.logger.exception(
                    "Duplicate group could not be resolved; left untouched",
                    extra={
                        "importer_entity_type": self.entity_type.value,
                        "importer_winner_id": winner_id,
                        "importer_loser_ids": loser_ids,
                        "importer_error": str(exc),
                    },
                )
            self.reporter.publish(
                BatchProgress(current=index, total=total, current_batch=index, total_batches=total)
            )

        record_dedupe_result(self.entity_type.value, archived=summary.removed, failed_groups=summary.failed_groups)
        self.logger.info(
            "Duplicate resolution finished",
            extra={
                "importer_entity_type": self.entity_type.value,
                "importer_groups_found": summary.groups_found,
                "importer_removed": summary.removed,
                "importer_failed_groups": summary.failed_groups,
            },
        )
        return summary

    def archive_loser(self, winner, loser, *, archived_at: datetime) -> ArchivedEntity:
        """Snapshot ``loser`` and move it out of the active set."""

        archive = ArchivedEntity(
            entity_type=self.entity_type.value,
            entity_id=loser.id,
            external_id=loser.external_id,
            snapshot_json=loser.to_snapshot(),
            archive_reason=ArchiveReason.DUPLICATE_LESS_COMPLETE,
            merged_into_id=winner.id,
            archived_at=archived_at,
        )
        self.session.add(archive)
        loser.is_active = False
        loser.archived_at = archived_at
        if not winner.external_id and loser.external_id:
            winner.external_id = loser.external_id
        self.session.flush()

        if self.entity_type is EntityType.FIRM:
            repoint_firm_members(self.session, from_firm_id=loser.id, to_firm_id=winner.id)
        settle_candidates(self.session, self.entity_type, loser_id=loser.id, winner_id=winner.id)
        return archive


def repoint_firm_members(session: Session, *, from_firm_id: int, to_firm_id: int) -> None:
    for model in (Investor, Contact):
        session.execute(
            update(model).where(model.firm_id == from_firm_id).values(firm_id=to_firm_id),
            execution_options={"synchronize_session": "fetch"},
        )


def settle_candidates(session: Session, entity_type: EntityType, *, loser_id: int, winner_id: int) -> None:
    """Pending candidates that reference an archived entity are closed as merged."""

    session.execute(
        update(DuplicateCandidate)
        .where(
            DuplicateCandidate.entity_type == entity_type.value,
            DuplicateCandidate.status == DuplicateStatus.PENDING,
            or_(DuplicateCandidate.primary_id == loser_id, DuplicateCandidate.duplicate_id == loser_id),
        )
        .values(status=DuplicateStatus.MERGED, merged_into_id=winner_id),
        execution_options={"synchronize_session": "fetch"},
    )
