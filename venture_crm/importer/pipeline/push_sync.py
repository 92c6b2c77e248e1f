"""
Push locally edited entities to the Folk API.

Eligible entities are processed in fixed-size batches. Within a batch the HTTP
calls run concurrently on a thread pool and the orchestrator waits for all of
them before applying outcomes on the calling thread and committing once.
A failing item only marks itself as ``error``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Sequence

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from venture_crm.importer.adapters.folk import FolkRequestError
from venture_crm.importer.adapters.folk.client import FolkClient
from venture_crm.importer.metrics import record_push_batch
from venture_crm.models import db
from venture_crm.models.crm import EntityType, InvestmentFirm, SyncStatus, get_entity_model

from .folk_import import collection_for
from .progress import BatchProgress, ProgressReporter

DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 50


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _compact(payload: Mapping[str, Any]) -> dict[str, Any]:
    compacted: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, list):
            value = [item for item in value if item is not None and not (isinstance(item, str) and not item.strip())]
            if not value:
                continue
        elif value is None or (isinstance(value, str) and not value.strip()):
            continue
        compacted[key] = value
    return compacted


def project_firm(firm) -> dict[str, Any]:
    return _compact(
        {
            "name": firm.name,
            "description": firm.description,
            "industry": firm.industry,
            "addresses": list(firm.addresses or []),
            "emails": [firm.email],
            "phones": [firm.phone],
            "urls": [firm.website, firm.linkedin_url],
        }
    )


def project_person(person) -> dict[str, Any]:
    if isinstance(person, get_entity_model(EntityType.CONTACT)):
        emails = [person.work_email, person.personal_email]
        phones = [person.primary_phone, person.secondary_phone]
        website = None
    else:
        emails = [person.email]
        phones = [person.phone]
        website = person.website
    payload = {
        "firstName": person.first_name,
        "lastName": person.last_name,
        "fullName": person.full_name,
        "description": person.bio,
        "jobTitle": person.title,
        "emails": emails,
        "phones": phones,
        "urls": [person.linkedin_url, person.twitter_url, website],
    }
    firm = getattr(person, "firm", None)
    if firm is not None and firm.external_id:
        payload["companies"] = [{"id": firm.external_id}]
    return _compact(payload)


def project_entity(entity) -> dict[str, Any]:
    """External-schema body for ``entity``; empty values are omitted."""
    if entity.ENTITY_TYPE is EntityType.FIRM:
        return project_firm(entity)
    return project_person(entity)


@dataclass(frozen=True)
class PushItem:
    entity_id: int
    collection: str
    external_id: str | None
    body: Mapping[str, Any]


@dataclass(frozen=True)
class PushItemResult:
    entity_id: int
    ok: bool
    external_id: str | None = None
    error: str | None = None


@dataclass
class PushSummary:
    entity_type: str
    eligible: int = 0
    synced: int = 0
    failed: int = 0
    batches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "eligible": self.eligible,
            "synced": self.synced,
            "failed": self.failed,
            "batches": self.batches,
        }


class PushSyncOrchestrator:
    """Batch-push pending entities of one type with bounded concurrency."""

    def __init__(
        self,
        entity_type,
        client: FolkClient,
        *,
        session: Session | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        reporter: ProgressReporter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.entity_type = EntityType.coerce(entity_type)
        self.model = get_entity_model(self.entity_type)
        self.collection = collection_for(self.entity_type)
        self.client = client
        self.session: Session = session or db.session
        self.batch_size = max(1, min(int(batch_size), MAX_BATCH_SIZE))
        self.reporter = reporter or ProgressReporter()
        self.logger = logger or logging.getLogger(__name__)

    # Selection ------------------------------------------------------------------

    def eligible_query(self):
        name_column = getattr(self.model, self.model.DISPLAY_NAME_FIELD)
        query = self.session.query(self.model).filter(
            self.model.is_active.is_(True),
            self.model.sync_status.in_((SyncStatus.PENDING, SyncStatus.ERROR)),
            name_column.isnot(None),
            func.trim(name_column) != "",
        )
        if self.entity_type is not EntityType.FIRM:
            query = query.outerjoin(InvestmentFirm, self.model.firm_id == InvestmentFirm.id).filter(
                or_(
                    self.model.firm_id.is_(None),
                    and_(InvestmentFirm.external_id.isnot(None), InvestmentFirm.external_id != ""),
                )
            )
        return query.order_by(self.model.id.asc())

    def eligible_entities(self) -> list:
        return self.eligible_query().all()

    # Execution ------------------------------------------------------------------

    def run(self) -> PushSummary:
        entities = self.eligible_entities()
        total = len(entities)
        total_batches = (total + self.batch_size - 1) // self.batch_size
        summary = PushSummary(entity_type=self.entity_type.value, eligible=total)
        self.reporter.publish(BatchProgress(current=0, total=total, current_batch=0, total_batches=total_batches))

        processed = 0
        for batch_index, batch in enumerate(chunked(entities, self.batch_size), start=1):
            started = time.perf_counter()
            results = self._push_batch(batch)
            synced, failed = self._apply_results(batch, results)
            self.session.commit()

            processed += len(batch)
            summary.synced += synced
            summary.failed += failed
            summary.batches += 1
            record_push_batch(
                self.entity_type.value,
                synced=synced,
                failed=failed,
                duration_seconds=time.perf_counter() - started,
            )
            self.reporter.publish(
                BatchProgress(
                    current=processed,
                    total=total,
                    current_batch=batch_index,
                    total_batches=total_batches,
                )
            )
            self.logger.info(
                "Push batch finished",
                extra={
                    "importer_entity_type": self.entity_type.value,
                    "importer_batch": batch_index,
                    "importer_total_batches": total_batches,
                    "importer_synced": synced,
                    "importer_failed": failed,
                },
            )
        return summary

    @property
    def progress(self) -> BatchProgress | None:
        return self.reporter.latest

    # Internal helpers -----------------------------------------------------------

    def _push_batch(self, batch: Sequence[Any]) -> list[PushItemResult]:
        items: list[PushItem | PushItemResult] = []
        for entity in batch:
            try:
                items.append(
                    PushItem(
                        entity_id=entity.id,
                        collection=self.collection,
                        external_id=entity.external_id or None,
                        body=project_entity(entity),
                    )
                )
            except Exception as exc:
                items.append(PushItemResult(entity_id=entity.id, ok=False, error=f"Projection failed: {exc}"))

        pending = [item for item in items if isinstance(item, PushItem)]
        outcomes: dict[int, PushItemResult] = {}
        if pending:
            with ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="folk-push") as executor:
                futures = [executor.submit(self._push_one, item) for item in pending]
                wait(futures)
            for future in futures:
                result = future.result()
                outcomes[result.entity_id] = result

        return [outcomes[item.entity_id] if isinstance(item, PushItem) else item for item in items]

    def _push_one(self, item: PushItem) -> PushItemResult:
        """Runs on a worker thread; must not touch the database session."""

        try:
            if item.external_id:
                self.client.update(item.collection, item.external_id, item.body)
                return PushItemResult(entity_id=item.entity_id, ok=True, external_id=item.external_id)
            data = self.client.create(item.collection, item.body)
            new_id = data.get("id") if isinstance(data, Mapping) else None
            if not new_id:
                raise FolkRequestError("Create response did not include an id.")
            return PushItemResult(entity_id=item.entity_id, ok=True, external_id=str(new_id))
        except Exception as exc:
            return PushItemResult(entity_id=item.entity_id, ok=False, error=str(exc))

    def _apply_results(self, batch: Sequence[Any], results: Sequence[PushItemResult]) -> tuple[int, int]:
        synced = failed = 0
        now = datetime.now(timezone.utc)
        for entity, result in zip(batch, results):
            if result.ok:
                entity.mark_synced(external_id=result.external_id, synced_at=now)
                synced += 1
            else:
                entity.mark_sync_error(result.error)
                failed += 1
                self.logger.warning(
                    "Entity push failed",
                    extra={
                        "importer_entity_type": self.entity_type.value,
                        "importer_entity_id": entity.id,
                        "importer_error": result.error,
                    },
                )
        return synced, failed
