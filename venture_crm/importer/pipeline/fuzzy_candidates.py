"""
Scored duplicate candidates for manual review.

Unlike exact deduplication, candidates are only recorded; nothing is archived
until a reviewer merges a pair through the merge service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Any, Iterable

from rapidfuzz import fuzz
from sqlalchemy.orm import Session

from venture_crm.models import db
from venture_crm.models.crm import EntityType, get_entity_model
from venture_crm.models.importer.schema import DuplicateCandidate, DuplicateMatchType, DuplicateStatus

from .identity import normalize_name

NAME_THRESHOLD = 80
REVIEW_THRESHOLD = 70
CONTAINMENT_WEIGHT = 80

EMAIL_FIELDS = {
    EntityType.FIRM: ("email",),
    EntityType.INVESTOR: ("email",),
    EntityType.CONTACT: ("work_email", "personal_email"),
}


@dataclass
class FuzzyCandidateSummary:
    entity_type: str
    pairs_considered: int = 0
    candidates_created: int = 0
    skipped_existing: int = 0
    exact_identity: int = 0
    fuzzy_name: int = 0
    combined: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "pairsConsidered": self.pairs_considered,
            "candidatesCreated": self.candidates_created,
            "skippedExisting": self.skipped_existing,
            "exactIdentity": self.exact_identity,
            "fuzzyName": self.fuzzy_name,
            "combined": self.combined,
        }


@dataclass(frozen=True)
class PairScore:
    score: int
    match_type: DuplicateMatchType
    features: dict[str, Any]


def normalize_email(value) -> str | None:
    if not value or not str(value).strip():
        return None
    return str(value).strip().lower()


def normalize_linkedin(value) -> str | None:
    if not value or not str(value).strip():
        return None
    url = str(value).strip().lower().rstrip("/")
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix) :]
    if url.startswith("www."):
        url = url[len("www.") :]
    return url or None


def name_similarity(left, right) -> int:
    """
    Integer 0-100 similarity between two display names.

    Exact normalized match scores 100; a name wholly contained in the other
    (at least three characters) scores proportionally to its length share;
    otherwise the normalized edit-distance ratio is used.
    """

    a, b = normalize_name(left), normalize_name(right)
    if not a or not b:
        return 0
    if a == b:
        return 100
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if len(shorter) >= 3 and shorter in longer:
        return (CONTAINMENT_WEIGHT * len(shorter)) // len(longer)
    return int(fuzz.ratio(a, b))


def _identity_keys(entity, entity_type: EntityType) -> dict[str, set[str]]:
    emails = {
        email
        for email in (normalize_email(getattr(entity, name, None)) for name in EMAIL_FIELDS[entity_type])
        if email
    }
    linkedin = normalize_linkedin(getattr(entity, "linkedin_url", None))
    return {"email": emails, "linkedin": {linkedin} if linkedin else set()}


def score_pair(
    left,
    right,
    entity_type,
    *,
    name_threshold: int = NAME_THRESHOLD,
) -> PairScore | None:
    entity_type = EntityType.coerce(entity_type)
    left_keys = _identity_keys(left, entity_type)
    right_keys = _identity_keys(right, entity_type)
    shared_email = sorted(left_keys["email"] & right_keys["email"])
    shared_linkedin = sorted(left_keys["linkedin"] & right_keys["linkedin"])
    identity_match = bool(shared_email or shared_linkedin)

    name_score = name_similarity(left.display_name, right.display_name)
    name_match = name_score >= name_threshold

    features = {
        "name_score": name_score,
        "shared_email": shared_email,
        "shared_linkedin": shared_linkedin,
    }
    if identity_match and name_match:
        return PairScore(100, DuplicateMatchType.COMBINED, features)
    if identity_match:
        return PairScore(100, DuplicateMatchType.EXACT_IDENTITY, features)
    if name_match:
        return PairScore(name_score, DuplicateMatchType.FUZZY_NAME, features)
    return None


class FuzzyCandidateDetector:
    """Score every pair of active entities and record pairs worth reviewing."""

    def __init__(
        self,
        entity_type,
        *,
        session: Session | None = None,
        name_threshold: int = NAME_THRESHOLD,
        review_threshold: int = REVIEW_THRESHOLD,
        logger: logging.Logger | None = None,
    ) -> None:
        self.entity_type = EntityType.coerce(entity_type)
        self.model = get_entity_model(self.entity_type)
        self.session: Session = session or db.session
        self.name_threshold = name_threshold
        self.review_threshold = review_threshold
        self.logger = logger or logging.getLogger(__name__)

    def _existing_pairs(self) -> set[tuple[int, int]]:
        rows = (
            self.session.query(DuplicateCandidate.primary_id, DuplicateCandidate.duplicate_id)
            .filter(DuplicateCandidate.entity_type == self.entity_type.value)
            .all()
        )
        return {(min(a, b), max(a, b)) for a, b in rows}

    def _active_entities(self) -> list:
        return (
            self.session.query(self.model)
            .filter(self.model.is_active.is_(True))
            .order_by(self.model.id.asc())
            .all()
        )

    def iter_scored_pairs(self, entities: Iterable[Any]):
        for left, right in combinations(entities, 2):
            result = score_pair(left, right, self.entity_type, name_threshold=self.name_threshold)
            yield left, right, result

    def run(self) -> FuzzyCandidateSummary:
        summary = FuzzyCandidateSummary(entity_type=self.entity_type.value)
        existing = self._existing_pairs()

        for left, right, result in self.iter_scored_pairs(self._active_entities()):
            summary.pairs_considered += 1
            if result is None or result.score < self.review_threshold:
                continue
            pair = (min(left.id, right.id), max(left.id, right.id))
            if pair in existing:
                summary.skipped_existing += 1
                continue
            self.session.add(
                DuplicateCandidate(
                    entity_type=self.entity_type.value,
                    primary_id=pair[0],
                    duplicate_id=pair[1],
                    match_type=result.match_type,
                    score=result.score,
                    features_json=result.features,
                    status=DuplicateStatus.PENDING,
                )
            )
            existing.add(pair)
            summary.candidates_created += 1
            if result.match_type is DuplicateMatchType.EXACT_IDENTITY:
                summary.exact_identity += 1
            elif result.match_type is DuplicateMatchType.COMBINED:
                summary.combined += 1
            else:
                summary.fuzzy_name += 1

        self.session.commit()
        self.logger.info(
            "Duplicate candidates recorded",
            extra={
                "importer_entity_type": self.entity_type.value,
                "importer_pairs_considered": summary.pairs_considered,
                "importer_candidates_created": summary.candidates_created,
                "importer_candidates_skipped_existing": summary.skipped_existing,
            },
        )
        return summary


def detect_candidates(entity_type, *, session: Session | None = None, **kwargs) -> FuzzyCandidateSummary:
    return FuzzyCandidateDetector(entity_type, session=session, **kwargs).run()
