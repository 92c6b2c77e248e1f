"""Importer pipeline helpers."""

from __future__ import annotations

from .dedupe import DedupeSummary, DuplicateResolver, completeness_score, find_duplicate_groups, rank_group
from .folk_import import (
    FolkImportPipeline,
    ImportSummary,
    classify_error,
    collection_for,
    dismiss_failed_record,
    retry_failed_record,
)
from .fuzzy_candidates import FuzzyCandidateDetector, FuzzyCandidateSummary, detect_candidates, name_similarity
from .identity import IdentityCache, normalize_name
from .merge_service import MergeResult, MergeService
from .progress import BatchProgress, ProgressReporter, RunProgress, compute_percent, run_progress
from .push_sync import PushSummary, PushSyncOrchestrator, project_entity
from .run_tracker import ImportRunTracker, InvalidRunTransition
from .upsert import UpsertAction, UpsertEngine, UpsertOutcome

__all__ = [
    "BatchProgress",
    "DedupeSummary",
    "DuplicateResolver",
    "FolkImportPipeline",
    "FuzzyCandidateDetector",
    "FuzzyCandidateSummary",
    "IdentityCache",
    "ImportRunTracker",
    "ImportSummary",
    "InvalidRunTransition",
    "MergeResult",
    "MergeService",
    "ProgressReporter",
    "PushSummary",
    "PushSyncOrchestrator",
    "RunProgress",
    "UpsertAction",
    "UpsertEngine",
    "UpsertOutcome",
    "classify_error",
    "collection_for",
    "completeness_score",
    "compute_percent",
    "detect_candidates",
    "dismiss_failed_record",
    "find_duplicate_groups",
    "name_similarity",
    "normalize_name",
    "project_entity",
    "rank_group",
    "retry_failed_record",
    "run_progress",
]
