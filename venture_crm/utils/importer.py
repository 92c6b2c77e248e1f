"""
Typed accessors for the importer settings held in the active Flask config.

Defaults here match ``config.base.Config`` so code running against a bare
Flask app (tests, shell sessions) behaves like the configured application.
"""

from __future__ import annotations

from typing import NamedTuple, Tuple

from flask import current_app

from config.base import CONFLICT_POLICIES


class DedupeThresholds(NamedTuple):
    name: int
    review: int


def _get_config(app=None):
    return (app or current_app).config


def is_importer_enabled(app=None) -> bool:
    return bool(_get_config(app).get("IMPORTER_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    """Whether importer work is queued on Celery instead of running inline."""
    return bool(_get_config(app).get("IMPORTER_WORKER_ENABLED", False))


def get_importer_adapters(app=None) -> Tuple[str, ...]:
    adapters = _get_config(app).get("IMPORTER_ADAPTERS", ())
    return tuple(adapter.strip().lower() for adapter in adapters if adapter and adapter.strip())


def get_conflict_policy(app=None) -> str:
    """
    Resolve how imports treat local edits.

    ``external_wins`` overwrites mapped fields on every import;
    ``last_write_wins`` leaves entities with unsynced local edits alone.
    """
    policy = str(_get_config(app).get("IMPORTER_CONFLICT_POLICY") or "external_wins").strip().lower()
    if policy not in CONFLICT_POLICIES:
        raise ValueError(f"Unknown conflict policy '{policy}'. Expected one of: {', '.join(CONFLICT_POLICIES)}.")
    return policy


def get_progress_commit_interval(app=None) -> int:
    return max(1, int(_get_config(app).get("IMPORTER_PROGRESS_COMMIT_INTERVAL", 10)))


def get_push_batch_size(app=None) -> int:
    return max(1, int(_get_config(app).get("IMPORTER_PUSH_BATCH_SIZE", 5)))


def get_dedupe_thresholds(app=None) -> DedupeThresholds:
    config = _get_config(app)
    return DedupeThresholds(
        name=int(config.get("IMPORTER_DEDUPE_NAME_THRESHOLD", 80)),
        review=int(config.get("IMPORTER_DEDUPE_REVIEW_THRESHOLD", 70)),
    )
