"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_folk_enabled_gauge = Gauge(
    "importer_folk_adapter_enabled_total",
    "Whether the Folk importer adapter is enabled (1) or disabled (0).",
)
_folk_auth_attempts = Counter(
    "importer_folk_auth_attempts_total",
    "Folk adapter connection checks by outcome.",
    ["outcome"],
)
_fetch_pages_counter = Counter(
    "importer_folk_fetch_pages_total",
    "Pages fetched from the Folk API by status.",
    ["collection", "status"],
)
_fetch_retries_counter = Counter(
    "importer_folk_fetch_retries_total",
    "Fetch retries performed after transient Folk API failures.",
    ["collection"],
)
_records_counter = Counter(
    "importer_records_total",
    "Imported records by entity type and outcome.",
    ["entity_type", "action"],
)
_run_duration = Histogram(
    "importer_run_duration_seconds",
    "Wall-clock duration of import runs by terminal status.",
    ["status"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)
_dedupe_archived_counter = Counter(
    "importer_dedupe_archived_total",
    "Entities archived by duplicate resolution.",
    ["entity_type"],
)
_dedupe_group_failures = Counter(
    "importer_dedupe_group_failures_total",
    "Duplicate groups left untouched after a resolution failure.",
    ["entity_type"],
)
_push_items_counter = Counter(
    "importer_push_items_total",
    "Entities pushed to the Folk API by outcome.",
    ["entity_type", "outcome"],
)
_push_batch_duration = Histogram(
    "importer_push_batch_duration_seconds",
    "Duration of push-sync batches in seconds.",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60),
)


def record_folk_adapter_status(enabled: bool) -> None:
    """Set the Folk adapter enabled gauge."""

    _folk_enabled_gauge.set(1 if enabled else 0)


def record_folk_auth_attempt(outcome: Literal["success", "failure"]) -> None:
    _folk_auth_attempts.labels(outcome=outcome).inc()


def record_fetch_page(collection: str, *, status: Literal["success", "failure"]) -> None:
    _fetch_pages_counter.labels(collection=collection, status=status).inc()


def record_fetch_retry(collection: str) -> None:
    _fetch_retries_counter.labels(collection=collection).inc()


def record_import_records(entity_type: str, *, action: str, count: int = 1) -> None:
    """Increment imported-record counters (created/updated/skipped/failed)."""

    if count <= 0:
        return
    _records_counter.labels(entity_type=entity_type, action=action).inc(count)


def record_run_duration(status: str, duration_seconds: float) -> None:
    _run_duration.labels(status=status).observe(max(0.0, duration_seconds))


def record_dedupe_result(entity_type: str, *, archived: int, failed_groups: int) -> None:
    if archived:
        _dedupe_archived_counter.labels(entity_type=entity_type).inc(archived)
    if failed_groups:
        _dedupe_group_failures.labels(entity_type=entity_type).inc(failed_groups)


def record_push_batch(
    entity_type: str,
    *,
    synced: int,
    failed: int,
    duration_seconds: float,
) -> None:
    """Capture metrics for one push-sync batch."""

    if synced:
        _push_items_counter.labels(entity_type=entity_type, outcome="synced").inc(synced)
    if failed:
        _push_items_counter.labels(entity_type=entity_type, outcome="error").inc(failed)
    _push_batch_duration.observe(duration_seconds)


_api_requests_counter = Counter(
    "importer_api_requests_total",
    "Importer JSON API requests by endpoint and status.",
    ["endpoint", "status"],
)
_api_request_duration = Histogram(
    "importer_api_request_duration_seconds",
    "Importer JSON API response time by endpoint.",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)


def record_api_request(endpoint: str, status: str, duration_seconds: float) -> None:
    _api_requests_counter.labels(endpoint=endpoint, status=status).inc()
    _api_request_duration.labels(endpoint=endpoint).observe(max(0.0, duration_seconds))
