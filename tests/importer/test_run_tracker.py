from __future__ import annotations

import pytest

from venture_crm.importer.pipeline.progress import BatchProgress, ProgressReporter, compute_percent
from venture_crm.importer.pipeline.run_tracker import ImportRunTracker, InvalidRunTransition
from venture_crm.models import db
from venture_crm.models.importer.schema import FailedRecord, FailedRecordErrorCode, ImportRun, ImportRunStatus


def test_compute_percent_never_reaches_100_before_terminal():
    assert compute_percent(0, 0) == 0
    assert compute_percent(5, 10) == 50
    assert compute_percent(10, 10) == 99
    assert compute_percent(10, 10, terminal=True) == 100


def test_compute_percent_is_monotonic_when_total_grows():
    # A second page doubles the total; the reported percent must not drop
    assert compute_percent(10, 20, previous=99) == 99
    assert compute_percent(15, 20, previous=50) == 75


def test_batch_progress_percent():
    assert BatchProgress(current=2, total=8, current_batch=1, total_batches=4).percent == 25
    assert BatchProgress(current=0, total=0, current_batch=0, total_batches=0).percent == 100


def test_progress_reporter_keeps_latest_and_forwards():
    seen = []
    reporter = ProgressReporter(callback=seen.append)
    first = BatchProgress(current=1, total=2, current_batch=1, total_batches=2)
    second = BatchProgress(current=2, total=2, current_batch=2, total_batches=2)

    reporter.publish(first)
    reporter.publish(second)

    assert reporter.latest == second
    assert seen == [first, second]


def test_lifecycle_transitions(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run)

    tracker.begin()
    assert run.status is ImportRunStatus.IN_PROGRESS
    assert run.started_at is not None

    with pytest.raises(InvalidRunTransition):
        tracker.begin()
    with pytest.raises(InvalidRunTransition):
        tracker.finish(ImportRunStatus.IN_PROGRESS)

    tracker.finish(ImportRunStatus.COMPLETED)
    assert run.status is ImportRunStatus.COMPLETED
    assert run.percent_complete == 100
    assert run.completed_at is not None

    with pytest.raises(InvalidRunTransition):
        tracker.finish(ImportRunStatus.FAILED)


def test_counters_require_an_active_run(run_factory):
    tracker = ImportRunTracker(run_factory())
    with pytest.raises(InvalidRunTransition):
        tracker.add_total(5)


def test_advance_updates_counters_and_percent(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run, commit_interval=2)
    tracker.begin()
    tracker.add_total(4)

    tracker.advance("created")
    tracker.advance("updated")
    tracker.advance("skipped")

    assert run.processed_records == 3
    assert (run.created_records, run.updated_records, run.skipped_records) == (1, 1, 1)
    assert run.percent_complete == 75
    with pytest.raises(ValueError):
        tracker.advance("exploded")


def test_progress_is_committed_every_interval(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run, commit_interval=2)
    tracker.begin()
    tracker.add_total(3)
    tracker.advance("created")
    tracker.advance("created")

    persisted = db.session.execute(
        db.select(ImportRun.processed_records).where(ImportRun.id == run.id)
    ).scalar_one()
    assert persisted == 2


def test_record_failure_persists_payload(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run)
    tracker.begin()
    tracker.add_total(1)

    tracker.record_failure(
        payload={"id": "per_1"},
        error_code=FailedRecordErrorCode.VALIDATION,
        message="Required field 'full_name' is missing",
        external_id="per_1",
    )
    tracker.commit()

    failure = FailedRecord.query.one()
    assert failure.run_id == run.id
    assert failure.payload_json == {"id": "per_1"}
    assert failure.error_code is FailedRecordErrorCode.VALIDATION
    assert run.failed_records == 1


def test_checkpoint_persists_resume_position(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run)
    tracker.begin()

    tracker.checkpoint(cursor="https://folk.test/v1/people?cursor=c3", page_index=3)

    db.session.expire_all()
    stored = db.session.get(ImportRun, run.id)
    assert stored.resume_cursor == "https://folk.test/v1/people?cursor=c3"
    assert stored.page_index == 3


def test_cancellation_is_read_from_the_database(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run)
    tracker.begin()
    assert tracker.cancellation_requested() is False

    db.session.execute(
        db.update(ImportRun).where(ImportRun.id == run.id).values(status=ImportRunStatus.CANCELLED)
    )
    db.session.commit()

    assert tracker.cancellation_requested() is True
    assert run.status is ImportRunStatus.CANCELLED
    assert tracker.advance("created") is False
    assert run.processed_records == 0


def test_counters_and_checkpoint_are_quiet_after_cancellation(run_factory):
    run = run_factory()
    tracker = ImportRunTracker(run)
    tracker.begin()
    tracker.add_total(2)
    tracker.release()

    db.session.execute(
        db.update(ImportRun).where(ImportRun.id == run.id).values(status=ImportRunStatus.CANCELLED)
    )
    db.session.commit()
    assert tracker.cancellation_requested() is True

    tracker.add_total(5)
    tracker.checkpoint(cursor="https://folk.test/v1/people?cursor=c9", page_index=9)

    db.session.expire_all()
    stored = db.session.get(ImportRun, run.id)
    assert stored.status is ImportRunStatus.CANCELLED
    assert stored.total_records == 2
    assert stored.page_index != 9
