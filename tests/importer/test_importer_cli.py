from __future__ import annotations

import json

import pytest

from venture_crm.importer import init_importer, service
from venture_crm.importer.adapters.folk.client import FolkClient
from venture_crm.models import Investor, SyncStatus, db
from venture_crm.models.importer.schema import (
    DuplicateCandidate,
    DuplicateMatchType,
    FailedRecord,
    FailedRecordErrorCode,
    ImportRun,
    ImportRunStatus,
)

from .conftest import WORKSPACE_ID


@pytest.fixture
def use_fake_folk(monkeypatch, folk_client):
    monkeypatch.setattr(service, "build_folk_client", lambda config=None, **kwargs: folk_client)
    return folk_client


def _invoke(runner, *args):
    return runner.invoke(args=["importer", *args])


def test_group_lists_adapters(runner):
    result = _invoke(runner)

    assert result.exit_code == 0, result.output
    assert "Enabled importer adapters:" in result.output
    assert "  - folk" in result.output


def test_run_inline_prints_status(runner, use_fake_folk, fake_http, folk_page, folk_person):
    fake_http.queue("get", json_data=folk_page([folk_person("per_1")]))

    result = _invoke(runner, "run", "--entity", "investor", "--workspace", WORKSPACE_ID, "--inline")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert payload["created"] == 1
    assert ImportRun.query.one().triggered_by == "cli"


def test_run_queues_when_requested(runner, monkeypatch):
    monkeypatch.setattr(service, "enqueue", lambda task_name, **kwargs: "task-9")

    result = _invoke(runner, "run", "--entity", "firm", "--workspace", WORKSPACE_ID, "--queue")

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["status"] == "pending"
    assert ImportRun.query.one().params_json["task_id"] == "task-9"


def test_run_rejects_unknown_entity(runner):
    result = _invoke(runner, "run", "--entity", "deal", "--workspace", WORKSPACE_ID)
    assert result.exit_code != 0


def test_status_and_cancel(runner, run_factory):
    run = run_factory(status=ImportRunStatus.IN_PROGRESS)

    status = _invoke(runner, "status", str(run.id))
    cancelled = _invoke(runner, "cancel", str(run.id))
    again = _invoke(runner, "cancel", str(run.id))

    assert json.loads(status.output)["status"] == "in_progress"
    assert json.loads(cancelled.output)["status"] == "cancelled"
    assert again.exit_code != 0
    assert "already finished" in again.output


def test_status_of_missing_run_fails_cleanly(runner):
    result = _invoke(runner, "status", "999")

    assert result.exit_code == 1
    assert "Import run 999 not found" in result.output


def test_retry_resumes_failed_run(runner, use_fake_folk, fake_http, folk_page, folk_person, run_factory):
    failed = run_factory(
        status=ImportRunStatus.FAILED,
        resume_cursor="https://folk.test/v1/people?cursor=c9",
        page_index=4,
    )
    fake_http.queue("get", json_data=folk_page([folk_person("per_1")]))

    result = _invoke(runner, "retry", str(failed.id), "--inline")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["resumed_from_run_id"] == failed.id
    assert payload["page_index"] == 5
    assert fake_http.calls[0][1] == "https://folk.test/v1/people?cursor=c9"


def test_failure_commands(runner, run_factory):
    run = run_factory(status=ImportRunStatus.COMPLETED)
    failure = FailedRecord(
        run_id=run.id,
        entity_type="investor",
        external_id="per_bad",
        payload_json={"id": "per_bad", "fullName": ""},
        error_code=FailedRecordErrorCode.VALIDATION,
        error_message="Required field 'full_name' is missing",
    )
    db.session.add(failure)
    db.session.commit()

    listed = _invoke(runner, "failures", "list", "--run-id", str(run.id))
    retried = _invoke(runner, "failures", "retry", str(failure.id))
    dismissed = _invoke(runner, "failures", "dismiss", str(failure.id))
    listed_all = _invoke(runner, "failures", "list", "--all")

    assert json.loads(listed.output)["total"] == 1
    assert retried.exit_code == 1
    assert "did not succeed" in retried.output
    assert json.loads(dismissed.output)["resolution"] == "dismissed"
    assert json.loads(listed_all.output)["items"][0]["retry_count"] == 1


def test_dedupe_candidates_and_merge(runner, investor_factory):
    investor_factory(full_name="Ada Lovelace")
    investor_factory(full_name="Ada Lovelace")
    jon = investor_factory(full_name="Jon Smith")
    john = investor_factory(full_name="John Smith", title="Partner")

    deduped = _invoke(runner, "dedupe", "--entity", "investor", "--detect-candidates")
    assert deduped.exit_code == 0, deduped.output
    payload = json.loads(deduped.output)
    assert payload["removed"] == 1
    assert payload["candidates"]["candidatesCreated"] == 1

    listed = json.loads(_invoke(runner, "candidates", "--entity", "investor").output)
    candidate_id = listed["items"][0]["id"]
    merged = _invoke(runner, "merge", str(candidate_id), "--reviewed-by", "analyst")

    assert merged.exit_code == 0, merged.output
    assert json.loads(merged.output) == {
        "candidateId": candidate_id,
        "survivorId": jon.id,
        "archivedId": john.id,
        "fieldsFilled": ["title"],
    }


def test_dismiss_candidate(runner, investor_factory):
    left = investor_factory(full_name="Jon Smith")
    right = investor_factory(full_name="John Smith")
    candidate = DuplicateCandidate(
        entity_type="investor",
        primary_id=left.id,
        duplicate_id=right.id,
        match_type=DuplicateMatchType.FUZZY_NAME,
        score=94,
    )
    db.session.add(candidate)
    db.session.commit()

    result = _invoke(runner, "dismiss", str(candidate.id))
    missing = _invoke(runner, "dismiss", "12345")

    assert json.loads(result.output)["status"] == "dismissed"
    assert missing.exit_code == 1


def test_push_inline(runner, use_fake_folk, fake_http, investor_factory):
    investor_factory(full_name="Ada Lovelace")
    fake_http.queue("post", status_code=201, json_data={"data": {"id": "per_new"}})

    result = _invoke(runner, "push", "--entity", "investor", "--inline")

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["synced"] == 1
    investor = Investor.query.one()
    assert investor.external_id == "per_new"
    assert investor.sync_status is SyncStatus.SYNCED


def test_push_queue(runner, monkeypatch):
    sent = []
    monkeypatch.setattr(service, "enqueue", lambda task_name, **kwargs: sent.append((task_name, kwargs)) or "task-1")

    result = _invoke(runner, "push", "--entity", "firm", "--queue")

    assert json.loads(result.output) == {"status": "queued", "task_id": "task-1", "entityType": "firm"}
    assert sent == [(service.PUSH_TASK_NAME, {"entity_type": "firm"})]


def test_ping_folk(runner, monkeypatch, folk_client, fake_http):
    monkeypatch.setattr(FolkClient, "from_config", classmethod(lambda cls, config, **kwargs: folk_client))
    fake_http.queue("get", status_code=401, json_data={"error": {"message": "invalid key"}})

    result = _invoke(runner, "ping-folk")

    assert result.exit_code == 1
    assert "invalid key" in result.output


def test_worker_ping_runs_heartbeat_eagerly(runner):
    result = _invoke(runner, "worker", "ping")

    assert result.exit_code == 0, result.output
    assert "IMPORTER_WORKER_ENABLED is false" in result.output
    assert '"status": "ok"' in result.output


def test_disabled_importer_stub(app, runner, monkeypatch):
    monkeypatch.setitem(app.config, "IMPORTER_ENABLED", False)
    init_importer(app)

    result = _invoke(runner)

    assert result.exit_code != 0
    assert "IMPORTER_ENABLED=false" in result.output
