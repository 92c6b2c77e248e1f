from __future__ import annotations

import json
from typing import Any, Dict

import pytest
from flask import Flask

from venture_crm.importer import IMPORTER_EXTENSION_KEY, get_celery_app, init_importer, service
from venture_crm.importer.celery_app import DEFAULT_QUEUE_NAME, resolve_connection_urls
from venture_crm.importer.registry import get_adapter_registry, resolve_adapters
from venture_crm.models import Investor, db
from venture_crm.models.importer.schema import ImportRun, ImportRunStatus

from .conftest import WORKSPACE_ID

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_importer_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the importer enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        TESTING=True,
        IMPORTER_ENABLED=True,
        IMPORTER_ADAPTERS=("folk",),
        FOLK_API_KEY="test-folk-key",
        FOLK_API_BASE_URL="https://folk.test",
    )
    app.config.update(overrides)
    init_importer(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_importer_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_explicit_broker_settings_win(tmp_path):
    app = build_importer_app(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_SQLITE_PATH=str(tmp_path / "unused.sqlite"),
    )

    assert resolve_connection_urls(app) == ("redis://localhost:6379/0", "redis://localhost:6379/1")


def test_celery_config_accepts_json_string(tmp_path):
    app = build_importer_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
    )
    assert get_celery_app(app).conf.task_always_eager is True


def test_worker_ping_cli(tmp_path):
    app = build_importer_app(
        IMPORTER_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=EAGER,
    )

    result = app.test_cli_runner().invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_importer_app(
        IMPORTER_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=EAGER,
    )
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = app.test_cli_runner().invoke(
        args=["importer", "worker", "run", "--loglevel", "debug", "--concurrency", "2", "--pool", "solo"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_worker_health_endpoint_states(tmp_path):
    disabled_app = build_importer_app(CELERY_SQLITE_PATH=str(tmp_path / "disabled.sqlite"))
    disabled_payload = disabled_app.test_client().get("/importer/worker_health").get_json()
    assert disabled_payload["status"] == "disabled"
    assert disabled_payload["worker_enabled"] is False

    eager_app = build_importer_app(
        IMPORTER_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "eager.sqlite"),
        CELERY_CONFIG=EAGER,
    )
    ok_resp = eager_app.test_client().get("/importer/worker_health")
    assert ok_resp.status_code == 200
    assert ok_resp.get_json()["status"] == "ok"
    assert ok_resp.get_json()["heartbeat"]["status"] == "ok"


def test_disabled_importer_registers_stub_cli(monkeypatch):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return ()

    monkeypatch.setattr("venture_crm.importer.resolve_adapters", record_call)

    app = build_importer_app(IMPORTER_ENABLED=False)

    assert called["flag"] is False
    assert app.extensions[IMPORTER_EXTENSION_KEY]["enabled"] is False
    assert get_celery_app(app) is None
    result = app.test_cli_runner().invoke(args=["importer"])
    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output


def test_enabled_importer_reports_missing_settings(tmp_path):
    app = build_importer_app(FOLK_API_KEY="", CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"))

    payload = app.test_client().get("/importer/health").get_json()

    assert payload["enabled"] is True
    assert payload["adapters"][0]["name"] == "folk"
    assert payload["readiness"]["folk"]["status"] == "missing-env"
    assert payload["readiness"]["folk"]["missing_env_vars"] == ["FOLK_API_KEY"]


def test_unknown_adapter_raises():
    with pytest.raises(ValueError, match="Unknown importer adapters"):
        build_importer_app(IMPORTER_ADAPTERS=("hubspot",))


def test_registry_describes_folk():
    descriptors = resolve_adapters(["folk"], get_adapter_registry())
    assert descriptors[0].as_dict()["collections"] == ["companies", "people"]


def test_import_task_executes_run(app, monkeypatch, folk_client, fake_http, folk_page, folk_person):
    monkeypatch.setattr(service, "build_folk_client", lambda config=None, **kwargs: folk_client)
    fake_http.queue("get", json_data=folk_page([folk_person("per_1")]))
    run_id = service.create_run("investor", WORKSPACE_ID).id
    db.session.commit()

    celery_app = get_celery_app(app)
    result = celery_app.tasks[service.IMPORT_TASK_NAME].apply(kwargs={"run_id": run_id})

    assert result.get()["status"] == "completed"
    run = db.session.get(ImportRun, run_id)
    assert run.status is ImportRunStatus.COMPLETED
    assert Investor.query.filter_by(external_id="per_1").count() == 1


def test_dedupe_task(app, investor_factory):
    investor_factory(full_name="Ada Lovelace")
    investor_factory(full_name="Ada Lovelace")
    db.session.commit()

    result = get_celery_app(app).tasks[service.DEDUPE_TASK_NAME].apply(kwargs={"entity_type": "investor"})

    assert result.get()["removed"] == 1
    assert Investor.query.filter_by(is_active=True).count() == 1


def test_enqueue_marks_run_failed_when_broker_rejects(app, monkeypatch, run_factory):
    run = run_factory()
    celery_app = get_celery_app(app)

    def broken_send_task(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(celery_app, "send_task", broken_send_task)

    with pytest.raises(ConnectionError):
        service.enqueue(service.IMPORT_TASK_NAME, run_id=run.id, on_failure_run_id=run.id)

    db.session.refresh(run)
    assert run.status is ImportRunStatus.FAILED
    assert "broker down" in run.error_summary
