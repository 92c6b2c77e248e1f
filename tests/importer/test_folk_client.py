from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from venture_crm.importer.adapters.folk import (
    FolkConfigurationError,
    FolkRequestError,
    check_folk_adapter_readiness,
    ensure_folk_adapter_ready,
)
from venture_crm.importer.adapters.folk.client import FolkClient


def test_client_requires_api_key():
    with pytest.raises(FolkConfigurationError):
        FolkClient(api_key="")


def test_from_config_strips_trailing_slash(fake_http):
    client = FolkClient.from_config(
        {"FOLK_API_KEY": "k", "FOLK_API_BASE_URL": "https://folk.test/", "FOLK_REQUEST_TIMEOUT": 12},
        session=fake_http,
    )
    assert client.collection_url("companies") == "https://folk.test/v1/companies"
    assert client.timeout == 12.0


def test_create_returns_data_payload(folk_client, fake_http):
    fake_http.queue("post", status_code=201, json_data={"data": {"id": "per_new", "fullName": "Ada"}})

    data = folk_client.create("people", {"fullName": "Ada"})

    assert data["id"] == "per_new"
    _, url, kwargs = fake_http.calls[0]
    assert url == "https://folk.test/v1/people"
    assert kwargs["json"] == {"fullName": "Ada"}
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert kwargs["timeout"] == 5


def test_update_patches_the_external_record(folk_client, fake_http):
    fake_http.queue("patch", json_data={"data": {"id": "com_1"}})

    folk_client.update("companies", "com_1", {"name": "Acme"})

    assert fake_http.calls[0][1] == "https://folk.test/v1/companies/com_1"


def test_write_rejection_carries_status_and_message(folk_client, fake_http):
    fake_http.queue("patch", status_code=422, json_data={"error": {"message": "name is required"}})

    with pytest.raises(FolkRequestError) as excinfo:
        folk_client.update("people", "per_1", {})

    assert excinfo.value.status_code == 422
    assert "name is required" in str(excinfo.value)


def test_write_transport_error_is_wrapped(folk_client, fake_http):
    fake_http.queue_error("post", requests.Timeout("timed out"))

    with pytest.raises(FolkRequestError, match="timed out"):
        folk_client.create("people", {"fullName": "Ada"})


def test_readiness_reports_missing_settings():
    readiness = check_folk_adapter_readiness({"FOLK_API_KEY": "", "FOLK_API_BASE_URL": "https://folk.test"})

    assert readiness.status == "missing-env"
    assert readiness.missing_config == ("FOLK_API_KEY",)
    with pytest.raises(FolkConfigurationError):
        ensure_folk_adapter_ready({"FOLK_API_KEY": "", "FOLK_API_BASE_URL": ""})


def test_readiness_auth_ping(folk_client, fake_http):
    config = {"FOLK_API_KEY": "k", "FOLK_API_BASE_URL": "https://folk.test"}
    fake_http.queue("get", json_data={"data": {"items": []}})
    fake_http.queue("get", status_code=401, json_data={"error": {"message": "invalid key"}})

    ok = check_folk_adapter_readiness(config, require_auth_ping=True, client=folk_client)
    failed = check_folk_adapter_readiness(config, require_auth_ping=True, client=folk_client)

    assert ok.status == "ready"
    assert ok.auth_status == "ok"
    assert failed.status == "auth-error"
    assert "invalid key" in failed.auth_error
    assert fake_http.calls[0][2]["params"] == {"limit": 1}


def test_each_thread_gets_its_own_http_session():
    client = FolkClient(api_key="k", base_url="https://folk.test")
    main_session = client.session

    with ThreadPoolExecutor(max_workers=2) as executor:
        worker_sessions = list(executor.map(lambda _: id(client.session), range(2)))

    assert client.session is main_session
    assert isinstance(main_session, requests.Session)
    assert id(main_session) not in worker_sessions


def test_injected_session_is_shared_across_threads(folk_client, fake_http):
    with ThreadPoolExecutor(max_workers=2) as executor:
        sessions = list(executor.map(lambda _: folk_client.session, range(2)))

    assert all(session is fake_http for session in sessions)
