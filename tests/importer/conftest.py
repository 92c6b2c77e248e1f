from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
import requests

from venture_crm.importer.adapters.folk.client import FolkClient
from venture_crm.models import Contact, InvestmentFirm, Investor, RecordSource, SyncStatus
from venture_crm.models.importer.schema import ImportRun, ImportRunStatus

WORKSPACE_ID = "grp_main"
OTHER_WORKSPACE_ID = "grp_other"


class FakeResponse:
    def __init__(self, *, status_code=200, json_data=None, text: str = ""):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text
        self.ok = status_code < 400
        self.before = None

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status={self.status_code}")

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data


class FakeSession:
    """Replays queued responses per HTTP method and records every call."""

    def __init__(self):
        self.calls: list[tuple[str, str, dict]] = []
        self._queues: dict[str, list] = {"get": [], "post": [], "patch": []}
        self._lock = threading.Lock()

    def queue(self, method: str, *, status_code=200, json_data=None, text="", before=None):
        """Queue a response; ``before`` runs just ahead of it being returned."""
        response = FakeResponse(status_code=status_code, json_data=json_data, text=text)
        response.before = before
        self._queues[method].append(response)
        return self

    def queue_error(self, method: str, exc: Exception):
        self._queues[method].append(exc)
        return self

    def calls_for(self, method: str) -> list[tuple[str, str, dict]]:
        return [call for call in self.calls if call[0] == method]

    def _dispatch(self, method: str, url: str, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
            if not self._queues[method]:
                raise AssertionError(f"Unexpected {method.upper()} {url}")
            response = self._queues[method].pop(0)
        if isinstance(response, Exception):
            raise response
        if response.before is not None:
            response.before()
        return response

    def get(self, url, headers=None, params=None, timeout=None):
        return self._dispatch("get", url, headers=headers, params=params, timeout=timeout)

    def post(self, url, headers=None, json=None, timeout=None):
        return self._dispatch("post", url, headers=headers, json=json, timeout=timeout)

    def patch(self, url, headers=None, json=None, timeout=None):
        return self._dispatch("patch", url, headers=headers, json=json, timeout=timeout)


def build_page(items, next_link=None):
    pagination = {"nextLink": next_link} if next_link else {}
    return {"data": {"items": list(items), "pagination": pagination}}


def build_person(person_id, first="Ada", last="Lovelace", *, workspace=WORKSPACE_ID, fields=None, **extra):
    record = {
        "id": person_id,
        "firstName": first,
        "lastName": last,
        "fullName": f"{first} {last}".strip(),
        "emails": [],
        "phones": [],
        "urls": [],
        "groups": [{"id": workspace, "name": "Main"}],
        "customFieldValues": {workspace: dict(fields or {})},
    }
    record.update(extra)
    return record


def build_company(company_id, name="Acme Ventures", *, workspace=WORKSPACE_ID, fields=None, **extra):
    record = {
        "id": company_id,
        "name": name,
        "description": None,
        "emails": [],
        "phones": [],
        "urls": [],
        "addresses": [],
        "groups": [{"id": workspace, "name": "Main"}],
        "customFieldValues": {workspace: dict(fields or {})},
    }
    record.update(extra)
    return record


@pytest.fixture
def fake_http():
    return FakeSession()


@pytest.fixture
def folk_client(fake_http):
    return FolkClient(api_key="test-folk-key", base_url="https://folk.test", timeout=5, session=fake_http)


@pytest.fixture
def folk_page():
    return build_page


@pytest.fixture
def folk_person():
    return build_person


@pytest.fixture
def folk_company():
    return build_company


def _persist(model, defaults, overrides):
    values = {**defaults, **overrides}
    created_offset = values.pop("created_offset_days", None)
    entity = model(**values)
    if created_offset is not None:
        entity.created_at = datetime.now(timezone.utc) - timedelta(days=created_offset)
    return entity.save()


@pytest.fixture
def firm_factory(app):
    def _factory(**overrides):
        defaults = {"name": "Acme Ventures", "source": RecordSource.MANUAL, "sync_status": SyncStatus.PENDING}
        return _persist(InvestmentFirm, defaults, overrides)

    return _factory


@pytest.fixture
def investor_factory(app):
    def _factory(**overrides):
        defaults = {"full_name": "Ada Lovelace", "source": RecordSource.MANUAL, "sync_status": SyncStatus.PENDING}
        return _persist(Investor, defaults, overrides)

    return _factory


@pytest.fixture
def contact_factory(app):
    def _factory(**overrides):
        defaults = {"full_name": "Grace Hopper", "source": RecordSource.MANUAL, "sync_status": SyncStatus.PENDING}
        return _persist(Contact, defaults, overrides)

    return _factory


@pytest.fixture
def run_factory(app):
    def _factory(*, entity_type="investor", status=ImportRunStatus.PENDING, workspace_id=WORKSPACE_ID, **overrides):
        collection = "companies" if entity_type == "firm" else "people"
        run = ImportRun(
            source="folk",
            entity_type=entity_type,
            collection=collection,
            workspace_id=workspace_id,
            status=status,
            **overrides,
        )
        return run.save()

    return _factory


@pytest.fixture
def workspace_id():
    return WORKSPACE_ID
