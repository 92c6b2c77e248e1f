import json
import logging

import pytest
from flask import Flask

from config.base import _coerce_bool, _coerce_float, _coerce_int, _parse_adapter_list
from config.validation import validate_environment
from venture_crm.utils.logging_config import JSONFormatter, setup_logging


@pytest.mark.parametrize(
    "value, expected",
    [("1", True), ("TRUE", True), (" on ", True), ("0", False), ("off", False), ("maybe", False), (None, False)],
)
def test_coerce_bool(value, expected):
    assert _coerce_bool(value) is expected


def test_coerce_numbers_clamp_and_fall_back():
    assert _coerce_int("500", 100, minimum=1, maximum=100) == 100
    assert _coerce_int("abc", 7) == 7
    assert _coerce_int("", 7) == 7
    assert _coerce_float("-1", 1.0, minimum=0.0) == 0.0
    assert _coerce_float("2.5", 1.0) == 2.5


def test_parse_adapter_list_dedupes_and_normalizes():
    assert _parse_adapter_list(" Folk, folk ,,") == ("folk",)
    assert _parse_adapter_list("") == ()


def test_validation_skipped_outside_production():
    assert validate_environment("development") == (True, [])


def test_production_validation_requires_folk_key(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/crm")
    monkeypatch.setenv("IMPORTER_ENABLED", "true")
    monkeypatch.setenv("IMPORTER_ADAPTERS", "folk")
    monkeypatch.delenv("FOLK_API_KEY", raising=False)
    monkeypatch.setenv("IMPORTER_WORKER_ENABLED", "true")
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert any("FOLK_API_KEY" in error for error in errors)
    assert any("CELERY_BROKER_URL" in error for error in errors)


def test_json_formatter_includes_structured_extras():
    formatter = JSONFormatter(app_name="venture-crm", app_version="1.0")
    record = logging.LogRecord("venture_crm.importer", logging.INFO, __file__, 1, "Import run started", (), None)
    record.importer_run_id = 12

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "Import run started"
    assert payload["level"] == "INFO"
    assert payload["importer_run_id"] == 12
    assert payload["app"] == "venture-crm"


def test_setup_logging_replaces_its_own_handlers():
    app = Flask(__name__)
    app.config.update(LOG_LEVEL="debug", LOG_FORMAT="text")

    setup_logging(app)
    setup_logging(app)

    owned = [handler for handler in app.logger.handlers if getattr(handler, "_venture_crm_handler", False)]
    assert len(owned) == 1
    assert app.logger.level == logging.DEBUG
    assert not isinstance(owned[0].formatter, JSONFormatter)
