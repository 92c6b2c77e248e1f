# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
# and Flask-SQLAlchemy builds its engine against the throwaway database
os.environ["FLASK_ENV"] = "testing"
_db_fd, _TEST_DB_PATH = tempfile.mkstemp(suffix="_venture_crm_test.db")
_CELERY_DIR = tempfile.mkdtemp(prefix="venture_crm_celery_")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_PATH}")

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from venture_crm.importer import init_importer  # noqa: E402
from venture_crm.models import db  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_TEST_DB_PATH):
            os.unlink(_TEST_DB_PATH)
    except OSError:
        pass


@pytest.fixture(scope="function")
def app():
    """Flask app with the importer enabled and every table recreated."""
    flask_app.config.update(
        {
            "TESTING": True,
            "IMPORTER_ENABLED": True,
            "IMPORTER_ADAPTERS": ("folk",),
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_CONFLICT_POLICY": "external_wins",
            "IMPORTER_PROGRESS_COMMIT_INTERVAL": 10,
            "IMPORTER_PUSH_BATCH_SIZE": 5,
            "FOLK_API_KEY": "test-folk-key",
            "FOLK_API_BASE_URL": "https://folk.test",
            "FOLK_PAGE_LIMIT": 100,
            "FOLK_FETCH_MAX_RETRIES": 0,
            "CELERY_SQLITE_PATH": os.path.join(_CELERY_DIR, "celery.sqlite"),
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        }
    )
    init_importer(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
