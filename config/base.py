# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """Parse an integer setting, falling back to ``default`` and clamping to bounds."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        number = minimum
    if maximum is not None and number > maximum:
        number = maximum
    return number


def _coerce_float(value, default, *, minimum=None):
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        number = minimum
    return number


def _parse_adapter_list(value):
    """
    Parse a comma-separated adapter list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized adapter identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


CONFLICT_POLICIES = ("external_wins", "last_write_wins")


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_ADAPTERS = _parse_adapter_list(os.environ.get("IMPORTER_ADAPTERS", ""))

    if IMPORTER_ENABLED and not IMPORTER_ADAPTERS:
        raise ValueError(
            "IMPORTER_ENABLED is true but IMPORTER_ADAPTERS is empty. " "Provide at least one adapter name."
        )

    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=30
    )

    # External CRM (Folk) connection
    FOLK_API_KEY = os.environ.get("FOLK_API_KEY")
    FOLK_API_BASE_URL = os.environ.get("FOLK_API_BASE_URL", "https://api.folk.app").rstrip("/")
    FOLK_PAGE_LIMIT = _coerce_int(os.environ.get("FOLK_PAGE_LIMIT"), 100, minimum=1, maximum=100)
    FOLK_REQUEST_TIMEOUT = _coerce_float(os.environ.get("FOLK_REQUEST_TIMEOUT"), 30.0, minimum=1.0)
    # Fetch retries are opt-in; 0 keeps the fail-fast behaviour
    FOLK_FETCH_MAX_RETRIES = _coerce_int(os.environ.get("FOLK_FETCH_MAX_RETRIES"), 0, minimum=0, maximum=10)
    FOLK_FETCH_BACKOFF_SECONDS = _coerce_float(os.environ.get("FOLK_FETCH_BACKOFF_SECONDS"), 1.0, minimum=0.0)
    FOLK_FETCH_BACKOFF_MAX_SECONDS = _coerce_float(
        os.environ.get("FOLK_FETCH_BACKOFF_MAX_SECONDS"), 30.0, minimum=0.0
    )

    # Reconciliation behaviour
    IMPORTER_PROGRESS_COMMIT_INTERVAL = _coerce_int(
        os.environ.get("IMPORTER_PROGRESS_COMMIT_INTERVAL"), 10, minimum=1
    )
    IMPORTER_PUSH_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_PUSH_BATCH_SIZE"), 5, minimum=1, maximum=50)
    IMPORTER_CONFLICT_POLICY = os.environ.get("IMPORTER_CONFLICT_POLICY", "external_wins").strip().lower()
    if IMPORTER_CONFLICT_POLICY not in CONFLICT_POLICIES:
        IMPORTER_CONFLICT_POLICY = "external_wins"
    IMPORTER_DEDUPE_REVIEW_THRESHOLD = _coerce_int(
        os.environ.get("IMPORTER_DEDUPE_REVIEW_THRESHOLD"), 70, minimum=0, maximum=100
    )
    IMPORTER_DEDUPE_NAME_THRESHOLD = _coerce_int(
        os.environ.get("IMPORTER_DEDUPE_NAME_THRESHOLD"), 80, minimum=0, maximum=100
    )
    IMPORTER_FOLK_MAPPING_DIR = os.environ.get(
        "IMPORTER_FOLK_MAPPING_DIR",
        os.path.join(os.path.dirname(__file__), "mappings"),
    )


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "venture_crm_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    FOLK_API_KEY = "test-folk-key"
    FOLK_API_BASE_URL = "https://folk.test"


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
