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


def _coerce_int(value, default, *, minimum=None):
    """
    Parse an integer environment value, falling back to ``default`` when the
    value is missing or malformed. ``minimum`` clamps the parsed value.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _coerce_float(value, default):
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")

    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 15 * 60, minimum=1)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 12 * 60, minimum=1)

    # Batch sizes per pipeline stage
    IMPORTER_DUPLICATE_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_DUPLICATE_BATCH_SIZE"), 5000, minimum=1)
    IMPORTER_EXISTENCE_CHUNK_SIZE = _coerce_int(os.environ.get("IMPORTER_EXISTENCE_CHUNK_SIZE"), 1000, minimum=1)
    IMPORTER_SCHEMA_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_SCHEMA_BATCH_SIZE"), 10000, minimum=1)
    IMPORTER_GEOCODE_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_GEOCODE_BATCH_SIZE"), 100, minimum=1)
    IMPORTER_EVENT_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_EVENT_BATCH_SIZE"), 1000, minimum=1)

    # Remote files
    IMPORTER_URL_FETCH_TIMEOUT_SECONDS = _coerce_float(os.environ.get("IMPORTER_URL_FETCH_TIMEOUT_SECONDS"), 30.0)
    IMPORTER_URL_FETCH_MAX_BYTES = _coerce_int(
        os.environ.get("IMPORTER_URL_FETCH_MAX_BYTES"), 100 * 1024 * 1024, minimum=1
    )

    # Geocoding
    GEOCODING_ENABLED = _coerce_bool(os.environ.get("GEOCODING_ENABLED"), default=True)
    GEOCODING_CACHE_TTL_DAYS = _coerce_int(os.environ.get("GEOCODING_CACHE_TTL_DAYS"), 30, minimum=0)
    GEOCODING_MIN_CONFIDENCE = _coerce_float(os.environ.get("GEOCODING_MIN_CONFIDENCE"), 0.5)
    GEOCODING_TIMEOUT_SECONDS = _coerce_float(os.environ.get("GEOCODING_TIMEOUT_SECONDS"), 10.0)
    GEOCODING_PROVIDERS_PATH = os.environ.get("GEOCODING_PROVIDERS_PATH")
    GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY")
    OPENCAGE_API_KEY = os.environ.get("OPENCAGE_API_KEY")
    NOMINATIM_USER_AGENT = os.environ.get("NOMINATIM_USER_AGENT", "TimeTiles.io/1.0 (https://timetiles.io)")

    SCHEMA_MAINTENANCE_MAX_DATASETS = _coerce_int(os.environ.get("SCHEMA_MAINTENANCE_MAX_DATASETS"), 100, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "timetiles_dev.db").replace("\\", "/")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", f"sqlite:///{db_path}")
    SQLALCHEMY_ECHO = False
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
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_WORKER_ENABLED = False
    GEOCODING_PROVIDERS_PATH = None
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
