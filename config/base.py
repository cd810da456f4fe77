# config/base.py
import os
import warnings

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce_bool(value, default=False):
    """Read an environment flag; unrecognised values keep ``default``."""
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower() if value is not None else ""
    if token in TRUE_VALUES:
        return True
    if token in FALSE_VALUES:
        return False
    return default


def _parse_int(value, default, *, minimum=None, maximum=None):
    """
    Parse an integer setting, falling back to ``default`` when the value is
    missing or malformed and clamping into the optional bounds.
    """
    if value is None or str(value).strip() == "":
        number = default
    else:
        try:
            number = int(str(value).strip())
        except ValueError:
            number = default
    if minimum is not None and number < minimum:
        number = minimum
    if maximum is not None and number > maximum:
        number = maximum
    return number


def _parse_float(value, default, *, minimum=0.0, maximum=1.0):
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    return max(minimum, min(maximum, number))


def _resolve_secret_key(flask_env):
    secret_key = os.environ.get("SECRET_KEY")
    if secret_key:
        return secret_key
    if flask_env == "production":
        raise ValueError("SECRET_KEY must be set when FLASK_ENV=production.")
    if flask_env == "testing":
        return "meridian-test-secret"
    warnings.warn("SECRET_KEY is unset; falling back to an insecure development key.", UserWarning)
    return "meridian-dev-secret"


def _sqlite_engine_options(uri):
    # Celery workers and the web process share one SQLite file locally.
    if uri and uri.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 5}}
    return {}


class Config:
    SECRET_KEY = _resolve_secret_key(os.environ.get("FLASK_ENV", "development"))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Ingestion configuration
    INGESTION_ENABLED = _coerce_bool(os.environ.get("INGESTION_ENABLED"), default=False)
    INGESTION_WORKER_ENABLED = _coerce_bool(os.environ.get("INGESTION_WORKER_ENABLED"), default=False)
    INGESTION_BATCH_SIZE = _parse_int(os.environ.get("INGESTION_BATCH_SIZE"), 100, minimum=1, maximum=1000)
    INGESTION_MAX_ERRORS_KEPT = _parse_int(os.environ.get("INGESTION_MAX_ERRORS_KEPT"), 100, minimum=1)
    INGESTION_MAX_ATTEMPTS = _parse_int(os.environ.get("INGESTION_MAX_ATTEMPTS"), 5, minimum=1)
    INGESTION_STALE_AFTER_SECONDS = _parse_int(
        os.environ.get("INGESTION_STALE_AFTER_SECONDS"), 5 * 60, minimum=30
    )
    INGESTION_RESUME_INTERVAL_SECONDS = _parse_int(
        os.environ.get("INGESTION_RESUME_INTERVAL_SECONDS"), 60, minimum=5
    )
    INGESTION_EXCLUSION_WINDOW_DAYS = _parse_int(
        os.environ.get("INGESTION_EXCLUSION_WINDOW_DAYS"), 730, minimum=1
    )
    INGESTION_FUZZY_ACCEPT_THRESHOLD = _parse_float(
        os.environ.get("INGESTION_FUZZY_ACCEPT_THRESHOLD"), 0.75
    )
    INGESTION_CANDIDATE_LIMIT = _parse_int(os.environ.get("INGESTION_CANDIDATE_LIMIT"), 300, minimum=10)
    INGESTION_MAX_UPLOAD_MB = _parse_int(os.environ.get("INGESTION_MAX_UPLOAD_MB"), 25, minimum=1)
    INGESTION_SURVIVORSHIP_PROFILE_PATH = os.environ.get("INGESTION_SURVIVORSHIP_PROFILE_PATH")
    INGESTION_SOURCE_SYSTEM = os.environ.get("INGESTION_SOURCE_SYSTEM", "csv_upload")

    # Celery wiring; defaults to a SQLite transport inside the instance folder.
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    INGESTION_TASK_TIME_LIMIT = _parse_int(os.environ.get("INGESTION_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    INGESTION_TASK_SOFT_TIME_LIMIT = _parse_int(
        os.environ.get("INGESTION_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=30
    )

    JOBS_PAGE_SIZE_DEFAULT = _parse_int(os.environ.get("JOBS_PAGE_SIZE_DEFAULT"), 25, minimum=5, maximum=500)


class DevelopmentConfig(Config):
    DEBUG = True
    INSTANCE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "instance")
    os.makedirs(INSTANCE_DIR, exist_ok=True)

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(INSTANCE_DIR, "meridian_dev.db").replace("\\", "/"),
    )
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    SQLALCHEMY_ENGINE_OPTIONS = _sqlite_engine_options(SQLALCHEMY_DATABASE_URI)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = _sqlite_engine_options(SQLALCHEMY_DATABASE_URI)
    INGESTION_ENABLED = True
    INGESTION_WORKER_ENABLED = False
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_ECHO = False
    # SQLAlchemy 1.4+ rejects the bare postgres:// scheme.
    SQLALCHEMY_DATABASE_URI = (os.environ.get("DATABASE_URL") or "").replace("postgres://", "postgresql://", 1) or None
