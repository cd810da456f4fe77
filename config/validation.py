# config/validation.py

"""
Startup checks for production deployments of the ingestion service.
"""

import os
import sys
from typing import List, Optional, Tuple

PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key", "change-me"}


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _check_secret_key(environ) -> List[str]:
    secret_key = environ.get("SECRET_KEY", "")
    if secret_key and secret_key not in PLACEHOLDER_SECRETS:
        return []
    return ["SECRET_KEY must be set to a non-placeholder value in production."]


def _check_database(environ) -> List[str]:
    if environ.get("DATABASE_URL"):
        return []
    return ["DATABASE_URL must point at the production PostgreSQL database."]


def _check_ingestion(environ) -> List[str]:
    problems = []
    # The SQLite broker is a local convenience; production workers need a real one.
    if _truthy(environ.get("INGESTION_ENABLED")):
        for key in ("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND"):
            if not environ.get(key):
                problems.append(f"{key} is required when INGESTION_ENABLED is on in production.")

    profile_path = environ.get("INGESTION_SURVIVORSHIP_PROFILE_PATH")
    if profile_path and not os.path.isfile(profile_path):
        problems.append(f"INGESTION_SURVIVORSHIP_PROFILE_PATH does not exist: {profile_path}")
    return problems


def validate_environment(flask_env: Optional[str] = None, environ=None) -> Tuple[bool, List[str]]:
    """
    Collect configuration problems for ``flask_env``.

    Only production is checked; other environments always pass.
    """
    environ = os.environ if environ is None else environ
    flask_env = flask_env or environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = _check_secret_key(environ) + _check_database(environ) + _check_ingestion(environ)
    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
    """Print every problem to stderr and exit non-zero when validation fails."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    lines = ["Environment validation failed:"]
    lines.extend(f"  - {error}" for error in errors)
    lines.append("Fix the variables above (or your .env file) and restart.")
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
