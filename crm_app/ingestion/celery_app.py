"""
Celery wiring for the ingestion worker.

The Celery instance only exists when ingestion is enabled. Without a broker
URL it falls back to a SQLite transport in the Flask instance folder, which is
enough for local development and the eager test setup.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Queue

EXTENSION_KEY = "ingestion"
DEFAULT_QUEUE_NAME = "ingestion"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
RESUME_STALE_TASK = "ingestion.resume_stale_jobs"
TASK_MODULES = ("crm_app.ingestion.tasks",)

_LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"


def sqlite_transport_path(app: Flask) -> Path:
    """
    File backing the fallback broker and result backend.

    ``CELERY_SQLITE_PATH`` may be absolute or relative to the instance folder.
    """
    path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _transport_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        # as_posix: SQLAlchemy URLs need forward slashes on Windows too
        sqlite_file = sqlite_transport_path(app).as_posix()
        broker_url = broker_url or f"sqla+sqlite:///{sqlite_file}"
        result_backend = result_backend or f"db+sqlite:///{sqlite_file}"
    return broker_url, result_backend


def _overrides(app: Flask) -> dict[str, Any]:
    """``CELERY_CONFIG`` as a dict; JSON strings come from the environment."""
    raw = app.config.get("CELERY_CONFIG")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Ignoring CELERY_CONFIG: not valid JSON.", exc_info=True)
            return {}
    return dict(raw or {})


def build_celery_conf(app: Flask) -> dict[str, Any]:
    """Base worker settings: one queue, late acks and a single prefetched message."""
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("INGESTION_TASK_TIME_LIMIT", 60 * 60),
        "task_soft_time_limit": app.config.get("INGESTION_TASK_SOFT_TIME_LIMIT", 55 * 60),
        "beat_schedule": {
            "ingestion-resume-stale-jobs": {
                "task": RESUME_STALE_TASK,
                "schedule": float(app.config.get("INGESTION_RESUME_INTERVAL_SECONDS", 60)),
            }
        },
        "worker_hijack_root_logger": False,
        "worker_log_format": _LOG_FORMAT,
        "worker_task_log_format": "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
    }


def create_celery_app(app: Flask) -> Celery:
    """
    Build a Celery instance whose tasks run inside ``app``'s context.

    Point ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` at Redis or Postgres
    to leave the SQLite transport behind.
    """
    broker_url, result_backend = _transport_urls(app)
    overrides = _overrides(app)

    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=TASK_MODULES)
    celery_app.conf.update(build_celery_conf(app))
    celery_app.conf.update(overrides)

    app.logger.info(
        "Ingestion Celery app created",
        extra={
            "ingestion_celery_broker_url": broker_url,
            "ingestion_celery_result_backend": result_backend,
            "ingestion_celery_overrides": sorted(overrides),
        },
    )

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    base_task = celery_app.Task

    class FlaskContextTask(base_task):  # type: ignore[misc,valid-type]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance for ``app``; ``None`` while ingestion is disabled."""
    state = app.extensions.get(EXTENSION_KEY)
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
