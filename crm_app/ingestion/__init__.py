"""
Ingestion feature package.

Mounts the ingestion blueprint, CLI group and Celery worker when
``INGESTION_ENABLED`` is set, and stays inert otherwise.
"""

from __future__ import annotations

from flask import Flask

from crm_app.utils.ingestion import is_ingestion_enabled, is_worker_enabled

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_ingestion_group, ingestion_cli
from .pipeline.job_service import JobFilters, JobService
from .views import ingestion_blueprint

__all__ = [
    "init_ingestion",
    "EXTENSION_KEY",
    "get_celery_app",
    "JobFilters",
    "JobService",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = ingestion_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(ingestion_cli)
    else:
        app.cli.add_command(get_disabled_ingestion_group())


def init_ingestion(app: Flask) -> None:
    """
    Conditionally mount the ingestion blueprint, CLI and Celery app.

    State is recorded in ``app.extensions['ingestion']`` for the views, CLI
    and tasks to share.
    """
    enabled = is_ingestion_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": is_worker_enabled(app)})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Ingestion disabled via INGESTION_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)

    if ingestion_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(ingestion_blueprint)
    elif ingestion_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Ingestion blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)
    app.logger.info("Ingestion enabled (worker_enabled=%s)", state["worker_enabled"])
